"""Business logic layer for authentication, users, tours and reviews.

Handlers in ``routes.py`` stay thin: they pass validated schemas and the raw
query mapping here and wrap the returned data in the response envelope.
"""

from collections.abc import Mapping
from datetime import datetime, timezone

from . import crud, db, mailer
from .auth import (
    create_access_token,
    create_password_reset_token,
    hash_password,
    hash_reset_token,
    password_changed_timestamp,
    verify_password,
)
from .cache import TOUR_BY_ID_PREFIX, TOUR_STATS_KEY, cache_manager, invalidate_tour, make_cache_key
from .config import settings
from .dependencies import AuthenticatedUser
from .errors import (
    InternalError,
    InvalidOrExpiredToken,
    NotFound,
    StalePassword,
    Unauthenticated,
    ValidationError,
)
from .logger import logger
from .models import (
    ACTIVE_USER_FILTER,
    REVIEW_FIELD_TYPES,
    TOUR_FIELD_TYPES,
    USER_FIELD_TYPES,
    USER_PRIVATE_FIELDS,
    VISIBLE_TOUR_FILTER,
    new_review_document,
    new_tour_document,
    new_user_document,
    serialize_review,
    serialize_tour,
    serialize_user,
)
from .query import build_query
from .schemas import (
    ForgotPassword,
    ResetPassword,
    ReviewCreate,
    ReviewUpdate,
    TourCreate,
    TourUpdate,
    UpdateMe,
    UpdatePassword,
    UserAdminUpdate,
    UserCreate,
    UserLogin,
    UserSignup,
)
from .utils import filter_fields, normalize_email, slugify

# ==================== Helper Functions ====================

PASSWORD_FIELDS = ("password", "newPassword", "confirmPassword")
UPDATE_ME_FIELDS = ("name", "email", "photo")

TOP_CHEAP_TOURS_QUERY = {
    "limit": "5",
    "sort": "-ratingsAverage,price",
    "fields": "name,price,ratingsAverage,summary,difficulty",
}

EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
METERS_TO_UNIT = {"mi": 0.000621371, "km": 0.001}


async def _list_page(collection: str, query_params: Mapping, base_filter: dict | None = None,
                     scope: dict | None = None, **options) -> list[dict]:
    """Build a descriptor from the query string and run it against ``collection``."""
    descriptor = build_query(query_params, base_filter, **options)
    documents, total = await crud.find(collection, descriptor, scope)
    if descriptor.skip > 0 and descriptor.skip >= total:
        raise NotFound("This page does not exist.")
    return documents


def _issue_session(user: dict) -> tuple[str, dict]:
    """Sign a session token for ``user``. The returned user carries no password."""
    token = create_access_token(str(user["_id"]))
    return token, serialize_user(user)


# ==================== Authentication Operations ====================


async def signup(data: UserSignup) -> tuple[str, dict]:
    """Register a user with the default role and log them in."""
    document = new_user_document(
        name=data.name,
        email=normalize_email(data.email),
        hashed_password=hash_password(data.password),
        photo=data.photo,
    )
    user = await crud.insert_user(document)
    logger.info(f"User registered: id={user['_id']} email={user['email']}")
    return _issue_session(user)


async def login(credentials: UserLogin) -> tuple[str, dict]:
    """Authenticate by email and password.

    Unknown email and wrong password raise the same error.
    """
    if not credentials.email or not credentials.password:
        raise ValidationError("Please provide email and password!")

    user = await crud.select_user_by_email(normalize_email(credentials.email))
    if user is None or not verify_password(credentials.password, user["password"]):
        logger.info("Failed login attempt")
        raise Unauthenticated("Incorrect email or password")

    logger.info(f"User logged in: id={user['_id']}")
    return _issue_session(user)


async def forgot_password(data: ForgotPassword, base_url: str) -> None:
    """Store a fresh reset fingerprint and e-mail the raw token.

    A second request replaces the first fingerprint, invalidating its token.
    """
    user = await crud.select_user_by_email(normalize_email(data.email))
    if user is None:
        raise NotFound("There is no user with that email address.")

    raw_token, token_hash, expires_at = create_password_reset_token()
    await crud.set_password_reset(user["_id"], token_hash, expires_at)

    reset_url = f"{base_url.rstrip('/')}{settings.API_PREFIX}/users/resetPassword/{raw_token}"
    try:
        await mailer.send_password_reset(user["email"], reset_url)
    except mailer.MailDeliveryError:
        # Leave a newer request's fingerprint alone
        await crud.clear_password_reset(user["_id"], token_hash)
        raise InternalError("There was an error sending the email. Try again later!") from None
    logger.info(f"Password reset token issued: user={user['_id']}")


async def reset_password(token: str, data: ResetPassword) -> tuple[str, dict]:
    user = await crud.consume_password_reset(
        hash_reset_token(token),
        hash_password(data.password),
        password_changed_timestamp(),
    )
    if user is None:
        raise InvalidOrExpiredToken("Token is invalid or has expired")
    logger.info(f"Password reset completed: user={user['_id']}")
    return _issue_session(user)


async def update_password(principal: AuthenticatedUser, data: UpdatePassword) -> tuple[str, dict]:
    current = principal.user
    if not verify_password(data.password, current["password"]):
        raise Unauthenticated("Your current password is wrong.")

    user = await crud.update_password(
        principal.id,
        current["password"],
        hash_password(data.newPassword),
        password_changed_timestamp(),
    )
    if user is None:
        # Another request changed the password between verification and update
        raise StalePassword("User recently changed password! Please log in again.")
    logger.info(f"Password changed: user={principal.id}")
    return _issue_session(user)


# ==================== Current User Operations ====================


def get_me(principal: AuthenticatedUser) -> dict:
    return serialize_user(principal.user)


async def update_me(principal: AuthenticatedUser, data: UpdateMe) -> dict:
    if any(field in (data.model_extra or {}) for field in PASSWORD_FIELDS):
        raise ValidationError("This route is not for password updates. Please use /updateMyPassword.")

    changes = filter_fields(data.model_dump(exclude_unset=True, exclude_none=True), *UPDATE_ME_FIELDS)
    if "email" in changes:
        changes["email"] = normalize_email(changes["email"])
    if not changes:
        return serialize_user(principal.user)

    user = await crud.update_user(principal.id, changes)
    if user is None:
        raise NotFound("No user found with that ID")
    return serialize_user(user)


async def delete_me(principal: AuthenticatedUser) -> None:
    await crud.deactivate_user(principal.id)
    logger.info(f"User deactivated: id={principal.id}")


# ==================== User Administration ====================


async def list_users(query_params: Mapping) -> list[dict]:
    users = await _list_page(
        db.USERS,
        query_params,
        scope=ACTIVE_USER_FILTER,
        field_types=USER_FIELD_TYPES,
        hidden_fields=USER_PRIVATE_FIELDS,
    )
    return [serialize_user(user) for user in users]


async def create_user(data: UserCreate) -> dict:
    document = new_user_document(
        name=data.name,
        email=normalize_email(data.email),
        hashed_password=hash_password(data.password),
        role=data.role,
        photo=data.photo,
    )
    user = await crud.insert_user(document)
    logger.info(f"User created by admin: id={user['_id']} role={user['role']}")
    return serialize_user(user)


async def get_user(user_id: str) -> dict:
    user = await crud.select_user(user_id)
    if user is None:
        raise NotFound("No user found with that ID")
    return serialize_user(user)


async def update_user(user_id: str, data: UserAdminUpdate) -> dict:
    changes = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if "email" in changes:
        changes["email"] = normalize_email(changes["email"])
    if not changes:
        return await get_user(user_id)

    user = await crud.update_user(user_id, changes)
    if user is None:
        raise NotFound("No user found with that ID")
    logger.info(f"User updated by admin: id={user_id} fields={sorted(changes)}")
    return serialize_user(user)


async def delete_user(user_id: str) -> None:
    user = await crud.delete_user(user_id)
    if user is None:
        raise NotFound("No user found with that ID")
    logger.info(f"User deleted by admin: id={user_id}")


# ==================== Tour Operations ====================


async def list_tours(query_params: Mapping) -> list[dict]:
    tours = await _list_page(db.TOURS, query_params, scope=VISIBLE_TOUR_FILTER, field_types=TOUR_FIELD_TYPES)
    return [serialize_tour(tour) for tour in tours]


async def list_top_cheap_tours(query_params: Mapping) -> list[dict]:
    return await list_tours({**query_params, **TOP_CHEAP_TOURS_QUERY})


async def get_tour(tour_id: str) -> dict:
    """Retrieve a tour with its reviews, using the cache when enabled."""
    cache_key = make_cache_key(TOUR_BY_ID_PREFIX, tour_id)
    if settings.CACHE_ENABLED:
        cached = await cache_manager.get(cache_key)
        if cached:
            return cached

    tour = await crud.select_tour_with_reviews(tour_id)
    if tour is None:
        raise NotFound("No tour found with that ID")

    result = serialize_tour(tour)
    if settings.CACHE_ENABLED:
        await cache_manager.set(cache_key, result)
    return result


async def create_tour(data: TourCreate) -> dict:
    tour = await crud.insert(db.TOURS, new_tour_document(data.model_dump(exclude_none=True)))
    await invalidate_tour(tour["_id"])
    logger.info(f"Tour created: id={tour['_id']} name={tour['name']}")
    return serialize_tour(tour)


async def update_tour(tour_id: str, data: TourUpdate) -> dict:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if ("price" in changes) != ("priceDiscount" in changes):
        # Validate a lone price or discount against the stored counterpart
        current = await crud.select_tour(tour_id)
        if current is None:
            raise NotFound("No tour found with that ID")
        price = changes.get("price", current.get("price"))
        discount = changes.get("priceDiscount", current.get("priceDiscount"))
        if price is not None and discount is not None and discount >= price:
            raise ValidationError(f"Discount price ({discount}) should be below regular price")
    if "name" in changes:
        changes["slug"] = slugify(changes["name"])
    if not changes:
        return await get_tour(tour_id)

    tour = await crud.find_by_id_and_update(db.TOURS, tour_id, changes, VISIBLE_TOUR_FILTER)
    if tour is None:
        raise NotFound("No tour found with that ID")
    await invalidate_tour(tour["_id"])
    logger.info(f"Tour updated: id={tour_id} fields={sorted(changes)}")
    return serialize_tour(tour)


async def delete_tour(tour_id: str) -> None:
    tour = await crud.find_by_id_and_delete(db.TOURS, tour_id, VISIBLE_TOUR_FILTER)
    if tour is None:
        raise NotFound("No tour found with that ID")
    await invalidate_tour(tour["_id"])
    logger.info(f"Tour deleted: id={tour_id}")


# ==================== Tour Aggregations ====================

TOUR_STATS_PIPELINE = [
    {"$match": {"ratingsAverage": {"$gte": 4.5}}},
    {
        "$group": {
            "_id": "$difficulty",
            "numTours": {"$sum": 1},
            "numRatings": {"$sum": "$ratingsQuantity"},
            "avgRating": {"$avg": "$ratingsAverage"},
            "avgPrice": {"$avg": "$price"},
            "minPrice": {"$min": "$price"},
            "maxPrice": {"$max": "$price"},
        }
    },
    {"$sort": {"avgPrice": 1}},
]


def monthly_plan_pipeline(year: int) -> list[dict]:
    """Tour starts per month of ``year``, busiest month first."""
    return [
        {"$unwind": "$startDates"},
        {
            "$match": {
                "startDates": {
                    "$gte": datetime(year, 1, 1, tzinfo=timezone.utc),
                    "$lt": datetime(year + 1, 1, 1, tzinfo=timezone.utc),
                }
            }
        },
        {
            "$group": {
                "_id": {"$month": "$startDates"},
                "numTourStarts": {"$sum": 1},
                "tours": {"$push": "$name"},
            }
        },
        {"$addFields": {"month": "$_id"}},
        {"$project": {"_id": 0}},
        {"$sort": {"numTourStarts": -1, "month": 1}},
        {"$limit": 12},
    ]


def parse_latlng(latlng: str) -> tuple[float, float]:
    """Parse ``"lat,lng"`` into floats. Raises ValidationError when malformed."""
    parts = [part.strip() for part in latlng.split(",")]
    try:
        lat, lng = (float(part) for part in parts)
    except ValueError:
        raise ValidationError("Please provide latitude and longitude in the format lat,lng.") from None
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError("Please provide latitude and longitude in the format lat,lng.")
    return lat, lng


def _check_unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise ValidationError("Unit must be either 'mi' or 'km'.")
    return unit


def tours_within_filter(distance: float, lat: float, lng: float, unit: str) -> dict:
    """``$geoWithin`` filter; the sphere radius is in radians."""
    radius = distance / EARTH_RADIUS[_check_unit(unit)]
    return {"startLocation": {"$geoWithin": {"$centerSphere": [[lng, lat], radius]}}}


def distances_pipeline(lat: float, lng: float, unit: str) -> list[dict]:
    # $geoNear must be the first stage, so visibility goes into its query
    return [
        {
            "$geoNear": {
                "near": {"type": "Point", "coordinates": [lng, lat]},
                "key": "startLocation",
                "distanceField": "distance",
                "distanceMultiplier": METERS_TO_UNIT[_check_unit(unit)],
                "query": VISIBLE_TOUR_FILTER,
            }
        },
        {"$project": {"distance": 1, "name": 1}},
    ]


async def get_tour_stats() -> list[dict]:
    if settings.CACHE_ENABLED:
        cached = await cache_manager.get(TOUR_STATS_KEY)
        if cached is not None:
            return cached

    stats = await crud.tour_stats(TOUR_STATS_PIPELINE)
    if settings.CACHE_ENABLED:
        await cache_manager.set(TOUR_STATS_KEY, stats)
    return stats


async def get_monthly_plan(year: int) -> list[dict]:
    if not 1 <= year <= 9998:
        raise ValidationError(f"Invalid year: {year}.")
    return await crud.tour_stats(monthly_plan_pipeline(year))


async def get_tours_within(distance: float, latlng: str, unit: str) -> list[dict]:
    if distance <= 0:
        raise ValidationError("Distance must be a positive number.")
    lat, lng = parse_latlng(latlng)
    tours = await crud.find_all(db.TOURS, tours_within_filter(distance, lat, lng, unit), VISIBLE_TOUR_FILTER)
    return [serialize_tour(tour) for tour in tours]


async def get_distances(latlng: str, unit: str) -> list[dict]:
    lat, lng = parse_latlng(latlng)
    distances = await crud.aggregate(db.TOURS, distances_pipeline(lat, lng, unit))
    return [serialize_tour(item) for item in distances]


# ==================== Review Operations ====================


async def list_reviews(query_params: Mapping, tour_id: str | None = None) -> list[dict]:
    base_filter = {"tour": crud.to_object_id(tour_id)} if tour_id else None
    reviews = await _list_page(db.REVIEWS, query_params, base_filter, field_types=REVIEW_FIELD_TYPES)
    reviews = await crud.populate_review_authors(reviews)
    return [serialize_review(review) for review in reviews]


async def get_review(review_id: str) -> dict:
    review = await crud.find_by_id(db.REVIEWS, review_id)
    if review is None:
        raise NotFound("No review found with that ID")
    [review] = await crud.populate_review_authors([review])
    return serialize_review(review)


async def _refresh_tour_rating(tour_id) -> None:
    await crud.calc_average_ratings(tour_id)
    await invalidate_tour(tour_id)


async def create_review(principal: AuthenticatedUser, data: ReviewCreate, tour_id: str | None = None) -> dict:
    """Create a review. Tour defaults to the nested route's, author to the session user."""
    target = data.tour or tour_id
    if not target:
        raise ValidationError("Review must belong to a tour.")
    tour = await crud.select_tour(target)
    if tour is None:
        raise NotFound("No tour found with that ID")

    author = crud.to_object_id(data.user) if data.user else principal.id
    review = await crud.insert(
        db.REVIEWS,
        new_review_document(data.review, data.rating, tour["_id"], author),
    )
    await _refresh_tour_rating(tour["_id"])
    logger.info(f"Review created: id={review['_id']} tour={tour['_id']} user={author}")
    return serialize_review(review)


async def update_review(review_id: str, data: ReviewUpdate) -> dict:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        return await get_review(review_id)

    review = await crud.find_by_id_and_update(db.REVIEWS, review_id, changes)
    if review is None:
        raise NotFound("No review found with that ID")
    await _refresh_tour_rating(review["tour"])
    return serialize_review(review)


async def delete_review(review_id: str) -> None:
    review = await crud.find_by_id_and_delete(db.REVIEWS, review_id)
    if review is None:
        raise NotFound("No review found with that ID")
    await _refresh_tour_rating(review["tour"])
    logger.info(f"Review deleted: id={review_id}")
