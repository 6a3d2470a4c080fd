"""Database CRUD operations for users, tours and reviews.

Every driver call runs inside ``store_errors`` so callers only ever see the
application error taxonomy.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from . import db
from .errors import AppError, ValidationError, normalize_store_error
from .logger import logger
from .models import ACTIVE_USER_FILTER, DEFAULT_RATINGS_AVERAGE, VISIBLE_TOUR_FILTER, utc_now
from .query import QueryDescriptor


# ==================== Helper Functions ====================

@asynccontextmanager
async def store_errors(operation: str):
    """Translate driver exceptions raised inside the block."""
    try:
        yield
    except AppError:
        raise
    except (PyMongoError, InvalidId) as e:
        error = normalize_store_error(e)
        if error.status_code >= 500:
            logger.error(f"Store operation '{operation}' failed: {str(e)}", exc_info=True)
        else:
            logger.debug(f"Store operation '{operation}' rejected: {str(e)}")
        raise error from e


def to_object_id(value) -> ObjectId:
    """Parse a path/body identifier. Raises ValidationError when malformed."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid _id: {value}.") from None


def _scoped(filter_: dict | None, scope: dict | None) -> dict:
    # Scope keys (visibility rules) are applied last so callers cannot override them
    return {**(filter_ or {}), **(scope or {})}


# ==================== Generic Operations ====================

async def find(collection: str, descriptor: QueryDescriptor, scope: dict | None = None) -> tuple[list[dict], int]:
    """Run a list query. Returns the page of documents and the total match count."""
    coll = db.get_collection(collection)
    query = _scoped(descriptor.filter, scope)
    async with store_errors(f"find {collection}"):
        total = await coll.count_documents(query)
        cursor = (
            coll.find(query, descriptor.projection or None)
            .sort(list(descriptor.sort))
            .skip(descriptor.skip)
            .limit(descriptor.limit)
        )
        documents = await cursor.to_list(length=None)
    logger.debug(f"Query on {collection} returned {len(documents)} documents out of {total} total")
    return documents, total


async def find_all(collection: str, filter_: dict, scope: dict | None = None,
                   projection: dict | None = None) -> list[dict]:
    """Unpaginated find, for small geo result sets."""
    async with store_errors(f"find_all {collection}"):
        cursor = db.get_collection(collection).find(_scoped(filter_, scope), projection)
        return await cursor.to_list(length=None)


async def find_one(collection: str, filter_: dict, scope: dict | None = None) -> dict | None:
    async with store_errors(f"find_one {collection}"):
        return await db.get_collection(collection).find_one(_scoped(filter_, scope))


async def find_by_id(collection: str, document_id, scope: dict | None = None) -> dict | None:
    return await find_one(collection, {"_id": to_object_id(document_id)}, scope)


async def insert(collection: str, document: dict) -> dict:
    """Insert a document and return it with its generated ``_id``."""
    async with store_errors(f"insert {collection}"):
        result = await db.get_collection(collection).insert_one(document)
    document["_id"] = result.inserted_id
    return document


async def find_by_id_and_update(collection: str, document_id, changes: dict,
                                scope: dict | None = None) -> dict | None:
    """Apply ``$set`` changes and return the updated document, or None if absent."""
    query = _scoped({"_id": to_object_id(document_id)}, scope)
    async with store_errors(f"update {collection}"):
        return await db.get_collection(collection).find_one_and_update(
            query, {"$set": changes}, return_document=ReturnDocument.AFTER
        )


async def find_by_id_and_delete(collection: str, document_id, scope: dict | None = None) -> dict | None:
    query = _scoped({"_id": to_object_id(document_id)}, scope)
    async with store_errors(f"delete {collection}"):
        return await db.get_collection(collection).find_one_and_delete(query)


async def aggregate(collection: str, pipeline: list[dict]) -> list[dict]:
    async with store_errors(f"aggregate {collection}"):
        cursor = await db.get_collection(collection).aggregate(pipeline)
        return await cursor.to_list(length=None)


# ==================== User Operations ====================

async def insert_user(document: dict) -> dict:
    """Insert a new user. Raises Conflict on duplicate email."""
    return await insert(db.USERS, document)


async def select_user(user_id) -> dict | None:
    """Retrieve an active user by ID."""
    return await find_by_id(db.USERS, user_id, ACTIVE_USER_FILTER)


async def select_user_by_email(email: str) -> dict | None:
    """Retrieve an active user by email address."""
    return await find_one(db.USERS, {"email": email}, ACTIVE_USER_FILTER)


async def update_user(user_id, changes: dict) -> dict | None:
    return await find_by_id_and_update(db.USERS, user_id, changes, ACTIVE_USER_FILTER)


async def delete_user(user_id) -> dict | None:
    """Hard delete, used by administrators only."""
    return await find_by_id_and_delete(db.USERS, user_id)


async def deactivate_user(user_id) -> dict | None:
    return await find_by_id_and_update(db.USERS, user_id, {"active": False}, ACTIVE_USER_FILTER)


async def set_password_reset(user_id, token_hash: str, expires_at: datetime) -> dict | None:
    """Store a reset fingerprint, replacing any earlier one."""
    return await update_user(user_id, {
        "passwordResetToken": token_hash,
        "passwordResetExpires": expires_at,
    })


async def clear_password_reset(user_id, token_hash: str) -> bool:
    """Remove reset fields only if they still belong to ``token_hash``."""
    async with store_errors("clear password reset"):
        result = await db.get_collection(db.USERS).update_one(
            {"_id": to_object_id(user_id), "passwordResetToken": token_hash},
            {"$unset": {"passwordResetToken": "", "passwordResetExpires": ""}},
        )
    return result.modified_count == 1


async def consume_password_reset(token_hash: str, hashed_password: str, changed_at: datetime) -> dict | None:
    """Atomically swap the password for an unexpired reset fingerprint.

    Returns the updated user, or None when no active user holds a live token
    with this fingerprint.
    """
    query = {
        "passwordResetToken": token_hash,
        "passwordResetExpires": {"$gt": utc_now()},
        **ACTIVE_USER_FILTER,
    }
    update = {
        "$set": {"password": hashed_password, "passwordChangedAt": changed_at},
        "$unset": {"passwordResetToken": "", "passwordResetExpires": ""},
    }
    async with store_errors("consume password reset"):
        return await db.get_collection(db.USERS).find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )


async def update_password(user_id, current_hash: str, hashed_password: str, changed_at: datetime) -> dict | None:
    """Replace the password only if the stored hash is still ``current_hash``."""
    query = {"_id": to_object_id(user_id), "password": current_hash, **ACTIVE_USER_FILTER}
    update = {"$set": {"password": hashed_password, "passwordChangedAt": changed_at}}
    async with store_errors("update password"):
        return await db.get_collection(db.USERS).find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )


# ==================== Tour Operations ====================

async def select_tour(tour_id) -> dict | None:
    return await find_by_id(db.TOURS, tour_id, VISIBLE_TOUR_FILTER)


async def select_tour_with_reviews(tour_id) -> dict | None:
    """Retrieve a visible tour with its reviews (authors populated)."""
    tour = await select_tour(tour_id)
    if tour is None:
        return None
    tour["reviews"] = await list_reviews_for_tour(tour["_id"])
    return tour


async def tour_stats(pipeline: list[dict]) -> list[dict]:
    return await aggregate(db.TOURS, [{"$match": VISIBLE_TOUR_FILTER}, *pipeline])


# ==================== Review Operations ====================

async def populate_review_authors(reviews: list[dict]) -> list[dict]:
    """Replace each review's ``user`` id with ``{_id, name, photo}``."""
    user_ids = list({review["user"] for review in reviews if isinstance(review.get("user"), ObjectId)})
    if not user_ids:
        return reviews
    async with store_errors("populate review authors"):
        cursor = db.get_collection(db.USERS).find({"_id": {"$in": user_ids}}, {"name": 1, "photo": 1})
        authors = {user["_id"]: user for user in await cursor.to_list(length=None)}
    for review in reviews:
        author = authors.get(review.get("user"))
        if author is not None:
            review["user"] = author
    return reviews


async def list_reviews_for_tour(tour_id: ObjectId) -> list[dict]:
    async with store_errors("list reviews for tour"):
        cursor = db.get_collection(db.REVIEWS).find({"tour": tour_id}).sort([("createdAt", -1)])
        reviews = await cursor.to_list(length=None)
    return await populate_review_authors(reviews)


async def calc_average_ratings(tour_id: ObjectId) -> dict:
    """Recompute and store a tour's rating summary from its reviews."""
    stats = await aggregate(db.REVIEWS, [
        {"$match": {"tour": tour_id, "rating": {"$ne": None}}},
        {"$group": {"_id": "$tour", "nRating": {"$sum": 1}, "avgRating": {"$avg": "$rating"}}},
    ])
    if stats:
        summary = {
            "ratingsQuantity": stats[0]["nRating"],
            "ratingsAverage": round(stats[0]["avgRating"], 1),
        }
    else:
        summary = {"ratingsQuantity": 0, "ratingsAverage": DEFAULT_RATINGS_AVERAGE}
    await find_by_id_and_update(db.TOURS, tour_id, summary)
    logger.debug(f"Ratings recomputed for tour {tour_id}: {summary}")
    return summary
