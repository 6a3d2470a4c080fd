"""Document shapes for the users, tours and reviews collections.

MongoDB is schemaless, so this module owns what the ORM models did in a
relational service: enumerations, defaults for new documents, fields that
must never leave the service, and conversion to JSON-safe dicts.
"""

from datetime import datetime, timezone
from enum import Enum

from bson import ObjectId

from .utils import slugify


class Role(str, Enum):
    USER = "user"
    GUIDE = "guide"
    LEAD_GUIDE = "lead-guide"
    ADMIN = "admin"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    DIFFICULT = "difficult"


# ==================== Visibility Rules ====================

ACTIVE_USER_FILTER = {"active": {"$ne": False}}
VISIBLE_TOUR_FILTER = {"secretTour": {"$ne": True}}

USER_PRIVATE_FIELDS = ("password", "passwordResetToken", "passwordResetExpires", "active", "__v")

DEFAULT_RATINGS_AVERAGE = 4.5

# ==================== Query Field Types ====================

TOUR_FIELD_TYPES = {
    "_id": ObjectId,
    "name": str,
    "slug": str,
    "duration": int,
    "maxGroupSize": int,
    "difficulty": str,
    "ratingsAverage": float,
    "ratingsQuantity": int,
    "price": float,
    "priceDiscount": float,
}

USER_FIELD_TYPES = {
    "_id": ObjectId,
    "name": str,
    "email": str,
    "role": str,
}

REVIEW_FIELD_TYPES = {
    "_id": ObjectId,
    "tour": ObjectId,
    "user": ObjectId,
    "rating": float,
    "review": str,
}

# ==================== New Documents ====================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_user_document(name: str, email: str, hashed_password: str,
                      role: Role = Role.USER, photo: str | None = None) -> dict:
    document = {
        "name": name,
        "email": email,
        "role": Role(role).value,
        "password": hashed_password,
        "active": True,
        "createdAt": utc_now(),
    }
    if photo:
        document["photo"] = photo
    return document


def new_tour_document(data: dict) -> dict:
    document = {
        "ratingsAverage": DEFAULT_RATINGS_AVERAGE,
        "ratingsQuantity": 0,
        "images": [],
        "startDates": [],
        "secretTour": False,
        **data,
    }
    document["slug"] = slugify(document["name"])
    document["createdAt"] = utc_now()
    return document


def new_review_document(review: str, rating: float | None, tour_id: ObjectId, user_id: ObjectId) -> dict:
    document = {
        "review": review,
        "tour": tour_id,
        "user": user_id,
        "createdAt": utc_now(),
    }
    if rating is not None:
        document["rating"] = rating
    return document

# ==================== Serialization ====================


def _to_json_safe(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {key: _to_json_safe(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_to_json_safe(item) for item in value]
    return value


def serialize_document(document: dict | None) -> dict | None:
    """Stringify ObjectIds and expose ``id`` next to ``_id``."""
    if document is None:
        return None
    result = _to_json_safe(document)
    if "_id" in result:
        result["id"] = result["_id"]
    return result


def serialize_user(document: dict | None) -> dict | None:
    if document is None:
        return None
    visible = {key: value for key, value in document.items() if key not in USER_PRIVATE_FIELDS}
    return serialize_document(visible)


def serialize_tour(document: dict | None) -> dict | None:
    if document is None:
        return None
    result = serialize_document(document)
    if isinstance(result.get("duration"), (int, float)):
        result["durationWeeks"] = result["duration"] / 7
    if "reviews" in result:
        result["reviews"] = [serialize_review(review) for review in document["reviews"]]
    return result


def serialize_review(document: dict | None) -> dict | None:
    if document is None:
        return None
    result = serialize_document(document)
    if isinstance(document.get("user"), dict):
        result["user"] = serialize_user(document["user"])
    return result
