"""Pydantic schemas for request validation."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .config import settings
from .models import Difficulty, Role


# ==================== Authentication Schemas ====================

class UserSignup(BaseModel):
    """Schema for self-service registration."""
    name: str = Field(..., min_length=1, max_length=settings.USER_NAME_MAX_LENGTH, description="User's full name")
    email: EmailStr = Field(..., max_length=settings.USER_EMAIL_MAX_LENGTH, description="User's email address")
    photo: str | None = None
    password: str = Field(..., min_length=settings.PASSWORD_MIN_LENGTH, max_length=100)
    confirmPassword: str = Field(..., description="Must repeat password")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is not just whitespace."""
        if not v.strip():
            raise ValueError("Name cannot be empty or only whitespace")
        return v.strip()

    @model_validator(mode='after')
    def passwords_match(self):
        if self.password != self.confirmPassword:
            raise ValueError("Passwords are not the same")
        return self


class UserCreate(UserSignup):
    """Admin-side user creation; the only path that can pick a role."""
    role: Role = Role.USER


class UserLogin(BaseModel):
    """Login credentials. Presence is checked by the service to keep one message."""
    email: str | None = None
    password: str | None = None


class ForgotPassword(BaseModel):
    email: EmailStr


class ResetPassword(BaseModel):
    password: str = Field(..., min_length=settings.PASSWORD_MIN_LENGTH, max_length=100)
    confirmPassword: str

    @model_validator(mode='after')
    def passwords_match(self):
        if self.password != self.confirmPassword:
            raise ValueError("Passwords are not the same")
        return self


class UpdatePassword(BaseModel):
    password: str = Field(..., description="Current password")
    newPassword: str = Field(..., min_length=settings.PASSWORD_MIN_LENGTH, max_length=100)
    confirmPassword: str

    @model_validator(mode='after')
    def passwords_match(self):
        if self.newPassword != self.confirmPassword:
            raise ValueError("Passwords are not the same")
        return self


# ==================== User Schemas ====================

class UpdateMe(BaseModel):
    """Profile update for the current user. Extra keys are kept so password
    attempts can be rejected explicitly instead of silently dropped."""
    model_config = ConfigDict(extra="allow")

    name: str | None = Field(None, min_length=1, max_length=settings.USER_NAME_MAX_LENGTH)
    email: EmailStr | None = Field(None, max_length=settings.USER_EMAIL_MAX_LENGTH)
    photo: str | None = None


class UserAdminUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=settings.USER_NAME_MAX_LENGTH)
    email: EmailStr | None = Field(None, max_length=settings.USER_EMAIL_MAX_LENGTH)
    photo: str | None = None
    role: Role | None = None


# ==================== Tour Schemas ====================

class GeoPoint(BaseModel):
    """GeoJSON point; coordinates are [longitude, latitude]."""
    type: Literal["Point"] = "Point"
    coordinates: list[float] = Field(..., min_length=2, max_length=2)
    address: str | None = None
    description: str | None = None
    day: int | None = None

    @field_validator('coordinates')
    @classmethod
    def validate_coordinates(cls, v: list[float]) -> list[float]:
        lng, lat = v
        if not -180 <= lng <= 180 or not -90 <= lat <= 90:
            raise ValueError("Coordinates must be [longitude, latitude]")
        return v


class _TourFields(BaseModel):
    model_config = ConfigDict(use_enum_values=True, str_strip_whitespace=True)

    @model_validator(mode='after')
    def discount_below_price(self):
        if self.priceDiscount is not None and self.price is not None and self.priceDiscount >= self.price:
            raise ValueError(f"Discount price ({self.priceDiscount}) should be below regular price")
        return self


class TourCreate(_TourFields):
    name: str = Field(..., min_length=settings.TOUR_NAME_MIN_LENGTH, max_length=settings.TOUR_NAME_MAX_LENGTH)
    duration: int = Field(..., gt=0)
    maxGroupSize: int = Field(..., gt=0)
    difficulty: Difficulty
    ratingsAverage: float = Field(4.5, ge=1, le=5)
    ratingsQuantity: int = Field(0, ge=0)
    price: float = Field(..., gt=0)
    priceDiscount: float | None = Field(None, ge=0)
    summary: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    imageCover: str = Field(..., min_length=1)
    images: list[str] = []
    startDates: list[datetime] = []
    secretTour: bool = False
    startLocation: GeoPoint | None = None
    locations: list[GeoPoint] = []


class TourUpdate(_TourFields):
    name: str | None = Field(None, min_length=settings.TOUR_NAME_MIN_LENGTH, max_length=settings.TOUR_NAME_MAX_LENGTH)
    duration: int | None = Field(None, gt=0)
    maxGroupSize: int | None = Field(None, gt=0)
    difficulty: Difficulty | None = None
    ratingsAverage: float | None = Field(None, ge=1, le=5)
    ratingsQuantity: int | None = Field(None, ge=0)
    price: float | None = Field(None, gt=0)
    priceDiscount: float | None = Field(None, ge=0)
    summary: str | None = Field(None, min_length=1)
    description: str | None = Field(None, min_length=1)
    imageCover: str | None = Field(None, min_length=1)
    images: list[str] | None = None
    startDates: list[datetime] | None = None
    secretTour: bool | None = None
    startLocation: GeoPoint | None = None
    locations: list[GeoPoint] | None = None


# ==================== Review Schemas ====================

class ReviewCreate(BaseModel):
    review: str = Field(..., min_length=1, description="Review cannot be empty")
    rating: float | None = Field(None, ge=1, le=5)
    tour: str | None = None
    user: str | None = None


class ReviewUpdate(BaseModel):
    review: str | None = Field(None, min_length=1)
    rating: float | None = Field(None, ge=1, le=5)
