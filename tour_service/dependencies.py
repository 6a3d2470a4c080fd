"""FastAPI dependencies for authentication and authorization.

``protect`` is the only producer of ``AuthenticatedUser``; ``restrict_to``
depends on it, so a role check can never run on an unverified request.
"""

from dataclasses import dataclass, field

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth import changed_password_after, decode_access_token
from .crud import select_user
from .errors import Forbidden, InvalidToken, StalePassword, Unauthenticated, UserGone, ValidationError
from .logger import logger
from .models import Role


# ==================== Proof Object ====================

_VERIFIED = object()


@dataclass(frozen=True)
class AuthenticatedUser:
    """A user whose session token has been verified for this request."""
    user: dict
    _seal: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._seal is not _VERIFIED:
            raise TypeError("AuthenticatedUser is only issued by verify_session()")

    @property
    def id(self):
        return self.user["_id"]

    @property
    def role(self) -> str:
        return self.user.get("role", Role.USER.value)


# ==================== Authentication Dependencies ====================

security = HTTPBearer(auto_error=False)


async def verify_session(token: str | None) -> AuthenticatedUser:
    """Check a raw session token and load its owner."""
    if not token:
        raise Unauthenticated("You are not logged in! Please log in to get access.")

    payload = decode_access_token(token)
    if payload is None:
        raise InvalidToken("Invalid token. Please log in again!")

    try:
        user = await select_user(payload["id"])
    except ValidationError:
        # Signed by us but carrying an id we would never issue
        raise InvalidToken("Invalid token. Please log in again!") from None
    if user is None:
        raise UserGone("The user belonging to this token does no longer exist.")

    if changed_password_after(user.get("passwordChangedAt"), payload["iat"]):
        logger.info(f"Rejected token issued before password change: user={user['_id']}")
        raise StalePassword("User recently changed password! Please log in again.")

    return AuthenticatedUser(user=user, _seal=_VERIFIED)


async def protect(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthenticatedUser:
    """Require a valid ``Authorization: Bearer <token>`` header."""
    token = credentials.credentials if credentials else None
    return await verify_session(token)


# ==================== Authorization Dependencies ====================

def authorize(principal: AuthenticatedUser, roles: tuple[str, ...]) -> AuthenticatedUser:
    if not isinstance(principal, AuthenticatedUser):
        raise TypeError("authorize() requires an AuthenticatedUser")
    if principal.role not in roles:
        logger.info(f"Forbidden: user={principal.id} role={principal.role} allowed={roles}")
        raise Forbidden("You do not have permission to perform this action")
    return principal


def restrict_to(*roles: Role | str):
    """Dependency factory allowing only the given roles."""
    allowed = tuple(Role(role).value for role in roles)

    async def dependency(principal: AuthenticatedUser = Depends(protect)) -> AuthenticatedUser:
        return authorize(principal, allowed)

    return dependency
