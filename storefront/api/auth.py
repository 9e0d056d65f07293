"""
Bearer-token authentication.

Tokens are HS256 JWTs carrying ``id`` (or ``sub``) and ``role`` claims. The
decoded caller is handed to the core as an explicit Principal.

pip install pyjwt
"""

from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request

from storefront.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from storefront.schemas.domain import Principal, Role

logger = structlog.get_logger().bind(component="auth")


def decode_token(token: str, secret: str, algorithm: str) -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token expired")
    except jwt.InvalidTokenError:
        raise InvalidTokenError()

    user_id = claims.get("id") or claims.get("sub")
    if not user_id:
        raise InvalidTokenError()
    try:
        role = Role(claims.get("role", Role.CUSTOMER.value))
    except ValueError:
        raise InvalidTokenError()
    return Principal(user_id=str(user_id), role=role)


def issue_token(principal: Principal, secret: str, algorithm: str = "HS256") -> str:
    return jwt.encode({"id": principal.user_id, "role": principal.role.value}, secret, algorithm=algorithm)


async def get_principal(request: Request) -> Principal:
    header: Optional[str] = request.headers.get("Authorization")
    if not header or not header.startswith("Bearer "):
        raise AuthenticationError()
    auth = request.app.state.settings.auth
    return decode_token(header[len("Bearer "):], auth.JWT_SECRET, auth.JWT_ALGORITHM)


def require_roles(*roles: Role):
    """Dependency factory restricting a route to the given roles"""
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            logger.warning("access_denied", user_id=principal.user_id, role=principal.role.value)
            raise ForbiddenError()
        return principal
    return dependency


require_admin = require_roles(Role.ADMIN, Role.SUPER_ADMIN)
require_staff = require_roles(Role.ADMIN, Role.SUPER_ADMIN, Role.DELIVERY_PARTNER)
