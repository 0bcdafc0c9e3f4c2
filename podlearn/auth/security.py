"""Bearer token verification.

Tokens are issued by the account service; this module only checks them and
extracts the integer user id.
"""

from typing import Optional

import jwt  # PyJWT
from fastapi import Header, HTTPException, Request, status

from podlearn.config import get_settings

JWT_ALG = "HS256"
ACCESS_TOKEN_TYPE = "access"


def decode_access_token(token: str, secret: Optional[str] = None) -> dict:
    """
    Decode and validate an access token.

    Args:
        token: Encoded JWT
        secret: Signing secret (defaults to JWT_SECRET)

    Returns:
        Decoded claims

    Raises:
        jwt.InvalidTokenError: If the signature, expiry or token type is wrong
    """
    claims = jwt.decode(
        token,
        secret or get_settings().jwt_secret,
        algorithms=[JWT_ALG],
        options={"require": ["exp"]},
    )
    if claims.get("typ", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
        raise jwt.InvalidTokenError("not an access token")
    return claims


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> int:
    """Extract the authenticated user id from the Authorization header."""
    if not authorization:
        raise _unauthorized("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Invalid authorization scheme. Use 'Bearer <token>'")

    try:
        claims = decode_access_token(token.strip())
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")

    user_id = claims.get("user_id")
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise _unauthorized("Token carries no user id")

    # Stored for the rate limiter key
    request.state.user_id = user_id
    return user_id
