import logging

from fastapi import HTTPException, Request, status
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from buddyup import config

settings = config.get_settings()
log = logging.getLogger(__name__)


def decode_token(token: str) -> str:
    """Validate an access token and return the user id from its 'sub' claim."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_iat": False, "verify_aud": False}  # Disable iat validation to avoid clock skew issues
        )
    except ExpiredSignatureError as e:
        log.info(f"[Auth] Token expired: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except JWTError as e:
        log.info(f"[Auth] Invalid token - error: {type(e).__name__}: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    # Tokens without a type are issued by the auth provider; anything else must be an access token
    typ = payload.get("typ")
    if typ is not None and typ != "access":
        log.info(f"[Auth] Invalid token type: {typ}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token (no sub)"
        )
    return str(sub)


async def get_current_user_id(request: Request) -> str:
    """
    Extract and validate JWT token from Authorization header.
    Returns the user ID (profile UUID) from the token's 'sub' claim.

    This is used as a dependency in protected routes.
    """
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token"
        )

    token = auth.split(" ", 1)[1].strip()
    return decode_token(token)
