import os

from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError, ExpiredSignatureError
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import Photographer

# Photographers sign in with the external identity provider; tokens are only validated here.
JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options={"verify_aud": bool(JWT_AUDIENCE)},
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims


def bearer_claims(authorization: str = Header(default=None)) -> dict:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(token.strip())


def require_photographer(
    claims: dict = Depends(bearer_claims),
    db: Session = Depends(get_db),
) -> Photographer:
    """The tenant behind the token. Every back-office query is scoped to it."""
    photographer = db.scalar(
        select(Photographer).where(Photographer.auth_user_id == str(claims["sub"]))
    )
    if photographer is None:
        raise HTTPException(status_code=403, detail="No photographer profile for this user")
    return photographer
