import os

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from momo_billing import config  # noqa: F401  (loads .env)


def verify_token(authorization: str = Header(...)) -> str:
    """Return the user id carried in the bearer token's sub claim."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        payload = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        user_id = payload["sub"]
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)


def verify_cron_secret(authorization: str = Header(None)):
    cron_secret = os.getenv("CRON_SECRET")
    if not cron_secret:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    if authorization != f"Bearer {cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
