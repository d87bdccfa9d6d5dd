from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError

from storefront.config import Settings, get_settings


def verify_token(authorization: str = Header(None), settings: Settings = Depends(get_settings)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if not (claims.get("is_admin") or claims.get("role") == "admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims
