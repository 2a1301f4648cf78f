from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from checkout_service.config import settings
from checkout_service.coordinator import Actor, BUYER, OPERATOR


def current_user(authorization: str = Header(None)) -> Actor:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
        user_id = claims["sub"]
    except (AttributeError, ValueError, KeyError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    role = OPERATOR if claims.get("role") == OPERATOR else BUYER
    return Actor(id=str(user_id), role=role)
