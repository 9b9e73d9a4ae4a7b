from typing import Any, Dict

from jose import jwt

from drivechat.core.config import settings


def decode_access_token(token: str) -> Dict[str, Any]:
    # raises jose.JWTError on a bad signature or an expired token
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def create_access_token(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
