from typing import Any, Dict, Optional

from fastapi import Depends, Request
from pymongo.database import Database

from database import get_db, oid
from errors import AuthenticationError, PermissionDenied, ValidationError
from security import decode_access_token

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer"):
        parts = header.split(" ")
        if len(parts) > 1 and parts[1]:
            return parts[1]
    return None


def get_current_user(request: Request, db: Database = Depends(get_db)) -> Dict[str, Any]:
    token = extract_token(request)
    if not token:
        raise AuthenticationError("Not authorized to access this route")

    claims = decode_access_token(token)
    try:
        user_id = oid(claims.get("userId"))
    except ValidationError:
        raise AuthenticationError("Invalid or expired token")

    user = db["users"].find_one({"_id": user_id}, {"password": 0})
    if not user:
        raise AuthenticationError("User not found")
    if not user.get("isActive", True):
        raise AuthenticationError("Account is deactivated")
    return user


def require_roles(*roles: str):
    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise PermissionDenied("You do not have permission to perform this action")
        return user

    return checker


require_admin = require_roles("admin")
