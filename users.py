import math
import re
from typing import Any, Dict, Optional

from pydantic.alias_generators import to_camel
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now_utc, oid, paginate
from errors import AuthenticationError, ConflictError, NotFoundError
from log import get_logger
from schemas import AdminUserUpdateBody, RegisterBody, UpdateProfileBody, User
from security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password,
    verify_password,
)

logger = get_logger(__name__)

NO_PASSWORD = {"password": 0}


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k != "password"}


class UserService:
    def __init__(self, db: Database):
        self.db = db

    # ---------------------- Auth ----------------------

    def _tokens(self, user: Dict[str, Any]) -> Dict[str, str]:
        return {
            "accessToken": create_access_token(user),
            "refreshToken": create_refresh_token(user["_id"]),
        }

    def register(self, body: RegisterBody) -> Dict[str, Any]:
        email = body.email.strip().lower()
        if self.db["users"].find_one({"email": email}, {"_id": 1}):
            raise ConflictError("Email already registered")
        user = User(
            email=email,
            password=hash_password(body.password),
            first_name=body.first_name.strip(),
            last_name=body.last_name.strip(),
            phone=body.phone,
        )
        try:
            created = create_document(self.db, "users", user)
        except DuplicateKeyError:
            raise ConflictError("Email already registered")
        logger.info(f"User {email} registered")
        return {"user": public_user(created), **self._tokens(created)}

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.db["users"].find_one({"email": email.strip().lower()})
        if not user or not verify_password(password, user.get("password", "")):
            raise AuthenticationError("Invalid email or password")
        if not user.get("isActive", True):
            raise AuthenticationError("Account is deactivated")
        return {"user": public_user(user), **self._tokens(user)}

    def refresh(self, refresh_token: Optional[str]) -> Dict[str, Any]:
        if not refresh_token:
            raise AuthenticationError("Refresh token is required")
        claims = decode_refresh_token(refresh_token)
        user = self.db["users"].find_one({"_id": oid(claims.get("userId"))}, NO_PASSWORD)
        if not user:
            raise AuthenticationError("User not found")
        if not user.get("isActive", True):
            raise AuthenticationError("Account is deactivated")
        return {"accessToken": create_access_token(user)}

    def update_profile(self, user_id, body: UpdateProfileBody) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for field in ("first_name", "last_name", "phone"):
            value = getattr(body, field)
            if value:
                changes[to_camel(field)] = value.strip()
        if body.addresses is not None:
            changes["addresses"] = [a.model_dump(by_alias=True) for a in body.addresses]
        if body.password:
            # stored passwords are always hashes
            changes["password"] = hash_password(body.password)
        changes["updatedAt"] = now_utc()
        updated = self.db["users"].find_one_and_update(
            {"_id": user_id},
            {"$set": changes},
            projection=NO_PASSWORD,
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("User not found")
        return updated

    # ---------------------- Admin ----------------------

    def list_users(self, page: Optional[int], limit: Optional[int], search: Optional[str]) -> Dict[str, Any]:
        page, limit, skip = paginate(page, limit, default_limit=20)
        query: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"firstName": pattern}, {"lastName": pattern}, {"email": pattern}]
        users = list(
            self.db["users"].find(query, NO_PASSWORD).sort("createdAt", DESCENDING).skip(skip).limit(limit)
        )
        total = self.db["users"].count_documents(query)
        return {"items": users, "total": total, "page": page, "pages": math.ceil(total / limit)}

    def get(self, user_id: str) -> Dict[str, Any]:
        user = self.db["users"].find_one({"_id": oid(user_id)}, NO_PASSWORD)
        if not user:
            raise NotFoundError("User not found")
        return user

    def admin_update(self, user_id: str, body: AdminUserUpdateBody) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"updatedAt": now_utc()}
        if body.is_active is not None:
            changes["isActive"] = body.is_active
        if body.role is not None:
            changes["role"] = body.role
        updated = self.db["users"].find_one_and_update(
            {"_id": oid(user_id)},
            {"$set": changes},
            projection=NO_PASSWORD,
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("User not found")
        return updated

    def deactivate(self, user_id: str) -> Dict[str, Any]:
        user = self.admin_update(user_id, AdminUserUpdateBody(is_active=False))
        logger.info(f"User {user['email']} deactivated")
        return user
