"""
User directory backed by the ``users`` collection.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.collection import Collection

from database import to_object_id, utcnow
from errors import InternalFailure, InvalidInput, NotFound
from schemas import (
    DEFAULT_ROLE,
    DEFAULT_USER_STATUS,
    DISPLAY_ROLE_FALLBACK,
    ROLES,
    USER_STATUSES,
    User,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "photoURL")


class UserDirectory:
    def __init__(self, collection: Optional[Collection], clock=utcnow):
        self._collection = collection
        self._clock = clock

    @property
    def collection(self) -> Collection:
        if self._collection is None:
            raise InternalFailure("Database not configured")
        return self._collection

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"email": email})

    def upsert(self, email: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert, or fully overwrite name/photoURL/role/status/createdAt.

        Values not supplied reset to the creation defaults, also on existing
        records.
        """
        if not email:
            raise InvalidInput("Email is required")
        try:
            record = User(
                email=email,
                name=fields.get("name"),
                photoURL=fields.get("photoURL"),
                role=fields.get("role") or DEFAULT_ROLE,
                status=fields.get("status") or DEFAULT_USER_STATUS,
                createdAt=self._clock(),
            ).model_dump()
        except ValidationError:
            raise InvalidInput("Invalid role or status")

        overwrite = {k: record[k] for k in ("name", "photoURL", "role", "status", "createdAt")}
        result = self.collection.update_one(
            {"email": email},
            {"$set": overwrite, "$setOnInsert": {"email": email}},
            upsert=True,
        )
        logger.info("%s user %s", "Created" if result.upserted_id is not None else "Overwrote", email)
        return self.find_by_email(email)

    def create_if_absent(self, email: str, fields: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Register a user, or refresh only the profile fields of an existing one.

        Role and status are never taken from the caller. Returns the stored
        record and whether it was created.
        """
        if not email:
            raise InvalidInput("Email is required")
        profile = {k: fields[k] for k in PROFILE_FIELDS if fields.get(k) is not None}
        record = User(email=email, createdAt=self._clock(), **profile).model_dump()
        result = self.collection.update_one(
            {"email": email},
            {
                "$setOnInsert": {k: v for k, v in record.items() if k not in profile},
                **({"$set": profile} if profile else {}),
            },
            upsert=True,
        )
        created = result.upserted_id is not None
        logger.info("%s user %s", "Created" if created else "Refreshed", email)
        return self.find_by_email(email), created

    def get_role(self, email: str) -> str:
        user = self.find_by_email(email)
        return (user or {}).get("role") or DISPLAY_ROLE_FALLBACK

    def list_all(self) -> List[Dict[str, Any]]:
        return list(self.collection.find({}))

    def set_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise InvalidInput("Invalid role")
        self._update_by_id(user_id, {"role": role})

    def set_status(self, user_id: str, status: str) -> None:
        if status not in USER_STATUSES:
            raise InvalidInput("Invalid status")
        self._update_by_id(user_id, {"status": status})

    def update_own_profile(self, email: str, fields: Dict[str, Any]) -> None:
        update = {k: fields.get(k) for k in PROFILE_FIELDS if k in fields}
        if not update:
            if self.find_by_email(email) is None:
                raise NotFound("User not found")
            return
        result = self.collection.update_one({"email": email}, {"$set": update})
        if result.matched_count == 0:
            raise NotFound("User not found")

    def role_counts(self) -> Dict[str, int]:
        counts = {role: self.collection.count_documents({"role": role}) for role in sorted(ROLES)}
        return {
            "totalUsers": self.collection.count_documents({}),
            "borrowerCount": counts["borrower"],
            "managerCount": counts["manager"],
            "adminCount": counts["admin"],
        }

    def _update_by_id(self, user_id: str, update: Dict[str, Any]) -> None:
        result = self.collection.update_one({"_id": to_object_id(user_id)}, {"$set": update})
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info("User %s updated: %s", user_id, update)
