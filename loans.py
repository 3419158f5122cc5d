"""
Loan store backed by the ``loans`` collection.

Owner-initiated changes go through :meth:`LoanStore.conditional_update` and
:meth:`LoanStore.conditional_delete`, which match id and expected status in
one call so a concurrent status change cannot slip in between check and write.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.collection import Collection

from database import to_object_id, utcnow
from errors import InternalFailure, InvalidInput, NotFound, NotMatched
from schemas import Loan

logger = logging.getLogger(__name__)

# Never writable through an update patch
PROTECTED_FIELDS = frozenset({"_id", "id", "email", "createdAt", "createdBy"})


class LoanStore:
    def __init__(self, collection: Optional[Collection], clock=utcnow):
        self._collection = collection
        self._clock = clock

    @property
    def collection(self) -> Collection:
        if self._collection is None:
            raise InternalFailure("Database not configured")
        return self._collection

    def _find_sorted(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        return list(self.collection.find(query).sort("createdAt", DESCENDING))

    def list_for_owner(self, email: str) -> List[Dict[str, Any]]:
        return self._find_sorted({"email": email})

    def list_all(self) -> List[Dict[str, Any]]:
        return self._find_sorted({})

    def list_by_status_in(self, statuses: Iterable[str]) -> List[Dict[str, Any]]:
        return self._find_sorted({"status": {"$in": sorted(set(statuses))}})

    def create(
        self, owner_email: str, fields: Dict[str, Any], created_by: Optional[str] = None
    ) -> Dict[str, Any]:
        data = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        data.update(email=owner_email, createdAt=self._clock())
        if created_by:
            data["createdBy"] = created_by
            data.setdefault("showOnHome", False)
        try:
            loan = Loan(**data).model_dump()
        except ValidationError as exc:
            raise InvalidInput("Invalid loan data") from exc
        if loan.get("createdBy") is None:
            loan.pop("createdBy", None)

        result = self.collection.insert_one(loan)
        loan["_id"] = result.inserted_id
        logger.info(
            "Loan %s created for %s%s",
            result.inserted_id,
            owner_email,
            f" by {created_by}" if created_by else "",
        )
        return loan

    def find_by_id(self, loan_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": to_object_id(loan_id)})

    def conditional_update(self, loan_id: str, expected_status: str, patch: Dict[str, Any]) -> None:
        update = self._clean_patch(patch)
        result = self.collection.update_one(
            {"_id": to_object_id(loan_id), "status": expected_status}, {"$set": update}
        )
        if result.matched_count == 0:
            raise NotMatched()
        logger.info("Loan %s updated while %s: %s", loan_id, expected_status, update)

    def unconditional_update(self, loan_id: str, patch: Dict[str, Any]) -> None:
        update = self._clean_patch(patch)
        result = self.collection.update_one({"_id": to_object_id(loan_id)}, {"$set": update})
        if result.matched_count == 0:
            raise NotFound("Loan not found")
        logger.info("Loan %s updated: %s", loan_id, update)

    def conditional_delete(self, loan_id: str, expected_status: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(loan_id), "status": expected_status})
        if result.deleted_count == 0:
            raise NotMatched()
        logger.info("Loan %s deleted while %s", loan_id, expected_status)

    def unconditional_delete(self, loan_id: str) -> None:
        result = self.collection.delete_one({"_id": to_object_id(loan_id)})
        if result.deleted_count == 0:
            raise NotFound("Loan not found")
        logger.info("Loan %s deleted", loan_id)

    @staticmethod
    def _clean_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
        update = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
        if not update:
            raise InvalidInput("No update provided")
        return update
