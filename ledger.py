"""
Request Ledger: one document per recipient request against a lot.

A request only moves PENDING -> APPROVED or PENDING -> REJECTED; both
transitions are conditional on the stored status still being PENDING.
"""
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, oid, serialize
from errors import AlreadyProcessed
from schemas import ACTIVE_REQUEST_STATUSES, APPROVED, PENDING, REJECTED, MedicineRequest

COLLECTION = "medicinerequest"


class RequestLedger:
    def __init__(self, database: Database):
        self.database = database
        self.collection = database[COLLECTION]

    def create(self, lot_id: str, recipient_id: str, now: datetime) -> dict:
        request = MedicineRequest(medicine_lot_id=lot_id, recipient_id=recipient_id, requested_at=now)
        request_id = create_document(COLLECTION, request, database=self.database)
        return self.find_by_id(request_id)

    def find_by_id(self, request_id: str) -> Optional[dict]:
        return serialize(self.collection.find_one({"_id": oid(request_id)}))

    def find_active_for(self, lot_id: str, recipient_id: str) -> Optional[dict]:
        return serialize(self.collection.find_one({
            "medicine_lot_id": lot_id,
            "recipient_id": recipient_id,
            "status": {"$in": list(ACTIVE_REQUEST_STATUSES)},
        }))

    def find_pending_for_lot(self, lot_id: str, recipient_id: str = None) -> Optional[dict]:
        filt = {"medicine_lot_id": lot_id, "status": PENDING}
        if recipient_id:
            filt["recipient_id"] = recipient_id
        return serialize(self.collection.find_one(filt, sort=[("requested_at", DESCENDING)]))

    def find_by_recipient(self, recipient_id: str) -> List[dict]:
        cursor = self.collection.find({"recipient_id": recipient_id}).sort("requested_at", DESCENDING)
        return [serialize(doc) for doc in cursor]

    def find_all(self) -> List[dict]:
        return [serialize(doc) for doc in self.collection.find().sort("requested_at", DESCENDING)]

    def count(self, filt: dict = None) -> int:
        return self.collection.count_documents(filt or {})

    def _process(self, request_id: str, status: str, now: datetime, admin_id: str = None) -> dict:
        doc = self.collection.find_one_and_update(
            {"_id": oid(request_id), "status": PENDING},
            {"$set": {"status": status, "processed_at": now, "processed_by": admin_id}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise AlreadyProcessed()
        return serialize(doc)

    def mark_approved(self, request_id: str, now: datetime, admin_id: str = None) -> dict:
        return self._process(request_id, APPROVED, now, admin_id)

    def mark_rejected(self, request_id: str, now: datetime, admin_id: str = None) -> dict:
        return self._process(request_id, REJECTED, now, admin_id)

    def revert_approval(self, request_id: str) -> bool:
        """Undo an approval whose stock deduction could not be applied."""
        result = self.collection.update_one(
            {"_id": oid(request_id), "status": APPROVED},
            {"$set": {"status": PENDING, "processed_at": None, "processed_by": None}},
        )
        return result.modified_count == 1
