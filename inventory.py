"""
Inventory Store: durable collection of medicine lots.

Every transition the workflow performs goes through a conditional update
(``find_one_and_update`` / ``update_one`` whose filter pins the expected
status), so two writers racing on one lot cannot both succeed.
"""
import re
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, oid, serialize
from schemas import AVAILABLE, CLAIMED, EXPIRED, Medicine

COLLECTION = "medicine"


def _contains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


class InventoryStore:
    def __init__(self, database: Database):
        self.database = database
        self.collection = database[COLLECTION]

    # Lookups

    def find_by_id(self, lot_id: str) -> Optional[dict]:
        return serialize(self.collection.find_one({"_id": oid(lot_id)}))

    def find_merge_candidate(self, donor_id: str, name: str, expiry_date: datetime) -> Optional[dict]:
        return serialize(self.collection.find_one({
            "donor_id": donor_id,
            "name": name,
            "expiry_date": expiry_date,
            "status": AVAILABLE,
        }))

    def query(self, status: str = None, name: str = None, category: str = None,
              expiry_before: datetime = None, expiry_after: datetime = None,
              expiring_after: datetime = None, donor_id: str = None) -> List[dict]:
        """
        Filter lots, newest first.

        ``expiry_before`` and ``expiry_after`` are inclusive bounds;
        ``expiring_after`` is the strict lower bound used to hide lots that are
        already past expiry.
        """
        filt = {}
        if status:
            filt["status"] = status
        if name:
            filt["name"] = _contains(name)
        if category:
            filt["category"] = _contains(category)
        if donor_id:
            filt["donor_id"] = donor_id

        expiry = {}
        if expiry_before is not None:
            expiry["$lte"] = expiry_before
        if expiry_after is not None:
            expiry["$gte"] = expiry_after
        if expiring_after is not None:
            expiry["$gt"] = expiring_after
        if expiry:
            filt["expiry_date"] = expiry

        cursor = self.collection.find(filt).sort("created_at", DESCENDING)
        return [serialize(doc) for doc in cursor]

    def find_stale(self, now: datetime) -> List[dict]:
        """Lots still open for business that are past expiry or out of stock."""
        return [serialize(doc) for doc in self.collection.find({
            "status": {"$in": [AVAILABLE, CLAIMED]},
            "$or": [{"expiry_date": {"$lt": now}}, {"quantity": {"$lte": 0}}],
        })]

    def find_expiring(self, now: datetime, until: datetime) -> List[dict]:
        return [serialize(doc) for doc in self.collection.find({
            "status": AVAILABLE,
            "expiry_date": {"$gte": now, "$lte": until},
        }).sort("expiry_date", 1)]

    def count(self, filt: dict = None) -> int:
        return self.collection.count_documents(filt or {})

    # Writes

    def create(self, lot: Medicine) -> dict:
        lot_id = create_document(COLLECTION, lot, database=self.database)
        return self.find_by_id(lot_id)

    def merge(self, lot_id: str, quantity: int, expiry_date: datetime) -> Optional[dict]:
        """Add stock to a lot that is still AVAILABLE, never lowering its expiry."""
        return serialize(self.collection.find_one_and_update(
            {"_id": oid(lot_id), "status": AVAILABLE},
            {"$inc": {"quantity": quantity}, "$max": {"expiry_date": expiry_date}},
            return_document=ReturnDocument.AFTER,
        ))

    def update(self, lot_id: str, patch: dict, expected: dict = None) -> Optional[dict]:
        """Apply ``patch`` if the stored lot still matches ``expected``."""
        filt = {"_id": oid(lot_id)}
        filt.update(expected or {})
        return serialize(self.collection.find_one_and_update(
            filt, {"$set": patch}, return_document=ReturnDocument.AFTER,
        ))

    def delete(self, lot_id: str) -> bool:
        return self.collection.delete_one({"_id": oid(lot_id)}).deleted_count == 1

    # State transitions

    def claim(self, lot_id: str, recipient_id: str, now: datetime) -> Optional[dict]:
        return serialize(self.collection.find_one_and_update(
            {"_id": oid(lot_id), "status": AVAILABLE, "expiry_date": {"$gt": now}},
            {"$set": {"status": CLAIMED, "claimed_by": recipient_id, "claimed_at": now}},
            return_document=ReturnDocument.AFTER,
        ))

    def release(self, lot_id: str, recipient_id: str) -> Optional[dict]:
        return serialize(self.collection.find_one_and_update(
            {"_id": oid(lot_id), "status": CLAIMED, "claimed_by": recipient_id},
            {"$set": {"status": AVAILABLE}, "$unset": {"claimed_by": "", "claimed_at": ""}},
            return_document=ReturnDocument.AFTER,
        ))

    def consume_one(self, lot_id: str, recipient_id: str) -> Optional[dict]:
        """
        Deduct one unit from a lot claimed by ``recipient_id``.

        The last unit flips the lot to EXPIRED in the same write, so a lot is
        never observed CLAIMED with zero stock.
        """
        claimed = {"_id": oid(lot_id), "status": CLAIMED, "claimed_by": recipient_id}
        doc = self.collection.find_one_and_update(
            dict(claimed, quantity=1),
            {"$set": {"quantity": 0, "status": EXPIRED}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            doc = self.collection.find_one_and_update(
                dict(claimed, quantity={"$gt": 1}),
                {"$inc": {"quantity": -1}},
                return_document=ReturnDocument.AFTER,
            )
        return serialize(doc)

    def expire(self, lot_id: str, from_status: str) -> bool:
        result = self.collection.update_one(
            {"_id": oid(lot_id), "status": from_status},
            {"$set": {"status": EXPIRED}},
        )
        return result.modified_count == 1
