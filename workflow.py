"""
Workflow Engine: donation merge, request/claim, approval and the expiry sweep.

The engine is the only writer of lot and request status. Each operation
applies its writes as conditional updates through the Inventory Store and
Request Ledger; when a guard misses, the operation fails with a conflict
instead of retrying. Notifications go out only after the writes return, and
a notifier failure never fails the operation.
"""
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

import settings
from database import utcnow
from errors import (AlreadyProcessed, Conflict, DuplicateRequest, Forbidden, InvalidState, NotFound,
                    SelfRequest, ValidationError)
from inventory import InventoryStore
from ledger import RequestLedger
from logger import get_logger
from notifier import (APPROVED, DONATION_RECORDED, EXPIRING_SOON, REJECTED, REQUEST_CREATED,
                      NotificationEvent, Notifier, NullNotifier)
from schemas import ADMIN, AVAILABLE, CLAIMED, DONOR, EXPIRED, PENDING, RECIPIENT, Medicine, Principal
from schemas import APPROVED as APPROVED_REQUEST
from schemas import REJECTED as REJECTED_REQUEST

logger = get_logger(__name__)

UNKNOWN_USER = {"name": "Unknown", "email": "N/A"}

# Mongo keeps millisecond precision
LAST_MILLISECOND = time(23, 59, 59, 999000)


class SweepResult(BaseModel):
    expired: int = 0
    reminders: int = 0


def to_expiry(value, end_of_day: bool = False) -> datetime:
    """
    Normalise a date, datetime or ISO string to a naive UTC datetime.

    A bare date (``date`` or ``YYYY-MM-DD``) maps to the start of that day, or
    to its last millisecond with ``end_of_day``. Stored lot
    expiries use ``end_of_day=True``: a lot stays usable through its expiry day.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, LAST_MILLISECOND if end_of_day else time.min)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if len(text) == 10:
                return to_expiry(date.fromisoformat(text), end_of_day)
            return to_expiry(datetime.fromisoformat(text))
        except ValueError:
            raise ValidationError("Invalid expiry date format")
    raise ValidationError("expiryDate is required")


def _as_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a whole number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number")


class WorkflowEngine:
    def __init__(self, database: Database, notifier: Notifier = None, clock: Callable[[], datetime] = utcnow,
                 reminder_days: int = settings.EXPIRY_REMINDER_DAYS):
        self.database = database
        self.inventory = InventoryStore(database)
        self.ledger = RequestLedger(database)
        self.notifier = notifier or NullNotifier()
        self.clock = clock
        self.reminder_window = timedelta(days=reminder_days)

    # Notifications

    def _emit(self, kind: str, lot: dict, donor_id: str = None, recipient_id: str = None,
              admin_id: str = None, days_left: int = None) -> bool:
        try:
            event = NotificationEvent(kind=kind, lot=lot, donor_id=donor_id, recipient_id=recipient_id,
                                      admin_id=admin_id, days_left=days_left, occurred_at=self.clock())
            self.notifier.notify(event)
            return True
        except Exception:
            logger.exception("Could not hand off %s notification for lot %s", kind, lot.get("id"))
            return False

    # Donations

    def donate(self, donor_id: str, name: str, expiry_date, quantity, description: str = None,
               category: str = None) -> dict:
        """
        Record a donation, merging it into the donor's AVAILABLE lot with the
        same name and expiry date when there is one.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        quantity = _as_int(quantity, "quantity")
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        expiry = to_expiry(expiry_date, end_of_day=True)
        now = self.clock()
        if expiry < now:
            # Recorded as donated; the next sweep or listing expires it
            logger.warning("Donation of %s by %s is already past expiry (%s)", name, donor_id, expiry.date())

        lot = None
        candidate = self.inventory.find_merge_candidate(donor_id, name, expiry)
        if candidate:
            # None when the candidate was claimed since the lookup; a fresh lot is created instead
            lot = self.inventory.merge(candidate["id"], quantity, expiry)
            if lot:
                logger.info("Merged %d x %s into lot %s (now %d)", quantity, name, lot["id"], lot["quantity"])

        if lot is None:
            lot = self.inventory.create(Medicine(
                name=name,
                category=category or None,
                description=description or None,
                expiry_date=expiry,
                quantity=quantity,
                donor_id=donor_id,
                created_at=now,
            ))
            logger.info("Created lot %s: %d x %s for donor %s", lot["id"], quantity, name, donor_id)

        self._emit(DONATION_RECORDED, lot, donor_id=donor_id)
        return lot

    # Listings

    def list_available(self, name: str = None, category: str = None, expiry_before=None,
                       expiry_after=None) -> List[dict]:
        """AVAILABLE, unexpired lots with donor info, newest first."""
        self.expire_stale()
        lots = self.inventory.query(
            status=AVAILABLE,
            name=name,
            category=category,
            expiry_before=to_expiry(expiry_before, end_of_day=True) if expiry_before else None,
            expiry_after=to_expiry(expiry_after) if expiry_after else None,
            expiring_after=self.clock(),
        )
        return self._attach_users(lots, donor_id="donor")

    def donor_lots(self, donor_id: str) -> List[dict]:
        return self._attach_users(self.inventory.query(donor_id=donor_id), claimed_by="claimed_by_user")

    def admin_lots(self) -> List[dict]:
        return self._attach_users(self.inventory.query(), donor_id="donor", claimed_by="claimed_by_user")

    def recipient_requests(self, recipient_id: str) -> List[dict]:
        requests = self.ledger.find_by_recipient(recipient_id)
        return self._attach_lots(requests)

    def all_requests(self) -> List[dict]:
        requests = self._attach_lots(self.ledger.find_all())
        return self._attach_users(requests, recipient_id="recipient")

    def stats(self) -> dict:
        users = self.database["user"]
        return {
            "users": users.count_documents({}),
            "donors": users.count_documents({"role": DONOR}),
            "recipients": users.count_documents({"role": RECIPIENT}),
            "lots": self.inventory.count(),
            "available_lots": self.inventory.count({"status": AVAILABLE}),
            "expired_lots": self.inventory.count({"status": EXPIRED}),
            "requests": self.ledger.count(),
            "approved": self.ledger.count({"status": APPROVED_REQUEST}),
            "rejected": self.ledger.count({"status": REJECTED_REQUEST}),
        }

    def _attach_users(self, docs: List[dict], **fields) -> List[dict]:
        """For each ``id_field=target`` pair, set doc[target] to that user's name and email."""
        users = self._users(doc.get(field) for doc in docs for field in fields)
        for doc in docs:
            for field, target in fields.items():
                user_id = doc.get(field)
                if user_id is None:
                    doc[target] = None
                    continue
                user = users.get(user_id, {})
                doc[target] = {
                    "id": user_id,
                    "name": user.get("name") or UNKNOWN_USER["name"],
                    "email": user.get("email") or UNKNOWN_USER["email"],
                }
        return docs

    def _attach_lots(self, requests: List[dict]) -> List[dict]:
        ids = _object_ids(r.get("medicine_lot_id") for r in requests)
        lots = {}
        if ids:
            for doc in self.inventory.collection.find({"_id": {"$in": ids}}):
                lots[str(doc["_id"])] = doc
        lot_list = []
        for request in requests:
            lot = lots.get(request.get("medicine_lot_id"))
            if lot is not None:
                lot = dict(lot, id=str(lot["_id"]))
                lot.pop("_id")
                lot_list.append(lot)
            request["medicine"] = lot
        self._attach_users(lot_list, donor_id="donor")
        return requests

    def _users(self, user_ids: Iterable[Optional[str]]) -> dict:
        ids = _object_ids(user_ids)
        if not ids:
            return {}
        cursor = self.database["user"].find({"_id": {"$in": ids}}, {"name": 1, "email": 1})
        return {str(doc["_id"]): doc for doc in cursor}

    # Requests

    def request_lot(self, recipient_id: str, lot_id: str) -> Tuple[dict, dict]:
        """Claim an AVAILABLE lot for a recipient and open a PENDING request."""
        lot = self.inventory.find_by_id(lot_id)
        if lot is None:
            raise NotFound("Medicine not found")
        if lot["status"] != AVAILABLE:
            raise InvalidState()
        if lot["donor_id"] == recipient_id:
            raise SelfRequest()

        now = self.clock()
        if lot["expiry_date"] < now:
            self.inventory.expire(lot["id"], AVAILABLE)
            raise InvalidState("Medicine has expired")
        if self.ledger.find_active_for(lot["id"], recipient_id):
            raise DuplicateRequest()

        claimed = self.inventory.claim(lot["id"], recipient_id, now)
        if claimed is None:
            logger.warning("Lost claim race on lot %s for recipient %s", lot["id"], recipient_id)
            raise InvalidState()

        try:
            request = self.ledger.create(lot["id"], recipient_id, now)
        except Exception:
            try:
                self.inventory.release(lot["id"], recipient_id)
            except PyMongoError:
                logger.exception("Could not release lot %s after its request failed; it stays CLAIMED by %s "
                                 "with no request and needs an admin update", lot["id"], recipient_id)
            raise

        logger.info("Lot %s claimed by %s (request %s)", lot["id"], recipient_id, request["id"])
        self._emit(REQUEST_CREATED, claimed, donor_id=claimed["donor_id"], recipient_id=recipient_id)
        return claimed, request

    def _pending_request(self, request_id: str) -> dict:
        request = self.ledger.find_by_id(request_id)
        if request is None:
            raise NotFound("Request not found")
        if request["status"] != PENDING:
            raise AlreadyProcessed()
        return request

    def approve(self, admin_id: str, request_id: str) -> Tuple[dict, dict]:
        """Approve a PENDING request, deducting one unit from its lot."""
        request = self._pending_request(request_id)
        request = self.ledger.mark_approved(request["id"], self.clock(), admin_id)

        lot = self.inventory.consume_one(request["medicine_lot_id"], request["recipient_id"])
        if lot is None:
            self.ledger.revert_approval(request["id"])
            if self.inventory.find_by_id(request["medicine_lot_id"]) is None:
                raise NotFound("Medicine not found")
            logger.warning("Approval of request %s reverted: lot %s is no longer claimed",
                           request["id"], request["medicine_lot_id"])
            raise InvalidState("Medicine is out of stock or no longer claimed")

        logger.info("Request %s approved by %s; lot %s quantity %d (%s)",
                    request["id"], admin_id, lot["id"], lot["quantity"], lot["status"])
        self._emit(APPROVED, lot, donor_id=lot["donor_id"], recipient_id=request["recipient_id"],
                   admin_id=admin_id)
        return lot, request

    def reject(self, admin_id: str, request_id: str) -> Tuple[Optional[dict], dict]:
        """Reject a PENDING request and hand its lot back to the pool."""
        request = self._pending_request(request_id)
        request = self.ledger.mark_rejected(request["id"], self.clock(), admin_id)

        lot = self.inventory.release(request["medicine_lot_id"], request["recipient_id"])
        if lot is None:
            # Expired or removed in the meantime; it stays as it is
            lot = self.inventory.find_by_id(request["medicine_lot_id"])
            logger.info("Request %s rejected; lot %s left %s", request["id"], request["medicine_lot_id"],
                        lot["status"] if lot else "removed")
        else:
            logger.info("Request %s rejected by %s; lot %s back to AVAILABLE", request["id"], admin_id, lot["id"])

        self._emit(REJECTED, lot or {"id": request["medicine_lot_id"]},
                   donor_id=lot["donor_id"] if lot else None,
                   recipient_id=request["recipient_id"], admin_id=admin_id)
        return lot, request

    def _pending_for_lot(self, lot_id: str) -> dict:
        lot = self.inventory.find_by_id(lot_id)
        if lot is None:
            raise NotFound("Medicine not found")
        pending = None
        if lot["status"] == CLAIMED:
            pending = self.ledger.find_pending_for_lot(lot["id"], lot.get("claimed_by"))
        if pending is None:
            raise AlreadyProcessed("No pending request for this medicine")
        return pending

    def approve_lot(self, admin_id: str, lot_id: str) -> Tuple[dict, dict]:
        return self.approve(admin_id, self._pending_for_lot(lot_id)["id"])

    def reject_lot(self, admin_id: str, lot_id: str) -> Tuple[Optional[dict], dict]:
        return self.reject(admin_id, self._pending_for_lot(lot_id)["id"])

    # Lot maintenance

    def update_lot(self, principal: Principal, lot_id: str, quantity=None, expiry_date=None,
                   status: str = None) -> dict:
        lot = self.inventory.find_by_id(lot_id)
        if lot is None:
            raise NotFound("Medicine not found")
        if principal.role != ADMIN and lot["donor_id"] != principal.id:
            raise Forbidden("You can only update your own medicines")

        patch = {}
        if quantity is not None:
            quantity = _as_int(quantity, "quantity")
            if quantity < 0:
                raise ValidationError("quantity cannot be negative")
            patch["quantity"] = quantity
        if expiry_date is not None:
            patch["expiry_date"] = to_expiry(expiry_date, end_of_day=True)
        if status is not None:
            if status != EXPIRED:
                raise ValidationError("status can only be set to EXPIRED")
            patch["status"] = EXPIRED
        if not patch:
            return lot

        if patch.get("quantity", lot["quantity"]) == 0 or patch.get("expiry_date", lot["expiry_date"]) < self.clock():
            patch["status"] = EXPIRED

        updated = self.inventory.update(lot["id"], patch, expected={"status": lot["status"], "quantity": lot["quantity"]})
        if updated is None:
            raise Conflict("Medicine was modified concurrently, please retry")
        logger.info("Lot %s updated by %s: %s", lot["id"], principal.id, sorted(patch))
        return updated

    def remove_lot(self, lot_id: str) -> dict:
        lot = self.inventory.find_by_id(lot_id)
        if lot is None or not self.inventory.delete(lot["id"]):
            raise NotFound("Medicine not found")
        logger.info("Lot %s removed", lot["id"])
        return lot

    # Expiry

    def expire_stale(self) -> int:
        """Mark AVAILABLE/CLAIMED lots that are past expiry or out of stock as EXPIRED."""
        expired = 0
        for lot in self.inventory.find_stale(self.clock()):
            try:
                if self.inventory.expire(lot["id"], lot["status"]):
                    expired += 1
            except PyMongoError:
                logger.exception("Could not expire lot %s", lot["id"])
        if expired:
            logger.info("Auto-expired %d medicines", expired)
        return expired

    def send_expiry_reminders(self) -> int:
        now = self.clock()
        sent = 0
        for lot in self.inventory.find_expiring(now, now + self.reminder_window):
            days_left = math.ceil((lot["expiry_date"] - now) / timedelta(days=1))
            if self._emit(EXPIRING_SOON, lot, donor_id=lot["donor_id"], days_left=days_left):
                sent += 1
        return sent

    def sweep(self) -> SweepResult:
        expired = self.expire_stale()
        reminders = self.send_expiry_reminders()
        return SweepResult(expired=expired, reminders=reminders)


def _object_ids(values: Iterable[Optional[str]]) -> List[ObjectId]:
    ids = []
    for value in set(values):
        if not value:
            continue
        try:
            ids.append(ObjectId(value))
        except (InvalidId, TypeError):
            continue
    return ids
