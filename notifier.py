"""
Best-effort notifications about workflow events.

The workflow calls ``Notifier.notify`` once a state change is committed.
``EmailNotifier`` hands delivery to a background thread and sends one email
per target (donor, recipient, admin); a failing target is logged and does
not stop the others.
"""
import html
import smtplib
import threading
from datetime import datetime
from email.message import EmailMessage
from typing import Callable, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo.database import Database

import settings
from logger import get_logger

logger = get_logger(__name__)

DONATION_RECORDED = "DONATION_RECORDED"
REQUEST_CREATED = "REQUEST_CREATED"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
EXPIRING_SOON = "EXPIRING_SOON"
EventKind = Literal["DONATION_RECORDED", "REQUEST_CREATED", "APPROVED", "REJECTED", "EXPIRING_SOON"]


class NotificationEvent(BaseModel):
    kind: EventKind
    lot: dict
    donor_id: Optional[str] = None
    recipient_id: Optional[str] = None
    admin_id: Optional[str] = None
    days_left: Optional[int] = None
    occurred_at: datetime


class Notifier:
    def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def notify(self, event: NotificationEvent) -> None:
        logger.debug("Dropping %s notification", event.kind)


# (target, subject, html body) per event kind
TEMPLATES: Dict[str, List[Tuple[str, str, str]]] = {
    DONATION_RECORDED: [
        ("donor", "Donation Successful - MedShare",
         "<h2>Thank you, {donor_name}!</h2>"
         "<p>Your donation of <strong>{quantity} x {name}</strong> (expires {expiry}) has been recorded.</p>"),
        ("admin", "New Donation Submitted - MedShare",
         "<h2>New Donation</h2><ul><li><strong>Donor:</strong> {donor_name} ({donor_email})</li>"
         "<li><strong>Medicine:</strong> {name}</li><li><strong>Quantity:</strong> {quantity}</li>"
         "<li><strong>Expiry:</strong> {expiry}</li></ul>"),
    ],
    REQUEST_CREATED: [
        ("donor", "Someone Requested Your Donation - MedShare",
         "<p>Dear {donor_name}, {recipient_name} requested your donated medicine <strong>{name}</strong>.</p>"),
        ("recipient", "Request Submitted - MedShare",
         "<p>Dear {recipient_name}, your request for <strong>{name}</strong> donated by {donor_name} "
         "is awaiting admin approval.</p>"),
        ("admin", "New Request Submitted - MedShare",
         "<h2>New Request</h2><ul><li><strong>Medicine:</strong> {name}</li>"
         "<li><strong>Recipient:</strong> {recipient_name} ({recipient_email})</li>"
         "<li><strong>Donor:</strong> {donor_name} ({donor_email})</li></ul>"),
    ],
    APPROVED: [
        ("recipient", "Request Approved - MedShare",
         "<p>Dear {recipient_name}, your request for <strong>{name}</strong> was approved.</p>"),
        ("donor", "Your Donation Request Approved - MedShare",
         "<p>A request for your donated medicine <strong>{name}</strong> was approved. "
         "Quantity remaining: {quantity}.</p>"),
        ("admin", "Admin Confirmation: Request Approved - MedShare",
         "<ul><li><strong>Medicine:</strong> {name}</li>"
         "<li><strong>Recipient:</strong> {recipient_name} ({recipient_email})</li>"
         "<li><strong>Processed At:</strong> {occurred_at}</li></ul>"),
    ],
    REJECTED: [
        ("recipient", "Request Rejected - MedShare",
         "<p>Dear {recipient_name}, your request for <strong>{name}</strong> was rejected.</p>"),
        ("donor", "Donation Request Rejected - MedShare",
         "<p>The request for your donated medicine <strong>{name}</strong> was rejected.</p>"),
        ("admin", "Admin Confirmation: Request Rejected - MedShare",
         "<ul><li><strong>Medicine:</strong> {name}</li>"
         "<li><strong>Recipient:</strong> {recipient_name} ({recipient_email})</li>"
         "<li><strong>Status:</strong> REJECTED</li><li><strong>Processed At:</strong> {occurred_at}</li></ul>"),
    ],
    EXPIRING_SOON: [
        ("donor", "Expiry Reminder - MedShare",
         "<h2>Medicine Nearing Expiry</h2><p>Dear {donor_name}, your donation is nearing expiry in "
         "{days_left} day(s).</p><ul><li><strong>Medicine:</strong> {name}</li>"
         "<li><strong>Quantity:</strong> {quantity}</li><li><strong>Expiry:</strong> {expiry}</li></ul>"),
        ("admin", "Inventory Expiry Reminder - MedShare",
         "<h2>Inventory Expiry Reminder</h2><p>A medicine is nearing expiry in {days_left} day(s).</p>"
         "<ul><li><strong>Medicine:</strong> {name}</li><li><strong>Quantity:</strong> {quantity}</li>"
         "<li><strong>Expiry:</strong> {expiry}</li>"
         "<li><strong>Donor:</strong> {donor_name} ({donor_email})</li></ul>"),
    ],
}


class SmtpSender:
    def __init__(self, host: str = None, port: int = None, user: str = None, password: str = None,
                 from_addr: str = None, timeout: float = None):
        self.host = host or settings.EMAIL_HOST
        self.port = port or settings.EMAIL_PORT
        self.user = user if user is not None else settings.EMAIL_USER
        self.password = password if password is not None else settings.EMAIL_PASS
        self.from_addr = from_addr or settings.EMAIL_FROM or self.user
        self.timeout = timeout or settings.EMAIL_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if not self.configured:
            logger.warning("Email skipped - missing config (EMAIL_USER/EMAIL_PASS) for %s", to)
            return False

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.from_addr
        message["To"] = to
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.login(self.user, self.password)
            smtp.send_message(message)
        logger.info("Email sent to %s: %s", to, subject)
        return True


def spawn_thread(func: Callable, *args) -> None:
    threading.Thread(target=func, args=args, daemon=True, name="medshare-notify").start()


class EmailNotifier(Notifier):
    def __init__(self, database: Database, sender: SmtpSender = None, admin_email: str = None,
                 spawn: Callable = spawn_thread):
        self.database = database
        self.sender = sender or SmtpSender()
        self.admin_email = admin_email if admin_email is not None else settings.ADMIN_EMAIL
        self.spawn = spawn

    def notify(self, event: NotificationEvent) -> None:
        self.spawn(self._deliver_safely, event)

    def _deliver_safely(self, event: NotificationEvent) -> None:
        try:
            self.deliver(event)
        except Exception:
            logger.exception("Failed to deliver %s notification", event.kind)

    def deliver(self, event: NotificationEvent) -> int:
        """Send every message for ``event``; returns how many were sent."""
        sent = 0
        for address, subject, body in self.messages(event):
            try:
                if self.sender.send(address, subject, body):
                    sent += 1
            except Exception:
                logger.exception("%s email to %s failed", event.kind, address)
        return sent

    def messages(self, event: NotificationEvent) -> List[Tuple[str, str, str]]:
        users = self._users([event.donor_id, event.recipient_id])
        donor = users.get(event.donor_id, {})
        recipient = users.get(event.recipient_id, {})
        addresses = {
            "donor": donor.get("email"),
            "recipient": recipient.get("email"),
            "admin": self.admin_email,
        }

        lot = event.lot
        expiry = lot.get("expiry_date")
        context = {
            "name": lot.get("name", "Unknown Medicine"),
            "quantity": lot.get("quantity", "N/A"),
            "expiry": expiry.strftime("%Y-%m-%d") if isinstance(expiry, datetime) else expiry,
            "donor_name": donor.get("name", "Unknown Donor"),
            "donor_email": donor.get("email", "N/A"),
            "recipient_name": recipient.get("name", "Unknown Recipient"),
            "recipient_email": recipient.get("email", "N/A"),
            "days_left": event.days_left,
            "occurred_at": event.occurred_at.isoformat(),
        }
        context = {key: html.escape(str(value)) for key, value in context.items()}

        result = []
        for target, subject, template in TEMPLATES[event.kind]:
            address = addresses[target]
            if address:
                result.append((address, subject, template.format(**context)))
        return result

    def _users(self, user_ids) -> dict:
        ids = []
        for user_id in user_ids:
            if not user_id:
                continue
            try:
                ids.append(ObjectId(user_id))
            except (InvalidId, TypeError):
                continue
        if not ids:
            return {}
        cursor = self.database["user"].find({"_id": {"$in": ids}}, {"name": 1, "email": 1})
        return {str(doc["_id"]): doc for doc in cursor}
