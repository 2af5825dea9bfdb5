"""
Booking notifications.

Renders a small HTML email per event and hands it to a sender. Delivery is
best effort: failures are logged and reported in the returned result dict,
never raised, so a mail outage can not undo a booking.
"""

import smtplib
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from email.message import EmailMessage
from html import escape
from typing import Optional

from ..config import settings
from ..models.booking import BookingType

logger = logging.getLogger(__name__)

CONFIRMATION_TEMPLATES = {
    BookingType.ACCOMMODATION.value: ("hotel-confirmation", "Your hotel stay is confirmed!"),
    BookingType.FLIGHT.value: ("flight-confirmation", "Your flight is confirmed!"),
    BookingType.ACTIVITY.value: ("activity-confirmation", "Your activity is confirmed!"),
    BookingType.RESTAURANT.value: ("restaurant-confirmation", "Your table is confirmed!"),
    BookingType.TRANSPORT.value: ("transport-confirmation", "Your transport is confirmed!"),
    BookingType.PACKAGE.value: ("package-confirmation", "Your package is confirmed!"),
}


@dataclass
class Notification:
    template: str
    to: str
    subject: str
    html: str
    booking_id: Optional[str] = None


class BaseSender(ABC):
    """Delivers a rendered notification and returns a result dict."""

    @abstractmethod
    def send(self, notification: Notification) -> dict:
        pass


class EmailSender(BaseSender):
    """Sends through SMTP"""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: Optional[float] = None,
        from_email: Optional[str] = None
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_user
        self.password = password if password is not None else settings.smtp_password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.timeout = timeout or settings.smtp_timeout_seconds
        self.from_email = from_email or settings.from_email

    def send(self, notification: Notification) -> dict:
        if not notification.to:
            return {"success": False, "error": "No recipient"}

        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = notification.to
        message["Subject"] = notification.subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(notification.html, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            return {"success": False, "error": str(e)}

        return {"success": True, "message": "Sent via Email"}


class LogSender(BaseSender):
    """Writes notifications to the log. Used when SMTP is not configured."""

    def send(self, notification: Notification) -> dict:
        logger.info(
            f"Notification '{notification.template}' for booking {notification.booking_id} "
            f"to {notification.to}: {notification.subject}"
        )
        return {"success": True, "message": "Logged"}


def default_sender() -> BaseSender:
    return EmailSender() if settings.smtp_configured else LogSender()


def _customer_name(booking) -> str:
    guests = (booking.guest_details or {}).get("guests") or []
    if guests and guests[0].get("first_name"):
        return guests[0]["first_name"]
    return "Guest"


def _format_date(value) -> str:
    return value.strftime("%a %b %d %Y") if value else ""


def render_booking_html(booking, heading: str, lead: str, extra_rows: Optional[list] = None) -> str:
    rows = [
        ("Confirmation Number", booking.booking_reference),
        ("Total Amount", f"{booking.currency} {booking.total_amount}"),
        ("Start Date", _format_date(booking.start_date)),
    ]
    if booking.end_date:
        rows.append(("End Date", _format_date(booking.end_date)))
    rows.extend(extra_rows or [])

    details = "<br/>\n".join(
        f"<strong>{escape(label)}:</strong> {escape(str(value))}" for label, value in rows
    )
    return (
        "<html>\n<body>\n"
        f"<h1>{escape(heading)}</h1>\n"
        f"<p>Dear {escape(_customer_name(booking))},</p>\n"
        f"<p>{escape(lead)}</p>\n"
        f"<div>\n{details}\n</div>\n"
        "<p>Thank you for choosing Desti!</p>\n"
        "</body>\n</html>"
    )


class NotificationService:
    """
    Booking emails: confirmation, cancellation, modification, status update.

    With ``workers`` > 0 sends run on a thread pool and the methods return
    None immediately; otherwise they send inline and return the sender's
    result dict.
    """

    def __init__(
        self,
        sender: Optional[BaseSender] = None,
        enabled: Optional[bool] = None,
        workers: Optional[int] = None
    ):
        self.sender = sender or default_sender()
        self.enabled = settings.notifications_enabled if enabled is None else enabled
        workers = settings.notification_workers if workers is None else workers
        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") if workers > 0 else None
        )

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def _deliver(self, notification: Notification) -> dict:
        try:
            result = self.sender.send(notification)
        except Exception as e:
            logger.error(f"Sender crashed on '{notification.template}' for booking {notification.booking_id}: {e}")
            return {"success": False, "error": str(e)}

        if not result.get("success"):
            logger.error(
                f"Notification '{notification.template}' for booking {notification.booking_id} "
                f"failed: {result.get('error')}"
            )
        return result

    def _dispatch(self, notification: Notification) -> Optional[dict]:
        if not self.enabled:
            logger.debug(f"Notifications disabled, skipping '{notification.template}'")
            return {"success": False, "error": "Notifications disabled"}
        if self._executor is not None:
            self._executor.submit(self._deliver, notification)
            return None
        return self._deliver(notification)

    def send_booking_confirmation(self, booking) -> Optional[dict]:
        template, lead = CONFIRMATION_TEMPLATES.get(
            booking.type, ("generic-confirmation", "Your booking has been confirmed!")
        )
        return self._dispatch(Notification(
            template=template,
            to=booking.contact_email,
            subject=f"Booking Confirmation - {booking.booking_reference}",
            html=render_booking_html(booking, "Booking Confirmation", lead),
            booking_id=booking.id,
        ))

    def send_cancellation_confirmation(self, booking, refund_amount: Decimal) -> Optional[dict]:
        return self._dispatch(Notification(
            template="cancellation-confirmation",
            to=booking.contact_email,
            subject=f"Booking Cancelled - {booking.booking_reference}",
            html=render_booking_html(
                booking,
                "Booking Cancelled",
                "Your booking has been cancelled.",
                [("Refund Amount", f"{booking.currency} {refund_amount}")],
            ),
            booking_id=booking.id,
        ))

    def send_modification_confirmation(self, booking) -> Optional[dict]:
        return self._dispatch(Notification(
            template="modification-confirmation",
            to=booking.contact_email,
            subject=f"Booking Modified - {booking.booking_reference}",
            html=render_booking_html(booking, "Booking Modified", "Your booking has been updated."),
            booking_id=booking.id,
        ))

    def send_status_update(self, booking) -> Optional[dict]:
        return self._dispatch(Notification(
            template="status-update",
            to=booking.contact_email,
            subject=f"Booking Update - {booking.booking_reference}",
            html=render_booking_html(
                booking, "Booking Update", f"Your booking is now {booking.status}."
            ),
            booking_id=booking.id,
        ))
