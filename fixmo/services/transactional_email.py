"""
Transactional email service - SendGrid-based booking and warranty notices.

Every send returns {"message_id", "status", "error"} and never raises:
a failed email must not undo the appointment change it reports.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from fixmo.config import get_settings

logger = logging.getLogger(__name__)


def _mask(email: str) -> str:
    return email[:20] + "***"


async def _send_transactional(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Send a transactional email via SendGrid.

    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    settings = get_settings()
    if not settings.sendgrid_api_key:
        logger.error("No SendGrid API key configured for transactional email")
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}
    if not to_email:
        return {"message_id": None, "status": "error", "error": "No recipient"}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = SendGridAPIClient(api_key=settings.sendgrid_api_key)
        # SendGrid SDK is synchronous
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
        message_id = response.headers.get("X-Message-Id", "")

        logger.info("Transactional email sent: to=%s subject=%s", _mask(to_email), subject[:40])
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error("Transactional email failed: to=%s error=%s", _mask(to_email), str(e))
        return {"message_id": None, "status": "error", "error": str(e)}


def _render(heading: str, paragraphs: list[str]) -> tuple[str, str]:
    """Wrap plain paragraphs in the Fixmo email layout. Returns (html, text)."""
    body = "\n".join(
        f'<p style="color: #555; font-size: 15px; line-height: 1.6;">{p}</p>' for p in paragraphs
    )
    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 480px; margin: 0 auto; padding: 40px 20px;">
      <div style="text-align: center; margin-bottom: 32px;">
        <div style="display: inline-block; background: #008094; width: 40px; height: 40px; border-radius: 10px; line-height: 40px; text-align: center;">
          <span style="color: white; font-weight: bold; font-size: 18px;">F</span>
        </div>
        <h2 style="margin: 12px 0 0; color: #111; font-size: 20px;">{heading}</h2>
      </div>
      {body}
      <hr style="border: none; border-top: 1px solid #eee; margin: 32px 0;" />
      <p style="color: #bbb; font-size: 11px; text-align: center;">Fixmo &mdash; Trusted home services</p>
    </div>
    """
    text = heading + "\n\n" + "\n\n".join(paragraphs) + "\n\n-- Fixmo"
    return html, text


def _when(value: Optional[datetime]) -> str:
    if value is None:
        return "a date to be confirmed"
    return value.strftime("%B %d, %Y at %I:%M %p UTC")


def _booking_ref(appointment_id) -> str:
    return str(appointment_id)[:8].upper()


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

async def send_booking_confirmation(
    email: str, name: str, service_title: str, scheduled_date: Optional[datetime], appointment_id,
    recipient: str = "customer",
) -> dict:
    if recipient == "provider":
        subject = f"New Booking Received - {service_title}"
        paragraphs = [
            f"Hi {name}, you have a new booking for {service_title}.",
            f"It is scheduled for {_when(scheduled_date)}. Booking #{_booking_ref(appointment_id)}.",
        ]
    else:
        subject = f"Booking Confirmation - {service_title}"
        paragraphs = [
            f"Hi {name}, your booking for {service_title} is confirmed.",
            f"Your provider will see you on {_when(scheduled_date)}. Booking #{_booking_ref(appointment_id)}.",
        ]
    html, text = _render("Booking Confirmed", paragraphs)
    return await _send_transactional(email, subject, html, text)


async def send_booking_cancellation(
    email: str, name: str, service_title: str, scheduled_date: Optional[datetime], appointment_id,
    reason: str, cancelled_by: str,
) -> dict:
    html, text = _render("Booking Cancelled", [
        f"Hi {name}, the booking for {service_title} on {_when(scheduled_date)} was cancelled by the {cancelled_by}.",
        f"Reason: {reason}",
        f"Booking #{_booking_ref(appointment_id)}.",
    ])
    return await _send_transactional(email, f"Booking Cancellation - {service_title}", html, text)


async def send_booking_completion(
    email: str, name: str, service_title: str, appointment_id, warranty_expires_at: Optional[datetime] = None,
) -> dict:
    paragraphs = [f"Hi {name}, the {service_title} job (Booking #{_booking_ref(appointment_id)}) is complete."]
    if warranty_expires_at is not None:
        paragraphs.append(
            f"Your warranty coverage runs until {_when(warranty_expires_at)}. "
            "If the problem comes back, you can request warranty service from the app."
        )
    html, text = _render("Service Completed", paragraphs)
    return await _send_transactional(email, f"Service Completed - {service_title}", html, text)


# ---------------------------------------------------------------------------
# Warranty claims (backjobs)
# ---------------------------------------------------------------------------

async def send_backjob_application(email: str, name: str, appointment_id, reason: str, recipient: str) -> dict:
    ref = _booking_ref(appointment_id)
    if recipient == "provider":
        subject = f"Warranty Claim Submitted - Action Required - Booking #{ref}"
        paragraphs = [
            f"Hi {name}, your customer filed a warranty claim on Booking #{ref}.",
            f"Reported issue: {reason}",
            "Please reschedule the rework visit, or dispute the claim if you believe it is not covered.",
        ]
    else:
        subject = f"Warranty Service Request Approved - Booking #{ref}"
        paragraphs = [
            f"Hi {name}, your warranty claim on Booking #{ref} was approved.",
            "Your warranty countdown is paused until the provider completes the rework.",
        ]
    html, text = _render("Warranty Claim", paragraphs)
    return await _send_transactional(email, subject, html, text)


async def send_backjob_dispute(email: str, name: str, appointment_id, dispute_reason: str) -> dict:
    ref = _booking_ref(appointment_id)
    html, text = _render("Warranty Claim Disputed", [
        f"Hi {name}, the provider disputed your warranty claim on Booking #{ref}.",
        f"Provider's reason: {dispute_reason}",
        "Our team will review the claim. Your warranty countdown has resumed in the meantime.",
    ])
    return await _send_transactional(email, f"Warranty Claim Disputed - Booking #{ref}", html, text)


async def send_backjob_reschedule(
    email: str, name: str, appointment_id, scheduled_date: Optional[datetime], recipient: str,
) -> dict:
    ref = _booking_ref(appointment_id)
    if recipient == "provider":
        subject = f"Warranty Service Scheduled - Booking #{ref}"
        intro = f"Hi {name}, you scheduled the warranty rework for Booking #{ref}."
    else:
        subject = f"Warranty Service Rescheduled - Booking #{ref}"
        intro = f"Hi {name}, your provider scheduled the warranty rework for Booking #{ref}."
    html, text = _render("Warranty Service Scheduled", [intro, f"Visit: {_when(scheduled_date)}."])
    return await _send_transactional(email, subject, html, text)


async def send_backjob_cancellation(
    email: str, name: str, appointment_id, cancelled_by: str, reason: Optional[str] = None,
) -> dict:
    ref = _booking_ref(appointment_id)
    paragraphs = [f"Hi {name}, the warranty request on Booking #{ref} was cancelled by the {cancelled_by}."]
    if reason:
        paragraphs.append(f"Reason: {reason}")
    html, text = _render("Warranty Request Cancelled", paragraphs)
    return await _send_transactional(email, f"Warranty Service Request Cancelled - Booking #{ref}", html, text)
