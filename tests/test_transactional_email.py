"""
Transactional email tests: booking and warranty-claim notices.
All SendGrid calls are mocked.
"""
from unittest.mock import patch, MagicMock, AsyncMock

from conftest import T0
from fixmo.services.transactional_email import (
    _send_transactional,
    send_backjob_application,
    send_backjob_cancellation,
    send_backjob_dispute,
    send_backjob_reschedule,
    send_booking_cancellation,
    send_booking_completion,
    send_booking_confirmation,
)

APPOINTMENT_ID = "3f2a9c1e-0000-4000-8000-000000000001"


def _mock_settings(api_key="SG_transactional_key"):
    settings = MagicMock()
    settings.sendgrid_api_key = api_key
    settings.from_email_transactional = "noreply@fixmo.app"
    settings.from_name_transactional = "Fixmo"
    return settings


class TestSendTransactional:
    """The core _send_transactional function."""

    @patch("fixmo.services.transactional_email.get_settings")
    async def test_no_api_key_returns_error(self, mock_settings):
        mock_settings.return_value = _mock_settings(api_key="")
        result = await _send_transactional("ana@example.com", "Subject", "<p>HTML</p>", "Text")
        assert result["status"] == "error"
        assert result["message_id"] is None

    @patch("fixmo.services.transactional_email.get_settings")
    async def test_missing_recipient(self, mock_settings):
        mock_settings.return_value = _mock_settings()
        result = await _send_transactional("", "Subject", "<p>HTML</p>", "Text")
        assert result == {"message_id": None, "status": "error", "error": "No recipient"}

    @patch("fixmo.services.transactional_email.get_settings")
    async def test_successful_send(self, mock_settings):
        mock_settings.return_value = _mock_settings()
        mock_response = MagicMock()
        mock_response.headers = {"X-Message-Id": "tx_msg_123"}

        with patch("sendgrid.SendGridAPIClient") as mock_sg_cls:
            mock_sg = MagicMock()
            mock_sg.send.return_value = mock_response
            mock_sg_cls.return_value = mock_sg

            result = await _send_transactional("ana@example.com", "Subject", "<p>HTML</p>", "Text")

        assert result == {"message_id": "tx_msg_123", "status": "sent", "error": None}
        mock_sg_cls.assert_called_once_with(api_key="SG_transactional_key")

    @patch("fixmo.services.transactional_email.get_settings")
    async def test_exception_returns_error(self, mock_settings):
        mock_settings.return_value = _mock_settings()

        with patch("sendgrid.SendGridAPIClient") as mock_sg_cls:
            mock_sg_cls.return_value.send.side_effect = Exception("SendGrid 503")
            result = await _send_transactional("ana@example.com", "Subject", "<p>H</p>", "T")

        assert result["status"] == "error"
        assert "SendGrid 503" in result["error"]


class TestBookingNotices:
    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_confirmation_for_customer(self, mock_send):
        mock_send.return_value = {"status": "sent"}
        await send_booking_confirmation("ana@example.com", "Ana", "Sink Repair", T0, APPOINTMENT_ID)

        to, subject, html, text = mock_send.call_args.args
        assert to == "ana@example.com"
        assert subject == "Booking Confirmation - Sink Repair"
        assert "#3F2A9C1E" in text
        assert "March 02, 2026" in html

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_confirmation_for_provider(self, mock_send):
        await send_booking_confirmation(
            "ben@example.com", "Ben", "Sink Repair", T0, APPOINTMENT_ID, recipient="provider",
        )
        assert mock_send.call_args.args[1] == "New Booking Received - Sink Repair"

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_cancellation_names_who_and_why(self, mock_send):
        await send_booking_cancellation(
            "ben@example.com", "Ben", "Sink Repair", T0, APPOINTMENT_ID, "Changed plans", "customer",
        )
        text = mock_send.call_args.args[3]
        assert "cancelled by the customer" in text
        assert "Reason: Changed plans" in text

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_completion_mentions_warranty_when_known(self, mock_send):
        await send_booking_completion("ana@example.com", "Ana", "Sink Repair", APPOINTMENT_ID)
        assert "warranty" not in mock_send.call_args.args[3]

        await send_booking_completion(
            "ana@example.com", "Ana", "Sink Repair", APPOINTMENT_ID, warranty_expires_at=T0,
        )
        assert "warranty coverage runs until" in mock_send.call_args.args[3]


class TestWarrantyClaimNotices:
    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_application_subjects_differ_by_recipient(self, mock_send):
        await send_backjob_application("ana@example.com", "Ana", APPOINTMENT_ID, "Leak", recipient="customer")
        assert mock_send.call_args.args[1] == "Warranty Service Request Approved - Booking #3F2A9C1E"

        await send_backjob_application("ben@example.com", "Ben", APPOINTMENT_ID, "Leak", recipient="provider")
        assert mock_send.call_args.args[1].startswith("Warranty Claim Submitted - Action Required")
        assert "Reported issue: Leak" in mock_send.call_args.args[3]

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_dispute_includes_reason(self, mock_send):
        await send_backjob_dispute("ana@example.com", "Ana", APPOINTMENT_ID, "Different pipe")
        assert "Provider's reason: Different pipe" in mock_send.call_args.args[3]

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_reschedule(self, mock_send):
        await send_backjob_reschedule("ana@example.com", "Ana", APPOINTMENT_ID, T0, recipient="customer")
        assert mock_send.call_args.args[1] == "Warranty Service Rescheduled - Booking #3F2A9C1E"

    @patch("fixmo.services.transactional_email._send_transactional", new_callable=AsyncMock)
    async def test_cancellation_reason_optional(self, mock_send):
        await send_backjob_cancellation("ben@example.com", "Ben", APPOINTMENT_ID, "admin")
        text = mock_send.call_args.args[3]
        assert "cancelled by the admin" in text
        assert "Reason:" not in text
