"""Brevo (Sendinblue) transactional email sender for collection emails.

Implements the ``EmailSender`` contract of the dunning agent on top of
the Brevo SMTP API. Supports dry-run mode for testing and development.
"""

import logging
from datetime import UTC, datetime
from uuid import UUID, uuid5

import httpx

from agents.dunning.clients import SendResult
from backend.core.config import settings

# DNS namespace UUID for deterministic UUID5 generation
DNS_NAMESPACE = UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def generate_message_id(to: str, subject: str, ts: datetime | None = None) -> str:
    """Deterministic message ID for dry-run sends."""
    ts = ts or datetime.now(UTC)
    return str(uuid5(DNS_NAMESPACE, "|".join([to.lower(), subject, ts.isoformat()])))


class BrevoEmailSender:
    """Brevo API client for collection emails."""

    def __init__(
        self,
        api_key: str | None = None,
        sender_email: str | None = None,
        base_url: str | None = None,
        dry_run: bool | None = None,
        client: httpx.Client | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.api_key = api_key if api_key is not None else settings.BREVO_API_KEY
        self.sender_email = sender_email or settings.BREVO_SENDER_EMAIL
        self.base_url = base_url or settings.BREVO_BASE_URL
        self.dry_run = settings.EMAIL_DRY_RUN if dry_run is None else dry_run

        # Hard-bounce tracking (process local)
        self._hard_bounces: set[str] = set()

        if not self.api_key:
            self.logger.warning("BREVO_API_KEY not set - only dry-run mode available")

        self._client = client or httpx.Client(
            base_url=self.base_url,
            headers={
                "api-key": self.api_key or "dry-run",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=settings.BREVO_TIMEOUT_MS / 1000.0,
        )

    def send(
        self, to: str, subject: str, body: str, from_name: str, reply_to: str | None = None
    ) -> SendResult:
        """Send one plain-text email.

        Args:
            to: Recipient email address
            subject: Email subject
            body: Plain-text body including disclosures
            from_name: Sender display name
            reply_to: Optional reply-to address

        Returns:
            SendResult with success status and provider message ID
        """
        if self.is_hard_bounced(to):
            self.logger.warning("brevo_skip_hard_bounced", extra={"to": to})
            return SendResult(success=False, error="Email address is on hard-bounce list")

        if self.dry_run or not self.api_key:
            self.logger.info(
                "brevo_dry_run",
                extra={"to": to, "subject": subject[:50], "dry_run": True},
            )
            return SendResult(
                success=True, message_id=generate_message_id(to, subject), dry_run=True
            )

        email_data = {
            "sender": {"name": from_name, "email": self.sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": body,
        }
        if reply_to:
            email_data["replyTo"] = {"email": reply_to}

        try:
            response = self._client.post("/smtp/email", json=email_data)
        except httpx.HTTPError as e:
            self.logger.error("brevo_network_error", extra={"to": to, "error": str(e)})
            return SendResult(success=False, error=f"Network error sending email: {e}")

        if response.status_code == 201:
            message_id = response.json().get("messageId")
            self.logger.info("brevo_sent", extra={"to": to, "message_id": message_id})
            return SendResult(success=True, message_id=message_id)

        error_msg = f"Brevo API error: {response.status_code} - {response.text}"
        if response.status_code == 400 and "invalid" in response.text.lower():
            self.add_hard_bounce(to)
        self.logger.error(
            "brevo_send_failed", extra={"to": to, "status_code": response.status_code}
        )
        return SendResult(success=False, error=error_msg)

    def close(self):
        """Close HTTP client connection."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def is_hard_bounced(self, email: str) -> bool:
        return email.lower() in self._hard_bounces

    def add_hard_bounce(self, email: str) -> None:
        self._hard_bounces.add(email.lower())
        self.logger.info("brevo_hard_bounce_added", extra={"to": email})
