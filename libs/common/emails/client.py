"""
Email client for templated notifications.

Registration confirmations, refund notices and waitlist confirmations are
rendered and delivered by the Communications Service; this module only
forwards the template type and its data over HTTP, authenticated with a
short-lived service-role JWT.

Callers inside request handlers should not use this client directly. Emit a
notification through ``libs.common.notifications`` instead; the payments
worker consumes those jobs and calls ``send_template`` here.

Usage:
    from libs.common.emails.client import get_email_client

    await get_email_client().send_template(
        template_type="refund_processed",
        to_email="player@example.com",
        template_data={"amount": "$20.00"},
    )
"""

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


class EmailClient:
    """HTTP client for the Communications Service template endpoint."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0):
        settings = get_settings()
        self.base_url = (base_url or settings.COMMUNICATIONS_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    def _get_auth_headers(self) -> dict[str, str]:
        from libs.auth.dependencies import _service_role_jwt

        token = _service_role_jwt("email_client")
        return {"Authorization": f"Bearer {token}"}

    async def send_template(
        self,
        template_type: str,
        to_email: str,
        template_data: dict[str, Any],
    ) -> bool:
        """
        Send a templated email.

        Template types used by this codebase:
        - registration_confirmation: registration paid (or free) and confirmed
        - refund_processed: full or partial refund completed
        - waitlist_joined: user added to a category waitlist

        Returns:
            True if the Communications Service accepted the email.
        """
        payload = {
            "template_type": template_type,
            "to_email": to_email,
            "template_data": template_data,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/email/template",
                    json=payload,
                    headers=self._get_auth_headers(),
                )
        except httpx.RequestError as e:
            logger.error(
                "Failed to reach Communications Service for '%s': %s",
                template_type,
                e,
            )
            return False

        if response.status_code != 200:
            logger.error(
                "Template email API returned %d for '%s': %s",
                response.status_code,
                template_type,
                response.text,
            )
            return False

        return bool(response.json().get("success", False))


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Get or create the shared EmailClient instance."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
