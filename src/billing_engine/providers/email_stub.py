"""Logging delivery provider for local development and testing.

Replace with an SMTP or transactional e-mail adapter for production.
"""

from __future__ import annotations

import logging
import uuid

from billing_engine.providers.base import DeliveryResult, InvoiceDocument, RenderedDocument

logger = logging.getLogger(__name__)


class LoggingDeliveryProvider:
    """Stub delivery provider that only logs and records deliveries."""

    provider_name = "logging_stub"

    def __init__(self, fail: bool = False):
        """Initialize stub provider.

        Args:
            fail: If True, every delivery is rejected (for failure-path tests).
        """
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def deliver(
        self,
        document: InvoiceDocument,
        to_email: str,
        attachment: RenderedDocument,
    ) -> DeliveryResult:
        if self.fail:
            logger.warning("Stub delivery rejected invoice %s to %s", document.number, to_email)
            return DeliveryResult(accepted=False, message="Delivery rejected by stub provider")

        message_id = f"STUB-{uuid.uuid4().hex[:12].upper()}"
        self.sent.append((document.number, to_email))
        logger.info(
            "Delivered invoice %s (%s, %d bytes) to %s as %s",
            document.number,
            attachment.filename,
            len(attachment.content),
            to_email,
            message_id,
        )
        return DeliveryResult(accepted=True, message="queued", provider_message_id=message_id)
