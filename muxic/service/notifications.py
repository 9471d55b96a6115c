from __future__ import annotations

import asyncio
from typing import Any, Callable

from muxic.logging import get_logger
from muxic.service.email import EmailService

logger = get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-forget delivery of account emails.

    Routes schedule these coroutines on FastAPI ``BackgroundTasks`` so they run
    after the response is sent. SMTP is blocking, so each send runs in a worker
    thread. Failures are logged as ``notification_failed`` and never raised;
    there is no retry.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email

    async def _deliver(self, kind: str, send: Callable[..., bool], *args: Any) -> bool:
        try:
            delivered = await asyncio.to_thread(send, *args)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("notification_failed", kind=kind, reason="not_delivered")
            return False
        logger.info("notification_sent", kind=kind)
        return True

    async def send_verification(self, to_email: str, otp_code: str, username: str) -> bool:
        return await self._deliver(
            "verification", self.email.send_verification_otp, to_email, otp_code, username
        )

    async def send_welcome(self, to_email: str, username: str) -> bool:
        return await self._deliver("welcome", self.email.send_welcome, to_email, username)

    async def send_password_reset(self, to_email: str, token: str) -> bool:
        return await self._deliver(
            "password_reset", self.email.send_password_reset, to_email, token
        )
