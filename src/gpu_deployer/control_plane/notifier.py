"""
Notifier

Fire-and-forget delivery of job-ready events to a webhook.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from ..config import DeployerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifyResult:
    """Outcome of a delivery attempt; callers may discard the error."""
    delivered: bool
    error: Optional[str] = None


class Notifier:
    def __init__(self, settings: DeployerSettings):
        self.url = settings.notify_url
        self.token = settings.notify_token
        self.timeout_s = settings.notify_timeout_seconds

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-Notify-Token"] = self.token
        return headers

    async def notify(
        self,
        email: Optional[str],
        uri: Optional[str],
        product: str,
        minutes: int,
        dry_run: bool,
    ) -> NotifyResult:
        """POST a job-ready event. Never raises."""
        if not self.url:
            return NotifyResult(delivered=False, error="notify_url_unset")

        payload = {
            "email": email,
            "uri": uri,
            "product": product,
            "minutes": minutes,
            "dry_run": dry_run,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.post(self.url, json=payload) as resp:
                    if resp.status >= 400:
                        logger.warning(f"Notify webhook returned {resp.status} for {product}")
                        return NotifyResult(delivered=False, error=f"http_{resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Notify webhook failed: {e!r}")
            return NotifyResult(delivered=False, error=str(e) or type(e).__name__)

        logger.info(f"Notified {product} job ready")
        return NotifyResult(delivered=True)
