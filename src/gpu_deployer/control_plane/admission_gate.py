"""
Admission Gate

Decides whether a job may start now by asking an external busy probe.
"""
import asyncio
import logging

import aiohttp

from ..config import DeployerSettings

logger = logging.getLogger(__name__)


class AdmissionGate:
    """
    Yields a "may admit now" signal from a busy probe.

    The probe is available iff its JSON body has ``status == "available"``.
    A probe error (network failure, timeout, malformed body) resolves to
    ``busy_probe_fail_open``; the default is fail-closed, so queued work is
    held rather than double-booking a busy GPU.
    """

    def __init__(self, settings: DeployerSettings):
        self.disabled = settings.disable_busy_check
        self.probe_url = settings.busy_check_url
        self.fail_open = settings.busy_probe_fail_open
        self.timeout_s = settings.busy_probe_timeout_seconds

    async def is_available(self) -> bool:
        if self.disabled or not self.probe_url:
            return True

        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    self.probe_url,
                    headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
                ) as resp:
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Busy probe failed ({e!r}); treating as {'available' if self.fail_open else 'busy'}")
            return self.fail_open

        if not isinstance(data, dict):
            logger.warning(f"Busy probe returned non-object body; treating as {'available' if self.fail_open else 'busy'}")
            return self.fail_open

        return data.get("status") == "available"
