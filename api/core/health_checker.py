"""
HTTP health verification for NGINX after a reload or restart.
"""

import asyncio
import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class HealthChecker:
    """Poll an NGINX endpoint until it answers 200 or retries run out."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        retries: Optional[int] = None,
        interval: Optional[float] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint or settings.nginx_health_endpoint
        self.retries = retries if retries is not None else settings.nginx_health_check_retries
        self.interval = interval if interval is not None else settings.nginx_health_check_interval
        self.timeout = timeout
        self._transport = transport

    async def verify(self) -> tuple[bool, Optional[str]]:
        """
        Check the health endpoint with retries.

        Returns:
            Tuple of (is_healthy, last_error)
        """
        last_error = None

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            for attempt in range(1, self.retries + 1):
                try:
                    response = await client.get(self.endpoint)
                    if response.status_code == 200:
                        logger.info(f"Health check passed on attempt {attempt}/{self.retries}")
                        return True, None

                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"Health check attempt {attempt}/{self.retries} returned status {response.status_code}"
                    )
                except httpx.TimeoutException:
                    last_error = "Timeout"
                    logger.warning(f"Health check attempt {attempt}/{self.retries} timed out")
                except httpx.RequestError as e:
                    last_error = str(e) or type(e).__name__
                    logger.warning(f"Health check attempt {attempt}/{self.retries} failed: {e}")

                if attempt < self.retries:
                    await asyncio.sleep(self.interval)

        return False, f"Health check failed after {self.retries} attempts: {last_error}"
