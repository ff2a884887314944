"""HTTP health verification after a rollout."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from shipyard.modules.pipeline import HealthCheckDefinition

logger = logging.getLogger("shipyard.rollout.health")


@dataclass
class HealthResult:
    healthy: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class HealthChecker:
    """Polls a health endpoint until it answers with the expected status."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, verify: bool = True):
        self._transport = transport
        self._verify = verify

    async def check_once(self, client: httpx.AsyncClient, check: HealthCheckDefinition) -> HealthResult:
        try:
            response = await client.get(check.url, timeout=check.timeout)
        except httpx.HTTPError as e:
            return HealthResult(healthy=False, attempts=1, error=f"{type(e).__name__}: {e}")
        return HealthResult(
            healthy=response.status_code == check.expected_status,
            attempts=1,
            status_code=response.status_code,
        )

    async def wait_healthy(
        self, check: HealthCheckDefinition, url: Optional[str] = None
    ) -> HealthResult:
        """
        Poll until healthy or ``check.retries`` attempts have been made.

        Args:
            check: Health check definition
            url: Rendered URL overriding ``check.url``
        """
        if url:
            check = check.model_copy(update={"url": url})

        last = HealthResult(healthy=False, attempts=0)
        async with httpx.AsyncClient(transport=self._transport, verify=self._verify) as client:
            for attempt in range(1, check.retries + 1):
                last = await self.check_once(client, check)
                last.attempts = attempt
                if last.healthy:
                    logger.info(f"Health check passed for {check.url} after {attempt} attempt(s)")
                    return last
                logger.debug(
                    f"Health check attempt {attempt}/{check.retries} for {check.url}: "
                    f"status={last.status_code} error={last.error}"
                )
                if attempt < check.retries:
                    await asyncio.sleep(check.interval)

        logger.warning(f"Health check failed for {check.url} after {last.attempts} attempts")
        return last
