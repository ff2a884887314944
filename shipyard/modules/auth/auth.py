"""
Authentication module for the Shipyard API.

Designed as a black box that can be replaced with any auth system
without affecting other modules.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Dict, Iterable, Optional, Tuple

logger = logging.getLogger("shipyard.auth")


@dataclass
class AuthResult:
    """Standardized authentication result."""
    ok: bool
    identity: Optional[str]
    error: Optional[str] = None


class AuthModule:
    """
    Authentication module for validating API keys.

    Keys come from configuration in "key" or "service:key" form; the service
    part becomes the caller identity recorded on the runs it triggers.
    """

    def __init__(self, api_keys: Iterable[str], redis_client=None):
        """
        Initialize auth module.

        Args:
            api_keys: Entries in "key" or "service:key" format
            redis_client: Optional async Redis client for the audit log
        """
        self.redis = redis_client
        self.api_keys: Dict[str, Optional[str]] = self._parse_api_keys(api_keys)

    @staticmethod
    def _parse_api_keys(entries: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = {}
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue

            if ":" in entry:
                service, key = entry.split(":", 1)
                keys[key.strip()] = service.strip() or None
            else:
                keys[entry] = None
        return keys

    async def verify_api_key(self, api_key: Optional[str]) -> Tuple[bool, Optional[str]]:
        """
        Verify API key.

        Args:
            api_key: API key from X-API-Key header

        Returns:
            Tuple of (is_valid, service_identity)
        """
        if not api_key:
            return False, None

        # Constant-time comparison against every configured key
        for known_key, service_identity in self.api_keys.items():
            if secrets.compare_digest(api_key, known_key):
                await self._log_event(
                    "api_key_verified",
                    {"service_identity": service_identity, "timestamp": datetime.now(UTC).isoformat()},
                )
                return True, service_identity

        return False, None

    async def authenticate(self, api_key: Optional[str]) -> AuthResult:
        ok, identity = await self.verify_api_key(api_key)
        if ok:
            return AuthResult(ok=True, identity=identity or "api-key")
        return AuthResult(ok=False, identity=None, error="Invalid API key")

    async def _log_event(self, event_type: str, data: dict) -> None:
        """Append to the auth audit log (best effort)."""
        if self.redis is None:
            return
        try:
            await self.redis.lpush("auth:events", json.dumps({"type": event_type, **data}))
            await self.redis.ltrim("auth:events", 0, 999)
        except Exception as e:
            logger.warning(f"Failed to record auth event: {e}")
