"""
Emergency kill switch shared by every worker through Redis.

While the flag is set, continuations stop before claiming a job. The flag
carries a TTL so a forgotten stop does not block processing forever. Redis
being unreachable never stops work: the check reports the switch as inactive.
"""
from typing import Any, Dict, Optional
import logging

import redis

from .config import settings

logger = logging.getLogger(__name__)

KILL_FLAG_KEY = "emergency:kill_flag"


class EmergencyKillSwitch:
    def __init__(self, client: Optional[Any] = None, enabled: Optional[bool] = None, ttl_seconds: Optional[int] = None):
        self.enabled = settings.KILL_SWITCH_ENABLED if enabled is None else enabled
        self.ttl_seconds = ttl_seconds or settings.KILL_SWITCH_TTL_SECONDS
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        return self._client

    def is_active(self) -> bool:
        if not self.enabled:
            return False
        try:
            return self.client.get(KILL_FLAG_KEY) == "true"
        except redis.RedisError as e:
            logger.warning("Could not read kill flag: %s", e)
            return False

    def activate(self, reason: Optional[str] = None) -> bool:
        if not self.enabled:
            logger.warning("Kill switch disabled, ignoring activation")
            return False
        try:
            self.client.set(KILL_FLAG_KEY, "true", ex=self.ttl_seconds)
        except redis.RedisError as e:
            logger.error("Could not set kill flag: %s", e)
            return False
        logger.critical("Emergency kill switch activated for %ds: %s", self.ttl_seconds, reason or "no reason given")
        return True

    def clear(self) -> bool:
        if not self.enabled:
            return False
        try:
            self.client.delete(KILL_FLAG_KEY)
        except redis.RedisError as e:
            logger.error("Could not clear kill flag: %s", e)
            return False
        logger.warning("Emergency kill switch cleared")
        return True

    def status(self) -> Dict[str, Any]:
        ttl = None
        if self.enabled:
            try:
                remaining = self.client.ttl(KILL_FLAG_KEY)
                ttl = remaining if remaining and remaining > 0 else None
            except redis.RedisError as e:
                logger.warning("Could not read kill flag TTL: %s", e)
        return {"enabled": self.enabled, "active": self.is_active(), "ttl_seconds": ttl}


_kill_switch: Optional[EmergencyKillSwitch] = None


def get_kill_switch() -> EmergencyKillSwitch:
    global _kill_switch
    if _kill_switch is None:
        _kill_switch = EmergencyKillSwitch()
    return _kill_switch
