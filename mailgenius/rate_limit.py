"""Fixed-window rate limiter backed by :class:`Persistence`."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .errors import ValidationError
from .logger import get_logger
from .persistence import Persistence

DEFAULT_PROFILE = "default"
DEFAULT_PROFILES: Dict[str, Tuple[int, float]] = {
    "email-sending": (100, 60.0),
    "lead-import": (1000, 60.0),
    "api": (1000, 60.0),
    "campaign-creation": (10, 3600.0),
    DEFAULT_PROFILE: (60, 60.0),
}

ProfileSpec = Union[Tuple[int, float], Mapping[str, Any]]


def parse_profile(value: Union[str, ProfileSpec]) -> Tuple[int, float]:
    """Accept ``"100/60"``, ``(100, 60)`` or ``{"limit": 100, "window_seconds": 60}``."""
    try:
        if isinstance(value, str):
            limit_str, window_str = value.split("/", 1)
            limit, window = int(limit_str.strip()), float(window_str.strip())
        elif isinstance(value, Mapping):
            limit = int(value["limit"])
            window = float(value.get("window_seconds", value.get("window", 60)))
        else:
            limit, window = int(value[0]), float(value[1])
    except (KeyError, IndexError, TypeError, ValueError):
        raise ValidationError(f"Invalid rate limit profile: {value!r}")
    if limit <= 0 or window <= 0:
        raise ValidationError(f"Rate limit profile must be positive: {value!r}")
    return limit, window


class RateLimiter:
    """Per ``(identifier, resource)`` admission counter.

    Window state lives in the database so every worker (and every process
    sharing the database) sees the same counter; each admission is one
    conditional increment.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        profiles: Optional[Mapping[str, ProfileSpec]] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.persistence = persistence
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.rate_limit")
        self.profiles: Dict[str, Tuple[int, float]] = dict(DEFAULT_PROFILES)
        for name, spec in (profiles or {}).items():
            self.profiles[name] = parse_profile(spec)
        self._warned: set[str] = set()

    def profile_for(self, resource: str) -> Tuple[int, float]:
        profile = self.profiles.get(resource)
        if profile is not None:
            return profile
        if resource not in self._warned:
            self._warned.add(resource)
            limit, window = self.profiles[DEFAULT_PROFILE]
            self.logger.warning(
                "No rate limit profile for '%s', using default (%d per %ss)", resource, limit, int(window)
            )
        return self.profiles[DEFAULT_PROFILE]

    async def check(
        self,
        identifier: str,
        resource: str,
        config: Optional[ProfileSpec] = None,
    ) -> Dict[str, Any]:
        """Consume one admission if the window allows it.

        Returns ``{"allowed", "remaining", "reset_time", "limit"}``; a rejected
        call does not touch the counter.
        """
        limit, window = parse_profile(config) if config is not None else self.profile_for(resource)
        allowed, count, window_start = await self.persistence.hit_rate_limit(
            identifier, resource, limit, window, self.clock()
        )
        return {
            "allowed": allowed,
            "remaining": max(0, limit - count) if allowed else 0,
            "reset_time": window_start + window,
            "limit": limit,
        }

    async def status(self, identifier: str, resource: str) -> Dict[str, Any]:
        """Inspect a window without consuming an admission."""
        limit, window = self.profile_for(resource)
        row = await self.persistence.get_rate_limit(identifier, resource)
        now = self.clock()
        if row is None or row["window_start"] + row["window_seconds"] <= now:
            return {
                "identifier": identifier,
                "resource": resource,
                "count": 0,
                "limit": limit,
                "remaining": limit,
                "reset_time": None,
            }
        stored_limit = int(row["limit_value"])
        return {
            "identifier": identifier,
            "resource": resource,
            "count": int(row["count"]),
            "limit": stored_limit,
            "remaining": max(0, stored_limit - int(row["count"])),
            "reset_time": row["window_start"] + row["window_seconds"],
        }

    async def reset(self, identifier: str, resource: str) -> bool:
        """Clear a window early; returns ``True`` when a window existed."""
        removed = await self.persistence.delete_rate_limit(identifier, resource)
        if removed:
            self.logger.info("Rate limit reset for %s on '%s'", identifier, resource)
        return removed

    async def cleanup_expired(self) -> int:
        return await self.persistence.delete_expired_rate_limits(self.clock())
