"""
Team configuration resolver.

Resolution order for (team, form kind):

1. the team's own active assignment,
2. the newest active specialty default matching the team's specialty,
3. the built-in system default.

Built-in defaults are published into the store the first time they are
needed, so every answer record can pin a stored version. Inactive versions
are never returned by resolve(); resolve_version() is an exact lookup used
when reading records back and does return them.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol
from uuid import UUID

from clinical_forms.config import settings
from clinical_forms.engine.errors import ConfigurationVersionUnavailable, FormKindUnavailable
from clinical_forms.schemas.defaults import specialty_default, system_default
from clinical_forms.schemas.form_config import FormConfiguration

logger = logging.getLogger(__name__)


class ConfigurationSource(Protocol):
    def get(self, configuration_id: UUID) -> FormConfiguration | None: ...

    def assigned_configuration(self, team_id: str, form_kind: str) -> FormConfiguration | None: ...

    def team_specialty(self, team_id: str) -> str | None: ...

    def latest_default(self, form_kind: str, specialty: str | None) -> FormConfiguration | None: ...

    def has_default(self, form_kind: str, specialty: str | None) -> bool: ...

    def publish_builtin(self, document: dict[str, Any], specialty: str | None) -> FormConfiguration: ...


# ---------------------------------------------------------------------------
# Read-through cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Entry:
    configuration: FormConfiguration
    expires_at: float


class ResolutionCache:
    """Per-process cache of resolved configurations keyed by (team, form kind).

    Every invalidation bumps ``generation``. A resolver reads it before going
    to the store and passes it to put(); a put started before an invalidation
    is dropped, so a slow read cannot re-cache a version that was replaced
    while it ran.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], _Entry] = {}
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, team_id: str, form_kind: str) -> FormConfiguration | None:
        with self._lock:
            entry = self._entries.get((team_id, form_kind))
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[(team_id, form_kind)]
                return None
            return entry.configuration

    def put(
        self, team_id: str, form_kind: str, configuration: FormConfiguration, generation: int | None = None
    ) -> bool:
        """Cache a resolution; False when caching is off or ``generation`` is stale."""
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Dropping stale resolution of %s/%s", team_id, form_kind)
                return False
            self._entries[(team_id, form_kind)] = _Entry(configuration, self._clock() + self.ttl_seconds)
            return True

    def invalidate(self, team_id: str | None = None, form_kind: str | None = None) -> None:
        """Drop entries for a team and/or form kind; no arguments clears everything."""
        with self._lock:
            self._generation += 1
            for key in list(self._entries):
                if (team_id is None or key[0] == team_id) and (form_kind is None or key[1] == form_kind):
                    del self._entries[key]

    def invalidate_configuration(self, configuration_id: UUID) -> None:
        with self._lock:
            self._generation += 1
            for key, entry in list(self._entries.items()):
                if entry.configuration.id == configuration_id:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


resolution_cache = ResolutionCache(settings.RESOLVER_CACHE_TTL_SECONDS)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class ConfigurationResolver:
    def __init__(self, store: ConfigurationSource, cache: ResolutionCache | None = None):
        self.store = store
        self.cache = cache if cache is not None else resolution_cache

    def resolve(self, team_id: str, form_kind: str) -> FormConfiguration:
        cached = self.cache.get(team_id, form_kind)
        if cached is not None:
            return cached
        generation = self.cache.generation
        configuration = self._resolve(team_id, form_kind)
        self.cache.put(team_id, form_kind, configuration, generation)
        return configuration

    def resolve_version(self, configuration_id: UUID) -> FormConfiguration:
        configuration = self.store.get(configuration_id)
        if configuration is None:
            raise ConfigurationVersionUnavailable(configuration_id)
        return configuration

    def _resolve(self, team_id: str, form_kind: str) -> FormConfiguration:
        configuration = self.store.assigned_configuration(team_id, form_kind)
        if configuration is not None:
            logger.debug("%s/%s resolved to team version %s", team_id, form_kind, configuration.version)
            return configuration

        specialty = self.store.team_specialty(team_id)
        if specialty:
            configuration = self._default(form_kind, specialty, specialty_default(specialty, form_kind))
            if configuration is not None:
                logger.debug("%s/%s resolved to %s default v%s", team_id, form_kind, specialty, configuration.version)
                return configuration

        configuration = self._default(form_kind, None, system_default(form_kind))
        if configuration is not None:
            logger.debug("%s/%s resolved to system default v%s", team_id, form_kind, configuration.version)
            return configuration

        raise FormKindUnavailable(team_id, form_kind)

    def _default(
        self, form_kind: str, specialty: str | None, builtin: dict[str, Any] | None
    ) -> FormConfiguration | None:
        configuration = self.store.latest_default(form_kind, specialty)
        if configuration is not None:
            return configuration
        # Publish only when nothing was ever stored; a deactivated default stays deactivated.
        if builtin is None or self.store.has_default(form_kind, specialty):
            return None
        logger.info("Publishing built-in %s default for %s", form_kind, specialty or "system")
        return self.store.publish_builtin(builtin, specialty)
