"""
Courier Pipeline - Priority Resolution.

Assigns a tier to requests that arrive without one: the template's
priority when it can be found (cache first, then the template store),
otherwise the default tier.
"""
from __future__ import annotations

from typing import Any

import structlog

from courier_common.exceptions import InvalidPriorityError
from courier_events.topology import DEFAULT_PRIORITY, UNASSIGNED_PRIORITY, Priority
from courier_infrastructure.redis import KeyValueCache

from .models import NotificationRequest
from .stores import TemplateStore

logger = structlog.get_logger(__name__)

TEMPLATE_PRIORITY_TTL_SECONDS = 24 * 60 * 60
_VALID = {int(p) for p in Priority}


def template_cache_key(template_name: str) -> str:
    return f"template_priority:{template_name}"


def _as_priority(value: Any) -> int | None:
    """Coerce a cached or stored value into a tier, None when it isn't one."""
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return None
    return priority if priority in _VALID else None


class PriorityResolver:
    """Resolves the delivery tier of a notification request.

    The only side effect is a cache write after a store lookup; the
    template store is never modified.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        templates: TemplateStore,
        ttl_seconds: int = TEMPLATE_PRIORITY_TTL_SECONDS,
    ) -> None:
        self._cache = cache
        self._templates = templates
        self._ttl_seconds = ttl_seconds

    async def resolve(self, request: NotificationRequest) -> int:
        priority = request.notification_priority
        if priority in _VALID:
            return priority
        if priority != UNASSIGNED_PRIORITY:
            raise InvalidPriorityError(priority)

        template_name = request.content.template_name
        if not template_name:
            logger.debug("priority_defaulted", reason="no_template")
            return int(DEFAULT_PRIORITY)

        cached = await self._cache_get(template_name)
        if cached is not None:
            logger.debug("template_priority_cache_hit", template=template_name, priority=cached)
            return cached

        try:
            template = await self._templates.find_by_name(template_name)
        except Exception as e:
            logger.error("template_lookup_failed", template=template_name, error=str(e))
            return int(DEFAULT_PRIORITY)
        if template is None:
            logger.warning("template_not_found", template=template_name,
                           default_priority=int(DEFAULT_PRIORITY))
            return int(DEFAULT_PRIORITY)

        stored = _as_priority(template.priority)
        if stored is None:
            logger.warning("template_priority_invalid", template=template_name,
                           priority=template.priority)
            return int(DEFAULT_PRIORITY)

        await self._cache_set(template_name, stored)
        return stored

    async def resolve_request(self, request: NotificationRequest) -> NotificationRequest:
        """Copy of ``request`` with its tier filled in."""
        return request.with_priority(await self.resolve(request))

    async def _cache_get(self, template_name: str) -> int | None:
        try:
            value = await self._cache.get(template_cache_key(template_name))
        except Exception as e:
            logger.warning("template_priority_cache_unavailable", template=template_name, error=str(e))
            return None
        if value is None:
            return None
        priority = _as_priority(value)
        if priority is None:
            logger.warning("template_priority_cache_invalid", template=template_name, value=value)
        return priority

    async def _cache_set(self, template_name: str, priority: int) -> None:
        try:
            await self._cache.set(template_cache_key(template_name), priority, ttl=self._ttl_seconds)
        except Exception as e:
            logger.warning("template_priority_cache_write_failed", template=template_name, error=str(e))
