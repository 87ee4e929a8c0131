"""VendorResolver: infers the owning vendor of an opaque id.

Resolution order:
  1. ``"{vendor}_..."`` prefix for any registered vendor
  2. ids seen in previously fetched portfolios/projects
  3. unresolved → None
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from carbon_hub.gateway.types import Portfolio, Project

logger = logging.getLogger(__name__)


class VendorResolver:
    def __init__(self, vendors: Callable[[], Iterable[str]]):
        """
        Args:
            vendors: Returns the currently registered vendor ids
        """
        self._vendors = vendors
        self._seen: dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, entity_id: str | None) -> str | None:
        if not entity_id:
            return None

        # Longest prefix first so "abc_def_" beats "abc_"
        for vendor in sorted(self._vendors(), key=len, reverse=True):
            if entity_id.startswith(f"{vendor}_"):
                return vendor

        with self._lock:
            vendor = self._seen.get(entity_id)
        if vendor is None:
            logger.debug("Could not resolve vendor for id %s", entity_id)
        return vendor

    def remember(self, entities: Iterable[Portfolio | Project]) -> None:
        """Index fetched entities (and nested projects) by id."""
        with self._lock:
            for entity in entities:
                if entity.id and entity.vendor:
                    self._seen[entity.id] = entity.vendor
                if isinstance(entity, Portfolio):
                    for project in entity.projects:
                        if project.id and project.vendor:
                            self._seen[project.id] = project.vendor

    def forget_vendor(self, vendor: str) -> None:
        with self._lock:
            self._seen = {k: v for k, v in self._seen.items() if v != vendor}

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
