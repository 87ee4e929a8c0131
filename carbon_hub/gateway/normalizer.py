"""Normalizer: turns raw vendor payloads into canonical entities.

Accepts either canonical objects (already built by a vendor client) or
generic maps, and always returns a flat list of entities tagged with their
owning vendor:
  - canonical objects keep an explicit vendor; an empty vendor is filled in
    on a copy, never on the caller's object
  - maps are built into the entity class for ``entity_type`` tagged with the
    vendor that returned them, then validated
  - items that cannot be built or fail validation are dropped (DEBUG log)
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from carbon_hub.gateway.types import ENTITY_CLASSES, EntityType, Portfolio

logger = logging.getLogger(__name__)


def _as_items(raw: Any) -> list[Any]:
    """Flatten the shapes vendors return into a list of items."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, dict) and isinstance(raw.get("data"), list):
        return raw["data"]
    return [raw]


def _with_vendor(entity: Any, vendor: str) -> Any:
    """Copy of a canonical object with an empty vendor filled in; the input is left as is."""
    owner = entity.vendor or vendor
    if isinstance(entity, Portfolio):
        projects = [p if p.vendor else replace(p, vendor=owner) for p in entity.projects]
        if owner != entity.vendor or any(a is not b for a, b in zip(projects, entity.projects)):
            return replace(entity, vendor=owner, projects=projects)
        return entity
    if owner != entity.vendor:
        return replace(entity, vendor=owner)
    return entity


def normalize(raw: Any, entity_type: EntityType | str, vendor: str) -> list:
    """Normalize ``raw`` into canonical entities of ``entity_type``.

    This is idempotent: normalizing canonical objects again keeps their
    ``(vendor, id)`` pair unchanged.
    """
    entity_type = EntityType(entity_type)
    cls = ENTITY_CLASSES[entity_type]
    result = []

    for item in _as_items(raw):
        if isinstance(item, cls):
            entity = _with_vendor(item, vendor)
        elif isinstance(item, dict):
            try:
                entity = cls.from_dict({**item, "vendor": vendor})
            except (TypeError, ValueError) as e:
                logger.debug("Dropping unparseable %s item from %s: %s", entity_type.value, vendor, e)
                continue
        else:
            logger.debug("Dropping %s item of type %s from %s", entity_type.value, type(item).__name__, vendor)
            continue

        errors = entity.validate()
        if errors:
            logger.debug("Dropping invalid %s item from %s: %s", entity_type.value, vendor, "; ".join(errors))
            continue
        result.append(entity)

    return result
