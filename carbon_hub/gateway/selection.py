"""Cross-vendor quote selection."""

from __future__ import annotations

from carbon_hub.gateway.errors import ValidationError
from carbon_hub.gateway.types import Quote


def select_best_quote(quotes: list[Quote]) -> Quote:
    """Return the cheapest quote by ``total_price``.

    Equal prices keep their input order (stable sort), so the earliest
    registered vendor wins a tie.
    """
    if not quotes:
        raise ValidationError("No quotes to select from")
    return sorted(quotes, key=lambda q: q.total_price)[0]
