"""Filter normalization and matching logic (core domain)."""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from nestwatch.core.models import Filter, Listing


def _optional_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _clean_strings(values: Optional[Iterable[Any]]) -> List[str]:
    cleaned: List[str] = []
    for value in values or []:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            cleaned.append(text)
    return cleaned


def build_filter(raw: Mapping[str, Any]) -> Filter:
    """Normalize one raw filter mapping into a ``Filter``.

    Blank entries are dropped rather than treated as constraints that
    nothing can satisfy.
    """

    return Filter(
        id=int(raw["id"]),
        owner_id=int(raw["owner_id"]),
        delivery_target=str(raw["delivery_target"]),
        name=raw.get("name") or "",
        min_price=_optional_number(raw.get("min_price")),
        max_price=_optional_number(raw.get("max_price")),
        min_bedrooms=_optional_number(raw.get("min_bedrooms")),
        max_bedrooms=_optional_number(raw.get("max_bedrooms")),
        cities=frozenset(_clean_strings(raw.get("cities"))),
        neighborhoods=frozenset(_clean_strings(raw.get("neighborhoods"))),
        keywords=tuple(k.lower() for k in _clean_strings(raw.get("keywords"))),
        must_have_tags=frozenset(_clean_strings(raw.get("must_have_tags"))),
        exclude_tags=frozenset(_clean_strings(raw.get("exclude_tags"))),
    )


def build_filters(rows: Iterable[Mapping[str, Any]]) -> List[Filter]:
    """Build filters from raw mappings, skipping disabled ones."""

    return [build_filter(row) for row in rows if row.get("enabled", True)]


def _within(value: Optional[float], lower: Optional[float], upper: Optional[float]) -> bool:
    if lower is None and upper is None:
        return True
    # A bounded constraint can never be satisfied by an unknown value.
    if value is None:
        return False
    if lower is not None and value < lower:
        return False
    if upper is not None and value > upper:
        return False
    return True


def matches(listing: Listing, criteria: Filter) -> bool:
    """Return True when the listing satisfies every constraint of the filter.

    Checks are AND-combined and short-circuit on the first failure:
    - price and bedroom bounds (inclusive)
    - city and neighborhood membership
    - any keyword as a case-insensitive substring of title + description
    - all must-have tags present, no excluded tag present
    """

    if not _within(listing.price, criteria.min_price, criteria.max_price):
        return False
    if not _within(listing.bedrooms, criteria.min_bedrooms, criteria.max_bedrooms):
        return False

    if criteria.cities and (not listing.city or listing.city not in criteria.cities):
        return False
    if criteria.neighborhoods and (
        not listing.neighborhood or listing.neighborhood not in criteria.neighborhoods
    ):
        return False

    if criteria.keywords:
        text = f"{listing.title} {listing.description or ''}".lower()
        if not any(keyword.lower() in text for keyword in criteria.keywords):
            return False

    if criteria.must_have_tags and not criteria.must_have_tags <= listing.tags:
        return False
    if criteria.exclude_tags and criteria.exclude_tags & listing.tags:
        return False

    return True


def match_listings(criteria: Filter, listings: Iterable[Listing]) -> List[Listing]:
    """Return the listings matching one filter, preserving input order."""

    return [listing for listing in listings if matches(listing, criteria)]
