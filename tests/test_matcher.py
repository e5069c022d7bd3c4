from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from nestwatch.core.matcher import build_filter, build_filters, match_listings, matches
from nestwatch.core.models import Filter, Listing


def _listing(**overrides) -> Listing:
    listing = Listing(
        id=1,
        title="Bright apartment near the park",
        description="Spacious flat with a balcony",
        url="https://example.com/item/1",
        ingested_at=datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
        price=5000,
        currency="ILS",
        price_period="month",
        bedrooms=3,
        city="Tel Aviv",
        neighborhood="Florentin",
        tags=frozenset({"parking", "balcony"}),
    )
    return replace(listing, **overrides)


def _filter(**overrides) -> Filter:
    return replace(Filter(id=1, owner_id=10, delivery_target="555"), **overrides)


def test_unconstrained_filter_matches_everything() -> None:
    empty = _filter()
    assert matches(_listing(), empty)
    assert matches(
        _listing(price=None, bedrooms=None, city=None, neighborhood=None, tags=frozenset()),
        empty,
    )


def test_price_bounds_are_inclusive() -> None:
    assert matches(_listing(price=5000), _filter(min_price=5000))
    assert matches(_listing(price=5000), _filter(max_price=5000))
    assert matches(_listing(price=5000), _filter(min_price=3000, max_price=7000))
    assert not matches(_listing(price=5000), _filter(min_price=6000))
    assert not matches(_listing(price=5000), _filter(max_price=4000))


def test_null_price_never_satisfies_price_bound() -> None:
    assert not matches(_listing(price=None), _filter(min_price=2000))
    assert not matches(_listing(price=None), _filter(max_price=9000))


def test_bedroom_bounds_follow_null_rule() -> None:
    assert matches(_listing(bedrooms=3), _filter(min_bedrooms=2, max_bedrooms=3))
    assert not matches(_listing(bedrooms=4), _filter(max_bedrooms=3))
    assert not matches(_listing(bedrooms=None), _filter(min_bedrooms=1))
    # Zero is a real value (studio), not a missing one.
    assert matches(_listing(bedrooms=0), _filter(max_bedrooms=1))


def test_city_and_neighborhood_membership() -> None:
    assert matches(_listing(city="Tel Aviv"), _filter(cities=frozenset({"Tel Aviv", "Haifa"})))
    assert not matches(_listing(city="Jerusalem"), _filter(cities=frozenset({"Tel Aviv"})))
    assert not matches(_listing(city=None), _filter(cities=frozenset({"Tel Aviv"})))
    assert not matches(_listing(neighborhood=None), _filter(neighborhoods=frozenset({"Florentin"})))
    assert matches(_listing(neighborhood="Florentin"), _filter(neighborhoods=frozenset({"Florentin"})))


def test_keywords_match_any_case_insensitive_in_title_or_description() -> None:
    assert matches(_listing(), _filter(keywords=("PARK",)))
    assert matches(_listing(), _filter(keywords=("garden", "Balcony")))
    assert not matches(_listing(), _filter(keywords=("garden", "penthouse")))


def test_must_have_tags_require_all() -> None:
    listing = _listing(tags=frozenset({"parking"}))
    assert not matches(listing, _filter(must_have_tags=frozenset({"parking", "pets"})))
    assert matches(listing, _filter(must_have_tags=frozenset({"parking"})))


def test_exclude_tags_reject_any() -> None:
    listing = _listing(tags=frozenset({"smoking", "parking"}))
    criteria = _filter(
        max_price=9000,
        cities=frozenset({"Tel Aviv"}),
        must_have_tags=frozenset({"parking"}),
        exclude_tags=frozenset({"smoking"}),
    )
    assert not matches(listing, criteria)


def test_example_tel_aviv_scenario() -> None:
    criteria = _filter(max_price=5000, cities=frozenset({"Tel Aviv"}))
    assert matches(_listing(price=4500, city="Tel Aviv"), criteria)


def test_match_listings_preserves_order() -> None:
    listings = [_listing(id=1, price=4000), _listing(id=2, price=8000), _listing(id=3, price=3000)]
    matched = match_listings(_filter(max_price=5000), listings)
    assert [listing.id for listing in matched] == [1, 3]


def test_build_filter_normalizes_raw_values() -> None:
    criteria = build_filter(
        {
            "id": "7",
            "owner_id": 3,
            "delivery_target": 123456,
            "min_price": "",
            "max_price": "5000",
            "cities": ["Tel Aviv", " ", None],
            "keywords": ["  Balcony "],
        }
    )
    assert criteria.id == 7
    assert criteria.delivery_target == "123456"
    assert criteria.min_price is None
    assert criteria.max_price == 5000.0
    assert criteria.cities == frozenset({"Tel Aviv"})
    assert criteria.keywords == ("balcony",)
    assert criteria.must_have_tags == frozenset()


def test_build_filters_skips_disabled() -> None:
    rows = [
        {"id": 1, "owner_id": 1, "delivery_target": "1", "enabled": True},
        {"id": 2, "owner_id": 1, "delivery_target": "1", "enabled": False},
        {"id": 3, "owner_id": 2, "delivery_target": "2"},
    ]
    assert [criteria.id for criteria in build_filters(rows)] == [1, 3]
