"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters: the same HTML text
is used as the plain message body and as the photo caption.
"""

from __future__ import annotations

import html
from typing import Optional
from urllib.parse import quote

from nestwatch.core.models import Listing

CURRENCY_SYMBOLS = {"ILS": "₪", "USD": "$", "EUR": "€"}

# Map searches resolve Hebrew city names more reliably.
HEBREW_CITY_NAMES = {
    "Tel Aviv": "תל אביב",
    "Jerusalem": "ירושלים",
    "Haifa": "חיפה",
    "Rishon LeZion": "ראשון לציון",
    "Petah Tikva": "פתח תקווה",
    "Ashdod": "אשדוד",
    "Netanya": "נתניה",
    "Beersheba": "באר שבע",
    "Beer Sheva": "באר שבע",
    "Holon": "חולון",
    "Bnei Brak": "בני ברק",
    "Ramat Gan": "רמת גן",
    "Ashkelon": "אשקלון",
    "Rehovot": "רחובות",
    "Bat Yam": "בת ים",
    "Herzliya": "הרצליה",
    "Kfar Saba": "כפר סבא",
    "Hadera": "חדרה",
    "Modiin": "מודיעין",
    "Nazareth": "נצרת",
    "Lod": "לוד",
    "Ramla": "רמלה",
}


def format_price(amount: float, currency: str, period: Optional[str]) -> str:
    """Return e.g. ``₪5,500/month``."""

    symbol = CURRENCY_SYMBOLS.get(currency, "€")
    formatted = f"{amount:,.0f}" if float(amount).is_integer() else f"{amount:,.2f}"
    period_text = f"/{period}" if period else ""
    return f"{symbol}{formatted}{period_text}"


def format_rooms(bedrooms: float) -> str:
    if bedrooms == 0:
        return "Studio"
    count = int(bedrooms) if float(bedrooms).is_integer() else bedrooms
    return f"{count} rooms"


def _house_number(raw: str) -> str:
    # Upstream sometimes stores house numbers as floats ("12.0").
    try:
        return str(int(float(raw)))
    except ValueError:
        return raw


def build_maps_url(listing: Listing) -> str:
    """Return a Google Maps search link, already escaped for Telegram HTML."""

    parts = []
    if listing.street:
        parts.append(listing.street)
    if listing.house_number:
        parts.append(_house_number(listing.house_number))
    if listing.city:
        parts.append(HEBREW_CITY_NAMES.get(listing.city, listing.city))
    query = quote(" ".join(parts), safe="")
    return f"https://www.google.com/maps/search/?api=1&amp;query={query}"


def format_address(listing: Listing) -> Optional[str]:
    """Return ``City - Neighborhood`` plus a street link when a street is known."""

    if not listing.city:
        return None

    location_parts = [listing.city]
    if listing.neighborhood:
        location_parts.append(listing.neighborhood)
    location = html.escape(" - ".join(location_parts))

    if not listing.street:
        return location

    street_text = listing.street
    if listing.house_number:
        street_text = f"{street_text} {_house_number(listing.house_number)}"
    return f'{location}, <a href="{build_maps_url(listing)}">{html.escape(street_text)}</a>'


def format_listing(listing: Listing, snippet_chars: int = 300) -> str:
    """Create the HTML notification body for one listing."""

    parts = [f"<b>{html.escape(listing.title)}</b>"]

    if listing.price is not None and listing.currency:
        parts.append(f"💰 {format_price(listing.price, listing.currency, listing.price_period)}")

    if listing.bedrooms is not None:
        parts.append(f"🏠 {format_rooms(listing.bedrooms)}")

    address = format_address(listing)
    if address:
        parts.append(f"📍 {address}")

    # Clipped so the text also fits Telegram's 1024-char caption limit.
    snippet = (listing.description or "")[:snippet_chars].strip()
    if snippet:
        parts.extend(["", html.escape(snippet)])

    safe_url = html.escape(listing.url)
    parts.extend(["", f'<a href="{safe_url}">View Listing</a>'])
    return "\n".join(parts)
