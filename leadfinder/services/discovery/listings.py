"""Parses directory result pages into normalized listing records."""

from __future__ import annotations

import logging
import re
from typing import Final
from urllib.parse import urlencode

from bs4 import BeautifulSoup, Tag

from leadfinder.config import settings
from leadfinder.models.discovery import ListingRecord
from leadfinder.services.discovery.domains import normalize_domain

logger = logging.getLogger(__name__)

# Most specific first; the first strategy that matches anything wins.
LISTING_STRATEGIES: Final[tuple[str, ...]] = (
    ".result.organic",
    ".organic_div",
    ".result",
    ".business-card, .listing",
)
NAME_SELECTOR: Final = ".business-name, .n, h3 a, .listing-name, .srp-business-name, .business-name a"
ADDRESS_SELECTOR: Final = ".adr, .address, .listing-address, .srp-address"
ADDRESS_PART_SELECTORS: Final[tuple[str, ...]] = (
    ".street-address, .street",
    ".locality, .city",
    ".region, .state",
    ".postal-code, .zip",
)
PHONE_SELECTOR: Final = ".phone, .phones, .phone-number, .srp-phone, [data-phone]"
CATEGORY_SELECTOR: Final = ".categories, .category, .business-type, .srp-categories, .breadcrumb"
HOURS_SELECTOR: Final = ".hours, .business-hours, .open-hours, .srp-hours"
DESCRIPTION_SELECTOR: Final = ".snippet, .description, .business-description, .srp-description"

EXCLUDED_LINK_HOSTS: Final[tuple[str, ...]] = (
    "yellowpages.com",
    "yp.com",
    "google.com",
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
)

_LIST_NUMBERING = re.compile(r"^\d+\.\s*")
_RATING = re.compile(r"(\d+(?:\.\d+)?)\s*stars?", re.IGNORECASE)
_REVIEWS = re.compile(r"(\d[\d,]*)\s*reviews?", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
MIN_NAME_LENGTH: Final = 3


def build_search_url(search_term: str, location: str, page: int, *, base_url: str | None = None) -> str:
    """Return the directory search URL for a 1-based results page."""
    query = urlencode(
        {"search_terms": search_term, "geo_location_terms": location, "page": max(page, 1)}
    )
    return f"{(base_url or settings.listing_base_url).rstrip('?')}?{query}"


class ListingExtractor:
    """Turns raw result-page HTML into ``ListingRecord`` objects.

    A malformed listing is logged and skipped without affecting its siblings.
    """

    def extract(self, raw_html: str | None) -> list[ListingRecord]:
        if not raw_html:
            return []
        soup = BeautifulSoup(raw_html, "lxml")
        items = self._select_items(soup)
        records: list[ListingRecord] = []
        for index, item in enumerate(items):
            try:
                record = self._parse_item(item)
            except Exception as exc:  # per-listing isolation
                logger.warning(
                    "listings.item_failed",
                    extra={"index": index, "error": type(exc).__name__},
                )
                continue
            if record is not None:
                records.append(record)
        logger.debug("listings.extracted", extra={"items": len(items), "records": len(records)})
        return records

    def _select_items(self, soup: BeautifulSoup) -> list[Tag]:
        for selector in LISTING_STRATEGIES:
            items = soup.select(selector)
            if items:
                return items
        return []

    def _parse_item(self, item: Tag) -> ListingRecord | None:
        name = self._extract_name(item)
        if name is None:
            return None
        text = _clean(item.get_text(" "))
        return ListingRecord(
            name=name,
            address=self._extract_address(item),
            website=self._extract_website(item),
            phone=self._extract_phone(item),
            category=_select_text(item, CATEGORY_SELECTOR),
            description=_select_text(item, DESCRIPTION_SELECTOR),
            hours=_select_text(item, HOURS_SELECTOR),
            rating=_parse_rating(text),
            review_count=_parse_review_count(text),
        )

    def _extract_name(self, item: Tag) -> str | None:
        raw = _select_text(item, NAME_SELECTOR)
        if not raw:
            return None
        name = _LIST_NUMBERING.sub("", raw).strip()
        if len(name) < MIN_NAME_LENGTH:
            return None
        return name

    def _extract_address(self, item: Tag) -> str | None:
        whole = _select_text(item, ADDRESS_SELECTOR)
        if whole:
            return whole
        parts = [_select_text(item, selector) for selector in ADDRESS_PART_SELECTORS]
        joined = ", ".join(part for part in parts if part)
        return joined or None

    def _extract_phone(self, item: Tag) -> str | None:
        node = item.select_one(PHONE_SELECTOR)
        if node is None:
            return None
        data_phone = node.get("data-phone")
        if isinstance(data_phone, str) and data_phone.strip():
            return data_phone.strip()
        return _clean(node.get_text(" ")) or None

    def _extract_website(self, item: Tag) -> str | None:
        for link in item.select('a[href*="http"]'):
            href = link.get("href")
            if not isinstance(href, str):
                continue
            host = normalize_domain(href)
            if not host or _is_excluded_host(host):
                continue
            return href.strip()
        return None


def _is_excluded_host(host: str) -> bool:
    return any(host == excluded or host.endswith(f".{excluded}") for excluded in EXCLUDED_LINK_HOSTS)


def _select_text(item: Tag, selector: str) -> str | None:
    node = item.select_one(selector)
    if node is None:
        return None
    return _clean(node.get_text(" ")) or None


def _clean(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _parse_rating(text: str) -> float | None:
    match = _RATING.search(text)
    if not match:
        return None
    value = float(match.group(1))
    return value if 0 <= value <= 5 else None


def _parse_review_count(text: str) -> int | None:
    match = _REVIEWS.search(text)
    if not match:
        return None
    return int(match.group(1).replace(",", ""))
