"""Paginated company collection across directory result pages."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from leadfinder.config import settings
from leadfinder.models.discovery import Company, company_from_listing
from leadfinder.observability.metrics import metrics
from leadfinder.services.discovery.listings import ListingExtractor, build_search_url
from leadfinder.services.discovery.results import Skip
from leadfinder.services.discovery.session import ListingSource
from leadfinder.utils.backoff import jittered_delay

logger = logging.getLogger(__name__)

OnFound = Callable[[Company], Awaitable[None]]
OnSkip = Callable[[Skip], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


class CompanyCollector:
    """Walks result pages until enough companies with a website are found.

    Stops when the target is reached, after ``max_empty_pages`` consecutive
    pages that add no new listings, or at the ``max_pages`` ceiling.
    """

    def __init__(
        self,
        source: ListingSource,
        *,
        extractor: ListingExtractor | None = None,
        max_pages: int | None = None,
        max_empty_pages: int | None = None,
        page_delay: float | None = None,
        page_jitter: float | None = None,
        base_url: str | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._source = source
        self._extractor = extractor or ListingExtractor()
        self._max_pages = max_pages if max_pages is not None else settings.max_pages
        self._max_empty_pages = (
            max_empty_pages if max_empty_pages is not None else settings.max_consecutive_empty_pages
        )
        self._page_delay = page_delay if page_delay is not None else settings.page_delay_seconds
        self._page_jitter = page_jitter if page_jitter is not None else settings.page_delay_jitter_seconds
        self._base_url = base_url
        self._sleep = sleep or asyncio.sleep

    async def collect(
        self,
        search_term: str,
        location: str,
        target_count: int,
        on_found: OnFound,
        on_skip: OnSkip | None = None,
    ) -> list[Company]:
        """Collect up to ``target_count`` qualifying companies.

        ``on_found`` is awaited as soon as each company is accepted.
        """
        accepted: list[Company] = []
        if target_count <= 0:
            return accepted

        seen_listings: set[str] = set()
        seen_domains: set[str] = set()
        empty_streak = 0
        page = 0
        stop_reason = "page_ceiling"
        start = time.perf_counter()

        while page < self._max_pages:
            page += 1
            url = build_search_url(search_term, location, page, base_url=self._base_url)
            html = await self._source.fetch(url)
            new_listings = 0
            if html is None:
                metrics.increment("collector.page_failed")
                if on_skip is not None:
                    await on_skip(Skip(f"Listing page {page} could not be fetched."))
            else:
                records = self._extractor.extract(html)
                for record in records:
                    key = record.dedup_key
                    if key in seen_listings:
                        continue
                    seen_listings.add(key)
                    new_listings += 1
                    domain = record.normalized_domain
                    if not domain or domain in seen_domains:
                        continue
                    seen_domains.add(domain)
                    company = company_from_listing(record)
                    accepted.append(company)
                    metrics.increment("collector.company_accepted")
                    await on_found(company)
                    if len(accepted) >= target_count:
                        break

            logger.info(
                "collector.page_fetched",
                extra={
                    "page": page,
                    "fetched": html is not None,
                    "new_listings": new_listings,
                    "accepted": len(accepted),
                    "target": target_count,
                },
            )

            if len(accepted) >= target_count:
                stop_reason = "target_reached"
                break
            empty_streak = empty_streak + 1 if new_listings == 0 else 0
            if empty_streak >= self._max_empty_pages:
                stop_reason = "empty_pages"
                break
            if page < self._max_pages:
                await self._sleep(jittered_delay(self._page_delay, self._page_jitter))

        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.timing("collector.latency_ms", elapsed_ms, tags={"stop_reason": stop_reason})
        metrics.gauge("collector.pages", page)
        logger.info(
            "collector.stopped",
            extra={"reason": stop_reason, "pages": page, "accepted": len(accepted)},
        )
        return accepted
