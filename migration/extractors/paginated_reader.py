"""
Offset-paginated reads from the source API.

Two traversal modes share one page fetcher:

- ``fetch_all`` materializes every page into one list (reference data).
- ``stream_pages`` hands each page to an async callback and keeps only the
  current page alive, so the consumer's load finishes before the next
  request goes out.

The page count is computed once from the first page's reported total.
If the source's total changes during a long run, pages may be missed or
repeated; a re-run is the remedy.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import logging
import math

from core.config import settings
from core.exceptions import SourceUnavailableError
from migration.extractors.api_client import SourceAPIClient

logger = logging.getLogger(__name__)

PageCallback = Callable[[List[Dict[str, Any]], int, int], Awaitable[None]]


@dataclass
class PageFetch:
    """One page of a collection, or why it could not be fetched"""
    success: bool
    records: List[Dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    error: Optional[str] = None
    status_code: Optional[int] = None
    body: Optional[Any] = None


@dataclass
class FetchAllResult:
    records: List[Dict[str, Any]]
    total_count: int
    fetched_count: int
    total_pages: int
    failed_pages: List[int] = field(default_factory=list)


@dataclass
class StreamSummary:
    total_count: int
    total_pages: int
    processed_pages: int = 0
    skipped_pages: List[int] = field(default_factory=list)


@dataclass
class DetailFetch:
    """Detail payload for one item; ``data`` is None when the fetch failed"""
    item: Dict[str, Any]
    data: Optional[Any] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class PaginatedSourceReader:
    """
    Read offset-paginated collections shaped ``{count: N, results: [...]}``.

    A failed first page is fatal (there is no total to plan from); a failed
    later page is logged and skipped.
    """

    def __init__(
        self,
        client: SourceAPIClient,
        page_size: Optional[int] = None,
        offset_param: Optional[str] = None,
        limit_param: Optional[str] = settings.SOURCE_LIMIT_PARAM,
        count_field: Optional[str] = None,
        results_field: Optional[str] = None,
        detail_concurrency: Optional[int] = None
    ):
        self.client = client
        self.page_size = page_size or settings.SOURCE_PAGE_SIZE
        self.offset_param = offset_param or settings.SOURCE_OFFSET_PARAM
        self.limit_param = limit_param
        self.count_field = count_field or settings.SOURCE_COUNT_FIELD
        self.results_field = results_field or settings.SOURCE_RESULTS_FIELD
        self.detail_concurrency = detail_concurrency or settings.DETAIL_FETCH_CONCURRENCY

    async def fetch_page(
        self,
        endpoint: str,
        offset: int = 0,
        page_size: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        offset_param: Optional[str] = None
    ) -> PageFetch:
        """
        Request one page.

        Returns:
            PageFetch with the page's records and the reported total, or a
            failure carrying the transport error, HTTP status and body
        """
        query = dict(params or {})
        query[offset_param or self.offset_param] = offset
        if self.limit_param:
            query[self.limit_param] = page_size or self.page_size

        response = await self.client.get(endpoint, query)

        if not response.success:
            return PageFetch(
                success=False,
                error=response.error,
                status_code=response.status_code,
                body=response.body
            )

        data = response.data
        if not isinstance(data, dict) or not isinstance(data.get(self.results_field), list):
            return PageFetch(
                success=False,
                error=f"Unexpected page shape: missing '{self.results_field}' list",
                status_code=response.status_code,
                body=data
            )

        try:
            total_count = int(data.get(self.count_field) or 0)
        except (TypeError, ValueError):
            return PageFetch(
                success=False,
                error=f"Unexpected page shape: '{self.count_field}' is not a number",
                status_code=response.status_code,
                body=data
            )

        return PageFetch(
            success=True,
            records=data[self.results_field],
            total_count=total_count,
            status_code=response.status_code
        )

    async def _first_page(
        self,
        endpoint: str,
        page_size: int,
        params: Optional[Dict[str, Any]]
    ) -> PageFetch:
        page = await self.fetch_page(endpoint, 0, page_size, params)
        if not page.success:
            raise SourceUnavailableError(
                f"Failed to fetch first page of {endpoint}",
                context={
                    "endpoint": endpoint,
                    "status_code": page.status_code,
                    "error": page.error,
                    "response_body": str(page.body)[:500] if page.body is not None else None
                }
            )
        return page

    async def fetch_all(
        self,
        endpoint: str,
        page_size: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> FetchAllResult:
        """
        Materialize every page of ``endpoint`` into one ordered list.

        Raises:
            SourceUnavailableError: If the first page fails
        """
        size = page_size or self.page_size
        first = await self._first_page(endpoint, size, params)

        total_count = first.total_count
        total_pages = math.ceil(total_count / size)
        records = list(first.records)
        failed_pages = []

        logger.info(f"→ {endpoint}: {total_count} records, fetching in pages of {size}")

        for page_index in range(1, total_pages):
            page = await self.fetch_page(endpoint, page_index * size, size, params)

            if not page.success:
                logger.warning(
                    f"⚠ Failed to fetch page {page_index + 1}/{total_pages} of {endpoint}, "
                    f"skipping: {page.error}"
                )
                failed_pages.append(page_index)
                continue

            records.extend(page.records)
            logger.debug(f"  Page {page_index + 1}/{total_pages} fetched ({len(page.records)} records)")

        logger.info(f"✓ {endpoint}: fetched {len(records)}/{total_count} records")

        return FetchAllResult(
            records=records,
            total_count=total_count,
            fetched_count=len(records),
            total_pages=total_pages,
            failed_pages=failed_pages
        )

    async def stream_pages(
        self,
        endpoint: str,
        on_page: PageCallback,
        page_size: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> StreamSummary:
        """
        Call ``on_page(records, page_index, total_pages)`` for every page, in order.

        ``on_page`` is awaited before the next page is requested, and only
        the page being processed is referenced by the reader.

        Raises:
            SourceUnavailableError: If the first page fails
        """
        size = page_size or self.page_size
        page = await self._first_page(endpoint, size, params)

        total_pages = math.ceil(page.total_count / size)
        summary = StreamSummary(total_count=page.total_count, total_pages=total_pages)

        logger.info(f"→ {endpoint}: processing {page.total_count} records in {total_pages} pages")

        for page_index in range(total_pages):
            if page_index > 0:
                # Drop the previous page before the next one is requested
                page = None
                page = await self.fetch_page(endpoint, page_index * size, size, params)

                if not page.success:
                    logger.warning(
                        f"⚠ Failed to fetch page {page_index + 1}/{total_pages} of {endpoint}, "
                        f"skipping: {page.error}"
                    )
                    summary.skipped_pages.append(page_index)
                    continue

            await on_page(page.records, page_index, total_pages)
            summary.processed_pages += 1

        logger.info(
            f"✓ {endpoint}: {summary.processed_pages}/{total_pages} pages processed"
            + (f", {len(summary.skipped_pages)} skipped" if summary.skipped_pages else "")
        )
        return summary

    async def fetch_details(
        self,
        items: Sequence[Dict[str, Any]],
        endpoint_for: Callable[[Dict[str, Any]], Optional[str]],
        concurrency: Optional[int] = None
    ) -> List[DetailFetch]:
        """
        Fetch a detail payload per item with bounded fan-out.

        Items are requested in fixed-size groups; each group completes
        entirely before the next starts. Results come back in input order.
        """
        width = concurrency or self.detail_concurrency
        results: List[DetailFetch] = []

        async def fetch_one(item: Dict[str, Any]) -> DetailFetch:
            try:
                endpoint = endpoint_for(item)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"⚠ No detail endpoint for item {item!r:.100}: {e!r}")
                return DetailFetch(item=item, error=f"detail endpoint unavailable: {e!r}")

            if endpoint is None:
                return DetailFetch(item=item)

            response = await self.client.get(endpoint)
            if not response.success:
                logger.warning(f"⚠ Failed to fetch details from {endpoint}: {response.error}")
                return DetailFetch(item=item, error=response.error or "detail fetch failed")
            return DetailFetch(item=item, data=response.data)

        for start in range(0, len(items), width):
            group = items[start:start + width]
            results.extend(await asyncio.gather(*(fetch_one(item) for item in group)))

        return results
