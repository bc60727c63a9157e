"""Lazy traversal of paginated query results (nextRecordsUrl chains)."""

import logging

from sync_errors import ProtocolError

logger = logging.getLogger(__name__)


class QueryCursor:
    """One page of a query result plus the means to fetch the page after it.

    ``next`` is a coroutine function while more pages remain and ``None`` once the
    server reports ``done``. Each call issues a fresh request; nothing is cached,
    so callers should await it at most once per cursor.
    """

    def __init__(self, client, page, cancel_token=None, page_number=1):
        self._client = client
        self._page = page
        self._cancel_token = cancel_token
        self.page_number = page_number
        self.next = None if page.done else self._fetch_next

    @property
    def records(self):
        return self._page.records

    @property
    def total_size(self):
        return self._page.total_size

    @property
    def done(self):
        return self._page.done

    @property
    def continuation_token(self):
        return self._page.continuation_token

    async def _fetch_next(self):
        page = await self._client.query_more(
            self._page.continuation_token, cancel_token=self._cancel_token
        )
        if page is None:
            raise ProtocolError("No data received")
        logger.debug(f"Fetched page {self.page_number + 1} with {len(page.records)} records")
        return QueryCursor(self._client, page, self._cancel_token, self.page_number + 1)


async def execute_query(client, soql, cancel_token=None):
    """Run a query and return a cursor on its first page."""
    page = await client.query(soql, cancel_token=cancel_token)
    return QueryCursor(client, page, cancel_token)


async def iter_pages(cursor):
    """Yield the given cursor and every following page until the result is exhausted."""
    while cursor is not None:
        yield cursor
        if cursor.next is None:
            break
        cursor = await cursor.next()


async def collect_records(cursor, limit=None):
    """Gather records across pages, stopping early once ``limit`` records are in hand."""
    records = []
    async for page in iter_pages(cursor):
        records.extend(page.records)
        if limit is not None and len(records) >= limit:
            return records[:limit]
    if cursor.total_size and len(records) != cursor.total_size:
        logger.warning(f"Query reported {cursor.total_size} records but returned {len(records)}")
    return records
