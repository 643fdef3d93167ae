from collections import deque
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Generic,
    List,
    Optional,
    TypeVar,
)

from loguru import logger
from platform_client.errors import AmbiguousResourceError, ResourceNotFoundError
from platform_client.models import Page
from platform_client.utils import maybe_await

T = TypeVar("T")
U = TypeVar("U")

FetchPage = Callable[[Any], Awaitable[Page[T]]]


class LazySequence(Generic[T]):
    """Composition helpers shared by PageCursor and the views derived from it"""

    def __aiter__(self) -> AsyncIterator[T]:
        raise NotImplementedError

    def filter(self, predicate: Callable[[T], Any]) -> "LazySequence[T]":
        return _Filtered(self, predicate)

    def map(self, fn: Callable[[T], Any]) -> "LazySequence[Any]":
        return _Mapped(self, fn)

    async def first(self) -> Optional[T]:
        async for item in self:
            return item
        return None

    async def single(self) -> T:
        """Returns the only item, stopping as soon as a second one shows up"""
        found: List[T] = []
        async for item in self:
            found.append(item)
            if len(found) > 1:
                raise AmbiguousResourceError("Expected exactly one item, found several")
        if not found:
            raise ResourceNotFoundError("Expected exactly one item, found none")
        return found[0]

    async def to_list(self) -> List[T]:
        return [item async for item in self]


class _Filtered(LazySequence[T]):
    def __init__(self, source: AsyncIterable[T], predicate: Callable[[T], Any]):
        self._source = source
        self._predicate = predicate

    async def __aiter__(self) -> AsyncIterator[T]:
        async for item in self._source:
            if await maybe_await(self._predicate(item)):
                yield item


class _Mapped(LazySequence[U]):
    def __init__(self, source: AsyncIterable[Any], fn: Callable[[Any], Any]):
        self._source = source
        self._fn = fn

    async def __aiter__(self) -> AsyncIterator[U]:
        async for item in self._source:
            yield await maybe_await(self._fn(item))


class PageCursor(LazySequence[T]):
    """Walks a cursor-paginated collection as one lazy, forward-only sequence.

    A page is fetched only when every item of the previous page has been
    consumed, so stopping early (first(), single() on a match) never loads the
    rest of the collection. Fetch errors propagate unchanged and are not
    retried; a later pull re-requests the same cursor.
    """

    def __init__(self, fetch_page: FetchPage, initial_cursor: Any = None):
        self._fetch_page = fetch_page
        self._cursor = initial_cursor
        self._buffer: Deque[T] = deque()
        self._exhausted = False
        self.pages_fetched = 0
        self.logger = logger

    def __aiter__(self) -> "PageCursor[T]":
        return self

    async def __anext__(self) -> T:
        while not self._buffer:
            if self._exhausted:
                raise StopAsyncIteration
            await self._fetch_next()
        return self._buffer.popleft()

    async def _fetch_next(self) -> None:
        self.logger.debug(f"Fetching page {self.pages_fetched + 1} (cursor={self._cursor!r})")
        page = await self._fetch_page(self._cursor)
        self.pages_fetched += 1
        self._buffer.extend(page.resources)

        if page.next_cursor is None:
            self._exhausted = True
        else:
            self._cursor = page.next_cursor


def stream(fetch_page: FetchPage, initial_cursor: Any = None) -> PageCursor:
    return PageCursor(fetch_page, initial_cursor)


def numbered_pages(fetch_numbered: Callable[[int], Awaitable[Page[T]]]) -> FetchPage:
    """Adapts a page-number fetcher whose pages report total_pages to a cursor fetcher"""

    async def fetch_page(cursor: Optional[int]) -> Page[T]:
        number = cursor or 1
        page = await fetch_numbered(number)
        total_pages = page.total_pages or 1
        next_cursor = number + 1 if number < total_pages else None
        return page.model_copy(update={"next_cursor": next_cursor})

    return fetch_page
