"""Inventory discovery package: wire-format and fetcher Protocols."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .fetcher import InventoryQuery
    from .models import InstanceRecord, RawPage


@runtime_checkable
class ResponseFormat(Protocol):
    """One supported inventory wire format. Chosen once at startup, never per call."""

    name: str

    def read_page(self, body: Any) -> RawPage:
        """Decode a response body into a RawPage, raising MalformedResponse on a bad envelope."""
        ...

    def parse_response(self, page: RawPage) -> list[InstanceRecord]:
        """Return every instance record on the page."""
        ...

    def parse_instance(self, raw: Any, reservation_id: str | None = None) -> InstanceRecord | None:
        """Parse one raw instance; None when it cannot be identified."""
        ...


@runtime_checkable
class InventoryFetcher(Protocol):
    """Protocol that every inventory fetcher (real or fake) must satisfy."""

    response_format: ResponseFormat

    def fetch(
        self,
        query: InventoryQuery,
        next_token: str | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RawPage:
        """Fetch a single page; give up with RefreshCancelled once should_stop() is true."""
        ...

    def fetch_all(
        self, query: InventoryQuery, should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[RawPage]:
        """Lazily fetch every page, following continuation tokens."""
        ...
