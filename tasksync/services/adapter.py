"""Remote adapter contract shared by the importer, orchestrator and repository."""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


@dataclass
class RemoteRecord:
    """A record as read from the remote service, already decoded to local fields.

    ``stub`` records carry only identity and ``last_edited``; they must be
    retrieved before they can be upserted, unless they are archived.
    """

    remote_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    last_edited: int = 0
    unique_external_id: Optional[str] = None
    archived: bool = False
    stub: bool = False


@dataclass
class RemotePage:
    records: list[RemoteRecord]
    has_more: bool = False
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class TimeWindow:
    """Half-open range of last-edited times in epoch millis; ``None`` is unbounded."""

    name: str
    on_or_after: Optional[int] = None
    before: Optional[int] = None

    def contains(self, timestamp: int) -> bool:
        if self.on_or_after is not None and timestamp < self.on_or_after:
            return False
        if self.before is not None and timestamp >= self.before:
            return False
        return True


class RemoteAdapter(Protocol):
    kind: str

    async def fetch_page(
        self,
        window: Optional[TimeWindow],
        cursor: Optional[str],
        page_size: int,
        *,
        sort_ascending: bool = False,
        retry_on_timeout: bool = True,
    ) -> RemotePage: ...

    async def retrieve(self, remote_id: str) -> RemoteRecord: ...

    async def create(self, payload: dict[str, Any]) -> RemoteRecord: ...

    async def update(self, remote_id: str, payload: dict[str, Any]) -> RemoteRecord: ...

    async def delete(self, remote_id: str) -> None: ...

    async def ping(self) -> dict[str, Any]: ...
