"""Notion-style database adapter: property encoding, paging and page hydration."""

import asyncio
import logging
from typing import Any, Optional

from tasksync.core.clock import iso_to_ms, ms_to_iso
from tasksync.services.adapter import RemotePage, RemoteRecord, TimeWindow
from tasksync.services.entities import EntitySchema, PropertySpec
from tasksync.services.remote_client import RateLimitedClient

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 2000  # Notion rejects longer rich text segments


def _plain_text(segments: Optional[list[dict]]) -> str:
    return "".join(
        segment.get("plain_text") or segment.get("text", {}).get("content", "")
        for segment in segments or []
    )


def _text_segments(value: Optional[str]) -> list[dict]:
    if not value:
        return []
    return [
        {"type": "text", "text": {"content": value[i:i + MAX_TEXT_LENGTH]}}
        for i in range(0, len(value), MAX_TEXT_LENGTH)
    ]


def extract_unique_id(properties: dict[str, Any]) -> Optional[str]:
    """Value of the database's ``unique_id`` property, e.g. ``ACTION-123``."""
    for prop in properties.values():
        if not isinstance(prop, dict) or prop.get("type") != "unique_id":
            continue
        unique_id = prop.get("unique_id") or {}
        number = unique_id.get("number")
        if number is None:
            return None
        prefix = unique_id.get("prefix")
        return f"{prefix}-{number}" if prefix else str(number)
    return None


def decode_property(prop: Optional[dict[str, Any]], spec: PropertySpec) -> Any:
    """Read one property value into its local field representation."""
    if not prop:
        return False if spec.type == "checkbox" else None
    kind = prop.get("type")

    if spec.type in ("title", "rich_text"):
        return _plain_text(prop.get(kind)) if kind in ("title", "rich_text") else None
    if spec.type in ("status", "select"):
        option = prop.get(kind) if kind in ("status", "select") else None
        return option.get("name") if option else None
    if spec.type == "date":
        return (prop.get("date") or {}).get("start")
    if spec.type == "date_end":
        return (prop.get("date") or {}).get("end")
    if spec.type == "checkbox":
        if kind == "checkbox":
            return bool(prop.get("checkbox"))
        return False
    if spec.type == "number":
        if kind == "number":
            return prop.get("number")
        if kind == "formula":
            return (prop.get("formula") or {}).get("number")
        return None
    if spec.type in ("relation", "relation_one"):
        ids = [entry["id"] for entry in prop.get("relation") or [] if entry.get("id")]
        if spec.type == "relation_one":
            return ids[0] if ids else None
        return ids
    if spec.type == "multi_select":
        return [option["name"] for option in prop.get("multi_select") or [] if option.get("name")]

    logger.debug(f"Unhandled property type {spec.type} for {spec.name}")
    return None


def encode_property(spec: PropertySpec, value: Any) -> dict[str, Any]:
    """Build the property value object sent to the remote."""
    if spec.type == "title":
        return {"title": _text_segments(value)}
    if spec.type == "rich_text":
        return {"rich_text": _text_segments(value)}
    if spec.type == "status":
        return {"status": {"name": value} if value else None}
    if spec.type == "select":
        return {"select": {"name": value} if value else None}
    if spec.type == "checkbox":
        return {"checkbox": bool(value)}
    if spec.type == "number":
        return {"number": value}
    if spec.type == "relation":
        return {"relation": [{"id": item} for item in value or []]}
    if spec.type == "relation_one":
        return {"relation": [{"id": value}] if value else []}
    if spec.type == "multi_select":
        return {"multi_select": [{"name": item} for item in value or []]}
    raise ValueError(f"Cannot encode property type {spec.type}")


class NotionAdapter:
    """Remote adapter for one entity kind backed by one database."""

    def __init__(
        self,
        client: RateLimitedClient,
        database_id: str,
        schema: EntitySchema,
        concurrency: int = 3,
    ):
        self.client = client
        self.database_id = database_id
        self.schema = schema
        self.kind = schema.kind
        self.concurrency = max(concurrency, 1)

    # Decoding

    def decode_page(self, page: dict[str, Any]) -> RemoteRecord:
        last_edited = iso_to_ms(page.get("last_edited_time")) or 0
        archived = bool(page.get("archived") or page.get("in_trash"))
        properties = page.get("properties")
        if properties is None:
            return RemoteRecord(
                remote_id=page["id"],
                last_edited=last_edited,
                archived=archived,
                stub=True,
            )

        fields = {
            name: decode_property(properties.get(spec.name), spec)
            for name, spec in self.schema.properties.items()
        }
        if "url" in self.schema.read_only_fields and page.get("url"):
            fields["url"] = page["url"]
        if not fields.get("title") and not self.schema.model.__table__.c.title.nullable:
            fields["title"] = "Untitled"
        if self.schema.derive:
            fields = self.schema.derive(fields)
        return RemoteRecord(
            remote_id=page["id"],
            fields=fields,
            last_edited=last_edited,
            unique_external_id=extract_unique_id(properties),
            archived=archived,
        )

    def encode_properties(self, payload: dict[str, Any]) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        # Date ranges share one property: start and end are sent together
        dates: dict[str, dict[str, Any]] = {}
        for name, value in payload.items():
            spec = self.schema.properties.get(name)
            if spec is None:
                continue
            if spec.type in ("date", "date_end"):
                slot = dates.setdefault(spec.name, {})
                slot["start" if spec.type == "date" else "end"] = value
                continue
            properties[spec.name] = encode_property(spec, value)

        for prop_name, parts in dates.items():
            if parts.get("start"):
                properties[prop_name] = {"date": {"start": parts["start"], "end": parts.get("end")}}
            else:
                properties[prop_name] = {"date": None}
        return properties

    # Queries

    def build_query(
        self,
        window: Optional[TimeWindow],
        cursor: Optional[str],
        page_size: int,
        sort_ascending: bool = False,
    ) -> dict[str, Any]:
        filters = []
        if window is not None and window.on_or_after is not None:
            filters.append({
                "timestamp": "last_edited_time",
                "last_edited_time": {"on_or_after": ms_to_iso(window.on_or_after)},
            })
        if window is not None and window.before is not None:
            filters.append({
                "timestamp": "last_edited_time",
                "last_edited_time": {"before": ms_to_iso(window.before)},
            })

        body: dict[str, Any] = {
            "page_size": page_size,
            "sorts": [{
                "timestamp": "last_edited_time",
                "direction": "ascending" if sort_ascending else "descending",
            }],
        }
        if len(filters) == 1:
            body["filter"] = filters[0]
        elif filters:
            body["filter"] = {"and": filters}
        if cursor:
            body["start_cursor"] = cursor
        return body

    async def fetch_page(
        self,
        window: Optional[TimeWindow],
        cursor: Optional[str],
        page_size: int,
        *,
        sort_ascending: bool = False,
        retry_on_timeout: bool = True,
    ) -> RemotePage:
        """Query one page of the database, hydrating stub results."""
        body = self.build_query(window, cursor, page_size, sort_ascending)
        response = await self.client.request(
            "POST",
            f"/databases/{self.database_id}/query",
            json=body,
            context=f"query {self.kind} ({window.name if window else 'all'})",
            retry_on_timeout=retry_on_timeout,
        )
        records = [self.decode_page(page) for page in response.get("results", [])]
        records = await self._hydrate(records)
        return RemotePage(
            records=records,
            has_more=bool(response.get("has_more")),
            next_cursor=response.get("next_cursor"),
        )

    async def _hydrate(self, records: list[RemoteRecord]) -> list[RemoteRecord]:
        stubs = [record for record in records if record.stub and not record.archived]
        if not stubs:
            return records

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _load(stub: RemoteRecord) -> RemoteRecord:
            async with semaphore:
                return await self.retrieve(stub.remote_id)

        hydrated = await asyncio.gather(*(_load(stub) for stub in stubs))
        by_id = {record.remote_id: record for record in hydrated}
        logger.debug(f"Hydrated {len(hydrated)} {self.kind} pages")
        return [by_id.get(record.remote_id, record) for record in records]

    # Single pages

    async def retrieve(self, remote_id: str) -> RemoteRecord:
        page = await self.client.request("GET", f"/pages/{remote_id}", context=f"retrieve {self.kind}")
        return self.decode_page(page)

    async def create(self, payload: dict[str, Any]) -> RemoteRecord:
        page = await self.client.request(
            "POST",
            "/pages",
            json={
                "parent": {"database_id": self.database_id},
                "properties": self.encode_properties(payload),
            },
            context=f"create {self.kind}",
        )
        return self.decode_page(page)

    async def update(self, remote_id: str, payload: dict[str, Any]) -> RemoteRecord:
        body: dict[str, Any] = {"properties": self.encode_properties(payload)}
        if "archived" in payload:
            body["archived"] = bool(payload["archived"])
        page = await self.client.request(
            "PATCH", f"/pages/{remote_id}", json=body, context=f"update {self.kind}"
        )
        return self.decode_page(page)

    async def delete(self, remote_id: str) -> None:
        """Archive the page; the remote keeps it in its own trash."""
        await self.client.request(
            "PATCH", f"/pages/{remote_id}", json={"archived": True}, context=f"delete {self.kind}"
        )

    async def ping(self) -> dict[str, Any]:
        """Cheap authenticated call used as a connection test."""
        return await self.client.request("GET", "/users/me", context="connection test")
