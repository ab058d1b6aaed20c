"""HTTP client for the remote catalog authority."""

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Optional
from urllib.parse import quote

import httpx
import structlog

from watchsync import __version__
from watchsync.core.config import RemoteConfig
from watchsync.core.errors import MalformedPayload, NetworkUnavailable, RemoteError, RemoteMutationRejected
from watchsync.models.catalog import CatalogItem, Fidelity, PushEvent, SeasonBaseline
from watchsync.models.normalize import (
    normalize_baselines,
    normalize_catalog,
    normalize_item,
    normalize_push_event,
    serialize_baseline,
)

logger = structlog.get_logger()


def _user_path(owner_id: str, *parts: str) -> str:
    """Build a per-user API path with every id escaped as one segment."""
    return "/api/users/" + "/".join(quote(str(segment), safe="") for segment in (owner_id, *parts))


class RemoteGateway:
    """Client for the remote authority REST API and its push channel.

    Transport failures surface as ``NetworkUnavailable``; error statuses on
    reads surface as ``RemoteError`` and on writes as
    ``RemoteMutationRejected``. Every payload passes through the
    normalization boundary before it is returned.
    """

    def __init__(self, config: RemoteConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.online = True

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.url,
                timeout=self.config.timeout,
                headers=self._get_headers(),
                transport=self._transport,
            )
        return self._client

    def _get_headers(self) -> dict[str, str]:
        """Get request headers including authentication."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"WatchSync/{__version__}",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport errors."""
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            if self.online:
                logger.warning("remote_unreachable", url=self.config.url, error=str(e))
            self.online = False
            raise NetworkUnavailable(str(e) or "Remote authority unreachable", url=self.config.url) from e

        self.online = True
        return response

    async def _read(self, path: str, params: Optional[dict] = None, missing_ok: bool = False) -> Any:
        response = await self._request("GET", path, params=params)
        if missing_ok and response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "remote_read_failed",
                path=path,
                status_code=e.response.status_code,
                detail=e.response.text[:200],
            )
            raise RemoteError(
                f"GET {path} failed",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        try:
            return response.json()
        except ValueError as e:
            raise MalformedPayload(f"GET {path} returned a non-JSON body", details={"detail": response.text[:200]}) from e

    async def _write(self, method: str, path: str, item_id: Optional[str], payload: Any = None) -> Any:
        response = await self._request(method, path, json=payload)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "remote_write_rejected",
                method=method,
                path=path,
                status_code=e.response.status_code,
                detail=e.response.text[:200],
            )
            raise RemoteMutationRejected(
                item_id,
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        if not response.content:
            return None
        return response.json()

    # Catalog reads

    async def fetch_catalog(self, owner_id: str, fidelity: Fidelity = Fidelity.FULL) -> list[CatalogItem]:
        """Fetch the ordered catalog of ``owner_id`` in the given projection."""
        data = await self._read(
            _user_path(owner_id, "catalog"),
            params={"projection": fidelity.value},
        )
        items = normalize_catalog(data)
        logger.debug("catalog_fetched", owner_id=owner_id, fidelity=fidelity.value, items=len(items))
        return items

    async def fetch_item(self, owner_id: str, item_id: str) -> Optional[CatalogItem]:
        """Fetch one catalog item, or None if it does not exist."""
        data = await self._read(_user_path(owner_id, "catalog", item_id), missing_ok=True)
        if data is None:
            return None
        return normalize_item(data)

    # Catalog mutations

    async def create_item(self, owner_id: str, payload: dict) -> CatalogItem:
        """Add an item to the catalog."""
        data = await self._write("POST", _user_path(owner_id, "catalog"), payload.get("id"), payload)
        item = normalize_item(data)
        logger.info("catalog_item_created", owner_id=owner_id, item_id=item.id)
        return item

    async def mutate(self, owner_id: str, item_id: str, patch: dict) -> CatalogItem:
        """Apply a path-keyed patch to one item and return the stored result."""
        data = await self._write("PATCH", _user_path(owner_id, "catalog", item_id), item_id, patch)
        logger.info("catalog_item_updated", owner_id=owner_id, item_id=item_id, fields=sorted(patch))
        return normalize_item(data)

    async def delete_item(self, owner_id: str, item_id: str) -> None:
        """Remove an item from the catalog."""
        await self._write("DELETE", _user_path(owner_id, "catalog", item_id), item_id)
        logger.info("catalog_item_deleted", owner_id=owner_id, item_id=item_id)

    # Season baselines

    async def get_baselines(self, owner_id: str) -> dict[str, SeasonBaseline]:
        """Read the whole baseline map of ``owner_id``."""
        data = await self._read(_user_path(owner_id, "season-baselines"), missing_ok=True)
        return normalize_baselines(data or {})

    async def put_baselines(self, owner_id: str, baselines: Iterable[SeasonBaseline]) -> None:
        """Write the given baseline entries, leaving all others untouched."""
        payload = {baseline.item_id: serialize_baseline(baseline) for baseline in baselines}
        if not payload:
            return
        await self._write("PATCH", _user_path(owner_id, "season-baselines"), None, payload)
        logger.debug("baselines_written", owner_id=owner_id, count=len(payload))

    async def delete_baselines(self, owner_id: str, item_ids: Iterable[str]) -> None:
        """Delete baseline entries by item id."""
        ids = sorted(item_ids)
        if not ids:
            return
        await self._write("DELETE", _user_path(owner_id, "season-baselines"), None, {"itemIds": ids})
        logger.debug("baselines_deleted", owner_id=owner_id, count=len(ids))

    # Push channel

    async def listen(self, owner_id: str) -> AsyncIterator[PushEvent]:
        """Yield push events from the server-sent event stream of ``owner_id``.

        The iterator ends when the server closes the stream; transport errors
        raise ``NetworkUnavailable``.
        """
        client = await self._get_client()
        try:
            async with client.stream(
                "GET",
                _user_path(owner_id, "events"),
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.config.timeout, read=None),
            ) as response:
                response.raise_for_status()
                self.online = True
                logger.info("push_channel_open", owner_id=owner_id)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        raw = json.loads(line[5:].strip())
                    except ValueError:
                        logger.warning("push_message_unreadable", line=line[:100])
                        continue
                    event = normalize_push_event(raw)
                    if event is None:
                        logger.warning("push_message_rejected", message=raw)
                        continue
                    yield event

        except httpx.HTTPStatusError as e:
            raise RemoteError(
                "Push channel refused",
                status_code=e.response.status_code,
                detail=None,
            ) from e
        except httpx.RequestError as e:
            self.online = False
            raise NetworkUnavailable(str(e) or "Push channel dropped", url=self.config.url) from e
        except asyncio.CancelledError:
            logger.debug("push_channel_closed", owner_id=owner_id)
            raise
