import json
import logging
import httpx
from typing import Dict, Optional
from ..config import settings
from ..models import ConnectionStatus, ConnectionState, Locator, RemoteProgress, SendResult
from .base import BackendClient

logger = logging.getLogger(__name__)

class CloudClient(BackendClient):
    """Key-value cloud store holding one progress record per book id."""

    name = "cloud"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        headers = {"Accept": "application/json"}
        if settings.SECONDARY_TOKEN:
            headers["Authorization"] = f"Bearer {settings.SECONDARY_TOKEN}"
        self.client = client or httpx.AsyncClient(
            base_url=(settings.SECONDARY_BASE_URL or "").rstrip('/'),
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        )
        self.client.headers.update(headers)

    async def _probe(self) -> ConnectionStatus:
        if not str(self.client.base_url):
            return ConnectionStatus.error("Cloud store not configured")
        try:
            resp = await self.client.get("account")
            if resp.status_code in (401, 403):
                return ConnectionStatus.error("No cloud account")
            resp.raise_for_status()
            data = resp.json()
            status = data.get("status", "available")
            if status != "available":
                return ConnectionStatus.error(f"Cloud account {status}")
            return ConnectionStatus(state=ConnectionState.CONNECTED)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Cloud connection check failed: {e}")
            return ConnectionStatus.error(str(e) or "Connection failed")

    async def _ensure_connected(self) -> bool:
        if not self.is_connected:
            await self.check_connection()
        return self.is_connected

    @staticmethod
    def _parse_record(record: dict) -> Optional[RemoteProgress]:
        try:
            return RemoteProgress(
                book_id=record["bookId"],
                locator=Locator.model_validate(json.loads(record["locatorJson"])),
                timestamp=int(record["timestamp"]),
                device_id=record.get("deviceId") or "unknown"
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Failed to parse cloud record {record.get('bookId', '?')}: {e}")
            return None

    async def send_progress(self, book_id: str, locator: Locator, timestamp: int) -> SendResult:
        if not await self._ensure_connected():
            logger.debug(f"Cloud not connected, cannot send progress for {book_id}")
            return SendResult.NO_CONNECTION

        record = {
            "bookId": book_id,
            "locatorJson": json.dumps(locator.to_wire(), sort_keys=True),
            "timestamp": int(timestamp),
            "deviceId": settings.DEVICE_NAME
        }
        try:
            # PUT overwrites the whole record, so repeating a send is harmless
            resp = await self.client.put(f"records/{book_id}", json=record)
        except httpx.TransportError as e:
            logger.warning(f"Cloud send failed for {book_id}: {e}")
            return SendResult.NO_CONNECTION

        if resp.is_success:
            logger.debug(f"Saved cloud record {book_id}")
            return SendResult.SUCCESS
        logger.warning(f"Cloud rejected progress for {book_id}: {resp.status_code}")
        return SendResult.FAILURE

    async def fetch_progress(self, book_id: str) -> Optional[RemoteProgress]:
        if not await self._ensure_connected():
            return None
        try:
            resp = await self.client.get(f"records/{book_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return self._parse_record(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch cloud record {book_id}: {e}")
            return None

    async def _iter_records(self):
        cursor = None
        while True:
            params = {"limit": settings.SECONDARY_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            resp = await self.client.get("records", params=params)
            resp.raise_for_status()
            data = resp.json()
            for record in data.get("records", []):
                yield record
            cursor = data.get("cursor")
            if not cursor:
                break

    async def fetch_all_progress(self) -> Optional[Dict[str, RemoteProgress]]:
        if not await self._ensure_connected():
            return None

        results = {}
        try:
            async for record in self._iter_records():
                progress = self._parse_record(record)
                if progress:
                    results[progress.book_id] = progress
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch cloud records: {e}")
            return None

        logger.info(f"Fetched {len(results)} cloud records")
        return results

    async def record_count(self) -> int:
        if not await self._ensure_connected():
            return 0
        try:
            count = 0
            async for _ in self._iter_records():
                count += 1
            return count
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to count cloud records: {e}")
            return 0

    async def delete_progress(self, book_id: str) -> bool:
        if not await self._ensure_connected():
            return False
        try:
            resp = await self.client.delete(f"records/{book_id}")
            if resp.status_code == 404:
                return True
            resp.raise_for_status()
            logger.info(f"Deleted cloud record {book_id}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to delete cloud record {book_id}: {e}")
            return False

    async def delete_all_records(self) -> bool:
        if not await self._ensure_connected():
            return False
        try:
            book_ids = [record.get("bookId") async for record in self._iter_records()]
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to list cloud records for deletion: {e}")
            return False

        deleted = 0
        for book_id in filter(None, book_ids):
            if await self.delete_progress(book_id):
                deleted += 1
        logger.info(f"Deleted {deleted}/{len(book_ids)} cloud records")
        return deleted == len([b for b in book_ids if b])

    async def aclose(self):
        await self.client.aclose()
