import logging
import httpx
from typing import Dict, Optional
from ..config import settings
from ..models import ConnectionStatus, ConnectionState, Locator, RemoteProgress, SendResult
from .base import BackendClient

logger = logging.getLogger(__name__)

def resolve_api_base_url(server_url: str) -> str:
    """Server URLs may be given with or without the /api/v2 suffix."""
    url = server_url.rstrip('/')
    if url.endswith("/api/v2"):
        return url
    if url.endswith("/api"):
        return url + "/v2"
    return url + "/api/v2"

class PrimaryClient(BackendClient):
    name = "primary"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.token: Optional[str] = settings.PRIMARY_TOKEN
        base_url = resolve_api_base_url(settings.PRIMARY_BASE_URL) if settings.PRIMARY_BASE_URL else ""
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        )

    @property
    def is_configured(self) -> bool:
        has_login = bool(settings.PRIMARY_USERNAME and settings.PRIMARY_PASSWORD)
        return bool(str(self.client.base_url)) and (bool(self.token) or has_login)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}

    async def authenticate(self) -> bool:
        if self.token:
            return True
        if not (settings.PRIMARY_USERNAME and settings.PRIMARY_PASSWORD):
            return False
        resp = await self.client.post(
            "token",
            data={"usernameOrEmail": settings.PRIMARY_USERNAME, "password": settings.PRIMARY_PASSWORD},
            headers={"Accept": "application/json"}
        )
        if resp.status_code in (401, 403):
            return False
        resp.raise_for_status()
        self.token = resp.json().get("access_token")
        return bool(self.token)

    async def _probe(self) -> ConnectionStatus:
        if not self.is_configured:
            return ConnectionStatus(state=ConnectionState.DISCONNECTED)
        try:
            if not await self.authenticate():
                return ConnectionStatus.error("Invalid credentials")
            resp = await self.client.get("books", headers=self._headers())
            if resp.status_code == 401:
                self.token = settings.PRIMARY_TOKEN
                return ConnectionStatus.error("Unauthorized")
            resp.raise_for_status()
            return ConnectionStatus(state=ConnectionState.CONNECTED)
        except httpx.HTTPError as e:
            logger.warning(f"Primary connection check failed: {e}")
            return ConnectionStatus.error("Connection failed")

    async def send_progress(self, book_id: str, locator: Locator, timestamp: int) -> SendResult:
        if not self.token:
            logger.debug(f"No access token, cannot send progress for {book_id}")
            return SendResult.NO_CONNECTION

        payload = {
            "locator": locator.to_wire(),
            "timestamp": int(timestamp)
        }
        try:
            resp = await self.client.post(f"books/{book_id}/positions", json=payload, headers=self._headers())
        except httpx.TransportError as e:
            logger.warning(f"Primary send failed for {book_id}: {e}")
            return SendResult.NO_CONNECTION

        logger.debug(f"Primary send for {book_id}: status={resp.status_code}")
        if resp.is_success:
            return SendResult.SUCCESS
        if resp.status_code == 401:
            await self.set_connection_status(ConnectionStatus.error("Unauthorized"))
        # 404 (unknown book) and 409 (newer position on server) are final
        logger.warning(f"Primary rejected progress for {book_id}: {resp.status_code}")
        return SendResult.FAILURE

    async def fetch_all_progress(self) -> Optional[Dict[str, RemoteProgress]]:
        if not self.token:
            return None
        try:
            resp = await self.client.get("books", headers=self._headers())
            resp.raise_for_status()
            books = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch primary library positions: {e}")
            return None

        results = {}
        skipped = 0
        for book in books if isinstance(books, list) else []:
            book_id = book.get("uuid") or book.get("id")
            position = book.get("position") or {}
            if not book_id or not position.get("locator") or position.get("timestamp") is None:
                continue
            try:
                results[book_id] = RemoteProgress(
                    book_id=book_id,
                    locator=Locator.model_validate(position["locator"]),
                    timestamp=int(position["timestamp"])
                )
            except (TypeError, ValueError):
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} book position(s) that failed to parse")
        logger.info(f"Fetched {len(results)} positions from primary")
        return results

    async def aclose(self):
        await self.client.aclose()
