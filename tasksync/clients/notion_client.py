import asyncio
import logging
import time
import httpx
from typing import Any, Dict, List, Optional
from ..errors import NetworkError, NotFoundError, RateLimitedError, RemoteError, UnauthorizedError
from ..models import PartitionFilter, QueryPage

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {500, 502, 503, 504}

class NotionClient:
    """
    Remote query adapter over the Notion REST API.

    database_ids maps resource -> database id; status_properties maps resource -> the
    name of the status property used by status-bucket partition filters.
    """

    def __init__(
        self,
        token: str,
        database_ids: Dict[str, str],
        status_properties: Optional[Dict[str, str]] = None,
        base_url: str = "https://api.notion.com/v1",
        notion_version: str = "2022-06-28",
        timeout: float = 120,
        min_request_interval: float = 0.35,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": notion_version,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self.database_ids = {k: v for k, v in database_ids.items() if v}
        self.status_properties = status_properties or {}
        self.min_request_interval = min_request_interval
        self._pace_lock = asyncio.Lock()
        self._last_request_at = 0.0

    @classmethod
    def from_settings(cls, settings) -> "NotionClient":
        return cls(
            token=settings.NOTION_TOKEN,
            database_ids={r: settings.database_id(r) for r in ("tasks", "projects", "time_logs")},
            status_properties={
                "tasks": settings.TASK_STATUS_PROPERTY,
                "projects": settings.PROJECT_STATUS_PROPERTY,
                "time_logs": settings.TIME_LOG_STATUS_PROPERTY,
            },
            base_url=settings.NOTION_BASE_URL,
            notion_version=settings.NOTION_VERSION,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            min_request_interval=settings.MIN_REQUEST_INTERVAL_SECONDS,
        )

    async def initialize(self):
        """Validate the token before any import starts."""
        try:
            await self._request("GET", "/users/me")
            logger.info("Connected to Notion")
        except RemoteError as e:
            logger.error(f"Failed to initialize Notion client: {e}")
            raise

    async def close(self):
        await self.client.aclose()

    def _database_id(self, resource: str) -> str:
        database_id = self.database_ids.get(resource)
        if not database_id:
            raise NotFoundError(f"No Notion database configured for {resource}")
        return database_id

    async def _pace(self):
        # Notion allows ~3 requests/second per integration
        async with self._pace_lock:
            wait = self.min_request_interval - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        await self._pace()
        try:
            resp = await self.client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if resp.status_code < 400:
            return resp.json()

        message = _error_message(resp)
        if resp.status_code == 429:
            raise RateLimitedError(message, retry_after=_retry_after(resp))
        if resp.status_code in (401, 403):
            raise UnauthorizedError(message, resp.status_code)
        if resp.status_code == 404:
            raise NotFoundError(message, resp.status_code)
        if resp.status_code in RETRYABLE_STATUSES:
            raise NetworkError(message, resp.status_code)
        raise RemoteError(message, resp.status_code)

    def build_filter(self, resource: str, partition: Optional[PartitionFilter]) -> Optional[Dict[str, Any]]:
        if partition is None:
            return None
        conditions: List[Dict[str, Any]] = []
        status_property = self.status_properties.get(resource)
        if status_property:
            if partition.status_equals is not None:
                conditions.append({"property": status_property, "status": {"equals": partition.status_equals}})
            elif partition.status_not_equals is not None:
                conditions.append({"property": status_property, "status": {"does_not_equal": partition.status_not_equals}})
        elif partition.status_equals is not None or partition.status_not_equals is not None:
            logger.warning(f"Status filter requested for {resource} but no status property is configured")
        if partition.edited_on_or_after:
            conditions.append({"timestamp": "last_edited_time", "last_edited_time": {"on_or_after": partition.edited_on_or_after}})
        if partition.edited_before:
            conditions.append({"timestamp": "last_edited_time", "last_edited_time": {"before": partition.edited_before}})

        if not conditions:
            return None
        if len(conditions) == 1:
            return conditions[0]
        return {"and": conditions}

    async def query(self, resource: str, filter: Optional[PartitionFilter] = None,
                    cursor: Optional[str] = None, page_size: int = 25) -> QueryPage:
        payload: Dict[str, Any] = {"page_size": page_size}
        if cursor:
            payload["start_cursor"] = cursor
        notion_filter = self.build_filter(resource, filter)
        if notion_filter:
            payload["filter"] = notion_filter

        data = await self._request("POST", f"/databases/{self._database_id(resource)}/query", json=payload)
        results = data.get("results", [])
        has_more = bool(data.get("has_more"))
        next_cursor = data.get("next_cursor") if has_more else None
        logger.debug(f"Queried {resource}: {len(results)} records, has_more={has_more}")
        return QueryPage(records=results, next_cursor=next_cursor, has_more=has_more and bool(next_cursor))

    async def fetch_by_id(self, resource: str, external_id: str) -> Dict[str, Any]:
        page = await self._request("GET", f"/pages/{external_id}")
        # Pages from other databases are not ours to import
        parent_db = (page.get("parent") or {}).get("database_id")
        expected = self.database_ids.get(resource)
        if parent_db and expected and parent_db.replace("-", "") != expected.replace("-", ""):
            raise NotFoundError(f"Page {external_id} does not belong to the {resource} database")
        return page

def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"Notion API error {resp.status_code}: {resp.text[:200]}"
    detail = (body.get("message") or body.get("code")) if isinstance(body, dict) else body
    return f"Notion API error {resp.status_code}: {detail}"

def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None
