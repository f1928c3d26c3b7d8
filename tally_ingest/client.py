"""
HTTP client for the Tally sync API.

Full sync reads table rows as JSON from the sync service that sits in front
of Tally:
- POST /api/v1/query/{company}/{division}   {table, filters, limit, offset}
- GET  /api/v1/health
- GET  /api/v1/metadata/{company}/{division}
"""
from __future__ import annotations
from typing import Any, Iterator, Optional
import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from loguru import logger
from .config import IngestConfig

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "tally-ingest/1.0",
}


class SyncApiConnectionError(Exception):
    """Raised when the sync API cannot be reached or fails server-side."""
    pass


class SyncApiResponseError(Exception):
    """Raised when the sync API rejects a request or reports failure."""
    pass


class SyncApiClient:
    """
    JSON client for the sync API with retry logic.

    Features:
    - Automatic retry with exponential backoff on transport errors and 5xx
    - Connection pooling via requests.Session
    - Per-call timeout from config
    - Paged table reads
    """

    def __init__(self, config: Optional[IngestConfig] = None):
        self.config = config or IngestConfig.from_env()
        self.base_url = self.config.sync_api_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _send(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        timeout = self.config.request_timeout
        try:
            r = self.session.request(method, url, json=payload, timeout=timeout)
        except requests.Timeout as e:
            logger.error(f"Sync API request timed out after {timeout}s: {url}")
            raise SyncApiConnectionError(f"Request timeout: {e}") from e
        except requests.RequestException as e:
            logger.error(f"Failed to reach sync API at {url}: {e}")
            raise SyncApiConnectionError(f"Cannot connect to sync API: {e}") from e

        if r.status_code >= 500:
            raise SyncApiConnectionError(f"Sync API error: {r.status_code} {r.reason}")
        if r.status_code >= 400:
            raise SyncApiResponseError(f"API request failed: {r.status_code} {r.reason}")

        try:
            body = r.json()
        except ValueError as e:
            raise SyncApiResponseError(f"Sync API returned invalid JSON from {path}") from e
        if not isinstance(body, dict):
            raise SyncApiResponseError(f"Sync API returned unexpected payload from {path}")
        return body

    def request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        """Send one request, retrying transport failures."""
        retrying = Retrying(
            wait=wait_exponential(multiplier=1, min=1, max=30),
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            retry=retry_if_exception_type(SyncApiConnectionError),
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying sync API request (attempt {retry_state.attempt_number})..."
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(method, path, payload)
        raise SyncApiConnectionError(f"No attempt was made for {path}")

    def health(self) -> dict:
        return self.request("GET", "/api/v1/health")

    def metadata(self, company_id: str, division_id: str) -> dict:
        return self.request("GET", f"/api/v1/metadata/{company_id}/{division_id}")

    def query_table(
        self,
        company_id: str,
        division_id: str,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[dict]:
        """Fetch one page of rows for a source table."""
        body = self.request(
            "POST",
            f"/api/v1/query/{company_id}/{division_id}",
            {
                "table": table,
                "filters": filters or {},
                "limit": limit or self.config.page_size,
                "offset": offset,
            },
        )
        if not body.get("success"):
            raise SyncApiResponseError(body.get("error") or f"API request failed for {table}")
        data = body.get("data") or {}
        records = data.get("records") or []
        logger.debug(f"Retrieved {len(records)} records for {table} (offset {offset})")
        return records

    def iter_table(
        self,
        company_id: str,
        division_id: str,
        table: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> Iterator[dict]:
        """Yield every row of a source table, one page at a time."""
        page_size = self.config.page_size
        offset = 0
        while True:
            records = self.query_table(company_id, division_id, table, filters, page_size, offset)
            yield from records
            if len(records) < page_size:
                break
            offset += page_size
