"""
HTTP Backend Implementation

Talks to the household finance API with httpx.

DESIGN DECISION: The API is addressed the same way the web app addresses it:
- one path per entity (/api/income, /api/expenses, ...)
- the period is passed as userId/year/month query parameters
- monthly records are upserted with POST, records with an id are updated with PUT

The sync layer needs version markers the API does not name explicitly, so
the marker is the record's `version` field when present, else its
`updated_at` timestamp.

No retries here: retrying is the pipeline's decision, made per error kind.
"""

from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from household_sync.config import get_settings
from household_sync.models.projections import coerce_record
from household_sync.models.records import EntityType
from household_sync.models.sync import CacheKey, VersionedValue
from household_sync.services.backend.interface import (
    BackendError,
    NetworkError,
    NotFoundError,
    RecordBackend,
    RequestValidationError,
    UnauthorizedError,
    VersionConflictError,
)


logger = structlog.get_logger(__name__)


ENTITY_PATHS = {
    EntityType.INCOME: "/api/income",
    EntityType.EXPENSES: "/api/expenses",
    EntityType.ACCOUNTS: "/api/accounts",
    EntityType.SAVINGS: "/api/savings",
    EntityType.DASHBOARD: "/api/dashboard",
    EntityType.FINANCIAL_METRICS: "/api/financial-metrics",
    EntityType.SAVINGS_STATISTICS: "/api/savings/statistics",
}

# Gateway errors mean the server was not reached in a useful way
TRANSIENT_STATUSES = (408, 502, 503, 504)


class HttpRecordBackend(RecordBackend):
    """
    RecordBackend over the finance HTTP API.

    Pass `client` to inject a preconfigured httpx.AsyncClient
    (tests use one with an httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings().backend
        self._base_url = (base_url or settings.base_url).rstrip("/")
        token = api_token if api_token is not None else settings.api_token

        if client is None:
            headers = {"Content-Type": "application/json"}
            if token:
                headers["Authorization"] = f"Bearer {token}"
            client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=timeout_seconds or settings.timeout_seconds,
            )
        self._client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Request helpers
    # -------------------------------------------------------------------------

    def _params(self, key: CacheKey) -> dict:
        params = {"userId": key.owner_id, "year": key.year, "month": key.month}
        if key.sub_id is not None:
            params["id"] = key.sub_id
        return params

    async def _request(self, method: str, key: CacheKey, **kwargs) -> httpx.Response:
        path = ENTITY_PATHS[key.entity_type]
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"request timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"network error: {method} {path}: {e}") from e

    def _unwrap(self, body: Any) -> Any:
        """Strip the {data, error, success} envelope when the API uses one."""
        if isinstance(body, dict) and "success" in body and "data" in body:
            return body["data"]
        return body

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"HTTP {response.status_code}"

    def _versioned(self, key: CacheKey, data: Any) -> VersionedValue:
        version = None
        modified_at: Optional[datetime] = None
        if isinstance(data, dict):
            raw_version = data.get("version") or data.get("updated_at")
            version = str(raw_version) if raw_version is not None else None

        if isinstance(data, list):
            value = [coerce_record(key.entity_type, item) for item in data]
        else:
            value = coerce_record(key.entity_type, data)
        if key.entity_type.is_record and not isinstance(value, list):
            modified_at = getattr(value, "updated_at", None)
        return VersionedValue(value=value, version=version, modified_at=modified_at)

    def _raise_for_status(self, key: CacheKey, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._error_message(response)
        logger.warning(
            "backend_request_failed",
            key=str(key),
            status=status,
            error=message,
        )

        if status == 409:
            current = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                current = body.get("current")
            raise VersionConflictError(
                self._versioned(key, current),
                message=f"version conflict: {message}",
            )
        if status in (401, 403):
            raise UnauthorizedError(message, status_code=status)
        if status in (400, 422):
            raise RequestValidationError(message, status_code=status)
        if status == 404:
            raise NotFoundError(message, status_code=status)
        if status in TRANSIENT_STATUSES:
            raise NetworkError(message, status_code=status)
        raise BackendError(message, status_code=status)

    # -------------------------------------------------------------------------
    # RecordBackend
    # -------------------------------------------------------------------------

    async def fetch(self, key: CacheKey) -> Optional[VersionedValue]:
        response = await self._request("GET", key, params=self._params(key))
        if response.status_code == 404:
            return None
        self._raise_for_status(key, response)

        if not response.content:
            return None
        data = self._unwrap(response.json())
        if data is None:
            return None
        if isinstance(data, list) and key.sub_id is not None:
            matches = [item for item in data if isinstance(item, dict) and item.get("id") == key.sub_id]
            if not matches:
                return None
            data = matches[0]
        return self._versioned(key, data)

    async def submit(
        self,
        key: CacheKey,
        payload: BaseModel,
        expected_version: Optional[str] = None,
    ) -> VersionedValue:
        body = payload.model_dump(mode="json", by_alias=True)
        body.update(self._params(key))
        if expected_version is not None:
            body["expectedVersion"] = expected_version

        method = "PUT" if key.sub_id is not None else "POST"
        response = await self._request(method, key, json=body)
        self._raise_for_status(key, response)

        if not response.content:
            # Accepted without a body (204 or empty 200)
            return VersionedValue(version=response.headers.get("ETag"))

        data = self._unwrap(response.json())
        if isinstance(data, list):
            data = data[0] if data else None
        return self._versioned(key, data)

    async def delete(self, key: CacheKey, expected_version: Optional[str] = None) -> None:
        params = self._params(key)
        if expected_version is not None:
            params["expectedVersion"] = expected_version
        response = await self._request("DELETE", key, params=params)
        self._raise_for_status(key, response)
