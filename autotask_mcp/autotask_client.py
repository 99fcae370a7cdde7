"""Autotask REST client - zone discovery, rate limiting and multi-tenant credentials"""
import asyncio
import time
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import httpx

from autotask_mcp.call_tracker import NULL_TRACKER
from autotask_mcp.config import Settings, settings as default_settings
from autotask_mcp.rate_limiter import ConcurrencyLimiter, RateLimiter
from autotask_mcp.tenant import (
    AutotaskCredentials,
    TenantContext,
    derive_tenant_key,
    mask_username,
)

logger = logging.getLogger(__name__)

COMPANIES = "Companies"
RESOURCES = "Resources"
TICKETS = "Tickets"

# Autotask returns at most 500 items per page
MAX_PAGE_SIZE = 500
MAX_PAGES = 50


class AutotaskError(Exception):
    """Base class for Autotask client failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AutotaskConfigError(AutotaskError):
    """Missing or unusable credentials"""


class AutotaskAuthError(AutotaskError):
    """401/403 from the API"""


class AutotaskNotFoundError(AutotaskError):
    """Entity does not exist"""


class AutotaskUnavailableError(AutotaskError):
    """Entity collection not supported for this account (405)"""


class AutotaskAPIError(AutotaskError):
    """Transient failure: network, timeout, 429 or 5xx"""


def build_filter(field: str, op: str, value: Any) -> Dict[str, Any]:
    return {"op": op, "field": field, "value": value}


class AutotaskClient:
    """Async Autotask client shared by all tenants.

    The HTTP connection pool is shared; the zone URL is resolved once per
    tenant and kept in a bounded LRU map.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = config or default_settings
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._zone_urls: "OrderedDict[str, str]" = OrderedDict()
        # one lock per tenant key while its zone is being discovered
        self._zone_locks: Dict[str, asyncio.Lock] = {}
        self.rate_limiter = RateLimiter.per_second(self.settings.requests_per_second)
        self.concurrency_limiter = ConcurrencyLimiter(self.settings.max_concurrency)

    @property
    def is_multi_tenant(self) -> bool:
        return self.settings.multi_tenant_enabled

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def resolve_credentials(self, context: Optional[TenantContext]) -> AutotaskCredentials:
        """Pick the credentials for a call: the tenant's, or the configured default"""
        if context is not None and context.credentials is not None:
            return context.credentials

        if self.is_multi_tenant:
            raise AutotaskConfigError("Multi-tenant mode requires tenant credentials")

        if not self.settings.has_default_credentials:
            raise AutotaskConfigError(
                "Missing required Autotask credentials: username, secret, and integration code are required"
            )

        return AutotaskCredentials(
            username=self.settings.autotask_username,
            secret=self.settings.autotask_secret,
            integration_code=self.settings.autotask_integration_code,
            api_url=self.settings.autotask_api_url,
        )

    def _headers(self, credentials: AutotaskCredentials, context: Optional[TenantContext]) -> Dict[str, str]:
        headers = {
            "ApiIntegrationCode": credentials.integration_code,
            "UserName": credentials.username,
            "Secret": credentials.secret,
            "Content-Type": "application/json",
        }
        if context is not None and context.impersonation_resource_id:
            headers["ImpersonationResourceId"] = str(context.impersonation_resource_id)
        return headers

    @staticmethod
    def _base_from_zone(url: str) -> str:
        base = url.rstrip("/")
        if not base.lower().endswith("/v1.0"):
            base = f"{base}/V1.0"
        return base

    async def get_base_url(self, credentials: AutotaskCredentials) -> str:
        """Return the REST base URL for these credentials, discovering the zone if needed"""
        explicit = credentials.api_url or self.settings.multi_tenant_default_api_url
        if explicit:
            return self._base_from_zone(explicit)

        key = derive_tenant_key(credentials)
        cached = self._zone_urls.get(key)
        if cached:
            self._zone_urls.move_to_end(key)
            return cached

        lock = self._zone_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                return await self._discover_zone(credentials, key)
        finally:
            if not lock.locked() and self._zone_locks.get(key) is lock:
                del self._zone_locks[key]

    async def _discover_zone(self, credentials: AutotaskCredentials, key: str) -> str:
        # Double check: another request may have discovered the zone already
        cached = self._zone_urls.get(key)
        if cached:
            return cached

        logger.info(f"Discovering Autotask zone for {mask_username(credentials.username)}")
        try:
            response = await self._http_client().get(
                self.settings.autotask_zone_url,
                params={"user": credentials.username},
                headers=self._headers(credentials, None),
            )
        except httpx.HTTPError as e:
            raise AutotaskAPIError(f"Zone information request failed: {e}") from e

        if response.status_code != 200:
            raise self._error_for(response, "zoneInformation")

        zone_url = self._json(response, "zoneInformation").get("url")
        if not zone_url:
            raise AutotaskAPIError("Zone information response did not include a url")

        base = self._base_from_zone(zone_url)
        self._zone_urls[key] = base
        while len(self._zone_urls) > self.settings.multi_tenant_pool_size:
            self._zone_urls.popitem(last=False)

        logger.info(f"Autotask zone for {mask_username(credentials.username)}: {base}")
        return base

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Dict:
        try:
            data = response.json()
        except ValueError as e:
            raise AutotaskAPIError(
                f"Autotask {operation} returned a non-JSON body: {response.text[:200]}",
                response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise AutotaskAPIError(f"Autotask {operation} returned unexpected JSON", response.status_code)
        return data

    @staticmethod
    def _error_for(response: httpx.Response, operation: str) -> AutotaskError:
        status = response.status_code
        body = response.text[:500]
        message = f"Autotask {operation} failed: {status} {body}"
        if status == 404:
            return AutotaskNotFoundError(message, status)
        if status == 405:
            return AutotaskUnavailableError(message, status)
        if status in (401, 403):
            return AutotaskAuthError(message, status)
        return AutotaskAPIError(message, status)

    async def _request(
        self,
        method: str,
        url: str,
        credentials: AutotaskCredentials,
        context: Optional[TenantContext],
        entity: str,
        operation: str,
        tracker=None,
        json_body: Optional[Dict] = None,
    ) -> Dict:
        tracker = tracker or NULL_TRACKER

        async def send():
            await self.rate_limiter.wait_for_slot()
            return await self._http_client().request(
                method,
                url,
                headers=self._headers(credentials, context),
                json=json_body,
            )

        start = time.monotonic()
        try:
            response = await self.concurrency_limiter.run(send)
        except httpx.TimeoutException as e:
            raise AutotaskAPIError(f"Autotask {entity}.{operation} timed out") from e
        except httpx.HTTPError as e:
            raise AutotaskAPIError(f"Autotask {entity}.{operation} failed: {e}") from e
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            tracker.record_api_call(entity, operation, duration_ms, {"method": method})

        logger.debug(f"{method} {url} -> {response.status_code} ({duration_ms:.0f}ms)")

        if response.status_code >= 400:
            error = self._error_for(response, f"{entity}.{operation}")
            logger.error(str(error))
            raise error

        if not response.content:
            return {}
        return self._json(response, f"{entity}.{operation}")

    async def get_entity(
        self,
        entity: str,
        entity_id: int,
        context: Optional[TenantContext] = None,
        tracker=None,
    ) -> Dict:
        """GET a single entity by ID; raises AutotaskNotFoundError when absent"""
        credentials = self.resolve_credentials(context)
        base = await self.get_base_url(credentials)
        data = await self._request(
            "GET",
            f"{base}/{entity}/{entity_id}",
            credentials,
            context,
            entity,
            "get",
            tracker=tracker,
        )
        item = data.get("item")
        if not item:
            raise AutotaskNotFoundError(f"{entity} {entity_id} not found", 404)
        return item

    async def query_entities(
        self,
        entity: str,
        filters: Optional[List[Dict[str, Any]]] = None,
        context: Optional[TenantContext] = None,
        tracker=None,
        max_records: Optional[int] = None,
        include_fields: Optional[List[str]] = None,
    ) -> List[Dict]:
        """POST {entity}/query and follow nextPageUrl until the result set is complete"""
        credentials = self.resolve_credentials(context)
        base = await self.get_base_url(credentials)

        body: Dict[str, Any] = {
            # The API refuses queries without a filter
            "filter": filters or [build_filter("id", "gte", 0)],
        }
        if include_fields:
            body["IncludeFields"] = include_fields
        if max_records:
            body["MaxRecords"] = min(max_records, MAX_PAGE_SIZE)

        items: List[Dict] = []
        data = await self._request(
            "POST", f"{base}/{entity}/query", credentials, context, entity, "query",
            tracker=tracker, json_body=body,
        )
        pages = 1
        while True:
            items.extend(data.get("items") or [])
            if max_records and len(items) >= max_records:
                return items[:max_records]

            next_url = (data.get("pageDetails") or {}).get("nextPageUrl")
            if not next_url:
                break
            if pages >= MAX_PAGES:
                logger.warning(
                    f"{entity} query stopped at the {MAX_PAGES} page safety limit ({len(items)} items)"
                )
                break

            data = await self._request(
                "GET", next_url, credentials, context, entity, "query", tracker=tracker
            )
            pages += 1

        logger.info(f"Retrieved {len(items)} {entity} across {pages} page(s)")
        return items

    # Entity helpers used by tool handlers and the mapping cache

    async def get_company(self, company_id: int, context=None, tracker=None) -> Dict:
        return await self.get_entity(COMPANIES, company_id, context, tracker)

    async def search_companies(self, filters=None, context=None, tracker=None, max_records=None) -> List[Dict]:
        return await self.query_entities(COMPANIES, filters, context, tracker, max_records)

    async def get_resource(self, resource_id: int, context=None, tracker=None) -> Dict:
        return await self.get_entity(RESOURCES, resource_id, context, tracker)

    async def search_resources(self, filters=None, context=None, tracker=None, max_records=None) -> List[Dict]:
        return await self.query_entities(RESOURCES, filters, context, tracker, max_records)

    async def get_ticket(self, ticket_id: int, context=None, tracker=None) -> Dict:
        return await self.get_entity(TICKETS, ticket_id, context, tracker)

    async def search_tickets(self, filters=None, context=None, tracker=None, max_records=None) -> List[Dict]:
        return await self.query_entities(TICKETS, filters, context, tracker, max_records)

    async def test_connection(self, context: Optional[TenantContext] = None) -> bool:
        try:
            await self.query_entities(COMPANIES, context=context, max_records=1)
            return True
        except AutotaskError as e:
            logger.error(f"Connection test failed: {e}")
            return False


# Global AutotaskClient instance
_autotask_client: Optional[AutotaskClient] = None


def get_autotask_client() -> AutotaskClient:
    """Return the process-wide AutotaskClient"""
    global _autotask_client
    if _autotask_client is None:
        _autotask_client = AutotaskClient()
    return _autotask_client
