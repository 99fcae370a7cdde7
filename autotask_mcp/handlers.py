"""Tool operations: Autotask searches with ID-to-name enrichment and cache management"""
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastmcp.exceptions import ToolError

from autotask_mcp.autotask_client import (
    AutotaskClient,
    AutotaskError,
    AutotaskNotFoundError,
    build_filter,
)
from autotask_mcp.call_tracker import ApiCallTracker
from autotask_mcp.config import Settings, settings as default_settings
from autotask_mcp.formatting import (
    display_name,
    format_cache_stats,
    format_companies,
    format_company,
    format_resource,
    format_resources,
    format_ticket,
    format_tickets,
)
from autotask_mcp.mapping_service import MappingService, get_mapping_service
from autotask_mcp.tenant import TenantContext, mask_username, tenant_context_from_args
from autotask_mcp.tenant_cache import EntityKind

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

CLEAR_SCOPES = ("tenant", "all", "companies", "resources")


def sanitize_args(args: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of tool arguments that is safe to log"""
    sanitized = dict(args)
    tenant = sanitized.get("tenant")
    if isinstance(tenant, dict):
        sanitized["tenant"] = {
            **tenant,
            "secret": "[REDACTED]",
            "username": mask_username(tenant.get("username")),
        }
    return sanitized


def _page_size(page_size: Optional[int]) -> int:
    if not page_size or page_size < 1:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


class ToolHandler:
    """Implements every MCP tool; tools.py only registers these methods"""

    def __init__(self, client: AutotaskClient, config: Optional[Settings] = None):
        self.client = client
        self.settings = config or default_settings

    async def mapping(self) -> MappingService:
        return await get_mapping_service(self.client, self.settings)

    async def _run(
        self,
        tool_name: str,
        args: Dict[str, Any],
        operation: Callable[[Optional[TenantContext], ApiCallTracker], Awaitable[str]],
    ) -> str:
        try:
            context = tenant_context_from_args(args.get("tenant"))
        except ValueError as e:
            raise ToolError(f"{tool_name}: invalid tenant argument: {e}") from e
        tracker = ApiCallTracker(tool_name, uuid.uuid4().hex[:12])
        logger.info(f"{tool_name} called with: {sanitize_args(args)}")
        try:
            return await operation(context, tracker)
        except AutotaskError as e:
            logger.error(f"Tool call failed: {tool_name}: {e}")
            raise ToolError(f"{tool_name} failed: {e}") from e
        finally:
            tracker.log_summary()

    # Connection

    async def test_connection(self, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            connected = await self.client.test_connection(context)
            target = f" for tenant: {context.tenant_id}" if context else ""
            if connected:
                return f"Successfully connected to Autotask API{target}"
            raise ToolError(f"Failed to connect to Autotask API{target}")

        return await self._run("autotask_test_connection", {"tenant": tenant}, operation)

    # Companies

    async def search_companies(
        self,
        search_term: Optional[str] = None,
        is_active: Optional[bool] = None,
        page_size: Optional[int] = None,
        tenant: Optional[Dict] = None,
    ) -> str:
        args = {"search_term": search_term, "is_active": is_active, "page_size": page_size, "tenant": tenant}

        async def operation(context, tracker):
            filters = []
            if search_term:
                filters.append(build_filter("companyName", "contains", search_term))
            if is_active is not None:
                filters.append(build_filter("isActive", "eq", is_active))

            companies = await self.client.search_companies(
                filters or None, context, tracker, max_records=_page_size(page_size)
            )
            mapping = await self.mapping()
            owner_names = await mapping.get_resource_names(
                [c.get("ownerResourceID") for c in companies if c.get("ownerResourceID")],
                context,
                tracker,
            )
            owners = iter(owner_names)
            aligned = [next(owners) if c.get("ownerResourceID") else None for c in companies]
            return format_companies(companies, aligned)

        return await self._run("autotask_search_companies", args, operation)

    async def get_company(self, company_id: int, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            try:
                company = await self.client.get_company(company_id, context, tracker)
            except AutotaskNotFoundError:
                return f"Company {company_id} not found"
            owner_name = None
            if company.get("ownerResourceID"):
                mapping = await self.mapping()
                owner_name = await mapping.get_resource_name(company["ownerResourceID"], context, tracker)
            return format_company(company, owner_name)

        return await self._run("autotask_get_company", {"company_id": company_id, "tenant": tenant}, operation)

    # Resources

    async def search_resources(
        self,
        search_term: Optional[str] = None,
        is_active: Optional[bool] = None,
        page_size: Optional[int] = None,
        tenant: Optional[Dict] = None,
    ) -> str:
        args = {"search_term": search_term, "is_active": is_active, "page_size": page_size, "tenant": tenant}

        async def operation(context, tracker):
            filters = []
            if search_term:
                filters.append({
                    "op": "or",
                    "items": [
                        build_filter("firstName", "contains", search_term),
                        build_filter("lastName", "contains", search_term),
                    ],
                })
            if is_active is not None:
                filters.append(build_filter("isActive", "eq", is_active))

            resources = await self.client.search_resources(
                filters or None, context, tracker, max_records=_page_size(page_size)
            )
            return format_resources(resources)

        return await self._run("autotask_search_resources", args, operation)

    async def get_resource(self, resource_id: int, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            try:
                resource = await self.client.get_resource(resource_id, context, tracker)
            except AutotaskNotFoundError:
                return f"Resource {resource_id} not found"
            return format_resource(resource)

        return await self._run("autotask_get_resource", {"resource_id": resource_id, "tenant": tenant}, operation)

    # Tickets

    async def _ticket_names(self, tickets: List[Dict], context, tracker):
        mapping = await self.mapping()
        company_ids = [t.get("companyID") for t in tickets]
        resource_ids = [t.get("assignedResourceID") for t in tickets]
        company_names = await mapping.get_company_names([i for i in company_ids if i], context, tracker)
        resource_names = await mapping.get_resource_names([i for i in resource_ids if i], context, tracker)

        companies = iter(company_names)
        resources = iter(resource_names)
        return (
            [next(companies) if i else None for i in company_ids],
            [next(resources) if i else None for i in resource_ids],
        )

    async def search_tickets(
        self,
        search_term: Optional[str] = None,
        company_id: Optional[int] = None,
        status: Optional[int] = None,
        assigned_resource_id: Optional[int] = None,
        page_size: Optional[int] = None,
        tenant: Optional[Dict] = None,
    ) -> str:
        args = {
            "search_term": search_term,
            "company_id": company_id,
            "status": status,
            "assigned_resource_id": assigned_resource_id,
            "page_size": page_size,
            "tenant": tenant,
        }

        async def operation(context, tracker):
            filters = []
            if search_term:
                filters.append(build_filter("title", "contains", search_term))
            if company_id is not None:
                filters.append(build_filter("companyID", "eq", company_id))
            if status is not None:
                filters.append(build_filter("status", "eq", status))
            if assigned_resource_id is not None:
                filters.append(build_filter("assignedResourceID", "eq", assigned_resource_id))

            tickets = await self.client.search_tickets(
                filters or None, context, tracker, max_records=_page_size(page_size)
            )
            company_names, resource_names = await self._ticket_names(tickets, context, tracker)
            return format_tickets(tickets, company_names, resource_names)

        return await self._run("autotask_search_tickets", args, operation)

    async def get_ticket(self, ticket_id: int, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            try:
                ticket = await self.client.get_ticket(ticket_id, context, tracker)
            except AutotaskNotFoundError:
                return f"Ticket {ticket_id} not found"
            company_names, resource_names = await self._ticket_names([ticket], context, tracker)
            return format_ticket(ticket, company_names[0], resource_names[0])

        return await self._run("autotask_get_ticket", {"ticket_id": ticket_id, "tenant": tenant}, operation)

    # Mapping cache

    async def resolve_names(
        self,
        company_ids: Optional[List[int]] = None,
        resource_ids: Optional[List[int]] = None,
        tenant: Optional[Dict] = None,
    ) -> str:
        args = {"company_ids": company_ids, "resource_ids": resource_ids, "tenant": tenant}

        async def operation(context, tracker):
            mapping = await self.mapping()
            lines = []
            if company_ids:
                names = await mapping.get_company_names(company_ids, context, tracker)
                lines.append("Companies:")
                lines.extend(f"  {i}: {display_name(n, i)}" for i, n in zip(company_ids, names))
            if resource_ids:
                names = await mapping.get_resource_names(resource_ids, context, tracker)
                lines.append("Resources:")
                lines.extend(f"  {i}: {display_name(n, i)}" for i, n in zip(resource_ids, names))
            return "\n".join(lines) if lines else "No IDs given"

        return await self._run("autotask_resolve_names", args, operation)

    async def preload_cache(self, force: bool = False, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            mapping = await self.mapping()
            await mapping.preload(context, force=force, tracker=tracker)
            return format_cache_stats(mapping.get_stats(context))

        return await self._run("autotask_preload_cache", {"force": force, "tenant": tenant}, operation)

    async def cache_stats(self, tenant: Optional[Dict] = None) -> str:
        async def operation(context, tracker):
            mapping = await self.mapping()
            return format_cache_stats(mapping.get_stats(context))

        return await self._run("autotask_cache_stats", {"tenant": tenant}, operation)

    async def clear_cache(self, scope: str = "tenant", tenant: Optional[Dict] = None) -> str:
        if scope not in CLEAR_SCOPES:
            raise ToolError(f"scope must be one of {', '.join(CLEAR_SCOPES)}")

        async def operation(context, tracker):
            mapping = await self.mapping()
            if scope == "all":
                count = mapping.clear_all()
                return f"Cleared mapping caches for {count} tenants"
            if scope == "tenant":
                mapping.clear(context)
                return "Cleared mapping cache for this tenant"
            mapping.clear_kind(EntityKind(scope), context)
            return f"Cleared {scope} mapping cache for this tenant"

        return await self._run("autotask_clear_cache", {"scope": scope, "tenant": tenant}, operation)
