"""MCP tool registrations

Each tool is a thin wrapper around ToolHandler. The docstrings are the tool
descriptions the client model sees, so they say when to call the tool.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from autotask_mcp.autotask_client import get_autotask_client
from autotask_mcp.config import settings
from autotask_mcp.handlers import ToolHandler

TENANT_HELP = (
    "Optional tenant credentials for multi-tenant mode: "
    "{username, secret, integration_code, api_url?, tenant_id?, impersonation_resource_id?}"
)

mcp = FastMCP(
    settings.server_name,
    instructions=(
        "Autotask PSA tools. Company, resource and ticket results show names "
        "instead of raw IDs; names come from a per-tenant cache. "
        + TENANT_HELP
    ),
)

# Global ToolHandler instance
_tool_handler: Optional[ToolHandler] = None


def get_tool_handler() -> ToolHandler:
    global _tool_handler
    if _tool_handler is None:
        _tool_handler = ToolHandler(get_autotask_client(), settings)
    return _tool_handler


@mcp.tool()
async def autotask_test_connection(tenant: Optional[Dict[str, Any]] = None) -> str:
    """Check that the Autotask API is reachable with the configured or given credentials."""
    return await get_tool_handler().test_connection(tenant)


@mcp.tool()
async def autotask_search_companies(
    search_term: Optional[str] = None,
    is_active: Optional[bool] = None,
    page_size: Optional[int] = None,
    tenant: Optional[Dict[str, Any]] = None,
) -> str:
    """Search Autotask companies by name. Each result includes the owner's name.

    Args:
        search_term: Text contained in the company name.
        is_active: Only active (true) or inactive (false) companies.
        page_size: Maximum number of companies to return (default 50, max 500).
    """
    return await get_tool_handler().search_companies(search_term, is_active, page_size, tenant)


@mcp.tool()
async def autotask_get_company(company_id: int, tenant: Optional[Dict[str, Any]] = None) -> str:
    """Get one Autotask company by ID."""
    return await get_tool_handler().get_company(company_id, tenant)


@mcp.tool()
async def autotask_search_resources(
    search_term: Optional[str] = None,
    is_active: Optional[bool] = None,
    page_size: Optional[int] = None,
    tenant: Optional[Dict[str, Any]] = None,
) -> str:
    """Search Autotask resources (technicians and staff) by first or last name."""
    return await get_tool_handler().search_resources(search_term, is_active, page_size, tenant)


@mcp.tool()
async def autotask_get_resource(resource_id: int, tenant: Optional[Dict[str, Any]] = None) -> str:
    """Get one Autotask resource by ID."""
    return await get_tool_handler().get_resource(resource_id, tenant)


@mcp.tool()
async def autotask_search_tickets(
    search_term: Optional[str] = None,
    company_id: Optional[int] = None,
    status: Optional[int] = None,
    assigned_resource_id: Optional[int] = None,
    page_size: Optional[int] = None,
    tenant: Optional[Dict[str, Any]] = None,
) -> str:
    """Search Autotask tickets. Results show company and assigned resource names.

    Args:
        search_term: Text contained in the ticket title.
        company_id: Only tickets for this company.
        status: Autotask ticket status value.
        assigned_resource_id: Only tickets assigned to this resource.
        page_size: Maximum number of tickets to return (default 50, max 500).
    """
    return await get_tool_handler().search_tickets(
        search_term, company_id, status, assigned_resource_id, page_size, tenant
    )


@mcp.tool()
async def autotask_get_ticket(ticket_id: int, tenant: Optional[Dict[str, Any]] = None) -> str:
    """Get one Autotask ticket by ID, with company and assigned resource names."""
    return await get_tool_handler().get_ticket(ticket_id, tenant)


@mcp.tool()
async def autotask_resolve_names(
    company_ids: Optional[List[int]] = None,
    resource_ids: Optional[List[int]] = None,
    tenant: Optional[Dict[str, Any]] = None,
) -> str:
    """Turn company and resource IDs into display names. IDs that cannot be resolved show as Unknown (id)."""
    return await get_tool_handler().resolve_names(company_ids, resource_ids, tenant)


@mcp.tool()
async def autotask_preload_cache(force: bool = False, tenant: Optional[Dict[str, Any]] = None) -> str:
    """Load all company and resource names into the cache. Tables that are still fresh are skipped unless force is true."""
    return await get_tool_handler().preload_cache(force, tenant)


@mcp.tool()
async def autotask_cache_stats(tenant: Optional[Dict[str, Any]] = None) -> str:
    """Show the name cache state for the tenant."""
    return await get_tool_handler().cache_stats(tenant)


@mcp.tool()
async def autotask_clear_cache(scope: str = "tenant", tenant: Optional[Dict[str, Any]] = None) -> str:
    """Clear cached names. scope is one of: tenant, all, companies, resources."""
    return await get_tool_handler().clear_cache(scope, tenant)
