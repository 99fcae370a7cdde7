"""Plain-text rendering of Autotask entities for tool results"""
from datetime import datetime, timezone
from typing import Dict, List, Optional


def display_name(name: Optional[str], entity_id: Optional[int]) -> str:
    """Name for output; failed lookups degrade to the raw ID"""
    if entity_id is None:
        return "Unassigned"
    if name:
        return name
    return f"Unknown ({entity_id})"


def format_timestamp(ts: Optional[float]) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_company(company: Dict, owner_name: Optional[str] = None) -> str:
    lines = [
        f"ID: {company.get('id')}",
        f"Name: {company.get('companyName')}",
        f"Type: {company.get('companyType')}",
        f"Active: {company.get('isActive')}",
        f"Owner: {display_name(owner_name, company.get('ownerResourceID'))}",
    ]
    if company.get("phone"):
        lines.append(f"Phone: {company['phone']}")
    city = ", ".join(part for part in (company.get("city"), company.get("state")) if part)
    if city:
        lines.append(f"Location: {city}")
    return "\n".join(lines)


def format_companies(companies: List[Dict], owner_names: List[Optional[str]]) -> str:
    if not companies:
        return "No companies found matching the criteria"
    blocks = [format_company(c, name) for c, name in zip(companies, owner_names)]
    return f"Found {len(companies)} companies:\n\n" + "\n\n".join(blocks)


def format_resource(resource: Dict) -> str:
    name = " ".join(p for p in (resource.get("firstName"), resource.get("lastName")) if p)
    lines = [
        f"ID: {resource.get('id')}",
        f"Name: {name or 'Unknown'}",
        f"Email: {resource.get('email') or 'N/A'}",
        f"Title: {resource.get('title') or 'N/A'}",
        f"Active: {resource.get('isActive')}",
    ]
    return "\n".join(lines)


def format_resources(resources: List[Dict]) -> str:
    if not resources:
        return "No resources found matching the criteria"
    blocks = [format_resource(r) for r in resources]
    return f"Found {len(resources)} resources:\n\n" + "\n\n".join(blocks)


def format_ticket(ticket: Dict, company_name: Optional[str] = None, resource_name: Optional[str] = None) -> str:
    lines = [
        f"ID: {ticket.get('id')}",
        f"Number: {ticket.get('ticketNumber')}",
        f"Title: {ticket.get('title')}",
        f"Company: {display_name(company_name, ticket.get('companyID'))}",
        f"Assigned: {display_name(resource_name, ticket.get('assignedResourceID'))}",
        f"Status: {ticket.get('status')}",
        f"Priority: {ticket.get('priority')}",
    ]
    if ticket.get("dueDateTime"):
        lines.append(f"Due: {ticket['dueDateTime']}")
    return "\n".join(lines)


def format_tickets(
    tickets: List[Dict],
    company_names: List[Optional[str]],
    resource_names: List[Optional[str]],
) -> str:
    if not tickets:
        return "No tickets found matching the criteria"
    blocks = [
        format_ticket(t, c, r)
        for t, c, r in zip(tickets, company_names, resource_names)
    ]
    return f"Found {len(tickets)} tickets:\n\n" + "\n\n".join(blocks)


def format_cache_stats(stats: Dict) -> str:
    def table_state(kind: str) -> str:
        if stats.get(f"{kind}_unavailable"):
            return "unavailable for this account"
        if stats.get(f"{kind}_fresh"):
            return f"fresh (refreshed {format_timestamp(stats.get(f'{kind}_refreshed_at'))})"
        return "filled on demand"

    return "\n".join([
        f"Tenant: {stats.get('tenant_id')}",
        f"Companies cached: {stats.get('company_count')} ({table_state('companies')})",
        f"Resources cached: {stats.get('resource_count')} ({table_state('resources')})",
        f"Last used: {format_timestamp(stats.get('last_used'))}",
    ])
