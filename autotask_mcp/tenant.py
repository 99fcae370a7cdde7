"""Tenant identity: credentials, request context and cache partition keys."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional


DEFAULT_TENANT_KEY = "default"
TENANT_KEY_LENGTH = 16


@dataclass(frozen=True)
class AutotaskCredentials:
    username: str
    secret: str
    integration_code: str
    api_url: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"AutotaskCredentials(username={mask_username(self.username)!r}, "
            f"integration_code={self.integration_code!r}, api_url={self.api_url!r})"
        )


@dataclass(frozen=True)
class TenantContext:
    """Tenant identity threaded through every tool call.

    ``credentials`` is None in single-tenant mode, where the server's own
    configured credentials are used and the cache partition is ``default``.
    """

    tenant_id: str = "default"
    credentials: Optional[AutotaskCredentials] = None
    session_id: Optional[str] = None
    impersonation_resource_id: Optional[int] = None


def mask_username(username: Optional[str]) -> Optional[str]:
    if not username:
        return username
    return f"{username[:3]}***"


def derive_tenant_key(credentials: Optional[AutotaskCredentials]) -> str:
    """Map credentials to a short, stable cache partition key.

    Only the principal name and integration code take part; the secret never
    does. Without credentials the single-tenant sentinel is returned.
    """
    if credentials is None:
        return DEFAULT_TENANT_KEY
    key_data = f"{credentials.username}:{credentials.integration_code}".encode("utf-8")
    digest = hashlib.sha256(key_data).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")[:TENANT_KEY_LENGTH]


def tenant_key_for(context: Optional[TenantContext]) -> str:
    return derive_tenant_key(context.credentials if context else None)


def tenant_label_for(context: Optional[TenantContext]) -> str:
    return context.tenant_id if context else "default"


def tenant_context_from_args(tenant: Optional[Dict[str, Any]]) -> Optional[TenantContext]:
    """Build a TenantContext from the ``tenant`` argument of a tool call.

    Returns None unless username, secret and integration code are all present.
    Raises ValueError for a malformed impersonation resource ID.
    """
    if not tenant:
        return None

    username = tenant.get("username")
    secret = tenant.get("secret")
    integration_code = tenant.get("integration_code") or tenant.get("integrationCode")
    if not (username and secret and integration_code):
        return None

    credentials = AutotaskCredentials(
        username=str(username),
        secret=str(secret),
        integration_code=str(integration_code),
        api_url=tenant.get("api_url") or tenant.get("apiUrl"),
    )

    impersonation = tenant.get("impersonation_resource_id") or tenant.get("impersonationResourceId")
    if impersonation is not None and not str(impersonation).strip().isdigit():
        raise ValueError(f"impersonation_resource_id must be a resource ID number, got {impersonation!r}")

    return TenantContext(
        tenant_id=str(tenant.get("tenant_id") or tenant.get("tenantId") or f"tenant_{username}"),
        credentials=credentials,
        session_id=tenant.get("session_id") or tenant.get("sessionId"),
        impersonation_resource_id=int(impersonation) if impersonation else None,
    )
