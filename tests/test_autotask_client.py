import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from autotask_mcp.autotask_client import (  # noqa: E402
    AutotaskAPIError,
    AutotaskAuthError,
    AutotaskClient,
    AutotaskConfigError,
    AutotaskNotFoundError,
    AutotaskUnavailableError,
    build_filter,
)
from autotask_mcp.call_tracker import ApiCallTracker  # noqa: E402
from autotask_mcp.config import Settings  # noqa: E402
from autotask_mcp.tenant import AutotaskCredentials, TenantContext  # noqa: E402


ZONE_BASE = "https://webservices5.autotask.net/ATServicesRest"


def make_settings(**overrides):
    values = dict(
        autotask_username="api@acme.com",
        autotask_secret="s3cret",
        autotask_integration_code="CODE",
        requests_per_second=100,
    )
    values.update(overrides)
    return Settings(**values)


class FakeAutotask:
    """httpx.MockTransport handler with canned Autotask responses"""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/zoneInformation"):
            return httpx.Response(200, json={"url": f"{ZONE_BASE}/"})
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"errors": ["not found"]})
        result = self.routes[key]
        if callable(result):
            return result(request)
        return httpx.Response(result.status_code, content=result.content, headers=result.headers)

    def paths(self):
        return [r.url.path for r in self.requests]


def make_client(fake, **overrides):
    return AutotaskClient(make_settings(**overrides), transport=httpx.MockTransport(fake))


def test_zone_is_discovered_once_and_headers_are_sent():
    fake = FakeAutotask({
        ("GET", "/ATServicesRest/V1.0/Companies/7"): httpx.Response(
            200, json={"item": {"id": 7, "companyName": "Acme Co"}}
        ),
    })
    client = make_client(fake)

    async def run():
        first = await client.get_company(7)
        second = await client.get_company(7)
        await client.aclose()
        return first, second

    first, second = asyncio.run(run())
    assert first["companyName"] == "Acme Co"
    assert second == first

    zone_requests = [r for r in fake.requests if r.url.path.endswith("/zoneInformation")]
    assert len(zone_requests) == 1
    assert zone_requests[0].url.params["user"] == "api@acme.com"

    entity_request = fake.requests[-1]
    assert entity_request.headers["ApiIntegrationCode"] == "CODE"
    assert entity_request.headers["UserName"] == "api@acme.com"
    assert entity_request.headers["Secret"] == "s3cret"
    assert "ImpersonationResourceId" not in entity_request.headers


def test_explicit_api_url_skips_zone_discovery():
    fake = FakeAutotask({
        ("GET", "/ATServicesRest/V1.0/Resources/1"): httpx.Response(
            200, json={"item": {"id": 1, "firstName": "Jane", "lastName": "Doe"}}
        ),
    })
    client = make_client(fake, autotask_api_url=ZONE_BASE)

    resource = asyncio.run(client.get_resource(1))

    assert resource["lastName"] == "Doe"
    assert fake.paths() == ["/ATServicesRest/V1.0/Resources/1"]


def test_tenant_credentials_and_impersonation_are_used():
    fake = FakeAutotask({
        ("GET", "/ATServicesRest/V1.0/Tickets/5"): httpx.Response(200, json={"item": {"id": 5}}),
    })
    client = make_client(fake, multi_tenant_enabled=True)
    context = TenantContext(
        tenant_id="acme",
        credentials=AutotaskCredentials(
            username="tenant@acme.com", secret="t", integration_code="TCODE", api_url=ZONE_BASE
        ),
        impersonation_resource_id=42,
    )

    asyncio.run(client.get_ticket(5, context))

    request = fake.requests[-1]
    assert request.headers["UserName"] == "tenant@acme.com"
    assert request.headers["ApiIntegrationCode"] == "TCODE"
    assert request.headers["ImpersonationResourceId"] == "42"


def test_multi_tenant_without_credentials_is_a_config_error():
    client = make_client(FakeAutotask(), multi_tenant_enabled=True)

    with pytest.raises(AutotaskConfigError):
        asyncio.run(client.get_company(7))


def test_status_codes_map_to_error_types():
    fake = FakeAutotask({
        ("GET", "/ATServicesRest/V1.0/Companies/2"): httpx.Response(405, text="Method Not Allowed"),
        ("GET", "/ATServicesRest/V1.0/Companies/3"): httpx.Response(500, text="oops"),
        ("GET", "/ATServicesRest/V1.0/Companies/4"): httpx.Response(401, text="denied"),
        ("GET", "/ATServicesRest/V1.0/Companies/5"): httpx.Response(200, json={"item": None}),
    })
    client = make_client(fake, autotask_api_url=ZONE_BASE)

    async def run():
        with pytest.raises(AutotaskNotFoundError):
            await client.get_company(1)
        with pytest.raises(AutotaskUnavailableError):
            await client.get_company(2)
        with pytest.raises(AutotaskAPIError) as excinfo:
            await client.get_company(3)
        assert excinfo.value.status_code == 500
        with pytest.raises(AutotaskAuthError):
            await client.get_company(4)
        with pytest.raises(AutotaskNotFoundError):
            await client.get_company(5)

    asyncio.run(run())


def test_transport_failure_is_an_api_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = AutotaskClient(
        make_settings(autotask_api_url=ZONE_BASE), transport=httpx.MockTransport(handler)
    )
    tracker = ApiCallTracker("test", "1")

    with pytest.raises(AutotaskAPIError):
        asyncio.run(client.get_company(7, tracker=tracker))
    assert tracker.get_summary()["api_calls"] == 1


def test_query_follows_next_page_url():
    next_url = f"{ZONE_BASE}/V1.0/Companies/query/next?paging=abc"

    def first_page(request):
        body = json.loads(request.content)
        assert body["filter"] == [{"op": "gte", "field": "id", "value": 0}]
        assert "MaxRecords" not in body
        return httpx.Response(200, json={
            "items": [{"id": 1}, {"id": 2}],
            "pageDetails": {"count": 2, "nextPageUrl": next_url},
        })

    fake = FakeAutotask({
        ("POST", "/ATServicesRest/V1.0/Companies/query"): first_page,
        ("GET", "/ATServicesRest/V1.0/Companies/query/next"): httpx.Response(200, json={
            "items": [{"id": 3}],
            "pageDetails": {"count": 1, "nextPageUrl": None},
        }),
    })
    client = make_client(fake, autotask_api_url=ZONE_BASE)
    tracker = ApiCallTracker("test", "1")

    items = asyncio.run(client.search_companies(tracker=tracker))

    assert [item["id"] for item in items] == [1, 2, 3]
    assert tracker.get_summary()["api_calls"] == 2


def test_query_stops_at_max_records():
    def page(request):
        body = json.loads(request.content)
        assert body["MaxRecords"] == 2
        assert body["filter"] == [build_filter("companyName", "contains", "Acme")]
        return httpx.Response(200, json={
            "items": [{"id": 1}, {"id": 2}, {"id": 3}],
            "pageDetails": {"nextPageUrl": f"{ZONE_BASE}/V1.0/Companies/query/next"},
        })

    fake = FakeAutotask({("POST", "/ATServicesRest/V1.0/Companies/query"): page})
    client = make_client(fake, autotask_api_url=ZONE_BASE)

    items = asyncio.run(client.search_companies(
        [build_filter("companyName", "contains", "Acme")], max_records=2
    ))

    assert [item["id"] for item in items] == [1, 2]
    assert len(fake.requests) == 1


def test_connection_check_reports_failure_without_raising():
    fake = FakeAutotask({
        ("POST", "/ATServicesRest/V1.0/Companies/query"): httpx.Response(401, text="denied"),
    })
    client = make_client(fake, autotask_api_url=ZONE_BASE)

    async def run():
        failed = await client.test_connection()
        fake.routes[("POST", "/ATServicesRest/V1.0/Companies/query")] = httpx.Response(
            200, json={"items": [{"id": 1}], "pageDetails": {}}
        )
        ok = await client.test_connection()
        await client.aclose()
        return failed, ok

    assert asyncio.run(run()) == (False, True)


def test_non_json_body_is_an_api_error():
    fake = FakeAutotask({
        ("GET", "/ATServicesRest/V1.0/Companies/1"): httpx.Response(200, content=b"<html>oops</html>"),
    })
    client = make_client(fake, autotask_api_url=ZONE_BASE)

    with pytest.raises(AutotaskAPIError) as excinfo:
        asyncio.run(client.get_entity("Companies", 1))
    assert excinfo.value.status_code == 200


def test_non_json_zone_response_is_an_api_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>gateway</html>")

    client = AutotaskClient(make_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(AutotaskAPIError):
        asyncio.run(client.get_company(7))


def make_credentials(name):
    return AutotaskCredentials(username=f"{name}@acme.com", secret="s", integration_code="CODE")


def test_zone_discovery_is_serialized_per_tenant_only():
    state = {}
    zone_users = []

    async def handler(request):
        user = request.url.params["user"]
        zone_users.append(user)
        if user == "slow@acme.com":
            await state["release"].wait()
        return httpx.Response(200, json={"url": f"{ZONE_BASE}/"})

    client = AutotaskClient(make_settings(), transport=httpx.MockTransport(handler))

    async def run():
        state["release"] = asyncio.Event()
        slow = [asyncio.create_task(client.get_base_url(make_credentials("slow"))) for _ in range(2)]
        await asyncio.sleep(0.01)
        fast = await asyncio.wait_for(client.get_base_url(make_credentials("fast")), timeout=1)
        slow_pending = not any(task.done() for task in slow)
        state["release"].set()
        slow_bases = await asyncio.gather(*slow)
        await client.aclose()
        return fast, slow_pending, slow_bases

    fast, slow_pending, slow_bases = asyncio.run(run())
    assert fast == f"{ZONE_BASE}/V1.0"
    assert slow_pending
    assert slow_bases == [f"{ZONE_BASE}/V1.0"] * 2
    assert zone_users.count("slow@acme.com") == 1
    assert zone_users.count("fast@acme.com") == 1
