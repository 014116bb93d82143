from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import msal
import pytest
import requests

from onboard_provisioning.config import GraphConfig
from onboard_provisioning.errors import LicenseSeatsExhaustedError
from onboard_provisioning.executor import ProvisioningExecutor
from onboard_provisioning.graph_client import (
    GRAPH_BASE_URL,
    GraphConfigurationError,
    GraphError,
    GraphTenant,
)
from onboard_provisioning.models import Diff
from onboard_provisioning.stores import StoreUnavailableError


JANE = "jane.doe@contoso.com"
SKUS = {
    "value": [
        {
            "skuId": "sku-premium",
            "skuPartNumber": "O365_BUSINESS_PREMIUM",
            "prepaidUnits": {"enabled": 25},
            "consumedUnits": 19,
        },
        {
            "skuId": "sku-e5",
            "skuPartNumber": "SPE_E5",
            "prepaidUnits": {"enabled": 5},
            "consumedUnits": 5,
        },
    ]
}


class FakeResponse:
    def __init__(self, status_code: int, payload: Optional[Dict[str, Any]] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self) -> Dict[str, Any]:
        if self._payload is None:
            raise ValueError("No JSON body.")
        return self._payload


def _graph_error(status: int, code: str) -> FakeResponse:
    return FakeResponse(status, {"error": {"code": code, "message": f"{code} raised"}})


class FakeConfidentialClient:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs

    def acquire_token_silent(self, scopes: List[str], account: Any = None) -> None:
        return None

    def acquire_token_for_client(self, scopes: List[str]) -> Dict[str, str]:
        return {"access_token": "token"}


class GraphStub:
    """Routes Graph calls to canned responses keyed by (method, path)."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Any] = {("GET", "/subscribedSkus"): FakeResponse(200, SKUS)}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        path = url[len(GRAPH_BASE_URL):] if url.startswith(GRAPH_BASE_URL) else url
        self.calls.append((method, path, kwargs))
        response = self.routes.get((method, path))
        if isinstance(response, Exception):
            raise response
        return response or _graph_error(404, "Request_ResourceNotFound")


@pytest.fixture()
def stub(monkeypatch: pytest.MonkeyPatch) -> GraphStub:
    stub = GraphStub()

    def request(session: requests.Session, method: str, url: str, **kwargs: Any) -> FakeResponse:
        return stub.request(method, url, **kwargs)

    monkeypatch.setattr(requests.Session, "request", request)
    monkeypatch.setattr(msal, "ConfidentialClientApplication", FakeConfidentialClient)
    return stub


@pytest.fixture()
def graph(stub: GraphStub, tmp_path: Path) -> GraphTenant:
    config = GraphConfig(
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        sku_cache_file=tmp_path / "skus.json",
    )
    return GraphTenant(config)


def test_missing_credentials_are_rejected() -> None:
    with pytest.raises(GraphConfigurationError):
        GraphTenant(GraphConfig())


def test_seat_counts_use_enabled_and_consumed_units(graph: GraphTenant) -> None:
    counts = graph.seat_counts("o365_business_premium")

    assert counts.sku == "O365_BUSINESS_PREMIUM"
    assert (counts.total, counts.consumed, counts.available) == (25, 19, 6)
    assert graph.seat_counts("NOT_SUBSCRIBED") is None


def test_full_sku_stops_preflight(graph: GraphTenant) -> None:
    executor = ProvisioningExecutor(graph, graph, graph, graph)

    with pytest.raises(LicenseSeatsExhaustedError) as excinfo:
        executor.preflight(Diff(upn=JANE, license_adds=["SPE_E5"]))
    assert (excinfo.value.total, excinfo.value.consumed) == (5, 5)


def test_get_user_maps_direct_licenses_groups_and_manager(stub: GraphStub, graph: GraphTenant) -> None:
    stub.routes[("GET", f"/users/{JANE}")] = FakeResponse(
        200,
        {
            "id": "jane-id",
            "userPrincipalName": JANE,
            "givenName": "Jane",
            "surname": "Doe",
            "usageLocation": "US",
            "licenseAssignmentStates": [
                {"skuId": "sku-premium", "assignedByGroup": None},
                {"skuId": "sku-e5", "assignedByGroup": "group-onedrive"},
            ],
        },
    )
    stub.routes[("GET", f"/users/{JANE}/manager")] = FakeResponse(
        200, {"userPrincipalName": "dana.manager@contoso.com"}
    )
    stub.routes[("GET", "/users/jane-id/memberOf")] = FakeResponse(
        200,
        {
            "value": [{"displayName": "All Company"}, {"displayName": None}],
            "@odata.nextLink": f"{GRAPH_BASE_URL}/users/jane-id/memberOf?$skiptoken=page2",
        },
    )
    stub.routes[("GET", "/users/jane-id/memberOf?$skiptoken=page2")] = FakeResponse(
        200, {"value": [{"displayName": "All Staff"}]}
    )

    current = graph.get_user(JANE)

    assert current.object_id == "jane-id"
    assert current.licenses == frozenset({"O365_BUSINESS_PREMIUM"})
    assert current.groups == frozenset({"All Company", "All Staff"})
    assert current.manager_upn == "dana.manager@contoso.com"
    assert current.usage_location == "US"
    assert current.attributes["givenName"] == "Jane"


def test_unknown_user_is_none(graph: GraphTenant) -> None:
    assert graph.get_user("nobody@contoso.com") is None


@pytest.mark.parametrize(
    "response, expected",
    [
        (FakeResponse(200, {"timeZone": "UTC"}), True),
        (_graph_error(404, "ErrorItemNotFound"), False),
        (_graph_error(400, "MailboxNotEnabledForRESTAPI"), False),
    ],
)
def test_mailbox_exists_maps_missing_mailbox_to_not_ready(
    stub: GraphStub, graph: GraphTenant, response: FakeResponse, expected: bool
) -> None:
    stub.routes[("GET", f"/users/{JANE}/mailboxSettings")] = response

    assert graph.mailbox_exists(JANE) is expected


def test_other_mailbox_errors_propagate(stub: GraphStub, graph: GraphTenant) -> None:
    stub.routes[("GET", f"/users/{JANE}/mailboxSettings")] = _graph_error(500, "InternalServerError")

    with pytest.raises(GraphError) as excinfo:
        graph.mailbox_exists(JANE)
    assert excinfo.value.status_code == 500


@pytest.mark.parametrize("status", [401, 403])
def test_authorization_failures_mean_unavailable(stub: GraphStub, graph: GraphTenant, status: int) -> None:
    stub.routes[("GET", "/users")] = _graph_error(status, "Authorization_RequestDenied")

    with pytest.raises(StoreUnavailableError):
        graph.find_user(JANE)


def test_connection_errors_mean_unavailable(stub: GraphStub, graph: GraphTenant) -> None:
    stub.routes[("GET", f"/users/{JANE}")] = requests.ConnectionError("connection refused")

    with pytest.raises(StoreUnavailableError):
        graph.get_user(JANE)


def test_assign_license_resolves_part_number(stub: GraphStub, graph: GraphTenant) -> None:
    stub.routes[("POST", f"/users/{JANE}/assignLicense")] = FakeResponse(200, {"id": "jane-id"})

    graph.assign_license(JANE, "O365_BUSINESS_PREMIUM")

    method, path, kwargs = stub.calls[-1]
    assert (method, path) == ("POST", f"/users/{JANE}/assignLicense")
    assert kwargs["json"]["addLicenses"] == [{"skuId": "sku-premium", "disabledPlans": []}]


def test_list_members_follows_next_link(stub: GraphStub, graph: GraphTenant) -> None:
    stub.routes[("GET", "/groups/g-sales/members")] = FakeResponse(
        200,
        {
            "value": [{"userPrincipalName": JANE}, {"id": "device-without-upn"}],
            "@odata.nextLink": f"{GRAPH_BASE_URL}/groups/g-sales/members?$skiptoken=page2",
        },
    )
    stub.routes[("GET", "/groups/g-sales/members?$skiptoken=page2")] = FakeResponse(
        200, {"value": [{"userPrincipalName": "dana.manager@contoso.com"}]}
    )

    assert graph.list_members("g-sales") == [JANE, "dana.manager@contoso.com"]
