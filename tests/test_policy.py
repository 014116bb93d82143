from __future__ import annotations

from pathlib import Path

import pytest

from onboard_provisioning.models import DesiredState
from onboard_provisioning.policy import PolicyTable, load_policy, save_policy


def test_warehouse_gets_direct_license_without_license_group(policy: PolicyTable) -> None:
    desired = policy.resolve("Warehouse")

    assert desired.licenses == frozenset({"O365_BUSINESS_PREMIUM"})
    assert "OneDrive Folder Redirect" not in desired.groups
    assert desired.license_group is None
    assert "Warehouse Floor" in desired.groups


def test_sales_gets_license_group_and_no_direct_license(policy: PolicyTable) -> None:
    desired = policy.resolve("Sales")

    assert "OneDrive Folder Redirect" in desired.groups
    assert desired.license_group == "OneDrive Folder Redirect"
    assert desired.licenses == frozenset()
    assert "Sales Team" in desired.groups


@pytest.mark.parametrize("department", ["Sales", "Warehouse", "Marketing"])
def test_baseline_groups_always_present(policy: PolicyTable, department: str) -> None:
    desired = policy.resolve(department)
    assert {"All Company", "MFA Enrollment"} <= desired.groups


def test_unknown_department_falls_back_to_default_tier(policy: PolicyTable) -> None:
    desired = policy.resolve("Marketing")

    assert desired.groups == frozenset({"All Company", "MFA Enrollment", "OneDrive Folder Redirect"})
    assert desired.licenses == frozenset()
    assert desired.mailing_list is True
    assert desired.mailing_list_name == "All Staff"


def test_department_matching_ignores_case(policy: PolicyTable) -> None:
    assert policy.resolve("warehouse ").licenses == frozenset({"O365_BUSINESS_PREMIUM"})


def test_empty_department_is_rejected(policy: PolicyTable) -> None:
    with pytest.raises(ValueError):
        policy.resolve("  ")


def test_existing_state_keeps_identity_and_role_groups_but_recomputes_entitlements(
    policy: PolicyTable,
) -> None:
    existing = DesiredState(
        upn="jane.doe@contoso.com",
        display_name="Jane Doe",
        attributes={"givenName": "Jane"},
        usage_location="US",
        groups=frozenset({"Printer-1F", "Sales Team"}),
        licenses=frozenset({"SOMETHING_ELSE"}),
    )

    desired = policy.resolve("Warehouse", existing)

    assert desired.upn == "jane.doe@contoso.com"
    assert desired.usage_location == "US"
    assert "Printer-1F" in desired.groups
    assert "Sales Team" not in desired.groups
    assert desired.licenses == frozenset({"O365_BUSINESS_PREMIUM"})


def test_department_can_opt_out_of_mailing_list() -> None:
    table = PolicyTable.from_dict(
        {"departments": [{"name": "Contractors", "groups": [], "mailing_list": False}]}
    )

    desired = table.resolve("Contractors")

    assert desired.mailing_list is False
    assert desired.mailing_list_name is None


def test_managed_groups_cover_every_grantable_group(policy: PolicyTable) -> None:
    managed = policy.managed_groups()

    assert {"All Company", "OneDrive Folder Redirect", "Sales Team", "Printer-2F"} <= managed
    assert "Project Phoenix" not in managed
    assert policy.category_of("printer-3f") == "printer"
    assert policy.category_of("Sales Team") is None


def test_missing_policy_file_uses_defaults(tmp_path: Path) -> None:
    table = load_policy(tmp_path / "absent.yaml")
    assert table.direct_license_sku == "O365_BUSINESS_PREMIUM"
    assert table.manual_license_departments == ["Warehouse", "Production"]


def test_policy_file_is_loaded_from_yaml(tmp_path: Path, policy: PolicyTable) -> None:
    path = tmp_path / "policy.yaml"
    save_policy(path, policy)

    loaded = load_policy(path)

    assert loaded.resolve("Sales") == policy.resolve("Sales")
    assert loaded.department("sales").groups == ["Sales Team"]
