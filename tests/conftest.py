from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from onboard_provisioning.mock_tenant import MockTenant
from onboard_provisioning.models import CurrentState
from onboard_provisioning.policy import DepartmentPolicy, PolicyTable
from onboard_provisioning.reconciler import NameChoice, NameConflict


DOMAIN = "contoso.com"

BASE_TENANT: Dict[str, Any] = {
    "mailbox_delay_checks": 1,
    "skus": [{"sku": "O365_BUSINESS_PREMIUM", "total": 25, "consumed": 19}],
    "users": [
        {
            "upn": "dana.manager@contoso.com",
            "object_id": "manager-id",
            "attributes": {
                "givenName": "Dana",
                "surname": "Manager",
                "displayName": "Dana Manager",
                "mail": "dana@contoso.com",
            },
            "usage_location": "US",
            "licenses": ["O365_BUSINESS_PREMIUM"],
            "mailbox": True,
        },
    ],
    "groups": [
        {"id": "g-all", "name": "All Company", "members": []},
        {"id": "g-mfa", "name": "MFA Enrollment", "members": []},
        {
            "id": "g-onedrive",
            "name": "OneDrive Folder Redirect",
            "grants_license": "O365_BUSINESS_PREMIUM",
            "members": [],
        },
        {"id": "g-sales", "name": "Sales Team", "members": []},
        {"id": "g-warehouse", "name": "Warehouse Floor", "members": []},
        {"id": "g-p1", "name": "Printer-1F", "members": []},
        {"id": "g-p2", "name": "Printer-2F", "members": []},
        {"id": "g-p3", "name": "Printer-3F", "members": []},
        {"id": "g-other", "name": "Project Phoenix", "members": []},
    ],
    "distribution_lists": [{"name": "All Staff", "members": []}],
}

JANE = {
    "upn": "jane.doe@contoso.com",
    "object_id": "jane-id",
    "attributes": {
        "givenName": "Jane",
        "surname": "Doe",
        "displayName": "Jane Doe",
        "jobTitle": "Account Executive",
        "department": "Sales",
        "mobilePhone": "",
        "employeeType": "Employee",
    },
    "usage_location": "US",
    "manager_upn": "dana.manager@contoso.com",
    "licenses": [],
    "mailbox": True,
}
JANE_GROUPS = ("All Company", "MFA Enrollment", "OneDrive Folder Redirect", "Sales Team", "Printer-3F", "Project Phoenix")


class FakeClock:
    """Monotonic clock stand-in whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedConsole:
    """Operator console that replays scripted answers."""

    def __init__(
        self,
        confirm_answers: Optional[List[bool]] = None,
        name_choices: Optional[List[Tuple[NameChoice, Optional[str]]]] = None,
        manager_retries: Optional[List[Optional[str]]] = None,
        password: str = "Temp#Pass1234",
    ) -> None:
        self.confirm_answers = list(confirm_answers or [])
        self.name_choices = list(name_choices or [])
        self.manager_retries = list(manager_retries or [])
        self.password = password
        self.confirmed: List[str] = []
        self.conflicts: List[NameConflict] = []

    def confirm_update(self, upn: str, current: CurrentState) -> bool:
        self.confirmed.append(upn)
        return self.confirm_answers.pop(0) if self.confirm_answers else True

    def choose_name(self, conflict: NameConflict) -> Tuple[NameChoice, Optional[str]]:
        self.conflicts.append(conflict)
        return self.name_choices.pop(0) if self.name_choices else (NameChoice.KEEP_EXISTING, None)

    def retry_manager(self, query: str) -> Optional[str]:
        return self.manager_retries.pop(0) if self.manager_retries else None

    def choose_role_group(self, category, options, current):
        return None

    def temporary_password(self) -> str:
        return self.password


MUTATORS = (
    "create_user",
    "update_user",
    "set_usage_location",
    "set_manager",
    "assign_license",
    "remove_license",
    "add_member",
    "remove_member",
    "add_to_distribution_list",
)


class RecordingTenant(MockTenant):
    """Mock tenant that records the name of every mutating call."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.mutations: List[Tuple[str, Tuple[Any, ...]]] = []

    def __getattribute__(self, name: str) -> Any:
        attribute = super().__getattribute__(name)
        if name in MUTATORS:
            mutations = super().__getattribute__("mutations")

            def _recorded(*args: Any, **kwargs: Any) -> Any:
                mutations.append((name, args))
                return attribute(*args, **kwargs)

            return _recorded
        return attribute


def build_tenant_data(with_jane: bool = False, jane_groups=JANE_GROUPS) -> Dict[str, Any]:
    data = copy.deepcopy(BASE_TENANT)
    if with_jane:
        data["users"].append(copy.deepcopy(JANE))
        for group in data["groups"]:
            if group["name"] in jane_groups:
                group["members"].append(JANE["upn"])
        data["distribution_lists"][0]["members"].append(JANE["upn"])
    return data


@pytest.fixture()
def policy() -> PolicyTable:
    return PolicyTable(
        departments={
            "sales": DepartmentPolicy(name="Sales", groups=["Sales Team"]),
            "warehouse": DepartmentPolicy(name="Warehouse", groups=["Warehouse Floor"]),
        }
    )


@pytest.fixture()
def tenant() -> RecordingTenant:
    return RecordingTenant(data=build_tenant_data())


@pytest.fixture()
def tenant_with_jane() -> RecordingTenant:
    return RecordingTenant(data=build_tenant_data(with_jane=True))


@pytest.fixture()
def console() -> ScriptedConsole:
    return ScriptedConsole()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
