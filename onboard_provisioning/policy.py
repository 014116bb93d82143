"""Organizational policy table mapping departments to entitlements."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from .models import DesiredState, _unique_preserve


DEFAULT_BASELINE_GROUPS = ("All Company", "MFA Enrollment")
DEFAULT_MANUAL_LICENSE_DEPARTMENTS = ("Warehouse", "Production")
DEFAULT_DIRECT_LICENSE_SKU = "O365_BUSINESS_PREMIUM"
DEFAULT_LICENSE_GROUP = "OneDrive Folder Redirect"
DEFAULT_MAILING_LIST = "All Staff"
DEFAULT_ROLE_GROUP_CATEGORIES = {"printer": ("Printer-1F", "Printer-2F", "Printer-3F")}


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@dataclass
class DepartmentPolicy:
    """Department-specific additions on top of the baseline entitlements."""

    name: str
    groups: List[str] = field(default_factory=list)
    mailing_list: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepartmentPolicy":
        return cls(
            name=str(data["name"]).strip(),
            groups=_unique_preserve(data.get("groups") or []),
            mailing_list=bool(data.get("mailing_list", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "groups": list(self.groups),
            "mailing_list": self.mailing_list,
        }


@dataclass
class PolicyTable:
    """Entitlement rules applied to every provisioned identity."""

    baseline_groups: List[str] = field(default_factory=lambda: list(DEFAULT_BASELINE_GROUPS))
    manual_license_departments: List[str] = field(
        default_factory=lambda: list(DEFAULT_MANUAL_LICENSE_DEPARTMENTS)
    )
    direct_license_sku: str = DEFAULT_DIRECT_LICENSE_SKU
    license_group: str = DEFAULT_LICENSE_GROUP
    license_group_sku: Optional[str] = DEFAULT_DIRECT_LICENSE_SKU
    mailing_list_name: Optional[str] = DEFAULT_MAILING_LIST
    default_mailing_list: bool = True
    departments: Dict[str, DepartmentPolicy] = field(default_factory=dict)
    role_group_categories: Dict[str, List[str]] = field(
        default_factory=lambda: {
            category: list(groups) for category, groups in DEFAULT_ROLE_GROUP_CATEGORIES.items()
        }
    )

    # ------------------------------------------------------------------ #
    # Lookups                                                            #
    # ------------------------------------------------------------------ #
    def department(self, name: str) -> Optional[DepartmentPolicy]:
        lowered = (name or "").strip().lower()
        for policy in self.departments.values():
            if policy.name.lower() == lowered:
                return policy
        return None

    def uses_direct_license(self, department: str) -> bool:
        lowered = (department or "").strip().lower()
        return lowered in {entry.lower() for entry in self.manual_license_departments}

    def category_of(self, group: str) -> Optional[str]:
        lowered = (group or "").strip().lower()
        for category, members in self.role_group_categories.items():
            if lowered in {member.lower() for member in members}:
                return category
        return None

    def role_groups(self, category: str) -> List[str]:
        return list(self.role_group_categories.get((category or "").strip().lower(), []))

    def managed_groups(self) -> FrozenSet[str]:
        """Every group this policy can grant; group diffs never reach outside it."""

        groups = set(self.baseline_groups)
        if self.license_group:
            groups.add(self.license_group)
        for policy in self.departments.values():
            groups.update(policy.groups)
        for members in self.role_group_categories.values():
            groups.update(members)
        return frozenset(groups)

    def required_skus(self) -> List[str]:
        return _unique_preserve([self.direct_license_sku, self.license_group_sku or ""])

    # ------------------------------------------------------------------ #
    # Resolution                                                         #
    # ------------------------------------------------------------------ #
    def resolve(self, department: str, existing: Optional[DesiredState] = None) -> DesiredState:
        """Compute the entitlements for ``department``.

        Identity fields and chosen role groups are carried over from
        ``existing``; entitlements are always recomputed. Unknown departments
        get the default tier (group-based licensing, baseline groups only).
        """

        cleaned = (department or "").strip()
        if not cleaned:
            raise ValueError("Department must not be empty.")

        dept_policy = self.department(cleaned)
        groups: List[str] = list(self.baseline_groups)
        if dept_policy:
            groups.extend(dept_policy.groups)

        licenses: List[str] = []
        license_group: Optional[str] = None
        if self.uses_direct_license(cleaned):
            licenses.append(self.direct_license_sku)
        elif self.license_group:
            license_group = self.license_group
            groups.append(self.license_group)

        base = existing or DesiredState()
        groups.extend(group for group in base.groups if self.category_of(group))

        mailing_list = dept_policy.mailing_list if dept_policy else self.default_mailing_list
        mailing_list = mailing_list and bool(self.mailing_list_name)

        return DesiredState(
            upn=base.upn,
            display_name=base.display_name,
            attributes=dict(base.attributes),
            usage_location=base.usage_location,
            manager_upn=base.manager_upn,
            licenses=frozenset(licenses),
            groups=frozenset(_unique_preserve(groups)),
            mailing_list=mailing_list,
            mailing_list_name=self.mailing_list_name if mailing_list else None,
            license_group=license_group,
        )

    # ------------------------------------------------------------------ #
    # Serialization                                                      #
    # ------------------------------------------------------------------ #
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyTable":
        defaults = cls()
        departments: Dict[str, DepartmentPolicy] = {}
        for entry in data.get("departments") or []:
            policy = DepartmentPolicy.from_dict(entry)
            departments[policy.name.lower()] = policy

        raw_categories = data.get("role_group_categories")
        if raw_categories is None:
            categories = defaults.role_group_categories
        else:
            categories = {
                str(category).strip().lower(): _unique_preserve(members or [])
                for category, members in dict(raw_categories).items()
            }

        return cls(
            baseline_groups=_unique_preserve(data.get("baseline_groups", defaults.baseline_groups)),
            manual_license_departments=_unique_preserve(
                data.get("manual_license_departments", defaults.manual_license_departments)
            ),
            direct_license_sku=str(data.get("direct_license_sku") or defaults.direct_license_sku),
            license_group=str(data.get("license_group") or defaults.license_group),
            license_group_sku=_optional_str(data.get("license_group_sku", defaults.license_group_sku)),
            mailing_list_name=_optional_str(data.get("mailing_list_name", defaults.mailing_list_name)),
            default_mailing_list=bool(data.get("default_mailing_list", True)),
            departments=departments,
            role_group_categories=categories,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_groups": list(self.baseline_groups),
            "manual_license_departments": list(self.manual_license_departments),
            "direct_license_sku": self.direct_license_sku,
            "license_group": self.license_group,
            "license_group_sku": self.license_group_sku,
            "mailing_list_name": self.mailing_list_name,
            "default_mailing_list": self.default_mailing_list,
            "departments": [policy.to_dict() for policy in self.departments.values()],
            "role_group_categories": {
                category: list(members) for category, members in self.role_group_categories.items()
            },
        }


def load_policy(path: Optional[Path]) -> PolicyTable:
    """Load the policy table from YAML, falling back to built-in defaults."""

    if path is None or not path.exists():
        return PolicyTable()

    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    return PolicyTable.from_dict(payload)


def save_policy(path: Path, policy: PolicyTable) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(policy.to_dict(), handle, sort_keys=False)


def list_department_names(policy: PolicyTable) -> List[str]:
    return sorted((entry.name for entry in policy.departments.values()), key=str.casefold)


__all__ = [
    "DepartmentPolicy",
    "PolicyTable",
    "list_department_names",
    "load_policy",
    "save_policy",
]
