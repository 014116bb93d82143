"""Data models for provisioning requests, reconciliation diffs and results."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple


def _unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def normalize_person_name(raw: str) -> str:
    stripped = (raw or "").strip()
    if not stripped:
        return ""

    def _capitalize_part(part: str) -> str:
        # Mixed case such as "McDonald" is already deliberate.
        if part.islower() or part.isupper():
            return part.capitalize()
        return part

    def _capitalize_segment(segment: str) -> str:
        return "-".join(_capitalize_part(part) for part in segment.split("-"))

    return " ".join(_capitalize_segment(part) for part in stripped.split())


class Mode(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"


class StepStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ExecutionState(str, enum.Enum):
    """States an execution passes through; ``DONE`` is always reached."""

    START = "Start"
    IDENTITY_WRITTEN = "IdentityWritten"
    ATTRIBUTES_APPLIED = "AttributesApplied"
    LICENSE_APPLIED = "LicenseApplied"
    GROUPS_APPLIED = "GroupsApplied"
    MAILBOX_POLL_STARTED = "MailboxPollStarted"
    MAILBOX_READY = "MailboxReady"
    MAILBOX_TIMEOUT = "MailboxTimeout"
    LIST_UPDATED = "ListUpdated"
    LIST_SKIPPED = "ListSkipped"
    DONE = "Done"


# Directory attribute names compared by the reconciler, in the order they are reported.
ATTRIBUTE_FIELDS = (
    "givenName",
    "surname",
    "displayName",
    "jobTitle",
    "department",
    "mobilePhone",
    "employeeType",
)


@dataclass(frozen=True)
class UserRequest:
    """Operator input for a single provisioning run.

    Names are kept exactly as given; use :meth:`from_input` for typed-in
    values that still need capitalising.
    """

    first_name: str
    last_name: str
    department: str
    title: str = ""
    mobile_phone: str = ""
    employee_type: str = ""
    manager: Optional[str] = None
    role_groups: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_input(cls, first_name: str, last_name: str, department: str, **fields: Any) -> "UserRequest":
        return cls(
            first_name=normalize_person_name(first_name),
            last_name=normalize_person_name(last_name),
            department=department,
            **fields,
        )

    def __post_init__(self) -> None:
        object.__setattr__(self, "first_name", (self.first_name or "").strip())
        object.__setattr__(self, "last_name", (self.last_name or "").strip())
        object.__setattr__(self, "department", (self.department or "").strip())
        object.__setattr__(self, "title", (self.title or "").strip())
        object.__setattr__(self, "mobile_phone", (self.mobile_phone or "").strip())
        object.__setattr__(self, "employee_type", (self.employee_type or "").strip())
        manager = (self.manager or "").strip()
        object.__setattr__(self, "manager", manager or None)
        cleaned = {
            str(category).strip().lower(): str(choice).strip()
            for category, choice in dict(self.role_groups or {}).items()
            if str(choice or "").strip()
        }
        object.__setattr__(self, "role_groups", cleaned)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def attributes(self) -> Dict[str, str]:
        """Directory attributes carrying a value; blank inputs leave stored values alone."""

        values = {
            "givenName": self.first_name,
            "surname": self.last_name,
            "displayName": self.display_name,
            "jobTitle": self.title,
            "department": self.department,
            "mobilePhone": self.mobile_phone,
            "employeeType": self.employee_type,
        }
        return {key: value for key, value in values.items() if value}


@dataclass(frozen=True)
class DesiredState:
    """Target identity and entitlements computed from a request and the policy table."""

    upn: str = ""
    display_name: str = ""
    attributes: Mapping[str, str] = field(default_factory=dict)
    usage_location: Optional[str] = None
    manager_upn: Optional[str] = None
    licenses: FrozenSet[str] = frozenset()
    groups: FrozenSet[str] = frozenset()
    mailing_list: bool = False
    mailing_list_name: Optional[str] = None
    license_group: Optional[str] = None


@dataclass(frozen=True)
class CurrentState:
    """Read-only snapshot of an existing identity, fetched once per run."""

    upn: str
    object_id: Optional[str] = None
    attributes: Mapping[str, str] = field(default_factory=dict)
    usage_location: Optional[str] = None
    manager_upn: Optional[str] = None
    licenses: FrozenSet[str] = frozenset()
    groups: FrozenSet[str] = frozenset()
    on_mailing_list: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurrentState":
        attributes = data.get("attributes") or {}
        return cls(
            upn=str(data["upn"]),
            object_id=data.get("object_id") or data.get("id"),
            attributes={key: str(attributes.get(key) or "") for key in ATTRIBUTE_FIELDS},
            usage_location=data.get("usage_location") or None,
            manager_upn=data.get("manager_upn") or None,
            licenses=frozenset(_unique_preserve(data.get("licenses") or [])),
            groups=frozenset(_unique_preserve(data.get("groups") or [])),
            on_mailing_list=bool(data.get("on_mailing_list")),
        )


@dataclass(frozen=True)
class AttributeChange:
    name: str
    old: Optional[str]
    new: Optional[str]


@dataclass
class Diff:
    """Changes required to move a current identity to its desired state."""

    upn: str
    display_name: str = ""
    attribute_changes: List[AttributeChange] = field(default_factory=list)
    usage_location: Optional[str] = None
    manager_upn: Optional[str] = None
    license_adds: List[str] = field(default_factory=list)
    license_removes: List[str] = field(default_factory=list)
    group_adds: List[str] = field(default_factory=list)
    group_removes: List[str] = field(default_factory=list)
    mailing_list_add: Optional[str] = None
    license_group: Optional[str] = None
    license_group_sku: Optional[str] = None
    manager_unresolved: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def required_skus(self) -> List[str]:
        """SKUs that must have a free seat before this diff is applied."""

        skus = list(self.license_adds)
        if self.license_group and self.license_group_sku:
            skus.append(self.license_group_sku)
        return _unique_preserve(skus)

    @property
    def is_empty(self) -> bool:
        return not (
            self.attribute_changes
            or self.usage_location
            or self.manager_upn
            or self.license_adds
            or self.license_removes
            or self.group_adds
            or self.group_removes
            or self.mailing_list_add
        )

    @property
    def attributes(self) -> Dict[str, Optional[str]]:
        return {change.name: change.new for change in self.attribute_changes}

    def apply_to(self, current: CurrentState) -> CurrentState:
        """Return the state produced by applying this diff to ``current``."""

        attributes = dict(current.attributes)
        attributes.update({key: value or "" for key, value in self.attributes.items()})
        licenses = (set(current.licenses) - set(self.license_removes)) | set(self.license_adds)
        groups = (set(current.groups) - set(self.group_removes)) | set(self.group_adds)
        return CurrentState(
            upn=current.upn,
            object_id=current.object_id,
            attributes=attributes,
            usage_location=self.usage_location or current.usage_location,
            manager_upn=self.manager_upn or current.manager_upn,
            licenses=frozenset(licenses),
            groups=frozenset(groups),
            on_mailing_list=current.on_mailing_list or bool(self.mailing_list_add),
        )

    def describe(self) -> List[str]:
        lines: List[str] = []
        for change in self.attribute_changes:
            lines.append(f"set {change.name}: {change.old or '-'} -> {change.new or '-'}")
        if self.manager_upn:
            lines.append(f"set manager: {self.manager_upn}")
        if self.usage_location:
            lines.append(f"set usageLocation: {self.usage_location}")
        lines.extend(f"add license: {sku}" for sku in self.license_adds)
        lines.extend(f"remove license: {sku}" for sku in self.license_removes)
        lines.extend(f"add group: {group}" for group in self.group_adds)
        lines.extend(f"remove group: {group}" for group in self.group_removes)
        if self.mailing_list_add:
            lines.append(f"add to distribution list: {self.mailing_list_add}")
        return lines


@dataclass(frozen=True)
class StepResult:
    step: str
    status: StepStatus
    target: Optional[str] = None
    detail: Optional[str] = None
    sequence: int = 0
    timestamp: Optional[datetime] = None

    def describe(self) -> str:
        label = f"{self.step} ({self.target})" if self.target else self.step
        text = f"[{self.status.value.upper()}] {label}"
        if self.detail:
            text += f": {self.detail}"
        return text


@dataclass
class ProvisioningResult:
    """Ordered outcome log for one execution. Entries are never removed."""

    upn: str
    mode: Mode
    steps: List[StepResult] = field(default_factory=list)
    states: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.START])
    notes: List[str] = field(default_factory=list)

    def record(
        self,
        step: str,
        status: StepStatus,
        target: Optional[str] = None,
        detail: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> StepResult:
        entry = StepResult(
            step=step,
            status=status,
            target=target,
            detail=detail,
            sequence=len(self.steps),
            timestamp=timestamp,
        )
        self.steps.append(entry)
        return entry

    def transition(self, state: ExecutionState) -> None:
        self.states.append(state)

    @property
    def state(self) -> ExecutionState:
        return self.states[-1]

    @property
    def failures(self) -> List[StepResult]:
        return [step for step in self.steps if step.status is StepStatus.FAILURE]

    @property
    def warnings(self) -> List[str]:
        messages = list(self.notes)
        for step in self.steps:
            if step.status is StepStatus.FAILURE:
                messages.append(step.describe())
            elif step.status is StepStatus.SKIPPED and step.detail == "timeout":
                messages.append(f"{step.step} skipped because the mailbox was not ready in time.")
        return messages

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def find(self, step: str) -> List[StepResult]:
        return [entry for entry in self.steps if entry.step == step]

    def index_of(self, step: str) -> Optional[int]:
        for entry in self.steps:
            if entry.step == step:
                return entry.sequence
        return None

    def summary_lines(self) -> List[str]:
        lines = [f"{self.mode.value.capitalize()} {self.upn}:"]
        lines.extend(f"  {step.describe()}" for step in self.steps)
        return lines


def sorted_tuple(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted(_unique_preserve(values), key=str.casefold))


__all__ = [
    "ATTRIBUTE_FIELDS",
    "AttributeChange",
    "CurrentState",
    "DesiredState",
    "Diff",
    "ExecutionState",
    "Mode",
    "ProvisioningResult",
    "StepResult",
    "StepStatus",
    "UserRequest",
    "normalize_person_name",
    "sorted_tuple",
]
