"""Decide between creating and updating an identity and compute the minimal diff."""
from __future__ import annotations

import enum
import logging
import re
import unicodedata
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set, Tuple

from .errors import DirectoryUnavailableError, IdentifierExhaustedError
from .models import (
    ATTRIBUTE_FIELDS,
    AttributeChange,
    CurrentState,
    DesiredState,
    Diff,
    Mode,
    UserRequest,
    sorted_tuple,
)
from .policy import PolicyTable
from .stores import IdentityStore, StoreError

if TYPE_CHECKING:
    from .console import OperatorConsole


logger = logging.getLogger(__name__)

MAX_IDENTIFIER_CANDIDATES = 10


class NameChoice(str, enum.Enum):
    KEEP_EXISTING = "keep"
    USE_NEW = "new"
    OTHER = "other"


@dataclass(frozen=True)
class NameConflict:
    field: str
    existing: str
    supplied: str

    @property
    def label(self) -> str:
        return "first name" if self.field == "first_name" else "last name"


@dataclass
class Reconciliation:
    request: UserRequest
    mode: Mode
    current: Optional[CurrentState]
    desired: DesiredState
    diff: Diff


def _slugify_name(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]", "", ascii_value.lower())


def candidate_identifiers(
    first_name: str,
    last_name: str,
    domain: str,
    limit: int = MAX_IDENTIFIER_CANDIDATES,
) -> Iterator[str]:
    """Yield UPN candidates: first.last, flast, then first.last2, first.last3, ..."""

    first = _slugify_name(first_name)
    last = _slugify_name(last_name)
    if not first and not last:
        raise ValueError("A first or last name is required to derive an identifier.")
    base = ".".join(part for part in (first, last) if part)

    aliases: List[str] = [base]
    if first and last:
        aliases.append(f"{first[0]}{last}")
    suffix = 2
    while len(aliases) < limit:
        aliases.append(f"{base}{suffix}")
        suffix += 1

    seen: set[str] = set()
    for alias in aliases[:limit]:
        if alias in seen:
            continue
        seen.add(alias)
        yield f"{alias}@{domain}"


def apply_name_choice(conflict: NameConflict, choice: NameChoice, other: Optional[str] = None) -> str:
    if choice is NameChoice.KEEP_EXISTING:
        return conflict.existing
    if choice is NameChoice.USE_NEW:
        return conflict.supplied
    cleaned = (other or "").strip()
    if not cleaned:
        raise ValueError(f"A replacement {conflict.label} is required.")
    return cleaned


def name_conflicts(request: UserRequest, current: CurrentState) -> List[NameConflict]:
    conflicts: List[NameConflict] = []
    pairs = (
        ("first_name", "givenName", request.first_name),
        ("last_name", "surname", request.last_name),
    )
    for field_name, attribute, supplied in pairs:
        existing = str(current.attributes.get(attribute) or "").strip()
        if existing and existing != supplied:
            conflicts.append(NameConflict(field=field_name, existing=existing, supplied=supplied))
    return conflicts


def managed_memberships(current: CurrentState, policy: PolicyTable) -> Set[str]:
    """Current memberships the policy manages, spelled the way the policy spells them."""

    spelling = {group.casefold(): group for group in policy.managed_groups()}
    return {
        spelling[group.casefold()] for group in current.groups if group.casefold() in spelling
    }


def compute_diff(
    current: Optional[CurrentState],
    desired: DesiredState,
    policy: PolicyTable,
) -> Diff:
    """Compute the changes that move ``current`` to ``desired``.

    Attributes with an empty desired value are left untouched. Group changes
    are limited to the groups the policy manages; license changes to the
    policy's direct SKU.
    """

    _check_singleton_categories(desired, policy)

    diff = Diff(upn=desired.upn, display_name=desired.display_name)

    if current is None:
        diff.attribute_changes = [
            AttributeChange(name=key, old=None, new=desired.attributes[key])
            for key in ATTRIBUTE_FIELDS
            if desired.attributes.get(key)
        ]
        diff.usage_location = desired.usage_location
        diff.manager_upn = desired.manager_upn
        diff.license_adds = list(sorted_tuple(desired.licenses))
        diff.group_adds = list(sorted_tuple(desired.groups))
        if desired.mailing_list:
            diff.mailing_list_add = desired.mailing_list_name
    else:
        for key in ATTRIBUTE_FIELDS:
            wanted = desired.attributes.get(key) or ""
            existing = current.attributes.get(key) or ""
            if wanted and wanted != existing:
                diff.attribute_changes.append(
                    AttributeChange(name=key, old=existing or None, new=wanted)
                )

        if desired.usage_location and desired.usage_location != current.usage_location:
            diff.usage_location = desired.usage_location
        if desired.manager_upn and desired.manager_upn.lower() != (current.manager_upn or "").lower():
            diff.manager_upn = desired.manager_upn

        managed_skus = {policy.direct_license_sku}
        current_licenses = set(current.licenses) & managed_skus
        diff.license_adds = list(sorted_tuple(set(desired.licenses) - current_licenses))
        diff.license_removes = list(sorted_tuple(current_licenses - set(desired.licenses)))

        current_groups = managed_memberships(current, policy)
        diff.group_adds = list(sorted_tuple(set(desired.groups) - current_groups))
        diff.group_removes = list(sorted_tuple(current_groups - set(desired.groups)))

        held = {group.casefold() for group in current.groups}
        on_list = current.on_mailing_list or (desired.mailing_list_name or "").casefold() in held
        if desired.mailing_list and not on_list:
            diff.mailing_list_add = desired.mailing_list_name

    if desired.license_group and desired.license_group in diff.group_adds:
        diff.license_group = desired.license_group
        diff.license_group_sku = policy.license_group_sku
    return diff


def _check_singleton_categories(desired: DesiredState, policy: PolicyTable) -> None:
    seen: Dict[str, str] = {}
    for group in sorted_tuple(desired.groups):
        category = policy.category_of(group)
        if not category:
            continue
        if category in seen:
            raise ValueError(
                f"Only one '{category}' group may be assigned ({seen[category]}, {group})."
            )
        seen[category] = group


class IdentityReconciler:
    """Look up the target identity and compute the diff against policy."""

    def __init__(
        self,
        policy: PolicyTable,
        directory: IdentityStore,
        console: "OperatorConsole",
        domain: str,
        default_usage_location: Optional[str] = None,
        max_candidates: int = MAX_IDENTIFIER_CANDIDATES,
    ) -> None:
        if not domain:
            raise ValueError("A UPN domain is required.")
        self.policy = policy
        self.directory = directory
        self.console = console
        self.domain = domain.strip().lstrip("@")
        self.default_usage_location = (default_usage_location or "").strip().upper() or None
        self.max_candidates = max_candidates

    def reconcile(self, request: UserRequest) -> Reconciliation:
        upn, current = self._select_identity(request)
        mode = Mode.UPDATE if current else Mode.CREATE
        logger.info("Reconciling %s in %s mode.", upn, mode.value)

        if current:
            request = self.reconcile_names(request, current)

        manager_upn, notes = self._resolve_manager(request.manager)
        desired = self.desired_state(request, upn, manager_upn, current)
        diff = compute_diff(current, desired, self.policy)
        if notes:
            diff.manager_unresolved = request.manager
            diff.notes.extend(notes)
        return Reconciliation(request=request, mode=mode, current=current, desired=desired, diff=diff)

    def _select_identity(self, request: UserRequest) -> Tuple[str, Optional[CurrentState]]:
        for upn in candidate_identifiers(
            request.first_name, request.last_name, self.domain, self.max_candidates
        ):
            current = self._lookup(upn)
            if current is None:
                return upn, None
            if self.console.confirm_update(upn, current):
                return upn, current
            logger.info("Operator declined to update %s; trying the next identifier.", upn)
        raise IdentifierExhaustedError(
            f"No usable identifier found for {request.display_name} "
            f"after {self.max_candidates} candidates."
        )

    def _lookup(self, upn: str) -> Optional[CurrentState]:
        try:
            return self.directory.get_user(upn)
        except StoreError as exc:
            raise DirectoryUnavailableError(f"Unable to look up {upn}: {exc}") from exc

    def reconcile_names(self, request: UserRequest, current: CurrentState) -> UserRequest:
        """Ask the operator which name wins wherever the stored name differs."""

        updates: Dict[str, str] = {}
        for conflict in name_conflicts(request, current):
            while True:
                choice, other = self.console.choose_name(conflict)
                try:
                    updates[conflict.field] = apply_name_choice(conflict, choice, other)
                    break
                except ValueError as exc:
                    logger.info("Invalid name choice for %s: %s", conflict.label, exc)
        if not updates:
            return request
        return replace(request, **updates)

    def _resolve_manager(self, query: Optional[str]) -> Tuple[Optional[str], List[str]]:
        if not query:
            return None, []
        original = query
        while query:
            try:
                found = self.directory.find_user(query)
            except StoreError as exc:
                raise DirectoryUnavailableError(f"Unable to look up manager {query}: {exc}") from exc
            if found:
                return found, []
            logger.warning("Manager '%s' was not found.", query)
            query = self.console.retry_manager(query)
        note = f"Manager '{original}' could not be resolved; manager was not set."
        return None, [note]

    def desired_state(
        self,
        request: UserRequest,
        upn: str,
        manager_upn: Optional[str],
        current: Optional[CurrentState],
    ) -> DesiredState:
        role_groups: List[str] = []
        for category, members in self.policy.role_group_categories.items():
            choice = request.role_groups.get(category)
            if choice:
                matched = [member for member in members if member.lower() == choice.lower()]
                if not matched:
                    raise ValueError(f"'{choice}' is not a valid {category} group.")
                role_groups.append(matched[0])
            elif current:
                held = [
                    group
                    for group in sorted_tuple(managed_memberships(current, self.policy))
                    if group in members
                ]
                if held:
                    role_groups.append(held[0])

        usage_location = self.default_usage_location
        if current and current.usage_location and len(current.usage_location) == 2:
            usage_location = current.usage_location

        seed = DesiredState(
            upn=upn,
            display_name=request.display_name,
            attributes=request.attributes(),
            usage_location=usage_location,
            manager_upn=manager_upn,
            groups=frozenset(role_groups),
        )
        return self.policy.resolve(request.department, seed)


__all__ = [
    "IdentityReconciler",
    "NameChoice",
    "NameConflict",
    "Reconciliation",
    "apply_name_choice",
    "candidate_identifiers",
    "compute_diff",
    "managed_memberships",
    "name_conflicts",
]
