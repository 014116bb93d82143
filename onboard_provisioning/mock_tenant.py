"""YAML-backed tenant emulator used for ``mock://`` runs and tests."""
from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import ATTRIBUTE_FIELDS, CurrentState
from .stores import SeatCounts, StoreError, StoreUnavailableError


logger = logging.getLogger(__name__)

DEFAULT_MOCK_TEMPLATE_PATH = Path("data/mock_tenant.example.yaml")


def ensure_mock_data(path: Path, template_path: Optional[Path] = None) -> Path:
    """Create the working tenant file from the example so runs never edit the template."""

    if path.exists():
        return path
    template = Path(template_path) if template_path is not None else DEFAULT_MOCK_TEMPLATE_PATH
    if not template.exists():
        raise StoreError(
            f"Mock tenant file '{path}' does not exist and template '{template}' was not found."
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, path)
    logger.info("Created mock tenant data %s from %s.", path, template)
    return path


class MockTenant:
    """In-memory tenant implementing every store the executor drives.

    A mailbox is provisioned ``mailbox_delay_checks`` existence checks after
    the user first receives a license (directly or through a group that
    grants one). A negative delay means the mailbox never appears.
    """

    def __init__(
        self,
        data_file: Optional[Path] = None,
        data: Optional[Dict[str, Any]] = None,
        mailbox_delay_checks: Optional[int] = None,
    ) -> None:
        self.data_file = data_file
        self.unavailable = False
        self._data: Dict[str, Any] = {
            "skus": [],
            "users": [],
            "groups": [],
            "distribution_lists": [],
        }
        if data is not None:
            self._data.update(data)
        else:
            self._load()
        self._data.setdefault("skus", [])
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])
        self._data.setdefault("distribution_lists", [])
        if mailbox_delay_checks is not None:
            self._data["mailbox_delay_checks"] = mailbox_delay_checks
        self._data.setdefault("mailbox_delay_checks", 1)

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            self._data.update(loaded)

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    def _check_available(self) -> None:
        if self.unavailable:
            raise StoreUnavailableError("Mock tenant is unavailable.")

    # ------------------------------------------------------------------ #
    # Lookups                                                            #
    # ------------------------------------------------------------------ #
    def _user(self, upn: str) -> Optional[Dict[str, Any]]:
        lowered = (upn or "").strip().lower()
        for user in self._data["users"]:
            if str(user.get("upn") or "").lower() == lowered:
                return user
        return None

    def _require_user(self, upn: str) -> Dict[str, Any]:
        user = self._user(upn)
        if not user:
            raise StoreError(f"User '{upn}' was not found.")
        return user

    def _group(self, group_id: str) -> Dict[str, Any]:
        for group in self._data["groups"]:
            if str(group.get("id")) == group_id:
                return group
        raise StoreError(f"Group '{group_id}' was not found.")

    def _sku(self, sku: str) -> Optional[Dict[str, Any]]:
        lowered = sku.strip().lower()
        for entry in self._data["skus"]:
            if str(entry.get("sku") or "").lower() == lowered:
                return entry
        return None

    def _distribution_list(self, name: str) -> Optional[Dict[str, Any]]:
        lowered = name.strip().lower()
        for entry in self._data["distribution_lists"]:
            if str(entry.get("name") or "").lower() == lowered:
                return entry
        return None

    def _memberships(self, upn: str) -> List[str]:
        lowered = upn.lower()
        names = [
            str(group.get("name"))
            for group in self._data["groups"]
            if lowered in {str(member).lower() for member in group.get("members") or []}
        ]
        names.extend(
            str(entry.get("name"))
            for entry in self._data["distribution_lists"]
            if lowered in {str(member).lower() for member in entry.get("members") or []}
        )
        return names

    def _consume_seat(self, sku: str) -> None:
        entry = self._sku(sku)
        if not entry:
            raise StoreError(f"License SKU '{sku}' is not subscribed in this tenant.")
        if int(entry.get("consumed") or 0) >= int(entry.get("total") or 0):
            raise StoreError(f"No available seats for '{sku}'.")
        entry["consumed"] = int(entry.get("consumed") or 0) + 1

    def _release_seat(self, sku: str) -> None:
        entry = self._sku(sku)
        if entry:
            entry["consumed"] = max(0, int(entry.get("consumed") or 0) - 1)

    def _start_mailbox(self, user: Dict[str, Any]) -> None:
        if user.get("mailbox") or "mailbox_checks_remaining" in user:
            return
        user["mailbox_checks_remaining"] = int(self._data.get("mailbox_delay_checks", 1))

    # ------------------------------------------------------------------ #
    # Identity store                                                     #
    # ------------------------------------------------------------------ #
    def get_user(self, upn: str) -> Optional[CurrentState]:
        self._check_available()
        user = self._user(upn)
        if not user:
            return None
        return CurrentState.from_dict(
            {
                "upn": user["upn"],
                "object_id": user.get("object_id"),
                "attributes": user.get("attributes") or {},
                "usage_location": user.get("usage_location"),
                "manager_upn": user.get("manager_upn"),
                "licenses": user.get("licenses") or [],
                "groups": self._memberships(user["upn"]),
            }
        )

    def find_user(self, query: str) -> Optional[str]:
        self._check_available()
        lowered = (query or "").strip().lower()
        if not lowered:
            return None
        for user in self._data["users"]:
            mail = str((user.get("attributes") or {}).get("mail") or "").lower()
            if lowered in (str(user.get("upn") or "").lower(), mail):
                return str(user["upn"])
        return None

    def create_user(
        self,
        upn: str,
        display_name: str,
        attributes: Mapping[str, Optional[str]],
        password: Optional[str],
    ) -> str:
        self._check_available()
        if self._user(upn):
            raise StoreError(f"User '{upn}' already exists.")
        if not password:
            raise StoreError("A temporary password is required to create a user.")
        attrs = {key: str(attributes.get(key) or "") for key in ATTRIBUTE_FIELDS}
        attrs["displayName"] = display_name
        object_id = str(uuid.uuid4())
        self._data["users"].append(
            {
                "upn": upn,
                "object_id": object_id,
                "attributes": attrs,
                "usage_location": None,
                "manager_upn": None,
                "licenses": [],
                "mailbox": False,
            }
        )
        self._save()
        return object_id

    def update_user(self, upn: str, attributes: Mapping[str, Optional[str]]) -> None:
        self._check_available()
        user = self._require_user(upn)
        attrs = user.setdefault("attributes", {})
        for key, value in attributes.items():
            if value is not None:
                attrs[key] = value
        self._save()

    def set_usage_location(self, upn: str, location: str) -> None:
        self._check_available()
        self._require_user(upn)["usage_location"] = location
        self._save()

    def set_manager(self, upn: str, manager_upn: str) -> None:
        self._check_available()
        user = self._require_user(upn)
        manager = self._require_user(manager_upn)
        user["manager_upn"] = manager["upn"]
        self._save()

    # ------------------------------------------------------------------ #
    # License store                                                      #
    # ------------------------------------------------------------------ #
    def seat_counts(self, sku: str) -> Optional[SeatCounts]:
        self._check_available()
        entry = self._sku(sku)
        if not entry:
            return None
        return SeatCounts(
            sku=str(entry["sku"]),
            total=int(entry.get("total") or 0),
            consumed=int(entry.get("consumed") or 0),
        )

    def assign_license(self, upn: str, sku: str) -> None:
        self._check_available()
        user = self._require_user(upn)
        if not user.get("usage_location"):
            raise StoreError(f"User '{upn}' has no usage location; licenses cannot be assigned.")
        licenses = user.setdefault("licenses", [])
        if sku in licenses:
            return
        self._consume_seat(sku)
        licenses.append(sku)
        self._start_mailbox(user)
        self._save()

    def remove_license(self, upn: str, sku: str) -> None:
        self._check_available()
        user = self._require_user(upn)
        licenses = user.setdefault("licenses", [])
        if sku in licenses:
            licenses.remove(sku)
            self._release_seat(sku)
            self._save()

    # ------------------------------------------------------------------ #
    # Group store                                                        #
    # ------------------------------------------------------------------ #
    def find_group(self, name: str) -> Optional[str]:
        self._check_available()
        lowered = (name or "").strip().lower()
        for group in self._data["groups"]:
            if str(group.get("name") or "").lower() == lowered:
                return str(group.get("id"))
        return None

    def list_members(self, group_id: str) -> List[str]:
        self._check_available()
        return [str(member) for member in self._group(group_id).get("members") or []]

    def add_member(self, group_id: str, upn: str) -> None:
        self._check_available()
        user = self._require_user(upn)
        group = self._group(group_id)
        members = group.setdefault("members", [])
        if user["upn"] in members:
            return
        granted = group.get("grants_license")
        if granted:
            if not user.get("usage_location"):
                raise StoreError(f"User '{upn}' has no usage location; group licensing failed.")
            self._consume_seat(str(granted))
            self._start_mailbox(user)
        members.append(user["upn"])
        self._save()

    def remove_member(self, group_id: str, upn: str) -> None:
        self._check_available()
        group = self._group(group_id)
        members = group.setdefault("members", [])
        lowered = upn.lower()
        kept = [member for member in members if str(member).lower() != lowered]
        if len(kept) != len(members):
            group["members"] = kept
            if group.get("grants_license"):
                self._release_seat(str(group["grants_license"]))
            self._save()

    # ------------------------------------------------------------------ #
    # Mailbox store                                                      #
    # ------------------------------------------------------------------ #
    def mailbox_exists(self, upn: str) -> bool:
        self._check_available()
        user = self._user(upn)
        if not user:
            return False
        if user.get("mailbox"):
            return True
        remaining = user.get("mailbox_checks_remaining")
        if remaining is None or int(remaining) < 0:
            return False
        if int(remaining) <= 0:
            user["mailbox"] = True
            user.pop("mailbox_checks_remaining", None)
            self._save()
            return True
        user["mailbox_checks_remaining"] = int(remaining) - 1
        return False

    def add_to_distribution_list(self, list_name: str, upn: str) -> None:
        self._check_available()
        user = self._require_user(upn)
        if not user.get("mailbox"):
            raise StoreError(f"User '{upn}' has no mailbox yet.")
        entry = self._distribution_list(list_name)
        if not entry:
            raise StoreError(f"Distribution list '{list_name}' was not found.")
        members = entry.setdefault("members", [])
        if user["upn"] not in members:
            members.append(user["upn"])
            self._save()


__all__ = ["MockTenant"]
