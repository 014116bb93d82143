"""Microsoft Graph implementation of the identity, license, group and mailbox stores."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import msal
import requests

from .config import GraphConfig
from .models import ATTRIBUTE_FIELDS, CurrentState
from .stores import SeatCounts, StoreError, StoreUnavailableError


logger = logging.getLogger(__name__)

GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30
USER_SELECT = ",".join(("id", "userPrincipalName", "usageLocation", "licenseAssignmentStates") + ATTRIBUTE_FIELDS)


class GraphConfigurationError(StoreError):
    """Raised when the Graph integration is not configured."""


class GraphError(StoreError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


@dataclass(frozen=True)
class CatalogSnapshot:
    fetched_at: datetime
    skus: List[Dict[str, Any]]
    stale: bool


def _escape(value: str) -> str:
    return value.replace("'", "''")


class GraphTenant:
    """Graph client exposing the operations the provisioning workflow needs."""

    def __init__(self, config: GraphConfig) -> None:
        if not config.has_credentials:
            raise GraphConfigurationError(
                "Microsoft Graph credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._config = config
        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        with self._token_lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            error = result.get("error", "token_error")
            description = result.get("error_description", "Unable to acquire Graph token.")
            raise StoreUnavailableError(f"{error} - {description}")
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=REQUEST_TIMEOUT,
                headers=headers,
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise StoreUnavailableError(f"Microsoft Graph is unreachable: {exc}") from exc

        logger.debug("Graph %s %s -> %s", method, path, response.status_code)
        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            if response.status_code in (401, 403):
                raise StoreUnavailableError(f"{response.status_code}: {code} - {message}")
            raise GraphError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _get_or_none(self, path: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", path, **kwargs)
        except GraphError as exc:
            if exc.status_code == 404:
                return None
            raise

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        result = self._request("GET", path, params=params)
        while True:
            yield from result.get("value", [])
            next_link = result.get("@odata.nextLink")
            if not next_link:
                return
            result = self._request("GET", next_link)

    # ------------------------------------------------------------------ #
    # SKU catalog management                                             #
    # ------------------------------------------------------------------ #
    @property
    def cache_path(self) -> Path:
        return self._config.sku_cache_file

    @property
    def cache_ttl(self) -> timedelta:
        minutes = max(1, int(self._config.cache_ttl_minutes or 0))
        return timedelta(minutes=minutes)

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        result = self._request(
            "GET",
            "/subscribedSkus",
            params={"$select": "skuId,skuPartNumber,capabilityStatus,prepaidUnits,consumedUnits"},
        )
        return result.get("value", [])

    def get_sku_catalog(self, force_refresh: bool = False) -> CatalogSnapshot:
        cached = self.peek_cached_catalog()
        if cached and not force_refresh and not cached.stale:
            return cached

        skus = self.list_subscribed_skus()
        snapshot = CatalogSnapshot(
            fetched_at=datetime.now(timezone.utc),
            skus=skus,
            stale=False,
        )
        self._write_catalog(snapshot)
        return snapshot

    def peek_cached_catalog(self) -> Optional[CatalogSnapshot]:
        data = self._read_catalog()
        if not data:
            return None
        fetched_at = self._parse_timestamp(data.get("fetched_at"))
        if not fetched_at:
            return None
        stale = datetime.now(timezone.utc) - fetched_at > self.cache_ttl
        skus = data.get("skus") or []
        return CatalogSnapshot(fetched_at=fetched_at, skus=skus, stale=stale)

    def _find_sku(self, sku: str, force_refresh: bool = False) -> Optional[Dict[str, Any]]:
        lowered = sku.strip().lower()
        for entry in self.get_sku_catalog(force_refresh=force_refresh).skus:
            if lowered in (
                str(entry.get("skuPartNumber") or "").lower(),
                str(entry.get("skuId") or "").lower(),
            ):
                return entry
        return None

    def _sku_id(self, sku: str) -> str:
        entry = self._find_sku(sku)
        if not entry:
            raise StoreError(f"License SKU '{sku}' is not subscribed in this tenant.")
        return str(entry["skuId"])

    # ------------------------------------------------------------------ #
    # Identity store                                                     #
    # ------------------------------------------------------------------ #
    def get_user(self, upn: str) -> Optional[CurrentState]:
        user = self._get_or_none(f"/users/{upn}", params={"$select": USER_SELECT})
        if not user:
            return None

        manager = self._get_or_none(f"/users/{upn}/manager", params={"$select": "userPrincipalName"})
        part_numbers = {
            str(entry.get("skuId") or "").lower(): str(entry.get("skuPartNumber") or "")
            for entry in self.get_sku_catalog().skus
        }
        direct_licenses = [
            part_numbers.get(str(state.get("skuId") or "").lower()) or str(state.get("skuId"))
            for state in user.get("licenseAssignmentStates") or []
            if not state.get("assignedByGroup")
        ]
        groups = [
            str(entry.get("displayName"))
            for entry in self._paged(f"/users/{user['id']}/memberOf", params={"$select": "displayName"})
            if entry.get("displayName")
        ]
        return CurrentState.from_dict(
            {
                "upn": user.get("userPrincipalName") or upn,
                "object_id": user.get("id"),
                "attributes": {key: user.get(key) for key in ATTRIBUTE_FIELDS},
                "usage_location": user.get("usageLocation"),
                "manager_upn": (manager or {}).get("userPrincipalName"),
                "licenses": direct_licenses,
                "groups": groups,
            }
        )

    def find_user(self, query: str) -> Optional[str]:
        cleaned = (query or "").strip()
        if not cleaned:
            return None
        escaped = _escape(cleaned)
        filters = [
            f"userPrincipalName eq '{escaped}'",
            f"mail eq '{escaped}'",
        ]
        result = self._request(
            "GET",
            "/users",
            params={"$filter": " or ".join(filters), "$select": "id,userPrincipalName"},
        )
        values = result.get("value") or []
        return str(values[0]["userPrincipalName"]) if values else None

    def _user_id(self, upn: str) -> str:
        user = self._get_or_none(f"/users/{upn}", params={"$select": "id"})
        if not user or not user.get("id"):
            raise StoreError(f"User '{upn}' was not found.")
        return str(user["id"])

    def create_user(
        self,
        upn: str,
        display_name: str,
        attributes: Mapping[str, Optional[str]],
        password: Optional[str],
    ) -> str:
        if not password:
            raise StoreError("A temporary password is required to create a user.")
        payload: Dict[str, Any] = {
            "accountEnabled": True,
            "displayName": display_name,
            "mailNickname": upn.split("@", 1)[0],
            "userPrincipalName": upn,
            "passwordProfile": {
                "forceChangePasswordNextSignIn": True,
                "password": password,
            },
        }
        payload.update({key: value for key, value in attributes.items() if value})
        result = self._request("POST", "/users", json=payload)
        logger.info("Created Graph user %s (%s).", upn, result.get("id"))
        return str(result.get("id") or "")

    def update_user(self, upn: str, attributes: Mapping[str, Optional[str]]) -> None:
        payload = {key: value for key, value in attributes.items() if value is not None}
        if not payload:
            return
        self._request("PATCH", f"/users/{upn}", json=payload)

    def set_usage_location(self, upn: str, location: str) -> None:
        self._request("PATCH", f"/users/{upn}", json={"usageLocation": location})

    def set_manager(self, upn: str, manager_upn: str) -> None:
        manager_id = self._user_id(manager_upn)
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/users/{manager_id}"}
        self._request("PUT", f"/users/{upn}/manager/$ref", json=payload)

    # ------------------------------------------------------------------ #
    # License store                                                      #
    # ------------------------------------------------------------------ #
    def seat_counts(self, sku: str) -> Optional[SeatCounts]:
        entry = self._find_sku(sku, force_refresh=True)
        if not entry:
            return None
        prepaid = entry.get("prepaidUnits") or {}
        return SeatCounts(
            sku=str(entry.get("skuPartNumber") or sku),
            total=int(prepaid.get("enabled") or 0),
            consumed=int(entry.get("consumedUnits") or 0),
        )

    def assign_license(self, upn: str, sku: str) -> None:
        payload = {
            "addLicenses": [{"skuId": self._sku_id(sku), "disabledPlans": []}],
            "removeLicenses": [],
        }
        self._request("POST", f"/users/{upn}/assignLicense", json=payload)

    def remove_license(self, upn: str, sku: str) -> None:
        payload = {"addLicenses": [], "removeLicenses": [self._sku_id(sku)]}
        self._request("POST", f"/users/{upn}/assignLicense", json=payload)

    # ------------------------------------------------------------------ #
    # Group store                                                        #
    # ------------------------------------------------------------------ #
    def find_group(self, name: str) -> Optional[str]:
        result = self._request(
            "GET",
            "/groups",
            params={"$filter": f"displayName eq '{_escape(name)}'", "$select": "id,displayName"},
        )
        values = result.get("value") or []
        if len(values) > 1:
            logger.warning("Multiple groups named '%s'; using the first match.", name)
        return str(values[0]["id"]) if values else None

    def list_members(self, group_id: str) -> List[str]:
        return [
            str(entry.get("userPrincipalName"))
            for entry in self._paged(
                f"/groups/{group_id}/members", params={"$select": "userPrincipalName"}
            )
            if entry.get("userPrincipalName")
        ]

    def add_member(self, group_id: str, upn: str) -> None:
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{self._user_id(upn)}"}
        self._request("POST", f"/groups/{group_id}/members/$ref", json=payload)

    def remove_member(self, group_id: str, upn: str) -> None:
        self._request("DELETE", f"/groups/{group_id}/members/{self._user_id(upn)}/$ref")

    # ------------------------------------------------------------------ #
    # Mailbox store (Graph only exposes existence)                       #
    # ------------------------------------------------------------------ #
    def mailbox_exists(self, upn: str) -> bool:
        try:
            self._request("GET", f"/users/{upn}/mailboxSettings")
        except GraphError as exc:
            if exc.status_code == 404 or exc.error == "MailboxNotEnabledForRESTAPI":
                return False
            raise
        return True

    def add_to_distribution_list(self, list_name: str, upn: str) -> None:
        raise StoreError(
            f"Cannot add {upn} to distribution list '{list_name}': "
            "Exchange Online credentials are not configured."
        )

    # ------------------------------------------------------------------ #
    # Cache read/write helpers                                           #
    # ------------------------------------------------------------------ #
    def _read_catalog(self) -> Optional[Dict[str, Any]]:
        path = self.cache_path
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError):
            return None

    def _write_catalog(self, snapshot: CatalogSnapshot) -> None:
        payload = {
            "fetched_at": snapshot.fetched_at.isoformat(),
            "skus": snapshot.skus,
        }
        path = self.cache_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)

    @staticmethod
    def _parse_timestamp(raw: Any) -> Optional[datetime]:
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(str(raw))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except ValueError:
            return None


__all__ = [
    "CatalogSnapshot",
    "GraphConfigurationError",
    "GraphError",
    "GraphTenant",
]
