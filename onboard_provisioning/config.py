"""Configuration loading utilities for the provisioning toolkit."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "PROVISION_CONFIG"
ENV_PREFIX = "PROVISION_"
MOCK_BACKEND_PREFIX = "mock://"


@dataclass
class TenantConfig:
    """Where identities live and how new principal names are formed."""

    upn_domain: str
    backend: str = "graph"
    mock_data_file: Optional[Path] = None
    default_usage_location: Optional[str] = None

    @property
    def is_mock(self) -> bool:
        return self.backend.startswith(MOCK_BACKEND_PREFIX)


@dataclass
class GraphConfig:
    """Settings for the Microsoft Graph integration."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    sku_cache_file: Path = field(default_factory=lambda: Path("data/m365_skus.json"))
    cache_ttl_minutes: int = 60

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class ExchangeConfig:
    """Settings for Exchange Online PowerShell (mailbox checks, distribution lists)."""

    organization: Optional[str] = None
    app_id: Optional[str] = None
    cert_thumbprint: Optional[str] = None
    powershell_path: str = "pwsh"
    command_timeout: int = 120

    @property
    def has_credentials(self) -> bool:
        return bool(self.organization and self.app_id and self.cert_thumbprint)


@dataclass
class PollingConfig:
    """Mailbox readiness polling."""

    interval_seconds: int = 30
    timeout_seconds: int = 600


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    policy_file: Path = Path("config/policy.yaml")


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    tenant: TenantConfig
    graph: GraphConfig = field(default_factory=GraphConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        return config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _positive_int(section: str, key: str, raw: Any) -> int:
    try:
        value = _to_int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{section}.{key} must be an integer, got {raw!r}.") from exc
    if value <= 0:
        raise ConfigurationError(f"{section}.{key} must be positive, got {value}.")
    return value


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    tenant_section = _get_required(config_dict, "tenant")

    try:
        upn_domain = str(tenant_section["upn_domain"]).strip().lstrip("@")
    except KeyError as exc:
        raise ConfigurationError(f"Missing tenant configuration key: {exc}.") from exc
    if not upn_domain:
        raise ConfigurationError("tenant.upn_domain must not be empty.")

    backend = str(tenant_section.get("backend") or "graph").strip()
    if backend != "graph" and not backend.startswith(MOCK_BACKEND_PREFIX):
        raise ConfigurationError(
            f"Unsupported tenant backend '{backend}'. Use 'graph' or 'mock://'."
        )
    usage_location = _optional_str(tenant_section.get("default_usage_location"))
    if usage_location and len(usage_location) != 2:
        raise ConfigurationError("tenant.default_usage_location must be a two-letter country code.")

    tenant_config = TenantConfig(
        upn_domain=upn_domain,
        backend=backend,
        mock_data_file=_optional_path(tenant_section.get("mock_data_file")),
        default_usage_location=usage_location.upper() if usage_location else None,
    )

    graph_section = config_dict.get("graph") or {}
    default_graph = GraphConfig()
    cache_ttl_raw = graph_section.get("cache_ttl_minutes", default_graph.cache_ttl_minutes)
    try:
        cache_ttl = _to_int(cache_ttl_raw)
    except (TypeError, ValueError):
        cache_ttl = default_graph.cache_ttl_minutes
    graph_config = GraphConfig(
        tenant_id=_optional_str(graph_section.get("tenant_id")),
        client_id=_optional_str(graph_section.get("client_id")),
        client_secret=_optional_str(graph_section.get("client_secret")),
        sku_cache_file=_optional_path(graph_section.get("sku_cache_file"))
        or default_graph.sku_cache_file,
        cache_ttl_minutes=cache_ttl,
    )

    exchange_section = config_dict.get("exchange") or {}
    default_exchange = ExchangeConfig()
    exchange_config = ExchangeConfig(
        organization=_optional_str(exchange_section.get("organization")),
        app_id=_optional_str(exchange_section.get("app_id")) or graph_config.client_id,
        cert_thumbprint=_optional_str(exchange_section.get("cert_thumbprint")),
        powershell_path=_optional_str(exchange_section.get("powershell_path"))
        or default_exchange.powershell_path,
        command_timeout=_positive_int(
            "exchange",
            "command_timeout",
            exchange_section.get("command_timeout", default_exchange.command_timeout),
        ),
    )

    polling_section = config_dict.get("polling") or {}
    default_polling = PollingConfig()
    polling_config = PollingConfig(
        interval_seconds=_positive_int(
            "polling",
            "interval_seconds",
            polling_section.get("interval_seconds", default_polling.interval_seconds),
        ),
        timeout_seconds=_positive_int(
            "polling",
            "timeout_seconds",
            polling_section.get("timeout_seconds", default_polling.timeout_seconds),
        ),
    )

    storage_section = config_dict.get("storage") or {}
    storage_config = StorageConfig(
        policy_file=_optional_path(storage_section.get("policy_file")) or StorageConfig().policy_file,
    )

    return AppConfig(
        tenant=tenant_config,
        graph=graph_config,
        exchange=exchange_config,
        polling=polling_config,
        storage=storage_config,
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "tenant": {
            "upn_domain": config.tenant.upn_domain,
            "backend": config.tenant.backend,
            **(
                {"mock_data_file": str(config.tenant.mock_data_file)}
                if config.tenant.mock_data_file
                else {}
            ),
            "default_usage_location": config.tenant.default_usage_location or "",
        },
        "graph": {
            "tenant_id": config.graph.tenant_id or "",
            "client_id": config.graph.client_id or "",
            "client_secret": config.graph.client_secret or "",
            "sku_cache_file": str(config.graph.sku_cache_file),
            "cache_ttl_minutes": config.graph.cache_ttl_minutes,
        },
        "exchange": {
            "organization": config.exchange.organization or "",
            "app_id": config.exchange.app_id or "",
            "cert_thumbprint": config.exchange.cert_thumbprint or "",
            "powershell_path": config.exchange.powershell_path,
            "command_timeout": config.exchange.command_timeout,
        },
        "polling": {
            "interval_seconds": config.polling.interval_seconds,
            "timeout_seconds": config.polling.timeout_seconds,
        },
        "storage": {
            "policy_file": str(config.storage.policy_file),
        },
    }


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Persist the configuration to disk, returning the path that was written."""

    target = _resolve_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config_to_dict(config)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
    return target


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ExchangeConfig",
    "GraphConfig",
    "PollingConfig",
    "StorageConfig",
    "TenantConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
    "save_config",
]
