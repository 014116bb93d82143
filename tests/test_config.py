from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from onboard_provisioning.config import (
    ConfigurationError,
    ensure_default_config,
    load_config,
    save_config,
)


def _write(path: Path, payload) -> Path:
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def test_minimal_file_fills_in_defaults(tmp_path: Path) -> None:
    path = _write(tmp_path / "settings.yaml", {"tenant": {"upn_domain": "@contoso.com"}})

    config = load_config(path)

    assert config.tenant.upn_domain == "contoso.com"
    assert config.tenant.backend == "graph"
    assert not config.tenant.is_mock
    assert config.polling.interval_seconds == 30
    assert config.polling.timeout_seconds == 600
    assert config.storage.policy_file == Path("config/policy.yaml")
    assert not config.graph.has_credentials


def test_mock_backend_and_usage_location(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "settings.yaml",
        {
            "tenant": {
                "upn_domain": "contoso.com",
                "backend": "mock://local",
                "mock_data_file": "data/tenant.yaml",
                "default_usage_location": "us",
            }
        },
    )

    config = load_config(path)

    assert config.tenant.is_mock
    assert config.tenant.mock_data_file == Path("data/tenant.yaml")
    assert config.tenant.default_usage_location == "US"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"tenant": {}},
        {"tenant": {"upn_domain": " "}},
        {"tenant": {"upn_domain": "contoso.com", "backend": "ldap"}},
        {"tenant": {"upn_domain": "contoso.com", "default_usage_location": "USA"}},
        {"tenant": {"upn_domain": "contoso.com"}, "polling": {"interval_seconds": 0}},
        {"tenant": {"upn_domain": "contoso.com"}, "polling": {"timeout_seconds": "soon"}},
    ],
)
def test_invalid_settings_are_rejected(tmp_path: Path, payload) -> None:
    path = _write(tmp_path / "settings.yaml", payload)

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")


def test_environment_overrides_file_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(
        tmp_path / "settings.yaml",
        {"tenant": {"upn_domain": "contoso.com"}, "polling": {"timeout_seconds": 900}},
    )
    monkeypatch.setenv("PROVISION_POLLING__TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("PROVISION_GRAPH__CLIENT_ID", "app-123")

    config = load_config(path)

    assert config.polling.timeout_seconds == 120
    assert config.graph.client_id == "app-123"
    assert config.exchange.app_id == "app-123"


def test_saved_config_loads_back(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "settings.yaml",
        {
            "tenant": {"upn_domain": "contoso.com", "default_usage_location": "GB"},
            "exchange": {"organization": "contoso.onmicrosoft.com", "cert_thumbprint": "ABC"},
            "polling": {"interval_seconds": 10},
        },
    )
    config = load_config(path)

    target = save_config(config, tmp_path / "copy.yaml")
    reloaded = load_config(target)

    assert reloaded.tenant.default_usage_location == "GB"
    assert reloaded.exchange.organization == "contoso.onmicrosoft.com"
    assert reloaded.polling.interval_seconds == 10


def test_default_config_is_copied_from_template(tmp_path: Path) -> None:
    template = _write(tmp_path / "example.yaml", {"tenant": {"upn_domain": "contoso.com"}})
    target = tmp_path / "config" / "settings.yaml"

    created = ensure_default_config(target, template)

    assert created == target
    assert load_config(created).tenant.upn_domain == "contoso.com"


def test_missing_template_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        ensure_default_config(tmp_path / "settings.yaml", tmp_path / "missing.yaml")
