"""Exchange Online mailbox checks and distribution-list membership via PowerShell."""
from __future__ import annotations

import logging
import os
import subprocess

from .config import ExchangeConfig
from .stores import StoreError, StoreUnavailableError


logger = logging.getLogger(__name__)

_SCRIPT_TEMPLATE = """Import-Module ExchangeOnlineManagement -ErrorAction Stop
$ErrorActionPreference = 'Stop'
try {{
    Connect-ExchangeOnline -AppId '{app_id}' -CertificateThumbprint '{thumbprint}' -Organization '{organization}' -ShowBanner:$false -ErrorAction Stop
{body}
}} catch {{
    Write-Error $_.Exception.Message
    exit 1
}} finally {{
    try {{ Disconnect-ExchangeOnline -Confirm:$false -ErrorAction SilentlyContinue }} catch {{}}
}}"""


class ExchangeCommandError(StoreError):
    """Raised when an Exchange Online PowerShell command fails."""


def _quote(value: str) -> str:
    return value.replace("'", "''")


class ExchangeMailboxStore:
    """Mailbox store backed by the ExchangeOnlineManagement PowerShell module."""

    def __init__(self, config: ExchangeConfig) -> None:
        if not config.has_credentials:
            raise StoreError(
                "Exchange Online credentials are not configured. "
                "Provide organization, app_id, and cert_thumbprint."
            )
        self._config = config

    def _script(self, body: str) -> str:
        return _SCRIPT_TEMPLATE.format(
            app_id=_quote(self._config.app_id or ""),
            thumbprint=_quote(self._config.cert_thumbprint or ""),
            organization=_quote(self._config.organization or ""),
            body=body,
        )

    def _run(self, body: str) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env.pop("PSModulePath", None)
        try:
            return subprocess.run(
                [self._config.powershell_path, "-NoProfile", "-NonInteractive", "-Command", self._script(body)],
                capture_output=True,
                text=True,
                timeout=self._config.command_timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise StoreUnavailableError(f"PowerShell not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExchangeCommandError("Exchange command timed out.") from exc

    def mailbox_exists(self, upn: str) -> bool:
        body = f"""    $mailbox = Get-Mailbox -Identity '{_quote(upn)}' -ErrorAction SilentlyContinue
    if ($mailbox) {{ Write-Output 'MAILBOX_EXISTS' }} else {{ Write-Output 'MAILBOX_MISSING' }}"""
        result = self._run(body)
        if result.returncode != 0:
            error_msg = result.stderr.strip() or result.stdout.strip() or "Unknown error"
            raise ExchangeCommandError(f"Exchange command failed: {error_msg}")
        exists = "MAILBOX_EXISTS" in result.stdout
        logger.debug("Mailbox check for %s: %s", upn, "found" if exists else "missing")
        return exists

    def add_to_distribution_list(self, list_name: str, upn: str) -> None:
        body = f"""    $group = Get-DistributionGroup -Identity '{_quote(list_name)}' -ErrorAction Stop
    Add-DistributionGroupMember -Identity $group.PrimarySmtpAddress -Member '{_quote(upn)}' -BypassSecurityGroupManagerCheck -ErrorAction Stop
    Write-Output 'SUCCESS'"""
        result = self._run(body)
        if result.returncode != 0 or "SUCCESS" not in result.stdout:
            error_msg = result.stderr.strip() or result.stdout.strip() or "Unknown error"
            raise ExchangeCommandError(f"Exchange command failed: {error_msg}")
        logger.info("Added %s to distribution list %s via Exchange Online.", upn, list_name)


__all__ = ["ExchangeCommandError", "ExchangeMailboxStore"]
