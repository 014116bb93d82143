"""Command line interface for the provisioning toolkit."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer

from .config import AppConfig, ConfigurationError, load_config
from .console import TyperConsole
from .errors import ProvisioningError
from .exchange import ExchangeMailboxStore
from .executor import ProvisioningExecutor
from .graph_client import GraphTenant
from .mock_tenant import MockTenant, ensure_mock_data
from .models import Mode, StepStatus, UserRequest
from .policy import PolicyTable, list_department_names, load_policy
from .reconciler import IdentityReconciler
from .stores import StoreError, seat_report

app = typer.Typer(help="Provision new employees across Entra ID, licensing, groups and Exchange.")
policy_app = typer.Typer(help="Inspect the department entitlement policy.")
app.add_typer(policy_app, name="policy")

logger = logging.getLogger(__name__)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _load_policy(config: AppConfig) -> PolicyTable:
    return load_policy(config.storage.policy_file)


def _build_stores(config: AppConfig) -> Tuple[object, object]:
    """Return ``(tenant, mailboxes)``; the tenant serves identity, license and group calls."""

    try:
        if config.tenant.is_mock:
            data_file = config.tenant.mock_data_file
            if data_file:
                ensure_mock_data(data_file)
            tenant = MockTenant(data_file)
            return tenant, tenant
        graph = GraphTenant(config.graph)
        if config.exchange.has_credentials:
            return graph, ExchangeMailboxStore(config.exchange)
        logger.warning("Exchange Online is not configured; distribution-list changes will fail.")
        return graph, graph
    except StoreError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _parse_role_groups(values: Optional[List[str]]) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for item in values or []:
        if "=" not in item:
            raise typer.BadParameter("Role groups must be provided in category=group form.")
        category, group = item.split("=", 1)
        parsed[category.strip().lower()] = group.strip()
    return parsed


@policy_app.command("show")
def show_policy(
    department: str = typer.Argument(..., help="Department to resolve."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Show the entitlements a department receives."""

    config = _load_configuration(config_path)
    policy = _load_policy(config)
    try:
        desired = policy.resolve(department)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    if not policy.department(department):
        typer.echo(f"'{department}' is not listed; the default tier applies.")
    typer.echo(f"Licenses (direct): {', '.join(sorted(desired.licenses)) or '-'}")
    typer.echo(f"License group: {desired.license_group or '-'}")
    typer.echo("Groups:")
    for group in sorted(desired.groups, key=str.casefold):
        typer.echo(f"  - {group}")
    typer.echo(f"Mailing list: {desired.mailing_list_name if desired.mailing_list else '-'}")


@policy_app.command("list")
def list_policy(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """List departments with specific policy entries."""

    config = _load_configuration(config_path)
    policy = _load_policy(config)
    names = list_department_names(policy)
    if not names:
        typer.echo("No department-specific entries; every department gets the default tier.")
        raise typer.Exit(code=0)
    for name in names:
        marker = " (direct license)" if policy.uses_direct_license(name) else ""
        typer.echo(f"- {name}{marker}")


@policy_app.command("members")
def show_policy_members(
    department: str = typer.Argument(..., help="Department whose groups to inspect."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """List who currently holds each group a department receives."""

    config = _load_configuration(config_path)
    policy = _load_policy(config)
    try:
        desired = policy.resolve(department)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    tenant, _ = _build_stores(config)
    for group in sorted(desired.groups, key=str.casefold):
        try:
            group_id = tenant.find_group(group)
            members = tenant.list_members(group_id) if group_id else None
        except StoreError as exc:
            typer.echo(f"Error: {exc}")
            raise typer.Exit(code=1)
        if members is None:
            typer.echo(f"{group}: not found in the tenant")
            continue
        typer.echo(f"{group} ({len(members)}):")
        for upn in sorted(members, key=str.casefold):
            typer.echo(f"  - {upn}")


@app.command("licenses")
def show_licenses(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Report seat counts for the SKUs the policy assigns."""

    config = _load_configuration(config_path)
    policy = _load_policy(config)
    tenant, _ = _build_stores(config)
    try:
        report = seat_report(tenant, policy.required_skus())
    except StoreError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    for sku, counts in report.items():
        if counts is None:
            typer.echo(f"{sku}: not subscribed")
        else:
            typer.echo(f"{sku}: {counts.available} available ({counts.consumed}/{counts.total} consumed)")


@app.command("provision")
def provision_user(
    first_name: str = typer.Argument(..., help="Employee first name."),
    last_name: str = typer.Argument(..., help="Employee last name."),
    department: str = typer.Option(..., "--department", help="Department; drives license and groups."),
    title: str = typer.Option("", "--title", help="Job title."),
    mobile_phone: str = typer.Option("", "--mobile", help="Mobile phone number."),
    employee_type: str = typer.Option("", "--employee-type", help="Employee type, e.g. Employee or Contractor."),
    manager: Optional[str] = typer.Option(None, "--manager", help="Manager UPN or email address."),
    role_group: Optional[List[str]] = typer.Option(
        None,
        "--role-group",
        help="Role group choice in category=group form (e.g. printer=Printer-1F). Repeatable.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show planned changes without applying them."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts."),
    generate_password: bool = typer.Option(
        False, "--generate-password", help="Generate the temporary password instead of prompting."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Create or update an employee account and apply department entitlements."""

    config = _load_configuration(config_path)
    policy = _load_policy(config)
    tenant, mailboxes = _build_stores(config)
    console = TyperConsole(assume_yes=yes, generate_passwords=generate_password)

    role_groups = _parse_role_groups(role_group)
    for category, options in policy.role_group_categories.items():
        choice = role_groups.get(category)
        if choice and choice.lower() not in {option.lower() for option in options}:
            raise typer.BadParameter(f"'{choice}' is not a valid {category} group ({', '.join(options)}).")
        if not choice and not yes and options:
            selected = console.choose_role_group(category, options, None)
            if selected:
                role_groups[category] = selected

    try:
        request = UserRequest.from_input(
            first_name=first_name,
            last_name=last_name,
            department=department,
            title=title,
            mobile_phone=mobile_phone,
            employee_type=employee_type,
            manager=manager,
            role_groups=role_groups,
        )
        reconciler = IdentityReconciler(
            policy,
            tenant,
            console,
            domain=config.tenant.upn_domain,
            default_usage_location=config.tenant.default_usage_location,
        )
        reconciliation = reconciler.reconcile(request)
    except (ProvisioningError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    diff = reconciliation.diff
    typer.echo(f"{reconciliation.mode.value.capitalize()} {diff.upn}")
    if diff.is_empty:
        typer.echo("  No changes required.")
    for line in diff.describe():
        typer.echo(f"  {line}")
    for note in diff.notes:
        typer.echo(f"  WARNING: {note}")

    if dry_run:
        raise typer.Exit(code=0)
    if not yes and not diff.is_empty and not typer.confirm("Apply these changes?", default=True):
        raise typer.Exit(code=0)

    password = console.temporary_password() if reconciliation.mode is Mode.CREATE else None
    executor = ProvisioningExecutor(
        tenant,
        tenant,
        tenant,
        mailboxes,
        poll_interval=config.polling.interval_seconds,
    )
    try:
        result = executor.execute(
            reconciliation.mode,
            diff,
            timeout=config.polling.timeout_seconds,
            temporary_password=password,
        )
    except ProvisioningError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    typer.echo("")
    for line in result.summary_lines():
        typer.echo(line)
    for warning in result.warnings:
        typer.echo(f"WARNING: {warning}")

    changed = sum(1 for step in result.steps if step.status is StepStatus.SUCCESS)
    typer.echo(f"{changed} steps applied, {len(result.failures)} failed.")
    if result.failures:
        raise typer.Exit(code=2)


def run():
    app()


if __name__ == "__main__":
    run()
