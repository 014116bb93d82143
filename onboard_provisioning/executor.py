"""Apply a reconciliation diff against the tenant stores, one step at a time."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from .errors import DirectoryUnavailableError, LicenseSeatsExhaustedError, LicenseSkuNotFoundError
from .models import Diff, ExecutionState, Mode, ProvisioningResult, StepStatus
from .polling import poll_until
from .stores import GroupStore, IdentityStore, LicenseStore, MailboxStore, StoreError


logger = logging.getLogger(__name__)

STEP_IDENTITY = "identity"
STEP_MANAGER = "manager"
STEP_USAGE_LOCATION = "usage_location"
STEP_LICENSE_ADD = "license_add"
STEP_LICENSE_REMOVE = "license_remove"
STEP_GROUP_ADD = "group_add"
STEP_GROUP_REMOVE = "group_remove"
STEP_MAILBOX_POLL = "mailbox_poll"
STEP_DISTRIBUTION_LIST = "distribution_list"

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_POLL_TIMEOUT = 600.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _seconds(value: Union[float, int, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ProvisioningExecutor:
    """Best-effort executor: every step is attempted and recorded, nothing is rolled back.

    Steps run in a fixed order: identity record, manager, usage location,
    licenses, groups, mailbox poll, then the distribution-list add. The
    mailbox appears only after a license lands, so the poll always follows
    the license step.
    """

    def __init__(
        self,
        identity: IdentityStore,
        licenses: LicenseStore,
        groups: GroupStore,
        mailboxes: MailboxStore,
        poll_interval: Union[float, timedelta] = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.identity = identity
        self.licenses = licenses
        self.groups = groups
        self.mailboxes = mailboxes
        self.poll_interval = _seconds(poll_interval)
        self.clock = clock
        self.sleep = sleep
        self.now = now

    # ------------------------------------------------------------------ #
    # Pre-flight                                                         #
    # ------------------------------------------------------------------ #
    def preflight(self, diff: Diff) -> None:
        """Abort before any mutation if a required SKU is missing or full."""

        for sku in diff.required_skus:
            try:
                counts = self.licenses.seat_counts(sku)
            except StoreError as exc:
                raise DirectoryUnavailableError(f"Unable to read license counts: {exc}") from exc
            if counts is None:
                raise LicenseSkuNotFoundError(sku)
            logger.info(
                "License %s: %s total, %s consumed, %s available.",
                sku,
                counts.total,
                counts.consumed,
                counts.available,
            )
            if counts.available <= 0:
                raise LicenseSeatsExhaustedError(sku, counts.total, counts.consumed)

    # ------------------------------------------------------------------ #
    # Execution                                                          #
    # ------------------------------------------------------------------ #
    def execute(
        self,
        mode: Mode,
        diff: Diff,
        timeout: Union[float, timedelta] = DEFAULT_POLL_TIMEOUT,
        temporary_password: Optional[str] = None,
    ) -> ProvisioningResult:
        self.preflight(diff)

        result = ProvisioningResult(upn=diff.upn, mode=mode, notes=list(diff.notes))
        logger.info("Provisioning %s (%s): %s changes.", diff.upn, mode.value, len(diff.describe()))

        self._write_identity(mode, diff, temporary_password, result)
        result.transition(ExecutionState.IDENTITY_WRITTEN)

        self._apply_manager(diff, result)
        self._apply_usage_location(diff, result)
        result.transition(ExecutionState.ATTRIBUTES_APPLIED)

        self._apply_licenses(diff, result)
        result.transition(ExecutionState.LICENSE_APPLIED)

        self._apply_groups(diff, result)
        result.transition(ExecutionState.GROUPS_APPLIED)

        if diff.mailing_list_add:
            result.transition(ExecutionState.MAILBOX_POLL_STARTED)
            if self._wait_for_mailbox(diff.upn, _seconds(timeout), result):
                result.transition(ExecutionState.MAILBOX_READY)
                self._run_step(
                    result,
                    STEP_DISTRIBUTION_LIST,
                    diff.mailing_list_add,
                    lambda: self.mailboxes.add_to_distribution_list(diff.mailing_list_add, diff.upn),
                )
                result.transition(ExecutionState.LIST_UPDATED)
            else:
                result.transition(ExecutionState.MAILBOX_TIMEOUT)
                self._record(result, STEP_DISTRIBUTION_LIST, StepStatus.SKIPPED, diff.mailing_list_add, "timeout")
                logger.warning(
                    "Skipped adding %s to %s: mailbox was not ready in time.",
                    diff.upn,
                    diff.mailing_list_add,
                )
                result.transition(ExecutionState.LIST_SKIPPED)
        else:
            self._record(result, STEP_MAILBOX_POLL, StepStatus.SKIPPED, None, "no mailbox-dependent changes")
            self._record(result, STEP_DISTRIBUTION_LIST, StepStatus.SKIPPED, None, "no changes")
            result.transition(ExecutionState.LIST_SKIPPED)

        result.transition(ExecutionState.DONE)
        logger.info(
            "Provisioning finished for %s: %s steps, %s failed.",
            diff.upn,
            len(result.steps),
            len(result.failures),
        )
        return result

    # ------------------------------------------------------------------ #
    # Steps                                                              #
    # ------------------------------------------------------------------ #
    def _write_identity(
        self,
        mode: Mode,
        diff: Diff,
        temporary_password: Optional[str],
        result: ProvisioningResult,
    ) -> None:
        if mode is Mode.CREATE:
            self._run_step(
                result,
                STEP_IDENTITY,
                diff.upn,
                lambda: self.identity.create_user(
                    diff.upn, diff.display_name, diff.attributes, temporary_password
                ),
                detail="created",
            )
            return

        if not diff.attribute_changes:
            self._record(result, STEP_IDENTITY, StepStatus.SKIPPED, diff.upn, "no changes")
            return
        changed = ", ".join(change.name for change in diff.attribute_changes)
        self._run_step(
            result,
            STEP_IDENTITY,
            diff.upn,
            lambda: self.identity.update_user(diff.upn, diff.attributes),
            detail=f"updated {changed}",
        )

    def _apply_manager(self, diff: Diff, result: ProvisioningResult) -> None:
        if diff.manager_upn:
            self._run_step(
                result,
                STEP_MANAGER,
                diff.manager_upn,
                lambda: self.identity.set_manager(diff.upn, diff.manager_upn),
            )
        elif diff.manager_unresolved:
            self._record(
                result,
                STEP_MANAGER,
                StepStatus.SKIPPED,
                diff.manager_unresolved,
                "manager not found",
            )

    def _apply_usage_location(self, diff: Diff, result: ProvisioningResult) -> None:
        if not diff.usage_location:
            if diff.required_skus:
                logger.warning("No usage location set for %s; license assignment may fail.", diff.upn)
            return
        self._run_step(
            result,
            STEP_USAGE_LOCATION,
            diff.usage_location,
            lambda: self.identity.set_usage_location(diff.upn, diff.usage_location),
        )

    def _apply_licenses(self, diff: Diff, result: ProvisioningResult) -> None:
        for sku in diff.license_adds:
            self._run_step(
                result, STEP_LICENSE_ADD, sku, lambda sku=sku: self.licenses.assign_license(diff.upn, sku)
            )
        for sku in diff.license_removes:
            self._run_step(
                result,
                STEP_LICENSE_REMOVE,
                sku,
                lambda sku=sku: self.licenses.remove_license(diff.upn, sku),
            )

    def _apply_groups(self, diff: Diff, result: ProvisioningResult) -> None:
        for name in diff.group_adds:
            self._run_step(
                result,
                STEP_GROUP_ADD,
                name,
                lambda name=name: self.groups.add_member(self._group_id(name), diff.upn),
            )
        for name in diff.group_removes:
            self._run_step(
                result,
                STEP_GROUP_REMOVE,
                name,
                lambda name=name: self.groups.remove_member(self._group_id(name), diff.upn),
            )

    def _group_id(self, name: str) -> str:
        group_id = self.groups.find_group(name)
        if not group_id:
            raise StoreError(f"Group '{name}' was not found.")
        return group_id

    def _wait_for_mailbox(self, upn: str, timeout: float, result: ProvisioningResult) -> bool:
        logger.info(
            "Waiting up to %.0fs for the mailbox of %s (checking every %.0fs).",
            timeout,
            upn,
            self.poll_interval,
        )
        outcome = poll_until(
            lambda: self.mailboxes.mailbox_exists(upn),
            interval=self.poll_interval,
            timeout=timeout,
            clock=self.clock,
            sleep=self.sleep,
            description=f"mailbox for {upn}",
        )
        if outcome.ready:
            self._record(
                result,
                STEP_MAILBOX_POLL,
                StepStatus.SUCCESS,
                upn,
                f"ready after {outcome.attempts} checks",
            )
            return True
        self._record(
            result,
            STEP_MAILBOX_POLL,
            StepStatus.FAILURE,
            upn,
            f"mailbox not ready after {outcome.elapsed:.0f}s ({outcome.attempts} checks)",
        )
        return False

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    def _run_step(
        self,
        result: ProvisioningResult,
        step: str,
        target: Optional[str],
        action: Callable[[], object],
        detail: Optional[str] = None,
    ) -> bool:
        try:
            action()
        except StoreError as exc:
            logger.error("Step %s failed for %s (%s): %s", step, result.upn, target, exc)
            self._record(result, step, StepStatus.FAILURE, target, str(exc))
            return False
        except Exception as exc:
            logger.exception("Unexpected error in step %s for %s (%s): %s", step, result.upn, target, exc)
            self._record(result, step, StepStatus.FAILURE, target, str(exc))
            return False
        logger.info("Step %s succeeded for %s (%s).", step, result.upn, target)
        self._record(result, step, StepStatus.SUCCESS, target, detail)
        return True

    def _record(
        self,
        result: ProvisioningResult,
        step: str,
        status: StepStatus,
        target: Optional[str],
        detail: Optional[str],
    ) -> None:
        result.record(step, status, target=target, detail=detail, timestamp=self.now())


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_POLL_TIMEOUT",
    "ProvisioningExecutor",
    "STEP_DISTRIBUTION_LIST",
    "STEP_GROUP_ADD",
    "STEP_GROUP_REMOVE",
    "STEP_IDENTITY",
    "STEP_LICENSE_ADD",
    "STEP_LICENSE_REMOVE",
    "STEP_MAILBOX_POLL",
    "STEP_MANAGER",
    "STEP_USAGE_LOCATION",
]
