"""Operator prompts used by the interactive provisioning shell."""
from __future__ import annotations

import secrets
import string
from typing import List, Optional, Protocol, Tuple

import typer

from .models import CurrentState
from .reconciler import NameChoice, NameConflict


PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


class OperatorConsole(Protocol):
    def confirm_update(self, upn: str, current: CurrentState) -> bool: ...

    def choose_name(self, conflict: NameConflict) -> Tuple[NameChoice, Optional[str]]: ...

    def retry_manager(self, query: str) -> Optional[str]: ...

    def choose_role_group(
        self, category: str, options: List[str], current: Optional[str]
    ) -> Optional[str]: ...

    def temporary_password(self) -> str: ...


def generate_password(length: int = 16) -> str:
    """Generate a temporary password containing upper, lower, digit and symbol characters."""

    if length < 8:
        raise ValueError("Temporary passwords must be at least 8 characters.")
    while True:
        candidate = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(char.islower() for char in candidate)
            and any(char.isupper() for char in candidate)
            and any(char.isdigit() for char in candidate)
            and any(char in "!@#$%^&*" for char in candidate)
        ):
            return candidate


class TyperConsole:
    """Console prompts backed by ``typer.prompt`` / ``typer.confirm``."""

    def __init__(self, assume_yes: bool = False, generate_passwords: bool = False) -> None:
        self.assume_yes = assume_yes
        self.generate_passwords = generate_passwords

    def confirm_update(self, upn: str, current: CurrentState) -> bool:
        display = current.attributes.get("displayName") or upn
        title = current.attributes.get("jobTitle")
        typer.echo(f"An account already exists for {upn}: {display}" + (f" ({title})" if title else ""))
        if self.assume_yes:
            return True
        return typer.confirm("Update this existing account?", default=False)

    def choose_name(self, conflict: NameConflict) -> Tuple[NameChoice, Optional[str]]:
        typer.echo(
            f"The stored {conflict.label} '{conflict.existing}' differs from '{conflict.supplied}'."
        )
        typer.echo("  [k] keep existing   [n] use new   [o] enter another value")
        answer = typer.prompt("Choice", default="k").strip().lower()
        mapping = {"k": NameChoice.KEEP_EXISTING, "n": NameChoice.USE_NEW, "o": NameChoice.OTHER}
        choice = mapping.get(answer[:1])
        if choice is None:
            typer.echo("Invalid selection.")
            return self.choose_name(conflict)
        other = None
        if choice is NameChoice.OTHER:
            other = typer.prompt(f"New {conflict.label}")
        return choice, other

    def retry_manager(self, query: str) -> Optional[str]:
        typer.echo(f"No manager found for '{query}'.")
        answer = typer.prompt("Manager UPN or email (leave blank to skip)", default="", show_default=False)
        return answer.strip() or None

    def choose_role_group(
        self, category: str, options: List[str], current: Optional[str]
    ) -> Optional[str]:
        typer.echo(f"Select a {category} group:")
        for index, option in enumerate(options, 1):
            marker = " (current)" if current and option == current else ""
            typer.echo(f"  [{index}] {option}{marker}")
        typer.echo("  [0] no change")
        while True:
            raw = typer.prompt("Selection", default="0").strip()
            try:
                index = int(raw)
            except ValueError:
                typer.echo("Enter a number from the list.")
                continue
            if index == 0:
                return None
            if 1 <= index <= len(options):
                return options[index - 1]
            typer.echo("Invalid selection.")

    def temporary_password(self) -> str:
        if self.generate_passwords:
            password = generate_password()
            typer.echo(f"Temporary password: {password}")
            return password
        return typer.prompt(
            "Temporary password", hide_input=True, confirmation_prompt=True
        )


__all__ = ["OperatorConsole", "TyperConsole", "generate_password"]
