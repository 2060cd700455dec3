"""
Interactive prompts handed to the orchestration layer as callbacks.
"""

from __future__ import annotations

import click
import typer
from loguru import logger

from heritage_cli.errors import PasswordMismatch, PromptFailed


def confirm(prompt: str) -> bool:
    """Ask a question that must be answered by typing "yes"."""
    try:
        answer = typer.prompt(f"{prompt} Type 'yes' to confirm", default="no", show_default=False)
    except click.Abort as e:
        raise PromptFailed("Confirmation prompt aborted") from e
    return answer.strip().lower() == "yes"


def prompt_secret(double_check: bool) -> str:
    """
    Ask for the key-provider password.

    Args:
        double_check: Ask twice (used when the password is being chosen)

    Raises:
        PasswordMismatch: If both entries differ
        PromptFailed: If the prompt could not be answered
    """
    try:
        password = typer.prompt("Password", hide_input=True)
        if double_check:
            again = typer.prompt("Repeat password", hide_input=True)
            if again != password:
                logger.error("Passwords did not match")
                raise PasswordMismatch()
    except click.Abort as e:
        raise PromptFailed("Password prompt aborted") from e
    return password
