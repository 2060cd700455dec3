"""
Output of command results.

Strings are printed as they are, everything else as indented JSON.
"""

from __future__ import annotations

import dataclasses
import json
from enum import Enum
from pathlib import Path
from typing import Any

import typer

from heritage_cli.spendflow import SpendResult


def _default(value: Any) -> Any:
    if isinstance(value, SpendResult):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Cannot display {type(value).__name__}")


def to_json(value: Any) -> str:
    return json.dumps(value, indent=2, default=_default)


def show(value: Any) -> None:
    if value is None:
        return
    if isinstance(value, str):
        typer.echo(value)
    else:
        typer.echo(to_json(value))
