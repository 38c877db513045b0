"""Domain types and aliases."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

Timestamp = datetime

# One result row: column name -> value
ResultRow = dict[str, Any]
ResultRows = list[ResultRow]

# Receives the staging relation name, returns the final statement
StatementBuilder = Callable[[str], str]

# JSON-serializable types (recursive)
if TYPE_CHECKING:
    JsonValue = str | int | float | bool | None | dict[str, "JsonValue"] | list["JsonValue"]
else:
    JsonValue = str | int | float | bool | None | dict | list

