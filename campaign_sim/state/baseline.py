"""
Baseline data providers.

Supplies the per-state partisan lean, elector counts and turnout weights
that election resolution reads. Read-only from the simulator's side.
"""

import json
from pathlib import Path
from typing import Protocol, runtime_checkable

from .schema import StateBaseline


DEFAULT_STATES_FILE = Path(__file__).parent.parent / "data" / "states.json"


@runtime_checkable
class BaselineProvider(Protocol):
    """Read-only source of StateBaseline rows."""

    def states(self) -> list[StateBaseline]:
        ...


class StaticBaselineProvider:
    """Baseline rows supplied directly. Used by tests and small scenarios."""

    def __init__(self, rows: list[StateBaseline | dict]):
        self._rows = [
            row if isinstance(row, StateBaseline) else StateBaseline.model_validate(row)
            for row in rows
        ]

    def states(self) -> list[StateBaseline]:
        return list(self._rows)


class JsonBaselineProvider:
    """
    Baseline table loaded from a JSON file.

    The file holds {"states": [...]} rows matching StateBaseline. Loaded
    lazily once and cached; defaults to the bundled 50-state + DC table.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else DEFAULT_STATES_FILE
        self._rows: list[StateBaseline] | None = None

    def states(self) -> list[StateBaseline]:
        if self._rows is None:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._rows = [StateBaseline.model_validate(row) for row in data.get("states", [])]
        return list(self._rows)
