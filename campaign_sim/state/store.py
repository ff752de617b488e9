"""
Campaign and polling storage abstraction.

Separates persistence from simulation logic for testability. The stores
own the optimistic-concurrency compare-and-swap: a caller hands save() the
version it loaded, and the write is rejected if someone else saved first.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..errors import CycleAlreadyActiveError, CycleSequenceError, StaleWriteError
from .schema import CampaignPhaseState, PollingSnapshot


logger = logging.getLogger(__name__)


@runtime_checkable
class CampaignStore(Protocol):
    """
    Storage interface for campaign cycles.

    Implementations:
    - JsonCampaignStore: File-based persistence (local play)
    - MemoryCampaignStore: In-memory storage (testing)
    """

    def load(self, player_id: str) -> CampaignPhaseState | None:
        """Latest cycle for a player. Returns None if the player has none."""
        ...

    def load_cycle(self, player_id: str, cycle_sequence: int) -> CampaignPhaseState | None:
        """One specific cycle, or None."""
        ...

    def history(self, player_id: str) -> list[CampaignPhaseState]:
        """Every cycle for a player, oldest first."""
        ...

    def create(self, record: CampaignPhaseState) -> CampaignPhaseState:
        """
        Insert a new cycle, checking the player's latest cycle in the same
        critical section as the write.

        Raises:
            CycleAlreadyActiveError: If the latest cycle is unresolved.
            CycleSequenceError: If record.cycle_sequence is not above it.
        """
        ...

    def save(self, record: CampaignPhaseState, expected_version: int) -> CampaignPhaseState:
        """
        Persist a cycle if the stored version still equals expected_version.

        Returns the stored copy with its version bumped.

        Raises:
            StaleWriteError: If the stored version moved on.
        """
        ...

    def list_players(self) -> list[str]:
        """Player ids with at least one cycle."""
        ...


@runtime_checkable
class SnapshotStore(Protocol):
    """Append-only storage for polling snapshots."""

    def append(self, snapshot: PollingSnapshot) -> None:
        ...

    def for_player(
        self,
        player_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PollingSnapshot]:
        """Snapshots with since <= captured_at <= until, oldest first."""
        ...


def _check_version(
    record: CampaignPhaseState,
    stored: CampaignPhaseState | None,
    expected_version: int,
) -> CampaignPhaseState:
    actual = stored.version if stored is not None else 0
    if actual != expected_version:
        raise StaleWriteError(record.key, expected_version, actual)
    return record.model_copy(update={"version": expected_version + 1}, deep=True)


def _check_new_cycle(record: CampaignPhaseState, latest: CampaignPhaseState | None) -> None:
    if latest is None:
        return
    if latest.is_active:
        raise CycleAlreadyActiveError(record.player_id, latest.cycle_sequence)
    if record.cycle_sequence <= latest.cycle_sequence:
        raise CycleSequenceError(record.player_id, record.cycle_sequence, latest.cycle_sequence)


def _in_window(
    snapshot: PollingSnapshot,
    since: datetime | None,
    until: datetime | None,
) -> bool:
    if since is not None and snapshot.captured_at < since:
        return False
    if until is not None and snapshot.captured_at > until:
        return False
    return True


# -----------------------------------------------------------------------------
# In-memory stores
# -----------------------------------------------------------------------------


class MemoryCampaignStore:
    """
    In-memory campaign storage for testing.

    No file I/O - all data lives in memory. Records are copied on the way
    in and out so callers never alias stored state.
    """

    def __init__(self):
        self.cycles: dict[str, dict[int, CampaignPhaseState]] = {}
        self._lock = threading.Lock()

    def load(self, player_id: str) -> CampaignPhaseState | None:
        cycles = self.cycles.get(player_id)
        if not cycles:
            return None
        return cycles[max(cycles)].model_copy(deep=True)

    def load_cycle(self, player_id: str, cycle_sequence: int) -> CampaignPhaseState | None:
        record = self.cycles.get(player_id, {}).get(cycle_sequence)
        return record.model_copy(deep=True) if record else None

    def history(self, player_id: str) -> list[CampaignPhaseState]:
        cycles = self.cycles.get(player_id, {})
        return [cycles[seq].model_copy(deep=True) for seq in sorted(cycles)]

    def create(self, record: CampaignPhaseState) -> CampaignPhaseState:
        with self._lock:
            cycles = self.cycles.setdefault(record.player_id, {})
            _check_new_cycle(record, cycles[max(cycles)] if cycles else None)
            stored = _check_version(record, cycles.get(record.cycle_sequence), 0)
            cycles[record.cycle_sequence] = stored
        return stored.model_copy(deep=True)

    def save(self, record: CampaignPhaseState, expected_version: int) -> CampaignPhaseState:
        with self._lock:
            cycles = self.cycles.setdefault(record.player_id, {})
            stored = _check_version(record, cycles.get(record.cycle_sequence), expected_version)
            cycles[record.cycle_sequence] = stored
        return stored.model_copy(deep=True)

    def list_players(self) -> list[str]:
        return sorted(self.cycles)

    def clear(self) -> None:
        """Clear all cycles (test utility)."""
        self.cycles.clear()


class MemorySnapshotStore:
    """In-memory snapshot series, one list per player."""

    def __init__(self):
        self.snapshots: dict[str, list[PollingSnapshot]] = {}
        self._lock = threading.Lock()

    def append(self, snapshot: PollingSnapshot) -> None:
        with self._lock:
            self.snapshots.setdefault(snapshot.player_id, []).append(snapshot)

    def for_player(
        self,
        player_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PollingSnapshot]:
        series = [
            s for s in self.snapshots.get(player_id, [])
            if _in_window(s, since, until)
        ]
        # Stable sort keeps append order for equal capture times
        return sorted(series, key=lambda s: s.captured_at)


# -----------------------------------------------------------------------------
# JSON file stores
# -----------------------------------------------------------------------------


class PlayerCampaignFile(BaseModel):
    """On-disk layout: every cycle of one player in one document."""
    player_id: str
    cycles: list[CampaignPhaseState] = Field(default_factory=list)


class JsonCampaignStore:
    """
    File-based campaign storage using JSON.

    Features:
    - One file per player holding every cycle
    - Automatic backup on save
    - Version compare-and-swap under a process-local lock
    """

    def __init__(self, data_dir: Path | str = "campaigns"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, player_id: str) -> Path:
        return self.data_dir / f"{player_id}.json"

    def _read(self, player_id: str) -> PlayerCampaignFile:
        path = self._path(player_id)
        if not path.exists():
            return PlayerCampaignFile(player_id=player_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        return PlayerCampaignFile.model_validate(data)

    def _write(self, document: PlayerCampaignFile) -> None:
        path = self._path(document.player_id)

        # Backup previous save
        if path.exists():
            backup = path.with_suffix(".json.bak")
            backup.write_text(path.read_text(encoding="utf-8"), encoding="utf-8")

        path.write_text(document.model_dump_json(indent=2), encoding="utf-8")

    def load(self, player_id: str) -> CampaignPhaseState | None:
        cycles = self._read(player_id).cycles
        if not cycles:
            return None
        return max(cycles, key=lambda c: c.cycle_sequence)

    def load_cycle(self, player_id: str, cycle_sequence: int) -> CampaignPhaseState | None:
        for record in self._read(player_id).cycles:
            if record.cycle_sequence == cycle_sequence:
                return record
        return None

    def history(self, player_id: str) -> list[CampaignPhaseState]:
        return sorted(self._read(player_id).cycles, key=lambda c: c.cycle_sequence)

    def create(self, record: CampaignPhaseState) -> CampaignPhaseState:
        with self._lock:
            document = self._read(record.player_id)
            latest = max(document.cycles, key=lambda c: c.cycle_sequence, default=None)
            _check_new_cycle(record, latest)
            stored = _check_version(record, None, 0)
            document.cycles = sorted(document.cycles + [stored], key=lambda c: c.cycle_sequence)
            self._write(document)

        logger.debug("Created %s", stored.key)
        return stored

    def save(self, record: CampaignPhaseState, expected_version: int) -> CampaignPhaseState:
        with self._lock:
            document = self._read(record.player_id)
            existing = {c.cycle_sequence: c for c in document.cycles}
            stored = _check_version(record, existing.get(record.cycle_sequence), expected_version)
            existing[record.cycle_sequence] = stored
            document.cycles = [existing[seq] for seq in sorted(existing)]
            self._write(document)

        logger.debug("Saved %s at version %d", stored.key, stored.version)
        return stored

    def list_players(self) -> list[str]:
        return sorted(
            f.stem for f in self.data_dir.glob("*.json")
            if not f.name.startswith(".")
        )


class JsonSnapshotStore:
    """
    Append-only snapshot log, one JSON-lines file per player.

    Each line is one PollingSnapshot; lines are never rewritten.
    """

    def __init__(self, data_dir: Path | str = "polling"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, player_id: str) -> Path:
        return self.data_dir / f"{player_id}.jsonl"

    def append(self, snapshot: PollingSnapshot) -> None:
        line = snapshot.model_dump_json() + "\n"
        with self._lock:
            with open(self._path(snapshot.player_id), "a", encoding="utf-8") as f:
                f.write(line)

    def for_player(
        self,
        player_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PollingSnapshot]:
        path = self._path(player_id)
        if not path.exists():
            return []

        series = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                snapshot = PollingSnapshot.model_validate_json(line)
                if _in_window(snapshot, since, until):
                    series.append(snapshot)
        return sorted(series, key=lambda s: s.captured_at)
