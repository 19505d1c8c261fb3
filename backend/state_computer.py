"""Deterministic replay of a context history into its current state.

``compute_state`` is the read model of the engine: the status, phase,
completeness and merged data of a context are whatever replaying its
history yields. The function is pure and linear in the number of entries,
sorts by sequence number instead of trusting input order, and refuses to
fold a history whose sequence numbers collide or skip.

Usage:
    >>> from state_computer import compute_state
    >>> state = compute_state(context.history)
    >>> state.status, state.completeness
    ('in_progress', 40)
"""

import copy
import math
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import structlog

from errors import HistoryIntegrityError
from models.context import ContextEntry, CurrentState, TaskStatus

logger = structlog.get_logger(__name__)


def _ordered(history: Iterable[ContextEntry], start_sequence: int) -> list[ContextEntry]:
    """Sort by sequence number and verify the run is contiguous from ``start_sequence``."""
    entries = sorted(history, key=lambda entry: entry.sequence_number)
    if not entries:
        return entries

    context_id = entries[0].context_id
    foreign = {entry.context_id for entry in entries} - {context_id}
    if foreign:
        logger.error(
            "history_integrity_mixed_contexts",
            context_id=context_id,
            other_context_ids=sorted(foreign),
        )
        raise HistoryIntegrityError(
            f"History for {context_id} contains entries of other contexts",
            context_id=context_id,
        )

    for offset, entry in enumerate(entries):
        expected = start_sequence + offset
        if entry.sequence_number == expected:
            continue
        if entry.sequence_number < expected:
            problem = "duplicate"
            numbers = [expected - 1, entry.sequence_number]
        else:
            problem = "gap"
            numbers = list(range(expected, entry.sequence_number))
        logger.error(
            "history_integrity_violation",
            context_id=context_id,
            problem=problem,
            expected_sequence=expected,
            found_sequence=entry.sequence_number,
        )
        raise HistoryIntegrityError(
            f"Sequence {problem} in history of {context_id}: "
            f"expected {expected}, found {entry.sequence_number}",
            context_id=context_id,
            sequence_numbers=numbers,
        )
    return entries


def _clamp_completeness(value: Any, entry: ContextEntry) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HistoryIntegrityError(
            f"Non-numeric completeness {value!r} at sequence {entry.sequence_number}",
            context_id=entry.context_id,
            sequence_numbers=[entry.sequence_number],
        )
    if isinstance(value, float) and not math.isfinite(value):
        raise HistoryIntegrityError(
            f"Non-finite completeness {value!r} at sequence {entry.sequence_number}",
            context_id=entry.context_id,
            sequence_numbers=[entry.sequence_number],
        )
    return max(0, min(100, round(value)))


def _parse_status(value: Any, entry: ContextEntry) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as e:
        raise HistoryIntegrityError(
            f"Unknown status {value!r} at sequence {entry.sequence_number}",
            context_id=entry.context_id,
            sequence_numbers=[entry.sequence_number],
        ) from e


def _fold(entries: Sequence[ContextEntry]) -> CurrentState:
    status = TaskStatus.PENDING
    phase: str | None = None
    completeness = 0
    data: dict[str, Any] = {}
    last_sequence = 0
    last_updated: datetime | None = None

    for entry in entries:
        for key, value in entry.data.items():
            if key == "status":
                status = _parse_status(value, entry)
            elif key == "phase":
                phase = value if value is None else str(value)
            elif key == "completeness":
                completeness = _clamp_completeness(value, entry)
            else:
                data[key] = value
        last_sequence = entry.sequence_number
        last_updated = entry.timestamp

    return CurrentState(
        status=status,
        phase=phase,
        completeness=completeness,
        # Entries are frozen; hand callers a copy they may mutate freely.
        data=copy.deepcopy(data),
        last_sequence_number=last_sequence,
        last_updated=last_updated,
    )


def compute_state(
    history: Iterable[ContextEntry],
    start_sequence: int = 1,
) -> CurrentState:
    """Replay a history into its current state.

    Args:
        history: Entries of a single context, in any order.
        start_sequence: First sequence number the history must start at.
            Full histories start at 1.

    Returns:
        The derived CurrentState. An empty history yields pending/0%.

    Raises:
        HistoryIntegrityError: On duplicate or missing sequence numbers, or
            a malformed well-known state value.
    """
    return _fold(_ordered(history, start_sequence))


def compute_state_at_sequence(
    history: Iterable[ContextEntry],
    sequence_number: int,
) -> CurrentState:
    """State as it was right after ``sequence_number`` was appended."""
    entries = _ordered(history, 1)
    return _fold([entry for entry in entries if entry.sequence_number <= sequence_number])


def compute_state_at_time(
    history: Iterable[ContextEntry],
    timestamp: datetime,
) -> CurrentState:
    """State as it was at ``timestamp`` (entries at or before it are applied)."""
    entries = _ordered(history, 1)
    return _fold([entry for entry in entries if entry.timestamp <= timestamp])


def diff_states(before: CurrentState, after: CurrentState) -> dict[str, Any]:
    """Describe what changed between two states.

    Returns:
        A dict with optional ``status``/``phase``/``completeness`` change
        records and a ``data`` mapping of added, removed and changed keys.
    """
    diff: dict[str, Any] = {}
    if before.status != after.status:
        diff["status"] = {"before": before.status, "after": after.status}
    if before.phase != after.phase:
        diff["phase"] = {"before": before.phase, "after": after.phase}
    if before.completeness != after.completeness:
        diff["completeness"] = {
            "before": before.completeness,
            "after": after.completeness,
            "delta": after.completeness - before.completeness,
        }

    data_diff: dict[str, Any] = {}
    for key, value in after.data.items():
        if key not in before.data:
            data_diff[key] = {"added": value}
        elif before.data[key] != value:
            data_diff[key] = {"before": before.data[key], "after": value}
    for key, value in before.data.items():
        if key not in after.data:
            data_diff[key] = {"removed": value}
    diff["data"] = data_diff
    return diff
