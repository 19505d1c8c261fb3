"""Tests for state_computer -- deterministic replay of context histories."""

import random
import time
from datetime import timedelta

import pytest

from errors import HistoryIntegrityError
from models.context import TaskStatus
from state_computer import (
    compute_state,
    compute_state_at_sequence,
    compute_state_at_time,
    diff_states,
)
from tests.conftest import make_entry


# ============================================================================
# Replay basics
# ============================================================================


class TestComputeState:
    """Folding a history into status, phase, completeness and data."""

    def test_empty_history_is_pending(self) -> None:
        state = compute_state([])
        assert state.status == TaskStatus.PENDING
        assert state.phase is None
        assert state.completeness == 0
        assert state.data == {}
        assert state.last_sequence_number == 0
        assert state.last_updated is None

    def test_later_entries_override_earlier_ones(self) -> None:
        history = [
            make_entry(1, {"status": "pending", "completeness": 0, "email": "a@acme.com"}),
            make_entry(2, {"status": "in_progress", "phase": "discovery", "completeness": 20}),
            make_entry(3, {"email": "b@acme.com", "business": {"name": "Acme"}}),
        ]

        state = compute_state(history)

        assert state.status == TaskStatus.IN_PROGRESS
        assert state.phase == "discovery"
        assert state.completeness == 20
        assert state.data == {"email": "b@acme.com", "business": {"name": "Acme"}}
        assert state.last_sequence_number == 3
        assert state.last_updated == history[-1].timestamp

    def test_well_known_keys_do_not_leak_into_data(self) -> None:
        state = compute_state([make_entry(1, {"status": "blocked", "phase": "p", "completeness": 5})])
        assert state.data == {}

    def test_input_order_does_not_matter(self) -> None:
        history = [
            make_entry(n, {"status": "in_progress", "completeness": n * 10, f"k{n}": n})
            for n in range(1, 8)
        ]
        shuffled = list(history)
        random.Random(7).shuffle(shuffled)

        assert compute_state(shuffled) == compute_state(history)

    def test_replay_is_idempotent(self) -> None:
        history = [make_entry(1, {"a": 1}), make_entry(2, {"b": {"c": 2}})]
        assert compute_state(history) == compute_state(history)

    def test_returned_data_is_a_copy(self) -> None:
        history = [make_entry(1, {"business": {"name": "Acme"}})]
        state = compute_state(history)
        state.data["business"]["name"] = "Changed"

        assert history[0].data["business"]["name"] == "Acme"
        assert compute_state(history).data["business"]["name"] == "Acme"

    def test_phase_can_be_cleared(self) -> None:
        history = [make_entry(1, {"phase": "a"}), make_entry(2, {"phase": None})]
        assert compute_state(history).phase is None


# ============================================================================
# Completeness clamping
# ============================================================================


class TestCompleteness:
    """Completeness is clamped to [0, 100] on replay."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1000, 100), (-5, 0), (42, 42), (33.6, 34)],
    )
    def test_clamped(self, value: float, expected: int) -> None:
        state = compute_state([make_entry(1, {"completeness": value})])
        assert state.completeness == expected

    def test_non_numeric_completeness_is_rejected(self) -> None:
        with pytest.raises(HistoryIntegrityError):
            compute_state([make_entry(1, {"completeness": "half"})])

    def test_boolean_completeness_is_rejected(self) -> None:
        with pytest.raises(HistoryIntegrityError):
            compute_state([make_entry(1, {"completeness": True})])

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_completeness_is_rejected(self, value: float) -> None:
        history = [make_entry(1, {"status": "in_progress"}), make_entry(2, {"completeness": value})]
        with pytest.raises(HistoryIntegrityError) as exc_info:
            compute_state(history)
        assert exc_info.value.sequence_numbers == [2]

    def test_thousand_entries_with_out_of_range_values(self) -> None:
        values = [(-1) ** n * (n * 7) for n in range(1, 1001)]
        history = [make_entry(n, {"completeness": value}) for n, value in enumerate(values, start=1)]

        for cut in (1, 2, 499, 500, 1000):
            state = compute_state(history[:cut])
            assert 0 <= state.completeness <= 100
            assert state.completeness == max(0, min(100, values[cut - 1]))
        assert compute_state(history).last_sequence_number == 1000

    def test_replay_time_grows_linearly(self) -> None:
        def timed(count: int) -> float:
            history = [
                make_entry(n, {"completeness": 150 if n % 2 else -20, f"k{n % 10}": n})
                for n in range(1, count + 1)
            ]
            started = time.perf_counter()
            compute_state(history)
            return time.perf_counter() - started

        small = timed(1000)
        large = timed(10_000)

        # Quadratic replay would take ~100x longer for 10x the entries
        assert large < 25 * max(small, 0.005)

    def test_unknown_status_is_rejected(self) -> None:
        with pytest.raises(HistoryIntegrityError) as exc_info:
            compute_state([make_entry(1, {"status": "sleeping"})])
        assert exc_info.value.sequence_numbers == [1]


# ============================================================================
# Integrity checks
# ============================================================================


class TestIntegrity:
    """Duplicate and missing sequence numbers are refused."""

    def test_gap_raises(self) -> None:
        with pytest.raises(HistoryIntegrityError) as exc_info:
            compute_state([make_entry(1), make_entry(2), make_entry(4)])
        assert exc_info.value.sequence_numbers == [3]
        assert exc_info.value.context_id == "ctx_test"

    def test_duplicate_raises(self) -> None:
        with pytest.raises(HistoryIntegrityError) as exc_info:
            compute_state([make_entry(1), make_entry(2), make_entry(2)])
        assert exc_info.value.sequence_numbers == [2, 2]

    def test_history_not_starting_at_one_raises(self) -> None:
        with pytest.raises(HistoryIntegrityError):
            compute_state([make_entry(2), make_entry(3)])

    def test_custom_start_sequence(self) -> None:
        state = compute_state([make_entry(5, {"a": 1}), make_entry(6)], start_sequence=5)
        assert state.last_sequence_number == 6

    def test_mixed_contexts_raise(self) -> None:
        with pytest.raises(HistoryIntegrityError):
            compute_state([make_entry(1), make_entry(2, context_id="ctx_other")])


# ============================================================================
# Point-in-time replay and diffs
# ============================================================================


class TestPointInTime:
    """State at a sequence number or timestamp."""

    def test_at_sequence(self) -> None:
        history = [
            make_entry(1, {"status": "pending", "completeness": 0}),
            make_entry(2, {"status": "in_progress", "completeness": 50}),
            make_entry(3, {"status": "completed", "completeness": 100}),
        ]

        state = compute_state_at_sequence(history, 2)

        assert state.status == TaskStatus.IN_PROGRESS
        assert state.completeness == 50
        assert state.last_sequence_number == 2

    def test_at_time(self) -> None:
        first = make_entry(1, {"a": 1})
        second = make_entry(2, {"b": 2}).model_copy(
            update={"timestamp": first.timestamp + timedelta(minutes=5)}
        )

        state = compute_state_at_time([first, second], first.timestamp + timedelta(minutes=1))

        assert state.data == {"a": 1}
        assert state.last_sequence_number == 1

    def test_at_time_before_first_entry_is_empty(self) -> None:
        entry = make_entry(1, {"a": 1})
        state = compute_state_at_time([entry], entry.timestamp - timedelta(seconds=1))
        assert state.last_sequence_number == 0


class TestDiffStates:
    """diff_states reports state and data changes."""

    def test_diff(self) -> None:
        before = compute_state([make_entry(1, {"status": "pending", "a": 1, "gone": True})])
        after = compute_state(
            [
                make_entry(1, {"status": "pending", "a": 1, "gone": True}),
                make_entry(2, {"status": "in_progress", "completeness": 40, "a": 2, "new": "x"}),
            ]
        )
        after.data.pop("gone")

        diff = diff_states(before, after)

        assert diff["status"] == {"before": TaskStatus.PENDING, "after": TaskStatus.IN_PROGRESS}
        assert diff["completeness"]["delta"] == 40
        assert "phase" not in diff
        assert diff["data"] == {
            "a": {"before": 1, "after": 2},
            "new": {"added": "x"},
            "gone": {"removed": True},
        }

    def test_identical_states_have_empty_data_diff(self) -> None:
        state = compute_state([make_entry(1, {"a": 1})])
        assert diff_states(state, state) == {"data": {}}
