import pytest

from src.personality.services.records import ChunkRecord, GenerationRecord, OutputsRecord
from src.personality.services.relay import OutputRelay, RelayClosed
from src.personality.services.scope import GenerationScopeTracker, ScopeState


START = GenerationRecord("start", "output")
END = GenerationRecord("end", "output")


def _relay_all(tracker, records):
    relay = OutputRelay()
    out = []
    for rec in records:
        tracker.observe(rec)
        if isinstance(rec, ChunkRecord):
            piece = relay.on_chunk(rec, tracker.is_open)
            if piece is not None:
                out.append(piece)
    return out, relay


def test_explicit_boundaries_gate_forwarding():
    tracker = GenerationScopeTracker()
    records = [
        ChunkRecord("thinking"),
        START,
        ChunkRecord("Hello "),
        ChunkRecord("world"),
        END,
        ChunkRecord("after"),
    ]
    out, relay = _relay_all(tracker, records)
    assert out == ["Hello ", "world"]
    assert relay.text == "Hello world"
    assert tracker.state is ScopeState.CLOSED
    assert not tracker.forced


def test_other_labels_do_not_move_scope_but_are_counted():
    tracker = GenerationScopeTracker()
    tracker.observe(GenerationRecord("start", "reasoning"))
    assert not tracker.is_open
    tracker.observe(START)
    tracker.observe(GenerationRecord("end", "reasoning"))
    assert tracker.is_open
    assert tracker.generations["reasoning:start"] == 1
    assert tracker.generations["output:start"] == 1


def test_fallback_forces_scope_open_after_threshold():
    tracker = GenerationScopeTracker(fallback_after=5)
    records = [ChunkRecord(f"c{i}") for i in range(8)]
    out, _ = _relay_all(tracker, records)
    # the fifth record reaches the threshold and is itself forwarded
    assert out == ["c4", "c5", "c6", "c7"]
    assert tracker.forced


def test_forced_open_only_closes_on_explicit_end():
    tracker = GenerationScopeTracker(fallback_after=2)
    records = [
        OutputsRecord({}),
        ChunkRecord("a"),
        GenerationRecord("end", "reasoning"),
        ChunkRecord("b"),
        END,
        ChunkRecord("c"),
        ChunkRecord("d"),
        ChunkRecord("e"),
    ]
    out, _ = _relay_all(tracker, records)
    assert out == ["a", "b"]
    assert tracker.state is ScopeState.CLOSED


def test_explicit_boundary_disables_fallback():
    tracker = GenerationScopeTracker(fallback_after=3)
    records = [START, END] + [ChunkRecord("x")] * 10
    out, _ = _relay_all(tracker, records)
    assert out == []
    assert not tracker.forced


def test_relay_refuses_after_close_and_closes_once():
    relay = OutputRelay()
    assert relay.on_chunk(ChunkRecord(""), True) == ""
    assert relay.close() is True
    assert relay.close() is False
    with pytest.raises(RelayClosed):
        relay.on_chunk(ChunkRecord("late"), True)
    with pytest.raises(RelayClosed):
        relay.on_chunk(ChunkRecord("late"), False)
