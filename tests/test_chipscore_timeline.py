from __future__ import annotations

import pytest

from chipscore.config import parse_options
from chipscore.models import Event, MotifUsage, NoteOff, PitchNoteOn, TimedEvent
from chipscore.realization import VoiceAllocation
from chipscore.structure import plan_structure
from chipscore.timeline import LOOP_WRAP_WINDOW_SECONDS, beats_to_seconds, compute_loop_window, finalize_timeline


def test_beats_to_seconds() -> None:
    assert beats_to_seconds(4, 120) == pytest.approx(2.0)
    assert beats_to_seconds(64, 90) == pytest.approx(64 * 60 / 90)
    assert beats_to_seconds(0, 150) == 0.0


def test_loop_window_collects_seam_events() -> None:
    events = [
        Event(time=0.0, channel="square1", command="noteOn", data=PitchNoteOn(midi=72, velocity=90)),
        Event(time=0.05, channel="square1", command="noteOff", data=NoteOff()),
        Event(time=1.0, channel="square1", command="noteOn", data=PitchNoteOn(midi=74, velocity=90)),
        Event(time=3.95, channel="square1", command="noteOff", data=NoteOff()),
        Event(time=4.0, channel="triangle", command="noteOff", data=NoteOff()),
    ]
    window = compute_loop_window(events)
    assert [event.time for event in window.head] == [0.0, 0.05]
    assert [event.time for event in window.tail] == [3.95, 4.0]
    assert LOOP_WRAP_WINDOW_SECONDS == pytest.approx(0.1)
    assert compute_loop_window([]).head == ()


def test_finalize_timeline_converts_and_collects_diagnostics() -> None:
    options = parse_options({"lengthInMeasures": 4, "seed": 2})
    plan = plan_structure(options)
    events = [
        TimedEvent(2.0, "square1", "noteOn", PitchNoteOn(midi=72, velocity=90)),
        TimedEvent(0.0, "triangle", "noteOn", PitchNoteOn(midi=48, velocity=70)),
        TimedEvent(3.0, "square1", "noteOff", NoteOff()),
        TimedEvent(1.0, "triangle", "noteOff", NoteOff()),
    ]
    allocation = [VoiceAllocation(0.0, "triangle", 1), VoiceAllocation(1.0, "triangle", 0)]
    usage = MotifUsage(rhythm={"RH": 2})
    finalized, diagnostics = finalize_timeline(plan, events, allocation, usage, [])
    seconds_per_beat = 60 / plan.bpm
    assert [event.time for event in finalized] == pytest.approx([0.0, seconds_per_beat, 2 * seconds_per_beat, 3 * seconds_per_beat])
    assert [event.channel for event in finalized] == ["triangle", "triangle", "square1", "square1"]
    assert diagnostics.voice_allocation[1].time == pytest.approx(seconds_per_beat)
    assert diagnostics.motif_usage.rhythm == {"RH": 2}
    assert diagnostics.loop_window.head[0].channel == "triangle"
