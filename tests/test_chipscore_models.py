from __future__ import annotations

import pytest
from pydantic import ValidationError

from chipscore.errors import InvalidEventError
from chipscore.models import (
    Event,
    NoiseNoteOn,
    NoteOff,
    PitchNoteOn,
    SectionDefinition,
    SetParam,
    Slide,
    TimedEvent,
    VoiceArrangement,
)
from chipscore.structure import VOICE_ARRANGEMENTS


def _noise() -> NoiseNoteOn:
    return NoiseNoteOn(
        noise_mode="short_period",
        velocity=118,
        amplitude=0.86,
        release_seconds=0.02,
        decay_seconds=0.014,
        period_index=0,
    )


def test_event_payload_must_match_channel() -> None:
    with pytest.raises(InvalidEventError):
        Event(time=0.0, channel="square1", command="noteOn", data=_noise())
    with pytest.raises(InvalidEventError):
        Event(time=0.0, channel="noise", command="noteOn", data=PitchNoteOn(midi=60, velocity=80))
    with pytest.raises(InvalidEventError):
        TimedEvent(0.0, "square2", "noteOff", PitchNoteOn(midi=60, velocity=80))
    with pytest.raises(InvalidEventError):
        TimedEvent(0.0, "triangle", "setParam", NoteOff())


def test_event_parses_camel_case_payloads() -> None:
    event = Event.model_validate(
        {
            "time": 1.5,
            "channel": "square1",
            "command": "noteOn",
            "data": {"kind": "pitch", "midi": 72, "velocity": 90, "slide": {"targetMidi": 74, "durationSeconds": 0.06}},
        }
    )
    assert isinstance(event.data, PitchNoteOn)
    assert event.data.slide == Slide(target_midi=74, duration_seconds=0.06)
    dumped = event.model_dump(by_alias=True, exclude_none=True)
    assert dumped["data"]["slide"]["targetMidi"] == 74
    assert "detuneCents" not in dumped["data"]


def test_payload_ranges_are_enforced() -> None:
    with pytest.raises(ValidationError):
        PitchNoteOn(midi=128, velocity=90)
    with pytest.raises(ValidationError):
        Event(time=-1.0, channel="square1", command="noteOff", data=NoteOff())
    with pytest.raises(ValidationError):
        NoiseNoteOn(
            noise_mode="short_period",
            velocity=100,
            amplitude=1.2,
            release_seconds=0.02,
            decay_seconds=0.01,
            period_index=0,
        )


def test_set_param_event() -> None:
    event = TimedEvent(0.0, "noise", "setParam", SetParam(param="gain", value=0.78))
    assert event.data.kind == "param"


def test_section_definition_measures() -> None:
    section = SectionDefinition("B1", 8, 4, ("C", "G"), "B", 1, "arpeggio", 2)
    assert section.end_measure == 12
    assert section.contains_measure(8)
    assert not section.contains_measure(12)


def test_voice_lookup_by_role() -> None:
    arrangement: VoiceArrangement = VOICE_ARRANGEMENTS["lofiPadLead"]
    assert arrangement.voice_for_role("pad").channel == "triangle"
    assert arrangement.voice_for_role("bass") is None
