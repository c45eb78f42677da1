from __future__ import annotations

import pytest

from chipscore.config import StyleIntent
from chipscore.library import DutySweep, GainProfile, ParamSetting, TechniqueLibrary, default_library
from chipscore.models import NoiseNoteOn, NoteOff, PitchNoteOn, TimedEvent
from chipscore.techniques import (
    FILTER_SWELL,
    NOISE_PUNCH,
    SIDECHAIN_SQ1,
    SIDECHAIN_SQ2,
    NoteOffIndex,
    apply_techniques,
    break_dip_events,
    gradual_build_ramp,
    style_bundles,
)


def _note(channel: str, start: float, end: float, midi: int = 72) -> list[TimedEvent]:
    return [
        TimedEvent(start, channel, "noteOn", PitchNoteOn(midi=midi, velocity=90)),
        TimedEvent(end, channel, "noteOff", NoteOff()),
    ]


def _hit(start: float) -> list[TimedEvent]:
    payload = NoiseNoteOn(
        noise_mode="long_period",
        velocity=120,
        amplitude=1.0,
        release_seconds=0.05,
        decay_seconds=0.035,
        period_index=3,
    )
    return [TimedEvent(start, "noise", "noteOn", payload), TimedEvent(start + 0.25, "noise", "noteOff", NoteOff())]


def _params(events: list[TimedEvent]) -> list[tuple[float, str, str, float]]:
    return [
        (event.beat_time, event.channel, event.data.param, event.data.value)
        for event in events
        if event.command == "setParam"
    ]


def test_note_off_index() -> None:
    index = NoteOffIndex([*_note("square1", 0.0, 1.0), *_note("square1", 1.0, 3.0)])
    assert index.after("square1", 0.0) == 1.0
    assert index.after("square1", 1.0) == 3.0
    assert index.after("square1", 3.0) is None
    assert index.after("triangle", 0.0) is None


def test_break_dip_pairs() -> None:
    events = break_dip_events(7)
    assert sorted(_params(events)) == sorted(
        [
            (27.75, "noise", "gain", 0.45),
            (29.0, "noise", "gain", 0.78),
            (27.75, "square1", "gain", 0.55),
            (29.0, "square1", "gain", 0.82),
            (27.75, "square2", "gain", 0.55),
            (29.0, "square2", "gain", 0.82),
        ]
    )
    assert {event.beat_time for event in break_dip_events(0)} == {0.0, 1.0}


def test_gradual_build_ramp() -> None:
    events = gradual_build_ramp(16, loop_centric=False)
    square1 = [(beat, value) for beat, channel, _, value in _params(events) if channel == "square1"]
    assert [beat for beat, _ in square1] == [float(m * 4) for m in range(0, 16, 2)]
    assert square1[0][1] == pytest.approx(0.68)
    assert square1[-1][1] == pytest.approx(0.885)
    values = [value for _, value in square1]
    assert values == sorted(values)
    assert len(events) == 32


def test_style_bundles() -> None:
    sweeps, profiles = style_bundles(StyleIntent(filter_motion=True, percussive_layering=True))
    assert sweeps == [FILTER_SWELL]
    assert profiles == [NOISE_PUNCH, SIDECHAIN_SQ1, SIDECHAIN_SQ2]
    _, with_breaks = style_bundles(StyleIntent(percussive_layering=True, break_insertion=True))
    assert with_breaks == [NOISE_PUNCH]
    assert style_bundles(StyleIntent()) == ([], [])


def test_initial_params_lead_the_timeline() -> None:
    library = TechniqueLibrary(initial_params=(ParamSetting("square1", "duty", 0.5),))
    result = apply_techniques(_note("square1", 0.0, 1.0), StyleIntent(), library)
    assert [event.command for event in result] == ["setParam", "noteOn", "noteOff"]
    assert _params(result) == [(0.0, "square1", "duty", 0.5)]


def test_duty_sweep_spreads_over_sustained_note() -> None:
    sweep = DutySweep(id="SW", param="duty", channels=("square1",), min_duration_beats=1.0, steps=(0.2, 0.4, 0.6, 0.8))
    library = TechniqueLibrary(duty_sweeps=(sweep,))
    result = apply_techniques(
        [*_note("square1", 0.0, 2.0), *_note("square2", 0.0, 2.0), *_note("square1", 4.0, 4.5)],
        StyleIntent(),
        library,
    )
    params = _params(result)
    assert [beat for beat, *_ in params] == pytest.approx([0.4, 0.8, 1.2, 1.6])
    assert {channel for _, channel, _, _ in params} == {"square1"}


def test_gain_profile_accents_downbeats() -> None:
    profile = GainProfile(id="GP", channel="triangle", measure_boundary_value=0.9, default_value=0.7)
    library = TechniqueLibrary(gain_profiles=(profile,))
    result = apply_techniques([*_note("triangle", 4.0, 5.0), *_note("triangle", 5.0, 6.0)], StyleIntent(), library)
    assert _params(result) == [(4.0, "triangle", "gain", 0.9), (5.0, "triangle", "gain", 0.7)]


def test_break_insertion_dips_once_per_cycle() -> None:
    events = [*_hit(27.0), *_hit(28.0), *_hit(29.0), *_hit(60.0), *_hit(63.0)]
    result = apply_techniques(events, StyleIntent(break_insertion=True), TechniqueLibrary())
    noise_dips = [beat for beat, channel, _, value in _params(result) if channel == "noise" and value == 0.45]
    assert noise_dips == [27.75, 59.75]


def test_note_events_pass_through_unchanged() -> None:
    events = [*_note("square1", 0.0, 2.0), *_hit(1.0)]
    intent = StyleIntent(filter_motion=True, percussive_layering=True, gradual_build=True, atmos_pad=True)
    result = apply_techniques(events, intent, default_library().techniques)
    notes = [event for event in result if event.command != "setParam"]
    assert notes == sorted(events, key=lambda event: event.beat_time)
    beats = [event.beat_time for event in result]
    assert beats == sorted(beats)
