from __future__ import annotations

from dataclasses import replace

import pytest

from chipscore.composer import select_motifs
from chipscore.config import StyleIntent, parse_options
from chipscore.library import default_library
from chipscore.models import DrumHit, TechniqueStrategy
from chipscore.realization import (
    NOISE_INSTRUMENTS,
    _PitchedNote,
    _RealizationContext,
    adjust_velocity_for_channel,
    allows_noise_stacking,
    arpeggio_intervals,
    compute_voice_allocation,
    make_monophonic,
    portamento_probability,
    portamento_seconds,
    realize_drums,
    realize_events,
    resolve_arpeggio_profile,
    resolve_noise_release,
)
from chipscore.rng import DeterministicRNG
from chipscore.structure import VOICE_ARRANGEMENTS, plan_structure
from chipscore.theory import SoundingNotes


def _context(length: int = 4, seed: int = 1) -> _RealizationContext:
    options = parse_options({"lengthInMeasures": length, "seed": seed})
    plan = plan_structure(options)
    return _RealizationContext(
        options=options,
        plan=plan,
        rng=DeterministicRNG(seed),
        section_by_id={section.id: section for section in plan.sections},
        melody=SoundingNotes(()),
    )


def _pairs(events):
    return [(event.command, event.beat_time) for event in events]


def test_adjust_velocity_for_channel() -> None:
    assert adjust_velocity_for_channel("square1", "melody", 72, 100) == 100
    assert adjust_velocity_for_channel("triangle", "bass", 40, 100) == 45
    assert adjust_velocity_for_channel("square2", "bass", 60, 100) == 57
    assert adjust_velocity_for_channel("triangle", "pad", 60, 80) == 54
    assert adjust_velocity_for_channel("square1", "melody", 72, 200) == 118
    assert adjust_velocity_for_channel("square1", "melody", 72, 1) == 20


def test_portamento_settings() -> None:
    assert portamento_probability(StyleIntent(atmos_pad=True)) == pytest.approx(0.4)
    assert portamento_probability(StyleIntent(loop_centric=True, texture_focus=True)) == pytest.approx(0.35)
    assert portamento_probability(StyleIntent()) == pytest.approx(0.15)
    assert portamento_seconds("slow", 2) == pytest.approx(0.08)
    assert portamento_seconds("fast", 5) == pytest.approx(0.055)


def test_arpeggio_shapes() -> None:
    assert arpeggio_intervals("C") == [0, 4, 7, 12]
    assert arpeggio_intervals("Am7") == [0, 3, 7, 10]
    profile = resolve_arpeggio_profile(StyleIntent(gradual_build=True), "arpeggio")
    assert (profile.sparse_threshold, profile.normal_threshold) == (0.25, 0.65)


def test_make_monophonic_truncates_and_folds() -> None:
    notes = [
        _PitchedNote(0.0, 2.0, 60, 90),
        _PitchedNote(1.0, 1.0, 64, 90),
        _PitchedNote(1.0, 1.5, 67, 80, detune_cents=12.0),
        _PitchedNote(3.5, 2.0, 72, 90),
        _PitchedNote(4.0, 1.0, 74, 90),
    ]
    result = make_monophonic(notes, total_beats=4.0)
    assert [(note.start, note.duration, note.midi) for note in result] == [
        (0.0, 1.0, 60),
        (1.0, 1.5, 64),
        (3.5, 0.5, 72),
    ]
    assert result[1].detune_cents == 12.0


def test_noise_stacking_pairs() -> None:
    assert allows_noise_stacking("H", "H")
    assert allows_noise_stacking("O", "H")
    assert not allows_noise_stacking("K", "H")
    assert not allows_noise_stacking(None, "H")


def test_noise_release_stays_in_range() -> None:
    rng = DeterministicRNG(4)
    for instrument in NOISE_INSTRUMENTS.values():
        low, high = instrument.release_range
        for intent in (StyleIntent(), StyleIntent(percussive_layering=True), StyleIntent(gradual_build=True)):
            assert low <= resolve_noise_release(instrument, intent, rng) <= high


def test_colliding_noise_hit_replaces_the_earlier_one() -> None:
    hits = [DrumHit(0.0, 0.25, "K", "A1"), DrumHit(0.0, 0.125, "H", "A1")]
    events = realize_drums(hits, _context())
    assert _pairs(events) == [("noteOn", 0.0625), ("noteOff", 0.1875)]
    assert events[0].data.noise_mode == "short_period"


def test_stackable_noise_hits_shorten_the_previous_note() -> None:
    hits = [DrumHit(0.0, 0.125, "H", "A1"), DrumHit(0.0, 0.125, "H", "A1")]
    events = realize_drums(hits, _context())
    assert _pairs(events) == [
        ("noteOn", 0.0),
        ("noteOff", 0.0625),
        ("noteOn", 0.0625),
        ("noteOff", 0.1875),
    ]


def test_noise_hits_clamp_to_the_loop() -> None:
    hits = [DrumHit(15.75, 0.375, "O", "A1"), DrumHit(16.0, 0.25, "K", "A1")]
    events = realize_drums(hits, _context(length=4))
    assert _pairs(events) == [("noteOn", 15.75), ("noteOff", 16.0)]


def test_noise_notes_never_exceed_half_a_beat() -> None:
    events = realize_drums([DrumHit(0.0, 2.0, "T", "A1")], _context())
    assert _pairs(events) == [("noteOn", 0.0), ("noteOff", 0.5)]


def test_voice_allocation_counts() -> None:
    events = realize_drums([DrumHit(0.0, 0.25, "K", "A1"), DrumHit(1.0, 0.25, "S", "A1")], _context())
    allocation = compute_voice_allocation(events)
    assert [entry.active_count for entry in allocation] == [1, 0, 1, 0]
    assert all(entry.channel == "noise" for entry in allocation)


def test_realized_channels_are_monophonic() -> None:
    options = parse_options({"mood": "upbeat", "seed": 31, "lengthInMeasures": 16})
    library = default_library()
    plan = plan_structure(options, library)
    for arrangement in ("standard", "lofiPadLead", "dualBass"):
        arranged = replace(plan, voice_arrangement=VOICE_ARRANGEMENTS[arrangement])
        realization = realize_events(options, arranged, select_motifs(options, arranged, library))
        beats = [event.beat_time for event in realization.events]
        assert beats == sorted(beats)
        for channel in ("square1", "square2", "triangle", "noise"):
            active = 0
            for event in realization.events:
                if event.channel != channel or event.command == "setParam":
                    continue
                active += 1 if event.command == "noteOn" else -1
                assert active in (0, 1)
            assert active == 0
        assert all(0.0 <= beat <= plan.total_beats for beat in beats)
        assert max(entry.active_count for entry in realization.voice_allocation) == 1


def test_pad_voice_is_textured_like_accompaniment() -> None:
    options = parse_options({"mood": "peaceful", "seed": 4, "lengthInMeasures": 8})
    library = default_library()
    plan = plan_structure(options, library)
    plan = replace(
        plan,
        sections=tuple(replace(section, texture="broken") for section in plan.sections),
        technique_strategy=TechniqueStrategy(0.0, 0.0, 0.0),
        voice_arrangement=VOICE_ARRANGEMENTS["lofiPadLead"],
    )
    selection = select_motifs(options, plan, library)
    pad = selection.tracks["pad"]
    assert pad
    realization = realize_events(options, plan, selection)
    onsets = [
        event.beat_time
        for event in realization.events
        if event.channel == "triangle" and event.command == "noteOn"
    ]
    assert len(onsets) == 2 * len(pad)
    for note in pad:
        assert note.start_beat in onsets
        assert note.start_beat + 0.5 in onsets
