from __future__ import annotations

from dataclasses import replace

import pytest

from chipscore.composer import (
    REGISTER_MAX,
    REGISTER_MIN,
    SelectionContext,
    _pad_notes,
    build_bass_measure,
    composition_register,
    merge_transition_hits,
    resolve_bass_pattern,
    select_motifs,
)
from chipscore.config import parse_options
from chipscore.library import BassPatternMotif, default_library
from chipscore.models import DrumHit
from chipscore.rng import DeterministicRNG
from chipscore.structure import VOICE_ARRANGEMENTS, plan_structure
from chipscore.velocity import BASS_DOWNBEAT_ACCENT, BASS_TEXTURE_VELOCITY


def _select(payload: dict, arrangement: str | None = None):
    options = parse_options(payload)
    library = default_library()
    plan = plan_structure(options, library)
    if arrangement is not None:
        plan = replace(plan, voice_arrangement=VOICE_ARRANGEMENTS[arrangement])
    return options, plan, select_motifs(options, plan, library)


def test_hook_section_reprises_its_motifs() -> None:
    _, plan, selection = _select({"mood": "tense", "lengthInMeasures": 32, "seed": 11})
    by_id = {entry.section_id: entry for entry in selection.section_motif_plan}
    first, reprise = by_id["A1"], by_id["A2"]
    assert not first.reprises_hook
    assert reprise.reprises_hook
    assert reprise.primary_rhythm == first.primary_rhythm
    assert reprise.primary_melody == first.primary_melody
    assert reprise.primary_melody_rhythm == first.primary_melody_rhythm
    assert [entry.section_id for entry in selection.section_motif_plan] == [s.id for s in plan.sections]


def test_tracks_follow_the_arrangement() -> None:
    options, plan, selection = _select({"seed": 21, "lengthInMeasures": 16}, "standard")
    assert set(selection.tracks) == {"melody", "accompaniment", "bass"}
    total = plan.total_beats
    for notes in selection.tracks.values():
        for note in notes:
            assert 0 <= note.midi <= 127
            assert 0 <= note.start_beat < total
            assert note.duration_beats > 0
    starts = [hit.start_beat for hit in selection.drums]
    assert starts == sorted(starts)
    assert sum(selection.motif_usage.bass.values()) == options.length_in_measures


def test_melody_covers_every_measure_of_a_dense_piece() -> None:
    _, plan, selection = _select({"mood": "upbeat", "seed": 42, "lengthInMeasures": 8}, "standard")
    measures = {int(note.start_beat // 4) for note in selection.tracks["melody"]}
    assert measures
    assert max(measures) < plan.total_measures


def test_pad_voice_holds_whole_measures() -> None:
    _, plan, selection = _select({"mood": "peaceful", "seed": 4, "lengthInMeasures": 16}, "minimal")
    pad = selection.tracks["pad"]
    assert pad
    assert all(note.duration_beats == 4.0 for note in pad)
    assert all(note.start_beat % 4 == 0 for note in pad)
    assert len(pad) <= plan.total_measures


def test_pad_degrees_restart_at_each_section() -> None:
    options = parse_options({"mood": "peaceful", "seed": 4, "lengthInMeasures": 8})
    library = default_library()
    plan = plan_structure(options, library)
    first = replace(plan.sections[0], id="P1", start_measure=0, measures=3)
    second = replace(plan.sections[0], id="P2", start_measure=3, measures=5)
    plan = replace(plan, sections=(first, second), voice_arrangement=VOICE_ARRANGEMENTS["minimal"])
    ctx = SelectionContext.create(options, plan, library)
    voice = plan.voice_arrangement.voice_for_role("pad").model_copy(update={"priority": 1.0})
    pad = _pad_notes(ctx, voice, DeterministicRNG(1))
    assert [note.degree for note in pad] == [1, 5, 1, 1, 5, 1, 5, 1]
    assert [note.section_id for note in pad] == ["P1"] * 3 + ["P2"] * 5


def test_dual_bass_draws_an_independent_alt_line() -> None:
    _, _, selection = _select({"seed": 9, "lengthInMeasures": 16}, "dualBass")
    assert "bass" in selection.tracks
    alt = selection.tracks["bassAlt"]
    assert alt
    assert all(note.channel_role == "bassAlt" for note in alt)
    assert max(note.midi for note in alt) < 60


def test_layered_bass_scales_velocity() -> None:
    _, _, selection = _select({"seed": 9, "lengthInMeasures": 16}, "layeredBass")
    assert selection.tracks["bass"]
    assert all(28 <= note.velocity <= 54 for note in selection.tracks["bass"])
    assert all(22 <= note.velocity <= 41 for note in selection.tracks.get("bassAlt", ()))


def test_selection_is_deterministic() -> None:
    first = _select({"mood": "sad", "seed": 77})[2]
    second = _select({"mood": "sad", "seed": 77})[2]
    assert first == second


def test_composition_register_is_clamped() -> None:
    for payload in (
        {"mood": "tense", "tempo": "slow", "stylePreset": "lofiChillhop"},
        {"mood": "upbeat", "tempo": "fast", "stylePreset": "progressiveHouse"},
        {"mood": "peaceful", "seed": 1},
    ):
        options = parse_options(payload)
        register = composition_register(options, plan_structure(options))
        assert REGISTER_MIN <= register <= REGISTER_MAX


def test_build_bass_measure_resolves_steps() -> None:
    pattern = BassPatternMotif(id="BP_T", texture="steady", steps=("root", "rest", "fifth", "approach"), tags=())
    notes = build_bass_measure(pattern, "C", "G", 8.0, "A1")
    assert [(note.start_beat, note.midi_override) for note in notes] == [(8.0, 36), (9.0, 43), (9.5, 42)]
    assert notes[0].velocity == BASS_TEXTURE_VELOCITY["steady"] + BASS_DOWNBEAT_ACCENT
    assert notes[1].velocity == BASS_TEXTURE_VELOCITY["steady"]
    assert all(note.duration_beats == 0.5 for note in notes)
    lower = build_bass_measure(pattern, "C", "G", 8.0, "A1", role="bassAlt", octave_offset=-1)
    assert lower[0].midi_override == 24
    assert lower[0].channel_role == "bassAlt"


def test_bass_pattern_is_cached_per_section() -> None:
    options = parse_options({"seed": 3, "lengthInMeasures": 16})
    library = default_library()
    plan = plan_structure(options, library)
    section = plan.sections[0]
    rng = DeterministicRNG(3)
    used: set[str] = set()
    cache: dict[str, BassPatternMotif] = {}
    first = resolve_bass_pattern(library, section, 0, rng, used, cache, plan)
    again = resolve_bass_pattern(library, section, 1, rng, used, cache, plan)
    assert cache[section.id] is first
    assert again is first
    last = resolve_bass_pattern(library, section, section.measures - 1, rng, used, cache, plan)
    assert last is first or "section_end" in last.tags
    assert first.id in used


def test_merge_transition_hits_nudges_collisions() -> None:
    existing = [DrumHit(3.75, 0.25, "K", "A1")]
    merge_transition_hits(existing, [DrumHit(3.75, 0.25, "S", "A1"), DrumHit(3.5, 0.25, "S", "A1")])
    assert [hit.start_beat for hit in existing] == [3.75, pytest.approx(3.8125), 3.5]


def test_merge_transition_hits_gives_up_after_four_shifts() -> None:
    existing = [DrumHit(step / 16, 0.125, "H", "A1") for step in range(5)]
    merge_transition_hits(existing, [DrumHit(0.0, 0.25, "S", "A1")])
    assert existing[-1].start_beat == pytest.approx(0.25)


def test_selection_context_caches_by_template() -> None:
    options = parse_options({"seed": 5})
    plan = plan_structure(options)
    ctx = SelectionContext.create(options, plan, default_library())
    cached = ctx.cache_for("A", "start")
    assert ctx.cache_for("A", "start") is cached
    assert ctx.cache_for("B", "start") is not cached
