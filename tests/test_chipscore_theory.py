from __future__ import annotations

import pytest

from chipscore.models import MidiNote, SectionDefinition
from chipscore.theory import (
    SoundingNotes,
    chord_intervals,
    chord_root_to_midi,
    convert_to_beats,
    drum_hits_from_pattern,
    ensure_consonant_pitch,
    is_measure_boundary,
    is_strong_beat,
    key_scale_degrees,
    midi_to_frequency,
    pattern_length_beats,
    quantize_midi_to_chord,
    related_chords,
    resolve_chord_at_beat,
    scale_degree_to_midi,
    toggle_chord_quality,
    transpose_chord,
)

C_MAJOR = (0, 2, 4, 5, 7, 9, 11)


def _section(start: int, measures: int, progression: tuple[str, ...]) -> SectionDefinition:
    return SectionDefinition(f"A{start}", start, measures, progression, "A", 1, "steady", 2)


def test_chord_root_to_midi() -> None:
    assert chord_root_to_midi("G", 40) == 43
    assert chord_root_to_midi("Am", 48) == 57
    assert chord_root_to_midi("F#m7", 36) == 42
    assert chord_root_to_midi("???", 40) == 40


def test_chord_intervals_by_quality() -> None:
    assert chord_intervals("C") == (0, 4, 7)
    assert chord_intervals("Am") == (0, 3, 7)
    assert chord_intervals("G7") == (0, 4, 7, 10)
    assert chord_intervals("Cm9") == (0, 3, 7)
    assert chord_intervals("Cmaj9") == (0, 4, 7)


def test_transpose_and_related_chords() -> None:
    assert transpose_chord("A", 2) == "B"
    assert transpose_chord("B", 1) == "C"
    assert transpose_chord("Em", 7) == "Bm"
    assert toggle_chord_quality("Am") == "A"
    assert toggle_chord_quality("C") == "Cm"
    assert related_chords("C") == ("G", "F", "Cm")


def test_key_scale_degrees() -> None:
    assert key_scale_degrees("C_Major") == C_MAJOR
    assert key_scale_degrees("G_Major") == (-5, -3, -1, 0, 2, 4, 6)
    assert key_scale_degrees("E_Minor") == (4, 6, 7, 9, 11, 12, 14)


def test_scale_degree_wraps_octaves() -> None:
    assert scale_degree_to_midi(1, C_MAJOR, 60) == 60
    assert scale_degree_to_midi(5, C_MAJOR, 60) == 67
    assert scale_degree_to_midi(8, C_MAJOR, 60) == 72
    assert scale_degree_to_midi(0, C_MAJOR, 60) == 59
    assert scale_degree_to_midi(1, C_MAJOR, 60, -1) == 48


def test_note_values() -> None:
    assert convert_to_beats(2) == 2.0
    assert convert_to_beats(4) == 1.0
    assert convert_to_beats(8) == 0.5
    assert convert_to_beats(16) == 0.25
    assert convert_to_beats(3) == 0.25
    assert pattern_length_beats((4, 4, 8, 8, 2)) == pytest.approx(5.0)


def test_beat_predicates() -> None:
    assert is_strong_beat(3.0)
    assert not is_strong_beat(3.5)
    assert is_measure_boundary(8.0)
    assert not is_measure_boundary(9.0)
    assert midi_to_frequency(69) == pytest.approx(440.0)


def test_quantize_to_chord_tone() -> None:
    assert quantize_midi_to_chord(61, "C") == 60
    assert quantize_midi_to_chord(62, "C") == 60
    assert quantize_midi_to_chord(66, "C") == 67
    assert quantize_midi_to_chord(70, "Am") == 69


def test_quantize_ties_prefer_earlier_chord_tone() -> None:
    # F# sits between F (seventh) and G (root) of G7.
    assert quantize_midi_to_chord(66, "G7") == 67
    assert quantize_midi_to_chord(71, "C7") == 72


def test_ensure_consonant_pitch_prefers_consonance() -> None:
    assert ensure_consonant_pitch(67, "C", 69) == 64
    assert ensure_consonant_pitch(61, "C") == quantize_midi_to_chord(61, "C")


def test_drum_hits_from_pattern() -> None:
    hits = drum_hits_from_pattern("K-H-", 4.0, "A1")
    assert [(hit.instrument, hit.start_beat, hit.duration_beats) for hit in hits] == [
        ("K", 4.0, 0.25),
        ("H", 4.5, 0.125),
    ]
    assert all(hit.section_id == "A1" for hit in hits)
    assert drum_hits_from_pattern("----", 0.0, "A1") == []


def test_resolve_chord_at_beat_cycles_progression() -> None:
    sections = (_section(0, 4, ("C", "G")), _section(4, 4, ("Am",)))
    assert resolve_chord_at_beat(sections, 0.0) == "C"
    assert resolve_chord_at_beat(sections, 4.5) == "G"
    assert resolve_chord_at_beat(sections, 8.0) == "C"
    assert resolve_chord_at_beat(sections, 17.0) == "Am"
    assert resolve_chord_at_beat(sections, 400.0) == "C"
    assert resolve_chord_at_beat((), 0.0) == "C"


def test_sounding_notes_lookup() -> None:
    notes = [
        MidiNote("melody", 0.0, 1.0, 1, 90, "A1", 72),
        MidiNote("melody", 2.0, 0.5, 3, 90, "A1", 76),
    ]
    sounding = SoundingNotes(notes)
    assert sounding.at(0.5).midi == 72
    assert sounding.at(1.5) is None
    assert sounding.at(2.0).midi == 76
    assert sounding.at(2.5) is None
