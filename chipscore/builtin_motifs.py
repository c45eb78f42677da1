"""Curated motif tables bundled with chipscore.

Tag vocabulary:

* rhythm: ``start``/``middle``/``end`` position tags, mood properties
  (``straight``, ``syncopation``, ``simple``, ``accented``, ``open``) and
  style tags (``loop_safe``, ``texture_loop``, ``grid16``, ``percussive_layer``).
* melody: contour tags (``ascending``, ``descending``, ``arch``, ``leaping``,
  ``stepwise``, ``scalar``, ``static``) plus colour (``bright``, ``dark``).
* ``cadence`` and ``loop_safe`` are the structural tags every table understands.
"""

from __future__ import annotations

from typing import Sequence

from .library import (
    BassPatternMotif,
    DrumPattern,
    DutySweep,
    GainProfile,
    MelodyFragment,
    MelodyRhythmMotif,
    MelodyRhythmStep,
    MotifLibrary,
    ParamSetting,
    RhythmMotif,
    TechniqueLibrary,
    TransitionMotif,
)

CHORDS = {
    "G_Major": {
        "overworld_bright": [
            ["G", "C", "D", "G"],
            ["G", "Em", "C", "D"],
            ["G", "D", "Em", "C"],
        ],
        "heroic": [
            ["G", "D", "C", "D"],
            ["C", "D", "G", "G"],
            ["G", "Bm", "C", "D"],
        ],
        "town_peaceful": [
            ["G", "C", "G", "D"],
        ],
    },
    "E_Minor": {
        "ending_sorrowful": [
            ["Em", "C", "G", "D"],
            ["Em", "Am", "B7", "Em"],
            ["Em", "C", "Am", "B"],
        ],
        "dark": [
            ["Em", "Em", "C", "B"],
            ["Em", "D", "C", "B7"],
        ],
        "final_battle_tense": [
            ["Em", "F", "Em", "D"],
            ["Em", "C", "D", "B"],
            ["Em", "G", "Am", "B7"],
        ],
        "castle_majestic": [
            ["Em", "D", "C", "D"],
            ["Am", "Em", "B7", "Em"],
        ],
    },
    "C_Major": {
        "town_peaceful": [
            ["C", "Am", "F", "G"],
            ["C", "F", "C", "G"],
            ["F", "G", "C", "Am"],
        ],
        "simple": [
            ["C", "G", "Am", "F"],
            ["C", "F", "G", "C"],
        ],
        "overworld_bright": [
            ["C", "G", "F", "C"],
        ],
    },
}


def _tags(text: str) -> tuple[str, ...]:
    return tuple(text.split())


def _rhythm(motif_id: str, pattern: Sequence[int], tags: str, variations: str = "") -> RhythmMotif:
    return RhythmMotif(
        id=motif_id,
        length=4.0,
        pattern=tuple(pattern),
        tags=_tags(tags),
        variations=_tags(variations),
    )


RHYTHMS = (
    _rhythm("RH_QUARTERS", (4, 4, 4, 4), "start middle end straight simple loop_safe texture_loop", "RH_QUARTER_EIGHTHS RH_OPEN_BREATH"),
    _rhythm("RH_QUARTER_EIGHTHS", (4, 4, 8, 8, 4), "start middle straight", "RH_QUARTERS RH_EIGHTH_DRIVE"),
    _rhythm("RH_HALF_PULSE", (2, 4, 4), "start end simple open cadence loop_safe", "RH_WHOLE_HALVES"),
    _rhythm("RH_WHOLE_HALVES", (2, 2), "middle end open simple cadence loop_safe", "RH_HALF_PULSE"),
    _rhythm("RH_EIGHTHS", (8, 8, 8, 8, 8, 8, 8, 8), "start middle straight texture_loop percussive_layer", "RH_EIGHTH_DRIVE"),
    _rhythm("RH_EIGHTH_DRIVE", (8, 8, 4, 8, 8, 4), "middle end straight accented loop_safe", "RH_EIGHTHS RH_QUARTER_EIGHTHS"),
    _rhythm("RH_SYNC_CHARLESTON", (4, 8, 8, 2), "start middle syncopation open", "RH_SYNC_OFFBEAT"),
    _rhythm("RH_SYNC_OFFBEAT", (8, 4, 8, 4, 4), "middle end syncopation accented cadence", "RH_SYNC_CHARLESTON RH_SYNC_PUSH"),
    _rhythm("RH_SYNC_PUSH", (8, 8, 8, 4, 8, 4), "start end syncopation accented loop_safe", "RH_SYNC_OFFBEAT"),
    _rhythm("RH_SIXTEENTH_GRID", (16, 16, 8, 16, 16, 8, 4, 4), "start middle grid16 percussive_layer accented", "RH_GRID_LOOP"),
    _rhythm(
        "RH_GRID_LOOP",
        (8, 16, 16, 8, 16, 16, 8, 16, 16, 8, 16, 16),
        "middle end grid16 texture_loop loop_safe percussive_layer straight",
        "RH_SIXTEENTH_GRID",
    ),
    _rhythm("RH_OPEN_BREATH", (2, 4, 8, 8), "start middle end open simple", "RH_QUARTERS"),
    _rhythm("RH_CADENCE_HOLD", (4, 4, 2), "end cadence straight simple loop_safe", "RH_HALF_PULSE"),
)


def _melody(motif_id: str, pattern: Sequence[int], tags: str) -> MelodyFragment:
    return MelodyFragment(id=motif_id, pattern=tuple(pattern), tags=_tags(tags))


MELODIES = (
    _melody("MF_RISING_SCALE", (1, 2, 3, 4, 5, 6), "bright ascending scalar stepwise"),
    _melody("MF_HERO_LEAP", (1, 5, 8, 7, 5, 3), "bright leaping arch"),
    _melody("MF_ARCH_SIMPLE", (1, 3, 5, 6, 5, 3, 1), "simple arch bright loop_safe cadence"),
    _melody("MF_FALLING_SIGH", (8, 7, 6, 5, 4, 3), "dark descending stepwise scalar"),
    _melody("MF_LAMENT", (5, 4, 3, 2, 1, 0), "dark descending cadence loop_safe"),
    _melody("MF_TENSE_TURN", (1, 2, 1, 6, 5, 6, 5), "dark complex"),
    _melody("MF_TENSE_LEAPS", (1, 5, 2, 6, 3, 7), "dark complex leaping"),
    _melody("MF_OSTINATO_PULSE", (1, 1, 5, 1), "texture_loop ostinato loop_safe short static"),
    _melody("MF_OSTINATO_THIRDS", (1, 3, 1, 3, 5, 3), "texture_loop ostinato loop_safe stepwise bright"),
    _melody("MF_STATIC_DRONE", (1, 1, 1, 2, 1), "static short simple loop_safe cadence"),
    _melody("MF_PEACEFUL_ARCH", (3, 4, 5, 6, 5, 4, 3), "simple arch stepwise scalar bright"),
    _melody("MF_BRIGHT_BOUNCE", (1, 3, 5, 3, 6, 5), "bright ascending"),
    _melody("MF_DARK_RIFF", (1, 3, 2, 1, 0, 1), "dark short loop_safe ostinato"),
    _melody("MF_CALL_RESPONSE", (5, 6, 5, 3, 2, 1), "simple descending cadence"),
    _melody("MF_CLIMB", (1, 2, 3, 5, 6, 8), "ascending bright scalar"),
    _melody("MF_SHORT_STEP", (2, 3, 2, 1), "short stepwise scalar simple loop_safe"),
    _melody("MF_LEAP_CADENCE", (5, 1, 4, 1, 2, 1), "leaping cadence dark"),
    _melody("MF_MARCH", (1, 1, 5, 5, 6, 6, 5), "bright simple texture_loop"),
    _melody("MF_SHADOW_STEPS", (3, 2, 3, 4, 3, 2, 1), "dark stepwise arch loop_safe"),
)


def _step(token: str) -> MelodyRhythmStep:
    if token.startswith("r"):
        return MelodyRhythmStep(value=int(token[1:]), rest=True)
    return MelodyRhythmStep(value=int(token))


def _melody_rhythm(motif_id: str, length: float, steps: str, tags: str) -> MelodyRhythmMotif:
    return MelodyRhythmMotif(
        id=motif_id,
        length=length,
        steps=tuple(_step(token) for token in steps.split()),
        tags=_tags(tags),
    )


MELODY_RHYTHMS = (
    _melody_rhythm("MR4_STRAIGHT", 4.0, "4 8 8 4 r4", "start middle simple loop_safe cadence"),
    _melody_rhythm("MR4_SYNC", 4.0, "8 4 8 4 r8 8", "start middle syncopated drive"),
    _melody_rhythm("MR4_LEGATO", 4.0, "2 4 r4", "start end legato rest_heavy loop_safe cadence"),
    _melody_rhythm("MR4_STACCATO", 4.0, "8 r8 8 r8 8 8 4", "start staccato texture_loop grid16"),
    _melody_rhythm("MR8_SONG", 8.0, "4 8 8 4 4 4 4 2", "start simple legato loop_safe cadence"),
    _melody_rhythm("MR8_DRIVE", 8.0, "8 8 4 8 8 4 8 8 8 8 4 r4", "start drive syncopated grid16"),
    _melody_rhythm("MR8_SYNC", 8.0, "8 4 8 4 4 r8 8 4 2", "start syncopated loop_safe texture_loop"),
    _melody_rhythm("MR8_RESTFUL", 8.0, "2 r4 4 4 4 r2", "start rest_heavy legato cadence loop_safe"),
    _melody_rhythm("MR8_STACCATO", 8.0, "8 r8 8 r8 2 8 r8 8 r8 2", "start staccato simple texture_loop"),
    _melody_rhythm("MR16_BALLAD", 16.0, "2 4 4 4 4 2 4 8 8 4 4 2 r2", "start legato simple cadence loop_safe"),
    _melody_rhythm("MR16_RUN", 16.0, "8 8 4 8 8 4 4 4 r4 4 8 8 8 8 4 4 2 r2", "start drive syncopated"),
)


def _drum(motif_id: str, kind: str, pattern: str, tags: str) -> DrumPattern:
    return DrumPattern(
        id=motif_id,
        kind=kind,  # type: ignore[arg-type]
        pattern=pattern,
        length_beats=len(pattern) / 4,
        tags=_tags(tags),
    )


DRUMS = (
    _drum("DB_BACKBEAT", "beat", "K-H-S-H-K-H-S-H-", "straight simple loop_safe texture_loop"),
    _drum("DB_FOUR_ON_FLOOR", "beat", "K-H-K-H-K-H-K-H-", "four_on_floor drive loop_safe percussive_layer"),
    _drum("DB_DRIVE_SIXTEENTHS", "beat", "KHHHSHHHKHHHSHHH", "drive grid16 percussive_layer"),
    _drum("DB_SYNCOPATED", "beat", "K--HS-K-H-K-S-H-", "syncopation accented"),
    _drum("DB_OFFBEAT_OPEN", "beat", "K-O-S-O-K-O-S-O-", "open simple loop_safe cadence"),
    _drum("DB_AMEN_CHOP", "beat", "K-H-S-HKK-HSH-SH", "breakbeat grid16 syncopation percussive_layer"),
    _drum("DB_ROLLING_BREAK", "beat", "K-HKS-HSK-HKS-HS", "breakbeat grid16 percussive_layer"),
    _drum("DB_LOFI_LAZY", "beat", "K---S--HK-K-S---", "lofi rest_heavy swing_hint loop_safe"),
    _drum("DB_LOFI_SWING", "beat", "K--H-HS--K-H-HS-", "lofi swing_hint cadence"),
    _drum("DB_SPARSE_PULSE", "beat", "K-------S-------", "simple open rest_heavy loop_safe cadence"),
    _drum("DB_RETRO_GRID", "beat", "K-HHS-HHK-HHS-HH", "grid16 loop_safe texture_loop syncopation"),
    _drum("DB_TOM_GROOVE", "beat", "K-T-S-H-K-T-S-T-", "accented percussive_layer cadence"),
    _drum("DF_SNARE_ROLL", "fill", "K-H-S-H-SSSSSSSS", "drum_fill build cadence"),
    _drum("DF_TOM_CASCADE", "fill", "K-H-S-H-T-T-TTTT", "drum_fill transition cadence loop_safe"),
    _drum("DF_BREAK_CHOP", "fill", "K-SKS-K-SSK-SSSS", "break breakbeat drum_fill"),
    _drum("DF_NOISE_SWELL", "fill", "K-H-S-H-N---N-N-", "noise_fx build loop_safe"),
    _drum("DF_LOFI_DROP", "fill", "K---S---K--HN---", "lofi noise_fx loop_safe cadence"),
    _drum("DF_BUILD_SIXTEENTHS", "fill", "KHSHKHSHSSSSSSSS", "build drum_fill"),
    _drum("DF_STOP_TIME", "fill", "K-------S-S-SSS-", "break transition cadence loop_safe"),
)


def _bass(motif_id: str, texture: str, steps: str, tags: str) -> BassPatternMotif:
    return BassPatternMotif(
        id=motif_id,
        texture=texture,  # type: ignore[arg-type]
        steps=tuple(steps.split()),  # type: ignore[arg-type]
        tags=_tags(tags),
    )


BASS_PATTERNS = (
    _bass("BP_STEADY_ROOT_FIFTH", "steady", "root root fifth root fifth root fifth approach", "default loop_safe"),
    _bass("BP_STEADY_DRONE", "steady", "root root root root root root root root", "drone static loop_safe"),
    _bass("BP_STEADY_PEDAL", "steady", "root rest root rest root rest root octave", "static four_on_floor percussive_layer"),
    _bass("BP_STEADY_WALK", "steady", "root fifth octave fifth root fifth lowFifth approach", "syncopated variation"),
    _bass("BP_STEADY_PICKUP", "steady", "root root fifth octave root fifth octave approach", "pickup default"),
    _bass("BP_STEADY_END", "steady", "root fifth root lowFifth root rest root rest", "section_end cadence"),
    _bass("BP_STEADY_ACCENT", "steady", "root rest rest root rest rest root rest", "drone accent rest_heavy lofi"),
    _bass("BP_STEADY_BREAK", "steady", "root root rest fifth rest root fifth rest", "breakbeat variation syncopated percussive_layer"),
    _bass("BP_BROKEN_OCTAVES", "broken", "root octave root octave root octave root octave", "default loop_safe percussive_layer four_on_floor"),
    _bass("BP_BROKEN_SYNC", "broken", "root rest fifth root rest fifth root approach", "syncopated breakbeat variation"),
    _bass("BP_BROKEN_LOFI", "broken", "root rest rest fifth root rest lowFifth rest", "lofi rest_heavy loop_safe"),
    _bass("BP_BROKEN_END", "broken", "root fifth octave fifth root lowFifth root rest", "section_end cadence pickup"),
    _bass("BP_ARP_RISE", "arpeggio", "root fifth octave octaveHigh octave fifth root approach", "default pickup"),
    _bass("BP_ARP_PULSE", "arpeggio", "root octave fifth octave root octave fifth octave", "loop_safe syncopated accent"),
    _bass("BP_ARP_DRONE", "arpeggio", "root rest octave rest root rest octave rest", "drone static accent"),
    _bass("BP_ARP_END", "arpeggio", "octaveHigh octave fifth root lowFifth root rest root", "section_end"),
)


def _transition(motif_id: str, pattern: str, tags: str) -> TransitionMotif:
    return TransitionMotif(id=motif_id, pattern=pattern, length_beats=len(pattern) / 4, tags=_tags(tags))


TRANSITIONS = (
    _transition("TR_SNARE_PICKUP", "SSSS", "transition section_end drum_fill loop_out"),
    _transition("TR_TOM_RUN", "T-T-TTTT", "transition section_end drum_fill build"),
    _transition("TR_NOISE_RISE", "N---N-N-NNNN", "transition section_end noise_fx build loop_out"),
    _transition("TR_CRASH_OUT", "N-------", "transition section_end loop_out noise_fx"),
    _transition("TR_BUILD_ROLL", "S-S-S-S-SSSSSSSS", "transition section_end build"),
    _transition("TR_HAT_TICK", "H-H-HHHH", "transition section_end loop_out"),
)

TECHNIQUES = TechniqueLibrary(
    initial_params=(
        ParamSetting(channel="square1", param="duty", value=0.5),
        ParamSetting(channel="square1", param="gain", value=0.8),
        ParamSetting(channel="square2", param="duty", value=0.25),
        ParamSetting(channel="square2", param="gain", value=0.7),
        ParamSetting(channel="triangle", param="gain", value=0.62),
        ParamSetting(channel="noise", param="gain", value=0.78),
    ),
    duty_sweeps=(
        DutySweep(
            id="SQ1_LONG_NOTE_SWEEP",
            param="duty",
            channels=("square1",),
            min_duration_beats=1.5,
            steps=(0.5, 0.375, 0.25),
        ),
        DutySweep(
            id="SQ2_DOWNBEAT_SWEEP",
            param="duty",
            channels=("square2",),
            min_duration_beats=1.0,
            steps=(0.25, 0.125),
            require_measure_boundary=True,
        ),
    ),
    gain_profiles=(
        GainProfile(id="TRI_DOWNBEAT", channel="triangle", measure_boundary_value=0.7, default_value=0.6),
        GainProfile(id="NOISE_DOWNBEAT", channel="noise", measure_boundary_value=0.82, default_value=0.76),
    ),
)


def build_library() -> MotifLibrary:
    return MotifLibrary(
        chords=CHORDS,
        rhythms=RHYTHMS,
        melodies=MELODIES,
        melody_rhythms=MELODY_RHYTHMS,
        drums=DRUMS,
        bass_patterns=BASS_PATTERNS,
        transitions=TRANSITIONS,
        techniques=TECHNIQUES,
    )
