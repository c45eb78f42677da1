from __future__ import annotations

import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Collection, Iterable, Mapping, Optional, Protocol, Sequence, TypeVar

from .config import ArrangementId, FunctionalTag, Mood, StyleIntent, Texture
from .errors import MotifLibraryError
from .library import (
    BassPatternMotif,
    DrumPattern,
    MelodyFragment,
    MelodyRhythmMotif,
    MotifLibrary,
    RhythmMotif,
    TransitionMotif,
)
from .rng import DeterministicRNG
from .theory import BEATS_PER_MEASURE, convert_to_beats


class Tagged(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def tags(self) -> tuple[str, ...]: ...


T = TypeVar("T", bound=Tagged)

_MAX_AVOID_RETRIES = 3
_TAG_PRESENCE_MIN_RATIO = 0.4
_TAG_BIAS_TARGET = 0.6
_VARIATION_CHANCE = 0.5

RHYTHM_PROPERTY_TAGS: Mapping[Mood, tuple[str, ...]] = MappingProxyType(
    {
        "upbeat": ("straight", "syncopation"),
        "sad": ("straight", "simple"),
        "tense": ("syncopation", "accented"),
        "peaceful": ("straight", "open"),
    }
)
MELODY_MOOD_TAGS: Mapping[Mood, tuple[str, ...]] = MappingProxyType(
    {
        "upbeat": ("bright", "ascending"),
        "sad": ("dark", "descending"),
        "tense": ("dark", "complex", "leaping"),
        "peaceful": ("simple", "arch", "bright"),
    }
)
MELODY_RHYTHM_TAGS: Mapping[Mood, tuple[str, ...]] = MappingProxyType(
    {
        "upbeat": ("syncopated", "drive"),
        "sad": ("legato", "rest_heavy"),
        "tense": ("syncopated", "staccato"),
        "peaceful": ("legato", "simple"),
    }
)

# =============================================================================
# PART 1: Tag primitives
# =============================================================================


def has_any_tag(motif: Tagged, tags: Iterable[str]) -> bool:
    return any(tag in motif.tags for tag in tags)


def has_all_tags(motif: Tagged, tags: Iterable[str]) -> bool:
    return all(tag in motif.tags for tag in tags)


def functional_tag_for_measure(index: int, measures: int) -> FunctionalTag:
    if index == 0:
        return "start"
    if index == measures - 1:
        return "end"
    return "middle"


def cache_key(function_tag: str, required: Collection[str] = ()) -> str:
    if not required:
        return function_tag
    return f"{function_tag}:{'|'.join(sorted(required))}"


def prefer_tag_presence(
    candidates: Sequence[T],
    tags: Sequence[str],
    min_ratio: float = _TAG_PRESENCE_MIN_RATIO,
) -> list[T]:
    """Narrow to tagged candidates unless that leaves too thin a pool."""

    if not tags:
        return list(candidates)
    matched = [candidate for candidate in candidates if has_any_tag(candidate, tags)]
    if not matched:
        return list(candidates)
    if len(candidates) >= 4 and len(matched) < len(candidates) * min_ratio:
        return list(candidates)
    return matched


def bias_by_tag_presence(
    candidates: Sequence[T],
    tags: Sequence[str],
    rng: DeterministicRNG,
    target: float = _TAG_BIAS_TARGET,
) -> list[T]:
    """Reorder so tagged candidates lead; nothing is dropped."""

    if not tags or len(candidates) <= 1:
        return list(candidates)
    matches = [candidate for candidate in candidates if has_any_tag(candidate, tags)]
    if not matches or len(matches) == len(candidates):
        return list(candidates)
    others = [candidate for candidate in candidates if not has_any_tag(candidate, tags)]
    matches = rng.shuffle(matches)
    others = rng.shuffle(others)
    desired = min(len(matches), max(1, math.ceil(len(candidates) * target)))
    return matches[:desired] + matches[desired:] + others


def pick_with_avoid(pool: Sequence[T], rng: DeterministicRNG, avoid_id: Optional[str] = None) -> T:
    if not pool:
        raise MotifLibraryError("No candidates available for selection")
    if len(pool) == 1:
        return pool[0]
    choice = pool[int(rng.random() * len(pool))]
    attempts = 0
    while avoid_id is not None and choice.id == avoid_id and attempts < _MAX_AVOID_RETRIES:
        choice = pool[int(rng.random() * len(pool))]
        attempts += 1
    return choice


def prefer_unused(candidates: Sequence[T], used: Collection[str]) -> list[T]:
    unused = [candidate for candidate in candidates if candidate.id not in used]
    return unused if unused else list(candidates)


def filter_required(candidates: Sequence[T], required: Sequence[str]) -> list[T]:
    if not required:
        return list(candidates)
    return [candidate for candidate in candidates if has_all_tags(candidate, required)]


# =============================================================================
# PART 2: Rhythm and melody
# =============================================================================


def select_rhythm_motif(
    library: MotifLibrary,
    mood: Mood,
    intent: StyleIntent,
    function_tag: str,
    rng: DeterministicRNG,
    used: Collection[str],
    last: Optional[RhythmMotif] = None,
    required: Sequence[str] = (),
) -> RhythmMotif:
    safe = [motif for motif in library.rhythms if motif.is_consistent]
    property_tags = RHYTHM_PROPERTY_TAGS[mood]

    candidates = [motif for motif in safe if function_tag in motif.tags]
    candidates = [motif for motif in candidates if has_any_tag(motif, property_tags)]
    if not candidates:
        candidates = [motif for motif in safe if has_any_tag(motif, property_tags)]

    if intent.loop_centric:
        candidates = prefer_tag_presence(candidates, ("loop_safe", "texture_loop"))
    if intent.texture_focus:
        candidates = prefer_tag_presence(candidates, ("texture_loop", "straight", "simple", "grid16"))
    if intent.percussive_layering:
        candidates = prefer_tag_presence(candidates, ("grid16", "percussive_layer"))
    if intent.syncopation_bias:
        candidates = prefer_tag_presence(candidates, ("syncopation",))
    if not candidates:
        candidates = safe

    if required:
        narrowed = filter_required(candidates, required)
        if not narrowed:
            narrowed = filter_required(safe, required)
        if narrowed:
            candidates = narrowed

    last_id = last.id if last is not None else None
    if last is not None and last.variations:
        variations = [library.rhythm_by_id[v] for v in last.variations if v in library.rhythm_by_id]
        variations = [motif for motif in variations if motif.is_consistent]
        if variations and rng.random() < _VARIATION_CHANCE:
            return pick_with_avoid(prefer_unused(variations, used), rng, last_id)
    return pick_with_avoid(prefer_unused(candidates, used), rng, last_id)


def pick_rhythm_variation(
    library: MotifLibrary,
    base: RhythmMotif,
    function_tag: str,
    required: Sequence[str],
    rng: DeterministicRNG,
    used: Collection[str],
) -> Optional[RhythmMotif]:
    variations = [
        library.rhythm_by_id[variation_id]
        for variation_id in base.variations
        if variation_id in library.rhythm_by_id
    ]
    variations = [
        motif
        for motif in variations
        if motif.is_consistent and function_tag in motif.tags and has_all_tags(motif, required)
    ]
    if not variations:
        return None
    return pick_with_avoid(prefer_unused(variations, used), rng, base.id)


def select_melody_fragment(
    library: MotifLibrary,
    mood: Mood,
    intent: StyleIntent,
    rng: DeterministicRNG,
    used: Collection[str],
    last: Optional[MelodyFragment] = None,
    required: Sequence[str] = (),
) -> MelodyFragment:
    mood_tags = MELODY_MOOD_TAGS[mood]
    candidates = [motif for motif in library.melodies if has_any_tag(motif, mood_tags)]
    if required:
        candidates = filter_required(candidates, required) or filter_required(library.melodies, required)
    if not candidates:
        candidates = list(library.melodies)

    if intent.texture_focus:
        candidates = prefer_tag_presence(candidates, ("texture_loop", "ostinato", "loop_safe", "short", "static"))
    if intent.harmonic_static:
        candidates = bias_by_tag_presence(candidates, ("scalar", "stepwise", "static"), rng)
    if intent.gradual_build:
        candidates = prefer_tag_presence(candidates, ("ascending",))

    return pick_with_avoid(prefer_unused(candidates, used), rng, last.id if last else None)


def expand_melody_rhythm(motif: MelodyRhythmMotif, expected_beats: Optional[float] = None) -> list[tuple[float, bool]]:
    """(duration, is_rest) per step; the motif must fill its declared length."""

    expected = motif.length if expected_beats is None else expected_beats
    steps = [(convert_to_beats(step.value), step.rest) for step in motif.steps]
    total = sum(duration for duration, _ in steps)
    if abs(total - expected) > 1e-6:
        raise MotifLibraryError(
            f"Melody rhythm motif {motif.id} length mismatch. expected={expected}, got={total}"
        )
    return steps


def _is_humanized(motif: MelodyRhythmMotif, total_beats: float) -> bool:
    if not motif.steps:
        return False
    rest_requirement = 0.25 if total_beats >= 4 else 0.0
    rest_beats = 0.0
    short_run = 0.0
    has_long_note = False
    for step in motif.steps:
        duration = convert_to_beats(step.value)
        if step.rest:
            rest_beats += duration
            short_run = 0.0
            continue
        if duration >= 1.0:
            has_long_note = True
        if duration < 0.5:
            short_run += duration
            if short_run > 1.0 + 1e-6:
                return False
        else:
            short_run = 0.0
    return rest_beats >= rest_requirement or has_long_note


def select_melody_rhythm_motif(
    library: MotifLibrary,
    mood: Mood,
    intent: StyleIntent,
    function_tag: str,
    total_beats: float,
    rng: DeterministicRNG,
    used: Collection[str],
    required: Sequence[str] = (),
) -> MelodyRhythmMotif:
    exact = [motif for motif in library.melody_rhythms if abs(motif.length - total_beats) < 1e-6]
    if not exact:
        raise MotifLibraryError(f"No melody rhythm motifs of length {total_beats:g}")

    candidates = [motif for motif in exact if function_tag in motif.tags] or exact
    mood_tags = MELODY_RHYTHM_TAGS[mood]
    candidates = [motif for motif in candidates if has_any_tag(motif, mood_tags)] or candidates

    if intent.loop_centric:
        candidates = prefer_tag_presence(candidates, ("loop_safe", "texture_loop"))
    if intent.texture_focus:
        candidates = prefer_tag_presence(candidates, ("texture_loop", "grid16", "simple"))
    if intent.syncopation_bias:
        candidates = prefer_tag_presence(candidates, ("syncopated", "drive"))
    candidates = filter_required(candidates, required) or candidates
    candidates = [motif for motif in candidates if _is_humanized(motif, total_beats)] or candidates

    return pick_with_avoid(prefer_unused(candidates, used), rng)


# =============================================================================
# PART 3: Bass, drums and transitions
# =============================================================================

@dataclass(frozen=True, slots=True)
class DrumRule:
    """Arrangement-specific drum preferences."""

    beat: tuple[str, ...] = ()
    fill: tuple[str, ...] = ()
    avoid: tuple[str, ...] = ()
    early_sparse: int = 0


ARRANGEMENT_DRUM_RULES: Mapping[ArrangementId, DrumRule] = MappingProxyType(
    {
        "dualBass": DrumRule(beat=("percussive_layer", "syncopation"), fill=("drum_fill", "build")),
        "bassLed": DrumRule(beat=("four_on_floor", "drive"), fill=("build",), early_sparse=1),
        "layeredBass": DrumRule(beat=("four_on_floor", "loop_safe"), fill=("drum_fill",)),
        "minimal": DrumRule(
            beat=("simple", "open"),
            fill=("noise_fx",),
            avoid=("build", "drive"),
            early_sparse=2,
        ),
        "breakLayered": DrumRule(
            beat=("breakbeat", "percussive_layer", "grid16"),
            fill=("break", "drum_fill", "breakbeat"),
            avoid=("four_on_floor",),
        ),
        "lofiPadLead": DrumRule(
            beat=("lofi", "rest_heavy", "swing_hint"),
            fill=("noise_fx", "lofi"),
            avoid=("breakbeat",),
            early_sparse=2,
        ),
        "retroPulse": DrumRule(
            beat=("loop_safe", "grid16", "syncopation"),
            fill=("build", "transition"),
            avoid=("rest_heavy",),
        ),
    }
)
_NO_DRUM_RULE = DrumRule()
_EARLY_SPARSE_CHANCE = 0.3


def select_bass_pattern(
    library: MotifLibrary,
    texture: Texture,
    intent: StyleIntent,
    rng: DeterministicRNG,
    used: Collection[str],
    required: Sequence[str] = (),
    avoid_id: Optional[str] = None,
) -> Optional[BassPatternMotif]:
    candidates = [motif for motif in library.bass_patterns if motif.texture == texture]
    if not candidates:
        candidates = [motif for motif in library.bass_patterns if motif.texture == "steady"]
    if not candidates:
        return None

    if intent.loop_centric or intent.harmonic_static:
        candidates = prefer_tag_presence(candidates, ("loop_safe",))
    if intent.syncopation_bias:
        candidates = prefer_tag_presence(candidates, ("syncopated",))
    if intent.texture_focus:
        candidates = prefer_tag_presence(candidates, ("default",))
    if intent.percussive_layering:
        candidates = prefer_tag_presence(candidates, ("percussive_layer", "four_on_floor"))
    if intent.percussive_layering and intent.syncopation_bias and intent.break_insertion:
        candidates = prefer_tag_presence(candidates, ("breakbeat", "variation"), 0.2)
    if intent.atmos_pad and intent.loop_centric:
        candidates = prefer_tag_presence(candidates, ("lofi", "rest_heavy"), 0.25)
    if intent.harmonic_static:
        candidates = bias_by_tag_presence(candidates, ("drone", "static"), rng, 0.65)

    candidates = filter_required(candidates, required) or candidates
    return pick_with_avoid(prefer_unused(candidates, used), rng, avoid_id)


def select_drum_pattern(
    library: MotifLibrary,
    measure_in_section: int,
    section_measures: int,
    required: Sequence[str],
    rng: DeterministicRNG,
    last_id: Optional[str],
    used: Collection[str],
    force_fill: bool,
    intent: StyleIntent,
    arrangement_id: Optional[ArrangementId] = None,
) -> Optional[DrumPattern]:
    """Beat or fill for one measure; ``None`` leaves the measure without drums."""

    rule = ARRANGEMENT_DRUM_RULES.get(arrangement_id, _NO_DRUM_RULE) if arrangement_id else _NO_DRUM_RULE
    early_sparse = rule.early_sparse
    if not force_fill and early_sparse and measure_in_section < early_sparse:
        if rng.random() < _EARLY_SPARSE_CHANCE:
            return None

    if intent.gradual_build and section_measures >= 8:
        progress = measure_in_section / max(1, section_measures - 1)
        early_cut = min(0.35, 6 / section_measures)
        mid_cut = min(0.7, 14 / section_measures)
        if progress < early_cut:
            if rng.random() < 0.75:
                return None
        elif progress < mid_cut:
            if rng.random() < 0.35:
                return None

    fill_every = 2 if intent.break_insertion else 4
    cycle_fill = section_measures >= fill_every and (measure_in_section + 1) % fill_every == 0
    kind = "fill" if force_fill or cycle_fill else "beat"

    typed = [pattern for pattern in library.drums if pattern.kind == kind]
    candidates = [pattern for pattern in typed if pattern.length_beats <= BEATS_PER_MEASURE] or typed
    candidates = filter_required(candidates, required) or candidates
    if not candidates:
        candidates = list(library.drums)
    if not candidates:
        return None

    breakbeat_focus = (
        intent.percussive_layering and intent.syncopation_bias and intent.break_insertion and not intent.loop_centric
    )
    lofi_groove = intent.atmos_pad and intent.loop_centric and intent.harmonic_static
    retro_pulse = intent.loop_centric and intent.texture_focus and intent.percussive_layering

    if kind == "beat":
        if intent.loop_centric:
            candidates = prefer_tag_presence(candidates, ("loop_safe",))
        if intent.syncopation_bias:
            sync_tags = ("breakbeat", "syncopation", "grid16") if breakbeat_focus else ("syncopation",)
            candidates = prefer_tag_presence(candidates, sync_tags)
        if intent.texture_focus:
            candidates = prefer_tag_presence(candidates, ("texture_loop", "straight", "grid16"))
        if intent.percussive_layering:
            layer_tags = (
                ("breakbeat", "percussive_layer", "grid16")
                if breakbeat_focus
                else ("percussive_layer", "four_on_floor")
            )
            candidates = prefer_tag_presence(candidates, layer_tags)
        if lofi_groove:
            candidates = prefer_tag_presence(candidates, ("lofi", "rest_heavy", "swing_hint"), 0.3)
        if retro_pulse:
            candidates = prefer_tag_presence(candidates, ("loop_safe", "grid16", "texture_loop"), 0.25)
        candidates = prefer_tag_presence(candidates, rule.beat, 0.25)
    else:
        candidates = prefer_tag_presence(candidates, rule.fill, 0.25)
    if breakbeat_focus:
        candidates = prefer_tag_presence(candidates, ("breakbeat", "grid16"), 0.2)

    avoid_tags = rule.avoid
    if avoid_tags:
        candidates = [pattern for pattern in candidates if not has_any_tag(pattern, avoid_tags)] or candidates

    return pick_with_avoid(prefer_unused(candidates, used), rng, last_id)


def select_transition(
    library: MotifLibrary,
    is_last_section: bool,
    rng: DeterministicRNG,
    last_id: Optional[str],
    used: Collection[str],
    intent: StyleIntent,
    progress: float,
) -> Optional[TransitionMotif]:
    required = ["transition", "section_end"]
    if is_last_section:
        required.append("loop_out")

    candidates = [motif for motif in library.transitions if motif.length_beats <= BEATS_PER_MEASURE]
    candidates = candidates or list(library.transitions)
    if not candidates:
        return None

    priority: list[str] = []
    if intent.gradual_build:
        if progress < 0.4:
            priority.append("build")
        elif progress < 0.8:
            priority.append("drum_fill")
        else:
            priority.append("loop_out")
    if intent.break_insertion and progress >= 0.5:
        priority.append("noise_fx")
    if intent.percussive_layering:
        priority.append("drum_fill")
    candidates = prefer_tag_presence(candidates, priority, 0.2)
    candidates = filter_required(candidates, required) or candidates

    return pick_with_avoid(prefer_unused(candidates, used), rng, last_id)
