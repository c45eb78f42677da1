"""Motif selection: walk sections, phrases and measures and emit voiced notes.

The walk keeps every piece of mutable state in one :class:`SelectionContext`
so hook reuse, per-template memoization and "avoid what we just played" all
read from the same place. Notes leave this module as :class:`MidiNote` tracks
keyed by voice role, already mapped through the voice arrangement.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

from .config import ArrangementId, CompositionOptions, Mood, StylePreset, TempoSetting, Texture, VoiceRole
from .library import (
    BassPatternMotif,
    BassStep,
    MelodyFragment,
    MelodyRhythmMotif,
    MotifLibrary,
    RhythmMotif,
)
from .models import (
    AbstractNote,
    DrumHit,
    MidiNote,
    MotifSelection,
    MotifUsage,
    SectionDefinition,
    SectionMotifPlan,
    StructurePlan,
    Voice,
)
from .rng import DeterministicRNG, derive_seed, voice_rng
from .selection import (
    cache_key,
    expand_melody_rhythm,
    functional_tag_for_measure,
    has_all_tags,
    pick_rhythm_variation,
    select_bass_pattern,
    select_drum_pattern,
    select_melody_fragment,
    select_melody_rhythm_motif,
    select_rhythm_motif,
    select_transition,
)
from .structure import HOOK_TEMPLATES
from .theory import (
    BEATS_PER_MEASURE,
    SoundingNotes,
    chord_root_to_midi,
    clamp_midi,
    convert_to_beats,
    drum_hits_from_pattern,
    ensure_consonant_pitch,
    is_strong_beat,
    measure_of_beat,
    quantize_midi_to_chord,
    resolve_chord_at_beat,
    scale_degree_to_midi,
)
from .velocity import (
    ACCOMPANIMENT_BASE_VELOCITY,
    ACCOMPANIMENT_DOWNBEAT_ACCENT,
    ACCOMPANIMENT_EARLY_START,
    ACCOMPANIMENT_PAD_MIN,
    BASS_DEFAULT_VELOCITY,
    BASS_DOWNBEAT_ACCENT,
    BASS_STRONG_ACCENT,
    BASS_TEXTURE_VELOCITY,
    MELODY_DEFAULT_VELOCITY,
    MELODY_PICKUP_VELOCITY,
    MELODY_TEXTURE_VELOCITY,
    MELODY_VELOCITY_CEILING,
    MELODY_VELOCITY_FLOOR,
)

_LOGGER = logging.getLogger("chipscore.composer")

# =============================================================================
# PART 1: Constants
# =============================================================================

BASE_REGISTER = 72
REGISTER_MIN = 63
REGISTER_MAX = 78
MELODY_REGISTER_MIN = 60
MELODY_REGISTER_MAX = 84
ACCOMPANIMENT_REGISTER = 67
PAD_REGISTER = 67
BASS_ROOT_REGISTER = 40
BASS_DEGREE_REGISTER = 52
PAD_VELOCITY = 48

PICKUP_DURATION = 0.25
HOOK_ECHO_DURATION = 0.5
BASS_STEP_BEATS = 0.5
TRANSITION_COLLISION_BEATS = 1 / 16
TRANSITION_MAX_SHIFTS = 4

_REGISTER_SALT = 7

MOOD_REGISTER_OFFSET: Mapping[Mood, int] = MappingProxyType(
    {"upbeat": 0, "peaceful": -3, "tense": -5, "sad": -2}
)
TEMPO_REGISTER_OFFSET: Mapping[TempoSetting, int] = MappingProxyType({"slow": -2, "medium": 0, "fast": 2})
PRESET_REGISTER_OFFSET: Mapping[StylePreset, int] = MappingProxyType(
    {
        "minimalTechno": -4,
        "progressiveHouse": 3,
        "retroLoopwave": 2,
        "breakbeatJungle": -2,
        "lofiChillhop": -5,
    }
)
TEXTURE_REGISTER_OFFSET: Mapping[Texture, int] = MappingProxyType({"steady": 0, "broken": -3, "arpeggio": 4})

DEFAULT_BASS_STEPS: tuple[BassStep, ...] = (
    "root",
    "root",
    "fifth",
    "root",
    "fifth",
    "root",
    "fifth",
    "approach",
)
FALLBACK_BASS_PATTERN = BassPatternMotif(
    id="BP_FALLBACK_STEADY",
    texture="steady",
    steps=DEFAULT_BASS_STEPS,
    tags=("default",),
)
ALT_BASS_PREFERRED_TAGS = ("drone", "accent")


@dataclass(frozen=True, slots=True)
class AccompanimentRule:
    density: float = 1.0
    sustain: bool = False
    velocity_scale: float = 1.0
    offbeat_boost: int = 0


ARRANGEMENT_ACCOMP_RULES: Mapping[ArrangementId, AccompanimentRule] = MappingProxyType(
    {
        "dualBass": AccompanimentRule(density=0.85, velocity_scale=0.9, offbeat_boost=3),
        "bassLed": AccompanimentRule(density=0.6, sustain=False, offbeat_boost=5),
        "layeredBass": AccompanimentRule(density=0.75, velocity_scale=0.95),
        "minimal": AccompanimentRule(density=0.5, sustain=True, velocity_scale=0.8),
        "breakLayered": AccompanimentRule(density=0.95, velocity_scale=1.05, offbeat_boost=6),
        "lofiPadLead": AccompanimentRule(density=0.55, sustain=True, velocity_scale=0.7),
        "retroPulse": AccompanimentRule(density=0.78, velocity_scale=0.95, offbeat_boost=2),
    }
)
_DEFAULT_ACCOMP_RULE = AccompanimentRule()

LAYERED_BASS_SCALE: Mapping[VoiceRole, tuple[float, int]] = MappingProxyType(
    {"bass": (0.65, 28), "bassAlt": (0.5, 22)}
)

# =============================================================================
# PART 2: Selection context
# =============================================================================


@dataclass
class _CachedMotifs:
    """Motif ids memoized for one (template, cache key)."""

    rhythm_id: Optional[str] = None
    melody_id: Optional[str] = None
    melody_rhythm_ids: dict[str, str] = field(default_factory=dict)
    drum_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class HookMotifs:
    rhythm_id: str
    melody_id: str
    melody_rhythm_id: str


@dataclass
class _UsedIds:
    rhythms: set[str] = field(default_factory=set)
    melodies: set[str] = field(default_factory=set)
    melody_rhythms: set[str] = field(default_factory=set)
    drums: set[str] = field(default_factory=set)
    bass: set[str] = field(default_factory=set)
    transitions: set[str] = field(default_factory=set)


@dataclass
class _UsageCounters:
    rhythm: Counter[str] = field(default_factory=Counter)
    melody: Counter[str] = field(default_factory=Counter)
    drums: Counter[str] = field(default_factory=Counter)
    melody_rhythm: Counter[str] = field(default_factory=Counter)
    bass: Counter[str] = field(default_factory=Counter)
    transitions: Counter[str] = field(default_factory=Counter)

    def to_model(self) -> MotifUsage:
        return MotifUsage(
            rhythm=dict(self.rhythm),
            melody=dict(self.melody),
            drums=dict(self.drums),
            melody_rhythm=dict(self.melody_rhythm),
            bass=dict(self.bass),
            transitions=dict(self.transitions),
        )


@dataclass
class SelectionContext:
    """Mutable state threaded through one selection walk."""

    options: CompositionOptions
    plan: StructurePlan
    library: MotifLibrary
    rng: DeterministicRNG
    base_register: int
    section_by_id: dict[str, SectionDefinition]
    used: _UsedIds = field(default_factory=_UsedIds)
    usage: _UsageCounters = field(default_factory=_UsageCounters)
    template_cache: dict[str, dict[str, _CachedMotifs]] = field(default_factory=dict)
    hook_cache: dict[str, HookMotifs] = field(default_factory=dict)
    bass_cache: dict[str, BassPatternMotif] = field(default_factory=dict)
    last_rhythm: Optional[RhythmMotif] = None
    last_melody: Optional[MelodyFragment] = None
    last_drum_id: Optional[str] = None
    last_transition_id: Optional[str] = None
    melody: list[AbstractNote] = field(default_factory=list)
    bass: list[AbstractNote] = field(default_factory=list)
    accompaniment: list[AbstractNote] = field(default_factory=list)
    drums: list[DrumHit] = field(default_factory=list)
    section_plans: list[SectionMotifPlan] = field(default_factory=list)

    @classmethod
    def create(cls, options: CompositionOptions, plan: StructurePlan, library: MotifLibrary) -> "SelectionContext":
        return cls(
            options=options,
            plan=plan,
            library=library,
            rng=DeterministicRNG(options.seed),
            base_register=composition_register(options, plan),
            section_by_id={section.id: section for section in plan.sections},
        )

    @property
    def total_measures(self) -> int:
        return self.plan.total_measures

    def cache_for(self, template_id: str, key: str) -> _CachedMotifs:
        return self.template_cache.setdefault(template_id, {}).setdefault(key, _CachedMotifs())


@dataclass(frozen=True, slots=True)
class _PhraseMotifs:
    rhythm: RhythmMotif
    melody: MelodyFragment
    melody_rhythm: MelodyRhythmMotif
    establishes_hook: bool
    reprise: bool


@dataclass
class _PhraseCursor:
    beat: float = 0.0
    step_index: int = 0
    degree_index: int = 0


@dataclass(frozen=True, slots=True)
class _MeasureContext:
    measure_in_section: int
    global_measure: int
    start_beat: float
    function_tag: str
    required: tuple[str, ...]
    rhythm: RhythmMotif


# =============================================================================
# PART 3: Register and velocity
# =============================================================================


def composition_register(options: CompositionOptions, plan: StructurePlan) -> int:
    """Base melody register for the whole composition."""

    intent = plan.style_intent
    value = BASE_REGISTER + MOOD_REGISTER_OFFSET[options.mood] + TEMPO_REGISTER_OFFSET[options.tempo]
    if options.style_preset is not None:
        value += PRESET_REGISTER_OFFSET[options.style_preset]
    if intent.texture_focus:
        value += 2
    if intent.gradual_build:
        value += 1
    if intent.loop_centric:
        value -= 1
    if intent.atmos_pad:
        value += 2
    if intent.percussive_layering:
        value -= 2
    jitter_rng = DeterministicRNG(derive_seed(options.seed, _REGISTER_SALT))
    value += int(jitter_rng.random() * 7) - 3
    return max(REGISTER_MIN, min(REGISTER_MAX, value))


def melody_register(ctx: SelectionContext, section: SectionDefinition, measure_in_section: int) -> int:
    intent = ctx.plan.style_intent
    value = ctx.base_register + TEXTURE_REGISTER_OFFSET.get(section.texture, 0)
    if intent.texture_focus:
        value -= 4
    if intent.filter_motion:
        value += 1
    if measure_in_section == 0:
        if _establishes_hook(section):
            value += 3
        elif _is_hook_reprise(section):
            value -= 2
    if intent.gradual_build:
        global_measure = section.start_measure + measure_in_section
        progress = global_measure / max(1, ctx.total_measures - 1)
        value += round(progress**0.7 * 8)
    if section.measures > 0 and measure_in_section / section.measures >= 0.75:
        value -= 2
    value -= min(section.occurrence_index - 1, 2) * 2
    if intent.atmos_pad:
        value -= 1
    return max(MELODY_REGISTER_MIN, min(MELODY_REGISTER_MAX, value))


def melody_velocity(ctx: SelectionContext, section: SectionDefinition, measure_in_section: int) -> int:
    intent = ctx.plan.style_intent
    base = MELODY_TEXTURE_VELOCITY.get(section.texture, MELODY_DEFAULT_VELOCITY)
    downbeat = 6 if measure_in_section == 0 else 0
    cadence = 4 if section.measures - measure_in_section <= 1 else 0
    if intent.texture_focus:
        base -= 8
    if intent.gradual_build:
        total = ctx.total_measures
        global_measure = section.start_measure + measure_in_section
        progress = global_measure / (total - 1) if total > 1 else 0.0
        progress = max(0.0, min(1.0, progress))
        if total <= 16:
            exponent, ceiling = 0.6, 14
        elif total <= 32:
            exponent, ceiling = 0.75, 18
        else:
            exponent, ceiling = 0.9, 20
        base += math.floor(progress**exponent * ceiling)
    if intent.loop_centric:
        base = max(60, base - 2)
    return max(MELODY_VELOCITY_FLOOR, min(MELODY_VELOCITY_CEILING, base + downbeat + cadence))


def _establishes_hook(section: SectionDefinition) -> bool:
    return section.template_id in HOOK_TEMPLATES and section.occurrence_index == 1


def _is_hook_reprise(section: SectionDefinition) -> bool:
    return section.template_id in HOOK_TEMPLATES and section.occurrence_index > 1


def _tail_degree(degree: int, pattern: Sequence[int], ctx: SelectionContext) -> int:
    intent = ctx.plan.style_intent
    tail = pattern[-1]
    options: list[int] = []
    for option in (degree, tail, tail + (2 if intent.texture_focus else 1), tail - (1 if intent.loop_centric else 2)):
        if option not in options:
            options.append(option)
    return options[int(ctx.rng.random() * len(options))]


# =============================================================================
# PART 4: Phrase and measure walk
# =============================================================================


def _phrase_required_tags(ctx: SelectionContext, global_start: int, reprise_first_phrase: bool) -> tuple[str, ...]:
    total = ctx.total_measures
    if global_start == total - 1:
        return ("loop_safe",)
    if global_start == total - 2 and not reprise_first_phrase:
        return ("cadence",)
    return ()


def _phrase_motifs(
    ctx: SelectionContext,
    section: SectionDefinition,
    phrase_offset: int,
    phrase_measures: int,
) -> _PhraseMotifs:
    library = ctx.library
    mood = ctx.options.mood
    intent = ctx.plan.style_intent
    is_first_phrase = phrase_offset == 0
    establishes = _establishes_hook(section)
    reprise = _is_hook_reprise(section)
    hook = ctx.hook_cache.get(section.template_id)

    base_tag = functional_tag_for_measure(0, section.measures)
    required = _phrase_required_tags(ctx, section.start_measure + phrase_offset, reprise and is_first_phrase)
    cached = ctx.cache_for(section.template_id, cache_key(base_tag, required))
    phrase_beats = phrase_measures * BEATS_PER_MEASURE
    length_key = f"{phrase_beats:g}"

    rhythm: Optional[RhythmMotif] = None
    melody: Optional[MelodyFragment] = None
    melody_rhythm: Optional[MelodyRhythmMotif] = None
    if reprise and is_first_phrase and hook is not None:
        rhythm = library.rhythm(hook.rhythm_id)
        melody = library.melody(hook.melody_id)
        melody_rhythm = library.melody_rhythm(hook.melody_rhythm_id)

    if rhythm is None:
        rhythm = library.rhythm(cached.rhythm_id) or select_rhythm_motif(
            library, mood, intent, base_tag, ctx.rng, ctx.used.rhythms, ctx.last_rhythm, required
        )
        cached.rhythm_id = rhythm.id
    if melody is None:
        melody = library.melody(cached.melody_id) or select_melody_fragment(
            library, mood, intent, ctx.rng, ctx.used.melodies, ctx.last_melody, required
        )
        cached.melody_id = melody.id
    if melody_rhythm is None:
        melody_rhythm = library.melody_rhythm(cached.melody_rhythm_ids.get(length_key))
        if melody_rhythm is None:
            melody_rhythm = select_melody_rhythm_motif(
                library, mood, intent, base_tag, phrase_beats, ctx.rng, ctx.used.melody_rhythms, required
            )
        cached.melody_rhythm_ids[length_key] = melody_rhythm.id

    if establishes and is_first_phrase and section.template_id not in ctx.hook_cache:
        ctx.hook_cache[section.template_id] = HookMotifs(rhythm.id, melody.id, melody_rhythm.id)

    ctx.used.rhythms.add(rhythm.id)
    ctx.used.melodies.add(melody.id)
    ctx.used.melody_rhythms.add(melody_rhythm.id)
    ctx.usage.melody_rhythm[melody_rhythm.id] += 1
    ctx.usage.melody[melody.id] += 1

    if is_first_phrase:
        current_hook = ctx.hook_cache.get(section.template_id)
        reprises_hook = (
            reprise
            and current_hook is not None
            and current_hook == HookMotifs(rhythm.id, melody.id, melody_rhythm.id)
        )
        ctx.section_plans.append(
            SectionMotifPlan(
                section_id=section.id,
                template_id=section.template_id,
                occurrence_index=section.occurrence_index,
                primary_rhythm=rhythm.id,
                primary_melody=melody.id,
                primary_melody_rhythm=melody_rhythm.id,
                reprises_hook=reprises_hook,
            )
        )
    return _PhraseMotifs(rhythm, melody, melody_rhythm, establishes, reprise)


def _measure_context(
    ctx: SelectionContext,
    section: SectionDefinition,
    phrase: _PhraseMotifs,
    measure_in_section: int,
) -> _MeasureContext:
    library = ctx.library
    global_measure = section.start_measure + measure_in_section
    function_tag = functional_tag_for_measure(measure_in_section, section.measures)
    is_hook_measure = phrase.reprise and measure_in_section == 0
    required: tuple[str, ...] = ()
    if global_measure == ctx.total_measures - 1:
        required = ("loop_safe",)
    elif global_measure == ctx.total_measures - 2 and not is_hook_measure:
        required = ("cadence",)

    cached = ctx.cache_for(section.template_id, cache_key(function_tag, required))
    prefer_variation = (
        not phrase.reprise
        and (measure_in_section > 0 or section.occurrence_index > 1)
        and ctx.rng.random() > ctx.options.repeat_bias
    )

    cached_rhythm = library.rhythm(cached.rhythm_id)
    rhythm: Optional[RhythmMotif]
    if cached_rhythm is None:
        rhythm = None
        if prefer_variation:
            rhythm = pick_rhythm_variation(library, phrase.rhythm, function_tag, required, ctx.rng, ctx.used.rhythms)
        rhythm = rhythm or phrase.rhythm
    elif prefer_variation and cached_rhythm.id == phrase.rhythm.id:
        rhythm = (
            pick_rhythm_variation(library, cached_rhythm, function_tag, required, ctx.rng, ctx.used.rhythms)
            or cached_rhythm
        )
    else:
        rhythm = cached_rhythm

    if function_tag not in rhythm.tags or not has_all_tags(rhythm, required):
        rhythm = select_rhythm_motif(
            library,
            ctx.options.mood,
            ctx.plan.style_intent,
            function_tag,
            ctx.rng,
            ctx.used.rhythms,
            phrase.rhythm,
            required,
        )
    cached.rhythm_id = rhythm.id
    ctx.usage.rhythm[rhythm.id] += 1
    ctx.used.rhythms.add(rhythm.id)

    return _MeasureContext(
        measure_in_section=measure_in_section,
        global_measure=global_measure,
        start_beat=float(global_measure * BEATS_PER_MEASURE),
        function_tag=function_tag,
        required=required,
        rhythm=rhythm,
    )


def _emit_pickup(ctx: SelectionContext, section: SectionDefinition, phrase: _PhraseMotifs, start: float) -> None:
    if start <= 0:
        return
    ctx.melody.append(
        AbstractNote(
            channel_role="melody",
            start_beat=start - PICKUP_DURATION,
            duration_beats=PICKUP_DURATION,
            degree=phrase.melody.pattern[-1],
            velocity=MELODY_PICKUP_VELOCITY,
            section_id=section.id,
        )
    )


def _emit_melody(
    ctx: SelectionContext,
    section: SectionDefinition,
    phrase: _PhraseMotifs,
    measure: _MeasureContext,
    steps: Sequence[tuple[float, bool]],
    cursor: _PhraseCursor,
    measure_offset: int,
) -> None:
    pattern = phrase.melody.pattern
    limit = (measure_offset + 1) * BEATS_PER_MEASURE
    velocity = melody_velocity(ctx, section, measure.measure_in_section)
    while cursor.step_index < len(steps) and cursor.beat < limit - 1e-9:
        duration, is_rest = steps[cursor.step_index]
        local = cursor.beat - measure_offset * BEATS_PER_MEASURE
        if not is_rest:
            degree = pattern[cursor.degree_index % len(pattern)]
            is_tail = cursor.step_index == len(steps) - 1
            if is_tail and (section.occurrence_index > 1 or measure.measure_in_section > 0) and not phrase.reprise:
                degree = _tail_degree(degree, pattern, ctx)
            ctx.melody.append(
                AbstractNote(
                    channel_role="melody",
                    start_beat=measure.start_beat + local,
                    duration_beats=duration,
                    degree=degree,
                    velocity=velocity,
                    section_id=section.id,
                )
            )
            cursor.degree_index += 1
        cursor.beat += duration
        cursor.step_index += 1


def _compose_phrase(
    ctx: SelectionContext,
    section: SectionDefinition,
    phrase: _PhraseMotifs,
    phrase_offset: int,
    phrase_measures: int,
) -> None:
    steps = expand_melody_rhythm(phrase.melody_rhythm)
    cursor = _PhraseCursor()
    for measure_offset in range(phrase_measures):
        measure = _measure_context(ctx, section, phrase, phrase_offset + measure_offset)
        if measure.measure_in_section == 0:
            _emit_pickup(ctx, section, phrase, measure.start_beat)
        _emit_melody(ctx, section, phrase, measure, steps, cursor, measure_offset)
        _emit_bass(ctx, section, measure)
        _emit_accompaniment(ctx, section, phrase, measure)
        _emit_drums(ctx, section, measure)
        ctx.last_rhythm = measure.rhythm
        ctx.last_melody = phrase.melody


def _compose_section(ctx: SelectionContext, section: SectionDefinition) -> None:
    phrase_length = max(1, section.phrase_length)
    offset = 0
    while offset < section.measures:
        phrase_measures = min(phrase_length, section.measures - offset)
        phrase = _phrase_motifs(ctx, section, offset, phrase_measures)
        _compose_phrase(ctx, section, phrase, offset, phrase_measures)
        offset += phrase_measures


# =============================================================================
# PART 5: Bass, accompaniment, drums
# =============================================================================


def resolve_bass_pattern(
    library: MotifLibrary,
    section: SectionDefinition,
    measure_in_section: int,
    rng: DeterministicRNG,
    used: set[str],
    cache: dict[str, BassPatternMotif],
    plan: StructurePlan,
    *,
    enforce_drone_static: bool = True,
    preferred_tags: Sequence[str] = (),
) -> BassPatternMotif:
    """Per-section bass pattern, swapping to a ``section_end`` pattern on the last measure."""

    intent = plan.style_intent
    is_final = measure_in_section == section.measures - 1

    def ending_for(current: BassPatternMotif) -> BassPatternMotif:
        if not is_final or "section_end" in current.tags:
            return current
        ending = select_bass_pattern(library, section.texture, intent, rng, used, ("section_end",), current.id)
        if ending is not None and "section_end" in ending.tags:
            used.add(ending.id)
            return ending
        return current

    cached = cache.get(section.id)
    if cached is not None:
        return ending_for(cached)

    if intent.harmonic_static:
        if not enforce_drone_static and preferred_tags:
            preferred = select_bass_pattern(library, section.texture, intent, rng, used, tuple(preferred_tags))
            if preferred is not None:
                cache[section.id] = preferred
                used.add(preferred.id)
                return preferred
        drone = select_bass_pattern(library, section.texture, intent, rng, used, ("drone", "static"))
        if drone is not None and enforce_drone_static:
            cache[section.id] = drone
            used.add(drone.id)
            return drone

    initial = ("pickup",) if _establishes_hook(section) else tuple(preferred_tags)
    pattern = select_bass_pattern(library, section.texture, intent, rng, used, initial) or FALLBACK_BASS_PATTERN
    cache[section.id] = pattern
    used.add(pattern.id)
    return ending_for(pattern)


def _bass_step_midi(step: BassStep, base: int, chord: str, next_chord: str) -> Optional[int]:
    match step:
        case "root":
            return quantize_midi_to_chord(base, chord)
        case "fifth":
            return quantize_midi_to_chord(base + 7, chord)
        case "lowFifth":
            return quantize_midi_to_chord(base - 5, chord)
        case "octave":
            return quantize_midi_to_chord(base + 12, chord)
        case "octaveHigh":
            return quantize_midi_to_chord(base + 19, chord)
        case "approach":
            return chord_root_to_midi(next_chord, base + 5) - 1
        case _:
            return None


def build_bass_measure(
    pattern: BassPatternMotif,
    chord: str,
    next_chord: str,
    measure_start: float,
    section_id: str,
    role: VoiceRole = "bass",
    octave_offset: int = 0,
) -> list[AbstractNote]:
    base = chord_root_to_midi(chord, BASS_ROOT_REGISTER + 12 * octave_offset)
    texture_velocity = BASS_TEXTURE_VELOCITY.get(pattern.texture, BASS_DEFAULT_VELOCITY)
    notes: list[AbstractNote] = []
    for step_index, step in enumerate(pattern.steps):
        midi = _bass_step_midi(step, base, chord, next_chord)
        if midi is None:
            continue
        velocity = texture_velocity
        if step_index == 0:
            velocity += BASS_DOWNBEAT_ACCENT
        elif step_index % 4 == 0:
            velocity += BASS_STRONG_ACCENT
        notes.append(
            AbstractNote(
                channel_role=role,
                start_beat=measure_start + step_index * BASS_STEP_BEATS,
                duration_beats=BASS_STEP_BEATS,
                degree=1,
                velocity=velocity,
                section_id=section_id,
                midi_override=clamp_midi(midi),
            )
        )
    return notes


def _emit_bass(ctx: SelectionContext, section: SectionDefinition, measure: _MeasureContext) -> None:
    pattern = resolve_bass_pattern(
        ctx.library,
        section,
        measure.measure_in_section,
        ctx.rng,
        ctx.used.bass,
        ctx.bass_cache,
        ctx.plan,
    )
    sections = ctx.plan.sections
    chord = resolve_chord_at_beat(sections, measure.start_beat)
    next_chord = resolve_chord_at_beat(sections, measure.start_beat + BEATS_PER_MEASURE)
    ctx.bass.extend(build_bass_measure(pattern, chord, next_chord, measure.start_beat, section.id))
    ctx.usage.bass[pattern.id] += 1


def _accompaniment_degree(texture: Texture, beat: float, index: int) -> int:
    if texture == "steady":
        return (1, 5)[int(beat // 2) % 2]
    return (1, 3, 5, 7)[index % 4]


def build_accompaniment_seeds(
    rhythm: RhythmMotif,
    section: SectionDefinition,
    measure_start: float,
    function_tag: str,
    melody: Optional[MelodyFragment],
    rule: AccompanimentRule,
    rng: DeterministicRNG,
) -> list[AbstractNote]:
    """Chord-tone seeds for one measure; realization voices them by texture."""

    values = rhythm.pattern or (4,)
    seeds: list[AbstractNote] = []
    cursor = 0.0
    index = 0
    while cursor < BEATS_PER_MEASURE - 1e-9:
        step = convert_to_beats(values[index % len(values)])
        duration = min(step, BEATS_PER_MEASURE - cursor)
        velocity = ACCOMPANIMENT_BASE_VELOCITY
        if function_tag == "start" and cursor == 0:
            velocity += ACCOMPANIMENT_DOWNBEAT_ACCENT
        if rule.velocity_scale != 1.0:
            velocity = round(velocity * rule.velocity_scale)
        if cursor % 1 > 1e-6:
            velocity += rule.offbeat_boost
        thinned = rule.density < 1.0 and rng.random() > rule.density
        if not thinned:
            seeds.append(
                AbstractNote(
                    channel_role="accompaniment",
                    start_beat=measure_start + cursor,
                    duration_beats=duration,
                    degree=_accompaniment_degree(section.texture, cursor, index),
                    velocity=velocity,
                    section_id=section.id,
                )
            )
        cursor += duration
        index += 1

    echoes_hook = (
        function_tag == "start"
        and _establishes_hook(section)
        and melody is not None
        and bool(melody.pattern)
        and measure_start >= HOOK_ECHO_DURATION
        and not rule.density < 0.5
    )
    if echoes_hook and melody is not None:
        seeds.append(
            AbstractNote(
                channel_role="accompaniment",
                start_beat=measure_start - HOOK_ECHO_DURATION,
                duration_beats=HOOK_ECHO_DURATION,
                degree=melody.pattern[0],
                velocity=ACCOMPANIMENT_EARLY_START,
                section_id=section.id,
            )
        )

    if rule.sustain and seeds:
        mean_velocity = sum(seed.velocity for seed in seeds) / len(seeds)
        seeds = [
            AbstractNote(
                channel_role="accompaniment",
                start_beat=measure_start,
                duration_beats=float(BEATS_PER_MEASURE),
                degree=seeds[0].degree,
                velocity=max(ACCOMPANIMENT_PAD_MIN, round(mean_velocity)),
                section_id=section.id,
            )
        ]
    return seeds


def _emit_accompaniment(
    ctx: SelectionContext,
    section: SectionDefinition,
    phrase: _PhraseMotifs,
    measure: _MeasureContext,
) -> None:
    rule = ARRANGEMENT_ACCOMP_RULES.get(ctx.plan.voice_arrangement.id, _DEFAULT_ACCOMP_RULE)
    ctx.accompaniment.extend(
        build_accompaniment_seeds(
            measure.rhythm,
            section,
            measure.start_beat,
            measure.function_tag,
            phrase.melody,
            rule,
            ctx.rng,
        )
    )


def merge_transition_hits(existing: list[DrumHit], incoming: Sequence[DrumHit]) -> None:
    """Append transition hits, nudging each forward by 1/16 beat while it collides."""

    for hit in incoming:
        start = hit.start_beat
        attempts = 0
        while attempts < TRANSITION_MAX_SHIFTS and any(
            abs(other.start_beat - start) < TRANSITION_COLLISION_BEATS for other in existing
        ):
            attempts += 1
            start = hit.start_beat + attempts * TRANSITION_COLLISION_BEATS
        existing.append(replace(hit, start_beat=start))


def _emit_transition(ctx: SelectionContext, section: SectionDefinition, measure: _MeasureContext) -> None:
    total = ctx.total_measures
    progress = measure.global_measure / max(1, total - 1) if total > 1 else 0.0
    is_last_section = section.id == ctx.plan.sections[-1].id
    motif = select_transition(
        ctx.library,
        is_last_section,
        ctx.rng,
        ctx.last_transition_id,
        ctx.used.transitions,
        ctx.plan.style_intent,
        progress,
    )
    if motif is None:
        return
    if motif.length_beats >= BEATS_PER_MEASURE:
        offset = measure.start_beat
    else:
        offset = measure.start_beat + BEATS_PER_MEASURE - motif.length_beats
    hits = drum_hits_from_pattern(motif.pattern, offset, section.id)
    window = [hit for hit in ctx.drums if hit.start_beat >= measure.start_beat - 1e-9]
    before = len(window)
    merge_transition_hits(window, hits)
    ctx.drums.extend(window[before:])
    ctx.usage.transitions[motif.id] += 1
    ctx.used.transitions.add(motif.id)
    ctx.last_transition_id = motif.id


def _emit_drums(ctx: SelectionContext, section: SectionDefinition, measure: _MeasureContext) -> None:
    mis = measure.measure_in_section
    is_final = mis == section.measures - 1
    force_fill = is_final or (section.measures > 2 and mis == section.measures - 2)
    key = cache_key(f"{mis}:{'fill' if force_fill else 'beat'}", measure.required)
    cached = ctx.cache_for(section.template_id, key)

    pattern = ctx.library.drum(cached.drum_id)
    if pattern is None:
        pattern = select_drum_pattern(
            ctx.library,
            mis,
            section.measures,
            measure.required,
            ctx.rng,
            ctx.last_drum_id,
            ctx.used.drums,
            force_fill,
            ctx.plan.style_intent,
            ctx.plan.voice_arrangement.id,
        )
        if pattern is not None:
            cached.drum_id = pattern.id
    if pattern is not None:
        ctx.usage.drums[pattern.id] += 1
        ctx.used.drums.add(pattern.id)
        ctx.drums.extend(drum_hits_from_pattern(pattern.pattern, measure.start_beat, section.id))
        ctx.last_drum_id = pattern.id

    if is_final:
        _emit_transition(ctx, section, measure)


# =============================================================================
# PART 6: Pitch resolution and voicing
# =============================================================================


def _convert_melody(ctx: SelectionContext, notes: Sequence[AbstractNote]) -> list[MidiNote]:
    plan = ctx.plan
    converted: list[MidiNote] = []
    previous: Optional[int] = None
    for note in sorted(notes, key=lambda item: item.start_beat):
        section = ctx.section_by_id[note.section_id]
        measure_in_section = max(0, measure_of_beat(note.start_beat) - section.start_measure)
        register = melody_register(ctx, section, measure_in_section)
        raw = scale_degree_to_midi(note.degree, plan.scale_degrees, register)
        chord = resolve_chord_at_beat(plan.sections, note.start_beat)
        if is_strong_beat(note.start_beat):
            midi = quantize_midi_to_chord(raw, chord)
        else:
            midi = ensure_consonant_pitch(raw, chord, previous)
        midi = clamp_midi(midi)
        previous = midi
        converted.append(_to_midi_note(note, midi))
    return converted


def _convert_accompaniment(
    ctx: SelectionContext,
    notes: Sequence[AbstractNote],
    melody: SoundingNotes,
) -> list[MidiNote]:
    plan = ctx.plan
    converted: list[MidiNote] = []
    for note in sorted(notes, key=lambda item: item.start_beat):
        raw = scale_degree_to_midi(note.degree, plan.scale_degrees, ACCOMPANIMENT_REGISTER)
        chord = resolve_chord_at_beat(plan.sections, note.start_beat)
        reference = melody.at(note.start_beat)
        midi = ensure_consonant_pitch(raw, chord, reference.midi if reference is not None else None)
        converted.append(_to_midi_note(note, clamp_midi(midi)))
    return converted


def _convert_bass(ctx: SelectionContext, notes: Sequence[AbstractNote]) -> list[MidiNote]:
    plan = ctx.plan
    converted: list[MidiNote] = []
    for note in notes:
        if note.midi_override is not None:
            midi = note.midi_override
        else:
            raw = scale_degree_to_midi(note.degree, plan.scale_degrees, BASS_DEGREE_REGISTER, -1)
            midi = quantize_midi_to_chord(raw, resolve_chord_at_beat(plan.sections, note.start_beat))
        converted.append(_to_midi_note(note, clamp_midi(midi)))
    return converted


def _to_midi_note(note: AbstractNote, midi: int) -> MidiNote:
    return MidiNote(
        channel_role=note.channel_role,
        start_beat=note.start_beat,
        duration_beats=note.duration_beats,
        degree=note.degree,
        velocity=note.velocity,
        section_id=note.section_id,
        midi=midi,
    )


def _measure_gate(ctx: SelectionContext, voice: Voice, rng: DeterministicRNG) -> set[int]:
    """Global measures a reduced-priority voice plays in."""

    kept: set[int] = set()
    for section in ctx.plan.sections:
        for mis in range(section.measures):
            if _voice_plays(ctx, voice, section, mis, rng):
                kept.add(section.start_measure + mis)
    return kept


def _voice_plays(
    ctx: SelectionContext,
    voice: Voice,
    section: SectionDefinition,
    measure_in_section: int,
    rng: DeterministicRNG,
) -> bool:
    if voice.priority >= 1.0:
        return True
    probability = voice.priority
    if ctx.plan.style_intent.gradual_build:
        progress = measure_in_section / max(1, section.measures - 1)
        probability = min(1.0, probability + progress * 0.3)
    return rng.random() < probability


def _pad_notes(ctx: SelectionContext, voice: Voice, rng: DeterministicRNG) -> list[MidiNote]:
    plan = ctx.plan
    notes: list[MidiNote] = []
    for section in plan.sections:
        for mis in range(section.measures):
            if not _voice_plays(ctx, voice, section, mis, rng):
                continue
            global_measure = section.start_measure + mis
            start = float(global_measure * BEATS_PER_MEASURE)
            degree = 1 if mis % 2 == 0 else 5
            raw = scale_degree_to_midi(degree, plan.scale_degrees, PAD_REGISTER)
            midi = quantize_midi_to_chord(raw, resolve_chord_at_beat(plan.sections, start))
            notes.append(
                MidiNote(
                    channel_role="pad",
                    start_beat=start,
                    duration_beats=float(BEATS_PER_MEASURE),
                    degree=degree,
                    velocity=PAD_VELOCITY,
                    section_id=section.id,
                    midi=clamp_midi(midi + 12 * voice.octave_offset),
                )
            )
    return notes


def _independent_bass(ctx: SelectionContext, voice: Voice, rng: DeterministicRNG) -> list[MidiNote]:
    """Bass line drawn from the voice's own stream and caches."""

    plan = ctx.plan
    is_alt = voice.role == "bassAlt"
    used: set[str] = set()
    cache: dict[str, BassPatternMotif] = {}
    notes: list[AbstractNote] = []
    for section in plan.sections:
        for mis in range(section.measures):
            if not _voice_plays(ctx, voice, section, mis, rng):
                continue
            pattern = resolve_bass_pattern(
                ctx.library,
                section,
                mis,
                rng,
                used,
                cache,
                plan,
                enforce_drone_static=not is_alt,
                preferred_tags=ALT_BASS_PREFERRED_TAGS if is_alt else (),
            )
            start = float((section.start_measure + mis) * BEATS_PER_MEASURE)
            chord = resolve_chord_at_beat(plan.sections, start)
            next_chord = resolve_chord_at_beat(plan.sections, start + BEATS_PER_MEASURE)
            notes.extend(
                build_bass_measure(pattern, chord, next_chord, start, section.id, voice.role, voice.octave_offset)
            )
    return _convert_bass(ctx, notes)


def _voice_notes(
    ctx: SelectionContext,
    voice: Voice,
    melody: list[MidiNote],
    accompaniment: list[MidiNote],
    bass: list[MidiNote],
) -> list[MidiNote]:
    rng = voice_rng(ctx.options.seed, voice.seed_offset)
    role = voice.role
    if role == "pad":
        return _pad_notes(ctx, voice, rng)
    if role in ("bass", "bassAlt") and (role == "bassAlt" or voice.seed_offset != 0):
        notes = _independent_bass(ctx, voice, rng)
    else:
        if role in ("melody", "melodyAlt"):
            source = melody
        elif role == "accompaniment":
            source = accompaniment
        else:
            source = bass
        kept = _measure_gate(ctx, voice, rng) if voice.priority < 1.0 else None
        transpose = 12 * voice.octave_offset
        notes = [
            replace(note, channel_role=role, midi=clamp_midi(note.midi + transpose))
            for note in source
            if kept is None or measure_of_beat(note.start_beat) in kept
        ]
    if role in ("bass", "bassAlt") and ctx.plan.voice_arrangement.id == "layeredBass":
        scale, floor = LAYERED_BASS_SCALE[role]
        notes = [replace(note, velocity=max(floor, round(note.velocity * scale))) for note in notes]
    return notes


# =============================================================================
# PART 7: Entry point
# =============================================================================


def select_motifs(options: CompositionOptions, plan: StructurePlan, library: MotifLibrary) -> MotifSelection:
    """Walk the plan and return voiced tracks, drum hits and motif diagnostics."""

    ctx = SelectionContext.create(options, plan, library)
    for section in plan.sections:
        _compose_section(ctx, section)

    melody = _convert_melody(ctx, ctx.melody)
    accompaniment = _convert_accompaniment(ctx, ctx.accompaniment, SoundingNotes(melody))
    bass = _convert_bass(ctx, ctx.bass)

    tracks: dict[VoiceRole, list[MidiNote]] = {}
    for voice in plan.voice_arrangement.voices:
        notes = _voice_notes(ctx, voice, melody, accompaniment, bass)
        if notes:
            tracks[voice.role] = notes

    _LOGGER.debug(
        "Selected motifs for %d sections: %s",
        len(plan.sections),
        ", ".join(f"{role}={len(notes)}" for role, notes in tracks.items()),
    )
    return MotifSelection(
        tracks=tracks,
        drums=sorted(ctx.drums, key=lambda hit: hit.start_beat),
        motif_usage=ctx.usage.to_model(),
        section_motif_plan=list(ctx.section_plans),
    )
