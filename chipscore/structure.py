from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np

from .config import (
    ArrangementId,
    CompositionOptions,
    Mood,
    StyleIntent,
    StylePreset,
    TempoSetting,
    Texture,
    tempo_to_bpm_base,
)
from .errors import MotifLibraryError, StructureError
from .library import MotifLibrary, default_library
from .models import SectionDefinition, StructurePlan, TechniqueStrategy, Voice, VoiceArrangement
from .rng import DeterministicRNG, derive_seed, random_from_seed, shuffle_with_seed
from .theory import key_scale_degrees, related_chords

_LOGGER = logging.getLogger("chipscore.structure")

Progression = tuple[str, ...]
SectionSlot = tuple[str, int]

BPM_JITTER_RANGE = 30
BPM_JITTER_LIMIT = 15

MOOD_TAG_MAP: Mapping[Mood, tuple[str, ...]] = MappingProxyType(
    {
        "upbeat": ("overworld_bright", "heroic"),
        "sad": ("ending_sorrowful", "dark"),
        "tense": ("final_battle_tense", "castle_majestic"),
        "peaceful": ("town_peaceful", "simple"),
    }
)
DEFAULT_KEY_PER_MOOD: Mapping[Mood, str] = MappingProxyType(
    {
        "upbeat": "G_Major",
        "sad": "E_Minor",
        "tense": "E_Minor",
        "peaceful": "C_Major",
    }
)

# ----- section templates -----
SECTION_TEMPLATE_POOL: tuple[tuple[SectionSlot, ...], ...] = (
    (("Intro", 1), ("A", 3), ("B", 2), ("A", 2)),
    (("A", 2), ("B", 2), ("A", 2), ("C", 2)),
    (("Intro", 2), ("A", 2), ("Bridge", 2), ("A", 2)),
    (("A", 4), ("B", 2), ("C", 2)),
)
TEMPLATE_INDEX_BY_MOOD: Mapping[Mood, tuple[int, ...]] = MappingProxyType(
    {
        "tense": (0, 3),
        "upbeat": (1, 2),
        "sad": (2, 3),
        "peaceful": (1, 2),
    }
)
SECTION_TEMPLATES_BY_LENGTH: Mapping[int, Mapping[Mood, tuple[SectionSlot, ...]]] = MappingProxyType(
    {
        16: MappingProxyType(
            {
                "upbeat": (("A", 8), ("B", 8)),
                "peaceful": (("A", 8), ("B", 8)),
                "tense": (("A", 8), ("B", 8)),
                "sad": (("A", 8), ("B", 8)),
            }
        ),
        32: MappingProxyType(
            {
                "upbeat": (("A", 8), ("B", 8), ("C", 8), ("D", 8)),
                "peaceful": (("A", 16), ("B", 16)),
                "tense": (("A", 8), ("B", 8), ("A", 8), ("C", 8)),
                "sad": (("Intro", 4), ("A", 12), ("B", 8), ("A", 8)),
            }
        ),
        64: MappingProxyType(
            {
                "upbeat": (("A", 16), ("B", 16), ("C", 16), ("D", 16)),
                "peaceful": (("A", 16), ("B", 16), ("A", 16), ("C", 16)),
                "tense": (("Intro", 8), ("A", 16), ("B", 16), ("C", 12), ("A", 12)),
                "sad": (("Intro", 8), ("A", 20), ("B", 16), ("A", 20)),
            }
        ),
    }
)
TEXTURE_SEQUENCES: Mapping[str, tuple[Texture, ...]] = MappingProxyType(
    {
        "Intro": ("broken",),
        "A": ("broken", "steady", "broken"),
        "B": ("steady", "steady", "arpeggio"),
        "Bridge": ("arpeggio", "steady"),
        "C": ("steady", "arpeggio", "steady"),
        "D": ("steady",),
    }
)
PHRASE_LENGTHS: Mapping[str, int] = MappingProxyType(
    {
        "Intro": 1,
        "A": 2,
        "B": 2,
        "Bridge": 4,
        "C": 2,
        "D": 1,
    }
)
HOOK_TEMPLATES = frozenset({"A"})
_ALL_TEXTURES: tuple[Texture, ...] = ("steady", "broken", "arpeggio")
_ARPEGGIO_KEEP_FIRST = 0.7
_ARPEGGIO_KEEP_LATER = 0.4
_TEXTURE_MUTATION_CHANCE = 0.1

# ----- style presets -----
STYLE_PRESET_FLAGS: Mapping[StylePreset, tuple[str, ...]] = MappingProxyType(
    {
        "minimalTechno": (
            "texture_focus",
            "loop_centric",
            "harmonic_static",
            "percussive_layering",
            "filter_motion",
            "syncopation_bias",
        ),
        "progressiveHouse": (
            "texture_focus",
            "loop_centric",
            "gradual_build",
            "percussive_layering",
            "break_insertion",
            "filter_motion",
            "atmos_pad",
        ),
        "retroLoopwave": (
            "texture_focus",
            "loop_centric",
            "percussive_layering",
            "filter_motion",
            "syncopation_bias",
        ),
        "breakbeatJungle": (
            "texture_focus",
            "percussive_layering",
            "break_insertion",
            "filter_motion",
            "syncopation_bias",
        ),
        "lofiChillhop": ("loop_centric", "harmonic_static", "atmos_pad", "texture_focus"),
    }
)

_STATIC_PROGRESSION_MIN_REPEATS = 3
_STATIC_RELATED_CHORD_CHANCE = 0.2
_PROGRESSION_STREAM_SALT = 300


@dataclass(frozen=True, slots=True)
class _StrategySeed:
    echo: float
    detune: float
    fast_arpeggio: float
    salt: int


TECHNIQUE_BASE: Mapping[Mood, _StrategySeed] = MappingProxyType(
    {
        "tense": _StrategySeed(0.5, 0.3, 0.4, 10),
        "upbeat": _StrategySeed(0.4, 0.2, 0.2, 20),
        "sad": _StrategySeed(0.6, 0.1, 0.1, 30),
        "peaceful": _StrategySeed(0.5, 0.05, 0.05, 40),
    }
)
_TECHNIQUE_JITTER = 0.2

# ----- voice arrangements -----


def _voice(role: str, channel: str, priority: float = 1.0, octave: int = 0, seed_offset: int = 0) -> Voice:
    return Voice(
        role=role,  # type: ignore[arg-type]
        channel=channel,  # type: ignore[arg-type]
        priority=priority,
        octave_offset=octave,
        seed_offset=seed_offset,
    )


VOICE_ARRANGEMENTS: Mapping[ArrangementId, VoiceArrangement] = MappingProxyType(
    {
        "standard": VoiceArrangement(
            id="standard",
            voices=(
                _voice("melody", "square1"),
                _voice("accompaniment", "square2"),
                _voice("bass", "triangle"),
            ),
        ),
        "swapped": VoiceArrangement(
            id="swapped",
            voices=(
                _voice("melody", "square2"),
                _voice("accompaniment", "square1"),
                _voice("bass", "triangle"),
            ),
        ),
        "dualBass": VoiceArrangement(
            id="dualBass",
            voices=(
                _voice("melody", "square1"),
                _voice("bass", "square2"),
                _voice("bassAlt", "triangle", 0.7, octave=-1, seed_offset=100),
            ),
        ),
        "bassLed": VoiceArrangement(
            id="bassLed",
            voices=(
                _voice("bass", "triangle", octave=-1),
                _voice("bassAlt", "square2", 0.8, seed_offset=200),
                _voice("melody", "square1", 0.3),
            ),
        ),
        "layeredBass": VoiceArrangement(
            id="layeredBass",
            voices=(
                _voice("bass", "square1"),
                _voice("bassAlt", "triangle", 0.85, seed_offset=160),
                _voice("melody", "square2"),
            ),
        ),
        "minimal": VoiceArrangement(
            id="minimal",
            voices=(
                _voice("bass", "square1"),
                _voice("pad", "triangle", 0.4),
            ),
        ),
        "breakLayered": VoiceArrangement(
            id="breakLayered",
            voices=(
                _voice("bass", "square1"),
                _voice("bassAlt", "triangle", 0.95, octave=-1, seed_offset=140),
                _voice("melody", "square2", 0.85, seed_offset=240),
            ),
        ),
        "lofiPadLead": VoiceArrangement(
            id="lofiPadLead",
            voices=(
                _voice("pad", "triangle", 0.9, octave=-1),
                _voice("accompaniment", "square2", octave=-1, seed_offset=60),
                _voice("melody", "square1", 0.45, seed_offset=180),
            ),
        ),
        "retroPulse": VoiceArrangement(
            id="retroPulse",
            voices=(
                _voice("melody", "square1", seed_offset=80),
                _voice("accompaniment", "square2", 0.85, seed_offset=140),
                _voice("bass", "triangle", 0.9, octave=-1, seed_offset=40),
            ),
        ),
    }
)

DEFAULT_ARRANGEMENT_WEIGHTS: Mapping[ArrangementId, int] = MappingProxyType(
    {
        "standard": 5,
        "swapped": 4,
        "dualBass": 2,
        "bassLed": 2,
        "layeredBass": 2,
        "minimal": 1,
        "breakLayered": 1,
        "lofiPadLead": 1,
        "retroPulse": 2,
    }
)
ARRANGEMENT_WEIGHTS_BY_STYLE: Mapping[StylePreset, Mapping[ArrangementId, int]] = MappingProxyType(
    {
        "minimalTechno": MappingProxyType(
            {"standard": 2, "minimal": 5, "bassLed": 3, "dualBass": 2, "swapped": 1, "layeredBass": 1}
        ),
        "progressiveHouse": MappingProxyType(
            {"standard": 4, "swapped": 3, "layeredBass": 3, "dualBass": 2, "bassLed": 1, "minimal": 0}
        ),
        "retroLoopwave": MappingProxyType(
            {"standard": 2, "swapped": 3, "retroPulse": 5, "layeredBass": 1, "minimal": 0, "bassLed": 1}
        ),
        "breakbeatJungle": MappingProxyType(
            {
                "breakLayered": 5,
                "dualBass": 3,
                "layeredBass": 2,
                "bassLed": 2,
                "standard": 1,
                "swapped": 1,
                "minimal": 0,
            }
        ),
        "lofiChillhop": MappingProxyType(
            {
                "lofiPadLead": 5,
                "minimal": 3,
                "standard": 2,
                "swapped": 1,
                "bassLed": 1,
                "layeredBass": 0,
                "dualBass": 1,
            }
        ),
    }
)

# ----- salts -----
_SALT_BPM = 1
_SALT_KEY = 5
_SALT_TEMPLATE = 60
_SALT_ARRANGEMENT = 100
_SALT_CHORD_POOL = 100
_SALT_CHORD_RESHUFFLE = 200
_SALT_ARPEGGIO_KEEP = 1000
_SALT_TEXTURE_MUTATION = 2000
_SALT_TEXTURE_PICK = 3000


# =============================================================================
# PART 1: Tempo, key and harmony
# =============================================================================


def compute_bpm(tempo: TempoSetting, seed: int) -> int:
    jitter = round((random_from_seed(seed, _SALT_BPM) - 0.5) * BPM_JITTER_RANGE)
    jitter = max(-BPM_JITTER_LIMIT, min(BPM_JITTER_LIMIT, jitter))
    return tempo_to_bpm_base(tempo) + jitter


def resolve_key(mood: Mood, seed: int, library: MotifLibrary) -> str:
    preferred = DEFAULT_KEY_PER_MOOD[mood]
    if preferred in library.chords:
        return preferred
    keys = library.keys
    if not keys:
        raise MotifLibraryError("Chord library is empty")
    fallback = keys[int(random_from_seed(seed, _SALT_KEY) * len(keys))]
    _LOGGER.info("Key %s missing from library; using %s", preferred, fallback)
    return fallback


def select_chord_progressions(library: MotifLibrary, key: str, mood: Mood, seed: int) -> list[Progression]:
    by_tag = library.progressions_for_key(key)
    pool: list[Progression] = []
    for tag in MOOD_TAG_MAP[mood]:
        pool.extend(by_tag.get(tag, ()))
    if not pool:
        for progressions in by_tag.values():
            pool.extend(progressions)
    if not pool:
        raise MotifLibraryError(f"No chord progressions available for key {key}")
    return shuffle_with_seed(pool, seed, _SALT_CHORD_POOL)


# =============================================================================
# PART 2: Sections
# =============================================================================


def _fit_template(template: Sequence[SectionSlot], length: int) -> list[SectionSlot]:
    total = sum(measures for _, measures in template)
    if total == length:
        return list(template)
    if length > total:
        loops = length // total
        slots = list(template) * loops
        remaining = length - loops * total
        index = 0
        while remaining > 0:
            template_id, measures = template[index % len(template)]
            take = min(measures, remaining)
            slots.append((template_id, take))
            remaining -= take
            index += 1
        return slots
    slots = []
    remaining = length
    for template_id, measures in template:
        if remaining <= 0:
            break
        take = min(measures, remaining)
        slots.append((template_id, take))
        remaining -= take
    return slots


def build_section_skeleton(mood: Mood, length: int, seed: int) -> list[SectionSlot]:
    """Template ids and measure counts summing to ``length``."""

    tuned = SECTION_TEMPLATES_BY_LENGTH.get(length)
    if tuned is not None:
        return list(tuned[mood])
    indices = TEMPLATE_INDEX_BY_MOOD[mood]
    pick = indices[int(random_from_seed(seed, _SALT_TEMPLATE) * len(indices))]
    return _fit_template(SECTION_TEMPLATE_POOL[pick], length)


def texture_for_occurrence(template_id: str, occurrence: int, seed: int) -> Texture:
    sequence = TEXTURE_SEQUENCES.get(template_id, ("steady",))
    planned = sequence[(occurrence - 1) % len(sequence)]
    if planned == "arpeggio":
        salt_sum = sum(ord(char) for char in template_id)
        roll = random_from_seed(seed, _SALT_ARPEGGIO_KEEP + salt_sum * 7 + occurrence * 13)
        keep = _ARPEGGIO_KEEP_FIRST if occurrence == 1 else _ARPEGGIO_KEEP_LATER
        if roll > keep:
            planned = next((texture for texture in sequence if texture != "arpeggio"), "steady")

    variation_salt = ord(template_id[0]) * 100 + occurrence
    if random_from_seed(seed, _SALT_TEXTURE_MUTATION + variation_salt) < _TEXTURE_MUTATION_CHANCE:
        alternatives = [texture for texture in _ALL_TEXTURES if texture != planned]
        roll = random_from_seed(seed, _SALT_TEXTURE_PICK + variation_salt)
        planned = alternatives[int(roll * len(alternatives))]
    return planned


def _limited_progression(base_chord: str, rng: DeterministicRNG) -> Progression:
    repeats = _STATIC_PROGRESSION_MIN_REPEATS + int(rng.random() * 2)
    chords = [base_chord] * repeats
    if rng.random() < _STATIC_RELATED_CHORD_CHANCE:
        related = related_chords(base_chord)
        chords.append(related[int(rng.random() * len(related))])
    return tuple(chords)


def build_sections(
    options: CompositionOptions,
    progressions: Sequence[Progression],
    precomputed: StyleIntent,
) -> tuple[SectionDefinition, ...]:
    seed = options.seed
    skeleton = build_section_skeleton(options.mood, options.length_in_measures, seed)
    pool = shuffle_with_seed(progressions, seed, _SALT_CHORD_RESHUFFLE)
    chord_variety = {chord for progression in pool for chord in progression}
    use_static = precomputed.harmonic_static
    use_single_chord = use_static and len(chord_variety) <= 1
    rng = DeterministicRNG(derive_seed(seed, _PROGRESSION_STREAM_SALT))

    occurrences: Counter[str] = Counter()
    sections: list[SectionDefinition] = []
    start = 0
    cursor = 0
    for template_id, measures in skeleton:
        if template_id not in PHRASE_LENGTHS:
            raise StructureError(f"Unknown section template: {template_id}")
        occurrences[template_id] += 1
        occurrence = occurrences[template_id]

        if use_single_chord:
            progression: Progression = (pool[0][0],)
        elif use_static:
            progression = _limited_progression(pool[cursor % len(pool)][0], rng)
        else:
            progression = tuple(pool[cursor % len(pool)])
        if not use_single_chord:
            cursor += 1

        sections.append(
            SectionDefinition(
                id=f"{template_id}{occurrence}",
                start_measure=start,
                measures=measures,
                chord_progression=progression,
                template_id=template_id,
                occurrence_index=occurrence,
                texture=texture_for_occurrence(template_id, occurrence, seed),
                phrase_length=PHRASE_LENGTHS[template_id],
            )
        )
        start += measures
    return tuple(sections)


def validate_sections(sections: Sequence[SectionDefinition], expected: int) -> None:
    actual = sum(section.measures for section in sections)
    if actual != expected:
        raise StructureError(f"Section length mismatch. expected={expected}, actual={actual}")


# =============================================================================
# PART 3: Style intent and techniques
# =============================================================================


def _preset_patch(preset: Optional[StylePreset]) -> dict[str, bool]:
    if preset is None:
        return {}
    return {flag: True for flag in STYLE_PRESET_FLAGS[preset]}


def precompute_style_intent(options: CompositionOptions) -> StyleIntent:
    """Intent known before sections exist: preset plus explicit overrides."""

    patch = _preset_patch(options.style_preset)
    patch.update(options.explicit_overrides())
    return StyleIntent().merged(patch)


def resolve_style_intent(options: CompositionOptions, sections: Sequence[SectionDefinition]) -> StyleIntent:
    flags = {flag: False for flag in StyleIntent.model_fields}
    flags.update(_preset_patch(options.style_preset))

    total = sum(section.measures for section in sections)
    template_counts = Counter(section.template_id for section in sections)
    repeated_template = any(count > 1 for count in template_counts.values())
    average_length = total / len(sections) if sections else 0
    if repeated_template or average_length <= 4:
        flags["loop_centric"] = True

    fast_enough = options.tempo != "slow"
    if fast_enough and total >= 8:
        flags["loop_centric"] = True
        flags["percussive_layering"] = True

    match options.mood:
        case "tense":
            flags["texture_focus"] = True
            flags["syncopation_bias"] = True
        case "sad":
            flags["texture_focus"] = True
        case "peaceful":
            flags["atmos_pad"] = True
        case "upbeat":
            flags["syncopation_bias"] = True

    if options.tempo == "fast":
        flags["filter_motion"] = True
        flags["percussive_layering"] = True
    if total >= 12:
        flags["gradual_build"] = True

    distinct_progressions = {section.chord_progression for section in sections}
    unique_chords = {chord for section in sections for chord in section.chord_progression}
    single_chord_sections = all(len(set(section.chord_progression)) <= 1 for section in sections)
    if len(distinct_progressions) <= 1 and (len(unique_chords) <= 2 or single_chord_sections):
        flags["harmonic_static"] = True

    if total >= 8 and fast_enough:
        flags["break_insertion"] = True

    inferred_static = flags["harmonic_static"]
    overrides = options.explicit_overrides()
    flags.update(overrides)
    if not inferred_static and "harmonic_static" not in overrides:
        flags["harmonic_static"] = False
    return StyleIntent(**flags)


def derive_technique_strategy(mood: Mood, intent: StyleIntent, seed: int) -> TechniqueStrategy:
    base = TECHNIQUE_BASE[mood]
    echo, detune, fast_arp = base.echo, base.detune, base.fast_arpeggio

    if intent.texture_focus:
        fast_arp = max(0.05, fast_arp * 0.6)
        echo = min(0.95, echo + 0.05)
    if intent.loop_centric:
        detune = max(0.05, detune * 0.8)
    if intent.gradual_build:
        echo = min(0.95, echo + 0.1)
    if intent.harmonic_static:
        detune = max(0.05, detune * 0.7)
    if intent.percussive_layering:
        fast_arp = min(0.9, fast_arp + 0.05)
    if intent.filter_motion:
        detune = min(0.9, detune + 0.1)
    if intent.syncopation_bias:
        echo = min(0.9, echo + 0.05)
    if intent.atmos_pad:
        echo = min(0.95, echo + 0.08)
    if intent.break_insertion:
        fast_arp = max(0.05, fast_arp * 0.9)

    def jitter(value: float, offset: int) -> float:
        shifted = value + (random_from_seed(seed, base.salt + offset) - 0.5) * _TECHNIQUE_JITTER
        return float(np.clip(shifted, 0.05, 0.95))

    return TechniqueStrategy(
        echo_probability=jitter(echo, 1),
        detune_probability=jitter(detune, 2),
        fast_arpeggio_probability=jitter(fast_arp, 3),
    )


def select_voice_arrangement(seed: int, preset: Optional[StylePreset]) -> VoiceArrangement:
    weights = ARRANGEMENT_WEIGHTS_BY_STYLE.get(preset) if preset else None
    table = weights if weights is not None else DEFAULT_ARRANGEMENT_WEIGHTS
    ids = list(table)
    cumulative = np.cumsum([max(0, table[arrangement_id]) for arrangement_id in ids])
    if not ids or cumulative[-1] <= 0:
        return VOICE_ARRANGEMENTS["standard"]
    roll = random_from_seed(seed, _SALT_ARRANGEMENT) * float(cumulative[-1])
    index = int(np.searchsorted(cumulative, roll, side="right"))
    if index >= len(ids):
        return VOICE_ARRANGEMENTS["standard"]
    return VOICE_ARRANGEMENTS[ids[index]]


# =============================================================================
# PART 4: Entry point
# =============================================================================


def plan_structure(options: CompositionOptions, library: Optional[MotifLibrary] = None) -> StructurePlan:
    """Plan tempo, key, sections, intent, ornaments and voicing for one composition."""

    library = library or default_library()
    seed = options.seed
    bpm = compute_bpm(options.tempo, seed)
    key = resolve_key(options.mood, seed, library)
    scale_degrees = key_scale_degrees(key)
    progressions = select_chord_progressions(library, key, options.mood, seed)
    precomputed = precompute_style_intent(options)
    sections = build_sections(options, progressions, precomputed)
    intent = resolve_style_intent(options, sections)
    strategy = derive_technique_strategy(options.mood, intent, seed)
    validate_sections(sections, options.length_in_measures)
    arrangement = select_voice_arrangement(seed, options.style_preset)

    _LOGGER.debug(
        "Planned %d sections at %d bpm in %s (arrangement=%s, intent=%s)",
        len(sections),
        bpm,
        key,
        arrangement.id,
        ",".join(intent.enabled()) or "none",
    )
    return StructurePlan(
        bpm=bpm,
        key=key,
        scale_degrees=scale_degrees,
        sections=sections,
        technique_strategy=strategy,
        style_intent=intent,
        voice_arrangement=arrangement,
    )
