from __future__ import annotations

from .config import (
    CompositionOptions,
    Mood,
    StyleIntent,
    StyleOverrides,
    StylePreset,
    TempoSetting,
    parse_options,
)
from .errors import (
    ChipScoreError,
    InvalidEventError,
    InvalidOptionsError,
    MotifLibraryError,
    StructureError,
)
from .library import MotifLibrary, default_library
from .logging_utils import configure_logging as _configure_logging
from .models import (
    CompositionMeta,
    Diagnostics,
    Event,
    LoopInfo,
    PipelineResult,
    StructurePlan,
    VoiceArrangement,
)
from .pipeline import generate_composition, run_pipeline
from .rng import DeterministicRNG, derive_seed, random_from_seed, shuffle_with_seed
from .structure import plan_structure

__all__ = [
    "ChipScoreError",
    "CompositionMeta",
    "CompositionOptions",
    "DeterministicRNG",
    "Diagnostics",
    "Event",
    "InvalidEventError",
    "InvalidOptionsError",
    "LoopInfo",
    "Mood",
    "MotifLibrary",
    "MotifLibraryError",
    "PipelineResult",
    "StructureError",
    "StructurePlan",
    "StyleIntent",
    "StyleOverrides",
    "StylePreset",
    "TempoSetting",
    "VoiceArrangement",
    "default_library",
    "derive_seed",
    "generate_composition",
    "parse_options",
    "plan_structure",
    "random_from_seed",
    "run_pipeline",
    "shuffle_with_seed",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
