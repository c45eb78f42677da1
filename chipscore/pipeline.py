"""Five-phase composition pipeline.

Structure planning fixes bpm, key, sections and style; motif selection turns
the plan into voiced tracks and drum hits; realization maps those onto the four
channels; the technique pass layers parameter automation on top; the timeline
pass converts beats to seconds and collects diagnostics.
"""

from __future__ import annotations

import logging
from typing import Optional

from .composer import select_motifs
from .config import OptionsInput, parse_options
from .library import MotifLibrary, default_library
from .logging_utils import debug_enabled, log_phase
from .models import CompositionMeta, LoopInfo, PipelineResult, StructurePlan
from .realization import realize_events
from .structure import plan_structure
from .techniques import apply_techniques
from .theory import BEATS_PER_MEASURE
from .timeline import beats_to_seconds, finalize_timeline

_LOGGER = logging.getLogger("chipscore.pipeline")


def _log_plan(plan: StructurePlan) -> None:
    layout = " ".join(
        f"{section.id}[{section.start_measure}+{section.measures} {section.texture}]" for section in plan.sections
    )
    _LOGGER.debug("Plan: %d bpm, key %s, arrangement %s", plan.bpm, plan.key, plan.voice_arrangement.id)
    _LOGGER.debug("Sections: %s", layout)
    _LOGGER.debug("Style: %s", ", ".join(plan.style_intent.enabled()) or "-")


def run_pipeline(options: OptionsInput = None, library: Optional[MotifLibrary] = None) -> PipelineResult:
    """Generate one composition. The same options always yield the same result."""

    resolved = parse_options(options)
    library = library or default_library()

    with log_phase(_LOGGER, "structure"):
        plan = plan_structure(resolved, library)
    if debug_enabled():
        _log_plan(plan)
    with log_phase(_LOGGER, "selection"):
        selection = select_motifs(resolved, plan, library)
    with log_phase(_LOGGER, "realization"):
        realization = realize_events(resolved, plan, selection)
    with log_phase(_LOGGER, "techniques"):
        decorated = apply_techniques(realization.events, plan.style_intent, library.techniques)
    with log_phase(_LOGGER, "timeline"):
        events, diagnostics = finalize_timeline(
            plan,
            decorated,
            realization.voice_allocation,
            selection.motif_usage,
            selection.section_motif_plan,
        )

    total_beats = resolved.length_in_measures * BEATS_PER_MEASURE
    total_duration = beats_to_seconds(total_beats, plan.bpm)
    meta = CompositionMeta(
        bpm=plan.bpm,
        key=plan.key,
        seed=resolved.seed,
        mood=resolved.mood,
        tempo=resolved.tempo,
        length_in_measures=resolved.length_in_measures,
        style_intent=plan.style_intent,
        voice_arrangement=plan.voice_arrangement,
        loop_info=LoopInfo(
            loop_start_beat=0,
            loop_end_beat=total_beats,
            loop_start_time=0,
            loop_end_time=total_duration,
            total_beats=total_beats,
            total_duration=total_duration,
        ),
        replay_options=resolved,
    )
    _LOGGER.info(
        "Generated %s/%s composition: %d measures, %d bpm, key %s, %d events",
        resolved.mood,
        resolved.tempo,
        resolved.length_in_measures,
        plan.bpm,
        plan.key,
        len(events),
    )
    return PipelineResult(events=tuple(events), diagnostics=diagnostics, meta=meta)


generate_composition = run_pipeline
