from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Union

import numpy as np

from .config import PipelineConfig
from .constants import AUDIO_N_SAMPLES, FFT_HOP
from .instrumentation import PipelineLogger, optional_stage
from .midi_export import events_to_midi_bytes
from .models import ModelOutput, NoteEventTime, TranscriptionResult
from .stage_a import Predictor, as_model_output, run_model, stitch_model_output, window_audio
from .stage_b import decode_notes
from .stage_c import apply_pitch_bends
from .stage_d import notes_to_midi_events
from .timebase import note_frames_to_time, resolve_min_note_len
from .validation import validate_midi_events, validate_notes

logger = logging.getLogger(__name__)


def _sort_notes(notes: List[NoteEventTime]) -> List[NoteEventTime]:
    return sorted(notes, key=lambda n: (n.start_time_seconds, n.pitch_midi))


def model_output_to_notes(
    output: ModelOutput,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> List[NoteEventTime]:
    """
    Decoder -> pitch bends -> time mapping.

    Returns time-domain notes sorted by (start, pitch).
    """
    config = (config or PipelineConfig()).validate()

    with optional_stage(pipeline_logger, "stage_b") as meta:
        frame_notes = decode_notes(output, config)
        meta["note_count"] = len(frame_notes)

    with optional_stage(pipeline_logger, "stage_c") as meta:
        frame_notes = apply_pitch_bends(output.contours, frame_notes, config)
        meta["notes_with_bends"] = sum(1 for n in frame_notes if n.pitch_bends is not None)

    validate_notes(frame_notes, config, pipeline_logger=pipeline_logger)
    return _sort_notes(note_frames_to_time(frame_notes))


def transcribe_model_output(
    output: Union[ModelOutput, Mapping[str, np.ndarray]],
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> TranscriptionResult:
    """
    High-level entry point for already-stitched activations.

    Either a complete TranscriptionResult is returned or the first error
    propagates; there is no partial result.
    """
    config = (config or PipelineConfig()).validate()
    if not isinstance(output, ModelOutput):
        output = as_model_output(output)

    if pipeline_logger is not None:
        pipeline_logger.emit_config("pipeline", config)

    notes = model_output_to_notes(output, config, pipeline_logger)

    with optional_stage(pipeline_logger, "stage_d") as meta:
        events = notes_to_midi_events(notes, config)
        midi_bytes = events_to_midi_bytes(events, config.midi.bpm, config.midi.ticks_per_beat)
        meta["event_count"] = len(events)
        meta["midi_bytes"] = len(midi_bytes)

    diagnostics = {
        "min_note_len_frames": resolve_min_note_len(config.decoder),
        "note_count": len(notes),
        "event_count": len(events),
        "contract_notes": validate_notes(notes, config, pipeline_logger=pipeline_logger),
        "contract_midi": validate_midi_events(events, pipeline_logger=pipeline_logger),
    }
    logger.info(
        "Transcribed %d frames into %d notes (%d MIDI events, %d bytes)",
        output.n_frames,
        len(notes),
        len(events),
        len(midi_bytes),
    )
    return TranscriptionResult(
        notes=notes,
        midi_bytes=midi_bytes,
        n_frames=output.n_frames,
        diagnostics=diagnostics,
    )


def transcribe_windows(
    windows: Mapping[str, object],
    audio_original_length: int,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> TranscriptionResult:
    """Stitch batched model windows, then transcribe."""
    config = (config or PipelineConfig()).validate()
    with optional_stage(pipeline_logger, "stage_a") as meta:
        output = stitch_model_output(windows, audio_original_length, config)
        meta["n_frames"] = output.n_frames
    return transcribe_model_output(output, config, pipeline_logger)


def transcribe_audio(
    audio: np.ndarray,
    predict: Predictor,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> TranscriptionResult:
    """
    Window mono audio (already at the model sample rate), run ``predict``
    on every window, and transcribe the stitched result.
    """
    config = (config or PipelineConfig()).validate()
    overlap_len = config.stitch.n_overlapping_frames * FFT_HOP
    windows, original_length = window_audio(audio, overlap_len, AUDIO_N_SAMPLES - overlap_len)
    logger.debug("Running model on %d windows (%d samples)", len(windows), original_length)
    with optional_stage(pipeline_logger, "model") as meta:
        collected = run_model(predict, windows)
        meta["n_windows"] = int(len(windows))
    return transcribe_windows(collected, original_length, config, pipeline_logger)
