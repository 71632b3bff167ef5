"""Pipeline package initializer.

Stages:
    stage_a  model windowing and window stitching
    stage_b  note event decoding
    stage_c  pitch-bend estimation
    stage_d  MIDI event scheduling (bytes are written by ``midi_export``)

The common entry points are re-exported here.
"""

from __future__ import annotations

from .config import DEFAULT_CONFIG, PipelineConfig
from .errors import ArithmeticDegeneracyError, ConfigError, ShapeError
from .midi_export import notes_to_midi_bytes
from .models import ModelOutput, NoteEventFrame, NoteEventTime, TranscriptionResult
from .stage_a import stitch_model_output, unwrap_output
from .stage_b import decode_notes, output_to_notes_polyphonic
from .stage_c import apply_pitch_bends, get_pitch_bends
from .stage_d import notes_to_midi_events, schedule_note_events
from .timebase import model_frame_to_time, note_frames_to_time
from .transcribe import (
    model_output_to_notes,
    transcribe_audio,
    transcribe_model_output,
    transcribe_windows,
)

__all__ = [
    "DEFAULT_CONFIG",
    "PipelineConfig",
    "ArithmeticDegeneracyError",
    "ConfigError",
    "ShapeError",
    "ModelOutput",
    "NoteEventFrame",
    "NoteEventTime",
    "TranscriptionResult",
    "unwrap_output",
    "stitch_model_output",
    "output_to_notes_polyphonic",
    "decode_notes",
    "get_pitch_bends",
    "apply_pitch_bends",
    "model_frame_to_time",
    "note_frames_to_time",
    "schedule_note_events",
    "notes_to_midi_events",
    "notes_to_midi_bytes",
    "model_output_to_notes",
    "transcribe_model_output",
    "transcribe_windows",
    "transcribe_audio",
]
