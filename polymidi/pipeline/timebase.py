# polymidi/pipeline/timebase.py
"""Frame <-> seconds conversions for the model's time axis."""

from __future__ import annotations

import math
from typing import Iterable, List, Union

import numpy as np

from .config import DecoderConfig
from .constants import ANNOT_N_FRAMES, AUDIO_SAMPLE_RATE, FFT_HOP, HOP_SECONDS, WINDOW_OFFSET
from .models import NoteEventFrame, NoteEventTime


def model_frame_to_time(frame: Union[int, np.ndarray]) -> Union[float, np.ndarray]:
    """
    Convert a model frame index to seconds.

    Every completed model window shifts later frames back by WINDOW_OFFSET,
    so the mapping is piecewise linear rather than ``frame * hop``.
    """
    if isinstance(frame, np.ndarray):
        return frame * HOP_SECONDS - WINDOW_OFFSET * np.floor(frame / ANNOT_N_FRAMES)
    return frame * HOP_SECONDS - WINDOW_OFFSET * math.floor(frame / ANNOT_N_FRAMES)


def ms_to_frames(ms: float) -> int:
    """Convert a duration in milliseconds to the nearest whole number of model frames."""
    return int(round(ms / 1000.0 * AUDIO_SAMPLE_RATE / FFT_HOP))


def resolve_min_note_len(cfg: DecoderConfig) -> int:
    if cfg.min_note_len_frames is not None:
        return int(cfg.min_note_len_frames)
    return ms_to_frames(cfg.min_note_length_ms)


def note_frames_to_time(notes: Iterable[NoteEventFrame]) -> List[NoteEventTime]:
    """Convert frame-domain note events to seconds.

    Duration is the difference of the two mapped times, so a note that
    crosses a window boundary is shortened by the window correction.
    """
    out: List[NoteEventTime] = []
    for note in notes:
        start = model_frame_to_time(note.start_frame)
        end = model_frame_to_time(note.end_frame)
        out.append(
            NoteEventTime(
                start_time_seconds=float(start),
                duration_seconds=float(end - start),
                pitch_midi=note.pitch_midi,
                amplitude=note.amplitude,
                pitch_bends=note.pitch_bends,
            )
        )
    return out
