# polymidi/pipeline/models.py
"""Dataclasses and enums passed between pipeline stages.

Matrices travel as ``numpy`` arrays. Note events are frozen: each stage
builds new events (``dataclasses.replace``) instead of mutating the ones
it was handed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


@dataclass
class ModelOutput:
    """Stitched model activations, all sharing the same number of time rows."""
    contours: np.ndarray  # (n_times, 3 * n_semitones)
    frames: np.ndarray    # (n_times, n_semitones) sustain activation
    onsets: np.ndarray    # (n_times, n_semitones) onset activation

    @property
    def n_frames(self) -> int:
        return int(self.frames.shape[0])


@dataclass(frozen=True)
class NoteEventFrame:
    start_frame: int
    duration_frames: int
    pitch_midi: int
    amplitude: float                               # mean frame activation, 0..1
    pitch_bends: Optional[Tuple[int, ...]] = None  # one contour-bin offset per frame

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.duration_frames


@dataclass(frozen=True)
class NoteEventTime:
    start_time_seconds: float
    duration_seconds: float
    pitch_midi: int
    amplitude: float
    pitch_bends: Optional[Tuple[int, ...]] = None

    @property
    def end_time_seconds(self) -> float:
        return self.start_time_seconds + self.duration_seconds


class MidiEventKind(str, Enum):
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"
    PITCH_BEND = "pitch_bend"


@dataclass
class MidiEvent:
    """
    One channel event stamped with an absolute tick.

    Only lives between scheduling and delta encoding. ``bend`` is the signed
    offset from the bend center (0x2000); ``delta`` is filled in by
    ``stage_d.to_delta_events``.
    """
    tick: int
    kind: MidiEventKind
    channel: int = 0
    note: int = 0
    velocity: int = 0
    bend: int = 0
    delta: Optional[int] = None


@dataclass
class TranscriptionResult:
    notes: List[NoteEventTime]
    midi_bytes: bytes
    n_frames: int = 0
    diagnostics: Dict[str, Any] = field(default_factory=dict)
