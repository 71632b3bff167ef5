# polymidi/pipeline/stage_c.py
"""
Stage C: Pitch-bend estimation.

For each decoded note, look at the finer-grained ``contours`` activations
around the note's nominal pitch and track, frame by frame, how far the
strongest contour bin sits from it.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import List, Optional, Sequence

import librosa
import numpy as np

from .config import PipelineConfig, PitchBendConfig
from .constants import ANNOTATIONS_BASE_FREQUENCY, CONTOURS_BINS_PER_SEMITONE
from .errors import ShapeError
from .kernels import arg_max_rows, gaussian_window
from .models import NoteEventFrame

logger = logging.getLogger(__name__)


def midi_pitch_to_contour_bin(pitch_midi: float) -> float:
    """Fractional contour-bin index of a MIDI pitch."""
    pitch_hz = float(librosa.midi_to_hz(pitch_midi))
    return 12.0 * CONTOURS_BINS_PER_SEMITONE * math.log2(pitch_hz / ANNOTATIONS_BASE_FREQUENCY)


def get_pitch_bends(
    contours: np.ndarray,
    note_events: Sequence[NoteEventFrame],
    n_bins_tolerance: int = 25,
    gaussian_std: float = 5.0,
) -> List[NoteEventFrame]:
    """Given note events and contours, estimate pitch bends per note.

    Pitch bends are one signed offset per frame of the note, in contour bins
    (1/3 semitone) relative to the note's nominal pitch. The window searched
    is ``n_bins_tolerance`` bins either side, weighted by a Gaussian so that
    bins far from the nominal pitch need more energy to win.

    Args:
        contours: Matrix of estimated pitch contours (n_times, n_contour_bins)
        note_events: frame-domain note events
        n_bins_tolerance: Pitch bend estimation range. Defaults to 25.
        gaussian_std: Standard deviation of the weighting window, in bins.

    Returns:
        New note events with ``pitch_bends`` filled in.
    """
    contours = np.asarray(contours)
    if contours.ndim != 2:
        raise ShapeError(f"contours must be 2-D (n_times, n_bins), got shape {contours.shape}")

    n_freq_bins = contours.shape[1]
    window_length = n_bins_tolerance * 2 + 1
    freq_gaussian = gaussian_window(window_length, gaussian_std)

    out: List[NoteEventFrame] = []
    for note in note_events:
        freq_idx = int(round(midi_pitch_to_contour_bin(note.pitch_midi)))
        freq_start_idx = max(freq_idx - n_bins_tolerance, 0)
        freq_end_idx = min(n_freq_bins, freq_idx + n_bins_tolerance + 1)
        if freq_end_idx <= freq_start_idx:
            raise ShapeError(
                f"pitch {note.pitch_midi} maps to contour bin {freq_idx}, outside {n_freq_bins} bins"
            )
        if note.end_frame > contours.shape[0]:
            raise ShapeError(
                f"note ends at frame {note.end_frame} but contours only has {contours.shape[0]} frames"
            )

        gaussian_lo = max(0, n_bins_tolerance - freq_idx)
        gaussian_hi = window_length - max(0, freq_idx - (n_freq_bins - n_bins_tolerance - 1))
        pitch_bend_submatrix = (
            contours[note.start_frame:note.end_frame, freq_start_idx:freq_end_idx]
            * freq_gaussian[gaussian_lo:gaussian_hi]
        )
        # column index of the nominal pitch inside the clipped window
        pb_shift = n_bins_tolerance - gaussian_lo

        if note.duration_frames > 0:
            bends = tuple(int(b) - pb_shift for b in arg_max_rows(pitch_bend_submatrix))
        else:
            bends = ()
        out.append(dataclasses.replace(note, pitch_bends=bends))

    logger.debug("Stage C: estimated pitch bends for %d notes", len(out))
    return out


def drop_overlapping_pitch_bends(note_events: Sequence) -> List:
    """
    Drop pitch bends from any notes that overlap in time with another note.

    Works on either frame- or time-domain events. The result is sorted by
    start (then pitch).
    """
    def _span(n):
        if isinstance(n, NoteEventFrame):
            return n.start_frame, n.end_frame
        return n.start_time_seconds, n.end_time_seconds

    events = sorted(note_events, key=lambda n: (_span(n)[0], n.pitch_midi))
    overlapping = [False] * len(events)
    for i in range(len(events) - 1):
        end_i = _span(events[i])[1]
        for j in range(i + 1, len(events)):
            if _span(events[j])[0] >= end_i:
                break
            overlapping[i] = True
            overlapping[j] = True

    dropped = sum(overlapping)
    if dropped:
        logger.debug("Stage C: dropped pitch bends from %d overlapping notes", dropped)
    return [
        dataclasses.replace(n, pitch_bends=None) if flag else n
        for n, flag in zip(events, overlapping)
    ]


def apply_pitch_bends(
    contours: np.ndarray,
    note_events: Sequence[NoteEventFrame],
    config: Optional[PipelineConfig] = None,
) -> List[NoteEventFrame]:
    """Bend estimation driven by the pitch_bend section of ``config``."""
    cfg: PitchBendConfig = (config or PipelineConfig()).pitch_bend
    if not cfg.include_pitch_bends:
        return list(note_events)
    notes = get_pitch_bends(contours, note_events, cfg.n_bins_tolerance, cfg.gaussian_std)
    if not cfg.multiple_pitch_bends:
        notes = drop_overlapping_pitch_bends(notes)
    return notes
