# polymidi/pipeline/stage_b.py
"""
Stage B: Note event decoding.

Turns the ``frames`` (sustain) and ``onsets`` activation matrices into
discrete note events in the frame domain:

  1. Zero activations outside the requested frequency range.
  2. Optionally surface extra onsets from sharp rises in sustain energy.
  3. Pick onset peaks above ``onset_thresh`` as note start candidates.
  4. Greedily extend each candidate while sustain energy holds, consuming
     that energy from a private working copy.
  5. Optionally ("melodia trick") sweep the leftover energy for notes
     whose onset was missed.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional

import librosa
import numpy as np

from .config import DecoderConfig, PipelineConfig
from .constants import MIDI_OFFSET
from .errors import ShapeError
from .kernels import (
    elementwise_max_across,
    elementwise_min_across,
    global_max,
    local_maxima_mask,
    mean_std,
    rescale_to_max,
    where_greater_than,
)
from .models import ModelOutput, NoteEventFrame
from .timebase import resolve_min_note_len

logger = logging.getLogger(__name__)

ONSET_PEAK_ORDER = 2
N_DIFF = 2


def _midi_bound(freq_hz: float) -> float:
    # rounding guards against hz_to_midi(midi_to_hz(p)) landing a hair below p
    return round(float(librosa.hz_to_midi(freq_hz)), 6)


def frequency_bounds_to_columns(
    n_cols: int,
    max_freq: Optional[float],
    min_freq: Optional[float],
) -> tuple:
    """
    Column range [lo, hi) whose MIDI pitch lies inside [min_freq, max_freq].
    """
    lo, hi = 0, n_cols
    if max_freq is not None:
        hi = math.floor(_midi_bound(max_freq)) - MIDI_OFFSET + 1
    if min_freq is not None:
        lo = math.ceil(_midi_bound(min_freq)) - MIDI_OFFSET
    return min(max(lo, 0), n_cols), min(max(hi, 0), n_cols)


def constrain_frequency(
    onsets: np.ndarray,
    frames: np.ndarray,
    max_freq: Optional[float],
    min_freq: Optional[float],
) -> None:
    """Zero out (in place) onset/frame activations above max_freq and below min_freq."""
    lo, hi = frequency_bounds_to_columns(frames.shape[1], max_freq, min_freq)
    for x in (onsets, frames):
        x[:, hi:] = 0
        x[:, :lo] = 0


def get_inferred_onsets(onsets: np.ndarray, frames: np.ndarray, n_diff: int = N_DIFF) -> np.ndarray:
    """Infer onsets from large changes in frame amplitudes.

    Args:
        onsets: Array of note onset predictions.
        frames: Audio frames.
        n_diff: Differences used to detect onsets.

    Returns:
        The maximum between the predicted onsets and its differences.
    """
    n_cols = frames.shape[1]
    diffs = []
    for n in range(1, n_diff + 1):
        frames_appended = np.concatenate([np.zeros((n, n_cols), dtype=frames.dtype), frames], axis=0)
        diffs.append(frames_appended[n:, :] - frames_appended[:-n, :])

    frame_diff = elementwise_min_across(diffs)
    frame_diff[frame_diff < 0] = 0
    frame_diff[:n_diff, :] = 0

    # rescale to have the same max as onsets
    frame_diff = rescale_to_max(frame_diff, global_max(onsets))

    # use the max of the predicted onsets and the differences
    return elementwise_max_across([onsets, frame_diff.astype(onsets.dtype)])


def _consume_band(remaining_energy: np.ndarray, rows: slice, freq_idx: int) -> None:
    # zero the note's pitch and its semitone neighbours
    lo = max(freq_idx - 1, 0)
    hi = min(freq_idx + 2, remaining_energy.shape[1])
    remaining_energy[rows, lo:hi] = 0


def output_to_notes_polyphonic(
    frames: np.ndarray,
    onsets: np.ndarray,
    onset_thresh: float,
    frame_thresh: Optional[float],
    min_note_len: int,
    infer_onsets: bool = True,
    max_freq: Optional[float] = None,
    min_freq: Optional[float] = None,
    melodia_trick: bool = True,
    energy_tolerance: int = 11,
) -> List[NoteEventFrame]:
    """Decode raw model output to polyphonic note events.

    Args:
        frames: Frame activation matrix (n_times, n_freqs).
        onsets: Onset activation matrix (n_times, n_freqs).
        onset_thresh: Minimum amplitude of an onset activation to be considered an onset.
        frame_thresh: Minimum amplitude of a frame activation for a note to remain "on".
            None infers it as mean + std of ``frames``.
        min_note_len: Minimum allowed note length in frames (exclusive).
        infer_onsets: If True, add additional onsets when there are large differences in frame amplitudes.
        max_freq: Maximum allowed output frequency, in Hz.
        min_freq: Minimum allowed output frequency, in Hz.
        melodia_trick: Sweep leftover energy for notes without a detected onset.
        energy_tolerance: Number of consecutive frames allowed below frame_thresh inside a note.

    Returns:
        Note events in frame units, without pitch bends. Not sorted.
    """
    frames = np.array(frames, dtype=np.float32, copy=True)
    onsets = np.array(onsets, dtype=np.float32, copy=True)
    if frames.ndim != 2 or onsets.ndim != 2:
        raise ShapeError(f"frames and onsets must be 2-D, got {frames.shape} and {onsets.shape}")
    if frames.shape != onsets.shape:
        raise ShapeError(f"frames {frames.shape} and onsets {onsets.shape} must share a shape")

    if frame_thresh is None:
        mean, std = mean_std(frames)
        frame_thresh = mean + std
        logger.debug("Stage B: inferred frame threshold %.4f (mean %.4f + std %.4f)", frame_thresh, mean, std)

    n_frames = frames.shape[0]
    if n_frames == 0 or frames.shape[1] == 0:
        logger.warning("Stage B: empty activation matrix %s, no notes decoded", frames.shape)
        return []

    constrain_frequency(onsets, frames, max_freq, min_freq)

    if infer_onsets:
        onsets = get_inferred_onsets(onsets, frames)

    peak_thresh_mat = np.zeros_like(onsets)
    peaks = local_maxima_mask(onsets, ONSET_PEAK_ORDER)
    peak_thresh_mat[peaks] = onsets[peaks]

    onset_time_idx, onset_freq_idx = where_greater_than(peak_thresh_mat, onset_thresh)
    # Later candidates are consumed first. Which of two overlapping onsets
    # survives depends on this order, so it must stay reversed.
    onset_time_idx = onset_time_idx[::-1]
    onset_freq_idx = onset_freq_idx[::-1]
    logger.debug("Stage B: %d onset candidates above %.3f", len(onset_time_idx), onset_thresh)

    remaining_energy = frames.copy()

    note_events: List[NoteEventFrame] = []
    for note_start_idx, freq_idx in zip(onset_time_idx.tolist(), onset_freq_idx.tolist()):
        # if we're too close to the end of the audio, continue
        if note_start_idx >= n_frames - 1:
            continue

        # find time index at this frequency band where the frames drop below an energy threshold
        i = note_start_idx + 1
        k = 0  # number of frames since energy dropped below threshold
        while i < n_frames - 1 and k < energy_tolerance:
            if remaining_energy[i, freq_idx] < frame_thresh:
                k += 1
            else:
                k = 0
            i += 1

        i -= k  # go back to frame above threshold

        # if the note is too short, skip it
        if i - note_start_idx <= min_note_len:
            continue

        _consume_band(remaining_energy, slice(note_start_idx, i), freq_idx)

        amplitude = float(np.mean(frames[note_start_idx:i, freq_idx]))
        note_events.append(
            NoteEventFrame(
                start_frame=note_start_idx,
                duration_frames=i - note_start_idx,
                pitch_midi=freq_idx + MIDI_OFFSET,
                amplitude=amplitude,
            )
        )

    n_onset_notes = len(note_events)

    if melodia_trick:
        note_events.extend(
            _melodia_notes(frames, remaining_energy, frame_thresh, min_note_len, energy_tolerance)
        )

    logger.debug(
        "Stage B: %d onset-driven notes, %d melodia notes",
        n_onset_notes,
        len(note_events) - n_onset_notes,
    )
    return note_events


def _melodia_notes(
    frames: np.ndarray,
    remaining_energy: np.ndarray,
    frame_thresh: float,
    min_note_len: int,
    energy_tolerance: int,
) -> List[NoteEventFrame]:
    """Greedily peel notes off the energy left unclaimed by onset decoding."""
    n_frames = frames.shape[0]
    notes: List[NoteEventFrame] = []

    while global_max(remaining_energy) > frame_thresh:
        i_mid, freq_idx = np.unravel_index(np.argmax(remaining_energy), remaining_energy.shape)
        i_mid, freq_idx = int(i_mid), int(freq_idx)
        remaining_energy[i_mid, freq_idx] = 0

        # forward pass
        i = i_mid + 1
        k = 0
        while i < n_frames - 1 and k < energy_tolerance:
            if remaining_energy[i, freq_idx] < frame_thresh:
                k += 1
            else:
                k = 0
            _consume_band(remaining_energy, slice(i, i + 1), freq_idx)
            i += 1
        i_end = i - 1 - k

        # backward pass
        i = i_mid - 1
        k = 0
        while i > 0 and k < energy_tolerance:
            if remaining_energy[i, freq_idx] < frame_thresh:
                k += 1
            else:
                k = 0
            _consume_band(remaining_energy, slice(i, i + 1), freq_idx)
            i -= 1
        i_start = i + 1 + k

        if i_end - i_start <= min_note_len:
            # note is too short, skip it; its energy is already removed
            continue

        amplitude = float(np.mean(frames[i_start:i_end, freq_idx]))
        notes.append(
            NoteEventFrame(
                start_frame=i_start,
                duration_frames=i_end - i_start,
                pitch_midi=freq_idx + MIDI_OFFSET,
                amplitude=amplitude,
            )
        )

    return notes


def decode_notes(output: ModelOutput, config: Optional[PipelineConfig] = None) -> List[NoteEventFrame]:
    """Run ``output_to_notes_polyphonic`` with the decoder section of ``config``."""
    cfg: DecoderConfig = (config or PipelineConfig()).decoder
    return output_to_notes_polyphonic(
        output.frames,
        output.onsets,
        onset_thresh=cfg.onset_threshold,
        frame_thresh=cfg.frame_threshold,
        min_note_len=resolve_min_note_len(cfg),
        infer_onsets=cfg.infer_onsets,
        max_freq=cfg.max_freq_hz,
        min_freq=cfg.min_freq_hz,
        melodia_trick=cfg.melodia_trick,
        energy_tolerance=cfg.energy_tolerance,
    )
