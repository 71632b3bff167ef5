# polymidi/pipeline/stage_a.py
"""
Stage A: audio windowing and window stitching.

The audio side (``load_audio``/``window_audio``/``run_model``) is a thin
front-end around librosa and a caller-supplied model callable. The core
of this stage is ``unwrap_output``, which merges the overlapping model
windows back into one continuous (n_times, n_freqs) matrix.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Sequence, Tuple, Union

import librosa
import numpy as np

from .config import PipelineConfig, StitchConfig
from .constants import (
    ANNOTATIONS_FPS,
    AUDIO_N_SAMPLES,
    AUDIO_SAMPLE_RATE,
    HOP_SIZE,
    OVERLAP_LEN,
)
from .errors import ConfigError, ShapeError
from .models import ModelOutput

logger = logging.getLogger(__name__)

OUTPUT_KEYS = ("contours", "frames", "onsets")

# Model output names seen in the wild -> canonical key
_OUTPUT_ALIASES = {
    "contour": "contours",
    "contours": "contours",
    "note": "frames",
    "notes": "frames",
    "frame": "frames",
    "frames": "frames",
    "onset": "onsets",
    "onsets": "onsets",
}

WindowedArray = Union[np.ndarray, Sequence[np.ndarray]]
Predictor = Callable[[np.ndarray], Mapping[str, np.ndarray]]


# ------------------------------------------------------------
# Audio front-end
# ------------------------------------------------------------

def load_audio(path: str) -> Tuple[np.ndarray, int]:
    """Load mono audio at the model sample rate. Returns (audio, n_samples)."""
    audio, _ = librosa.load(path, sr=AUDIO_SAMPLE_RATE, mono=True)
    return audio.astype(np.float32), int(audio.shape[0])


def audio_length_from_file(path: str) -> int:
    """Length the file would have once resampled to the model rate, in samples."""
    duration_sec = librosa.get_duration(path=path)
    return int(round(duration_sec * AUDIO_SAMPLE_RATE))


def window_audio(
    audio: np.ndarray,
    overlap_len: int = OVERLAP_LEN,
    hop_size: int = HOP_SIZE,
) -> Tuple[np.ndarray, int]:
    """
    Pad the audio and cut it into model-sized windows.

    The signal is left-padded with ``overlap_len // 2`` zeros so that the
    half-overlap trim in ``unwrap_output`` lines frame 0 up with sample 0.
    Windows start every ``hop_size`` samples; the last one is zero-padded.

    Returns:
        windows: (n_windows, AUDIO_N_SAMPLES, 1) float32
        original_length: number of samples before padding
    """
    audio = np.asarray(audio, dtype=np.float32)
    if audio.ndim != 1:
        raise ShapeError(f"audio must be mono 1-D, got shape {audio.shape}")
    if overlap_len < 0 or overlap_len % 2:
        raise ConfigError(f"overlap_len must be even and >= 0, got {overlap_len}")
    if hop_size <= 0:
        raise ConfigError(f"hop_size must be > 0, got {hop_size}")

    original_length = int(audio.shape[0])
    padded = np.concatenate([np.zeros(overlap_len // 2, dtype=np.float32), audio])

    windows: List[np.ndarray] = []
    for start in range(0, padded.shape[0], hop_size):
        window = padded[start:start + AUDIO_N_SAMPLES]
        if window.shape[0] < AUDIO_N_SAMPLES:
            window = np.pad(window, (0, AUDIO_N_SAMPLES - window.shape[0]))
        windows.append(window)

    if not windows:
        return np.zeros((0, AUDIO_N_SAMPLES, 1), dtype=np.float32), original_length
    return np.stack(windows)[:, :, np.newaxis], original_length


def canonical_output_key(name: str) -> str:
    key = _OUTPUT_ALIASES.get(str(name).lower())
    if key is None:
        raise ShapeError(f"Unrecognised model output {name!r}; expected one of {sorted(_OUTPUT_ALIASES)}")
    return key


def run_model(predict: Predictor, windows: np.ndarray) -> Dict[str, List[np.ndarray]]:
    """
    Call ``predict`` once per window and collect the outputs per key.

    Each returned array is normalised to a (1, n_times, n_freqs) batch.
    """
    collected: Dict[str, List[np.ndarray]] = {k: [] for k in OUTPUT_KEYS}
    for window in windows:
        outputs = predict(window[np.newaxis, ...])
        for name, value in outputs.items():
            arr = np.asarray(value, dtype=np.float32)
            if arr.ndim == 3 and arr.shape[0] == 1:
                pass
            elif arr.ndim == 2:
                arr = arr[np.newaxis, ...]
            else:
                raise ShapeError(
                    f"model output {name!r} must be (1, n_times, n_freqs) per window, got {arr.shape}"
                )
            collected[canonical_output_key(name)].append(arr)

    missing = [k for k in OUTPUT_KEYS if len(collected[k]) != len(windows)]
    if missing:
        raise ShapeError(f"model did not return {missing} for every window")
    return collected


# ------------------------------------------------------------
# Window stitching
# ------------------------------------------------------------

def _concat_windows(output: WindowedArray) -> np.ndarray:
    if isinstance(output, np.ndarray):
        batched = output
    else:
        parts = [np.asarray(w) for w in output]
        if not parts:
            raise ShapeError("no model windows to stitch")
        for w in parts:
            if w.ndim != 3:
                raise ShapeError(f"each model window must be rank 3, got shape {w.shape}")
        if len({w.shape[1:] for w in parts}) != 1:
            raise ShapeError(f"model windows disagree on shape: {sorted({w.shape for w in parts})}")
        batched = np.concatenate(parts, axis=0)

    if batched.ndim != 3:
        raise ShapeError(f"model output must be rank 3 (n_windows, n_times, n_freqs), got {batched.shape}")
    return batched


def n_valid_frames(audio_original_length: int) -> int:
    """Rows of model output that cover real (unpadded) audio."""
    if audio_original_length < 0:
        raise ConfigError(f"audio_original_length must be >= 0, got {audio_original_length}")
    # integer floor of seconds * ANNOTATIONS_FPS
    return int(audio_original_length) * ANNOTATIONS_FPS // AUDIO_SAMPLE_RATE


def unwrap_output(
    output: WindowedArray,
    audio_original_length: int,
    n_overlapping_frames: int,
) -> np.ndarray:
    """Unwrap batched model predictions to a single matrix.

    Args:
        output: array (n_windows, n_times_short, n_freqs) or a sequence of
            (1, n_times_short, n_freqs) windows
        audio_original_length: length of the original audio signal (in samples)
        n_overlapping_frames: number of overlapping frames between windows

    Returns:
        array (n_times, n_freqs), at most ``n_valid_frames(audio_original_length)`` rows
    """
    raw_output = _concat_windows(output)

    n_olap = n_overlapping_frames // 2
    if n_olap > 0:
        if raw_output.shape[1] <= 2 * n_olap:
            raise ShapeError(
                f"windows of {raw_output.shape[1]} frames cannot lose {n_olap} frames on each side"
            )
        # remove half of the overlapping frames from beginning and end
        raw_output = raw_output[:, n_olap:-n_olap, :]

    n_windows, n_times_short, n_freqs = raw_output.shape
    unwrapped = raw_output.reshape(n_windows * n_times_short, n_freqs)
    return unwrapped[:n_valid_frames(audio_original_length), :]


def stitch_model_output(
    windows: Mapping[str, WindowedArray],
    audio_original_length: int,
    config: Union[PipelineConfig, StitchConfig, None] = None,
) -> ModelOutput:
    """Stitch every model output and check they share the time axis."""
    if isinstance(config, PipelineConfig):
        stitch_cfg = config.stitch
    else:
        stitch_cfg = config or StitchConfig()

    by_key = {canonical_output_key(k): v for k, v in windows.items()}
    missing = [k for k in OUTPUT_KEYS if k not in by_key]
    if missing:
        raise ShapeError(f"missing model outputs: {missing}")

    stitched = {
        k: unwrap_output(by_key[k], audio_original_length, stitch_cfg.n_overlapping_frames)
        for k in OUTPUT_KEYS
    }
    rows = {k: v.shape[0] for k, v in stitched.items()}
    if len(set(rows.values())) != 1:
        raise ShapeError(f"stitched outputs disagree on frame count: {rows}")

    logger.debug(
        "Stage A: stitched %d frames (contours %s, frames %s, onsets %s)",
        stitched["frames"].shape[0],
        stitched["contours"].shape,
        stitched["frames"].shape,
        stitched["onsets"].shape,
    )
    return ModelOutput(**stitched)


def as_model_output(arrays: Mapping[str, np.ndarray]) -> ModelOutput:
    """Wrap already-stitched rank-2 matrices, checking ranks and row counts."""
    by_key = {canonical_output_key(k): np.asarray(v) for k, v in arrays.items()}
    missing = [k for k in OUTPUT_KEYS if k not in by_key]
    if missing:
        raise ShapeError(f"missing model outputs: {missing}")
    for k in OUTPUT_KEYS:
        if by_key[k].ndim != 2:
            raise ShapeError(f"{k} must be 2-D (n_times, n_freqs), got shape {by_key[k].shape}")
    rows = {k: by_key[k].shape[0] for k in OUTPUT_KEYS}
    if len(set(rows.values())) != 1:
        raise ShapeError(f"model outputs disagree on frame count: {rows}")
    return ModelOutput(**{k: by_key[k] for k in OUTPUT_KEYS})
