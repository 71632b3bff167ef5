import sys
import warnings
from pathlib import Path

import numpy as np
import pytest

# Ensure repository root is importable for `polymidi` package resolution.
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from polymidi.pipeline.config import PipelineConfig  # noqa: E402
from polymidi.pipeline.constants import N_FREQ_BINS_CONTOURS, N_FREQ_BINS_NOTES  # noqa: E402
from polymidi.pipeline.models import ModelOutput  # noqa: E402

N_TIMES = 40
NOTE_COL = 40          # MIDI 61
NOTE_CONTOUR_BIN = 120  # 3 bins per semitone above A0


def pytest_configure(config):
    warnings.filterwarnings("ignore", category=DeprecationWarning)
    warnings.filterwarnings("ignore", category=FutureWarning)
    warnings.filterwarnings("ignore", message=".*PySoundFile failed.*")


def make_activations(n_times: int = N_TIMES):
    contours = np.zeros((n_times, N_FREQ_BINS_CONTOURS), dtype=np.float32)
    frames = np.zeros((n_times, N_FREQ_BINS_NOTES), dtype=np.float32)
    onsets = np.zeros((n_times, N_FREQ_BINS_NOTES), dtype=np.float32)
    return contours, frames, onsets


@pytest.fixture
def single_note_output():
    """One onset at (10, 40) with sustain on frames 10..19."""
    contours, frames, onsets = make_activations()
    frames[10:20, NOTE_COL] = 1.0
    onsets[10, NOTE_COL] = 1.0
    contours[10:20, NOTE_CONTOUR_BIN] = 1.0
    return ModelOutput(contours=contours, frames=frames, onsets=onsets)


@pytest.fixture
def empty_output():
    contours, frames, onsets = make_activations()
    return ModelOutput(contours=contours, frames=frames, onsets=onsets)


@pytest.fixture
def short_note_config():
    cfg = PipelineConfig()
    cfg.decoder.min_note_len_frames = 5
    return cfg
