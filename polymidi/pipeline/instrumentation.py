"""Lightweight structured logging for pipeline stages.

This module centralizes timing and JSONL logging so the CLI and library
callers can emit consistent diagnostics per run. All writes are
best-effort: an unwritable log directory never breaks a transcription.
"""
from __future__ import annotations

import importlib.util
import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)


def _json_default(o: Any) -> Any:
    if isinstance(o, np.floating):
        return float(o)
    if isinstance(o, np.integer):
        return int(o)
    if isinstance(o, np.ndarray):
        return o.tolist()
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    v = getattr(o, "value", None)  # enums
    if v is not None:
        return v
    return str(o)


class PipelineLogger:
    """Structured logger that emits JSONL events and timing summaries."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.base_dir = base_dir
        self.run_name = run_name or f"run_{int(time.time())}"
        self.run_dir = os.path.join(self.base_dir, self.run_name)
        os.makedirs(self.run_dir, exist_ok=True)
        self.logs_path = os.path.join(self.run_dir, "logs.jsonl")
        self.timing_path = os.path.join(self.run_dir, "timing.json")
        self._timing: Dict[str, float] = {}
        self._start_time = time.perf_counter()
        self.log_event(
            "pipeline",
            "start",
            {
                "run_dir": self.run_dir,
                "dependencies": self.dependency_snapshot(["numpy", "scipy", "librosa", "mido"]),
            },
        )

    @staticmethod
    def dependency_snapshot(modules: Optional[list[str]] = None) -> Dict[str, bool]:
        """Return availability flags for the requested modules."""
        return {name: importlib.util.find_spec(name) is not None for name in modules or []}

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {
            "stage": stage,
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            entry.update(payload)
        try:
            with open(self.logs_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=_json_default) + "\n")
        except OSError as e:
            logger.warning("PipelineLogger: could not append to %s: %s", self.logs_path, e)

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._timing[stage] = float(duration_s)
        payload: Dict[str, Any] = {"duration_s": float(duration_s)}
        if metadata:
            payload.update(metadata)
        self.log_event(stage, "timing", payload)

    @contextmanager
    def stage(self, name: str) -> Iterator[Dict[str, Any]]:
        """
        Time a block and record it under ``name``. Anything the block puts
        into the yielded dict is logged with the timing.
        """
        metadata: Dict[str, Any] = {}
        t0 = time.perf_counter()
        try:
            yield metadata
        finally:
            self.record_timing(name, time.perf_counter() - t0, metadata)

    def emit_config(self, stage: str, config_obj: Any) -> None:
        self.log_event(stage, "config", {"config": asdict(config_obj) if is_dataclass(config_obj) else str(config_obj)})

    def finalize(self) -> None:
        if "total" not in self._timing:
            self._timing["total"] = float(time.perf_counter() - self._start_time)
        try:
            with open(self.timing_path, "w", encoding="utf-8") as f:
                json.dump(self._timing, f, indent=2)
        except OSError as e:
            logger.warning("PipelineLogger: could not write %s: %s", self.timing_path, e)

    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._timing)


@contextmanager
def optional_stage(pipeline_logger: Optional[PipelineLogger], name: str) -> Iterator[Dict[str, Any]]:
    """``pipeline_logger.stage(name)`` when a logger is given, else a no-op."""
    if pipeline_logger is None:
        yield {}
        return
    with pipeline_logger.stage(name) as metadata:
        yield metadata
