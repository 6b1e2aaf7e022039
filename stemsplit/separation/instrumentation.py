"""Structured run logs for separation jobs.

Each run gets a directory holding ``logs.jsonl`` (one event per line) and
``timing.json`` (seconds per stage).  Write failures are logged and
swallowed so a full disk never fails a separation.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

import numpy as np

from .engines import module_available

logger = logging.getLogger(__name__)

OPTIONAL_MODULES = ("onnxruntime", "torch", "demucs", "librosa", "soundfile")


def dependency_snapshot(modules: Sequence[str] = OPTIONAL_MODULES) -> Dict[str, bool]:
    return {name: module_available(name) for name in modules}


def json_default(o: Any) -> Any:
    """``json.dumps`` fallback for numpy scalars/arrays, dataclasses and paths."""
    if isinstance(o, np.generic):
        return o.item()
    if isinstance(o, np.ndarray):
        return o.tolist()
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    return str(o)


class PipelineLogger:
    """JSONL event log and stage timings for one run."""

    def __init__(self, base_dir: str | Path = "results", run_name: Optional[str] = None):
        self.run_dir = Path(base_dir) / (run_name or time.strftime("run_%Y%m%d_%H%M%S"))
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.logs_path = self.run_dir / "logs.jsonl"
        self.timing_path = self.run_dir / "timing.json"
        self._timing: Dict[str, float] = {}
        self._started = time.perf_counter()
        self.log_event("pipeline", "start", {"run_dir": str(self.run_dir), "dependencies": dependency_snapshot()})

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {"stage": stage, "event": event, "timestamp": time.time()}
        entry.update(payload or {})
        try:
            with self.logs_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=json_default) + "\n")
        except OSError as exc:
            logger.warning("Could not write run log %s: %s", self.logs_path, exc)

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._timing[stage] = float(duration_s)
        self.log_event(stage, "timing", {"duration_s": float(duration_s), **(metadata or {})})

    @contextmanager
    def stage(self, name: str) -> Iterator[Dict[str, Any]]:
        """Time the ``with`` block; keys added to the yielded dict go into the timing event."""
        metadata: Dict[str, Any] = {}
        start = time.perf_counter()
        try:
            yield metadata
        finally:
            self.record_timing(name, time.perf_counter() - start, metadata)

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        self.log_event(stage, "config", {"config": config_obj, **(extras or {})})

    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._timing)

    def finalize(self) -> None:
        self._timing.setdefault("total", time.perf_counter() - self._started)
        try:
            self.timing_path.write_text(json.dumps(self._timing, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write timing summary %s: %s", self.timing_path, exc)
