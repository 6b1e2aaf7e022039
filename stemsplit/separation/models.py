# stemsplit/separation/models.py
"""Dataclasses shared by the separation core and its collaborators.

``Waveform`` is the single audio container passed between the codec, the
windowing core and the inference engines.  Samples are stored channel
interleaved (``samples[frame * channel_count + channel]``) as float32.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass
class Waveform:
    samples: np.ndarray          # 1-D float32, channel interleaved
    frame_count: int = 0
    channel_count: int = 1

    @classmethod
    def zeros(cls, frame_count: int, channel_count: int) -> "Waveform":
        return cls(
            samples=np.zeros(int(frame_count) * int(channel_count), dtype=np.float32),
            frame_count=int(frame_count),
            channel_count=int(channel_count),
        )

    @classmethod
    def from_samples(cls, samples, channel_count: int) -> "Waveform":
        """Build from an interleaved buffer, deriving the frame count from its length.

        Trailing samples that do not complete a frame are dropped.
        """
        if channel_count <= 0:
            raise ValueError(f"channel_count must be positive, got {channel_count}")
        flat = np.asarray(samples, dtype=np.float32).reshape(-1)
        frames = flat.size // channel_count
        return cls(samples=flat[: frames * channel_count].copy(), frame_count=frames, channel_count=channel_count)

    @classmethod
    def from_frames(cls, frames: np.ndarray) -> "Waveform":
        """Build from a ``(frames, channels)`` array; 1-D input is treated as mono."""
        arr = np.asarray(frames, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr[:, np.newaxis]
        return cls(
            samples=np.ascontiguousarray(arr).reshape(-1),
            frame_count=int(arr.shape[0]),
            channel_count=int(arr.shape[1]),
        )

    @classmethod
    def from_channels_first(cls, audio: np.ndarray) -> "Waveform":
        """Build from the ``(channels, frames)`` layout librosa and torch use."""
        arr = np.asarray(audio, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr[np.newaxis, :]
        return cls.from_frames(arr.T)

    def as_frames(self) -> np.ndarray:
        """``(frame_count, channel_count)`` view of the samples."""
        return self.samples[: self.frame_count * self.channel_count].reshape(self.frame_count, self.channel_count)

    def to_channels_first(self) -> np.ndarray:
        return np.ascontiguousarray(self.as_frames().T)

    def duration_sec(self, sample_rate: int) -> float:
        return float(self.frame_count) / float(sample_rate) if sample_rate > 0 else 0.0


@dataclass(frozen=True)
class AudioProperties:
    """Snapshot of a decoded waveform's shape."""

    frame_count: int
    channel_count: int
    sample_rate: int

    def __str__(self) -> str:
        return (
            f"AudioProperties{{channel_count: {self.channel_count}, "
            f"frame_count: {self.frame_count}, sample_rate: {self.sample_rate}}}"
        )


@dataclass(frozen=True)
class SeparationModel:
    key: str
    name: str
    stems: Tuple[str, ...]

    @property
    def num_tracks(self) -> int:
        return len(self.stems)


SEPARATION_MODELS: Dict[str, SeparationModel] = {
    "2stems": SeparationModel("2stems", "2 Stems", ("vocals", "accompaniment")),
    "4stems": SeparationModel("4stems", "4 Stems", ("vocals", "drums", "bass", "other")),
    "5stems": SeparationModel("5stems", "5 Stems", ("vocals", "drums", "bass", "piano", "other")),
}


def get_model(key: str) -> SeparationModel:
    normalized = str(key).strip().lower().replace("-", "").replace("_", "")
    try:
        return SEPARATION_MODELS[normalized]
    except KeyError:
        valid = ", ".join(sorted(SEPARATION_MODELS))
        raise KeyError(f"Unknown separation model '{key}'. Valid models: {valid}") from None


@dataclass
class EngineParameters:
    """Location and tensor names of an exported separation model."""

    model_path: str = ""
    input_tensor_name: str = ""
    output_tensor_names: List[str] = field(default_factory=list)


@dataclass
class BackendResolution:
    feature: str
    requested: Optional[str]
    resolved: str
    available: bool
    healthy: bool
    reason: str
    caps: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineArtifacts:
    project_dir: str
    stem_paths: Dict[str, str]
    meta_path: str
    commands_log: str
    properties: Optional[AudioProperties] = None
    complete: bool = True
    error: Optional[str] = None
