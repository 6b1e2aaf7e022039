"""Windowed stem separation.

The core is :class:`~stemsplit.separation.processor.AudioProcessor`; the
engines, codec and observers it talks to are swappable collaborators.
"""

from __future__ import annotations

from .engines import (
    DemucsEngine,
    EngineExecError,
    EngineInitError,
    FilterBankEngine,
    InferenceEngine,
    OnnxEngine,
)
from .models import (
    SEPARATION_MODELS,
    AudioProperties,
    PipelineArtifacts,
    SeparationModel,
    Waveform,
    get_model,
)
from .observers import CallbackObserver, LoggingObserver, ProgressObserver
from .pipeline import StemSeparationPipeline, separate_file
from .planner import WindowPlan, plan_windows
from .processor import AudioProcessor, TrackCountMismatch, process_audio
from .segments import copy_subsegment, extract_subsegment

__all__ = [
    "AudioProcessor",
    "AudioProperties",
    "CallbackObserver",
    "DemucsEngine",
    "EngineExecError",
    "EngineInitError",
    "FilterBankEngine",
    "InferenceEngine",
    "LoggingObserver",
    "OnnxEngine",
    "PipelineArtifacts",
    "ProgressObserver",
    "SEPARATION_MODELS",
    "SeparationModel",
    "StemSeparationPipeline",
    "TrackCountMismatch",
    "Waveform",
    "WindowPlan",
    "copy_subsegment",
    "extract_subsegment",
    "get_model",
    "plan_windows",
    "process_audio",
    "separate_file",
]
