from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class IOConfig:
    sample_rate: int = 44100
    channels: int = 2
    output_format: str = "wav"      # wav | flac | ogg | mp3 | aac | m4a
    bitrate: int = 192000           # lossy formats only
    project_suffix: str = ".stemproj"


@dataclass
class WindowingConfig:
    window_seconds: float = 4.0
    progress_step: float = 0.05
    reinit_engine_per_window: bool = True


@dataclass
class EngineConfig:
    model: str = "2stems"
    backend: str = "auto"           # auto | onnx_py | demucs_py | filterbank
    model_path: str = ""
    input_tensor_name: str = ""
    output_tensor_names: List[str] = field(default_factory=list)
    demucs_model: str = "htdemucs"
    demucs_shifts: int = 0
    demucs_overlap: float = 0.25
    device: str = "cpu"
    filter_order: int = 4


@dataclass
class BackendPolicyConfig:
    fallback_mode: str = "auto"  # auto | strict | never
    allow_off: bool = True


@dataclass
class BackendPriorityConfig:
    engine: List[str] = field(default_factory=lambda: ["onnx_py", "demucs_py", "filterbank"])


@dataclass
class ToolsConfig:
    ffmpeg: str = "ffmpeg"


@dataclass
class LoggingConfig:
    commands_tail_bytes: int = 4096
    run_log_dir: str = ""           # empty disables the JSONL run log


@dataclass
class StemsplitConfig:
    io: IOConfig = field(default_factory=IOConfig)
    windowing: WindowingConfig = field(default_factory=WindowingConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    backend_policy: BackendPolicyConfig = field(default_factory=BackendPolicyConfig)
    backend_priority: BackendPriorityConfig = field(default_factory=BackendPriorityConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def validate_config(config: StemsplitConfig) -> StemsplitConfig:
    if int(config.io.sample_rate) <= 0:
        raise ValueError(f"io.sample_rate must be positive, got {config.io.sample_rate}")
    if int(config.io.channels) <= 0:
        raise ValueError(f"io.channels must be positive, got {config.io.channels}")
    if float(config.windowing.window_seconds) <= 0:
        raise ValueError(f"windowing.window_seconds must be positive, got {config.windowing.window_seconds}")
    step = float(config.windowing.progress_step)
    if not 0.0 < step <= 1.0:
        raise ValueError(f"windowing.progress_step must be in (0, 1], got {step}")
    return config
