"""
Inference engines: one forward pass over one window per call.

Every engine follows the same lifecycle, driven by the processor:
``init()`` -> ``execute(window)`` -> ``get_results()`` -> ``shutdown()``.
``get_results()`` returns one waveform per stem, in the stem order of the
engine's :class:`SeparationModel`.

Heavy backends (onnxruntime, torch/demucs) are imported lazily inside
``init()`` so the package imports without them installed.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
import scipy.signal

from .models import EngineParameters, SeparationModel, Waveform

logger = logging.getLogger(__name__)


class EngineInitError(RuntimeError):
    """The model or its runtime could not be prepared."""


class EngineExecError(RuntimeError):
    """A forward pass was rejected, usually because of the window's shape."""


class InferenceEngine(Protocol):
    def init(self) -> None:
        ...

    def execute(self, window: Waveform) -> None:
        ...

    def get_results(self) -> List[Waveform]:
        ...

    def shutdown(self) -> None:
        ...


def module_available(module_name: str) -> bool:
    """Check for an optional dependency without importing it."""
    mod = sys.modules.get(module_name)
    if mod is not None and getattr(mod, "__spec__", None) is None:
        return False
    try:
        return importlib.util.find_spec(module_name) is not None
    except (ModuleNotFoundError, ValueError):
        return False


def _check_window(window: Waveform, channels: Optional[int]) -> None:
    if window.channel_count <= 0:
        raise EngineExecError(f"window has invalid channel count {window.channel_count}")
    if window.samples.size != window.frame_count * window.channel_count:
        raise EngineExecError(
            f"window buffer holds {window.samples.size} samples, "
            f"expected {window.frame_count} x {window.channel_count}"
        )
    if channels is not None and window.channel_count != channels:
        raise EngineExecError(f"engine expects {channels} channels, got {window.channel_count}")


def _tensor_to_waveform(arr: Any) -> Waveform:
    """Convert a model output tensor to a Waveform.

    Accepts ``(frames, channels)``, ``(channels, frames)`` or either with a
    leading batch axis of size one.
    """
    out = np.asarray(arr, dtype=np.float32)
    while out.ndim > 2 and out.shape[0] == 1:
        out = out[0]
    if out.ndim == 1:
        return Waveform.from_frames(out)
    if out.ndim != 2:
        raise EngineExecError(f"unsupported output tensor shape {out.shape}")
    d0, d1 = out.shape
    if d0 <= 8 and d1 > d0:
        return Waveform.from_channels_first(out)
    return Waveform.from_frames(out)


# --------------------------------------------------------------------------- #
# Filter bank (deterministic DSP, no model files)                             #
# --------------------------------------------------------------------------- #

# Band edges in Hz per stem. ``None`` marks an open edge. The last stem of a
# model is the residual and has no band.
FILTER_BANDS: Dict[str, Tuple[Optional[float], Optional[float]]] = {
    "bass": (None, 180.0),
    "vocals": (300.0, 3400.0),
    "piano": (3400.0, 6000.0),
    "drums": (6000.0, None),
}


class FilterBankEngine:
    """
    Splits each window into frequency bands, one per stem, with the last stem
    taking the residual so the stems always sum back to the window.

    Stands in for a neural model in demo mode and tests: it is deterministic
    and needs only scipy.
    """

    def __init__(self, model: SeparationModel, sample_rate: int = 44100, channels: Optional[int] = None, order: int = 4):
        self.model = model
        self.sample_rate = int(sample_rate)
        self.channels = channels
        self.order = int(order)
        self._filters: Optional[Dict[str, np.ndarray]] = None
        self._results: List[Waveform] = []

    def init(self) -> None:
        if self.sample_rate <= 0:
            raise EngineInitError(f"invalid sample rate {self.sample_rate}")
        filters: Dict[str, np.ndarray] = {}
        for stem in self.model.stems[:-1]:
            band = FILTER_BANDS.get(stem)
            if band is None:
                raise EngineInitError(f"no filter band defined for stem '{stem}'")
            filters[stem] = self._design(*band)
        self._filters = filters

    def _design(self, low: Optional[float], high: Optional[float]) -> np.ndarray:
        nyq = 0.5 * self.sample_rate

        def _norm(hz: float) -> float:
            return min(max(hz / nyq, 1e-4), 0.999)

        if low is None and high is not None:
            return scipy.signal.butter(self.order, _norm(high), btype="lowpass", output="sos")
        if high is None and low is not None:
            return scipy.signal.butter(self.order, _norm(low), btype="highpass", output="sos")
        return scipy.signal.butter(self.order, [_norm(low), _norm(high)], btype="bandpass", output="sos")

    def execute(self, window: Waveform) -> None:
        if self._filters is None:
            raise EngineExecError("execute() called before init()")
        _check_window(window, self.channels)

        mix = window.as_frames().astype(np.float64)
        n = mix.shape[0]
        stems: List[np.ndarray] = []
        for stem in self.model.stems[:-1]:
            sos = self._filters[stem]
            if n == 0:
                stems.append(np.zeros_like(mix))
                continue
            padlen = min(3 * (2 * len(sos) + 1), n - 1)
            stems.append(scipy.signal.sosfiltfilt(sos, mix, axis=0, padlen=padlen))
        residual = mix - np.sum(stems, axis=0) if stems else mix.copy()
        stems.append(residual)

        self._results = [Waveform.from_frames(s.astype(np.float32)) for s in stems]

    def get_results(self) -> List[Waveform]:
        return list(self._results)

    def shutdown(self) -> None:
        self._filters = None


# --------------------------------------------------------------------------- #
# ONNX Runtime                                                                #
# --------------------------------------------------------------------------- #

class OnnxEngine:
    """Runs an exported separation model with onnxruntime, one output tensor per stem."""

    def __init__(
        self,
        model: SeparationModel,
        params: EngineParameters,
        channels: Optional[int] = None,
        providers: Optional[List[str]] = None,
    ):
        self.model = model
        self.params = params
        self.channels = channels
        self.providers = providers or ["CPUExecutionProvider"]
        self._session = None
        self._input_name = ""
        self._output_names: List[str] = []
        self._results: List[Waveform] = []

    def init(self) -> None:
        if not module_available("onnxruntime"):
            raise EngineInitError("onnxruntime is not installed. Install with: pip install onnxruntime")
        if not self.params.model_path:
            raise EngineInitError("no model_path configured for the onnx engine")
        ort = importlib.import_module("onnxruntime")
        try:
            self._session = ort.InferenceSession(self.params.model_path, providers=self.providers)
        except Exception as exc:
            raise EngineInitError(f"failed to load {self.params.model_path}: {exc}") from exc

        self._input_name = self.params.input_tensor_name or self._session.get_inputs()[0].name
        self._output_names = list(self.params.output_tensor_names) or [o.name for o in self._session.get_outputs()]

    def execute(self, window: Waveform) -> None:
        if self._session is None:
            raise EngineExecError("execute() called before init()")
        _check_window(window, self.channels)
        try:
            outputs = self._session.run(self._output_names, {self._input_name: window.as_frames()})
        except Exception as exc:
            raise EngineExecError(f"onnx forward pass failed: {exc}") from exc
        self._results = [_tensor_to_waveform(o) for o in outputs]

    def get_results(self) -> List[Waveform]:
        return list(self._results)

    def shutdown(self) -> None:
        self._session = None


# --------------------------------------------------------------------------- #
# Demucs (torch)                                                              #
# --------------------------------------------------------------------------- #

class DemucsEngine:
    """Applies a pretrained Demucs model to one window."""

    def __init__(
        self,
        model: SeparationModel,
        model_name: str = "htdemucs",
        sample_rate: int = 44100,
        device: Optional[str] = None,
        shifts: int = 0,
        overlap: float = 0.25,
    ):
        self.model = model
        self.model_name = model_name
        self.sample_rate = int(sample_rate)
        self.device = device
        self.shifts = int(shifts)
        self.overlap = float(overlap)
        self._net = None
        self._torch = None
        self._apply_model = None
        self._dev = None
        self._results: List[Waveform] = []

    def init(self) -> None:
        if (
            not module_available("demucs.pretrained")
            or not module_available("demucs.apply")
            or not module_available("torch")
        ):
            raise EngineInitError("demucs is not installed. Install with: pip install demucs")

        torch = importlib.import_module("torch")
        get_model = importlib.import_module("demucs.pretrained").get_model
        self._apply_model = importlib.import_module("demucs.apply").apply_model

        try:
            self._dev = torch.device(self.device) if self.device else torch.device("cpu")
        except Exception:
            self._dev = torch.device("cpu")

        try:
            net = get_model(self.model_name)
            net.to(self._dev)
            net.eval()
        except Exception as exc:
            raise EngineInitError(f"Demucs model '{self.model_name}' unavailable: {exc}") from exc

        model_sr = int(getattr(net, "samplerate", self.sample_rate))
        if model_sr != self.sample_rate:
            raise EngineInitError(f"Demucs model runs at {model_sr} Hz, pipeline is configured for {self.sample_rate} Hz")
        logger.debug("Loaded Demucs model %s on %s", self.model_name, self._dev)
        self._net = net
        self._torch = torch

    def execute(self, window: Waveform) -> None:
        if self._net is None:
            raise EngineExecError("execute() called before init()")
        _check_window(window, None)

        audio = window.to_channels_first()
        in_channels = audio.shape[0]
        if in_channels == 1:
            audio = np.concatenate([audio, audio], axis=0)
        elif in_channels > 2:
            audio = audio[:2, :]

        torch = self._torch
        mix = torch.tensor(audio, dtype=torch.float32)[None, :, :].to(self._dev)
        try:
            with torch.no_grad():
                out = self._apply_model(self._net, mix, shifts=self.shifts, overlap=self.overlap, device=self._dev)
        except Exception as exc:
            raise EngineExecError(f"Demucs inference failed: {exc}") from exc

        sources = list(getattr(self._net, "sources", ["drums", "bass", "other", "vocals"]))
        separated = {}
        for idx, name in enumerate(sources):
            stem = out[0, idx].cpu().numpy()
            if in_channels == 1:
                stem = stem.mean(axis=0, keepdims=True)
            separated[name] = Waveform.from_channels_first(stem)

        if "accompaniment" in self.model.stems and "accompaniment" not in separated and "vocals" in separated:
            rest = [separated[name] for name in sources if name != "vocals"]
            if rest:
                separated["accompaniment"] = Waveform(
                    samples=np.sum([w.samples for w in rest], axis=0).astype(np.float32),
                    frame_count=rest[0].frame_count,
                    channel_count=rest[0].channel_count,
                )

        if all(stem in separated for stem in self.model.stems):
            self._results = [separated[stem] for stem in self.model.stems]
        else:
            # Count mismatch surfaces in the processor.
            self._results = [separated[name] for name in sources]

    def get_results(self) -> List[Waveform]:
        return list(self._results)

    def shutdown(self) -> None:
        self._net = None
        self._apply_model = None
