from __future__ import annotations

import logging
import os
from typing import List, Optional, Tuple

from .config_struct import BackendPolicyConfig, BackendPriorityConfig, EngineConfig, IOConfig
from .engines import DemucsEngine, FilterBankEngine, InferenceEngine, OnnxEngine, module_available
from .models import BackendResolution, EngineParameters, SeparationModel

logger = logging.getLogger(__name__)

ENGINE_BACKENDS = ("onnx_py", "demucs_py", "filterbank")


class BackendResolver:
    """
    Resolves the inference backend based on availability, health, and policy.
    """

    def __init__(self, policy: BackendPolicyConfig, priority: BackendPriorityConfig, engine_cfg: EngineConfig):
        self.policy = policy
        self.priority = priority
        self.engine_cfg = engine_cfg
        self.trace: List[BackendResolution] = []

    def resolve(self, requested: Optional[str] = None) -> str:
        requested = requested or self.engine_cfg.backend
        if requested and requested != "auto":
            if requested not in ENGINE_BACKENDS:
                raise ValueError(f"Unknown engine backend '{requested}'. Valid: {', '.join(ENGINE_BACKENDS)}")
            candidates = [requested]
            if self.policy.fallback_mode == "auto":
                candidates += [b for b in self.priority.engine if b != requested]
        else:
            candidates = list(self.priority.engine)
        return self._resolve_feature("engine", candidates)

    def _resolve_feature(self, feature: str, candidates: List[str]) -> str:
        requested = candidates[0] if candidates else None
        chosen = "off"
        reason = "no candidates"
        available = False
        healthy = False

        for backend in candidates:
            available, healthy = self._check_backend(backend)
            if not available:
                reason = f"{backend} unavailable"
                continue
            if not healthy:
                reason = f"{backend} unhealthy"
                if self.policy.fallback_mode == "never":
                    chosen = backend
                    break
                continue
            chosen = backend
            reason = "selected"
            break
        else:
            if self.policy.fallback_mode == "strict" or not self.policy.allow_off:
                raise RuntimeError(f"No usable backend for {feature} ({reason})")

        logger.info("Resolved %s backend: %s (%s)", feature, chosen, reason)
        self.trace.append(
            BackendResolution(
                feature=feature,
                requested=requested,
                resolved=chosen,
                available=available,
                healthy=healthy,
                reason=reason,
            )
        )
        return chosen

    def _check_backend(self, backend: str) -> Tuple[bool, bool]:
        if backend == "filterbank":
            return module_available("scipy.signal"), True
        if backend == "onnx_py":
            available = module_available("onnxruntime")
            healthy = bool(self.engine_cfg.model_path) and os.path.exists(self.engine_cfg.model_path)
            return available, healthy
        if backend == "demucs_py":
            available = module_available("demucs") and module_available("torch")
            return available, available
        return False, False


def create_engine(backend: str, model: SeparationModel, engine_cfg: EngineConfig, io_cfg: IOConfig) -> InferenceEngine:
    if backend == "filterbank":
        return FilterBankEngine(model, sample_rate=io_cfg.sample_rate, channels=io_cfg.channels, order=engine_cfg.filter_order)
    if backend == "onnx_py":
        params = EngineParameters(
            model_path=engine_cfg.model_path,
            input_tensor_name=engine_cfg.input_tensor_name,
            output_tensor_names=list(engine_cfg.output_tensor_names),
        )
        return OnnxEngine(model, params, channels=io_cfg.channels)
    if backend == "demucs_py":
        return DemucsEngine(
            model,
            model_name=engine_cfg.demucs_model,
            sample_rate=io_cfg.sample_rate,
            device=engine_cfg.device,
            shifts=engine_cfg.demucs_shifts,
            overlap=engine_cfg.demucs_overlap,
        )
    raise ValueError(f"No engine for backend '{backend}'")


def resolve_engine(
    model: SeparationModel,
    engine_cfg: EngineConfig,
    io_cfg: IOConfig,
    policy: BackendPolicyConfig,
    priority: BackendPriorityConfig,
    requested: Optional[str] = None,
) -> Tuple[InferenceEngine, str, List[BackendResolution]]:
    resolver = BackendResolver(policy, priority, engine_cfg)
    backend = resolver.resolve(requested)
    if backend == "off":
        raise RuntimeError("No inference backend available")
    return create_engine(backend, model, engine_cfg, io_cfg), backend, resolver.trace
