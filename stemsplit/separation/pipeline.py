from __future__ import annotations

import json
import logging
import shutil
from contextlib import nullcontext
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .audio import AudioCodec, SoundFileCodec
from .backend_resolver import resolve_engine
from .command_runner import CommandRunner
from .config_loader import ConfigLoader
from .config_struct import StemsplitConfig
from .engines import InferenceEngine
from .instrumentation import PipelineLogger
from .models import BackendResolution, PipelineArtifacts, SeparationModel, get_model
from .observers import CallbackObserver
from .processor import AudioProcessor

logger = logging.getLogger(__name__)


def create_project_folder(output_folder: str | Path, audio_path: str | Path, suffix: str = ".stemproj") -> Path:
    """Create ``<name><suffix>`` under ``output_folder``, numbering it ``<name>(n)<suffix>`` if taken."""
    root = Path(output_folder)
    base = Path(audio_path).stem or "track"
    candidate = root / f"{base}{suffix}"
    counter = 1
    while candidate.exists():
        candidate = root / f"{base}({counter}){suffix}"
        counter += 1
    candidate.mkdir(parents=True)
    return candidate


class StemSeparationPipeline:
    def __init__(
        self,
        config_dir: str | Path | None = None,
        preset: Optional[str] = None,
        overrides: Optional[Iterable[Tuple[str, Any]]] = None,
        model: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        layered: List[Tuple[str, Any]] = list(overrides or [])
        if model:
            layered.append(("engine.model", model))
        if backend:
            layered.append(("engine.backend", backend))
        loader = ConfigLoader()
        self.config: StemsplitConfig = loader.load(config_dir, preset=preset, overrides=layered)
        self.config_provenance = loader.provenance
        self.model: SeparationModel = get_model(self.config.engine.model)

    def run(
        self,
        audio_path: str,
        output_folder: str | Path,
        observer=None,
        engine: Optional[InferenceEngine] = None,
        codec: Optional[AudioCodec] = None,
    ) -> PipelineArtifacts:
        """Separate ``audio_path`` into a new project folder under ``output_folder``.

        ``engine`` and ``codec`` replace the configured backend and the
        soundfile/ffmpeg codec.  If the run fails before any stem is written
        the project folder is removed again.
        """
        cfg = self.config
        project_dir = create_project_folder(output_folder, audio_path, cfg.io.project_suffix)
        runner = CommandRunner(project_dir / "commands.jsonl", tail_bytes=cfg.logging.commands_tail_bytes)
        run_log = PipelineLogger(cfg.logging.run_log_dir, run_name=project_dir.name) if cfg.logging.run_log_dir else None
        if codec is None:
            codec = SoundFileCodec(channels=cfg.io.channels, runner=runner, ffmpeg=cfg.tools.ffmpeg)

        stem_paths: Dict[str, str] = {}
        try:
            return self._separate(audio_path, project_dir, engine, codec, observer, run_log, stem_paths)
        except Exception:
            if not stem_paths:
                logger.info("Removing %s: no stems were written", project_dir)
                shutil.rmtree(project_dir, ignore_errors=True)
            raise
        finally:
            if run_log:
                run_log.finalize()

    def _separate(
        self,
        audio_path: str,
        project_dir: Path,
        engine: Optional[InferenceEngine],
        codec: AudioCodec,
        observer,
        run_log: Optional[PipelineLogger],
        stem_paths: Dict[str, str],
    ) -> PipelineArtifacts:
        cfg = self.config

        def stage(name: str):
            return run_log.stage(name) if run_log else nullcontext({})

        trace: List[BackendResolution] = []
        if engine is None:
            engine, backend, trace = resolve_engine(
                self.model, cfg.engine, cfg.io, cfg.backend_policy, cfg.backend_priority
            )
        else:
            backend = type(engine).__name__
        logger.info("Separating %s with model %s on backend %s", audio_path, self.model.key, backend)
        if run_log:
            run_log.emit_config("pipeline", cfg, {"backend": backend, "model": self.model.key, "decision_trace": trace})

        with stage("load") as info:
            waveform = codec.load(audio_path, cfg.io.sample_rate)
            properties = codec.get_properties()
            info["frames"] = properties.frame_count

        processor = AudioProcessor(
            progress_step=cfg.windowing.progress_step,
            reinit_engine_per_window=cfg.windowing.reinit_engine_per_window,
        )
        processor.set_delegate(observer)
        with stage("separate") as info:
            tracks = processor.process_audio(
                waveform,
                engine,
                self.model.num_tracks,
                cfg.windowing.window_seconds,
                cfg.io.sample_rate,
            )
            error = str(processor.last_error) if processor.last_error else None
            info.update(inference_calls=processor.inference_calls, error=error)

        # Stems are written even after an aborted run; meta.json flags them.
        with stage("save") as info:
            for stem, track in zip(self.model.stems, tracks):
                out_path = project_dir / f"{stem}.{cfg.io.output_format}"
                codec.save(str(out_path), track, cfg.io.sample_rate, cfg.io.bitrate)
                stem_paths[stem] = str(out_path)
            info["format"] = cfg.io.output_format

        meta_path = project_dir / "meta.json"
        plan = processor.last_plan
        meta = {
            "source": str(Path(audio_path).resolve()),
            "model": self.model.key,
            "stems": list(self.model.stems),
            "backend": backend,
            "decision_trace": [asdict(r) for r in trace],
            "provenance": self.config_provenance,
            "properties": asdict(properties),
            "duration_sec": waveform.duration_sec(cfg.io.sample_rate),
            "window_plan": asdict(plan) if plan else None,
            "inference_calls": processor.inference_calls,
            "complete": error is None,
            "error": error,
        }
        meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")

        return PipelineArtifacts(
            project_dir=str(project_dir),
            stem_paths=stem_paths,
            meta_path=str(meta_path),
            commands_log=str(project_dir / "commands.jsonl"),
            properties=properties,
            complete=error is None,
            error=error,
        )


def separate_file(
    path: str,
    model: str,
    output_folder: str | Path,
    on_start: Optional[Callable[[], None]] = None,
    on_progress: Optional[Callable[[float], None]] = None,
    on_completion: Optional[Callable[[bool, Optional[str]], None]] = None,
    **pipeline_kwargs: Any,
) -> Optional[PipelineArtifacts]:
    """
    Callback-style entry point: codec -> windowed separation -> codec.

    ``on_completion(success, error)`` fires once, after the stems are
    written or after a failure.  Pipeline errors are reported through it
    rather than raised.
    """
    observer = CallbackObserver(on_start=on_start, on_progress=on_progress)
    try:
        pipeline = StemSeparationPipeline(model=model, **pipeline_kwargs)
        artifacts = pipeline.run(path, output_folder, observer=observer)
    except Exception as exc:
        logger.exception("Separation of %s failed", path)
        if on_completion:
            on_completion(False, str(exc))
        return None

    if on_completion:
        on_completion(artifacts.complete, artifacts.error)
    return artifacts
