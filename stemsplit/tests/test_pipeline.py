import json
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from stemsplit.separation.models import AudioProperties, Waveform
from stemsplit.separation.pipeline import StemSeparationPipeline, create_project_folder, separate_file
from stemsplit.tests.audio_utils import RecordingEngine, RecordingObserver, generate_stereo_mix

SR = 8000

# Fast, dependency-light settings shared by the pipeline tests
OVERRIDES = [
    ("io.sample_rate", SR),
    ("windowing.window_seconds", 0.25),
    ("engine.backend", "filterbank"),
]


@pytest.fixture
def mix_path(tmp_path):
    path = tmp_path / "song.wav"
    sf.write(path, generate_stereo_mix(1.1, SR), SR)
    return path


def test_create_project_folder_numbers_duplicates(tmp_path):
    first = create_project_folder(tmp_path, "/music/song.mp3")
    second = create_project_folder(tmp_path, "/music/song.mp3")
    third = create_project_folder(tmp_path, "/music/song.mp3", suffix=".stems")

    assert first.name == "song.stemproj"
    assert second.name == "song(1).stemproj"
    assert third.name == "song.stems"
    assert first.is_dir() and second.is_dir()


def test_run_writes_stems_and_meta(tmp_path, mix_path):
    pipeline = StemSeparationPipeline(model="4stems", overrides=OVERRIDES)
    observer = RecordingObserver()

    artifacts = pipeline.run(str(mix_path), tmp_path / "out", observer=observer)

    assert artifacts.complete
    assert artifacts.error is None
    assert Path(artifacts.project_dir).name == "song.stemproj"
    assert list(artifacts.stem_paths) == ["vocals", "drums", "bass", "other"]

    source_frames = sf.info(mix_path).frames
    for stem_path in artifacts.stem_paths.values():
        info = sf.info(stem_path)
        assert info.frames == source_frames
        assert info.channels == 2
        assert info.samplerate == SR

    meta = json.loads(Path(artifacts.meta_path).read_text())
    assert meta["model"] == "4stems"
    assert meta["stems"] == ["vocals", "drums", "bass", "other"]
    assert meta["backend"] == "filterbank"
    assert meta["complete"] is True
    assert meta["window_plan"]["window_frames"] == 2000
    assert meta["inference_calls"] >= 4
    assert meta["properties"]["frame_count"] == source_frames
    assert meta["provenance"]["io.sample_rate"] == "override"
    assert meta["decision_trace"][0]["resolved"] == "filterbank"

    assert observer.events[0] == "start"
    assert observer.events[-1] == "finish"


def test_stems_sum_back_to_the_mix(tmp_path, mix_path):
    pipeline = StemSeparationPipeline(model="2stems", overrides=OVERRIDES + [("io.output_format", "flac")])
    artifacts = pipeline.run(str(mix_path), tmp_path)

    assert all(p.endswith(".flac") for p in artifacts.stem_paths.values())
    mix, _ = sf.read(mix_path, dtype="float32")
    stems = [sf.read(p, dtype="float32")[0] for p in artifacts.stem_paths.values()]
    np.testing.assert_allclose(np.sum(stems, axis=0), mix, atol=5e-3)


def test_second_run_gets_a_new_project_folder(tmp_path, mix_path):
    pipeline = StemSeparationPipeline(overrides=OVERRIDES)
    first = pipeline.run(str(mix_path), tmp_path)
    second = pipeline.run(str(mix_path), tmp_path)

    assert Path(first.project_dir).name == "song.stemproj"
    assert Path(second.project_dir).name == "song(1).stemproj"


def test_track_count_mismatch_marks_run_incomplete(tmp_path, mix_path):
    pipeline = StemSeparationPipeline(overrides=OVERRIDES)
    observer = RecordingObserver()

    artifacts = pipeline.run(str(mix_path), tmp_path, observer=observer, engine=RecordingEngine(track_counts=[2, 5]))

    assert not artifacts.complete
    assert "Expected 2, but got 5" in artifacts.error
    assert observer.events[-1] == "error"
    # partial stems are still written
    assert set(artifacts.stem_paths) == {"vocals", "accompaniment"}
    assert all(Path(p).exists() for p in artifacts.stem_paths.values())

    meta = json.loads(Path(artifacts.meta_path).read_text())
    assert meta["complete"] is False
    assert meta["backend"] == "RecordingEngine"
    assert meta["decision_trace"] == []


def test_run_log_dir_collects_events_and_timings(tmp_path, mix_path):
    log_dir = tmp_path / "runs"
    pipeline = StemSeparationPipeline(overrides=OVERRIDES + [("logging.run_log_dir", str(log_dir))])

    pipeline.run(str(mix_path), tmp_path / "out")

    run_dir = log_dir / "song.stemproj"
    events = [json.loads(line) for line in (run_dir / "logs.jsonl").read_text().splitlines()]
    assert events[0]["event"] == "start"
    assert {"config", "timing"} <= {e["event"] for e in events}

    timing = json.loads((run_dir / "timing.json").read_text())
    assert {"load", "separate", "save", "total"} <= set(timing)


def test_preset_and_model_argument(tmp_path):
    pipeline = StemSeparationPipeline(preset="5stems", overrides=OVERRIDES)
    assert pipeline.model.num_tracks == 5

    pipeline = StemSeparationPipeline(preset="5stems", model="2stems", overrides=OVERRIDES)
    assert pipeline.model.key == "2stems"


def test_unknown_model():
    with pytest.raises(KeyError, match="Valid models"):
        StemSeparationPipeline(model="7stems")


def test_missing_audio(tmp_path):
    pipeline = StemSeparationPipeline(overrides=OVERRIDES)
    with pytest.raises(FileNotFoundError):
        pipeline.run(str(tmp_path / "missing.wav"), tmp_path)


def test_separate_file_reports_through_callbacks(tmp_path, mix_path):
    calls = {"start": 0, "progress": [], "completion": []}

    def on_start():
        calls["start"] += 1

    artifacts = separate_file(
        str(mix_path),
        "2stems",
        tmp_path / "out",
        on_start=on_start,
        on_progress=calls["progress"].append,
        on_completion=lambda ok, msg: calls["completion"].append((ok, msg)),
        overrides=OVERRIDES,
    )

    assert artifacts is not None
    assert calls["start"] == 1
    assert calls["progress"][-1] == 1.0
    assert calls["completion"] == [(True, None)]
    for stem_path in artifacts.stem_paths.values():
        assert Path(stem_path).exists()


def test_separate_file_reports_failures(tmp_path):
    completion = []

    result = separate_file(
        str(tmp_path / "missing.wav"),
        "2stems",
        tmp_path,
        on_completion=lambda ok, msg: completion.append((ok, msg)),
        overrides=OVERRIDES,
    )

    assert result is None
    assert len(completion) == 1
    assert completion[0][0] is False
    assert "missing.wav" in completion[0][1]


class _BrokenEngine(RecordingEngine):
    def execute(self, window):
        raise RuntimeError("model crashed")


def test_failed_run_removes_empty_project_folder(tmp_path, mix_path):
    log_dir = tmp_path / "runs"
    pipeline = StemSeparationPipeline(overrides=OVERRIDES + [("logging.run_log_dir", str(log_dir))])

    with pytest.raises(RuntimeError, match="model crashed"):
        pipeline.run(str(mix_path), tmp_path / "out", engine=_BrokenEngine())

    assert not (tmp_path / "out" / "song.stemproj").exists()
    timing = json.loads((log_dir / "song.stemproj" / "timing.json").read_text())
    assert "separate" in timing and "total" in timing

    # the next run reuses the unnumbered name
    artifacts = pipeline.run(str(mix_path), tmp_path / "out")
    assert Path(artifacts.project_dir).name == "song.stemproj"


def test_missing_audio_leaves_no_project_folder(tmp_path):
    pipeline = StemSeparationPipeline(overrides=OVERRIDES)
    with pytest.raises(FileNotFoundError):
        pipeline.run(str(tmp_path / "missing.wav"), tmp_path / "out")
    assert list((tmp_path / "out").iterdir()) == []


class MemoryCodec:
    """In-memory codec: serves one waveform and keeps what gets saved."""

    def __init__(self, waveform):
        self.waveform = waveform
        self.saved = {}

    def load(self, path, sample_rate):
        return self.waveform

    def get_properties(self):
        return AudioProperties(self.waveform.frame_count, self.waveform.channel_count, SR)

    def save(self, path, waveform, sample_rate, bitrate):
        self.saved[Path(path).name] = waveform


def test_run_accepts_an_injected_codec(tmp_path):
    source = Waveform.from_frames(generate_stereo_mix(0.7, SR))
    codec = MemoryCodec(source)
    pipeline = StemSeparationPipeline(overrides=OVERRIDES)

    artifacts = pipeline.run("in-memory.wav", tmp_path, codec=codec, engine=RecordingEngine(gains=[1.0, 1.0]))

    assert artifacts.complete
    assert set(codec.saved) == {"vocals.wav", "accompaniment.wav"}
    np.testing.assert_array_equal(codec.saved["vocals.wav"].samples, source.samples)
    meta = json.loads(Path(artifacts.meta_path).read_text())
    assert meta["duration_sec"] == pytest.approx(source.frame_count / SR)
