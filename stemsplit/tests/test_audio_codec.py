import json
import os

import numpy as np
import pytest
import soundfile as sf

from stemsplit.separation.audio import SoundFileCodec
from stemsplit.separation.command_runner import CommandRunner
from stemsplit.separation.models import Waveform
from stemsplit.tests.audio_utils import generate_sine_wave, generate_stereo_mix


def test_load_stereo_keeps_channel_layout(tmp_path):
    sr = 8000
    frames = generate_stereo_mix(0.5, sr)
    path = tmp_path / "mix.wav"
    sf.write(path, frames, sr)

    codec = SoundFileCodec(channels=2)
    waveform = codec.load(str(path), sr)

    assert waveform.frame_count == frames.shape[0]
    assert waveform.channel_count == 2
    np.testing.assert_allclose(waveform.as_frames(), frames, atol=1e-3)

    props = codec.get_properties()
    assert props.frame_count == frames.shape[0]
    assert props.channel_count == 2
    assert props.sample_rate == sr


def test_mono_source_is_duplicated(tmp_path):
    sr = 8000
    tone = generate_sine_wave(220.0, 0.25, sr)
    path = tmp_path / "mono.wav"
    sf.write(path, tone, sr)

    codec = SoundFileCodec(channels=2)
    frames = codec.load(str(path), sr).as_frames()

    np.testing.assert_array_equal(frames[:, 0], frames[:, 1])
    assert codec.get_properties().channel_count == 1


def test_extra_channels_are_dropped(tmp_path):
    sr = 8000
    path = tmp_path / "stereo.wav"
    sf.write(path, generate_stereo_mix(0.25, sr), sr)

    waveform = SoundFileCodec(channels=1).load(str(path), sr)
    assert waveform.channel_count == 1


def test_load_resamples_to_target_rate(tmp_path):
    path = tmp_path / "hi.wav"
    sf.write(path, generate_sine_wave(220.0, 1.0, 16000), 16000)

    codec = SoundFileCodec(channels=1)
    waveform = codec.load(str(path), 8000)

    assert waveform.frame_count == pytest.approx(8000, abs=2)
    assert codec.get_properties().sample_rate == 8000


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        SoundFileCodec().load(str(tmp_path / "nope.wav"), 44100)


def test_properties_before_load():
    with pytest.raises(RuntimeError):
        SoundFileCodec().get_properties()


@pytest.mark.parametrize("ext", ["wav", "flac"])
def test_save_lossless(tmp_path, ext):
    sr = 8000
    waveform = Waveform.from_frames(generate_stereo_mix(0.25, sr))
    path = tmp_path / "stems" / f"vocals.{ext}"

    SoundFileCodec().save(str(path), waveform, sr, 192000)

    data, file_sr = sf.read(path, dtype="float32")
    assert file_sr == sr
    assert data.shape == (waveform.frame_count, 2)
    np.testing.assert_allclose(data, waveform.as_frames(), atol=1e-3)


def test_save_unknown_format(tmp_path):
    with pytest.raises(ValueError, match="Unsupported"):
        SoundFileCodec().save(str(tmp_path / "x.xyz"), Waveform.zeros(4, 2), 8000, 0)


def test_lossy_save_needs_runner(tmp_path):
    with pytest.raises(RuntimeError, match="CommandRunner"):
        SoundFileCodec().save(str(tmp_path / "x.mp3"), Waveform.zeros(4, 2), 8000, 128000)


class FakeRunner:
    def __init__(self):
        self.calls = []

    def run(self, argv, **kwargs):
        # the intermediate wav only lives for the duration of the call
        tmp_wav = argv[argv.index("-i") + 1]
        self.calls.append((argv, os.path.exists(tmp_wav), sf.info(tmp_wav).subtype))


@pytest.mark.parametrize("ext,codec_name", [("mp3", "libmp3lame"), ("m4a", "aac")])
def test_lossy_save_goes_through_ffmpeg(tmp_path, ext, codec_name):
    runner = FakeRunner()
    codec = SoundFileCodec(runner=runner, ffmpeg="/opt/ffmpeg")
    out = tmp_path / f"bass.{ext}"

    codec.save(str(out), Waveform.zeros(100, 2), 44100, 128000)

    argv, existed, subtype = runner.calls[0]
    assert existed
    assert subtype == "FLOAT"
    assert argv[0] == "/opt/ffmpeg"
    assert argv[argv.index("-c:a") + 1] == codec_name
    assert argv[argv.index("-b:a") + 1] == "128000"
    assert argv[argv.index("-ar") + 1] == "44100"
    assert argv[-1] == os.path.abspath(out)


def test_command_runner_logs_failures(tmp_path):
    import subprocess
    import sys

    log_path = tmp_path / "commands.jsonl"
    runner = CommandRunner(log_path, tail_bytes=16)
    runner.run([sys.executable, "-c", "print('x' * 100)"])
    with pytest.raises(subprocess.CalledProcessError):
        runner.run([sys.executable, "-c", "import sys; sys.exit(3)"])

    records = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert [r["returncode"] for r in records] == [0, 3]
    assert len(records[0]["stdout"]) == 16
