from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import librosa
import numpy as np
import soundfile as sf

from .command_runner import CommandRunner
from .models import AudioProperties, Waveform

logger = logging.getLogger(__name__)

SOUNDFILE_FORMATS = {"wav": "WAV", "flac": "FLAC", "ogg": "OGG"}
FFMPEG_CODECS = {"mp3": "libmp3lame", "aac": "aac", "m4a": "aac"}


class AudioCodec(Protocol):
    def load(self, path: str, sample_rate: int) -> Waveform:
        ...

    def get_properties(self) -> AudioProperties:
        ...

    def save(self, path: str, waveform: Waveform, sample_rate: int, bitrate: int) -> None:
        ...


class SoundFileCodec:
    """Decodes with librosa and encodes with soundfile, or ffmpeg for lossy formats.

    Decoded audio is resampled to the requested rate and conformed to
    ``channels`` (mono is duplicated, extra channels are dropped).
    """

    def __init__(self, channels: int = 2, runner: Optional[CommandRunner] = None, ffmpeg: str = "ffmpeg") -> None:
        self.channels = int(channels)
        self.runner = runner
        self.ffmpeg = ffmpeg
        self._properties: Optional[AudioProperties] = None

    def load(self, path: str, sample_rate: int) -> Waveform:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Audio not found: {path}")
        audio, sr = librosa.load(path, sr=sample_rate, mono=False)
        if audio.ndim == 1:
            audio = np.expand_dims(audio, 0)
        source_channels = int(audio.shape[0])

        if source_channels < self.channels:
            audio = np.concatenate([audio] + [audio[-1:]] * (self.channels - source_channels), axis=0)
        elif source_channels > self.channels:
            audio = audio[: self.channels]

        waveform = Waveform.from_channels_first(audio)
        self._properties = AudioProperties(
            frame_count=waveform.frame_count,
            channel_count=source_channels,
            sample_rate=int(sr),
        )
        logger.info("Loaded %s: %s", path, self._properties)
        return waveform

    def get_properties(self) -> AudioProperties:
        if self._properties is None:
            raise RuntimeError("get_properties() called before load()")
        return self._properties

    def save(self, path: str, waveform: Waveform, sample_rate: int, bitrate: int) -> None:
        ext = Path(path).suffix.lower().lstrip(".")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        frames = waveform.as_frames()

        if ext in SOUNDFILE_FORMATS:
            sf.write(path, frames, sample_rate, format=SOUNDFILE_FORMATS[ext])
            return
        if ext not in FFMPEG_CODECS:
            raise ValueError(f"Unsupported output format '{ext}'")
        if self.runner is None:
            raise RuntimeError(f"Encoding .{ext} needs a CommandRunner for ffmpeg")

        with tempfile.TemporaryDirectory(prefix="stemsplit_enc_") as tmp:
            tmp_wav = os.path.join(tmp, "pcm.wav")
            sf.write(tmp_wav, frames, sample_rate, format="WAV", subtype="FLOAT")
            self.runner.run(
                [
                    self.ffmpeg,
                    "-y",
                    "-i",
                    tmp_wav,
                    "-c:a",
                    FFMPEG_CODECS[ext],
                    "-b:a",
                    str(int(bitrate)),
                    "-ar",
                    str(int(sample_rate)),
                    os.path.abspath(path),
                ]
            )
