from __future__ import annotations

import numpy as np

from .models import Waveform


def extract_subsegment(src: Waveform, start_frame: int, frames: int) -> Waveform:
    """Return ``frames`` frames of ``src`` from ``start_frame``, zero padded past its end."""
    seg = Waveform.zeros(frames, src.channel_count)
    available = src.samples.size // src.channel_count
    if start_frame < available:
        copy_frames = min(frames, available - start_frame)
        begin = start_frame * src.channel_count
        seg.samples[: copy_frames * src.channel_count] = src.samples[begin : begin + copy_frames * src.channel_count]
    return seg


def copy_subsegment(src: Waveform, src_start_frame: int, frames: int, dst: Waveform, dst_start_frame: int) -> None:
    """Copy ``frames`` frames of ``src`` into ``dst`` in place.

    Index pairs that fall outside either buffer are skipped silently, so a
    short model output or an overlong request truncates at the edges.
    """
    if frames <= 0:
        return
    offsets = np.arange(frames, dtype=np.int64)
    for ch in range(min(src.channel_count, dst.channel_count)):
        src_idx = (src_start_frame + offsets) * src.channel_count + ch
        dst_idx = (dst_start_frame + offsets) * dst.channel_count + ch
        valid = (src_idx < src.samples.size) & (dst_idx < dst.samples.size)
        dst.samples[dst_idx[valid]] = src.samples[src_idx[valid]]
