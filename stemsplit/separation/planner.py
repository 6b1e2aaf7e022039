"""
Window planning for overlap-discard inference.

Windows overlap by half their length.  Only an interior slice of each
window's output is kept, because separation models are least reliable
near the edges of their input.  The first window has no predecessor and
keeps its leading three quarters instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowPlan:
    window_frames: int
    step_frames: int
    first_take_frames: int
    regular_take_frames: int
    regular_offset_frames: int

    @property
    def tiles_seamlessly(self) -> bool:
        """True when the second window's keep-slice starts where the first one ends."""
        return self.first_take_frames == self.step_frames + self.regular_offset_frames


def plan_windows(window_seconds: float, sample_rate: int) -> WindowPlan:
    """Derive window, step, take and offset frame counts (truncated to whole frames)."""
    if window_seconds <= 0:
        raise ValueError(f"window_seconds must be positive, got {window_seconds}")
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")

    window_frames = int(float(window_seconds) * int(sample_rate))
    step_frames = window_frames // 2
    plan = WindowPlan(
        window_frames=window_frames,
        step_frames=step_frames,
        first_take_frames=window_frames * 3 // 4,
        regular_take_frames=step_frames,
        regular_offset_frames=step_frames // 2,
    )
    if not plan.tiles_seamlessly:
        logger.warning(
            "Window of %d frames does not tile: the first keep-slice ends at %d but the second starts at %d; "
            "output will repeat a frame at the first seam and lag by one. Pick a window whose frame count "
            "is not 3 mod 4.",
            window_frames, plan.first_take_frames, step_frames + plan.regular_offset_frames,
        )
    return plan
