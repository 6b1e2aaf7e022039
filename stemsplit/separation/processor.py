"""
Windowed inference over long recordings.

The input is cut into half-overlapping windows (see :mod:`.planner`).
Each window goes through one forward pass and only an interior slice of
its output is kept:

  window 0      keep [0, 3/4 W)
  window k > 0  keep [W/4, 3/4 W) of a window starting at k * W/2

Consecutive slices tile the timeline exactly once, except when the
window length is 3 mod 4 frames: the first slice then overlaps the second
by one frame, so the output repeats that frame and lags the input by one
frame from there on (:func:`.planner.plan_windows` warns about it).

If the loop stops short of the end because a model returned less audio
than it was given, one final window greedily fills the remaining gap from
its first frame.

Termination rules:

* a zero-length window or keep-slice ends the run quietly; the tracks
  keep whatever has been stitched so far and completion is reported;
* an engine returning the wrong number of stems aborts the run; partial
  tracks are returned and the observer's error channel is notified;
* engine and codec exceptions are not caught and reach the caller.
"""

from __future__ import annotations

import logging
import weakref
from contextlib import contextmanager
from typing import Iterator, List, Optional

from .engines import InferenceEngine
from .models import Waveform
from .planner import WindowPlan, plan_windows
from .segments import copy_subsegment, extract_subsegment

logger = logging.getLogger(__name__)

PROGRESS_REPORT_STEP = 0.05


class TrackCountMismatch(RuntimeError):
    """The engine returned a different number of stems than requested."""

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(
            f"The number of returned tracks is inconsistent. Expected {expected}, but got {got}"
        )


@contextmanager
def engine_session(engine: InferenceEngine) -> Iterator[InferenceEngine]:
    """Initialise ``engine`` and always shut it down on exit."""
    engine.init()
    try:
        yield engine
    finally:
        engine.shutdown()


class AudioProcessor:
    """Drives an inference engine window by window and stitches the results.

    ``reinit_engine_per_window`` scopes the engine to a single window
    (``init``/``shutdown`` around every forward pass).  Setting it to False
    keeps one session open for the whole run instead.
    """

    def __init__(self, progress_step: float = PROGRESS_REPORT_STEP, reinit_engine_per_window: bool = True):
        self.progress_step = float(progress_step)
        self.reinit_engine_per_window = bool(reinit_engine_per_window)
        self.last_error: Optional[TrackCountMismatch] = None
        self.last_plan: Optional[WindowPlan] = None
        self.inference_calls = 0
        self._delegate: Optional[weakref.ReferenceType] = None

    # ------------------------------------------------------------------ #
    # Observer                                                            #
    # ------------------------------------------------------------------ #

    def set_delegate(self, delegate) -> None:
        """Attach an observer without taking ownership of it.

        The observer is held through :func:`weakref.ref`, so it must support
        weak references (plain classes do; ``__slots__`` classes without
        ``__weakref__`` and ``types.SimpleNamespace`` do not).
        """
        if delegate is None:
            self._delegate = None
            return
        try:
            self._delegate = weakref.ref(delegate)
        except TypeError:
            raise TypeError(
                f"Progress observer of type {type(delegate).__name__} must support weak references"
            ) from None

    def _notify(self, method: str, *args) -> None:
        delegate = self._delegate() if self._delegate is not None else None
        if delegate is None:
            return
        callback = getattr(delegate, method, None)
        if callback is not None:
            callback(*args)

    def report_start(self) -> None:
        self._notify("on_processing_start")

    def report_progress(self, progress: float) -> None:
        self._notify("on_progress_update", progress)

    def report_finish(self) -> None:
        self._notify("on_processing_finish")

    def report_error(self, message: str) -> None:
        self._notify("on_processing_error", message)

    # ------------------------------------------------------------------ #
    # Segment helpers                                                     #
    # ------------------------------------------------------------------ #

    def extract_subsegment(self, src: Waveform, start_frame: int, frames: int) -> Waveform:
        return extract_subsegment(src, start_frame, frames)

    def copy_subsegment(self, src: Waveform, src_start_frame: int, frames: int, dst: Waveform, dst_start_frame: int) -> None:
        copy_subsegment(src, src_start_frame, frames, dst, dst_start_frame)

    # ------------------------------------------------------------------ #
    # Main loop                                                           #
    # ------------------------------------------------------------------ #

    def _infer(self, engine: InferenceEngine, window: Waveform) -> List[Waveform]:
        self.inference_calls += 1
        if self.reinit_engine_per_window:
            with engine_session(engine):
                engine.execute(window)
                return list(engine.get_results())
        engine.execute(window)
        return list(engine.get_results())

    def process_audio(
        self,
        input_waveform: Waveform,
        engine: InferenceEngine,
        num_tracks: int,
        window_seconds: float,
        sample_rate: int = 44100,
    ) -> List[Waveform]:
        """Separate ``input_waveform`` into ``num_tracks`` full-length tracks."""
        if self.reinit_engine_per_window:
            return self._run(input_waveform, engine, num_tracks, window_seconds, sample_rate)
        with engine_session(engine):
            return self._run(input_waveform, engine, num_tracks, window_seconds, sample_rate)

    def _run(
        self,
        input_waveform: Waveform,
        engine: InferenceEngine,
        num_tracks: int,
        window_seconds: float,
        sample_rate: int,
    ) -> List[Waveform]:
        plan = plan_windows(window_seconds, sample_rate)
        self.last_plan = plan
        self.last_error = None
        self.inference_calls = 0
        self.report_start()

        channels = input_waveform.channel_count
        src = Waveform.from_samples(input_waveform.samples, channels)
        total_frames = src.frame_count
        if total_frames != input_waveform.frame_count:
            logger.warning(
                "Input frame_count %d disagrees with buffer length; using %d frames",
                input_waveform.frame_count,
                total_frames,
            )

        logger.debug(
            "Processing %d frames x %d channels into %d tracks (window=%d step=%d first_take=%d take=%d offset=%d)",
            total_frames, channels, num_tracks,
            plan.window_frames, plan.step_frames, plan.first_take_frames,
            plan.regular_take_frames, plan.regular_offset_frames,
        )

        track_results = [Waveform.zeros(total_frames, channels) for _ in range(num_tracks)]

        result_pos = 0
        window_start = 0
        is_first_window = True
        last_reported_progress = 0.0

        while result_pos < total_frames:
            current_progress = float(result_pos) / float(total_frames)
            if current_progress - last_reported_progress >= self.progress_step:
                self.report_progress(current_progress)
                last_reported_progress = current_progress

            window_end = min(window_start + plan.window_frames, total_frames)
            current_window_frames = window_end - window_start
            if current_window_frames <= 0:
                logger.debug("Empty window at frame %d; stopping", window_start)
                break

            window_segment = self.extract_subsegment(src, window_start, current_window_frames)
            results = self._infer(engine, window_segment)

            if len(results) != num_tracks:
                return self._abort(track_results, num_tracks, len(results))

            output_frames = results[0].frame_count if results else 0
            remaining = total_frames - result_pos
            if is_first_window:
                extract_start = 0
                extract_frames = min(plan.first_take_frames, output_frames, remaining)
                is_first_window = False
            else:
                extract_start = plan.regular_offset_frames
                extract_frames = min(plan.regular_take_frames, max(0, output_frames - extract_start), remaining)

            if extract_start >= output_frames or extract_frames <= 0:
                logger.debug(
                    "Degenerate keep-slice (start=%d frames=%d output=%d); stopping at frame %d",
                    extract_start, extract_frames, output_frames, result_pos,
                )
                break

            for track_idx in range(num_tracks):
                self.copy_subsegment(results[track_idx], extract_start, extract_frames, track_results[track_idx], result_pos)

            result_pos += extract_frames
            window_start += plan.step_frames

            if window_start >= total_frames:
                break

        if result_pos < total_frames and window_start < total_frames:
            remaining = total_frames - result_pos
            final_segment = self.extract_subsegment(src, window_start, total_frames - window_start)
            results = self._infer(engine, final_segment)

            if len(results) != num_tracks:
                return self._abort(track_results, num_tracks, len(results))

            output_frames = results[0].frame_count if results else 0
            copy_frames = min(remaining, output_frames)
            logger.debug("Final window at frame %d fills %d of %d remaining frames", window_start, copy_frames, remaining)
            for track_idx in range(num_tracks):
                self.copy_subsegment(results[track_idx], 0, copy_frames, track_results[track_idx], result_pos)

        self.report_progress(1.0)
        self.report_finish()
        return track_results

    def _abort(self, track_results: List[Waveform], expected: int, got: int) -> List[Waveform]:
        error = TrackCountMismatch(expected, got)
        self.last_error = error
        logger.error(str(error))
        self.report_error(str(error))
        return track_results


def process_audio(
    input_waveform: Waveform,
    engine: InferenceEngine,
    num_tracks: int,
    window_seconds: float,
    sample_rate: int = 44100,
    observer=None,
    progress_step: float = PROGRESS_REPORT_STEP,
    reinit_engine_per_window: bool = True,
) -> List[Waveform]:
    """Functional wrapper around :class:`AudioProcessor`.

    ``observer`` is held weakly; the caller keeps it alive for the call.
    """
    processor = AudioProcessor(progress_step=progress_step, reinit_engine_per_window=reinit_engine_per_window)
    processor.set_delegate(observer)
    return processor.process_audio(input_waveform, engine, num_tracks, window_seconds, sample_rate)
