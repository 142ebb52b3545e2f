"""
Generate-request state machine: Idle -> Rendering -> Encoding -> terminal.

Rendering drives the compositor and overlay renderer frame by frame on the
job's runner thread. Encoding hands the prepared frames to a GifEncoder pool
owned by that same thread, which shuts the pool down before the job reaches a
terminal state.
"""

import itertools
import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Optional

from .compositor import FrameCompositor
from .config import DEFAULT_CONFIG, RemixConfig, pool_size, quality_label, validate_quality
from .encoder import ENCODER_THREAD_PREFIX, EncodeAborted, EncoderOptions, GifEncoder, PreparedFrame
from .errors import EncodeError, GenerateInProgressError, ValidationError
from .models import JobState, TextOverlaySpec
from .overlay import render_text_overlay

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float, str], None]
StateListener = Callable[[JobState], None]

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.IDLE: frozenset({JobState.RENDERING, JobState.CANCELLED}),
    JobState.RENDERING: frozenset(
        {JobState.ENCODING, JobState.CANCELLED, JobState.FAILED}
    ),
    JobState.ENCODING: frozenset(
        {JobState.FINISHED, JobState.CANCELLED, JobState.FAILED}
    ),
    JobState.FINISHED: frozenset(),
    JobState.CANCELLED: frozenset(),
    JobState.FAILED: frozenset(),
}

_job_ids = itertools.count(1)


class EncodingJob:
    """
    One generate request.

    State only moves forward along ALLOWED_TRANSITIONS, progress never
    decreases, and ``output_blob`` is set only in FINISHED and
    ``error_message`` only in FAILED.
    """

    def __init__(self, overlay: TextOverlaySpec, quality: int, total_frames: int):
        self.id = next(_job_ids)
        self.overlay = overlay
        self.quality = quality
        self.total_frames = total_frames
        self._state = JobState.IDLE
        self._progress = 0.0
        self._message = ""
        self._output_blob: Optional[bytes] = None
        self._error_message: Optional[str] = None
        self._lock = threading.RLock()
        self._done = threading.Event()
        self._progress_listeners: List[ProgressListener] = []
        self._state_listeners: List[StateListener] = []

    def __repr__(self) -> str:
        return f"EncodingJob(id={self.id}, state={self._state.value}, progress={self._progress:.2f})"

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def message(self) -> str:
        return self._message

    @property
    def output_blob(self) -> Optional[bytes]:
        return self._output_blob if self._state == JobState.FINISHED else None

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message if self._state == JobState.FAILED else None

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    def transition(
        self,
        new_state: JobState,
        *,
        output_blob: Optional[bytes] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move to ``new_state`` if allowed; returns False for a refused transition."""
        with self._lock:
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                logger.debug("Job %d: refused transition %s -> %s", self.id, self._state.value, new_state.value)
                return False
            previous = self._state
            self._state = new_state
            if new_state == JobState.FINISHED:
                self._output_blob = output_blob
                self._set_progress(1.0, "Complete")
            elif new_state == JobState.FAILED:
                self._error_message = error_message or "Unknown error"
            if new_state.is_terminal:
                self._done.set()
        if new_state.is_terminal:
            logger.info("Job %d: %s -> %s", self.id, previous.value, new_state.value)
        else:
            logger.debug("Job %d: %s -> %s", self.id, previous.value, new_state.value)
        self._notify_state(new_state)
        return True

    def report_progress(self, fraction: float, message: str) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            changed = self._set_progress(fraction, message)
        if changed:
            self._notify_progress()

    def _set_progress(self, fraction: float, message: str) -> bool:
        fraction = min(1.0, max(0.0, fraction))
        if fraction < self._progress:
            return False
        self._progress = fraction
        self._message = message
        return True

    def _notify_progress(self) -> None:
        for listener in list(self._progress_listeners):
            try:
                listener(self._progress, self._message)
            except Exception:
                logger.exception("Job %d: progress listener failed", self.id)

    def _notify_state(self, state: JobState) -> None:
        if state == JobState.FINISHED:
            self._notify_progress()
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Job %d: state listener failed", self.id)


class EncodingOrchestrator:
    """
    Runs generate requests for one compositor, at most one at a time.

    ``generate`` validates, creates a fresh EncodingJob and starts it on a
    background thread. ``cancel`` aborts the live job and returns once its
    thread and encoder pool are gone.
    """

    def __init__(
        self,
        compositor: FrameCompositor,
        config: RemixConfig = DEFAULT_CONFIG,
        font_dirs: tuple = (),
    ):
        self.compositor = compositor
        self.config = config
        self.font_dirs = tuple(font_dirs) or tuple(config.font_dirs)
        self.thread_name_prefix = f"{ENCODER_THREAD_PREFIX}-{id(self):x}"
        self._job: Optional[EncodingJob] = None
        self._runner: Optional[threading.Thread] = None
        self._cancel_event = threading.Event()
        self._encoder: Optional[GifEncoder] = None
        self._lock = threading.RLock()

    @property
    def job(self) -> Optional[EncodingJob]:
        return self._job

    @property
    def state(self) -> JobState:
        return self._job.state if self._job is not None else JobState.IDLE

    @property
    def busy(self) -> bool:
        return self._job is not None and not self._job.is_terminal

    def active_worker_threads(self) -> List[threading.Thread]:
        return [
            thread for thread in threading.enumerate()
            if thread.name.startswith(self.thread_name_prefix)
        ]

    def generate(
        self,
        overlay: TextOverlaySpec,
        quality: Optional[int] = None,
        progress_listener: Optional[ProgressListener] = None,
    ) -> EncodingJob:
        """
        Validate the request and start a new job.

        Raises:
            ValidationError: Empty overlay text or out-of-range quality; no job is created
            GenerateInProgressError: A previous job is still Rendering or Encoding
        """
        if not overlay.has_text:
            raise ValidationError("Please enter text for the overlay")
        overlay.validate()
        quality = validate_quality(self.config.quality if quality is None else quality)

        previous = self._runner
        if self._job is not None and self._job.is_terminal and previous is not None:
            # A cancelled job's runner can still be leaving its compositing pass
            if previous is not threading.current_thread():
                previous.join()

        with self._lock:
            if self.busy:
                raise GenerateInProgressError("A remix is already being generated.")
            job = EncodingJob(overlay, quality, len(self.compositor.container.frames))
            if progress_listener is not None:
                job.add_progress_listener(progress_listener)
            self._job = job
            self._cancel_event = threading.Event()
            job.transition(JobState.RENDERING)
            self._runner = threading.Thread(
                target=self._run,
                args=(job, self._cancel_event),
                name=f"{self.thread_name_prefix}-runner",
                daemon=True,
            )
            self._runner.start()
        return job

    def cancel(self, timeout: Optional[float] = None) -> bool:
        """
        Cancel the live job, discarding all partial output.

        Returns True if a job was moved to CANCELLED.
        """
        with self._lock:
            job = self._job
            if job is None or job.is_terminal:
                return False
            self._cancel_event.set()
            encoder = self._encoder
            if encoder is not None:
                encoder.abort()
            cancelled = job.transition(JobState.CANCELLED)
            runner = self._runner
        if cancelled:
            logger.info("Job %d cancelled at %.0f%%", job.id, job.progress * 100)
        if runner is not None and runner is not threading.current_thread():
            runner.join(timeout)
        return cancelled

    def wait(self, timeout: Optional[float] = None) -> Optional[EncodingJob]:
        """
        Block until the current job is terminal and its thread has exited.

        ``timeout`` bounds the whole call, not each of the two waits.
        """
        job, runner = self._job, self._runner
        deadline = None if timeout is None else time.monotonic() + timeout
        if job is not None:
            job.wait(timeout)
        if runner is not None and runner is not threading.current_thread():
            runner.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return job

    def dispose(self) -> None:
        self.cancel()
        self.wait()

    def _run(self, job: EncodingJob, cancel_event: threading.Event) -> None:
        try:
            frames = self._render(job, cancel_event)
            if frames is None:
                return
            if not job.transition(JobState.ENCODING):
                return
            blob = self._encode(job, frames, cancel_event)
            frames.clear()
            if blob is None:
                return
            with self._lock:
                if cancel_event.is_set():
                    return
                job.transition(JobState.FINISHED, output_blob=blob)
            logger.info("Job %d: generated %d bytes", job.id, len(blob))
        except EncodeError as exc:
            logger.error("Job %d: %s", job.id, exc)
            job.transition(JobState.FAILED, error_message=str(exc))
        except Exception as exc:
            logger.exception("Job %d: unexpected failure", job.id)
            job.transition(JobState.FAILED, error_message=f"{type(exc).__name__}: {exc}")

    def _render(self, job: EncodingJob, cancel_event: threading.Event) -> Optional[List[PreparedFrame]]:
        total = job.total_frames
        share = self.config.render_share
        logger.info(
            "Job %d: rendering %d frames at %dx%d with quality %d",
            job.id, total, self.compositor.container.width, self.compositor.container.height, job.quality,
        )
        prepared: List[PreparedFrame] = []
        job.report_progress(0.0, f"Rendering {total} frames...")
        for composited in self.compositor.begin_pass():
            if cancel_event.is_set():
                prepared.clear()
                return None
            raster = render_text_overlay(composited.raster, job.overlay, self.font_dirs)
            delay = composited.frame.delay_ms or self.config.default_delay_ms
            prepared.append(PreparedFrame(raster=raster, delay_ms=delay))
            done = composited.index + 1
            job.report_progress(done / total * share, f"Rendering frames: {done}/{total}")
        if cancel_event.is_set():
            prepared.clear()
            return None
        return prepared

    def _encode(
        self, job: EncodingJob, frames: List[PreparedFrame], cancel_event: threading.Event
    ) -> Optional[bytes]:
        share = self.config.render_share
        label = quality_label(job.quality)
        workers = pool_size(self.config)
        logger.info("Job %d: encoding %d frames with %d workers", job.id, len(frames), workers)

        def on_progress(fraction: float) -> None:
            total_progress = share + fraction * (1.0 - share)
            job.report_progress(total_progress, f"Encoding ({label}): {round(total_progress * 100)}%")

        encoder = GifEncoder(
            self.compositor.container.width,
            self.compositor.container.height,
            EncoderOptions.from_config(self.config, quality=job.quality),
            workers=workers,
            on_progress=on_progress,
            thread_name_prefix=self.thread_name_prefix,
        )
        job.report_progress(share, f"Encoding {len(frames)} frames...")
        with encoder:
            with self._lock:
                if cancel_event.is_set():
                    return None
                self._encoder = encoder
            try:
                return encoder.encode(frames)
            except EncodeAborted:
                return None
            finally:
                with self._lock:
                    self._encoder = None
