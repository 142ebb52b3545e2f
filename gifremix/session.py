"""
Remix session: one decoded source GIF, its compositor and at most one live job.

The session is an explicit, disposable object. Overlay edits produce a cheap
single-frame preview; the full multi-frame remix only runs on ``generate``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Protocol

from PIL import Image

from .compositor import FrameCompositor
from .config import DEFAULT_CONFIG, RemixConfig
from .decoder import decode_gif
from .errors import GenerateInProgressError, RemixError, ValidationError
from .models import GifContainer, JobState, TextOverlaySpec
from .orchestrator import EncodingJob, EncodingOrchestrator, ProgressListener
from .overlay import font_search_dirs, render_text_overlay

logger = logging.getLogger(__name__)


class UploadBridge(Protocol):
    """Receives a finished remix for transport and persistence."""

    def upload(self, blob: bytes, metadata: Mapping[str, Any], *, filename: str, title: str) -> Any:
        ...


@dataclass(frozen=True)
class RemixResult:
    """A finished remix and the overlay it was generated with."""

    blob: bytes
    overlay: TextOverlaySpec
    source_id: Optional[str] = None
    created_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.overlay.to_metadata()

    @property
    def filename(self) -> str:
        return f"remix_{self.source_id or 'gif'}_{self.created_at_ms}.gif"

    @property
    def title(self) -> str:
        return f"Remix of {self.source_id}" if self.source_id else "Remix"

    def upload(self, bridge: UploadBridge) -> Any:
        """Hand blob and overlay metadata to the upload collaborator."""
        return bridge.upload(self.blob, self.metadata, filename=self.filename, title=self.title)


class RemixSession:
    """
    Owns one GifContainer, one compositor surface and one orchestrator.

    Previews, overlay edits and starting a job are serialized on a session
    lock, so at most one compositing pass runs on the shared surface.

    Example::

        with RemixSession.from_bytes(gif_bytes, source_id="42") as session:
            session.update_overlay(text="HELLO")
            job = session.generate(quality=10)
            job.wait()
            result = session.result()
    """

    def __init__(
        self,
        container: GifContainer,
        source_id: Optional[str] = None,
        config: RemixConfig = DEFAULT_CONFIG,
        overlay: Optional[TextOverlaySpec] = None,
    ):
        self.container = container
        self.source_id = source_id
        self.config = config
        self.overlay = overlay or TextOverlaySpec()
        self.font_dirs = font_search_dirs(config.font_dirs)
        self._compositor = FrameCompositor(container)
        self._orchestrator = EncodingOrchestrator(self._compositor, config, self.font_dirs)
        self._disposed = False
        self._lock = threading.RLock()

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        source_id: Optional[str] = None,
        config: RemixConfig = DEFAULT_CONFIG,
    ) -> "RemixSession":
        """Decode ``data``; a DecodeError aborts before any session exists."""
        return cls(decode_gif(data), source_id=source_id, config=config)

    def __enter__(self) -> "RemixSession":
        return self

    def __exit__(self, *args) -> None:
        self.dispose()

    @property
    def width(self) -> int:
        return self.container.width

    @property
    def height(self) -> int:
        return self.container.height

    @property
    def frame_count(self) -> int:
        return len(self.container.frames)

    @property
    def job(self) -> Optional[EncodingJob]:
        return self._orchestrator.job

    @property
    def state(self) -> JobState:
        return self._orchestrator.state

    @property
    def orchestrator(self) -> EncodingOrchestrator:
        return self._orchestrator

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _ensure_open(self) -> None:
        if self._disposed:
            raise RemixError("Remix session has been disposed.")

    def _ensure_idle(self) -> None:
        self._ensure_open()
        if self._orchestrator.busy:
            raise GenerateInProgressError("Overlay cannot change while a remix is being generated.")
        # A cancelled job's runner may still be leaving its pass
        self._orchestrator.wait()

    def preview(self, frame_index: int = 0) -> Image.Image:
        """Composite up to ``frame_index`` in a fresh pass and stamp the current overlay."""
        with self._lock:
            self._ensure_idle()
            raster = self._compositor.composite(frame_index)
            overlay = self.overlay
        return render_text_overlay(raster, overlay, self.font_dirs)

    def set_overlay(self, overlay: TextOverlaySpec) -> Image.Image:
        """Replace the whole overlay and return a new preview."""
        with self._lock:
            self._ensure_idle()
            overlay.validate()
            self.overlay = overlay
            return self.preview()

    def update_overlay(self, **changes: Any) -> Image.Image:
        """Change overlay fields (e.g. ``text``, ``font_size_px``) and return a new preview."""
        with self._lock:
            self._ensure_idle()
            try:
                updated = replace(self.overlay, **changes)
            except TypeError as exc:
                raise ValidationError(f"Unknown overlay setting: {exc}") from exc
            return self.set_overlay(updated)

    def set_position(self, x: float, y: float) -> Image.Image:
        with self._lock:
            self._ensure_idle()
            return self.set_overlay(self.overlay.with_position(x, y))

    def apply_preset(self, name: str) -> Image.Image:
        with self._lock:
            self._ensure_idle()
            return self.set_overlay(self.overlay.with_preset(name))

    def generate(
        self,
        quality: Optional[int] = None,
        progress_listener: Optional[ProgressListener] = None,
        overlay: Optional[TextOverlaySpec] = None,
    ) -> EncodingJob:
        """
        Start the full remix. See EncodingOrchestrator.generate.

        ``overlay`` replaces the session overlay once the job has started;
        without it the current overlay is used.
        """
        with self._lock:
            self._ensure_idle()
            requested = overlay if overlay is not None else self.overlay
            job = self._orchestrator.generate(requested.normalized(), quality, progress_listener)
            self.overlay = requested
            return job

    def cancel(self, timeout: Optional[float] = None) -> bool:
        return self._orchestrator.cancel(timeout)

    def wait(self, timeout: Optional[float] = None) -> Optional[EncodingJob]:
        return self._orchestrator.wait(timeout)

    def result(self) -> RemixResult:
        """The finished remix; raises RemixError unless the current job is FINISHED."""
        job = self.job
        if job is None or job.state != JobState.FINISHED:
            state = job.state.value if job is not None else JobState.IDLE.value
            raise RemixError(f"No finished remix available (state: {state}).")
        return RemixResult(blob=job.output_blob, overlay=job.overlay, source_id=self.source_id)

    def reset(self) -> None:
        """Cancel any live job and clear the accumulator surface."""
        with self._lock:
            self._ensure_open()
            self._orchestrator.cancel()
            self._orchestrator.wait()
            self._compositor.reset()

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._orchestrator.dispose()
            self._compositor.dispose()
            self._disposed = True
        logger.debug("Remix session for %s disposed", self.source_id or "<anonymous>")
