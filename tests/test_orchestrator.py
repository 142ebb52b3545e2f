"""
Tests for the generate-request state machine.
"""

import threading
import time
from io import BytesIO

import pytest
from PIL import Image

from gifremix import (
    EncodingOrchestrator,
    FrameCompositor,
    GenerateInProgressError,
    JobState,
    RemixConfig,
    RemixError,
    RemixSession,
    TextOverlaySpec,
    ValidationError,
    decode_gif,
)
from gifremix.orchestrator import ALLOWED_TRANSITIONS

from gif_builder import build_gif, create_pillow_gif, solid_frames

HELLO = TextOverlaySpec(text="HELLO", font_size_px=20).with_position(0.5, 0.9)


def make_orchestrator(count=3, width=100, height=100, delay_cs=10, config=RemixConfig()):
    container = decode_gif(build_gif(width, height, solid_frames(count, width, height, delay_cs)))
    return EncodingOrchestrator(FrameCompositor(container), config)


def large_session(count=200, size=(200, 200)):
    colors = (["red", "green", "blue"] * count)[:count]
    return RemixSession.from_bytes(create_pillow_gif(colors, size=size, duration=50), source_id="big")


@pytest.fixture
def gated_render(monkeypatch):
    """Hold the runner thread inside rendering until the returned event is set."""
    import gifremix.orchestrator as orchestrator_module

    release = threading.Event()
    real_render = orchestrator_module.render_text_overlay

    def waiting_render(raster, spec, font_dirs=()):
        release.wait(5)
        return real_render(raster, spec, font_dirs)

    monkeypatch.setattr(orchestrator_module, "render_text_overlay", waiting_render)
    yield release
    release.set()


class TestGenerate:
    """Successful generate requests."""

    def test_three_frame_remix_finishes(self):
        with RemixSession.from_bytes(build_gif(100, 100, solid_frames(3, 100, 100)), source_id="7") as session:
            session.update_overlay(text="HELLO", position=HELLO.position)
            job = session.generate(quality=10)
            assert job.wait(30)
            session.wait()

            assert job.state == JobState.FINISHED
            assert job.progress == 1.0
            assert job.message == "Complete"
            assert job.output_blob
            assert job.error_message is None
            result = session.result()
            assert result.metadata["text"] == "HELLO"
            assert result.metadata["position"] == {"x": 0.5, "y": 0.9}

            img = Image.open(BytesIO(result.blob))
            assert img.size == (100, 100)
            assert img.n_frames == 3

    def test_output_carries_overlay(self):
        orchestrator = make_orchestrator(count=1, width=120, height=60)
        spec = TextOverlaySpec(text="HI", font_size_px=30, outline_width_px=0).with_position(0.5, 0.5)
        orchestrator.generate(spec, quality=1)
        job = orchestrator.wait(30)
        frame = Image.open(BytesIO(job.output_blob)).convert("RGB")
        r, g, b = frame.getpixel((2, 2))
        assert r > 240 and g < 16 and b < 16
        colors = {color for _, color in frame.getcolors(maxcolors=100000)}
        assert any(min(color) > 230 for color in colors)

    def test_zero_delay_becomes_default(self):
        orchestrator = make_orchestrator(count=2, width=20, height=20, delay_cs=0)
        orchestrator.generate(HELLO)
        job = orchestrator.wait(30)
        assert [f.delay_ms for f in decode_gif(job.output_blob).frames] == [100, 100]

    def test_source_delays_preserved(self):
        orchestrator = make_orchestrator(count=2, width=20, height=20, delay_cs=25)
        orchestrator.generate(HELLO)
        job = orchestrator.wait(30)
        assert [f.delay_ms for f in decode_gif(job.output_blob).frames] == [250, 250]

    def test_no_threads_left_after_finish(self):
        orchestrator = make_orchestrator()
        orchestrator.generate(HELLO)
        orchestrator.wait(30)
        assert orchestrator.active_worker_threads() == []

    def test_cancel_after_finish_is_noop(self):
        orchestrator = make_orchestrator(count=1)
        orchestrator.generate(HELLO)
        job = orchestrator.wait(30)
        assert not orchestrator.cancel()
        assert job.state == JobState.FINISHED
        assert job.output_blob


class TestProgress:
    """Progress reporting across rendering and encoding."""

    def test_progress_monotonic_and_split(self):
        orchestrator = make_orchestrator(count=6, width=40, height=40)
        updates = []
        orchestrator.generate(HELLO, progress_listener=lambda f, m: updates.append((f, m)))
        orchestrator.wait(30)

        fractions = [f for f, _ in updates]
        assert fractions == sorted(fractions)
        assert fractions[0] == 0.0
        assert fractions[-1] == 1.0
        for fraction, message in updates:
            if message.startswith("Rendering frames"):
                assert fraction <= 0.3 + 1e-9
            if message.startswith("Encoding ("):
                assert fraction >= 0.3
        assert "Rendering frames: 6/6" in [m for _, m in updates]
        assert any(m.startswith("Encoding (balanced):") for _, m in updates)

    def test_quality_label_in_message(self):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        messages = []
        orchestrator.generate(HELLO, quality=3, progress_listener=lambda f, m: messages.append(m))
        orchestrator.wait(30)
        assert any(m.startswith("Encoding (high quality):") for m in messages)

    def test_new_job_restarts_at_zero(self):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        first = orchestrator.generate(HELLO)
        orchestrator.wait(30)
        assert first.progress == 1.0

        updates = []
        second = orchestrator.generate(HELLO, progress_listener=lambda f, m: updates.append(f))
        assert second is not first
        assert second.id != first.id
        orchestrator.wait(30)
        assert updates[0] == 0.0
        assert first.progress == 1.0

    def test_failing_listener_does_not_break_job(self):
        orchestrator = make_orchestrator(count=2, width=20, height=20)

        def broken(fraction, message):
            raise RuntimeError("listener bug")

        orchestrator.generate(HELLO, progress_listener=broken)
        assert orchestrator.wait(30).state == JobState.FINISHED


class TestStateMachine:
    """Transitions, validation and concurrency guards."""

    def test_terminal_states_have_no_exits(self):
        for state in (JobState.FINISHED, JobState.CANCELLED, JobState.FAILED):
            assert ALLOWED_TRANSITIONS[state] == frozenset()
            assert state.is_terminal

    def test_transition_sequence(self, gated_render):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        job = orchestrator.generate(HELLO)
        assert job.state == JobState.RENDERING
        states = []
        job.add_state_listener(states.append)
        gated_render.set()
        orchestrator.wait(30)
        assert states == [JobState.ENCODING, JobState.FINISHED]

    def test_refused_transition(self):
        orchestrator = make_orchestrator(count=1)
        job = orchestrator.generate(HELLO)
        orchestrator.wait(30)
        assert not job.transition(JobState.RENDERING)
        assert job.state == JobState.FINISHED

    def test_empty_text_rejected_without_job(self):
        with RemixSession.from_bytes(build_gif(20, 20, solid_frames(1, 20, 20))) as session:
            with pytest.raises(ValidationError, match="Please enter text"):
                session.generate()
            assert session.job is None
            assert session.state == JobState.IDLE

    def test_whitespace_text_rejected(self):
        orchestrator = make_orchestrator(count=1)
        with pytest.raises(ValidationError):
            orchestrator.generate(TextOverlaySpec(text="   "))
        assert orchestrator.job is None

    @pytest.mark.parametrize("quality", [0, 31])
    def test_quality_out_of_range(self, quality):
        orchestrator = make_orchestrator(count=1)
        with pytest.raises(ValidationError):
            orchestrator.generate(HELLO, quality=quality)
        assert orchestrator.job is None

    def test_generate_while_busy(self, gated_render):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        first = orchestrator.generate(HELLO)
        assert orchestrator.busy
        with pytest.raises(GenerateInProgressError):
            orchestrator.generate(HELLO)
        assert orchestrator.job is first
        gated_render.set()
        assert orchestrator.wait(30).state == JobState.FINISHED


class TestCancellation:
    """Cancel discards output and releases every worker."""

    def test_cancel_shortly_after_generate(self):
        with large_session() as session:
            session.update_overlay(text="HELLO")
            job = session.generate(quality=10)
            time.sleep(0.05)
            assert session.cancel()

            assert job.state == JobState.CANCELLED
            assert job.output_blob is None
            assert job.error_message is None
            assert session.orchestrator.active_worker_threads() == []
            with pytest.raises(RemixError):
                session.result()

    def test_cancel_during_encoding(self):
        with large_session(count=60, size=(120, 120)) as session:
            session.update_overlay(text="HELLO")
            orchestrator = session.orchestrator

            def cancel_mid_encode(fraction, message):
                if fraction > 0.5:
                    orchestrator.cancel()

            job = session.generate(progress_listener=cancel_mid_encode)
            session.wait(60)
            assert job.state == JobState.CANCELLED
            assert job.output_blob is None
            assert orchestrator.active_worker_threads() == []

    def test_progress_frozen_after_cancel(self, gated_render):
        orchestrator = make_orchestrator(count=3, width=20, height=20)
        job = orchestrator.generate(HELLO)
        gated_render.set()
        orchestrator.cancel()
        frozen = job.progress
        orchestrator.wait(30)
        assert job.state == JobState.CANCELLED
        assert job.progress == frozen

    def test_generate_again_after_cancel(self, gated_render):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        orchestrator.generate(HELLO)
        orchestrator.cancel(timeout=0)
        gated_render.set()
        orchestrator.wait(30)
        job = orchestrator.generate(HELLO)
        assert orchestrator.wait(30).state == JobState.FINISHED
        assert job.output_blob

    def test_generate_right_after_unjoined_cancel(self, gated_render):
        orchestrator = make_orchestrator(count=4, width=20, height=20)
        first = orchestrator.generate(HELLO)
        orchestrator.cancel(timeout=0)
        gated_render.set()
        second = orchestrator.generate(HELLO)
        assert orchestrator.wait(30) is second
        assert first.state == JobState.CANCELLED
        assert second.state == JobState.FINISHED

    def test_wait_timeout_bounds_whole_call(self, gated_render):
        orchestrator = make_orchestrator(count=2, width=20, height=20)
        job = orchestrator.generate(HELLO)
        started = time.monotonic()
        assert orchestrator.wait(0.5) is job
        assert time.monotonic() - started < 0.9
        assert not job.is_terminal


class TestFailures:
    """Errors inside the runner end the job in FAILED."""

    def test_render_failure(self, monkeypatch):
        import gifremix.orchestrator as orchestrator_module

        def broken_render(raster, spec, font_dirs=()):
            raise RuntimeError("boom")

        monkeypatch.setattr(orchestrator_module, "render_text_overlay", broken_render)
        orchestrator = make_orchestrator()
        job = orchestrator.generate(HELLO)
        orchestrator.wait(30)

        assert job.state == JobState.FAILED
        assert job.error_message == "RuntimeError: boom"
        assert job.output_blob is None
        assert orchestrator.active_worker_threads() == []

    def test_encode_failure(self, monkeypatch):
        import gifremix.encoder as encoder_module

        def broken_encode(index, frame, options, abort_event=None):
            raise OSError("no space left")

        monkeypatch.setattr(encoder_module, "encode_frame", broken_encode)
        orchestrator = make_orchestrator()
        job = orchestrator.generate(HELLO)
        orchestrator.wait(30)

        assert job.state == JobState.FAILED
        assert "Encoding frame" in job.error_message
        assert "no space left" in job.error_message
        assert orchestrator.active_worker_threads() == []

    def test_failed_job_allows_new_generate(self, monkeypatch):
        import gifremix.orchestrator as orchestrator_module

        real_render = orchestrator_module.render_text_overlay
        calls = {"count": 0}

        def flaky_render(raster, spec, font_dirs=()):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("first call fails")
            return real_render(raster, spec, font_dirs)

        monkeypatch.setattr(orchestrator_module, "render_text_overlay", flaky_render)
        orchestrator = make_orchestrator(count=1)
        orchestrator.generate(HELLO)
        assert orchestrator.wait(30).state == JobState.FAILED
        orchestrator.generate(HELLO)
        assert orchestrator.wait(30).state == JobState.FINISHED
