from __future__ import annotations

import threading
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

MODEL_OUTPUT = ['{"summary": "Done.", "revelations": ["R"], ', '"takeaways": ["T"]}']


class BlockingTranscriptProvider:
    """Holds every transcript request until ``release`` is called."""

    def __init__(self, text: str = "a transcript") -> None:
        self.gate = threading.Event()
        self.calls = 0
        self.text = text

    def release(self) -> None:
        self.gate.set()

    def get_transcript(self, context: Any):
        from video_insights.models import Transcript

        self.calls += 1
        assert self.gate.wait(5), "test never released the transcript"
        return Transcript(text=self.text, title="Blocked")


class CountingStreamer:
    def __init__(self, fragments: list[str] = MODEL_OUTPUT) -> None:
        self.fragments = fragments
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, descriptor, request, *, deadline):
        with self._lock:
            self.calls += 1
        yield from self.fragments


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class SlowStreamResponse:
    status_code = 200

    def __init__(self) -> None:
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for _ in range(200):
            time.sleep(0.05)
            yield b'data: {"choices":[{"delta":{"content":"x"}}]}\n'

    def close(self) -> None:
        self.closed = True


def _credentials(secret: str | None = "sk-test"):
    from video_insights.models import Credential
    from video_insights.transcripts import StaticCredentialSource

    return StaticCredentialSource(Credential("openai", secret) if secret else None)


def _orchestrator(**kwargs: Any):
    from video_insights.orchestrator import AnalysisOrchestrator
    from video_insights.store import ProgressStore
    from video_insights.transcripts import StaticTranscriptProvider

    kwargs.setdefault("store", ProgressStore())
    kwargs.setdefault("transcript_provider", StaticTranscriptProvider("a transcript", title="Static"))
    kwargs.setdefault("credential_source", _credentials())
    kwargs.setdefault("streamer", CountingStreamer())
    return AnalysisOrchestrator(**kwargs)


def test_start_deduplicates_in_flight_runs() -> None:
    from video_insights.models import AnalysisResult, StartOutcome

    provider = BlockingTranscriptProvider()
    streamer = CountingStreamer()

    with _orchestrator(transcript_provider=provider, streamer=streamer) as orchestrator:
        assert orchestrator.start("vid") is StartOutcome.STARTED
        assert orchestrator.start("vid") is StartOutcome.ALREADY_RUNNING
        assert orchestrator.is_running("vid")

        provider.release()
        status = orchestrator.wait("vid", timeout=5)

        assert isinstance(status, AnalysisResult)
        assert status.summary == "Done."
        assert streamer.calls == 1
        assert not orchestrator.is_running("vid")

        assert orchestrator.start("vid") is StartOutcome.STARTED
        orchestrator.wait("vid", timeout=5)
        assert streamer.calls == 2


def test_concurrent_starts_launch_a_single_run() -> None:
    from video_insights.models import StartOutcome

    provider = BlockingTranscriptProvider()
    streamer = CountingStreamer()
    barrier = threading.Barrier(8)
    outcomes: list[StartOutcome] = []
    outcomes_lock = threading.Lock()

    with _orchestrator(transcript_provider=provider, streamer=streamer) as orchestrator:

        def start() -> None:
            barrier.wait()
            outcome = orchestrator.start("vid")
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=start) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        provider.release()
        orchestrator.wait("vid", timeout=5)

    assert outcomes.count(StartOutcome.STARTED) == 1
    assert outcomes.count(StartOutcome.ALREADY_RUNNING) == 7
    assert streamer.calls == 1


def test_runs_for_different_videos_are_independent() -> None:
    from video_insights.models import StartOutcome

    provider = BlockingTranscriptProvider()

    with _orchestrator(transcript_provider=provider) as orchestrator:
        assert orchestrator.start("first") is StartOutcome.STARTED
        assert orchestrator.start("second") is StartOutcome.STARTED
        provider.release()
        orchestrator.wait("first", timeout=5)
        orchestrator.wait("second", timeout=5)

    assert provider.calls == 2


def test_failed_run_records_error_and_releases_video() -> None:
    from video_insights.models import AnalysisStatus, ProgressRecord, StartOutcome

    streamer = CountingStreamer()

    with _orchestrator(credential_source=_credentials(secret=None), streamer=streamer) as orchestrator:
        orchestrator.start("vid")
        status = orchestrator.wait("vid", timeout=5)

        assert isinstance(status, ProgressRecord)
        assert status.status is AnalysisStatus.ERROR
        assert status.error == "No API key configured."
        assert status.error_kind == "missing_credential"
        assert streamer.calls == 0

        assert orchestrator.start("vid") is StartOutcome.STARTED
        orchestrator.wait("vid", timeout=5)


def test_stream_timeout_becomes_error_record(monkeypatch: pytest.MonkeyPatch) -> None:
    from video_insights.models import AnalysisStatus, StartOutcome

    response = SlowStreamResponse()
    monkeypatch.setattr("video_insights.streaming.requests.post", lambda *args, **kwargs: response)

    with _orchestrator(streamer=None, timeout=0.2) as orchestrator:
        started = time.monotonic()
        orchestrator.start("vid")
        status = orchestrator.wait("vid", timeout=5)

        assert time.monotonic() - started < 3
        assert status.status is AnalysisStatus.ERROR
        assert status.error_kind == "timeout"
        assert status.error == "Request timed out. Please try again."
        assert response.closed
        assert not orchestrator.is_running("vid")
        assert orchestrator.start("vid") is StartOutcome.STARTED
        orchestrator.wait("vid", timeout=5)


def test_unexpected_failure_hides_internal_detail() -> None:
    provider = MagicMock()
    provider.get_transcript.side_effect = ValueError("database password is hunter2")

    with _orchestrator(transcript_provider=provider) as orchestrator:
        orchestrator.start("vid")
        status = orchestrator.wait("vid", timeout=5)

    assert status.error == "Analysis failed unexpectedly."
    assert status.error_kind == "internal_error"
    assert "hunter2" not in status.progress_message


def test_status_prefers_cached_result_over_progress() -> None:
    from video_insights.models import AnalysisResult, AnalysisStatus, VideoMetadata
    from video_insights.store import ProgressStore

    store = ProgressStore()
    result = AnalysisResult(
        video_id="vid",
        title="Cached",
        metadata=VideoMetadata(),
        summary="Cached summary.",
        revelations=(),
        takeaways=(),
        completed_at=1.0,
    )
    store.save_result(result)
    store.write("vid", status=AnalysisStatus.ERROR, error="old failure", error_kind="network_error")

    with _orchestrator(store=store) as orchestrator:
        assert orchestrator.status("vid") == result
        assert orchestrator.status("unknown") is None


def test_status_survives_store_read_failures() -> None:
    store = MagicMock()
    store.read_result.side_effect = OSError("disk gone")
    store.read.side_effect = OSError("disk gone")

    with _orchestrator(store=store) as orchestrator:
        assert orchestrator.status("vid") is None


def test_force_start_clears_cached_result() -> None:
    from video_insights.models import AnalysisResult, ProgressRecord, VideoMetadata
    from video_insights.store import ProgressStore

    store = ProgressStore()
    store.save_result(
        AnalysisResult(
            video_id="vid",
            title="Old",
            metadata=VideoMetadata(),
            summary="Old summary.",
            revelations=(),
            takeaways=(),
            completed_at=1.0,
        )
    )
    provider = BlockingTranscriptProvider()

    with _orchestrator(store=store, transcript_provider=provider) as orchestrator:
        orchestrator.start("vid", force=True)
        in_flight = orchestrator.status("vid")
        provider.release()
        final = orchestrator.wait("vid", timeout=5)

    assert isinstance(in_flight, ProgressRecord)
    assert isinstance(final, AnalysisResult)
    assert final.summary == "Done."


def test_stale_in_flight_entry_is_replaced() -> None:
    from video_insights.models import StartOutcome

    clock = FakeClock()
    provider = BlockingTranscriptProvider()
    streamer = CountingStreamer()

    with _orchestrator(
        transcript_provider=provider, streamer=streamer, timeout=10, dedup_grace=5, clock=clock
    ) as orchestrator:
        assert orchestrator.start("vid") is StartOutcome.STARTED
        clock.now += 10
        assert orchestrator.start("vid") is StartOutcome.ALREADY_RUNNING
        clock.now += 6
        assert orchestrator.start("vid") is StartOutcome.STARTED

        provider.release()
        orchestrator.wait("vid", timeout=5)

    assert provider.calls == 2
    assert streamer.calls == 2


def test_start_records_failure_when_submission_fails() -> None:
    from video_insights.models import AnalysisStatus, ProgressRecord

    executor = MagicMock()
    executor.submit.side_effect = RuntimeError("executor shut down")

    orchestrator = _orchestrator(executor=executor)

    with pytest.raises(RuntimeError, match="executor shut down"):
        orchestrator.start("vid")

    assert not orchestrator.is_running("vid")
    status = orchestrator.status("vid")
    assert isinstance(status, ProgressRecord)
    assert status.status is AnalysisStatus.ERROR
    assert status.error_kind == "internal_error"
    assert status.error == "Analysis failed unexpectedly."
    orchestrator.shutdown()
    executor.shutdown.assert_not_called()


class SequencedTranscriptProvider:
    """Blocks each call on its own gate and titles the transcript after the call number."""

    def __init__(self, calls: int = 2) -> None:
        self.entered = [threading.Event() for _ in range(calls)]
        self.gates = [threading.Event() for _ in range(calls)]
        self._count = 0
        self._lock = threading.Lock()

    def get_transcript(self, context: Any):
        from video_insights.models import Transcript

        with self._lock:
            index = self._count
            self._count += 1
        self.entered[index].set()
        assert self.gates[index].wait(5), "test never released the transcript"
        return Transcript(text="a transcript", title=f"run {index + 1}")


def test_superseded_run_does_not_overwrite_newer_result() -> None:
    from video_insights.models import AnalysisResult, AnalysisStatus, StartOutcome
    from video_insights.store import ProgressStore

    clock = FakeClock()
    store = ProgressStore()
    provider = SequencedTranscriptProvider()

    with _orchestrator(
        store=store, transcript_provider=provider, timeout=10, dedup_grace=5, clock=clock
    ) as orchestrator:
        orchestrator.start("vid")
        assert provider.entered[0].wait(5)
        clock.now += 16
        assert orchestrator.start("vid") is StartOutcome.STARTED
        assert provider.entered[1].wait(5)

        provider.gates[1].set()
        newer = orchestrator.wait("vid", timeout=5)
        assert isinstance(newer, AnalysisResult)
        assert newer.title == "run 2"

        provider.gates[0].set()

    final = store.read_result("vid")
    assert final is not None and final.title == "run 2"
    record = store.read("vid")
    assert record.status is AnalysisStatus.COMPLETED
    assert record.progress_message == "Analysis complete"
