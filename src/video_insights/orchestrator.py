from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import AnalysisError, PersistenceError, describe_error
from .models import AnalysisRequest, AnalysisResult, AnalysisStatus, ProgressRecord, StartOutcome
from .pipeline import REQUEST_TIMEOUT_SECONDS, Streamer, run_analysis
from .store import PROGRESS_WRITE_INTERVAL, ProgressStore
from .transcripts import CredentialSource, EnvCredentialSource, TranscriptProvider, YtDlpTranscriptProvider

logger = logging.getLogger(__name__)

DEDUP_GRACE_SECONDS = 60.0


@dataclass
class _ActiveRun:
    started_at: float
    done: threading.Event = field(default_factory=threading.Event)


class AnalysisOrchestrator:
    """Starts analyses in the background and reports their status.

    At most one run per video id is active at a time. ``start`` returns as soon
    as the run is handed to the executor; observers follow it via ``status``.
    """

    def __init__(
        self,
        *,
        store: Optional[ProgressStore] = None,
        transcript_provider: Optional[TranscriptProvider] = None,
        credential_source: Optional[CredentialSource] = None,
        streamer: Optional[Streamer] = None,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        write_interval: float = PROGRESS_WRITE_INTERVAL,
        dedup_grace: float = DEDUP_GRACE_SECONDS,
        language: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store if store is not None else ProgressStore()
        self.transcript_provider = transcript_provider or YtDlpTranscriptProvider()
        self.credential_source = credential_source or EnvCredentialSource()
        self.streamer = streamer
        self.timeout = timeout
        self.write_interval = write_interval
        self.dedup_grace = dedup_grace
        self.language = language
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="video-insights")
        self._active: dict[str, _ActiveRun] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "AnalysisOrchestrator":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.shutdown()

    def start(self, video_id: str, context: Any = None, *, force: bool = False) -> StartOutcome:
        """Begin analysing ``video_id`` unless a run for it is already active.

        With ``force`` the stored progress and cached result are cleared first.
        """

        request = AnalysisRequest(video_id=video_id, context=context)
        run = _ActiveRun(started_at=self._clock())
        with self._lock:
            active = self._active.get(video_id)
            if active is not None and not self._is_stale(active):
                logger.info("Analysis for %s is already running", video_id)
                return StartOutcome.ALREADY_RUNNING
            if active is not None:
                logger.warning("Replacing stale in-flight entry for %s", video_id)
            self._active[video_id] = run

        try:
            if force:
                self.store.clear(video_id)
            self.store.safe_write(
                video_id,
                status=AnalysisStatus.RUNNING,
                progress_message="Starting analysis...",
                streaming_text="",
                error=None,
                error_kind=None,
            )
            self._executor.submit(self._run, request, run)
        except Exception as exc:
            self._record_failure(video_id, exc)
            self._release(video_id, run)
            raise
        except BaseException:
            self._release(video_id, run)
            raise

        logger.info("Started analysis for %s", video_id)
        return StartOutcome.STARTED

    def status(self, video_id: str) -> AnalysisResult | ProgressRecord | None:
        """Return the cached result, else the latest progress record, else ``None``."""

        try:
            result = self.store.read_result(video_id)
        except Exception:  # noqa: BLE001 - status reads are best effort
            logger.warning("Could not read cached result for %s", video_id, exc_info=True)
            result = None
        if result is not None:
            return result

        try:
            return self.store.read(video_id)
        except Exception:  # noqa: BLE001 - status reads are best effort
            logger.warning("Could not read progress for %s", video_id, exc_info=True)
            return None

    def is_running(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._active

    def clear(self, video_id: str) -> None:
        self.store.clear(video_id)

    def wait(self, video_id: str, timeout: float | None = None) -> AnalysisResult | ProgressRecord | None:
        """Block until the active run for ``video_id`` (if any) ends, then return its status."""

        with self._lock:
            run = self._active.get(video_id)
        if run is not None:
            run.done.wait(timeout)
        return self.status(video_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _is_stale(self, run: _ActiveRun) -> bool:
        return self._clock() - run.started_at > self.timeout + self.dedup_grace

    def _is_current(self, video_id: str, run: _ActiveRun) -> bool:
        with self._lock:
            return self._active.get(video_id) is run

    def _release(self, video_id: str, run: _ActiveRun) -> None:
        with self._lock:
            if self._active.get(video_id) is run:
                del self._active[video_id]
        run.done.set()

    def _run(self, request: AnalysisRequest, run: _ActiveRun) -> None:
        video_id = request.video_id
        try:
            result = run_analysis(
                video_id,
                request.context,
                store=self.store,
                transcript_provider=self.transcript_provider,
                credential_source=self.credential_source,
                streamer=self.streamer,
                timeout=self.timeout,
                write_interval=self.write_interval,
                language=self.language,
                is_current=lambda: self._is_current(video_id, run),
            )
            logger.info(
                "Analysis for %s completed: %d revelations, %d takeaways",
                video_id,
                len(result.revelations),
                len(result.takeaways),
            )
        except Exception as exc:  # noqa: BLE001 - every failure ends in a terminal record
            if self._is_current(video_id, run):
                self._record_failure(video_id, exc)
            else:
                logger.warning("Superseded run for %s failed: %s", video_id, exc)
        finally:
            self._release(video_id, run)

    def _record_failure(self, video_id: str, exc: Exception) -> None:
        kind, message = describe_error(exc)
        if isinstance(exc, AnalysisError):
            logger.warning("Analysis for %s failed (%s): %s", video_id, kind, exc)
        else:
            logger.exception("Unexpected failure while analysing %s", video_id)

        try:
            self.store.mark_failed(video_id, message=message, kind=kind)
        except PersistenceError:
            logger.error("Could not record failure for %s; its progress record is stale", video_id)


__all__ = ["AnalysisOrchestrator", "DEDUP_GRACE_SECONDS"]
