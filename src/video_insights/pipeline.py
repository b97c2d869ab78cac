from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Optional

from .errors import MalformedResponse, MissingCredential
from .extraction import clean_streaming_text, extract_analysis
from .models import AnalysisResult, AnalysisStatus
from .prompts import build_analysis_prompt
from .providers import DEFAULT_MAX_TOKENS, ProviderDescriptor, ProviderRequest, build_request, get_provider
from .store import PROGRESS_WRITE_INTERVAL, ProgressStore, WriteThrottle
from .streaming import stream_fragments
from .transcripts import CredentialSource, TranscriptProvider, fetch_transcript

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 300.0

Streamer = Callable[..., Iterable[str]]
ProgressWriter = Callable[..., Any]


def run_analysis(
    video_id: str,
    context: Any = None,
    *,
    store: ProgressStore,
    transcript_provider: TranscriptProvider,
    credential_source: CredentialSource,
    streamer: Optional[Streamer] = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
    write_interval: float = PROGRESS_WRITE_INTERVAL,
    clock: Callable[[], float] = time.monotonic,
    language: str | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    is_current: Optional[Callable[[], bool]] = None,
) -> AnalysisResult:
    """Run one analysis from transcript to persisted result.

    Progress writes along the way are best effort. Every failure is raised as
    an exception for the caller to turn into a terminal error record; the
    final result write is retried and raises ``PersistenceError`` if it still
    cannot be stored.

    When ``is_current`` returns False the run has been superseded: it stops
    writing progress and its result is returned without being stored.
    """

    def write_progress(**fields: Any) -> None:
        if is_current is None or is_current():
            store.safe_write(video_id, status=AnalysisStatus.RUNNING, **fields)

    write_progress(progress_message="Fetching transcript...")
    transcript = fetch_transcript(transcript_provider, context)

    credential = credential_source.get_credential()
    if credential is None or not credential.secret:
        raise MissingCredential()
    descriptor = get_provider(credential.provider_id)
    logger.info("Analyzing %s with %s (%s)", video_id, descriptor.display_name, descriptor.model)

    write_progress(
        progress_message=f"Analyzing with {descriptor.display_name}...",
        video_title=transcript.title,
        metadata=transcript.metadata,
    )

    prompt = build_analysis_prompt(transcript.text, title=transcript.title or None, language=language)
    request = build_request(descriptor, prompt, credential.secret, max_tokens=max_tokens)
    full_text = _collect_stream(
        video_id,
        descriptor,
        request,
        write_progress=write_progress,
        streamer=streamer or stream_fragments,
        deadline=time.monotonic() + timeout,
        throttle=WriteThrottle(write_interval, clock=clock),
    )

    write_progress(progress_message="Finalizing...", streaming_text=clean_streaming_text(full_text))

    content = extract_analysis(full_text)
    result = AnalysisResult(
        video_id=video_id,
        title=transcript.title,
        metadata=transcript.metadata,
        summary=content.summary,
        revelations=tuple(content.revelations),
        takeaways=tuple(content.takeaways),
        completed_at=time.time(),
        provider_id=descriptor.id,
    )
    if is_current is not None and not is_current():
        logger.warning("Discarding result for %s; a newer run replaced this one", video_id)
        return result
    store.save_result(result)
    return result


def _collect_stream(
    video_id: str,
    descriptor: ProviderDescriptor,
    request: ProviderRequest,
    *,
    write_progress: ProgressWriter,
    streamer: Streamer,
    deadline: float,
    throttle: WriteThrottle,
) -> str:
    parts: list[str] = []
    for fragment in streamer(descriptor, request, deadline=deadline):
        parts.append(fragment)
        if throttle.ready():
            write_progress(
                progress_message="Generating analysis...",
                streaming_text=clean_streaming_text("".join(parts)),
            )

    full_text = "".join(parts)
    logger.debug("Received %d fragments (%d chars) for %s", len(parts), len(full_text), video_id)
    if not full_text.strip():
        raise MalformedResponse(f"{descriptor.display_name} returned an empty response.")
    return full_text


__all__ = ["REQUEST_TIMEOUT_SECONDS", "run_analysis"]
