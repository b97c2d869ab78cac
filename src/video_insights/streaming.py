from __future__ import annotations

import codecs
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

import requests

from .errors import AuthError, NetworkError, RateLimitError, StreamTimeout
from .providers import Dialect, ProviderDescriptor, ProviderRequest

logger = logging.getLogger(__name__)

EVENT_PREFIX = "data:"
STREAM_SENTINEL = "[DONE]"
DEFAULT_CONNECT_TIMEOUT = 30.0


def _dig(obj: Any, *path: str | int) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def _anthropic_text(event: Any) -> Any:
    if _dig(event, "type") != "content_block_delta":
        return None
    if _dig(event, "delta", "type") != "text_delta":
        return None
    return _dig(event, "delta", "text")


def _openai_text(event: Any) -> Any:
    return _dig(event, "choices", 0, "delta", "content")


def _google_text(event: Any) -> Any:
    return _dig(event, "candidates", 0, "content", "parts", 0, "text")


@dataclass(frozen=True)
class DialectSpec:
    extract_text: Callable[[Any], Any]
    prefix: str = EVENT_PREFIX
    sentinel: str | None = None


DIALECTS: dict[Dialect, DialectSpec] = {
    Dialect.ANTHROPIC: DialectSpec(extract_text=_anthropic_text),
    Dialect.OPENAI: DialectSpec(extract_text=_openai_text, sentinel=STREAM_SENTINEL),
    Dialect.GOOGLE: DialectSpec(extract_text=_google_text),
}


def iter_lines(chunks: Iterable[bytes | str]) -> Iterator[str]:
    """Yield complete lines from ``chunks``, carrying partial lines across chunk boundaries."""

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.rstrip("\r")

    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


def _event_data(line: str, prefix: str) -> str | None:
    if not line.startswith(prefix):
        return None
    data = line[len(prefix):]
    if data.startswith(" "):
        data = data[1:]
    return data.strip()


def normalize(chunks: Iterable[bytes | str], dialect: Dialect | str) -> Iterator[str]:
    """Turn a raw provider event stream into generated text fragments.

    Lines without the event prefix, the stream sentinel, events that are not
    valid JSON and events that carry no text are skipped.
    """

    spec = DIALECTS[Dialect(dialect)]
    for line in iter_lines(chunks):
        data = _event_data(line, spec.prefix)
        if not data:
            continue
        if spec.sentinel is not None and data == spec.sentinel:
            continue
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Dropping malformed %s event: %.80s", Dialect(dialect).value, data)
            continue
        text = spec.extract_text(event)
        if isinstance(text, str) and text:
            yield text


def _provider_error_message(response: Any) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None

    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None

    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
    elif isinstance(error, str):
        message = error
    else:
        message = data.get("message")

    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def _raise_for_status(response: Any, descriptor: ProviderDescriptor) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return

    message = _provider_error_message(response) or (
        f"{descriptor.display_name} API request failed: {status}"
    )
    response.close()
    logger.warning("%s responded with HTTP %s: %s", descriptor.display_name, status, message)

    if status in (401, 403):
        raise AuthError(message)
    if status == 429:
        raise RateLimitError(message)
    if status in (408, 504):
        raise StreamTimeout(message)
    raise NetworkError(message)


def _read_chunks(response: Any, chunk_size: int, deadline: float) -> Iterator[bytes]:
    for chunk in response.iter_content(chunk_size=chunk_size):
        if time.monotonic() >= deadline:
            raise StreamTimeout()
        if chunk:
            yield chunk


def _iter_response(
    response: Any,
    descriptor: ProviderDescriptor,
    *,
    deadline: float,
    chunk_size: int,
) -> Iterator[str]:
    expired = threading.Event()

    def abort() -> None:
        expired.set()
        response.close()

    watchdog = threading.Timer(max(deadline - time.monotonic(), 0.0), abort)
    watchdog.daemon = True
    watchdog.start()
    try:
        yield from normalize(_read_chunks(response, chunk_size, deadline), descriptor.dialect)
        if expired.is_set():
            raise StreamTimeout()
    except Exception as exc:
        # closing the response from the watchdog surfaces as assorted I/O errors
        if expired.is_set() or time.monotonic() >= deadline or isinstance(exc, requests.Timeout):
            if isinstance(exc, StreamTimeout):
                raise
            raise StreamTimeout() from exc
        if isinstance(exc, requests.RequestException):
            logger.warning("%s stream interrupted: %s", descriptor.display_name, exc)
            raise NetworkError(f"Connection to {descriptor.display_name} was interrupted.") from exc
        raise
    finally:
        watchdog.cancel()
        response.close()


def stream_fragments(
    descriptor: ProviderDescriptor,
    request: ProviderRequest,
    *,
    deadline: float,
    chunk_size: int = 1024,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> Iterator[str]:
    """Open a streaming request and return the lazy sequence of text fragments.

    ``deadline`` is an absolute :func:`time.monotonic` value. HTTP errors are
    raised here, before any fragment is read.
    """

    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise StreamTimeout()

    try:
        response = requests.post(
            request.url,
            headers=request.headers,
            params=request.params,
            json=request.payload,
            stream=True,
            timeout=(min(connect_timeout, remaining), remaining),
        )
    except requests.Timeout as exc:
        raise StreamTimeout() from exc
    except requests.RequestException as exc:
        logger.warning("%s request failed: %s", descriptor.display_name, exc)
        raise NetworkError(f"Could not reach {descriptor.display_name}.") from exc

    _raise_for_status(response, descriptor)
    return _iter_response(response, descriptor, deadline=deadline, chunk_size=chunk_size)


__all__ = [
    "DIALECTS",
    "DialectSpec",
    "iter_lines",
    "normalize",
    "stream_fragments",
]
