from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol

from .errors import PersistenceError
from .models import AnalysisResult, AnalysisStatus, ProgressRecord

logger = logging.getLogger(__name__)

PROGRESS_WRITE_INTERVAL = 0.5  # seconds
TERMINAL_WRITE_ATTEMPTS = 3
_STORE_DIR_ENV = "VIDEO_INSIGHTS_STORE_DIR"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Process-local store backed by a dict."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        encoded = json.loads(json.dumps(value))
        with self._lock:
            self._data[key] = encoded

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


def default_store_dir() -> Path:
    override = os.getenv(_STORE_DIR_ENV)
    if override:
        return Path(override)

    base_dir = os.getenv("XDG_CACHE_HOME")
    if base_dir:
        base = Path(base_dir)
    else:
        base = Path.home() / ".cache"
    return base / "video_insights"


class JsonFileStore:
    """Durable store keeping one JSON document per key under ``root``."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root) if root is not None else default_store_dir()
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Any | None:
        try:
            return json.loads(self._path(key).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt store entry %s", key)
            return None

    def set(self, key: str, value: Any) -> None:
        target = self._path(key)
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def delete(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)


class ProgressStore:
    """Progress and result records for each video, on top of a key-value backend."""

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend: KeyValueStore = backend if backend is not None else InMemoryStore()
        self._clock = clock
        self._lock = threading.Lock()
        self._last_stamp: dict[str, float] = {}

    @staticmethod
    def state_key(video_id: str) -> str:
        return f"analysis_state_{video_id}"

    @staticmethod
    def result_key(video_id: str) -> str:
        return f"analysis_{video_id}"

    def _stamp(self, video_id: str, previous: float) -> float:
        now = self._clock()
        floor = max(previous, self._last_stamp.get(video_id, 0.0))
        if now <= floor:
            now = floor + 1e-6
        self._last_stamp[video_id] = now
        return now

    def read(self, video_id: str) -> ProgressRecord | None:
        data = self.backend.get(self.state_key(video_id))
        if not data:
            return None
        return ProgressRecord.from_dict(data)

    def write(self, video_id: str, **fields: Any) -> ProgressRecord:
        """Merge ``fields`` into the stored record and stamp ``updated_at``."""

        with self._lock:
            current = self.backend.get(self.state_key(video_id)) or {}
            merged: dict[str, Any] = {**current, **_encode_fields(fields), "video_id": video_id}
            merged.setdefault("status", AnalysisStatus.RUNNING.value)
            merged["updated_at"] = self._stamp(video_id, float(current.get("updated_at") or 0.0))
            self.backend.set(self.state_key(video_id), merged)
        return ProgressRecord.from_dict(merged)

    def safe_write(self, video_id: str, **fields: Any) -> ProgressRecord | None:
        """Best-effort :meth:`write`; failures are logged and swallowed."""

        try:
            return self.write(video_id, **fields)
        except Exception:  # noqa: BLE001 - progress is advisory
            logger.warning("Could not write progress for %s", video_id, exc_info=True)
            return None

    def read_result(self, video_id: str) -> AnalysisResult | None:
        data = self.backend.get(self.result_key(video_id))
        if not data:
            return None
        return AnalysisResult.from_dict(data)

    def save_result(
        self,
        result: AnalysisResult,
        *,
        attempts: int = TERMINAL_WRITE_ATTEMPTS,
        backoff: float = 0.2,
    ) -> None:
        """Persist ``result`` and mark the run completed, retrying on failure.

        The result record is written before the completed state so a completed
        state never points at a missing result.
        """

        def persist() -> None:
            self.backend.set(self.result_key(result.video_id), result.to_dict())
            self.write(
                result.video_id,
                status=AnalysisStatus.COMPLETED,
                progress_message="Analysis complete",
                streaming_text="",
                error=None,
                error_kind=None,
            )

        self._retry(persist, result.video_id, attempts=attempts, backoff=backoff)

    def mark_failed(
        self,
        video_id: str,
        *,
        message: str,
        kind: str,
        attempts: int = TERMINAL_WRITE_ATTEMPTS,
        backoff: float = 0.2,
    ) -> None:
        def persist() -> None:
            self.write(
                video_id,
                status=AnalysisStatus.ERROR,
                progress_message=message,
                error=message,
                error_kind=kind,
            )

        self._retry(persist, video_id, attempts=attempts, backoff=backoff)

    @staticmethod
    def _retry(action: Callable[[], None], video_id: str, *, attempts: int, backoff: float) -> None:
        attempts = max(attempts, 1)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                action()
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Terminal write for %s failed (attempt %d/%d)", video_id, attempt, attempts, exc_info=True
                )
                if attempt < attempts:
                    time.sleep(backoff * attempt)
        raise PersistenceError() from last_error

    def clear(self, video_id: str) -> None:
        with self._lock:
            self.backend.delete(self.state_key(video_id))
            self.backend.delete(self.result_key(video_id))


def _encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, AnalysisStatus):
            value = value.value
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        encoded[key] = value
    return encoded


class WriteThrottle:
    """Time-based gate allowing at most one write per ``interval`` seconds."""

    def __init__(self, interval: float = PROGRESS_WRITE_INTERVAL, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True


__all__ = [
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "PROGRESS_WRITE_INTERVAL",
    "ProgressStore",
    "WriteThrottle",
    "default_store_dir",
]
