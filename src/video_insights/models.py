from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Mapping


class AnalysisStatus(str, Enum):
    RUNNING = "running"
    ERROR = "error"
    COMPLETED = "completed"


class StartOutcome(str, Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class VideoMetadata:
    """Descriptive attributes of a video. Every field is optional."""

    channel: str | None = None
    publish_date: str | None = None
    duration: str | None = None
    view_count: int | None = None
    url: str | None = None
    thumbnail_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "VideoMetadata":
        if not data:
            return cls()
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class Transcript:
    text: str
    title: str = ""
    metadata: VideoMetadata = field(default_factory=VideoMetadata)


@dataclass(frozen=True)
class Credential:
    provider_id: str
    secret: str

    def __repr__(self) -> str:
        return f"Credential(provider_id={self.provider_id!r}, secret='***')"


@dataclass(frozen=True)
class AnalysisRequest:
    video_id: str
    context: Any = None


@dataclass(frozen=True)
class AnalysisContent:
    summary: str
    revelations: list[str] = field(default_factory=list)
    takeaways: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AnalysisResult:
    video_id: str
    title: str
    metadata: VideoMetadata
    summary: str
    revelations: tuple[str, ...]
    takeaways: tuple[str, ...]
    completed_at: float
    provider_id: str | None = None

    @property
    def status(self) -> AnalysisStatus:
        return AnalysisStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": AnalysisStatus.COMPLETED.value,
            "video_id": self.video_id,
            "title": self.title,
            "metadata": self.metadata.to_dict(),
            "summary": self.summary,
            "revelations": list(self.revelations),
            "takeaways": list(self.takeaways),
            "completed_at": self.completed_at,
            "provider_id": self.provider_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisResult":
        return cls(
            video_id=str(data["video_id"]),
            title=str(data.get("title") or ""),
            metadata=VideoMetadata.from_dict(data.get("metadata")),
            summary=str(data.get("summary") or ""),
            revelations=tuple(data.get("revelations") or ()),
            takeaways=tuple(data.get("takeaways") or ()),
            completed_at=float(data.get("completed_at") or 0.0),
            provider_id=data.get("provider_id"),
        )


@dataclass
class ProgressRecord:
    video_id: str
    status: AnalysisStatus
    progress_message: str = ""
    streaming_text: str = ""
    error: str | None = None
    error_kind: str | None = None
    video_title: str | None = None
    metadata: VideoMetadata | None = None
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["metadata"] = self.metadata.to_dict() if self.metadata is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgressRecord":
        metadata = data.get("metadata")
        return cls(
            video_id=str(data["video_id"]),
            status=AnalysisStatus(data["status"]),
            progress_message=data.get("progress_message") or "",
            streaming_text=data.get("streaming_text") or "",
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            video_title=data.get("video_title"),
            metadata=VideoMetadata.from_dict(metadata) if metadata is not None else None,
            updated_at=float(data.get("updated_at") or 0.0),
        )


__all__ = [
    "AnalysisContent",
    "AnalysisRequest",
    "AnalysisResult",
    "AnalysisStatus",
    "Credential",
    "ProgressRecord",
    "StartOutcome",
    "Transcript",
    "VideoMetadata",
]
