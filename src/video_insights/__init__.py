"""Streamed LLM analysis of video transcripts with durable, observable progress."""

from .errors import (
    AnalysisError,
    AuthError,
    MalformedResponse,
    MissingCredential,
    NetworkError,
    NoTranscript,
    PersistenceError,
    RateLimitError,
    StreamTimeout,
    UnknownProvider,
)
from .extraction import extract_analysis
from .models import AnalysisResult, AnalysisStatus, ProgressRecord, StartOutcome, Transcript, VideoMetadata
from .orchestrator import AnalysisOrchestrator
from .pipeline import run_analysis
from .providers import Dialect, ProviderDescriptor, get_provider
from .store import InMemoryStore, JsonFileStore, ProgressStore
from .streaming import normalize, stream_fragments
from .transcripts import EnvCredentialSource, StaticTranscriptProvider, YtDlpTranscriptProvider, extract_video_id

__all__ = [
    "AnalysisError",
    "AnalysisOrchestrator",
    "AnalysisResult",
    "AnalysisStatus",
    "AuthError",
    "Dialect",
    "EnvCredentialSource",
    "InMemoryStore",
    "JsonFileStore",
    "MalformedResponse",
    "MissingCredential",
    "NetworkError",
    "NoTranscript",
    "PersistenceError",
    "ProgressRecord",
    "ProgressStore",
    "ProviderDescriptor",
    "RateLimitError",
    "StartOutcome",
    "StaticTranscriptProvider",
    "StreamTimeout",
    "Transcript",
    "UnknownProvider",
    "VideoMetadata",
    "YtDlpTranscriptProvider",
    "extract_analysis",
    "extract_video_id",
    "get_provider",
    "normalize",
    "run_analysis",
    "stream_fragments",
]
