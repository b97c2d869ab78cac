from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Iterable, Protocol, Sequence
from urllib.parse import parse_qs, urlparse

import requests
import yt_dlp
from yt_dlp.utils import DownloadError

from .errors import NoTranscript
from .models import Credential, Transcript, VideoMetadata
from .providers import DEFAULT_PROVIDER

logger = logging.getLogger(__name__)

_PROVIDER_ENV = "VIDEO_INSIGHTS_PROVIDER"
_API_KEY_ENV = "VIDEO_INSIGHTS_API_KEY"
_PROVIDER_KEY_ENVS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
}
_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
_RETRY_DELAY = 0.1


class TranscriptProvider(Protocol):
    def get_transcript(self, context: Any) -> Transcript: ...


class CredentialSource(Protocol):
    def get_credential(self) -> Credential | None: ...


def fetch_transcript(provider: TranscriptProvider, context: Any, *, retry_delay: float = _RETRY_DELAY) -> Transcript:
    """Ask ``provider`` for a transcript, retrying once on a connection failure."""

    try:
        transcript = provider.get_transcript(context)
    except (ConnectionError, requests.ConnectionError) as exc:
        logger.info("Transcript source unavailable (%s); retrying once", exc)
        time.sleep(retry_delay)
        try:
            transcript = provider.get_transcript(context)
        except (ConnectionError, requests.ConnectionError) as retry_exc:
            raise NoTranscript("Failed to extract transcript") from retry_exc

    if transcript is None or not transcript.text or not transcript.text.strip():
        raise NoTranscript()
    return transcript


class StaticTranscriptProvider:
    """Serves one fixed transcript regardless of the context."""

    def __init__(self, text: str, *, title: str = "", metadata: VideoMetadata | None = None) -> None:
        self.transcript = Transcript(text=text, title=title, metadata=metadata or VideoMetadata())

    def get_transcript(self, context: Any) -> Transcript:
        return self.transcript


class StaticCredentialSource:
    def __init__(self, credential: Credential | None) -> None:
        self.credential = credential

    def get_credential(self) -> Credential | None:
        return self.credential


class EnvCredentialSource:
    """Resolve the provider and its API key from arguments or the environment."""

    def __init__(self, *, provider_id: str | None = None, api_key: str | None = None) -> None:
        self.provider_id = provider_id
        self.api_key = api_key

    def get_credential(self) -> Credential | None:
        provider_id = (self.provider_id or os.getenv(_PROVIDER_ENV) or DEFAULT_PROVIDER).strip().lower()
        secret = self.api_key or os.getenv(_API_KEY_ENV)
        if not secret and provider_id in _PROVIDER_KEY_ENVS:
            secret = os.getenv(_PROVIDER_KEY_ENVS[provider_id])
        if not secret or not secret.strip():
            return None
        return Credential(provider_id=provider_id, secret=secret.strip())


def extract_video_id(value: str) -> str | None:
    """Return the YouTube video id in ``value`` (a URL or a bare id)."""

    candidate = value.strip()
    if _VIDEO_ID_PATTERN.match(candidate):
        return candidate

    parsed = urlparse(candidate)
    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    if host.startswith("m."):
        host = host[2:]

    video_id: str | None = None
    if host == "youtu.be":
        video_id = parsed.path.lstrip("/").split("/")[0]
    elif host in {"youtube.com", "music.youtube.com", "youtube-nocookie.com"}:
        if parsed.path == "/watch":
            video_id = (parse_qs(parsed.query).get("v") or [None])[0]
        else:
            parts = [part for part in parsed.path.split("/") if part]
            if len(parts) >= 2 and parts[0] in {"shorts", "embed", "live", "v"}:
                video_id = parts[1]

    if video_id and _VIDEO_ID_PATTERN.match(video_id):
        return video_id
    return None


def _format_duration(seconds: Any) -> str | None:
    if not isinstance(seconds, (int, float)) or seconds <= 0:
        return None
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _format_upload_date(value: Any) -> str | None:
    if isinstance(value, str) and len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return None


def metadata_from_info(info: dict[str, Any]) -> VideoMetadata:
    view_count = info.get("view_count")
    return VideoMetadata(
        channel=info.get("channel") or info.get("uploader"),
        publish_date=_format_upload_date(info.get("upload_date")),
        duration=_format_duration(info.get("duration")),
        view_count=view_count if isinstance(view_count, int) else None,
        url=info.get("webpage_url"),
        thumbnail_url=info.get("thumbnail"),
    )


def parse_json3_captions(data: dict[str, Any]) -> str:
    lines: list[str] = []
    for event in data.get("events") or []:
        segments = event.get("segs") or []
        text = "".join(segment.get("utf8", "") for segment in segments).strip()
        if text:
            lines.append(text)
    return _join_caption_lines(lines)


def parse_vtt_captions(content: str) -> str:
    lines: list[str] = []
    in_note = False
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            in_note = False
            continue
        if in_note or "-->" in line or line.isdigit():
            continue
        # header and comment blocks run until the next blank line
        if line.startswith(("WEBVTT", "NOTE", "STYLE", "REGION")):
            in_note = True
            continue
        text = re.sub(r"<[^>]+>", "", line).strip()
        if text:
            lines.append(text)
    return _join_caption_lines(lines)


def _join_caption_lines(lines: Iterable[str]) -> str:
    # automatic captions repeat the previous line while scrolling
    unique: list[str] = []
    for line in lines:
        if unique and unique[-1] == line:
            continue
        unique.append(line)
    return " ".join(unique)


class YtDlpTranscriptProvider:
    """Fetch a YouTube transcript and video metadata with yt-dlp.

    The context may be a video URL or a bare video id.
    """

    CAPTION_FORMATS = ("json3", "vtt")

    def __init__(self, *, languages: Sequence[str] = ("en",), timeout: int = 30) -> None:
        self.languages = [language.lower() for language in languages] or ["en"]
        self.timeout = timeout

    def get_transcript(self, context: Any) -> Transcript:
        url = self._video_url(context)
        info = self._extract_info(url)

        track = self._select_track(info.get("subtitles") or {}) or self._select_track(
            info.get("automatic_captions") or {}
        )
        if track is None:
            raise NoTranscript()

        text = self._download_track(track)
        if not text.strip():
            raise NoTranscript()

        return Transcript(
            text=text,
            title=info.get("title") or "",
            metadata=metadata_from_info(info),
        )

    @staticmethod
    def _video_url(context: Any) -> str:
        value = str(context or "").strip()
        if _VIDEO_ID_PATTERN.match(value):
            return f"https://www.youtube.com/watch?v={value}"
        if not value:
            raise NoTranscript("No video to fetch a transcript for")
        return value

    def _extract_info(self, url: str) -> dict[str, Any]:
        options = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "socket_timeout": self.timeout,
        }
        try:
            with yt_dlp.YoutubeDL(options) as downloader:
                info = downloader.extract_info(url, download=False)
        except DownloadError as exc:
            logger.warning("yt-dlp could not read %s: %s", url, exc)
            raise NoTranscript("Could not read video information") from exc
        if not isinstance(info, dict):
            raise NoTranscript("Could not read video information")
        return info

    def _select_track(self, tracks: dict[str, list[dict[str, Any]]]) -> dict[str, Any] | None:
        for language in self.languages:
            for track_language, formats in tracks.items():
                normalized = track_language.lower()
                if normalized != language and not normalized.startswith(f"{language}-"):
                    continue
                for wanted in self.CAPTION_FORMATS:
                    for entry in formats or []:
                        if entry.get("ext") == wanted and entry.get("url"):
                            return entry
        return None

    def _download_track(self, track: dict[str, Any]) -> str:
        response = requests.get(track["url"], timeout=self.timeout)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise NoTranscript("Failed to download captions") from exc

        if track.get("ext") == "json3":
            try:
                return parse_json3_captions(response.json())
            except ValueError as exc:
                raise NoTranscript("Caption track is not valid JSON") from exc
        return parse_vtt_captions(response.text)


__all__ = [
    "CredentialSource",
    "EnvCredentialSource",
    "StaticCredentialSource",
    "StaticTranscriptProvider",
    "TranscriptProvider",
    "YtDlpTranscriptProvider",
    "extract_video_id",
    "fetch_transcript",
    "metadata_from_info",
    "parse_json3_captions",
    "parse_vtt_captions",
]
