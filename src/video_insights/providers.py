from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import UnknownProvider

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MAX_TOKENS = 2048
ANTHROPIC_VERSION = "2023-06-01"


class Dialect(str, Enum):
    """Wire framing and event shape spoken by a provider's streaming endpoint."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    display_name: str
    endpoint: str
    model: str
    dialect: Dialect


@dataclass(frozen=True)
class ProviderRequest:
    url: str
    headers: dict[str, str]
    payload: dict[str, Any]
    params: dict[str, str] | None = None


PROVIDERS: dict[str, ProviderDescriptor] = {
    "anthropic": ProviderDescriptor(
        id="anthropic",
        display_name="Anthropic",
        endpoint="https://api.anthropic.com/v1/messages",
        model="claude-sonnet-4-5-20250929",
        dialect=Dialect.ANTHROPIC,
    ),
    "openai": ProviderDescriptor(
        id="openai",
        display_name="OpenAI",
        endpoint="https://api.openai.com/v1/chat/completions",
        model="gpt-4o-mini",
        dialect=Dialect.OPENAI,
    ),
    "google": ProviderDescriptor(
        id="google",
        display_name="Google",
        endpoint="https://generativelanguage.googleapis.com/v1beta/models",
        model="gemini-2.0-flash",
        dialect=Dialect.GOOGLE,
    ),
}


def available_providers() -> list[str]:
    return list(PROVIDERS)


def get_provider(provider_id: str | None) -> ProviderDescriptor:
    key = (provider_id or "").strip().lower()
    try:
        return PROVIDERS[key]
    except KeyError:
        raise UnknownProvider(f"Unknown provider: {provider_id}") from None


def build_request(
    descriptor: ProviderDescriptor,
    prompt: str,
    secret: str,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> ProviderRequest:
    """Build the streaming POST for ``descriptor``'s dialect."""

    if descriptor.dialect is Dialect.ANTHROPIC:
        return ProviderRequest(
            url=descriptor.endpoint,
            headers={
                "x-api-key": secret,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            payload={
                "model": descriptor.model,
                "max_tokens": max_tokens,
                "stream": True,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

    if descriptor.dialect is Dialect.OPENAI:
        return ProviderRequest(
            url=descriptor.endpoint,
            headers={
                "Authorization": f"Bearer {secret}",
                "Content-Type": "application/json",
            },
            payload={
                "model": descriptor.model,
                "max_tokens": max_tokens,
                "stream": True,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

    if descriptor.dialect is Dialect.GOOGLE:
        return ProviderRequest(
            url=f"{descriptor.endpoint.rstrip('/')}/{descriptor.model}:streamGenerateContent",
            headers={"Content-Type": "application/json"},
            payload={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"maxOutputTokens": max_tokens},
            },
            params={"alt": "sse", "key": secret},
        )

    raise UnknownProvider(f"Unsupported dialect: {descriptor.dialect}")


__all__ = [
    "DEFAULT_PROVIDER",
    "Dialect",
    "PROVIDERS",
    "ProviderDescriptor",
    "ProviderRequest",
    "available_providers",
    "build_request",
    "get_provider",
]
