from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class ProviderError(Exception):
    """Base class for failures reported by an external provider."""


class TransientProviderError(ProviderError):
    """Network failure, rate limit or 5xx. The step may succeed on a later attempt."""


class PermanentProviderError(ProviderError):
    """Explicit rejection by the provider. Retrying the same request will not help."""


class ProviderUnavailable(ProviderError):
    """Provider credentials are not configured."""


@dataclass
class RenderStatus:
    terminal: bool
    succeeded: bool = False
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    reason: Optional[str] = None


class ProviderAdapter:
    """Likeness provider operations driven by the pipeline.

    Every call is billed; the pipeline invokes a step only while its result is absent from the record.
    """

    def enabled(self) -> bool: ...  # pragma: no cover

    def upload_asset(self, data: bytes, content_type: str = "image/jpeg") -> str: ...  # pragma: no cover

    def create_likeness_group(self, asset_handle: str, display_name: str) -> str: ...  # pragma: no cover

    def resolve_renderable_id(self, group_handle: str) -> str: ...  # pragma: no cover

    def submit_render(
        self, renderable_id: str, voice_handle: str | None, script_text: str
    ) -> str | None: ...  # pragma: no cover

    def poll_render(self, job_id: str) -> RenderStatus: ...  # pragma: no cover


def provider_error_from_http(provider: str, exc: httpx.HTTPError) -> ProviderError:
    """Map an httpx failure onto the transient/permanent split."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        try:
            body = exc.response.text[:600]
        except Exception:  # pragma: no cover
            body = "<binary>"
        message = f"{provider} HTTP {status}: {body}"
        if status in (401, 403):
            return ProviderUnavailable(message)
        if status in RETRYABLE_STATUS_CODES:
            return TransientProviderError(message)
        return PermanentProviderError(message)
    return TransientProviderError(f"{provider} request failed: {exc}")
