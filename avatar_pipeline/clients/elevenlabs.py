from __future__ import annotations

import logging
from typing import Optional

import httpx

from avatar_pipeline.clients.base import (
    PermanentProviderError,
    ProviderUnavailable,
    TransientProviderError,
    provider_error_from_http,
)


class ElevenLabsClient:
    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.elevenlabs.io",
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport

    def enabled(self) -> bool:
        return bool(self.api_key)

    def clone_voice(self, sample: bytes, name: str | None, content_type: str = "audio/mpeg") -> str:
        if not self.enabled():
            raise ProviderUnavailable("ElevenLabs client is not configured")
        if not sample:
            raise PermanentProviderError("voice sample is empty")
        url = f"{self.base_url}/v1/voices/add"
        label = name or "DOP Voice"
        data = {"name": label, "description": f"Voice clone for {label}"}
        files = {"files": ("voice.mp3", sample, content_type)}
        headers = {"xi-api-key": self.api_key}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = client.post(url, data=data, files=files, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                error = provider_error_from_http("ElevenLabs", exc)
                self.log.error("elevenlabs voice clone failed", extra={"error": str(error)})
                raise error from exc
            try:
                voice_id = response.json().get("voice_id")
            except ValueError as exc:
                raise TransientProviderError("ElevenLabs returned non-JSON response") from exc
        if not voice_id:
            raise PermanentProviderError("ElevenLabs voice clone returned no voice_id")
        self.log.info(
            "elevenlabs voice clone created",
            extra={"voice_handle": voice_id, "content_length": len(sample)},
        )
        return voice_id
