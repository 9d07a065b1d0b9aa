from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from avatar_pipeline.clients.base import (
    PermanentProviderError,
    ProviderAdapter,
    ProviderUnavailable,
    RenderStatus,
    TransientProviderError,
    provider_error_from_http,
)

SUCCESS_STATUSES = {"completed", "succeed", "success"}
FAILURE_STATUSES = {"failed", "error"}


class HeyGenClient(ProviderAdapter):
    """Photo-avatar provider: asset upload, avatar groups, talking-head renders."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.heygen.com",
        upload_url: str = "https://upload.heygen.com",
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport

    def enabled(self) -> bool:
        return bool(self.api_key)

    def upload_asset(self, data: bytes, content_type: str = "image/jpeg") -> str:
        if not data:
            raise PermanentProviderError("photo asset is empty")
        body = self._request(
            "POST",
            f"{self.upload_url}/v1/asset",
            content=data,
            headers={"Content-Type": content_type},
        )
        payload = body.get("data") or {}
        handle = payload.get("image_key") or payload.get("id")
        if not handle:
            raise PermanentProviderError(f"HeyGen asset upload returned no image key: {body}")
        self.log.info("heygen asset uploaded", extra={"asset_handle": handle, "content_length": len(data)})
        return handle

    def create_likeness_group(self, asset_handle: str, display_name: str) -> str:
        body = self._request(
            "POST",
            f"{self.base_url}/v2/photo_avatar/avatar_group/create",
            json={"name": display_name or "DOP Avatar", "image_key": asset_handle},
        )
        payload = body.get("data") or {}
        group_id = payload.get("group_id") or payload.get("id")
        if not group_id:
            raise PermanentProviderError(f"HeyGen avatar group creation returned no group id: {body}")
        self.log.info("heygen avatar group created", extra={"group_handle": group_id})
        return group_id

    def resolve_renderable_id(self, group_handle: str) -> str:
        body = self._request("GET", f"{self.base_url}/v2/avatar_group/{group_handle}/avatars")
        payload = body.get("data") or {}
        looks = payload.get("avatar_list") or payload.get("avatars") or []
        for look in looks:
            status = str(look.get("status") or "").lower()
            if status in FAILURE_STATUSES:
                raise PermanentProviderError(f"HeyGen avatar look {look.get('id')} failed")
            if look.get("id") and status in ("", "completed", "ready", "active"):
                return look["id"]
        # The group exists but its look is still being generated.
        raise TransientProviderError(f"HeyGen avatar group {group_handle} has no usable look yet")

    def submit_render(self, renderable_id: str, voice_handle: str | None, script_text: str) -> str | None:
        payload = {
            "video_inputs": [
                {
                    "character": {
                        "type": "talking_photo",
                        "talking_photo_id": renderable_id,
                    },
                    "voice": {
                        "type": "text",
                        "input_text": script_text,
                        "voice_id": voice_handle or "default",
                    },
                }
            ],
            "dimension": {"width": 720, "height": 1280},
        }
        body = self._request("POST", f"{self.base_url}/v2/video/generate", json=payload)
        video_id = (body.get("data") or {}).get("video_id")
        if not video_id:
            self.log.warning("heygen render submission returned no video id", extra={"payload": body})
            return None
        self.log.info("heygen render submitted", extra={"job_id": video_id})
        return video_id

    def poll_render(self, job_id: str) -> RenderStatus:
        body = self._request(
            "GET",
            f"{self.base_url}/v1/video_status.get",
            params={"video_id": job_id},
        )
        payload = body.get("data") or body
        status = str(payload.get("status") or "").lower()
        video_url = payload.get("video_url")
        if status in SUCCESS_STATUSES and video_url:
            return RenderStatus(
                terminal=True,
                succeeded=True,
                url=video_url,
                thumbnail_url=payload.get("thumbnail_url"),
                duration_seconds=_parse_duration(payload.get("duration")),
            )
        if status in FAILURE_STATUSES:
            error = payload.get("error") or {}
            reason = error.get("message") if isinstance(error, dict) else str(error)
            return RenderStatus(terminal=True, succeeded=False, reason=reason or "render failed")
        return RenderStatus(terminal=False)

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if not self.enabled():
            raise ProviderUnavailable("HeyGen client is not configured")
        headers = {"X-Api-Key": self.api_key, "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                error = provider_error_from_http("HeyGen", exc)
                self.log.error(
                    "heygen request failed",
                    extra={"method": method, "url": url, "error": str(error)},
                )
                raise error from exc
            try:
                return response.json()
            except ValueError as exc:
                raise TransientProviderError(f"HeyGen returned non-JSON response from {url}") from exc


def _parse_duration(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
