from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import httpx

from avatar_pipeline.clients.base import provider_error_from_http


class OpenAIChatClient:
    """Builds the system prompt for the conversational persona."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com",
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport

    def enabled(self) -> bool:
        return bool(self.api_key)

    def build_persona_prompt(self, name: str | None, bio: str | None, topics: Iterable[str] = ()) -> str:
        topics = [topic for topic in topics if topic]
        if not self.enabled():
            return self.fallback_prompt(name, bio)

        url = f"{self.base_url}/v1/chat/completions"
        payload = {
            "model": self.model,
            "temperature": 0.5,
            "messages": [
                {
                    "role": "system",
                    "content": "You write system prompts for short, in-character conversational personas.",
                },
                {"role": "user", "content": self._build_request(name, bio, topics)},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                reason = str(provider_error_from_http("OpenAI", exc)) if isinstance(exc, httpx.HTTPError) else str(exc)
                self.log.warning(
                    "openai persona prompt failed, falling back",
                    extra={"error": reason, "model": self.model},
                )
                return self.fallback_prompt(name, bio)
        try:
            text = self._extract_text(body)
        except ValueError:
            self.log.warning(
                "openai response missing message content, falling back",
                extra={"payload": body, "model": self.model},
            )
            return self.fallback_prompt(name, bio)
        return text.strip()

    def fallback_prompt(self, name: str | None, bio: str | None) -> str:
        base_name = (name or "").strip() or "Assistant"
        prompt = f"You are {base_name}. "
        if bio and len(bio.strip()) > 10:
            prompt += f"Here's what people should know about you: {bio.strip()}. "
        prompt += (
            f"Stay in character as {base_name}. Be conversational, warm, and authentic. "
            "Keep responses brief and engaging (1-2 sentences, under 25 words when possible). "
            "Never break character or mention you're an AI."
        )
        return prompt

    def _extract_text(self, payload: dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if not choices:
            raise ValueError("OpenAI response missing choices")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not content or not content.strip():
            raise ValueError("OpenAI response missing message content")
        return content

    def _build_request(self, name: str | None, bio: str | None, topics: list[str]) -> str:
        lines = [
            f"Persona name: {name or 'Assistant'}.",
            f"Biography: {bio.strip() if bio else 'not provided'}.",
        ]
        if topics:
            lines.append("Questions the persona already answers on video: " + "; ".join(topics) + ".")
        lines.append(
            "Write a system prompt, in second person, that keeps the persona in character, "
            "answers in 1-2 sentences and never mentions being an AI. Respond with the prompt text only."
        )
        return " ".join(lines)
