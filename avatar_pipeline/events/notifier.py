from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

try:  # pragma: no cover - optional dependency
    from kafka import KafkaProducer
except ImportError:  # pragma: no cover - fallback when kafka-python absent
    KafkaProducer = None  # type: ignore


class ReadyNotifier:
    def notify_ready(self, entity_id: str, contact_address: str | None, display_name: str | None) -> None: ...  # pragma: no cover

    def close(self) -> None:
        return None


class LoggingNotifier(ReadyNotifier):
    """Records the ready event in the service log together with the persona chat link."""

    def __init__(self, public_url: str, logger: logging.Logger | None = None) -> None:
        self.public_url = public_url.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)

    def chat_url(self, entity_id: str) -> str:
        return f"{self.public_url}/chat.html?id={entity_id}"

    def notify_ready(self, entity_id: str, contact_address: str | None, display_name: str | None) -> None:
        self._logger.info(
            "persona ready",
            extra={
                "persona_id": entity_id,
                "contact_address": contact_address or "user",
                "display_name": display_name or "AI Doppelganger",
                "chat_url": self.chat_url(entity_id),
            },
        )


class KafkaReadyNotifier(ReadyNotifier):
    """Publishes ready events to Kafka so the mailer can pick them up."""

    def __init__(self, bootstrap_servers: str, topic: str, public_url: str, logger: logging.Logger | None = None) -> None:
        if KafkaProducer is None:
            raise RuntimeError("kafka-python is not installed")
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._public_url = public_url.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            linger_ms=5,
        )

    def notify_ready(self, entity_id: str, contact_address: str | None, display_name: str | None) -> None:
        payload: dict[str, Any] = {
            "event": "persona.ready",
            "personaId": entity_id,
            "contactAddress": contact_address,
            "displayName": display_name,
            "chatUrl": f"{self._public_url}/chat.html?id={entity_id}",
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        self._producer.send(self._topic, payload)

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("ready notifier close failed", exc_info=True)
