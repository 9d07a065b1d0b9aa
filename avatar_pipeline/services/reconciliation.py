from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from avatar_pipeline.events.notifier import ReadyNotifier
from avatar_pipeline.models.domain import PersonaRecord, PersonaStatus, utcnow
from avatar_pipeline.storage.repository import PersonaRepository

_VOLATILE_FIELDS = ("updatedAt",)


@dataclass
class CommitResult:
    written: bool
    notified: bool = False


def snapshot(record: PersonaRecord) -> dict[str, Any]:
    """Comparable form of a record, ignoring bookkeeping timestamps."""
    payload = record.to_payload()
    for field in _VOLATILE_FIELDS:
        payload.pop(field, None)
    return payload


class ReconciliationWriter:
    """Persists mutated records and fires the ready notification on the transition into ``ready``.

    The notification is sent before the write. A crash between the two repeats the
    notification on the next pass, while a normal pass never sends it twice because the
    stored status is already ``ready``.
    """

    def __init__(
        self,
        repo: PersonaRepository,
        notifier: ReadyNotifier,
        now: Callable[[], Any] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self.notifier = notifier
        self._now = now
        self.log = logger or logging.getLogger(__name__)

    def commit(
        self,
        key: str,
        record: PersonaRecord,
        baseline: dict[str, Any],
        previous_status: PersonaStatus,
    ) -> CommitResult:
        notified = False
        if record.status == PersonaStatus.READY and previous_status != PersonaStatus.READY:
            notified = self._notify(record)
            if notified:
                record.notified_at = self._now()
        if snapshot(record) == baseline:
            return CommitResult(written=False, notified=notified)
        self.repo.save(key, record)
        if record.status != previous_status:
            self.log.info(
                "persona status changed",
                extra={
                    "persona_id": record.id,
                    "from_status": previous_status.value,
                    "to_status": record.status.value,
                },
            )
        return CommitResult(written=True, notified=notified)

    def _notify(self, record: PersonaRecord) -> bool:
        try:
            self.notifier.notify_ready(record.id, record.contact_address, record.display_name)
        except Exception:
            self.log.warning("ready notification failed", extra={"persona_id": record.id}, exc_info=True)
            return False
        return True
