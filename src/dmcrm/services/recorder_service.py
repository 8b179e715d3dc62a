from __future__ import annotations

from dmcrm.errors import DuplicateMessage
from dmcrm.models import MessageEvent, MessageRecord, Skipped
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.message_service import MessageStore


class MessageRecorder:
    """Turns message events into stored rows, at most once per remote id.

    Live gateway events, history backfill and the send path can all observe the
    same message, so every path goes through ``persist``. A store-level
    ``DuplicateMessage`` is reported as ``Skipped`` like the pre-check hit.
    """

    def __init__(self, messages: MessageStore, logger: LoggerService) -> None:
        self.messages = messages
        self.logger = logger

    async def persist(self, event: MessageEvent) -> MessageRecord | Skipped:
        if self.messages.exists(event.account_id, event.remote_message_id):
            return self._skipped(event)
        try:
            record = self.messages.insert(
                account_id=event.account_id,
                remote_message_id=event.remote_message_id,
                peer=event.peer,
                direction=event.direction,
                content=event.content,
                timestamp=event.created_at,
            )
        except DuplicateMessage:
            return self._skipped(event)
        except Exception as exc:
            self.logger.log(
                "recorder.insert_failed",
                account_id=event.account_id,
                remote_message_id=event.remote_message_id,
                error=str(exc)[:200],
            )
            raise
        self.logger.log(
            "recorder.stored",
            account_id=event.account_id,
            remote_message_id=event.remote_message_id,
            peer_id=event.peer.id,
            direction=record.direction,
            preview=event.content[:50],
        )
        return record

    def _skipped(self, event: MessageEvent) -> Skipped:
        self.logger.log(
            "recorder.skipped",
            account_id=event.account_id,
            remote_message_id=event.remote_message_id,
        )
        return Skipped(remote_message_id=event.remote_message_id)
