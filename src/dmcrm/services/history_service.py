from __future__ import annotations

from dataclasses import dataclass, field

from dmcrm.backend.base import BackendConnection
from dmcrm.models import Skipped
from dmcrm.services.logger_service import LoggerService
from dmcrm.services.recorder_service import MessageRecorder

DEFAULT_PAGE_SIZE = 50


@dataclass
class ImportSummary:
    channels: int = 0
    stored: int = 0
    skipped: int = 0
    ignored: int = 0
    failed_channels: list[str] = field(default_factory=list)
    failed_messages: int = 0


class HistoryImporter:
    """Backfills the latest page of every DM channel after a session comes up.

    Every message goes through the recorder, so re-running the import after a
    crash stores nothing twice.
    """

    def __init__(self, recorder: MessageRecorder, logger: LoggerService, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.recorder = recorder
        self.logger = logger
        self.page_size = max(1, int(page_size))

    async def backfill(self, account_id: str, connection: BackendConnection) -> ImportSummary:
        summary = ImportSummary()
        try:
            channels = await connection.list_direct_channels()
        except Exception as exc:  # noqa: BLE001
            self.logger.log("history.list_failed", account_id=account_id, error=str(exc)[:200])
            return summary
        summary.channels = len(channels)
        self.logger.log("history.started", account_id=account_id, channels=len(channels))

        for channel in channels:
            try:
                page = await connection.fetch_history(channel, self.page_size)
            except Exception as exc:  # noqa: BLE001
                summary.failed_channels.append(channel.id)
                self.logger.log(
                    "history.channel_failed",
                    account_id=account_id,
                    channel_id=channel.id,
                    error=str(exc)[:200],
                )
                continue
            # pages arrive newest-first; store in real chronological order
            ordered = sorted(reversed(page), key=lambda event: event.created_at)
            for event in ordered:
                if event.is_system or not event.content.strip():
                    summary.ignored += 1
                    continue
                try:
                    outcome = await self.recorder.persist(event)
                except Exception:  # noqa: BLE001
                    summary.failed_messages += 1
                    continue
                if isinstance(outcome, Skipped):
                    summary.skipped += 1
                else:
                    summary.stored += 1

        self.logger.log(
            "history.finished",
            account_id=account_id,
            channels=summary.channels,
            stored=summary.stored,
            skipped=summary.skipped,
            failed_channels=len(summary.failed_channels),
        )
        return summary
