from __future__ import annotations

import asyncio
from pathlib import Path

from dmcrm.services.history_service import HistoryImporter

from fake_backend import SELF_ID, FakeConnection, make_event, make_services


def _newest_first_page() -> list:
    return [
        make_event("103", minutes=3, content="third", author_id=SELF_ID),
        make_event("102", minutes=2, content="second"),
        make_event("101", minutes=1, content="first"),
    ]


def test_backfill_stores_page_in_chronological_order(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        connection = FakeConnection("a1", "tok", history={"500": _newest_first_page()})
        summary = await services.importer.backfill("a1", connection)
        return services, summary

    services, summary = asyncio.run(scenario())

    assert summary.channels == 1
    assert summary.stored == 3
    assert [row["content"] for row in services.messages.rows()] == ["first", "second", "third"]
    assert [r.content for r in services.messages.query("a1")] == ["first", "second", "third"]
    assert services.messages.query("a1")[-1].direction == "sent"


def test_backfill_skips_empty_and_system_messages(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        page = [
            make_event("104", minutes=4, content=""),
            make_event("103", minutes=3, content="joined the call", is_system=True),
            make_event("102", minutes=2, content="   "),
            make_event("101", minutes=1, content="real"),
        ]
        connection = FakeConnection("a1", "tok", history={"500": page})
        summary = await services.importer.backfill("a1", connection)
        return services, summary

    services, summary = asyncio.run(scenario())

    assert summary.stored == 1
    assert summary.ignored == 3
    assert [r.content for r in services.messages.query("a1")] == ["real"]


def test_rerunning_backfill_writes_nothing_new(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        connection = FakeConnection("a1", "tok", history={"500": _newest_first_page()})
        await services.importer.backfill("a1", connection)
        again = await services.importer.backfill("a1", connection)
        return services, again

    services, again = asyncio.run(scenario())

    assert again.stored == 0
    assert again.skipped == 3
    assert len(services.messages.rows()) == 3


def test_one_failing_channel_does_not_abort_the_rest(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        connection = FakeConnection(
            "a1",
            "tok",
            history={
                "500": [make_event("101", channel_id="500")],
                "501": [make_event("201", channel_id="501", peer_id="501", author_id="501")],
                "502": [make_event("301", channel_id="502", peer_id="502", author_id="502")],
            },
            failing_channels={"501"},
        )
        summary = await services.importer.backfill("a1", connection)
        return services, summary

    services, summary = asyncio.run(scenario())

    assert summary.failed_channels == ["501"]
    assert summary.stored == 2
    assert {r.remote_message_id for r in services.messages.query("a1")} == {"101", "301"}
    assert any(row["event"] == "history.channel_failed" for row in services.store.data["logs"])


def test_channel_listing_failure_returns_empty_summary(tmp_path: Path) -> None:
    class BrokenListing(FakeConnection):
        async def list_direct_channels(self):
            raise RuntimeError("gateway hiccup")

    async def scenario():
        services = await make_services(tmp_path)
        summary = await services.importer.backfill("a1", BrokenListing("a1", "tok"))
        return summary

    summary = asyncio.run(scenario())
    assert summary.channels == 0
    assert summary.stored == 0


def test_page_size_bounds_the_fetch(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        importer = HistoryImporter(services.recorder, services.logger, page_size=2)
        connection = FakeConnection("a1", "tok", history={"500": _newest_first_page()})
        summary = await importer.backfill("a1", connection)
        return services, summary

    services, summary = asyncio.run(scenario())

    assert summary.stored == 2
    assert [r.content for r in services.messages.query("a1")] == ["second", "third"]


def test_same_timestamp_messages_keep_oldest_first_order(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        page = [
            make_event("203", minutes=1, content="c"),
            make_event("202", minutes=1, content="b"),
            make_event("201", minutes=1, content="a"),
        ]
        connection = FakeConnection("a1", "tok", history={"500": page})
        await services.importer.backfill("a1", connection)
        return services

    services = asyncio.run(scenario())
    assert [row["content"] for row in services.messages.rows()] == ["a", "b", "c"]
