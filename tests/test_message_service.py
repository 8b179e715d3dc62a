from __future__ import annotations

import asyncio
from pathlib import Path

from dmcrm.models import RECEIVED, SENT

from fake_backend import SELF_ID, make_event, make_services


def test_query_orders_by_timestamp_and_filters_peer(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        await services.recorder.persist(make_event("m3", minutes=3, content="third"))
        await services.recorder.persist(make_event("m1", minutes=1, content="first"))
        await services.recorder.persist(make_event("x1", minutes=2, peer_id="222", author_id="222", content="other"))
        return services

    services = asyncio.run(scenario())

    assert [r.content for r in services.messages.query("a1")] == ["first", "other", "third"]
    assert [r.content for r in services.messages.query("a1", peer_id="111")] == ["first", "third"]
    assert services.messages.query("nobody") == []


def test_conversations_report_latest_message_per_peer(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        await services.recorder.persist(make_event("m1", minutes=1, content="hello"))
        await services.recorder.persist(make_event("m2", minutes=5, author_id=SELF_ID, content="bye"))
        await services.recorder.persist(make_event("x1", minutes=3, peer_id="222", author_id="222", content="yo"))
        return services

    services = asyncio.run(scenario())
    summaries = services.messages.conversations("a1")

    assert [s.peer_id for s in summaries] == ["111", "222"]
    assert summaries[0].last_message == "bye"
    assert summaries[0].direction == SENT
    assert summaries[1].last_message == "yo"
    assert summaries[1].direction == RECEIVED


def test_deleting_account_cascades_to_messages(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        account = services.accounts.create(credential="tok", user_id="900", display_name="me")
        await services.recorder.persist(make_event("m1", account_id=account.id))
        await services.recorder.persist(make_event("m1", account_id="other"))
        deleted = services.accounts.delete(account.id)
        return services, account, deleted

    services, account, deleted = asyncio.run(scenario())

    assert deleted is True
    assert services.messages.query(account.id) == []
    assert services.messages.exists(account.id, "m1") is False
    assert len(services.messages.query("other")) == 1
