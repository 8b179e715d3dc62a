from __future__ import annotations

import asyncio
from pathlib import Path

from dmcrm.change_feed import ChangeFeedListener
from dmcrm.manager import SessionManager
from dmcrm.models import ACCOUNT_DELETE, ACCOUNT_INSERT, AccountChange

from fake_backend import FakeBackend, make_services


def _make_listener(services, backend: FakeBackend) -> tuple[ChangeFeedListener, SessionManager]:
    manager = SessionManager(
        accounts=services.accounts,
        recorder=services.recorder,
        importer=services.importer,
        logger=services.logger,
        connection_factory=backend,
    )
    return ChangeFeedListener(services.accounts, manager, services.logger), manager


def _events(services) -> list[str]:
    return [row["event"] for row in services.store.data["logs"]]


def test_insert_starts_a_session(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        backend = FakeBackend()
        listener, manager = _make_listener(services, backend)
        listener.start()
        account = services.accounts.create(credential="tok", user_id="900", display_name="me")
        await listener.drain()
        registered = manager.is_registered(account.id)
        await listener.stop()
        await manager.shutdown()
        return registered, listener

    registered, listener = asyncio.run(scenario())
    assert registered is True
    assert listener.running is False


def test_delete_stops_the_session(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        backend = FakeBackend()
        listener, manager = _make_listener(services, backend)
        listener.start()
        account = services.accounts.create(credential="tok", user_id="900", display_name="me")
        await listener.drain()
        services.accounts.delete(account.id)
        await listener.drain()
        await listener.stop()
        return backend, manager, account

    backend, manager, account = asyncio.run(scenario())
    assert manager.is_registered(account.id) is False
    assert backend.latest(account.id).closed == 1


def test_duplicate_insert_notification_keeps_one_session(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        backend = FakeBackend()
        listener, manager = _make_listener(services, backend)
        account = services.accounts.create(credential="tok", user_id="900", display_name="me")
        change = AccountChange(kind=ACCOUNT_INSERT, account_id=account.id, credential="tok")
        await listener.handle(change)
        await listener.handle(change)
        status = manager.status()
        await manager.shutdown()
        return backend, account, status

    backend, account, status = asyncio.run(scenario())
    assert status["totalBots"] == 1
    assert len(backend.connections[account.id]) == 1


def test_delete_for_unknown_account_is_harmless(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        listener, manager = _make_listener(services, FakeBackend())
        await listener.handle(AccountChange(kind=ACCOUNT_DELETE, account_id="ghost"))
        return services, manager

    services, manager = asyncio.run(scenario())
    assert manager.status()["totalBots"] == 0
    assert "change_feed.delete" in _events(services)


def test_insert_for_vanished_account_is_ignored(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        backend = FakeBackend()
        listener, manager = _make_listener(services, backend)
        await listener.handle(AccountChange(kind=ACCOUNT_INSERT, account_id="gone", credential="tok"))
        return services, backend

    services, backend = asyncio.run(scenario())
    assert backend.connections == {}
    assert "change_feed.insert_ignored" in _events(services)


def test_bad_token_does_not_stop_later_notifications(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        backend = FakeBackend()
        backend.bad_credentials.add("bad")
        listener, manager = _make_listener(services, backend)
        listener.start()
        broken = services.accounts.create(credential="bad", user_id="1", display_name="broken")
        working = services.accounts.create(credential="tok", user_id="2", display_name="working")
        await listener.drain()
        result = (manager.is_registered(broken.id), manager.is_registered(working.id), listener.running)
        await listener.stop()
        await manager.shutdown()
        return services, result

    services, (broken_registered, working_registered, running) = asyncio.run(scenario())

    assert broken_registered is False
    assert working_registered is True
    assert running is True
    assert "manager.add_failed" in _events(services)


def test_unknown_kind_is_logged(tmp_path: Path) -> None:
    async def scenario():
        services = await make_services(tmp_path)
        listener, _ = _make_listener(services, FakeBackend())
        await listener.handle(AccountChange(kind="update", account_id="a1"))
        return services

    services = asyncio.run(scenario())
    assert "change_feed.unknown_kind" in _events(services)
