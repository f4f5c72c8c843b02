"""
Tests for the MongoDB client lifecycle.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from drip_engine.db import init as db_init


def _fake_client():
    client = MagicMock()
    client.admin.command = AsyncMock(return_value={"ok": 1})
    return client


@pytest.fixture
def motor_clients():
    clients = []

    def _connect(uri):
        client = _fake_client()
        clients.append(client)
        return client

    with patch.object(db_init, "AsyncIOMotorClient", side_effect=_connect), \
            patch.object(db_init, "init_beanie", AsyncMock()):
        yield clients
    db_init.close_db()


async def test_reinitialising_closes_previous_client(motor_clients):
    await db_init.init_db()
    await db_init.init_db()

    first, second = motor_clients
    first.close.assert_called_once()
    second.close.assert_not_called()


async def test_close_db_releases_client(motor_clients):
    await db_init.init_db()
    db_init.close_db()
    db_init.close_db()

    motor_clients[0].close.assert_called_once()
    with pytest.raises(RuntimeError):
        db_init.get_database()


async def test_failed_ping_client_is_closed_on_retry(motor_clients):
    with patch.object(db_init, "AsyncIOMotorClient") as connect:
        broken = _fake_client()
        broken.admin.command = AsyncMock(side_effect=ConnectionError("no route to host"))
        connect.return_value = broken
        with pytest.raises(ConnectionError):
            await db_init.init_db()

    await db_init.init_db()
    broken.close.assert_called_once()
