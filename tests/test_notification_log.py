import pytest

from rmsflow.db import NotificationLog, NotificationLogDB
from rmsflow.store import Store


@pytest.mark.asyncio
async def test_notification_log_lifecycle(tmp_path):
    store = Store(f"sqlite+aiosqlite:///{tmp_path / 'log.db'}")
    await store.init_schema()
    log = NotificationLogDB(store.engine)

    ok = await log.record("client_stock", {"branch_code": "001", "stock_code": 1155}, "insert", True)
    assert ok.entity == "client_stock"
    assert ok.attempted_at is not None

    await log.record("client_stock", {"branch_code": "002"}, "delete", False, "HTTP 503")

    entries = await log.list_entries()
    assert [e.change_kind for e in entries] == ["insert", "delete"]
    assert entries[0].entity_keys == {"branch_code": "001", "stock_code": 1155}

    failed = await log.list_entries(failed_only=True)
    assert len(failed) == 1
    assert failed[0].message == "HTTP 503"

    async with log.session() as session:
        row = await session.get(NotificationLog, failed[0].id)
        assert row.success is False
    await store.dispose()
