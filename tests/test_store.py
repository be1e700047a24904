"""
SqlAlchemyStore statement tests: a recording session captures what would be
sent to Postgres and the statements are compiled with the postgresql dialect.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from connectors.errors import SyncRunFinalized
from database.models import SyncRunStatus
from database.store import SqlAlchemyStore


class RecordingSession:
    def __init__(self, row=None, scalar=None):
        self.statements = []
        self._row = row
        self._scalar = scalar
        self.commit = AsyncMock()
        self.rollback = AsyncMock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        self.statements.append(stmt)
        result = MagicMock()
        result.first.return_value = self._row
        result.scalar_one_or_none.return_value = self._scalar
        return result


def _compiled(stmt):
    return stmt.compile(dialect=postgresql.dialect())


def _store(session):
    return SqlAlchemyStore(lambda: session)


class TestLeaseStatements:
    @pytest.mark.asyncio
    async def test_acquire_takes_over_only_lapsed_or_own_lease(self):
        session = RecordingSession(row=("worker-a",))
        assert await _store(session).acquire_lease(uuid.uuid4(), "worker-a", 60) is True

        sql = str(_compiled(session.statements[0]))
        assert sql.startswith("INSERT INTO sync_leases")
        assert "ON CONFLICT (connection_id) DO UPDATE" in sql
        assert "WHERE sync_leases.expires_at < " in sql
        assert "OR sync_leases.holder = " in sql
        assert "RETURNING sync_leases.holder" in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_acquire_refused_when_no_row_returned(self):
        session = RecordingSession(row=None)
        assert await _store(session).acquire_lease(uuid.uuid4(), "worker-b", 60) is False

    @pytest.mark.asyncio
    async def test_renew_is_guarded_by_holder(self):
        session = RecordingSession(row=("worker-a",))
        assert await _store(session).renew_lease(uuid.uuid4(), "worker-a", 60) is True

        compiled = _compiled(session.statements[0])
        sql = str(compiled)
        assert sql.startswith("UPDATE sync_leases SET expires_at=")
        assert "WHERE sync_leases.connection_id = " in sql
        assert "AND sync_leases.holder = " in sql
        assert "RETURNING sync_leases.holder" in sql
        assert "worker-a" in compiled.params.values()

    @pytest.mark.asyncio
    async def test_renew_reports_lost_lease(self):
        session = RecordingSession(row=None)
        assert await _store(session).renew_lease(uuid.uuid4(), "worker-a", 60) is False

    @pytest.mark.asyncio
    async def test_release_deletes_only_own_lease(self):
        session = RecordingSession()
        await _store(session).release_lease(uuid.uuid4(), "worker-a")

        sql = str(_compiled(session.statements[0]))
        assert sql.startswith("DELETE FROM sync_leases")
        assert "sync_leases.holder = " in sql


class TestSyncRunStatements:
    @pytest.mark.asyncio
    async def test_finish_only_updates_open_runs(self):
        finished = object()
        session = RecordingSession(scalar=finished)
        run = await _store(session).finish_sync_run(
            uuid.uuid4(), status=SyncRunStatus.SUCCEEDED, stats={"listed": 1}
        )

        assert run is finished
        compiled = _compiled(session.statements[0])
        sql = str(compiled)
        assert sql.startswith("UPDATE sync_runs SET")
        assert "sync_runs.status IN " in sql
        assert "RETURNING" in sql
        assert any(
            isinstance(value, (list, tuple)) and set(value) == {"queued", "running"}
            for value in compiled.params.values()
        )
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_finishing_a_closed_run_raises(self):
        session = RecordingSession(scalar=None)
        with pytest.raises(SyncRunFinalized):
            await _store(session).finish_sync_run(
                uuid.uuid4(), status=SyncRunStatus.FAILED, stats={}, error="late"
            )
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()


class TestTokenStatements:
    @pytest.mark.asyncio
    async def test_update_keeps_refresh_token_when_not_rotated(self, vault):
        session = RecordingSession()
        await _store(session).update_tokens(
            uuid.uuid4(), access_token=vault.encrypt("new"), refresh_token=None, expires_at=None
        )

        sql = str(_compiled(session.statements[0]))
        assert sql.startswith("UPDATE connections SET")
        assert "access_token_enc=" in sql
        assert "refresh_token_enc" not in sql
        assert "WHERE connections.id = " in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_stores_rotated_refresh_token(self, vault):
        session = RecordingSession()
        await _store(session).update_tokens(
            uuid.uuid4(), access_token=vault.encrypt("new"), refresh_token=vault.encrypt("r2"), expires_at=None
        )

        assert "refresh_token_enc=" in str(_compiled(session.statements[0]))
