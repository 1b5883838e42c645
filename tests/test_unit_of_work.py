# ==============================================================================
# UNIT OF WORK TESTS
# ==============================================================================
# Commit / rollback / release protocol, independent of any backend
# ==============================================================================

import asyncio

import pytest

from polystore.core.exceptions import TransactionError, TransactionRollbackError
from polystore.database.unit_of_work import UnitOfWork


class FakeTransaction:
    """Records the calls a unit of work makes on a native transaction."""

    def __init__(self, fail_commit=False, fail_rollback=False, fail_release=False):
        self.calls = []
        self.fail_commit = fail_commit
        self.fail_rollback = fail_rollback
        self.fail_release = fail_release

    async def commit(self):
        self.calls.append("commit")
        if self.fail_commit:
            raise RuntimeError("commit refused")

    async def rollback(self):
        self.calls.append("rollback")
        if self.fail_rollback:
            raise RuntimeError("rollback refused")

    async def release(self):
        self.calls.append("release")
        if self.fail_release:
            raise RuntimeError("release refused")

    def unit_of_work(self):
        return UnitOfWork("fake", "handle", self.commit, self.rollback, self.release)


@pytest.mark.asyncio
class TestUnitOfWork:
    """Tests for UnitOfWork.run."""

    async def test_success_commits_and_returns_value(self):
        tx = FakeTransaction()

        async def callback(handle):
            assert handle == "handle"
            return 42

        assert await tx.unit_of_work().run(callback) == 42
        assert tx.calls == ["commit", "release"]

    async def test_error_rolls_back_and_chains_cause(self):
        tx = FakeTransaction()
        original = ValueError("boom")

        async def callback(handle):
            raise original

        with pytest.raises(TransactionError) as exc_info:
            await tx.unit_of_work().run(callback)

        assert exc_info.value.__cause__ is original
        assert tx.calls == ["rollback", "release"]

    async def test_transaction_error_is_not_rewrapped(self):
        tx = FakeTransaction()
        original = TransactionError("conflict")

        async def callback(handle):
            raise original

        with pytest.raises(TransactionError) as exc_info:
            await tx.unit_of_work().run(callback)
        assert exc_info.value is original

    async def test_failed_rollback_reports_both_errors(self):
        tx = FakeTransaction(fail_rollback=True)

        async def callback(handle):
            raise ValueError("boom")

        with pytest.raises(TransactionRollbackError) as exc_info:
            await tx.unit_of_work().run(callback)

        assert isinstance(exc_info.value.original_error, ValueError)
        assert str(exc_info.value.rollback_error) == "rollback refused"
        assert tx.calls[-1] == "release"

    async def test_failed_commit_rolls_back(self):
        tx = FakeTransaction(fail_commit=True)

        async def callback(handle):
            return "unused"

        with pytest.raises(TransactionError):
            await tx.unit_of_work().run(callback)
        assert tx.calls == ["commit", "rollback", "release"]

    async def test_cancellation_rolls_back_and_propagates(self):
        tx = FakeTransaction()

        async def callback(handle):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await tx.unit_of_work().run(callback)
        assert tx.calls == ["rollback", "release"]

    async def test_is_active_only_inside(self):
        uow = FakeTransaction().unit_of_work()
        seen = []

        async def callback(handle):
            seen.append(uow.is_active)

        await uow.run(callback)
        assert seen == [True]
        assert uow.is_active is False

    async def test_failed_release_keeps_original_error(self, caplog):
        tx = FakeTransaction(fail_release=True)
        original = ValueError("boom")

        async def callback(handle):
            raise original

        with pytest.raises(TransactionError) as exc_info:
            await tx.unit_of_work().run(callback)

        assert exc_info.value.__cause__ is original
        assert tx.calls == ["rollback", "release"]
        assert "release failed: release refused" in caplog.text

    async def test_failed_release_after_commit_returns_result(self, caplog):
        tx = FakeTransaction(fail_release=True)

        async def callback(handle):
            return "done"

        assert await tx.unit_of_work().run(callback) == "done"
        assert tx.calls == ["commit", "release"]
        assert "release failed" in caplog.text
