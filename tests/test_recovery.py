import pytest
from datetime import timedelta

from models import TransactionState


async def make_transaction(coordinator, state, source="acc_001", destination="acc_002", amount=100):
    """Drive a fresh transaction forward until it reaches ``state``."""
    transaction = await coordinator.create_transaction(source, destination, amount)
    if state == TransactionState.initial:
        return transaction
    await coordinator.reserve(transaction.id)
    if state == TransactionState.pending:
        return transaction
    if state == TransactionState.canceled:
        await coordinator.cancel(transaction.id)
        return transaction
    await coordinator.apply(transaction.id)
    if state == TransactionState.done:
        await coordinator.finalize(transaction.id)
    return transaction


class TestRecoverySweep:
    """Test the stuck-transaction recovery sweep."""

    @pytest.mark.asyncio
    async def test_recovers_stale_pending_and_applied(self, service, coordinator, account_store, transaction_store, clock):
        pending = await make_transaction(coordinator, TransactionState.pending)
        applied = await make_transaction(coordinator, TransactionState.applied, amount=250)
        clock.advance(minutes=10)

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 2
        assert report.failed == 0
        assert {d.transactionId for d in report.details} == {pending.id, applied.id}
        assert all(d.success and d.error is None for d in report.details)
        for transaction in (pending, applied):
            assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceled
        assert (await account_store.find_by_id("acc_001")).balance == 2500
        assert (await account_store.find_by_id("acc_002")).balance == 1000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [
        TransactionState.initial,
        TransactionState.done,
        TransactionState.canceled,
    ])
    async def test_ignores_other_states_regardless_of_age(self, service, coordinator, transaction_store, clock, state):
        transaction = await make_transaction(coordinator, state)
        clock.advance(days=30)

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 0
        assert report.details == []
        assert (await transaction_store.find_by_id(transaction.id)).state == state

    @pytest.mark.asyncio
    async def test_only_strictly_older_than_timeout(self, service, coordinator, transaction_store, clock):
        at_cutoff = await make_transaction(coordinator, TransactionState.pending)
        clock.advance(minutes=1)
        fresh = await make_transaction(coordinator, TransactionState.pending)
        clock.advance(minutes=4)

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 0
        assert (await transaction_store.find_by_id(at_cutoff.id)).state == TransactionState.pending

        clock.advance(seconds=1)
        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert [d.transactionId for d in report.details] == [at_cutoff.id]
        assert (await transaction_store.find_by_id(fresh.id)).state == TransactionState.pending

    @pytest.mark.asyncio
    async def test_default_timeout_from_settings(self, service, coordinator, clock, settings):
        await make_transaction(coordinator, TransactionState.pending)
        clock.advance(minutes=settings.recovery_timeout_minutes - 1)

        assert (await service.recover_stuck_transactions()).recovered == 0

        clock.advance(minutes=2)
        assert (await service.recover_stuck_transactions()).recovered == 1

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, service, coordinator, account_store, transaction_store, clock):
        broken = await make_transaction(coordinator, TransactionState.applied)
        healthy = await make_transaction(coordinator, TransactionState.applied, amount=300)
        clock.advance(minutes=10)
        account_store.fail_when = lambda account_id, condition, update: (
            update.removePendingTransactionId == broken.id
        )

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 1
        assert report.failed == 1
        failure = next(d for d in report.details if not d.success)
        assert failure.transactionId == broken.id
        assert "account store unavailable" in failure.error
        assert failure.errorCode == "RuntimeError"
        assert (await transaction_store.find_by_id(healthy.id)).state == TransactionState.canceled
        assert (await transaction_store.find_by_id(broken.id)).state == TransactionState.canceling

    @pytest.mark.asyncio
    async def test_recovers_debit_without_credit(self, service, coordinator, account_store, transaction_store, clock):
        """Test the crash window where the source was debited but the state is still pending."""
        transaction = await make_transaction(coordinator, TransactionState.pending, amount=700)
        account_store.fail_when = lambda account_id, condition, update: (
            account_id == "acc_002" and update.markApplied is not None
        )
        with pytest.raises(RuntimeError):
            await coordinator.apply(transaction.id)
        account_store.fail_when = None
        assert (await account_store.find_by_id("acc_001")).balance == 1800
        clock.advance(minutes=10)

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 1
        assert (await account_store.find_by_id("acc_001")).balance == 2500
        assert (await account_store.find_by_id("acc_002")).balance == 1000
        assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceled

    @pytest.mark.asyncio
    async def test_canceling_left_by_failed_sweep_is_resumed_by_caller(
        self, service, coordinator, account_store, transaction_store, clock
    ):
        transaction = await make_transaction(coordinator, TransactionState.applied)
        clock.advance(minutes=10)
        transaction_store.fail_when = lambda transaction_id, expected, update: (
            update.state == TransactionState.canceled
        )
        report = await service.recover_stuck_transactions(timedelta(minutes=5))
        assert report.failed == 1

        transaction_store.fail_when = None
        await coordinator.cancel(transaction.id)

        assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceled
        assert (await account_store.find_by_id("acc_001")).balance == 2500

    @pytest.mark.asyncio
    async def test_sweep_finishes_interrupted_cancel(
        self, service, coordinator, account_store, transaction_store, clock
    ):
        """Test that a cancel which failed after flipping to canceling is completed by a later sweep."""
        transaction = await make_transaction(coordinator, TransactionState.applied)
        account_store.fail_when = lambda account_id, condition, update: (
            update.removePendingTransactionId == transaction.id
        )
        with pytest.raises(RuntimeError):
            await coordinator.cancel(transaction.id)
        account_store.fail_when = None
        assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceling
        assert (await account_store.find_by_id("acc_001")).balance == 2400

        clock.advance(days=1)
        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.recovered == 1
        assert [d.transactionId for d in report.details] == [transaction.id]
        assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceled
        assert (await account_store.find_by_id("acc_001")).balance == 2500
        assert (await account_store.find_by_id("acc_002")).balance == 1000
        assert (await account_store.find_by_id("acc_001")).pendingTransactionIds == set()
        assert (await account_store.find_by_id("acc_002")).pendingTransactionIds == set()

    @pytest.mark.asyncio
    async def test_fresh_canceling_is_left_alone(self, service, coordinator, account_store, transaction_store, clock):
        transaction = await make_transaction(coordinator, TransactionState.pending)
        transaction_store.fail_when = lambda transaction_id, expected, update: (
            update.state == TransactionState.canceled
        )
        with pytest.raises(RuntimeError):
            await coordinator.cancel(transaction.id)
        transaction_store.fail_when = None
        clock.advance(minutes=1)

        report = await service.recover_stuck_transactions(timedelta(minutes=5))

        assert report.details == []
        assert (await transaction_store.find_by_id(transaction.id)).state == TransactionState.canceling
