from typing import Optional, Tuple
import structlog
from pydantic import ValidationError as ModelValidationError

from config import Settings, get_settings
from errors import (
    InsufficientFunds,
    NotFound,
    RollbackFailure,
    StateConflict,
    TransferFailed,
    ValidationError,
)
from models import (
    AccountFilter,
    AccountUpdate,
    Transaction,
    TransactionState,
    TransactionUpdate,
    TransferRequest,
    TransferResult,
    assert_transition,
    predecessors_of,
)
from repositories import AccountStore, TransactionStore, call_store

logger = structlog.get_logger()


class TransferCoordinator:
    """Drives a transfer through reserve, apply, finalize and cancel.

    The stores only guarantee atomic updates of a single record, so every
    state change is a conditional update keyed on the expected predecessor
    state. A caller whose update matches nothing lost the race and gets
    ``StateConflict``; nothing here takes an in-process lock.

    Every balance change writes an applied marker on the same account record
    in the same update. Cancel reverses exactly the deltas those markers
    prove happened, rather than trusting the recorded state, so a crash
    between the debit and the ``applied`` flip cannot lose funds.
    """

    def __init__(
        self,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        settings: Optional[Settings] = None,
    ):
        self.account_store = account_store
        self.transaction_store = transaction_store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    @property
    def store_timeout(self) -> Optional[float]:
        return self.settings.store_call_timeout_seconds or None

    async def _load(self, transaction_id: str) -> Transaction:
        transaction = await call_store(
            self.transaction_store.find_by_id(transaction_id),
            self.store_timeout,
            "transactions.find_by_id",
        )
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        return transaction

    async def _advance(self, transaction_id: str, target: TransactionState) -> None:
        """Compare-and-swap the transaction into ``target`` from any legal predecessor."""
        matched = await call_store(
            self.transaction_store.conditional_update(
                transaction_id, predecessors_of(target), TransactionUpdate(state=target)
            ),
            self.store_timeout,
            f"transactions.conditional_update:{target.value}",
        )
        if matched:
            return

        # The update definitely missed; the read only improves the message.
        try:
            current = await self._load(transaction_id)
        except NotFound:
            raise
        except Exception as exc:
            raise StateConflict(
                f"Transaction {transaction_id} cannot move to {target.value}",
                transaction_id=transaction_id,
            ) from exc
        raise StateConflict(
            f"Transaction {transaction_id} is {current.state.value}; cannot move to {target.value}",
            transaction_id=transaction_id,
        )

    async def _update_account(
        self, account_id: str, condition: AccountFilter, update: AccountUpdate, operation: str
    ) -> int:
        return await call_store(
            self.account_store.conditional_update(account_id, condition, update),
            self.store_timeout,
            f"accounts.conditional_update:{operation}",
        )

    async def _release_accounts(self, transaction: Transaction) -> None:
        for account_id in (transaction.sourceAccountId, transaction.destinationAccountId):
            await self._update_account(
                account_id,
                AccountFilter(),
                AccountUpdate(removePendingTransactionId=transaction.id),
                "release",
            )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def reserve(self, transaction_id: str) -> Transaction:
        """initial -> pending, then add the transaction to both pending sets."""
        await self._advance(transaction_id, TransactionState.pending)
        transaction = await self._load(transaction_id)
        logger.debug("Transaction claimed", transaction_id=transaction_id, phase="reserve")
        await self._lock_accounts(transaction)
        return transaction

    async def _lock_accounts(self, transaction: Transaction) -> None:
        # Adding to a set is monotone, so this step is safe to repeat.
        for account_id in (transaction.sourceAccountId, transaction.destinationAccountId):
            matched = await self._update_account(
                account_id,
                AccountFilter(),
                AccountUpdate(addPendingTransactionId=transaction.id),
                "reserve",
            )
            if not matched:
                raise NotFound(f"Account {account_id} not found", transaction_id=transaction.id)

        # A cancel that ran between the claim and the adds above has already
        # released the accounts, so the ids just added would be orphaned.
        current = await self._load(transaction.id)
        if current.state in (TransactionState.canceling, TransactionState.canceled):
            await self._release_accounts(transaction)
            raise StateConflict(
                f"Transaction {transaction.id} was canceled while being reserved",
                transaction_id=transaction.id,
            )

        logger.info(
            "Transaction reserved",
            transaction_id=transaction.id,
            source_account_id=transaction.sourceAccountId,
            destination_account_id=transaction.destinationAccountId,
            amount=transaction.amount,
        )

    async def apply(self, transaction_id: str) -> Transaction:
        """pending -> applied: debit the source, credit the destination, flip state.

        The order is fixed. The credit is only attempted once the debit is
        confirmed and the state flips only after both balances moved.
        """
        transaction = await self._load(transaction_id)
        assert_transition(transaction.state, TransactionState.applied, transaction_id)

        # The funds check rides in the same filter as the debit, so two
        # concurrent transfers can never overdraw the source.
        debited = await self._update_account(
            transaction.sourceAccountId,
            AccountFilter(
                pendingTransactionId=transaction.id,
                notAppliedTransactionId=transaction.id,
                minBalance=transaction.amount,
            ),
            AccountUpdate(balanceDelta=-transaction.amount, markApplied=transaction.id),
            "debit",
        )
        if not debited:
            raise await self._explain_missed_debit(transaction)

        credited = await self._update_account(
            transaction.destinationAccountId,
            AccountFilter(
                pendingTransactionId=transaction.id,
                notAppliedTransactionId=transaction.id,
            ),
            AccountUpdate(balanceDelta=transaction.amount, markApplied=transaction.id),
            "credit",
        )
        if not credited:
            raise await self._explain_missed_credit(transaction)

        await self._advance(transaction_id, TransactionState.applied)
        logger.info(
            "Transaction applied",
            transaction_id=transaction_id,
            amount=transaction.amount,
        )
        return transaction

    async def _explain_missed_debit(self, transaction: Transaction) -> Exception:
        account = await call_store(
            self.account_store.find_by_id(transaction.sourceAccountId),
            self.store_timeout,
            "accounts.find_by_id",
        )
        if account is None:
            return NotFound(f"Account {transaction.sourceAccountId} not found", transaction_id=transaction.id)
        if transaction.id in account.appliedTransactionIds:
            return StateConflict(
                f"Transaction {transaction.id} was already debited", transaction_id=transaction.id
            )
        if transaction.id not in account.pendingTransactionIds:
            return StateConflict(
                f"Transaction {transaction.id} is not reserved on account {account.id}",
                transaction_id=transaction.id,
            )

        logger.warning(
            "Insufficient funds for debit",
            transaction_id=transaction.id,
            account_id=account.id,
            current_balance=account.balance,
            requested_amount=transaction.amount,
        )
        return InsufficientFunds(
            f"Insufficient balance on account {account.id}", transaction_id=transaction.id
        )

    async def _explain_missed_credit(self, transaction: Transaction) -> Exception:
        account = await call_store(
            self.account_store.find_by_id(transaction.destinationAccountId),
            self.store_timeout,
            "accounts.find_by_id",
        )
        if account is None:
            return NotFound(f"Account {transaction.destinationAccountId} not found", transaction_id=transaction.id)
        return StateConflict(
            f"Transaction {transaction.id} cannot be credited to account {account.id}",
            transaction_id=transaction.id,
        )

    async def finalize(self, transaction_id: str) -> Transaction:
        """applied -> done, releasing both accounts."""
        transaction = await self._load(transaction_id)
        assert_transition(transaction.state, TransactionState.done, transaction_id)

        await self._release_accounts(transaction)
        await self._advance(transaction_id, TransactionState.done)
        logger.info("Transaction finalized", transaction_id=transaction_id)

        # Markers of a done transaction are never read again.
        for account_id in (transaction.sourceAccountId, transaction.destinationAccountId):
            try:
                await self._update_account(
                    account_id,
                    AccountFilter(appliedTransactionId=transaction.id),
                    AccountUpdate(unmarkApplied=transaction.id),
                    "clear_marker",
                )
            except Exception as exc:
                logger.warning(
                    "Could not clear applied marker",
                    transaction_id=transaction_id,
                    account_id=account_id,
                    error=str(exc),
                )
        return transaction

    async def cancel(self, transaction_id: str) -> Transaction:
        """Compensate a pending, applied or half-canceled transaction.

        ``canceling`` is a legal predecessor of itself so an interrupted
        cancel can be resumed, which means two concurrent cancels can both
        pass the flip to ``canceling``. What keeps them from reversing twice
        is the applied marker: each reversal requires the marker and removes
        it in the same update, so every delta is reversed exactly once.
        """
        transaction = await self._load(transaction_id)
        if transaction.state is TransactionState.canceled:
            logger.info("Transaction already canceled", transaction_id=transaction_id)
            return transaction
        assert_transition(transaction.state, TransactionState.canceling, transaction_id)

        try:
            await self._advance(transaction_id, TransactionState.canceling)
        except StateConflict:
            current = await self._load(transaction_id)
            if current.state is not TransactionState.canceled:
                raise
            logger.info("Transaction already canceled", transaction_id=transaction_id)
            return current
        logger.info(
            "Canceling transaction",
            transaction_id=transaction_id,
            prior_state=transaction.state.value,
        )

        # Releasing first fences off an apply still in flight: once the id is
        # gone from the pending set no further debit or credit can match.
        await self._release_accounts(transaction)

        reversals: Tuple[Tuple[str, int], ...] = (
            (transaction.sourceAccountId, transaction.amount),
            (transaction.destinationAccountId, -transaction.amount),
        )
        for account_id, delta in reversals:
            reversed_ = await self._update_account(
                account_id,
                AccountFilter(appliedTransactionId=transaction.id),
                AccountUpdate(balanceDelta=delta, unmarkApplied=transaction.id),
                "reverse",
            )
            if reversed_:
                log = logger.info if transaction.state is TransactionState.applied else logger.warning
                log(
                    "Balance delta reversed",
                    transaction_id=transaction_id,
                    account_id=account_id,
                    delta=delta,
                    prior_state=transaction.state.value,
                )

        try:
            await self._advance(transaction_id, TransactionState.canceled)
        except StateConflict:
            current = await self._load(transaction_id)
            if current.state is not TransactionState.canceled:
                raise
            return current

        logger.info("Transaction canceled", transaction_id=transaction_id)
        return transaction

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def validate_request(self, source_id: str, dest_id: str, amount: int) -> TransferRequest:
        try:
            request = TransferRequest(
                sourceAccountId=source_id,
                destinationAccountId=dest_id,
                amount=amount,
            )
        except ModelValidationError as exc:
            message = exc.errors()[0]["msg"].removeprefix("Value error, ")
            logger.warning(
                "Transfer request rejected",
                source_account_id=source_id,
                destination_account_id=dest_id,
                amount=amount,
                error=message,
            )
            raise ValidationError(message) from exc

        if request.amount > self.settings.max_transfer_amount:
            logger.warning(
                "Transfer request rejected",
                source_account_id=source_id,
                destination_account_id=dest_id,
                amount=amount,
                error="amount above limit",
            )
            raise ValidationError(
                f"Amount exceeds the maximum of {self.settings.max_transfer_amount}"
            )
        return request

    async def create_transaction(self, source_id: str, dest_id: str, amount: int) -> Transaction:
        """Record a transfer in state ``initial`` without running it."""
        request = self.validate_request(source_id, dest_id, amount)
        transaction = await call_store(
            self.transaction_store.create({
                "sourceAccountId": request.sourceAccountId,
                "destinationAccountId": request.destinationAccountId,
                "amount": request.amount,
                "state": TransactionState.initial,
            }),
            self.store_timeout,
            "transactions.create",
        )
        logger.info(
            "Transaction created",
            transaction_id=transaction.id,
            source_account_id=transaction.sourceAccountId,
            destination_account_id=transaction.destinationAccountId,
            amount=transaction.amount,
        )
        return transaction

    async def execute_transfer(self, source_id: str, dest_id: str, amount: int) -> TransferResult:
        """Move ``amount`` from ``source_id`` to ``dest_id``.

        Raises ``ValidationError`` before touching the store on bad input,
        and ``TransferFailed`` once a failed transfer has been compensated.
        """
        transaction = await self.create_transaction(source_id, dest_id, amount)
        return await self._run(
            transaction.id,
            success_message="Transfer completed successfully",
            failure_prefix="Transfer failed",
        )

    async def execute_existing_transaction(self, transaction_id: str) -> TransferResult:
        """Run the full pipeline for a transaction created out-of-band."""
        if not transaction_id:
            raise ValidationError("transactionId is required")
        return await self._run(
            transaction_id,
            success_message="Transaction completed successfully",
            failure_prefix="Transaction failed",
        )

    async def _run(self, transaction_id: str, success_message: str, failure_prefix: str) -> TransferResult:
        try:
            await self._advance(transaction_id, TransactionState.pending)
        except (StateConflict, NotFound) as exc:
            # The claim definitely lost, so this caller never owned the
            # transaction and must not compensate on behalf of whoever did.
            logger.warning(
                "Transaction could not be reserved",
                transaction_id=transaction_id,
                error=str(exc),
            )
            raise TransferFailed(
                f"{failure_prefix}: {exc}", cause=exc, transaction_id=transaction_id
            ) from exc
        except Exception as exc:
            # Timeouts and store errors leave the claim's outcome unknown.
            raise await self._failed(transaction_id, exc, failure_prefix) from exc

        try:
            transaction = await self._load(transaction_id)
            logger.debug("Transaction claimed", transaction_id=transaction_id, phase="reserve")
            await self._lock_accounts(transaction)
            await self.apply(transaction_id)
            await self.finalize(transaction_id)
        except Exception as exc:
            raise await self._failed(transaction_id, exc, failure_prefix) from exc

        logger.info("Transfer completed", transaction_id=transaction_id, amount=transaction.amount)
        return TransferResult(success=True, transactionId=transaction_id, message=success_message)

    async def _failed(self, transaction_id: str, exc: Exception, failure_prefix: str) -> TransferFailed:
        logger.warning(
            "Transfer failed, compensating",
            transaction_id=transaction_id,
            error=str(exc),
        )
        rollback_error = await self._compensate(transaction_id, exc)
        return TransferFailed(
            f"{failure_prefix}: {exc}",
            cause=exc,
            transaction_id=transaction_id,
            rollback_error=rollback_error,
        )

    async def _compensate(self, transaction_id: str, original: Exception) -> Optional[RollbackFailure]:
        try:
            await self.cancel(transaction_id)
        except Exception as exc:
            failure = RollbackFailure(
                f"Rollback failed: {exc}", transaction_id=transaction_id, original=original
            )
            logger.error(
                "Rollback failed",
                transaction_id=transaction_id,
                error=str(exc),
                original_error=str(original),
                exc_info=True,
            )
            return failure
        return None
