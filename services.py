from datetime import timedelta
from typing import Optional
import structlog

from balances import BalanceProjector
from config import Settings, get_settings
from coordinator import TransferCoordinator
from models import AccountBalance, RecoveryReport, Transaction, TransferResult
from recovery import RecoverySweeper
from repositories import AccountStore, Clock, TransactionStore

logger = structlog.get_logger()


class TransactionService:
    """Public entry point for transfers, balance projections and recovery."""

    def __init__(
        self,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.account_store = account_store
        self.transaction_store = transaction_store
        self.coordinator = TransferCoordinator(account_store, transaction_store, self.settings)
        self.sweeper = RecoverySweeper(self.coordinator, transaction_store, self.settings, clock=clock)
        self.projector = BalanceProjector(account_store, transaction_store, self.settings)

    async def execute_transfer(self, source_id: str, dest_id: str, amount: int) -> TransferResult:
        logger.info(
            "Processing transfer",
            source_account_id=source_id,
            destination_account_id=dest_id,
            amount=amount,
        )
        return await self.coordinator.execute_transfer(source_id, dest_id, amount)

    async def execute_existing_transaction(self, transaction_id: str) -> TransferResult:
        logger.info("Processing existing transaction", transaction_id=transaction_id)
        return await self.coordinator.execute_existing_transaction(transaction_id)

    async def create_transaction(self, source_id: str, dest_id: str, amount: int) -> Transaction:
        return await self.coordinator.create_transaction(source_id, dest_id, amount)

    async def get_account_balance(self, account_id: str) -> AccountBalance:
        return await self.projector.get_account_balance(account_id)

    async def recover_stuck_transactions(self, timeout: Optional[timedelta] = None) -> RecoveryReport:
        return await self.sweeper.recover_stuck(timeout)


# Factory function for dependency injection
def get_transaction_service(
    account_store: AccountStore,
    transaction_store: TransactionStore,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> TransactionService:
    return TransactionService(account_store, transaction_store, settings, clock)
