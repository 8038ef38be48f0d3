from typing import Optional
import structlog

from config import Settings, get_settings
from errors import NotFound
from models import IN_FLIGHT_STATES, AccountBalance
from repositories import AccountStore, TransactionStore, call_store

logger = structlog.get_logger()


class BalanceProjector:
    """Advisory balance view combining the committed balance with in-flight transfers.

    This is a point-in-time read without any locking. A transfer touching
    the same account concurrently can produce a torn view, so the result
    must not drive a debit decision.
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

    async def get_account_balance(self, account_id: str) -> AccountBalance:
        timeout = self.settings.store_call_timeout_seconds or None

        account = await call_store(self.account_store.find_by_id(account_id), timeout, "accounts.find_by_id")
        if account is None:
            logger.warning("Account not found", account_id=account_id)
            raise NotFound(f"Account {account_id} not found")

        in_flight = await call_store(
            self.transaction_store.find_many_by_id(account.pendingTransactionIds, IN_FLIGHT_STATES),
            timeout,
            "transactions.find_many_by_id",
        )

        pending_debit = sum(t.amount for t in in_flight if t.sourceAccountId == account_id)
        pending_credit = sum(t.amount for t in in_flight if t.destinationAccountId == account_id)

        logger.debug(
            "Balance projected",
            account_id=account_id,
            balance=account.balance,
            in_flight=len(in_flight),
        )
        return AccountBalance(
            accountId=account_id,
            balance=account.balance,
            pendingDebit=pending_debit,
            pendingCredit=pending_credit,
            availableBalance=account.balance - pending_debit,
            projectedBalance=account.balance - pending_debit + pending_credit,
        )
