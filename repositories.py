from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Collection, Dict, Iterable, List, Optional, TypeVar
from datetime import datetime
from zoneinfo import ZoneInfo
import asyncio
import uuid
from collections import defaultdict

from errors import StoreTimeout
from models import Account, AccountFilter, AccountUpdate, Transaction, TransactionState, TransactionUpdate

T = TypeVar("T")

Clock = Callable[[], datetime]


def system_clock(timezone: str = "UTC") -> Clock:
    """Clock returning timezone-aware wall time."""
    zone = ZoneInfo(timezone)
    return lambda: datetime.now(zone)


async def call_store(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """Await a store call under a deadline. ``None`` disables the deadline."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise StoreTimeout(f"Store call timed out after {timeout}s: {operation}") from exc


class TransactionStore(ABC):
    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> Transaction:
        """Insert a new transaction record. Assigns id and timestamps when missing."""
        pass

    @abstractmethod
    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        transaction_id: str,
        expected_states: Optional[Collection[TransactionState]],
        update: TransactionUpdate,
    ) -> int:
        """Atomically apply ``update`` if the record is in one of ``expected_states``.

        Stamps ``lastModifiedAt``. Returns the number of matched records (0 or 1).
        """
        pass

    @abstractmethod
    async def find_stale(self, states: Collection[TransactionState], older_than: datetime) -> List[Transaction]:
        """Transactions in ``states`` last modified strictly before ``older_than``."""
        pass

    @abstractmethod
    async def find_many_by_id(
        self,
        transaction_ids: Iterable[str],
        states: Optional[Collection[TransactionState]] = None,
    ) -> List[Transaction]:
        """Get the existing transactions among ``transaction_ids``, optionally filtered by state."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Get total number of transaction records."""
        pass


class AccountStore(ABC):
    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> Account:
        """Insert a new account record."""
        pass

    @abstractmethod
    async def find_by_id(self, account_id: str) -> Optional[Account]:
        """Get account by id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def conditional_update(self, account_id: str, condition: AccountFilter, update: AccountUpdate) -> int:
        """Atomically apply ``update`` if the account matches ``condition``.

        Returns the number of matched records (0 or 1).
        """
        pass

    @abstractmethod
    async def find_many_by_id(self, account_ids: Iterable[str]) -> List[Account]:
        """Get the existing accounts among ``account_ids``."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Get total number of accounts."""
        pass


class InMemoryTransactionStore(TransactionStore):
    def __init__(self, clock: Optional[Clock] = None):
        self.transactions: Dict[str, Transaction] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.clock = clock or system_clock()

    async def create(self, fields: Dict[str, Any]) -> Transaction:
        await asyncio.sleep(0)
        now = self.clock()
        data = {"createdAt": now, "lastModifiedAt": now, **fields}
        data.setdefault("id", uuid.uuid4().hex)
        transaction = Transaction(**data)
        if transaction.id in self.transactions:
            raise ValueError(f"Transaction {transaction.id} already exists")
        self.transactions[transaction.id] = transaction
        return transaction.model_copy(deep=True)

    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        await asyncio.sleep(0)
        transaction = self.transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def conditional_update(
        self,
        transaction_id: str,
        expected_states: Optional[Collection[TransactionState]],
        update: TransactionUpdate,
    ) -> int:
        async with self.get_lock(transaction_id):
            await asyncio.sleep(0)
            transaction = self.transactions.get(transaction_id)
            if transaction is None:
                return 0
            if expected_states is not None and transaction.state not in expected_states:
                return 0
            transaction.state = update.state
            transaction.lastModifiedAt = self.clock()
            return 1

    async def find_stale(self, states: Collection[TransactionState], older_than: datetime) -> List[Transaction]:
        await asyncio.sleep(0)
        stale = [
            t for t in self.transactions.values()
            if t.state in states and t.lastModifiedAt < older_than
        ]
        stale.sort(key=lambda t: t.lastModifiedAt)
        return [t.model_copy(deep=True) for t in stale]

    async def find_many_by_id(
        self,
        transaction_ids: Iterable[str],
        states: Optional[Collection[TransactionState]] = None,
    ) -> List[Transaction]:
        await asyncio.sleep(0)
        found = []
        for transaction_id in dict.fromkeys(transaction_ids):
            transaction = self.transactions.get(transaction_id)
            if transaction is None:
                continue
            if states is not None and transaction.state not in states:
                continue
            found.append(transaction.model_copy(deep=True))
        return found

    async def count(self) -> int:
        return len(self.transactions)

    def get_lock(self, transaction_id: str) -> asyncio.Lock:
        """Get lock for specific transaction record."""
        return self.locks[transaction_id]


class InMemoryAccountStore(AccountStore):
    def __init__(self, accounts: Optional[Iterable[Account]] = None):
        self.accounts: Dict[str, Account] = {a.id: a.model_copy(deep=True) for a in accounts or ()}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, fields: Dict[str, Any]) -> Account:
        await asyncio.sleep(0)
        data = dict(fields)
        data.setdefault("id", uuid.uuid4().hex)
        account = Account(**data)
        if account.id in self.accounts:
            raise ValueError(f"Account {account.id} already exists")
        self.accounts[account.id] = account
        return account.model_copy(deep=True)

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        await asyncio.sleep(0)
        account = self.accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def conditional_update(self, account_id: str, condition: AccountFilter, update: AccountUpdate) -> int:
        async with self.get_lock(account_id):
            await asyncio.sleep(0)
            account = self.accounts.get(account_id)
            if account is None or not condition.matches(account):
                return 0
            update.apply_to(account)
            return 1

    async def find_many_by_id(self, account_ids: Iterable[str]) -> List[Account]:
        await asyncio.sleep(0)
        return [
            self.accounts[account_id].model_copy(deep=True)
            for account_id in dict.fromkeys(account_ids)
            if account_id in self.accounts
        ]

    async def count(self) -> int:
        return len(self.accounts)

    def get_lock(self, account_id: str) -> asyncio.Lock:
        """Get lock for specific account."""
        return self.locks[account_id]
