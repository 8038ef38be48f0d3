import pytest
from datetime import datetime, timedelta, timezone

from config import TestingSettings
from models import Account
from repositories import InMemoryAccountStore, InMemoryTransactionStore
from services import get_transaction_service


class FakeClock:
    """Deterministic clock shared by the stores and the sweeper."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyAccountStore(InMemoryAccountStore):
    """Account store that raises when ``fail_when`` matches an update.

    ``before_update`` is awaited ahead of every update, letting a test run
    another operation at that exact point.
    """

    def __init__(self, accounts=None):
        super().__init__(accounts)
        self.fail_when = None
        self.before_update = None

    async def conditional_update(self, account_id, condition, update):
        if self.before_update:
            await self.before_update(account_id, condition, update)
        if self.fail_when and self.fail_when(account_id, condition, update):
            raise RuntimeError("account store unavailable")
        return await super().conditional_update(account_id, condition, update)


class FlakyTransactionStore(InMemoryTransactionStore):
    """Transaction store that raises when ``fail_when`` matches an update
    or ``fail_read_when`` matches a lookup."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.fail_when = None
        self.fail_read_when = None

    async def find_by_id(self, transaction_id):
        if self.fail_read_when and self.fail_read_when(transaction_id):
            raise RuntimeError("transaction store unavailable")
        return await super().find_by_id(transaction_id)

    async def conditional_update(self, transaction_id, expected_states, update):
        if self.fail_when and self.fail_when(transaction_id, expected_states, update):
            raise RuntimeError("transaction store unavailable")
        return await super().conditional_update(transaction_id, expected_states, update)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return TestingSettings()


@pytest.fixture
def account_store():
    return FlakyAccountStore([
        Account(id="acc_001", balance=2500),
        Account(id="acc_002", balance=1000),
        Account(id="acc_003", balance=0),
    ])


@pytest.fixture
def transaction_store(clock):
    return FlakyTransactionStore(clock=clock)


@pytest.fixture
def service(account_store, transaction_store, settings, clock):
    return get_transaction_service(account_store, transaction_store, settings, clock)


@pytest.fixture
def coordinator(service):
    return service.coordinator


