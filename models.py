from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum
from typing import FrozenSet, List, Optional, Set
from datetime import datetime

from errors import StateConflict


class TransactionState(str, Enum):
    initial = "initial"
    pending = "pending"
    applied = "applied"
    done = "done"
    canceling = "canceling"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition_to(self, target: "TransactionState") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


# canceling -> canceling lets an interrupted cancel be resumed by the sweeper
ALLOWED_TRANSITIONS = {
    TransactionState.initial: frozenset({TransactionState.pending}),
    TransactionState.pending: frozenset({TransactionState.applied, TransactionState.canceling}),
    TransactionState.applied: frozenset({TransactionState.done, TransactionState.canceling}),
    TransactionState.canceling: frozenset({TransactionState.canceling, TransactionState.canceled}),
    TransactionState.done: frozenset(),
    TransactionState.canceled: frozenset(),
}

TERMINAL_STATES: FrozenSet[TransactionState] = frozenset({TransactionState.done, TransactionState.canceled})
IN_FLIGHT_STATES: FrozenSet[TransactionState] = frozenset({TransactionState.pending, TransactionState.applied})
CANCELABLE_STATES: FrozenSet[TransactionState] = frozenset(
    {TransactionState.pending, TransactionState.applied, TransactionState.canceling}
)


def assert_transition(old: TransactionState, new: TransactionState, transaction_id: Optional[str] = None) -> None:
    if not old.can_transition_to(new):
        raise StateConflict(
            f"Illegal transaction transition: {old.value} -> {new.value}",
            transaction_id=transaction_id,
        )


def predecessors_of(target: TransactionState) -> FrozenSet[TransactionState]:
    """States from which ``target`` can be reached in one step."""
    return frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets)


class Account(BaseModel):
    id: str = Field(..., min_length=1, description="Account identifier")
    balance: int = Field(0, description="Committed balance in minor units")
    pendingTransactionIds: Set[str] = Field(
        default_factory=set,
        description="Transactions in pending, applied or canceling state touching this account"
    )
    appliedTransactionIds: Set[str] = Field(
        default_factory=set,
        description="Transactions whose balance delta has been applied to this account"
    )
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class Transaction(BaseModel):
    id: str = Field(..., min_length=1, description="Transaction identifier")
    sourceAccountId: str = Field(..., min_length=1)
    destinationAccountId: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="Amount in minor units")
    state: TransactionState = TransactionState.initial
    createdAt: datetime
    lastModifiedAt: datetime

    @model_validator(mode="after")
    def validate_distinct_accounts(self):
        if self.sourceAccountId == self.destinationAccountId:
            raise ValueError("Source and destination accounts cannot be the same")
        return self


class AccountFilter(BaseModel):
    """Conditions an account must currently satisfy for an update to apply."""

    pendingTransactionId: Optional[str] = None
    appliedTransactionId: Optional[str] = None
    notAppliedTransactionId: Optional[str] = None
    minBalance: Optional[int] = None

    def matches(self, account: Account) -> bool:
        if self.pendingTransactionId is not None and self.pendingTransactionId not in account.pendingTransactionIds:
            return False
        if self.appliedTransactionId is not None and self.appliedTransactionId not in account.appliedTransactionIds:
            return False
        if self.notAppliedTransactionId is not None and self.notAppliedTransactionId in account.appliedTransactionIds:
            return False
        if self.minBalance is not None and account.balance < self.minBalance:
            return False
        return True


class AccountUpdate(BaseModel):
    """A single account mutation.

    Exactly one of the balance or pending-set operations is set. A balance
    change may carry its applied marker so both land in the same write; a
    bare ``unmarkApplied`` clears a marker left by a finished transfer.
    """

    balanceDelta: Optional[int] = None
    addPendingTransactionId: Optional[str] = None
    removePendingTransactionId: Optional[str] = None
    markApplied: Optional[str] = None
    unmarkApplied: Optional[str] = None

    @model_validator(mode="after")
    def validate_single_mutation(self):
        operations = [
            self.balanceDelta,
            self.addPendingTransactionId,
            self.removePendingTransactionId,
        ]
        given = sum(op is not None for op in operations)
        if given == 0 and self.unmarkApplied is not None and self.markApplied is None:
            return self
        if given != 1:
            raise ValueError("Exactly one account mutation must be given")
        if (self.markApplied is not None or self.unmarkApplied is not None) and self.balanceDelta is None:
            raise ValueError("Applied markers may only accompany a balance change")
        if self.markApplied and self.unmarkApplied:
            raise ValueError("Cannot mark and unmark in the same update")
        return self

    def apply_to(self, account: Account) -> None:
        if self.balanceDelta is not None:
            account.balance += self.balanceDelta
        if self.addPendingTransactionId is not None:
            account.pendingTransactionIds.add(self.addPendingTransactionId)
        if self.removePendingTransactionId is not None:
            account.pendingTransactionIds.discard(self.removePendingTransactionId)
        if self.markApplied is not None:
            account.appliedTransactionIds.add(self.markApplied)
        if self.unmarkApplied is not None:
            account.appliedTransactionIds.discard(self.unmarkApplied)


class TransactionUpdate(BaseModel):
    state: TransactionState


class TransferRequest(BaseModel):
    sourceAccountId: str = Field(..., description="Account debited by the transfer")
    destinationAccountId: str = Field(..., description="Account credited by the transfer")
    amount: int = Field(..., description="Amount in minor units")

    @field_validator("sourceAccountId", "destinationAccountId", mode="before")
    @classmethod
    def validate_account_id(cls, v):
        if v is None or not str(v).strip():
            raise ValueError("sourceId, destId, and amount are required")
        return str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount_present(cls, v):
        if v is None or isinstance(v, bool):
            raise ValueError("sourceId, destId, and amount are required")
        return v

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("Amount must be positive")
        return v

    @model_validator(mode="after")
    def validate_distinct_accounts(self):
        if self.sourceAccountId == self.destinationAccountId:
            raise ValueError("Source and destination accounts cannot be the same")
        return self


class TransferResult(BaseModel):
    success: bool = Field(..., description="Whether the transfer reached the done state")
    transactionId: str = Field(..., description="Transaction identifier")
    message: str = Field(..., description="Human readable outcome")


class AccountBalance(BaseModel):
    accountId: str
    balance: int
    pendingDebit: int = Field(..., description="Sum of in-flight outgoing amounts")
    pendingCredit: int = Field(..., description="Sum of in-flight incoming amounts")
    availableBalance: int = Field(..., description="balance - pendingDebit")
    projectedBalance: int = Field(..., description="balance - pendingDebit + pendingCredit")


class RecoveryDetail(BaseModel):
    transactionId: str
    success: bool
    error: Optional[str] = None
    errorCode: Optional[str] = None


class RecoveryReport(BaseModel):
    recovered: int = Field(..., description="Transactions moved to canceled")
    failed: int = Field(..., description="Transactions that could not be canceled")
    details: List[RecoveryDetail] = Field(default_factory=list)
