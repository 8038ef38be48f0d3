from datetime import timedelta
from typing import Optional
import structlog

from config import Settings, get_settings
from coordinator import TransferCoordinator
from errors import TransferError
from models import CANCELABLE_STATES, RecoveryDetail, RecoveryReport
from repositories import Clock, TransactionStore, call_store, system_clock

logger = structlog.get_logger()


class RecoverySweeper:
    """Cancels transactions abandoned in ``pending``, ``applied`` or ``canceling``.

    Recovery only ever compensates backward; it never tries to resume apply
    or finalize. A record left in ``canceling`` by a cancel that failed part
    way is driven on to ``canceled``. The sweeper does not schedule itself,
    run it from a timer.
    """

    def __init__(
        self,
        coordinator: TransferCoordinator,
        transaction_store: TransactionStore,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.coordinator = coordinator
        self.transaction_store = transaction_store
        self.settings = settings or get_settings()
        self.clock = clock or system_clock(self.settings.timezone)

    async def recover_stuck(self, timeout: Optional[timedelta] = None) -> RecoveryReport:
        if timeout is None:
            timeout = timedelta(minutes=self.settings.recovery_timeout_minutes)
        cutoff = self.clock() - timeout

        stuck = await call_store(
            self.transaction_store.find_stale(CANCELABLE_STATES, cutoff),
            self.settings.store_call_timeout_seconds or None,
            "transactions.find_stale",
        )
        logger.info(
            "Recovery sweep started",
            stuck_count=len(stuck),
            cutoff=cutoff.isoformat(),
        )

        details = []
        for transaction in stuck:
            try:
                await self.coordinator.cancel(transaction.id)
            except Exception as exc:
                logger.warning(
                    "Failed to recover transaction",
                    transaction_id=transaction.id,
                    state=transaction.state.value,
                    error=str(exc),
                )
                details.append(RecoveryDetail(
                    transactionId=transaction.id,
                    success=False,
                    error=str(exc),
                    errorCode=exc.error_code if isinstance(exc, TransferError) else type(exc).__name__,
                ))
            else:
                details.append(RecoveryDetail(transactionId=transaction.id, success=True))

        report = RecoveryReport(
            recovered=sum(1 for d in details if d.success),
            failed=sum(1 for d in details if not d.success),
            details=details,
        )
        logger.info("Recovery sweep finished", recovered=report.recovered, failed=report.failed)
        return report
