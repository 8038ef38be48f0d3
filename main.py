import asyncio
import logging
import sys
from datetime import timedelta
from typing import Optional

import structlog

from config import Settings, get_settings
from errors import TransferFailed, ValidationError
from models import Account
from recovery import RecoverySweeper
from repositories import InMemoryAccountStore, InMemoryTransactionStore, system_clock
from services import TransactionService, get_transaction_service


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.log_level.upper(),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    # Configure structured logging
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


async def run_recovery_loop(
    sweeper: RecoverySweeper,
    interval_seconds: float,
    stop: asyncio.Event,
    timeout: Optional[timedelta] = None,
) -> None:
    """Run a recovery sweep every ``interval_seconds`` until ``stop`` is set."""
    while not stop.is_set():
        try:
            await sweeper.recover_stuck(timeout)
        except Exception as e:
            logger.error("Recovery sweep failed", error=str(e), exc_info=True)
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass


def build_service(settings: Settings) -> TransactionService:
    """Wire an in-memory store seeded with the sample accounts."""
    accounts = InMemoryAccountStore([
        Account(id="acc_source", firstName="amir", lastName="ranjbar", balance=2500),
        Account(id="acc_destination", firstName="sara", lastName="karimi", balance=0),
    ])
    transactions = InMemoryTransactionStore(clock=system_clock(settings.timezone))
    return get_transaction_service(accounts, transactions, settings)


async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    logger.info("Starting transfer coordinator", app=settings.app_name, version=settings.app_version)

    service = build_service(settings)

    try:
        result = await service.execute_transfer("acc_source", "acc_destination", 500)
        logger.info("Sample transfer succeeded", **result.model_dump())
    except (ValidationError, TransferFailed) as e:
        logger.error("Sample transfer failed", error=str(e), error_code=e.error_code)

    for account_id in ("acc_source", "acc_destination"):
        balance = await service.get_account_balance(account_id)
        logger.info("Account balance", **balance.model_dump())

    if settings.run_recovery_loop:
        # Runs until the process is interrupted
        await run_recovery_loop(service.sweeper, settings.recovery_interval_seconds, asyncio.Event())

    logger.info("Shutting down transfer coordinator")


if __name__ == "__main__":
    asyncio.run(main())
