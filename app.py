#!/usr/bin/env python3
"""
P2P Trade Desk - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Wires the trade desk core by constructor injection and runs the
expiration sweeper until SIGINT / SIGTERM.

- Can be started, stopped, and restarted safely
- One sweep cadence, idempotent sweeps

============================================================
USAGE
============================================================
Create tables:
    python app.py --init-db

Run one sweep and exit:
    python app.py --sweep-once

Run forever:
    python app.py --log-level INFO --log-format json

Environment (a .env file is honoured):
    DATABASE_URL, TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_IDS,
    OFFER_TTL_HOURS, SWEEP_INTERVAL_SECONDS, LOG_LEVEL

============================================================
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import List, Optional

from database import Database
from p2p_desk import (
    DeskConfig,
    ExpirationSweeper,
    KarmaLedger,
    KarmaRepository,
    LoggingDispatcher,
    NotificationDispatcher,
    OperationLifecycle,
    OperationRepository,
    PendingEvaluationGate,
    PendingEvaluationRepository,
    SqlIdentityLookup,
    TelegramDispatcher,
)


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Application logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("p2p_desk")


# ============================================================
# WIRING
# ============================================================

@dataclass
class DeskServices:
    """Everything a chat front-end needs, already wired."""

    db: Database
    identity: SqlIdentityLookup
    ledger: KarmaLedger
    gate: PendingEvaluationGate
    dispatcher: NotificationDispatcher
    lifecycle: OperationLifecycle
    sweeper: ExpirationSweeper

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.dispatcher.close()
        await self.db.dispose()


def build_services(
    config: DeskConfig,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> DeskServices:
    """Construct the object graph from configuration."""
    db = Database(
        url=config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )

    if dispatcher is None:
        if config.telegram.enabled:
            dispatcher = TelegramDispatcher(config.telegram)
        else:
            dispatcher = LoggingDispatcher()

    identity = SqlIdentityLookup(db)
    ledger = KarmaLedger(db, KarmaRepository(db), identity, config.karma)
    gate = PendingEvaluationGate(PendingEvaluationRepository(db))
    lifecycle = OperationLifecycle(
        db,
        OperationRepository(db),
        ledger,
        gate,
        dispatcher,
        config.lifecycle,
    )
    sweeper = ExpirationSweeper(lifecycle, config.sweep)

    return DeskServices(
        db=db,
        identity=identity,
        ledger=ledger,
        gate=gate,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        sweeper=sweeper,
    )


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="p2p-desk",
        description="P2P trade desk: offer lifecycle, reputation and evaluation gate",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables and exit",
    )
    parser.add_argument(
        "--sweep-once",
        action="store_true",
        help="Run a single expiration sweep and exit",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format (default: LOG_FORMAT or text)",
    )
    return parser


async def run_application(args: argparse.Namespace, config: DeskConfig) -> int:
    """
    Run the trade desk.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)
    services = build_services(config)

    try:
        await services.db.verify_connection()

        if args.init_db:
            await services.db.create_all()
            return 0

        if args.sweep_once:
            count = await services.sweeper.run_once()
            logger.info(f"Single sweep cancelled {count} offer(s)")
            return 0

        if not config.sweep.enabled:
            logger.warning("Sweep disabled, nothing to run")
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        await services.sweeper.start()
        logger.info("Trade desk running (press Ctrl+C to stop)...")
        await stop_event.wait()
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await services.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)

    config = DeskConfig.from_env()
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    setup_logging(config.log_level, config.log_format)
    return asyncio.run(run_application(args, config))


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
