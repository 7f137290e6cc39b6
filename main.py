#!/usr/bin/env python3
"""Entry point for the Bridge Reconciler service.

This module provides the main entry point for discovering bridge events on
every configured network and reconciling claims against transfers, either
once or continuously in service mode.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from bridge_reconciler.config import ReconcilerConfig
from bridge_reconciler.errors import NoDataAvailableError
from bridge_reconciler.reconciler import BridgeReconciler
from bridge_reconciler.utils.block_range import TIMEFRAME_OPTIONS


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Bridge Reconciler - Discover and reconcile cross-chain bridge transfers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  REGISTRY_PATH         - Bridge/network registry JSON document (required)
  CACHE_DIR             - Folder for the event cache (default: memory only)
  WINDOW_HOURS          - Look-back window in hours (default: 24)
  EXPLORER_API_KEY      - API key for the block explorer REST API
  POLLING_INTERVAL      - Seconds between passes in service mode (default: 300)
  DISCOVERY_TIMEOUT     - Deadline for one discovery pass in seconds
  STRICT_RECIPIENT      - Treat a missing recipient as a mismatch (default: true)
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single reconciliation pass and exit"
    )
    parser.add_argument(
        "--window-hours",
        type=float,
        default=None,
        help=f"Look-back window in hours (common values: {', '.join(str(h) for h in TIMEFRAME_OPTIONS)})"
    )
    parser.add_argument(
        "--test-connections",
        action="store_true",
        default=False,
        help="Check connectivity of every network's sources and exit"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Print the reconciliation result as JSON (with --once)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    return parser


async def main() -> None:
    """Main entry point for the Bridge Reconciler service.

    Parses startup arguments, loads configuration from environment,
    and runs one reconciliation pass or the continuous service loop.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    load_dotenv()
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    logger.info("=== Bridge Reconciler Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: ReconcilerConfig = ReconcilerConfig.from_env()
        logger.info("Configuration loaded successfully")

        reconciler: BridgeReconciler = BridgeReconciler(config)

        if args.test_connections:
            results = await reconciler.context.test_all_connections()
            await reconciler.context.aclose()
            sys.exit(0 if all(results.values()) else 1)

        if args.once:
            try:
                result = await reconciler.run_once(args.window_hours)
            finally:
                await reconciler.context.aclose()
            if args.json:
                print(json.dumps(
                    {"discovery": reconciler.last_report.to_dict(), "reconciliation": result.to_dict()},
                    indent=2,
                ))
            sys.exit(2 if result.fraud_detected else 0)

        await reconciler.run(args.window_hours)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - REGISTRY_PATH: Bridge/network registry JSON document")
        logger.error("  - WINDOW_HOURS: Look-back window in hours (default: 24)")
        logger.error("  - INTER_CHUNK_DELAY: Seconds between chunk requests (min 1)")
        sys.exit(1)

    except NoDataAvailableError as e:
        logger.error(f"{e}")
        sys.exit(3)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
