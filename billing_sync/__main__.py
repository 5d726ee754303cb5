"""Entry point for running the billing service as a module.

    python -m billing_sync --port 8080 --config config/billing.yaml
"""

import argparse
import os
import sys
from typing import Optional

import uvicorn

from billing_sync.config import Config, ConfigurationError
from billing_sync.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-sync",
        description="Payment webhook ingestion and subscription reconciliation service",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")), help="Port (default: 8080)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/billing.yaml"),
        help="Path to billing.yaml (default: config/billing.yaml)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Auto-reload on code changes (development only)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Parse flags, validate config and run uvicorn."""
    args = build_parser().parse_args(argv)

    # The app factory reads these when uvicorn imports billing_sync.main
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")

    try:
        config = Config(args.config)
    except ConfigurationError as e:
        logger.error("configuration_invalid", config_path=args.config, error=str(e))
        sys.exit(2)

    logger.info(
        "billing_sync_configured",
        config_path=str(config.config_path),
        plans=len(config.plans),
        host=args.host,
        port=args.port,
    )
    if args.check_config:
        return

    uvicorn.run(
        "billing_sync.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        reload=args.reload,
        access_log=False,  # RequestLoggingMiddleware logs requests
    )


if __name__ == "__main__":
    main()
