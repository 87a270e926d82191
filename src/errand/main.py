"""
errand entry point.

This file handles startup concerns (arg-parsing, data directory, logging) and launches the
appropriate interface (API, interactive CLI, or a single request).
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from errand.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    # Request lines from the completion transport are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _ensure_data_dir(db_path: str) -> None:
    data_dir = Path(db_path).resolve().parent
    data_dir.mkdir(parents=True, exist_ok=True)
    if not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the errand application.

    Starts the REST API, the interactive shell, or answers a single ``--query`` and exits.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the errand agent")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="cli",
        help="Launch the REST API or the interactive shell (default: %(default)s)",
    )
    parser.add_argument("--query", help="Answer one request and exit (cli mode only)")
    parser.add_argument(
        "--verbose", action="store_true", help="Print the function transcript in cli mode"
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)
    _ensure_data_dir(settings.DB_PATH)

    logger.info("Starting errand [%s mode]", args.mode)
    secrets = {"OPENROUTER_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"}
    logger.debug("Settings: %s", settings.model_dump(exclude=secrets))

    if args.mode == "api":
        # Lazy import to avoid web dependencies if not needed
        from errand.api.app import run_api  # pylint: disable=import-outside-toplevel

        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)
        return

    from errand.client import cli  # pylint: disable=import-outside-toplevel

    if args.query:
        from errand.agent.completion import (  # pylint: disable=import-outside-toplevel
            CompletionClient,
        )
        from errand.tools import FunctionContext  # pylint: disable=import-outside-toplevel

        cli.ask(
            args.query,
            FunctionContext.open(settings.DB_PATH),
            CompletionClient.from_settings(),
            verbose=args.verbose,
        )
    else:
        cli.run_cli(verbose=args.verbose)


if __name__ == "__main__":
    main()
