from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from loadstage.config import LoadTestOptions, default_options, get_settings
from loadstage.exceptions import ConfigurationError
from loadstage.report import render_text
from loadstage.runner import EXIT_CONFIGURATION_ERROR, LoadTest

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loadstage",
        description="Run a staged load test and write summary artifacts.",
    )
    parser.add_argument(
        "--config", help="JSON options file. Defaults to the built-in 40s profile."
    )
    parser.add_argument(
        "--target",
        action="append",
        help="Target URL (repeatable). Overrides the configured targets.",
    )
    parser.add_argument("--out", help="Output directory (default: $RESULTS_DIR).")
    parser.add_argument("--pacing", type=float, help="Seconds between iterations per VU.")
    parser.add_argument(
        "--request-timeout", type=float, help="Per-request timeout in seconds."
    )
    parser.add_argument(
        "--quiet", action="store_true", help="Do not print the text summary to stdout."
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: $LOADSTAGE_LOG_LEVEL).",
    )
    return parser.parse_args(argv)


def _apply_overrides(options: LoadTestOptions, args: argparse.Namespace) -> LoadTestOptions:
    overrides: Dict[str, Any] = {}
    if args.target:
        overrides["targets"] = args.target
    if args.out:
        overrides["output_dir"] = args.out
    if args.pacing is not None:
        overrides["pacing"] = args.pacing
    if args.request_timeout is not None:
        overrides["request_timeout"] = args.request_timeout
    if not overrides:
        return options
    data = options.model_dump(exclude_unset=True)
    data.update(overrides)
    return LoadTestOptions.from_dict(data)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    settings = get_settings()
    level = args.log_level or settings.log_level
    if level not in LOG_LEVELS:
        print(f"Configuration error: unknown log level {level!r}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        options = LoadTestOptions.from_file(args.config) if args.config else default_options()
        options = _apply_overrides(options, args)
        test = LoadTest(options, settings=settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc.message}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR

    outcome = test.run()
    if not args.quiet:
        sys.stdout.write(render_text(outcome.summary))
    if outcome.configuration_error is not None:
        print(f"Configuration error: {outcome.configuration_error.message}", file=sys.stderr)
    if outcome.report_error is not None:
        print(f"Reporting error: {outcome.report_error.message}", file=sys.stderr)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
