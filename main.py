#!/usr/bin/env python3
"""Serve a Prometheus rule unit-test file through a query-API-compatible HTTP facade."""

import argparse
import dataclasses
import logging
import sys
from typing import List, Optional

import uvicorn

from api import create_app_from_settings
from config import Settings, parse_log_level, parse_origin
from fixtures import build_load_script, format_duration, load_fixture_file, parse_duration


def parse_args(argv: Optional[List[str]] = None, defaults: Optional[Settings] = None) -> argparse.Namespace:
    defaults = defaults or Settings.from_env()
    parser = argparse.ArgumentParser(description="Serve fixture time series over a Prometheus-style query API.")
    parser.add_argument(
        "--fixture-file",
        default=defaults.fixture_file,
        help="Unit-test YAML file with input_series (defaults to $FIXTURE_FILE).",
    )
    parser.add_argument("--host", default=defaults.host, help=f"Listen address (default: {defaults.host}).")
    parser.add_argument("--port", type=int, default=defaults.port, help=f"Listen port (default: {defaults.port}).")
    parser.add_argument(
        "--eval-time",
        default=format_duration(defaults.eval_time_ms),
        help="Evaluation time of instant queries, as a duration after the epoch (default: %(default)s).",
    )
    parser.add_argument(
        "--lookback",
        default=format_duration(defaults.lookback_ms),
        help="How far back a sample stays visible to instant queries (default: %(default)s).",
    )
    parser.add_argument(
        "--honor-request-time",
        action="store_true",
        default=defaults.honor_request_time,
        help="Evaluate at the request's time parameter instead of --eval-time.",
    )
    parser.add_argument("--cors-origin", default=defaults.cors_origin, help="Allowed CORS origin regex.")
    parser.add_argument("--log-level", default=defaults.log_level, help="Logging level (default: %(default)s).")
    parser.add_argument(
        "--dump-load-script",
        action="store_true",
        help="Print the load script generated from the fixture file and exit.",
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, defaults: Settings) -> Settings:
    return dataclasses.replace(
        defaults,
        fixture_file=args.fixture_file,
        host=args.host,
        port=args.port,
        eval_time_ms=parse_duration(args.eval_time),
        lookback_ms=parse_duration(args.lookback),
        honor_request_time=args.honor_request_time,
        cors_origin=parse_origin(args.cors_origin),
        log_level=parse_log_level(args.log_level),
    )


def main(argv: Optional[List[str]] = None) -> int:
    defaults = Settings.from_env()
    args = parse_args(argv, defaults)
    settings = settings_from_args(args, defaults)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    if not settings.fixture_file:
        print("error: a fixture file is required (--fixture-file or $FIXTURE_FILE)", file=sys.stderr)
        return 2

    if args.dump_load_script:
        sys.stdout.write(build_load_script(load_fixture_file(settings.fixture_file)).text)
        return 0

    app = create_app_from_settings(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
