#!/usr/bin/env python3
"""CLI for converting VIAC statement PDFs into portfolio import files."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from viac_config import load_config, setup_logging
from viac_model import ConfigError
from viac_pipeline import run


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert VIAC statement PDFs into securities, account and portfolio import files."
    )
    parser.add_argument("input_dir", type=Path, help="Directory scanned recursively for statement PDFs")
    parser.add_argument("--convert-to", metavar="CCY", help="Convert amounts and prices to this currency")
    parser.add_argument("--rates", type=Path, help="ECB eurofxref-hist .csv or .zip used for conversion")
    parser.add_argument(
        "-i",
        "--isin-currency",
        action="append",
        metavar="ISIN=CCY",
        help="Quote one security in CCY, e.g. GBX for pence (repeatable)",
    )
    parser.add_argument(
        "--no-adjust",
        dest="share_adjustment_enabled",
        action="store_const",
        const=False,
        help="Export share quantities as printed instead of amount / price",
    )
    parser.add_argument(
        "--no-clamp",
        dest="clamp_oversized_sales",
        action="store_const",
        const=False,
        help="Reject sales larger than the holding instead of clamping them",
    )
    parser.add_argument("--dust-threshold", help="Residual holding snapped to zero after a sale")
    parser.add_argument("-j", "--jobs", type=int, help="Worker processes (0 = one per CPU)")
    parser.add_argument("-o", "--output-dir", type=Path, help="Directory for the output files")
    parser.add_argument("--format", dest="output_format", choices=("csv", "json"), help="Output format")
    parser.add_argument("--prefix", dest="file_prefix", help="Output file name prefix")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    log_level = None
    if args.verbose == 1:
        log_level = "INFO"
    elif args.verbose > 1:
        log_level = "DEBUG"

    try:
        config = load_config(
            share_adjustment_enabled=args.share_adjustment_enabled,
            target_currency=args.convert_to,
            rates_path=args.rates,
            isin_currency=args.isin_currency,
            clamp_oversized_sales=args.clamp_oversized_sales,
            dust_threshold=args.dust_threshold,
            jobs=args.jobs,
            output_dir=args.output_dir,
            output_format=args.output_format,
            file_prefix=args.file_prefix,
            log_level=log_level,
        )
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)
    try:
        summary = run(config, args.input_dir)
    except ConfigError as exc:
        logger.error("%s", exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(summary.render())
    if summary.all_failed:
        print("ERROR: no statement could be converted", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
