#!/usr/bin/env python3

import argparse
import datetime
import json
import logging
from pathlib import Path
from typing import List, Optional

from .conversion import normalize_export
from .dividends import generate_div_csv, generate_div_xml
from .kdvp import generate_kdvp_xml
from .models import TaxpayerIdentity
from .parser import available_years, filter_by_year, parse_statement
from .rates import (
    DEFAULT_CACHE_DIR,
    DEFAULT_TIMEOUT,
    FileCache,
    InMemoryCache,
    RateResolver,
    import_static_rates,
    update_static_rates,
)
from .summary import summarize
from .validation import validate_taxpayer


def load_taxpayer(path: str) -> TaxpayerIdentity:
    """Read the taxpayer identity JSON (snake_case or camelCase keys)."""
    with open(path, encoding="utf-8") as f:
        return TaxpayerIdentity.from_dict(json.load(f))


def write_reports(export, year: int, taxpayer: TaxpayerIdentity, output_dir: Path, test_mode: bool) -> List[Path]:
    """Write Doh-KDVP XML, Doh-Div XML and Doh-Div CSV for ``year`` into ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    documents = {
        f"Doh_KDVP_{year}.xml": generate_kdvp_xml(export.trades, year, taxpayer, test_mode),
        f"Doh_Div_{year}.xml": generate_div_xml(export.dividends, year, taxpayer, test_mode),
        f"Doh_Div_{year}.csv": generate_div_csv(export.dividends, year, taxpayer, test_mode),
    }
    written = []
    for name, content in documents.items():
        path = output_dir / name
        path.write_text(content, encoding="utf-8")
        logging.info("Wrote %s", path)
        written.append(path)
    return written


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: convert a Revolut statement into eDavki Doh-KDVP and Doh-Div files."""
    default_year = datetime.date.today().year - 1

    parser = argparse.ArgumentParser(description='Convert a Revolut P&L statement into eDavki Doh-KDVP/Doh-Div files')
    parser.add_argument('statement', nargs='?',
                        help='Path to the Revolut profit and loss statement CSV')
    parser.add_argument('--taxpayer',
                        help='Path to taxpayer identity JSON (taxNumber, name, address, postNumber, postName, city, ...)')
    parser.add_argument('--year', type=int, default=default_year,
                        help=f'Tax year to report (default: {default_year})')
    parser.add_argument('--output-dir', default='.',
                        help='Directory for generated files (default: current directory)')
    parser.add_argument('--test-mode', action='store_true',
                        help='Mark documents as informative (trial) instead of original submissions')
    parser.add_argument('--cache-dir', default=str(DEFAULT_CACHE_DIR),
                        help=f'Exchange-rate cache directory (default: {DEFAULT_CACHE_DIR})')
    parser.add_argument('--no-cache', action='store_true',
                        help='Do not read or write the exchange-rate cache')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'Seconds allowed per exchange-rate request (default: {DEFAULT_TIMEOUT})')
    parser.add_argument('--allow-missing-rates', action='store_true',
                        help='Write reports even if some exchange rates could not be found')
    parser.add_argument('--update-rates', type=int, nargs='+', metavar='YEAR',
                        help='Refresh the bundled static USD rate table for the given years and exit')
    parser.add_argument('--import-rates', metavar='FILE',
                        help='Merge a downloaded ECB history (eurofxref-hist.csv or .zip) into the bundled '
                             'static USD rate table and exit')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    if args.update_rates:
        update_static_rates(args.update_rates, timeout=args.timeout)
        return
    if args.import_rates:
        import_static_rates(args.import_rates)
        return

    if not args.statement:
        parser.error("statement is required")
    if not args.taxpayer:
        parser.error("--taxpayer is required")

    taxpayer = load_taxpayer(args.taxpayer)
    problems = validate_taxpayer(taxpayer)
    if problems:
        parser.error("invalid taxpayer identity: " + " ".join(problems))

    raw_text = Path(args.statement).read_text(encoding='utf-8-sig')
    export = parse_statement(raw_text)
    years = available_years(export)
    if args.year not in years:
        logging.warning(
            "Target year %d not found in statement. Statement contains years: %s. "
            "Use --year to specify the correct tax year.",
            args.year,
            years,
        )

    cache = InMemoryCache() if args.no_cache else FileCache(args.cache_dir)
    normalized = normalize_export(
        filter_by_year(export, args.year),
        resolver_factory=lambda currency: RateResolver(currency, cache=cache, timeout=args.timeout),
    )

    summary = summarize(normalized, args.year)
    summary.print()

    if normalized.missing_rate_dates and not args.allow_missing_rates:
        logging.error(
            "Missing exchange rates for %d date(s); not writing reports. "
            "Retry later or pass --allow-missing-rates to report native amounts for those records.",
            len(normalized.missing_rate_dates),
        )
        raise SystemExit(1)

    write_reports(normalized, args.year, taxpayer, Path(args.output_dir), args.test_mode)
