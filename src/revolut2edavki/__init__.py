from .conversion import convert_to_eur, normalize_export
from .dividends import PreparedDividend, generate_div_csv, generate_div_xml, prepare_dividends
from .formatting import DocumentWorkflow, country_code, format_date_dmy, format_decimal
from .kdvp import generate_kdvp_xml, group_trades
from .models import Converted, Dividend, RateResolution, StatementExport, TaxpayerIdentity, Trade
from .parser import DEFAULT_SECTION_ALIASES, available_years, filter_by_year, parse_statement
from .rates import (
    MAX_RATE_LOOKBACK_DAYS,
    FileCache,
    InMemoryCache,
    RateResolver,
    fetch_ecb_rates,
    import_static_rates,
    load_ecb_history,
    load_static_rates,
    resolve_rates,
    update_static_rates,
)
from .summary import StatementSummary, summarize
from .validation import validate_taxpayer
from .cli import main

__all__ = [
    "DEFAULT_SECTION_ALIASES",
    "MAX_RATE_LOOKBACK_DAYS",
    "Converted",
    "Dividend",
    "DocumentWorkflow",
    "FileCache",
    "InMemoryCache",
    "PreparedDividend",
    "RateResolution",
    "RateResolver",
    "StatementExport",
    "StatementSummary",
    "TaxpayerIdentity",
    "Trade",
    "available_years",
    "convert_to_eur",
    "country_code",
    "fetch_ecb_rates",
    "import_static_rates",
    "load_ecb_history",
    "filter_by_year",
    "format_date_dmy",
    "format_decimal",
    "generate_div_csv",
    "generate_div_xml",
    "generate_kdvp_xml",
    "group_trades",
    "load_static_rates",
    "main",
    "normalize_export",
    "parse_statement",
    "prepare_dividends",
    "resolve_rates",
    "summarize",
    "update_static_rates",
    "validate_taxpayer",
]
