import logging
import re
from typing import List, Sequence

from .models import StatementExport, TaxpayerIdentity

_TAX_NUMBER = re.compile(r"^\d{8}$")
_POST_NUMBER = re.compile(r"^\d{4}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_taxpayer(identity: TaxpayerIdentity) -> List[str]:
    """Return human-readable problems with the taxpayer identity; empty means valid.

    Slovenian tax numbers have 8 digits and post numbers 4 digits. Email and
    telephone are optional, but an email that is given must look like one.
    """
    errors = []
    if not _TAX_NUMBER.match(identity.tax_number or ""):
        errors.append("Tax number must have exactly 8 digits.")
    if not (identity.name or "").strip():
        errors.append("Name is required.")
    if not (identity.address or "").strip():
        errors.append("Address is required.")
    if not _POST_NUMBER.match(identity.post_number or ""):
        errors.append("Post number must have exactly 4 digits.")
    if not (identity.post_name or "").strip():
        errors.append("Post name is required.")
    if not (identity.city or "").strip():
        errors.append("City is required.")
    if identity.email and not _EMAIL.match(identity.email):
        errors.append("Email address is not valid.")
    return errors


def check_dropped_rows(section: str, total: int, kept: int) -> None:
    """Log rows of a statement section that were not recognized as records."""
    dropped = total - kept
    if dropped:
        logging.info(
            "Ignoring %d of %d row(s) in %s section (not a trade/dividend, fee or summary row).",
            dropped,
            total,
            section,
        )


def check_rates_resolved(currency: str, missing_dates: Sequence[str]) -> None:
    """Log dates for which no rate was found within the lookback window."""
    if missing_dates:
        logging.error(
            "No %s exchange rate found for %d date(s): %s",
            currency,
            len(missing_dates),
            ", ".join(missing_dates),
        )


def check_conversion_complete(export: StatementExport) -> None:
    """Log records whose EUR equivalents could not be computed."""
    unconverted_trades = sum(1 for t in export.trades if not t.is_converted)
    unconverted_divs = sum(1 for d in export.dividends if not d.is_converted)
    if unconverted_trades or unconverted_divs:
        logging.warning(
            "Conversion incomplete: %d trade(s) and %d dividend(s) have no EUR value; "
            "reports will fall back to native amounts for them.",
            unconverted_trades,
            unconverted_divs,
        )
