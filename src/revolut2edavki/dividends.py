import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .formatting import (
    DocumentWorkflow,
    TAXPAYER_TYPE,
    bool_text,
    build_envelope,
    country_code,
    form_namespace,
    format_date_dmy,
    format_decimal,
    serialize,
    sub,
)
from .models import Dividend, TaxpayerIdentity
from .rates import REPORTING_CURRENCY

DIV_FORM = "Doh_Div_3"
CSV_FORM_CODE = "DOH_DIV"
CSV_FORM_VERSION = "3.9"
DIVIDEND_TYPE = "1"  # ordinary dividend
AMOUNT_PLACES = 2

CSV_COLUMNS = (
    "date",
    "payer_tax_number",
    "payer_id",
    "payer_name",
    "payer_address",
    "payer_country",
    "type",
    "value",
    "foreign_tax",
    "source_country",
    "relief_statement",
)


@dataclass(frozen=True)
class PreparedDividend:
    """A dividend as it is declared: final amounts, country code and disambiguation index."""
    date: str
    security_id: str
    name: str
    country: str
    value: Decimal
    foreign_tax: Optional[Decimal]
    sequence: Optional[int] = None

    @property
    def payer_name(self) -> str:
        return f"{self.name} ({self.sequence})" if self.sequence else self.name


def _amounts(div: Dividend) -> Tuple[Decimal, Optional[Decimal]]:
    value = div.gross_amount_eur.amount if div.gross_amount_eur else div.gross_amount
    if (div.currency or "").strip().upper() == REPORTING_CURRENCY:
        # Domestic-currency payers declare no foreign tax: the field stays empty, not zero.
        return value, None
    tax = div.withholding_tax_eur.amount if div.withholding_tax_eur else div.withholding_tax
    return value, tax


def assign_sequence_numbers(dividends: List[PreparedDividend]) -> List[PreparedDividend]:
    """Number repeated (date, security) pairs 2, 3, ...; the first occurrence stays unnumbered."""
    seen: Dict[Tuple[str, str], int] = {}
    numbered = []
    for div in dividends:
        key = (div.date, div.security_id)
        seen[key] = seen.get(key, 0) + 1
        count = seen[key]
        numbered.append(div if count == 1 else replace(div, sequence=count))
    return numbered


def prepare_dividends(dividends: Iterable[Dividend]) -> List[PreparedDividend]:
    """Drop non-positive amounts, sort by date and number same-day repeats per security."""
    kept = [d for d in dividends if d.gross_amount > 0]
    kept.sort(key=lambda d: d.date)
    prepared = []
    for div in kept:
        value, tax = _amounts(div)
        prepared.append(PreparedDividend(
            date=div.date,
            security_id=div.security_id,
            name=div.security_name or div.symbol,
            country=country_code(div.country),
            value=value,
            foreign_tax=tax,
        ))
    return assign_sequence_numbers(prepared)


def generate_div_xml(
    dividends: Iterable[Dividend],
    year: int,
    taxpayer: TaxpayerIdentity,
    test_mode: bool = False,
) -> str:
    """Render the Doh-Div (dividends) declaration as XML, one Dividend element per payment."""
    ns = form_namespace(DIV_FORM)
    workflow = DocumentWorkflow.for_mode(test_mode)
    prepared = prepare_dividends(dividends)
    envelope, body = build_envelope(DIV_FORM, taxpayer, workflow)

    doc = sub(body, ns, "Doh_Div")
    sub(doc, ns, "Period", str(year))
    sub(doc, ns, "EmailAddress", taxpayer.email or "")
    sub(doc, ns, "PhoneNumber", taxpayer.telephone_number or "")
    sub(doc, ns, "ResidentCountry", taxpayer.resident_country or "")
    sub(doc, ns, "IsResident", bool_text(True))
    sub(doc, ns, "SelfReport", bool_text(False))

    for div in prepared:
        item = sub(body, ns, "Dividend")
        sub(item, ns, "Date", div.date)
        sub(item, ns, "PayerIdentificationNumber", div.security_id)
        sub(item, ns, "PayerName", div.payer_name)
        sub(item, ns, "PayerCountry", div.country)
        sub(item, ns, "Type", DIVIDEND_TYPE)
        sub(item, ns, "Value", format_decimal(div.value, AMOUNT_PLACES))
        if div.foreign_tax is not None:
            sub(item, ns, "ForeignTax", format_decimal(div.foreign_tax, AMOUNT_PLACES))
        sub(item, ns, "SourceCountry", div.country)

    logging.info("Doh-Div %d: %d dividend(s), workflow %s.", year, len(prepared), workflow.value)
    return serialize(envelope, DIV_FORM)


def _pad(cells: List[str]) -> List[str]:
    return cells + [""] * (len(CSV_COLUMNS) - len(cells))


def generate_div_csv(
    dividends: Iterable[Dividend],
    year: int,
    taxpayer: TaxpayerIdentity,
    test_mode: bool = False,
) -> str:
    """Render the Doh-Div declaration in the eDavki CSV import format.

    Two form-identification lines are followed by one semicolon-separated row
    per dividend with dates as DD.MM.YYYY. Fields containing a semicolon,
    quote or line break are wrapped in quotes with inner quotes doubled.
    """
    workflow = DocumentWorkflow.for_mode(test_mode)
    prepared = prepare_dividends(dividends)
    rows = [
        _pad(["#FormCode", "Version", "TaxPayerID", "TaxPayerType", "DocumentWorkflowID"]),
        _pad([CSV_FORM_CODE, CSV_FORM_VERSION, taxpayer.tax_number or "", TAXPAYER_TYPE, workflow.value]),
    ]
    for div in prepared:
        rows.append([
            format_date_dmy(div.date),
            "",
            div.security_id,
            div.payer_name,
            "",
            div.country,
            DIVIDEND_TYPE,
            format_decimal(div.value, AMOUNT_PLACES),
            format_decimal(div.foreign_tax, AMOUNT_PLACES) if div.foreign_tax is not None else "",
            div.country,
            "",
        ])
    frame = pd.DataFrame(rows, columns=list(CSV_COLUMNS), dtype=str)
    logging.info("Doh-Div CSV %d: %d dividend(s), workflow %s.", year, len(prepared), workflow.value)
    return frame.to_csv(sep=";", header=False, index=False, lineterminator="\n")
