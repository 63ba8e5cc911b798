import io
import logging
import re
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import pandas as pd

from .models import Dividend, StatementExport, Trade
from .validation import check_dropped_rows

SELLS = "sells"
DIVIDENDS = "dividends"

# Ordered (alias, section kind) pairs; for each kind the first alias present wins.
DEFAULT_SECTION_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("Income from Sells", SELLS),
    ("Trades", SELLS),
    ("Sales", SELLS),
    ("Dividends", DIVIDENDS),
    ("Other income & fees", DIVIDENDS),
    ("Dividend income", DIVIDENDS),
)

_NUMBER_JUNK = re.compile(r"[€$£,\s]")

T = TypeVar("T")


def parse_number(value: Optional[str]) -> Decimal:
    """Parse a statement amount such as '€3.55' or '"3,654.20"'; anything unparsable is zero."""
    if not value:
        return Decimal("0")
    clean = _NUMBER_JUNK.sub("", str(value))
    try:
        number = Decimal(clean)
    except InvalidOperation:
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


def parse_date(value: Optional[str]) -> str:
    """Keep the date part of a 'YYYY-MM-DD hh:mm:ss' timestamp."""
    tokens = (value or "").split()
    return tokens[0] if tokens else ""


def _is_marker(line: str, alias: str) -> bool:
    first_cell = line.split(",", 1)[0].strip().strip('"').strip().lower()
    alias = alias.lower()
    return first_cell == alias or first_cell.startswith(alias + " ")


def _find_section(lines: List[str], aliases: Sequence[str]) -> int:
    """Return the line index of the first alias (in alias order) found, or -1."""
    for alias in aliases:
        for idx, line in enumerate(lines):
            if _is_marker(line, alias):
                return idx
    return -1


def _read_rows(block: str) -> pd.DataFrame:
    """Read a header + rows block; a block pandas cannot make sense of yields no rows."""
    if not block.strip():
        return pd.DataFrame()
    try:
        df = pd.read_csv(
            io.StringIO(block),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            index_col=False,
            engine="python",
            on_bad_lines="skip",
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        logging.warning("Could not read statement section: %s", exc)
        return pd.DataFrame()
    df.columns = [str(c).strip() for c in df.columns]
    return df.fillna("")


def _parse_section(
    lines: List[str],
    start: int,
    end: int,
    mapper: Callable[[Dict[str, str]], Optional[T]],
    label: str,
) -> List[T]:
    if start == -1:
        return []
    df = _read_rows("\n".join(lines[start + 1:end]))
    results: List[T] = []
    for _, row in df.iterrows():
        mapped = mapper({k: str(v).strip() for k, v in row.items()})
        if mapped is not None:
            results.append(mapped)
    check_dropped_rows(label, len(df), len(results))
    return results


def _to_trade(row: Dict[str, str]) -> Optional[Trade]:
    symbol = row.get("Symbol", "")
    date_sold = parse_date(row.get("Date sold"))
    if not symbol or not date_sold:
        return None
    return Trade(
        date_acquired=parse_date(row.get("Date acquired")),
        date_sold=date_sold,
        symbol=symbol,
        security_name=row.get("Security name", ""),
        isin=row.get("ISIN", ""),
        country=row.get("Country", ""),
        quantity=parse_number(row.get("Quantity")),
        cost_basis=parse_number(row.get("Cost basis")),
        gross_proceeds=parse_number(row.get("Gross proceeds")),
        gross_pnl=parse_number(row.get("Gross PnL")),
        currency=row.get("Currency", ""),
    )


def _to_dividend(row: Dict[str, str]) -> Optional[Dividend]:
    # Negative or zero amounts are fees and fee reversals, rows without ISIN are not dividends.
    symbol = row.get("Symbol", "")
    isin = row.get("ISIN", "")
    gross_amount = parse_number(row.get("Gross amount"))
    if not symbol or not isin or gross_amount <= 0:
        return None
    net_raw = row.get("Net Amount") or row.get("Net amount")
    return Dividend(
        date=parse_date(row.get("Date")),
        symbol=symbol,
        security_name=row.get("Security name", ""),
        isin=isin,
        country=row.get("Country", ""),
        gross_amount=gross_amount,
        withholding_tax=parse_number(row.get("Withholding tax")),
        net_amount=parse_number(net_raw) if net_raw else None,
        currency=row.get("Currency", ""),
    )


def parse_statement(
    raw_text: str,
    section_aliases: Sequence[Tuple[str, str]] = DEFAULT_SECTION_ALIASES,
) -> StatementExport:
    """Extract trades and dividends from a Revolut profit-and-loss statement.

    The statement holds titled blocks ("Income from Sells", "Other income &
    fees", ...), each followed by its own header row and data rows. The sells
    block runs until the dividends block (or end of input), the dividends block
    until the sells block if that comes later, otherwise to end of input.
    Columns are looked up by header name.

    Never raises for malformed input: rows that are not trades or dividends are
    dropped, and a statement without recognizable sections yields an empty export.

    Args:
        raw_text: Statement contents.
        section_aliases: Ordered (alias, kind) pairs, kind being 'sells' or 'dividends'.

    Returns:
        StatementExport with trades and dividends in statement order.
    """
    for _, kind in section_aliases:
        if kind not in (SELLS, DIVIDENDS):
            raise ValueError(f"Unknown section kind: {kind!r}")

    lines = raw_text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    sells_start = _find_section(lines, [a for a, k in section_aliases if k == SELLS])
    div_start = _find_section(lines, [a for a, k in section_aliases if k == DIVIDENDS])

    sells_end = div_start if div_start > sells_start else len(lines)
    div_end = sells_start if sells_start > div_start else len(lines)

    trades = _parse_section(lines, sells_start, sells_end, _to_trade, "sells")
    dividends = _parse_section(lines, div_start, div_end, _to_dividend, "dividends")
    logging.info("Parsed %d trade(s) and %d dividend(s) from statement.", len(trades), len(dividends))
    return StatementExport(trades=tuple(trades), dividends=tuple(dividends))


def filter_by_year(export: StatementExport, year: Union[int, str]) -> StatementExport:
    """Keep trades sold and dividends paid in ``year``; conversion metadata passes through."""
    prefix = f"{year}-"
    return replace(
        export,
        trades=tuple(t for t in export.trades if t.date_sold.startswith(prefix)),
        dividends=tuple(d for d in export.dividends if d.date.startswith(prefix)),
    )


def available_years(export: StatementExport) -> List[int]:
    """Years present in the statement, most recent first."""
    dates = [t.date_sold for t in export.trades] + [d.date for d in export.dividends]
    years = {int(d[:4]) for d in dates if d[:4].isdigit()}
    return sorted(years, reverse=True)
