from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from rich.console import Console
from rich.text import Text

from .formatting import format_decimal
from .models import Dividend, StatementExport, Trade
from .rates import REPORTING_CURRENCY

_console = Console()


def _row(label: str, value: str, warn: bool = False) -> Text:
    """Build one summary line; warnings are rendered in bright yellow."""
    text = Text()
    text.append(f"  {label}: ", style="bright_yellow" if warn else "")
    text.append(value, style="bright_yellow bold" if warn else "bold")
    return text


def _is_eur(currency: str) -> bool:
    return (currency or "").strip().upper() == REPORTING_CURRENCY


def trade_pnl_eur(trade: Trade) -> Optional[Decimal]:
    if trade.gross_pnl_eur is not None:
        return trade.gross_pnl_eur
    return trade.gross_pnl if _is_eur(trade.currency) else None


def dividend_amounts_eur(div: Dividend) -> Optional[Tuple[Decimal, Decimal]]:
    if div.gross_amount_eur is not None:
        tax = div.withholding_tax_eur.amount if div.withholding_tax_eur else Decimal("0")
        return div.gross_amount_eur.amount, tax
    if _is_eur(div.currency):
        return div.gross_amount, div.withholding_tax
    return None


@dataclass(frozen=True)
class StatementSummary:
    """EUR totals of a (year-filtered, normalized) statement, for the console."""
    year: Optional[int]
    trade_count: int
    total_pnl: Decimal
    dividend_count: int
    total_dividends: Decimal
    total_withholding_tax: Decimal
    unconverted_trades: int = 0
    unconverted_dividends: int = 0
    missing_rate_dates: Tuple[str, ...] = ()
    conversion_errors: Tuple[str, ...] = ()

    def __getitem__(self, key: str):
        return getattr(self, key)

    @property
    def complete(self) -> bool:
        return not (self.unconverted_trades or self.unconverted_dividends or self.missing_rate_dates)

    def print(self) -> None:
        """Print totals and conversion warnings in CLI-friendly, coloured format."""
        _console.print()
        title = Text()
        title.append("Revolut statement for year ", style="bold cyan")
        title.append(str(self.year), style="bold cyan underline")
        _console.print(title)

        _console.print()
        _console.print(Text("Doh-KDVP - disposal of securities:", style="bold blue"))
        _console.print(_row("Trades", str(self.trade_count)))
        _console.print(_row("Gain/loss", f"{format_decimal(self.total_pnl, 2)} EUR"))

        _console.print()
        _console.print(Text("Doh-Div - dividends:", style="bold blue"))
        _console.print(_row("Dividends", str(self.dividend_count)))
        _console.print(_row("Gross amount", f"{format_decimal(self.total_dividends, 2)} EUR"))
        _console.print(_row("Withholding tax", f"{format_decimal(self.total_withholding_tax, 2)} EUR"))

        if self.unconverted_trades or self.unconverted_dividends:
            _console.print()
            _console.print(_row(
                "Not converted to EUR (excluded from totals, reported in native currency)",
                f"{self.unconverted_trades} trade(s), {self.unconverted_dividends} dividend(s)",
                warn=True,
            ))
        if self.missing_rate_dates:
            _console.print(_row("No exchange rate for", ", ".join(self.missing_rate_dates), warn=True))
        for error in self.conversion_errors:
            _console.print(_row("Conversion error", error, warn=True))
        _console.print()


def summarize(export: StatementExport, year: Optional[int] = None) -> StatementSummary:
    """Aggregate EUR totals; records without EUR values are counted, not summed."""
    pnl = [trade_pnl_eur(t) for t in export.trades]
    divs = [dividend_amounts_eur(d) for d in export.dividends]
    return StatementSummary(
        year=year,
        trade_count=len(export.trades),
        total_pnl=sum((p for p in pnl if p is not None), Decimal("0")),
        dividend_count=len(export.dividends),
        total_dividends=sum((d[0] for d in divs if d is not None), Decimal("0")),
        total_withholding_tax=sum((d[1] for d in divs if d is not None), Decimal("0")),
        unconverted_trades=sum(1 for p in pnl if p is None),
        unconverted_dividends=sum(1 for d in divs if d is None),
        missing_rate_dates=tuple(export.missing_rate_dates),
        conversion_errors=tuple(export.conversion_errors),
    )
