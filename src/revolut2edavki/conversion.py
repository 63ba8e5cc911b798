import logging
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Set

from .models import Converted, Dividend, RateResolution, StatementExport, Trade
from .rates import REPORTING_CURRENCY, RateResolver
from .validation import check_conversion_complete

ONE = Decimal("1")

ResolverFactory = Callable[[str], RateResolver]


def convert_to_eur(amount: Decimal, rate: Optional[Decimal]) -> Optional[Decimal]:
    """Convert a foreign amount with an ECB rate (1 EUR = rate units); None for an unusable rate."""
    if rate is None or rate <= 0:
        return None
    return amount / rate


def _converted(amount: Decimal, rate: Optional[Decimal]) -> Optional[Converted]:
    eur = convert_to_eur(amount, rate)
    return Converted(eur, rate) if eur is not None else None


def _currency(code: str) -> str:
    return (code or "").strip().upper()


def _dates_by_currency(export: StatementExport, reporting_currency: str) -> Dict[str, Set[str]]:
    """Foreign currency -> dates needing a rate. Blank currencies cannot be resolved and are skipped."""
    needed: Dict[str, Set[str]] = {}
    for trade in export.trades:
        ccy = _currency(trade.currency)
        if ccy and ccy != reporting_currency:
            needed.setdefault(ccy, set()).update((trade.date_acquired, trade.date_sold))
    for div in export.dividends:
        ccy = _currency(div.currency)
        if ccy and ccy != reporting_currency:
            needed.setdefault(ccy, set()).add(div.date)
    return needed


def _normalize_trade(trade: Trade, rates: Mapping[str, Decimal], reporting_currency: str) -> Trade:
    if _currency(trade.currency) == reporting_currency:
        return replace(
            trade,
            cost_basis_eur=Converted(trade.cost_basis, ONE),
            gross_proceeds_eur=Converted(trade.gross_proceeds, ONE),
            gross_pnl_eur=trade.gross_pnl,
        )
    cost = _converted(trade.cost_basis, rates.get(trade.date_acquired))
    proceeds = _converted(trade.gross_proceeds, rates.get(trade.date_sold))
    if cost is None or proceeds is None:
        return trade
    # Gain is recomputed from the converted legs, not converted from the native gain.
    return replace(
        trade,
        cost_basis_eur=cost,
        gross_proceeds_eur=proceeds,
        gross_pnl_eur=proceeds.amount - cost.amount,
    )


def _normalize_dividend(div: Dividend, rates: Mapping[str, Decimal], reporting_currency: str) -> Dividend:
    if _currency(div.currency) == reporting_currency:
        return replace(
            div,
            gross_amount_eur=Converted(div.gross_amount, ONE),
            withholding_tax_eur=Converted(div.withholding_tax, ONE),
        )
    rate = rates.get(div.date)
    gross = _converted(div.gross_amount, rate)
    if gross is None:
        return div
    return replace(div, gross_amount_eur=gross, withholding_tax_eur=_converted(div.withholding_tax, rate))


def normalize_export(
    export: StatementExport,
    resolver_factory: ResolverFactory = RateResolver,
    reporting_currency: str = REPORTING_CURRENCY,
) -> StatementExport:
    """Attach EUR equivalents to every trade and dividend of ``export``.

    Records already in EUR get their native values with rate 1. Foreign
    records are converted with the ECB rate of their own dates (acquisition
    and disposal for trades, payment date for dividends); all dates of one
    currency are resolved in a single batch. Records whose rates cannot be
    found are left without EUR values, which means "conversion incomplete",
    never zero.

    Args:
        export: Parsed (and usually year-filtered) statement.
        resolver_factory: Builds a resolver for a currency code.
        reporting_currency: Target currency code.

    Returns:
        A new StatementExport with conversion_applied=True and the missing
        dates / errors reported by rate resolution, or ``export`` itself when
        nothing needs converting.
    """
    reporting_currency = reporting_currency.upper()
    needed = _dates_by_currency(export, reporting_currency)
    blank = sum(1 for r in list(export.trades) + list(export.dividends) if not _currency(r.currency))
    if not needed and not blank:
        logging.info("No records need conversion to %s.", reporting_currency)
        return export

    errors: List[str] = []
    missing: Set[str] = set()
    rates_by_currency: Dict[str, Dict[str, Decimal]] = {}
    for ccy, dates in sorted(needed.items()):
        resolution: RateResolution = resolver_factory(ccy).resolve(dates)
        rates_by_currency[ccy] = resolution.rates
        missing.update(resolution.missing_dates)
        errors.extend(resolution.errors)

    if blank:
        errors.append(f"{blank} record(s) have no currency and were not converted.")
        logging.warning("%d record(s) have no currency and were not converted.", blank)

    trades = tuple(
        _normalize_trade(t, rates_by_currency.get(_currency(t.currency), {}), reporting_currency)
        for t in export.trades
    )
    dividends = tuple(
        _normalize_dividend(d, rates_by_currency.get(_currency(d.currency), {}), reporting_currency)
        for d in export.dividends
    )
    normalized = replace(
        export,
        trades=trades,
        dividends=dividends,
        conversion_applied=True,
        missing_rate_dates=tuple(sorted(missing)),
        conversion_errors=tuple(errors),
    )
    check_conversion_complete(normalized)
    return normalized
