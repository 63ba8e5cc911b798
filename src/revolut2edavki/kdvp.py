import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from .formatting import (
    DocumentWorkflow,
    bool_text,
    build_envelope,
    form_namespace,
    format_decimal,
    serialize,
    sub,
)
from .models import TaxpayerIdentity, Trade

KDVP_FORM = "Doh_KDVP_9"
INVENTORY_LIST_TYPE = "PLVP"  # securities
ACQUISITION_PURCHASE = "B"
QUANTITY_PLACES = 4
PRICE_PLACES = 4


def group_trades(trades: Iterable[Trade]) -> List[Tuple[str, List[Trade]]]:
    """Group trades by ISIN (symbol when ISIN is missing), in order of first appearance.

    Trades inside a group are sorted by disposal date; trades sold on the same
    day keep their statement order.
    """
    groups: Dict[str, List[Trade]] = OrderedDict()
    for trade in trades:
        groups.setdefault(trade.security_id, []).append(trade)
    return [(key, sorted(items, key=lambda t: t.date_sold)) for key, items in groups.items()]


def trade_amounts(trade: Trade) -> Tuple[Decimal, Decimal]:
    """(cost basis, proceeds) in EUR when converted, otherwise in the trade currency."""
    if trade.is_converted:
        return trade.cost_basis_eur.amount, trade.gross_proceeds_eur.amount
    return trade.cost_basis, trade.gross_proceeds


def unit_price(total: Decimal, quantity: Decimal) -> Decimal:
    return total / quantity if quantity else Decimal("0")


def _add_rows(securities, ns: str, trades: List[Trade]) -> None:
    # Each trade is a closed round trip: the balance goes up by the purchase and back down by the sale.
    balance = Decimal("0")
    row_id = 0
    for trade in trades:
        cost, proceeds = trade_amounts(trade)
        qty = trade.quantity

        balance += qty
        row = sub(securities, ns, "Row")
        sub(row, ns, "ID", str(row_id))
        purchase = sub(row, ns, "Purchase")
        sub(purchase, ns, "F1", trade.date_acquired)
        sub(purchase, ns, "F2", ACQUISITION_PURCHASE)
        sub(purchase, ns, "F3", format_decimal(qty, QUANTITY_PLACES))
        sub(purchase, ns, "F4", format_decimal(unit_price(cost, qty), PRICE_PLACES))
        sub(purchase, ns, "F5", format_decimal(0, PRICE_PLACES))
        sub(row, ns, "F8", format_decimal(balance, QUANTITY_PLACES))
        row_id += 1

        balance -= qty
        row = sub(securities, ns, "Row")
        sub(row, ns, "ID", str(row_id))
        sale = sub(row, ns, "Sale")
        sub(sale, ns, "F6", trade.date_sold)
        sub(sale, ns, "F7", format_decimal(qty, QUANTITY_PLACES))
        sub(sale, ns, "F9", format_decimal(unit_price(proceeds, qty), PRICE_PLACES))
        sub(sale, ns, "F10", bool_text(False))
        sub(row, ns, "F8", format_decimal(balance, QUANTITY_PLACES))
        row_id += 1


def generate_kdvp_xml(
    trades: Iterable[Trade],
    year: int,
    taxpayer: TaxpayerIdentity,
    test_mode: bool = False,
) -> str:
    """Render the Doh-KDVP (capital gains) declaration.

    One KDVPItem per security, holding a purchase row and a sale row for every
    trade, each followed by the running quantity balance (F8). Unit prices are
    cost basis / quantity and proceeds / quantity, in EUR when the trade was
    converted and in its own currency otherwise.

    Args:
        trades: Trades to declare, normally those sold in ``year``.
        year: Tax year.
        taxpayer: Identity rendered in the header; missing contact fields render empty.
        test_mode: Informative (trial) submission instead of an original one.

    Returns:
        The XML document as text.
    """
    ns = form_namespace(KDVP_FORM)
    workflow = DocumentWorkflow.for_mode(test_mode)
    groups = group_trades(trades)
    envelope, body = build_envelope(KDVP_FORM, taxpayer, workflow)

    doc = sub(body, ns, "Doh_KDVP")
    kdvp = sub(doc, ns, "KDVP")
    sub(kdvp, ns, "DocumentWorkflowID", workflow.value)
    sub(kdvp, ns, "Year", str(year))
    sub(kdvp, ns, "PeriodStart", f"{year}-01-01")
    sub(kdvp, ns, "PeriodEnd", f"{year}-12-31")
    sub(kdvp, ns, "IsResident", bool_text(True))
    sub(kdvp, ns, "TelephoneNumber", taxpayer.telephone_number or "")
    sub(kdvp, ns, "SecurityCount", str(len(groups)))
    sub(kdvp, ns, "SecurityShortCount", "0")
    sub(kdvp, ns, "SecurityWithContractCount", "0")
    sub(kdvp, ns, "SecurityWithContractShortCount", "0")
    sub(kdvp, ns, "ShareCount", "0")
    sub(kdvp, ns, "Email", taxpayer.email or "")

    for item_id, (_, group) in enumerate(groups, start=1):
        first = group[0]
        name = first.security_name or first.symbol
        item = sub(doc, ns, "KDVPItem")
        sub(item, ns, "ItemID", str(item_id))
        sub(item, ns, "InventoryListType", INVENTORY_LIST_TYPE)
        sub(item, ns, "Name", name)
        sub(item, ns, "HasForeignTax", bool_text(False))
        sub(item, ns, "HasLossTransfer", bool_text(False))
        sub(item, ns, "ForeignTransfer", bool_text(False))
        sub(item, ns, "TaxDecreaseConformance", bool_text(False))
        securities = sub(item, ns, "Securities")
        if first.isin:
            sub(securities, ns, "ISIN", first.isin)
        sub(securities, ns, "Code", first.symbol)
        sub(securities, ns, "Name", name)
        sub(securities, ns, "IsFond", bool_text(False))
        _add_rows(securities, ns, group)

    trade_count = sum(len(g) for _, g in groups)
    logging.info("Doh-KDVP %d: %d security item(s), %d trade(s), workflow %s.",
                 year, len(groups), trade_count, workflow.value)
    return serialize(envelope, KDVP_FORM)
