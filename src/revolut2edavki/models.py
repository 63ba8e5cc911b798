from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Converted:
    """A reporting-currency (EUR) amount together with the rate used to obtain it.

    Rates follow the ECB quotation: 1 EUR = ``rate`` foreign units.
    """
    amount: Decimal
    rate: Decimal

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(f"Conversion rate must be positive, got {self.rate}")


@dataclass(frozen=True)
class Trade:
    """A closed position from the 'Income from Sells' section."""
    date_acquired: str
    date_sold: str
    symbol: str
    security_name: str
    isin: str
    country: str
    quantity: Decimal
    cost_basis: Decimal
    gross_proceeds: Decimal
    gross_pnl: Decimal
    currency: str
    cost_basis_eur: Optional[Converted] = None
    gross_proceeds_eur: Optional[Converted] = None
    gross_pnl_eur: Optional[Decimal] = None

    @property
    def security_id(self) -> str:
        return self.isin or self.symbol

    @property
    def is_converted(self) -> bool:
        return self.cost_basis_eur is not None and self.gross_proceeds_eur is not None

    @property
    def exchange_rate_acquired(self) -> Optional[Decimal]:
        return self.cost_basis_eur.rate if self.cost_basis_eur else None

    @property
    def exchange_rate_sold(self) -> Optional[Decimal]:
        return self.gross_proceeds_eur.rate if self.gross_proceeds_eur else None


@dataclass(frozen=True)
class Dividend:
    """A dividend payment from the 'Other income & fees' section. Gross amount is always > 0."""
    date: str
    symbol: str
    security_name: str
    isin: str
    country: str
    gross_amount: Decimal
    withholding_tax: Decimal
    currency: str
    net_amount: Optional[Decimal] = None
    gross_amount_eur: Optional[Converted] = None
    withholding_tax_eur: Optional[Converted] = None

    @property
    def security_id(self) -> str:
        return self.isin or self.symbol

    @property
    def is_converted(self) -> bool:
        return self.gross_amount_eur is not None

    @property
    def exchange_rate(self) -> Optional[Decimal]:
        return self.gross_amount_eur.rate if self.gross_amount_eur else None


@dataclass(frozen=True)
class StatementExport:
    """Parsed statement plus conversion metadata attached by the normalizer."""
    trades: Tuple[Trade, ...] = ()
    dividends: Tuple[Dividend, ...] = ()
    conversion_applied: bool = False
    missing_rate_dates: Tuple[str, ...] = ()
    conversion_errors: Tuple[str, ...] = ()


# camelCase keys used by the browser version's stored taxpayer config
_IDENTITY_ALIASES = {
    "taxNumber": "tax_number",
    "postNumber": "post_number",
    "postName": "post_name",
    "telephoneNumber": "telephone_number",
    "residentCountry": "resident_country",
}


@dataclass(frozen=True)
class TaxpayerIdentity:
    """Identification block of the eDavki header, rendered as given."""
    tax_number: str = ""
    name: str = ""
    address: str = ""
    post_number: str = ""
    post_name: str = ""
    city: str = ""
    email: Optional[str] = None
    telephone_number: Optional[str] = None
    resident_country: str = "SI"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaxpayerIdentity":
        known = {f for f in cls.__dataclass_fields__}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _IDENTITY_ALIASES.get(key, key)
            if name in known and value is not None:
                kwargs[name] = str(value)
        return cls(**kwargs)


@dataclass
class RateResolution:
    """Outcome of a rate lookup: rates found, dates without a rate, fetch errors."""
    rates: Dict[str, Decimal] = field(default_factory=dict)
    missing_dates: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.missing_dates
