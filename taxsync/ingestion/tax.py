"""
Tax calculation collaborator.

The ingestion engine hands every order's raw tax lines and addresses to a
TaxCalculator and stores whatever breakdown it returns on the ledger row.
The default calculator buckets tax lines into compliance categories by
their title and checks the bucket sum against the order's reported tax.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

TAX_CATEGORIES = ("gst", "pst", "hst", "qst", "state", "local", "other")

# Breakdown and reported total may differ by rounding on each line.
VALIDATION_TOLERANCE = 1

_EXACT_TITLES = {
    "GST": "gst",
    "HST": "hst",
    "PST": "pst",
    "QST": "qst",
    "QUEBEC SALES TAX": "qst",
    "GOODS AND SERVICES TAX": "gst",
    "HARMONIZED SALES TAX": "hst",
    "PROVINCIAL SALES TAX": "pst",
    "SALES TAX": "state",
    "STATE TAX": "state",
    "LOCAL TAX": "local",
    "CITY TAX": "local",
    "COUNTY TAX": "local",
    "VAT": "other",
    "VALUE ADDED TAX": "other",
}

# Checked in order; first match wins.
_TITLE_PATTERNS = (
    ("gst", ("GST", "GOODS AND SERVICE")),
    ("pst", ("PST", "PROVINCIAL")),
    ("hst", ("HST", "HARMONIZED")),
    ("qst", ("QST", "QUEBEC")),
    ("state", ("STATE", "SALES TAX")),
    ("local", ("LOCAL", "CITY", "COUNTY")),
)


class Address(BaseModel):
    """Postal address as it appears on an order."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    country_code: Optional[str] = None
    country: Optional[str] = None
    province_code: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


class TaxLineInput(BaseModel):
    """One tax line of an order, amount in minor units."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    amount: int = 0
    rate: float = 0.0
    currency: Optional[str] = None


class Jurisdiction(BaseModel):
    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class TaxBreakdown(BaseModel):
    """Per-category tax amounts plus a validation signal."""

    categories: Dict[str, int] = Field(
        default_factory=lambda: {category: 0 for category in TAX_CATEGORIES}
    )
    lines: List[Dict[str, Any]] = Field(default_factory=list)
    jurisdiction: Jurisdiction = Field(default_factory=Jurisdiction)
    calculated_total: int = 0
    reported_total: int = 0
    difference: int = 0
    is_valid: bool = True


def categorize_tax_title(title: str) -> str:
    """Map a tax line title (e.g. "BC PST") to a compliance category."""
    upper = (title or "").strip().upper()
    if upper in _EXACT_TITLES:
        return _EXACT_TITLES[upper]
    for category, needles in _TITLE_PATTERNS:
        if any(needle in upper for needle in needles):
            return category
    return "other"


def resolve_jurisdiction(
    billing_address: Optional[Address], shipping_address: Optional[Address]
) -> Jurisdiction:
    """Billing address wins; shipping address is the fallback."""
    address = billing_address or shipping_address
    if address is None:
        return Jurisdiction()
    return Jurisdiction(
        country=address.country_code or address.country,
        province=address.province_code or address.province,
        city=address.city,
        postal_code=address.zip,
    )


class TaxCalculator(ABC):
    """Interface of the tax calculation collaborator."""

    @abstractmethod
    def calculate(
        self,
        tax_lines: Sequence[TaxLineInput],
        billing_address: Optional[Address],
        shipping_address: Optional[Address],
        reported_total: int,
        currency: str = "USD",
    ) -> TaxBreakdown:
        """Return a per-category breakdown for one order or refund."""


class CategoryTaxCalculator(TaxCalculator):
    """Default calculator: buckets tax lines by title."""

    def __init__(self, tolerance: int = VALIDATION_TOLERANCE):
        self.tolerance = tolerance

    def calculate(
        self,
        tax_lines: Sequence[TaxLineInput],
        billing_address: Optional[Address],
        shipping_address: Optional[Address],
        reported_total: int,
        currency: str = "USD",
    ) -> TaxBreakdown:
        jurisdiction = resolve_jurisdiction(billing_address, shipping_address)
        breakdown = TaxBreakdown(jurisdiction=jurisdiction, reported_total=reported_total)

        for line in tax_lines:
            category = categorize_tax_title(line.title)
            breakdown.categories[category] += line.amount
            breakdown.lines.append(
                {
                    "type": category,
                    "title": line.title,
                    "amount": line.amount,
                    "rate": line.rate,
                    "currency": line.currency or currency,
                }
            )

        breakdown.calculated_total = sum(breakdown.categories.values())
        breakdown.difference = breakdown.calculated_total - reported_total
        breakdown.is_valid = abs(breakdown.difference) <= self.tolerance
        return breakdown
