from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from app.services.catalog_service import ProductMatch

DEFAULT_QUOTE_NUMBER = "NF-1"
DEFAULT_CUSTOMER_NAME = "Клиент"


class QuoteError(Exception):
    pass


@dataclass
class QuoteCustomer:
    name: str = ""
    phone: str = ""
    city: str = ""


@dataclass
class QuoteItem:
    product_id: int
    name: str
    qty: int
    unit_price: int
    line_total: int


@dataclass
class Quote:
    number: str
    created_at: datetime
    customer: QuoteCustomer
    items: list[QuoteItem] = field(default_factory=list)
    discount_percent: int = 0
    subtotal: int = 0
    discount_amount: int = 0
    total: int = 0
    comment: str = ""


def product_name(product: ProductMatch) -> str:
    name = (product.metadata or {}).get("name")
    if isinstance(name, str) and name.strip():
        return name
    content = product.content or ""
    cut = content.find(" | ")
    if cut > 0:
        return content[:cut].strip()
    return content.strip()


def product_price(product: ProductMatch) -> int:
    """Whole-unit price from metadata; 0 when missing or unparseable."""
    raw: Any = (product.metadata or {}).get("price")
    if isinstance(raw, bool) or raw is None:
        return 0
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(float(raw.strip().replace(",", ".")))
        except ValueError:
            return 0
    return 0


def _totals(quote: Quote) -> Quote:
    quote.subtotal = sum(item.line_total for item in quote.items)
    quote.discount_amount = quote.subtotal * quote.discount_percent // 100
    quote.total = quote.subtotal - quote.discount_amount
    return quote


def assemble_quote(
    products: Iterable[ProductMatch],
    discount_percent: int = 0,
    customer: Optional[QuoteCustomer] = None,
) -> Quote:
    """One line per priced product at quantity 1. Raises QuoteError when nothing is priced."""
    quote = Quote(
        number=DEFAULT_QUOTE_NUMBER,
        created_at=datetime.now(timezone.utc),
        customer=customer or QuoteCustomer(name=DEFAULT_CUSTOMER_NAME),
        discount_percent=discount_percent,
    )
    for product in products:
        price = product_price(product)
        if price <= 0:
            continue
        quote.items.append(
            QuoteItem(
                product_id=product.id,
                name=product_name(product),
                qty=1,
                unit_price=price,
                line_total=price,
            )
        )
    if not quote.items:
        raise QuoteError("no priced products for quote")
    return _totals(quote)


def build_quote(
    items: Iterable[QuoteItem],
    customer: QuoteCustomer,
    discount_percent: int = 0,
    comment: str = "",
) -> Quote:
    """Quote from caller-supplied lines; every line needs qty > 0."""
    quote = Quote(
        number=DEFAULT_QUOTE_NUMBER,
        created_at=datetime.now(timezone.utc),
        customer=customer,
        discount_percent=discount_percent,
        comment=comment,
    )
    for item in items:
        if item.qty <= 0:
            raise QuoteError("qty must be > 0")
        item.line_total = item.unit_price * item.qty
        quote.items.append(item)
    return _totals(quote)
