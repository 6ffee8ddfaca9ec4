from pathlib import Path

import pytest

from app.services.catalog_service import ProductMatch
from app.services.quote_renderer import QuoteRenderer, QuoteRenderError
from app.services.quote_service import (
    QuoteCustomer,
    QuoteError,
    QuoteItem,
    assemble_quote,
    build_quote,
    product_name,
    product_price,
)
from conftest import make_product

DEJAVU = "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"
DEJAVU_BOLD = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"


class TestProductFields:
    def test_name_from_metadata(self):
        assert product_name(make_product(1, name="Рамка")) == "Рамка"

    def test_name_from_content(self):
        product = ProductMatch(id=1, content="Розетка Legrand | Цена: 1500")
        assert product_name(product) == "Розетка Legrand"

    @pytest.mark.parametrize(
        "raw,expected",
        [(1500, 1500), (1499.9, 1499), ("2 000", 0), ("1250,50", 1250), (None, 0), (True, 0)],
    )
    def test_price_parsing(self, raw, expected):
        product = ProductMatch(id=1, content="x", metadata={"price": raw})
        assert product_price(product) == expected


class TestAssembleQuote:
    def test_priced_products_only(self):
        products = [make_product(1, price=1000), make_product(2, price=0), make_product(3, price=500)]

        quote = assemble_quote(products)

        assert [item.product_id for item in quote.items] == [1, 3]
        assert all(item.qty == 1 for item in quote.items)
        assert quote.subtotal == 1500
        assert quote.total == 1500
        assert quote.number == "NF-1"
        assert quote.customer.name == "Клиент"

    def test_discount_rounds_down(self):
        quote = assemble_quote([make_product(1, price=999)], discount_percent=10)

        assert quote.discount_amount == 99
        assert quote.total == 900

    def test_nothing_priced(self):
        with pytest.raises(QuoteError):
            assemble_quote([make_product(1, price=0)])


class TestBuildQuote:
    def test_line_totals_recomputed(self):
        items = [
            QuoteItem(product_id=1, name="Розетка", qty=3, unit_price=1500, line_total=0),
            QuoteItem(product_id=2, name="Рамка", qty=2, unit_price=700, line_total=0),
        ]

        quote = build_quote(items, QuoteCustomer(name="Иван", phone="+77001234567"), discount_percent=5)

        assert [item.line_total for item in quote.items] == [4500, 1400]
        assert quote.subtotal == 5900
        assert quote.discount_amount == 295
        assert quote.total == 5605

    def test_zero_qty_rejected(self):
        items = [QuoteItem(product_id=1, name="Розетка", qty=0, unit_price=1500, line_total=0)]

        with pytest.raises(QuoteError, match="qty"):
            build_quote(items, QuoteCustomer())


class TestQuoteRenderer:
    def test_missing_font(self, tmp_path):
        renderer = QuoteRenderer(str(tmp_path / "missing.ttf"), str(tmp_path / "missing-bold.ttf"))

        with pytest.raises(QuoteRenderError):
            renderer.render(assemble_quote([make_product(1)]))

    @pytest.mark.skipif(not (Path(DEJAVU).exists() and Path(DEJAVU_BOLD).exists()), reason="DejaVu fonts not installed")
    def test_renders_pdf(self):
        quote = assemble_quote([make_product(1, name="Розетка с заземлением", price=1500)], discount_percent=10)
        quote.comment = "Доставка по Алматы бесплатно"

        data = QuoteRenderer(DEJAVU, DEJAVU_BOLD).render(quote)

        assert data.startswith(b"%PDF")
