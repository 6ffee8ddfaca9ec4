from datetime import datetime, timezone
from pathlib import Path

from fpdf import FPDF

from app.logging_config import get_logger
from app.services.quote_service import Quote

logger = get_logger("quote_renderer")

FONT_FAMILY = "DejaVu"
NAME_MAX_CHARS = 65


class QuoteRenderError(Exception):
    pass


def _trim(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


class QuoteRenderer:
    """Renders a Quote into an A4 PDF with a UTF-8 TTF font."""

    def __init__(self, font_path: str, bold_font_path: str, footer: str = "L-Xor • Электрика"):
        self.font_path = font_path
        self.bold_font_path = bold_font_path
        self.footer = footer

    def render(self, quote: Quote) -> bytes:
        for path in (self.font_path, self.bold_font_path):
            if not path or not Path(path).exists():
                raise QuoteRenderError(f"quote font not found: {path}")

        pdf = FPDF(orientation="P", unit="mm", format="A4")
        pdf.set_title("Коммерческое предложение")
        pdf.add_font(FONT_FAMILY, "", self.font_path)
        pdf.add_font(FONT_FAMILY, "B", self.bold_font_path)
        pdf.add_page()

        pdf.set_font(FONT_FAMILY, "B", 16)
        pdf.cell(0, 10, "Коммерческое предложение")
        pdf.ln(8)

        pdf.set_font(FONT_FAMILY, "", 11)
        pdf.cell(0, 6, f"№ {quote.number} от {quote.created_at.strftime('%d.%m.%Y')}")
        pdf.ln(6)
        customer = quote.customer
        if customer.name or customer.phone:
            pdf.cell(0, 6, f"Клиент: {customer.name} {customer.phone}".strip())
            pdf.ln(6)
        if customer.city:
            pdf.cell(0, 6, f"Город: {customer.city}")
            pdf.ln(6)

        pdf.ln(4)
        pdf.set_font(FONT_FAMILY, "B", 11)
        for width, title in ((120, "Товар"), (20, "Кол-во"), (25, "Цена"), (25, "Сумма")):
            pdf.cell(width, 7, title)
        pdf.ln(8)

        pdf.set_font(FONT_FAMILY, "", 10)
        for item in quote.items:
            pdf.cell(120, 6, _trim(item.name, NAME_MAX_CHARS))
            pdf.cell(20, 6, str(item.qty))
            pdf.cell(25, 6, str(item.unit_price))
            pdf.cell(25, 6, str(item.line_total))
            pdf.ln(6)

        pdf.ln(4)
        pdf.set_font(FONT_FAMILY, "B", 11)
        if quote.discount_amount:
            pdf.cell(0, 7, f"Сумма: {quote.subtotal}")
            pdf.ln(6)
            pdf.cell(0, 7, f"Скидка {quote.discount_percent}%: {quote.discount_amount}")
            pdf.ln(6)
        pdf.cell(0, 7, f"Итого: {quote.total}")
        pdf.ln(6)

        pdf.set_font(FONT_FAMILY, "", 9)
        if quote.comment:
            pdf.multi_cell(0, 5, quote.comment)
            pdf.ln(2)
        pdf.cell(0, 5, self.footer)
        pdf.ln(5)
        pdf.cell(0, 5, f"Сформировано: {datetime.now(timezone.utc).isoformat(timespec='seconds')}")

        data = bytes(pdf.output())
        logger.info(f"Quote PDF rendered: items={len(quote.items)} bytes={len(data)}")
        return data
