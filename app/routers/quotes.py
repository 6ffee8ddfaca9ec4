from fastapi import APIRouter, Depends, HTTPException, Response

from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.routers.auth import require_internal_token
from app.schemas.quote import QuoteCreateRequest
from app.services.quote_service import QuoteCustomer, QuoteError, QuoteItem, build_quote

logger = get_logger("quotes_router")

router = APIRouter(prefix="/v1/quotes", dependencies=[Depends(require_internal_token)])


@router.post("")
def create_quote(payload: QuoteCreateRequest, runtime: Runtime = Depends(get_runtime)):
    """Render a KP for caller-supplied lines."""
    try:
        quote = build_quote(
            items=[
                QuoteItem(
                    product_id=item.product_id,
                    name=item.name,
                    qty=item.qty,
                    unit_price=item.unit_price,
                    line_total=0,
                )
                for item in payload.items
            ],
            customer=QuoteCustomer(
                name=payload.customer.name.strip() or "Клиент",
                phone=payload.customer.phone or "",
                city=payload.customer.city or "",
            ),
            discount_percent=payload.discount_percent,
            comment=payload.comment,
        )
    except QuoteError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        pdf = runtime.quote_renderer.render(quote)
    except Exception as e:
        logger.error(f"Quote PDF render failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="pdf generation failed")

    filename = f"KP-{quote.number}.pdf"
    logger.info("Quote created", extra={"context": {"items": len(quote.items), "total": quote.total}})
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
