from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.routers.auth import require_internal_token
from app.schemas.chat import ChatRequest, ChatResponse
from app.services.alert_service import alert_error
from app.services.errors import MalformedInputError, TurnError
from app.services.turn_service import TurnKind, TurnRequest, TurnResult

logger = get_logger("chat_router")

router = APIRouter(prefix="/v1/chat", dependencies=[Depends(require_internal_token)])

MAX_MEDIA_BYTES = 25 << 20
FILE_FIELDS = ("file", "media", "image", "photo", "document", "audio")
TEXT_FIELDS = ("extra_text", "text", "message", "caption")


def _pdf_response(result: TurnResult) -> Response:
    return Response(
        content=result.pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


def _turn_response(result: TurnResult) -> Response:
    if result.kind == TurnKind.PDF:
        return _pdf_response(result)
    return JSONResponse(content=ChatResponse(**result.to_dict()).model_dump())


def _run_turn(runtime: Runtime, request: TurnRequest) -> Response:
    try:
        result = runtime.orchestrator.handle(request)
    except MalformedInputError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except TurnError as e:
        alert_error("Chat turn failed", {"stage": e.stage, "session_id": request.session_id})
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return _turn_response(result)


@router.post("")
def chat(payload: ChatRequest, runtime: Runtime = Depends(get_runtime)):
    """Answer one chat turn: JSON answer, or a KP.pdf attachment for quote requests."""
    return _run_turn(
        runtime,
        TurnRequest(
            message=payload.message,
            session_id=payload.session_id or "",
            user_id=payload.user_id,
            user_meta=payload.user_meta,
            match_count=payload.match_count,
            topic_filter=payload.topic_filter,
        ),
    )


def _first_form_value(form, names: tuple[str, ...]) -> str:
    for name in names:
        value = form.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _parse_int(raw: str, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


@router.post("/media")
async def chat_media(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Multipart voice/photo/document turn."""
    try:
        form = await request.form()
    except Exception as e:
        logger.warning(f"Media form parse failed: {e}")
        raise HTTPException(status_code=400, detail="invalid multipart form")

    upload = None
    for name in FILE_FIELDS:
        candidate = form.get(name)
        if candidate is not None and not isinstance(candidate, str):
            upload = candidate
            break
    if upload is None:
        raise HTTPException(status_code=400, detail="file is required")

    data = await upload.read()
    if len(data) > MAX_MEDIA_BYTES:
        raise HTTPException(status_code=400, detail="file too large")

    topic_filter: Optional[str] = _first_form_value(form, ("topic_filter",)) or None
    session_id = _first_form_value(form, ("session_id",))

    try:
        processed = await run_in_threadpool(
            runtime.media.process,
            _first_form_value(form, ("message_type",)),
            data,
            filename=upload.filename or "",
            content_type=upload.content_type or "",
            extra_text=_first_form_value(form, TEXT_FIELDS),
        )
    except MalformedInputError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if not processed.ok:
        logger.error(f"Media processing failed: code={processed.error_code} error={processed.error}")
        raise HTTPException(status_code=502, detail="media processing failed")

    turn = TurnRequest(
        message=processed.value.message,
        session_id=session_id,
        user_id=_first_form_value(form, ("user_id",)) or None,
        user_meta=processed.value.user_meta,
        match_count=_parse_int(_first_form_value(form, ("match_count",)), 5),
        topic_filter=topic_filter,
    )
    return await run_in_threadpool(_run_turn, runtime, turn)
