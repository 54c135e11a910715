import logging
import re
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from stockgate.errors import InvalidInputError
from stockgate.schemas.alert import AlertAccepted, AlertRequest

logger = logging.getLogger(__name__)

router = APIRouter()

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


async def _resolve_quote(request: Request, symbol: str) -> dict:
    service = request.app.state.quote_gateway_service
    try:
        result = await service.get_quote(symbol)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_payload()


@router.get('/stock')
async def get_default_stock(request: Request):
    return await _resolve_quote(request, request.app.state.get_settings().DEFAULT_SYMBOL)


@router.get('/stock/{symbol}')
async def get_stock(symbol: str, request: Request):
    return await _resolve_quote(request, symbol)


@router.get('/health')
def health(request: Request):
    service = request.app.state.quote_gateway_service
    return {
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        **service.health(),
    }


@router.get('/metrics/quote')
def quote_metrics(request: Request):
    return request.app.state.quote_gateway_service.metrics()


async def _read_alert_body(request: Request) -> AlertRequest:
    content_type = request.headers.get('content-type', '')
    try:
        if content_type.startswith(('application/x-www-form-urlencoded', 'multipart/form-data')):
            form = await request.form()
            raw = dict(form)
        else:
            raw = await request.json()
        return AlertRequest.model_validate(raw)
    except (ValueError, ValidationError) as exc:
        logger.info("[ALERT][bad_body] content_type=%s error=%s", content_type, type(exc).__name__)
        raise HTTPException(status_code=400, detail='All fields are required') from exc


@router.post('/alerts', response_model=AlertAccepted)
async def create_alert(request: Request):
    req = await _read_alert_body(request)
    # a zero target is treated as missing
    if not req.email or not req.symbol or not req.condition or not req.target_price:
        raise HTTPException(status_code=400, detail='All fields are required')

    if not _EMAIL_RE.match(req.email):
        raise HTTPException(status_code=400, detail='Invalid email format')

    logger.info(
        "[ALERT][created] symbol=%s condition=%s target_price=%s",
        req.symbol,
        req.condition,
        req.target_price,
    )
    return AlertAccepted(
        success=True,
        message=(
            f"Alert set! You'll be notified when {req.symbol} goes "
            f"{req.condition} ${req.target_price:g}"
        ),
    )
