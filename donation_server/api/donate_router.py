# donation_server/api/donate_router.py

import logging
import uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from donation_server.config import BASE_DIR

router = APIRouter()

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

DEFAULT_MOCK_AMOUNT_UZS = "10000"


def to_tiyin(amount_uzs) -> int:
    """Convert an amount in sums to tiyin (1 sum = 100 tiyin)."""
    try:
        value = Decimal(str(amount_uzs))
    except (InvalidOperation, ValueError):
        raise HTTPException(status_code=400, detail="amount required")
    if not value.is_finite() or value <= 0:
        raise HTTPException(status_code=400, detail="amount required")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def _read_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


@router.get("/health")
async def health():
    return {"ok": True}


@router.post("/mock-donation-init")
async def mock_donation_init(request: Request):
    """Создаёт запись пожертвования для тестов без перехода на Payme."""
    settings = request.app.state.settings
    store = request.app.state.store

    body = await _read_body(request)
    amount_uzs = body.get("amount") or DEFAULT_MOCK_AMOUNT_UZS
    amount = to_tiyin(amount_uzs)

    donation = await store.create_donation(str(uuid.uuid4()), amount)
    logging.info("Mock donation %s created: %s tiyin", donation.id, amount)
    return {
        "donationId": donation.id,
        "account": {settings.account_field: donation.id},
        "amount": donation.amount,
        "amountUz": float(Decimal(str(amount_uzs))),
    }


@router.post("/donate", response_class=HTMLResponse)
async def donate(request: Request):
    """
    Создаёт пожертвование и отдаёт форму, которая сама отправляется в Payme.
    Поля формы: amount (в сумах), donationId (опционально).
    """
    settings = request.app.state.settings
    store = request.app.state.store

    body = await _read_body(request)
    if not body.get("amount"):
        raise HTTPException(status_code=400, detail="amount required")
    amount = to_tiyin(body["amount"])
    donation_id = str(body.get("donationId") or uuid.uuid4())

    donation = await store.create_donation(donation_id, amount)
    if donation.amount != amount:
        # Сумма пожертвования неизменна после создания
        raise HTTPException(status_code=400, detail="donation amount mismatch")

    callback = f"{settings.base_url.rstrip('/')}/payme/callback/:transaction?donation={donation_id}"
    logging.info("Checkout form for donation %s (%s tiyin)", donation_id, amount)

    return templates.TemplateResponse(
        request,
        "checkout.html",
        {
            "checkout_url": settings.checkout_url,
            "merchant_id": settings.merchant_id,
            "amount": amount,
            "account_field": settings.account_field,
            "donation_id": donation_id,
            "callback": callback,
        },
    )
