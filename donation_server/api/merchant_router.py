# donation_server/api/merchant_router.py

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from donation_server.payme.dispatcher import is_authorized

router = APIRouter()


@router.post("/payme/merchant")
@router.post("/api/payme")
async def merchant_endpoint(request: Request):
    """
    Merchant API для Payme (JSON-RPC).
    Ответ всегда HTTP 200: ошибка протокола передаётся в поле ``error``.
    """
    settings = request.app.state.settings
    dispatcher = request.app.state.dispatcher

    authenticated = is_authorized(request.headers.get("authorization"), settings.secret_key)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logging.warning("Payme merchant call with unparsable body")
        # dispatch() answers -32504 first for unauthenticated calls, -32700 otherwise
        body = None

    response = await dispatcher.dispatch(body, authenticated)
    return JSONResponse(response)
