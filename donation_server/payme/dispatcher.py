"""JSON-RPC dispatch of Payme merchant calls onto :class:`MerchantService`."""

import base64
import binascii
import hmac
import logging
from typing import Any, Optional

from donation_server.payme.errors import (
    AccountError,
    AuthError,
    InternalError,
    MethodNotFound,
    ParseError,
    PaymeError,
    TransactionNotFound,
)
from donation_server.services.merchant_service import MerchantService

AUTH_LOGIN = "Paycom"


def is_authorized(header: Optional[str], secret_key: str) -> bool:
    """Check a ``Basic`` Authorization header against ``Paycom:<secret>``."""
    if not header or not header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    expected = f"{AUTH_LOGIN}:{secret_key}"
    return hmac.compare_digest(decoded.encode("utf-8"), expected.encode("utf-8"))


def _parse_amount(value: Any) -> Optional[int]:
    # None is rejected as AmountError once the account has been looked up
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _parse_account(params: dict, account_field: str) -> str:
    account = params.get("account")
    if not isinstance(account, dict):
        raise AccountError()
    donation_id = account.get(account_field)
    if donation_id is None or isinstance(donation_id, (dict, list, bool)):
        raise AccountError()
    donation_id = str(donation_id).strip()
    if not donation_id:
        raise AccountError()
    return donation_id


def _parse_transaction_id(params: dict) -> str:
    external_id = params.get("id")
    if not isinstance(external_id, str) or not external_id:
        raise TransactionNotFound()
    return external_id


def _parse_time(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _parse_reason(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


class Dispatcher:
    """Routes ``{id, method, params}`` envelopes to merchant operations."""

    def __init__(self, service: MerchantService, account_field: str):
        self.service = service
        self.account_field = account_field
        self.methods = {
            "CheckPerformTransaction": self.check_perform_transaction,
            "CreateTransaction": self.create_transaction,
            "PerformTransaction": self.perform_transaction,
            "CancelTransaction": self.cancel_transaction,
            "CheckTransaction": self.check_transaction,
            "GetStatement": self.get_statement,
        }

    async def check_perform_transaction(self, params: dict) -> dict:
        donation_id = _parse_account(params, self.account_field)
        amount = _parse_amount(params.get("amount"))
        return await self.service.check_perform_transaction(donation_id, amount)

    async def create_transaction(self, params: dict) -> dict:
        donation_id = _parse_account(params, self.account_field)
        amount = _parse_amount(params.get("amount"))
        # account and amount are rejected before a missing transaction id
        await self.service.check_perform_transaction(donation_id, amount)
        external_id = _parse_transaction_id(params)
        tx = await self.service.create_transaction(external_id, donation_id, amount)
        return tx.to_wire(self.account_field)

    async def perform_transaction(self, params: dict) -> dict:
        tx = await self.service.perform_transaction(_parse_transaction_id(params))
        return tx.to_wire(self.account_field)

    async def cancel_transaction(self, params: dict) -> dict:
        external_id = _parse_transaction_id(params)
        tx = await self.service.cancel_transaction(external_id, _parse_reason(params.get("reason")))
        return tx.to_wire(self.account_field)

    async def check_transaction(self, params: dict) -> dict:
        tx = await self.service.check_transaction(_parse_transaction_id(params))
        return tx.to_wire(self.account_field)

    async def get_statement(self, params: dict) -> dict:
        items = await self.service.get_statement(
            _parse_time(params.get("from")), _parse_time(params.get("to"))
        )
        return {"transactions": [tx.to_wire(self.account_field) for tx in items]}

    async def dispatch(self, body: Any, authenticated: bool) -> dict:
        """Handle one merchant call and return the response envelope.

        Never raises: protocol errors and unexpected faults both end up in
        the ``error`` member of the envelope.
        """
        request_id = body.get("id") if isinstance(body, dict) else None
        try:
            if not authenticated:
                raise AuthError()
            if not isinstance(body, dict):
                raise ParseError()

            method = body.get("method")
            params = body.get("params") or {}
            handler = self.methods.get(method)
            if handler is None:
                raise MethodNotFound()
            if not isinstance(params, dict):
                raise ParseError()

            logging.info("Payme %s id=%s params=%s", method, request_id, params)
            result = await handler(params)
        except PaymeError as exc:
            logging.warning("Payme call id=%s rejected: %s", request_id, exc.code)
            return {"id": request_id, "error": exc.to_dict()}
        except Exception:
            logging.exception("merchant handler error (id=%s)", request_id)
            return {"id": request_id, "error": InternalError().to_dict()}

        return {"id": request_id, "result": result}
