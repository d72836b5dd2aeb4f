"""Protocol errors raised by the merchant core.

Every error carries the JSON-RPC ``code``, a localised ``message`` and an
optional ``data`` pointer at the offending field. The dispatcher is the only
place that turns them into a response envelope.
"""

from typing import Dict, Optional


def _msg(uz: str, ru: str, en: str) -> Dict[str, str]:
    return {"uz": uz, "ru": ru, "en": en}


class PaymeError(Exception):
    code = -32400
    message = _msg("Server xatosi", "Ошибка сервера", "Server error")
    data: Optional[str] = None

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": dict(self.message)}
        if self.data is not None:
            error["data"] = self.data
        return error


class AuthError(PaymeError):
    code = -32504
    message = _msg("Huquq yetarli emas", "Недостаточно привилегий", "Insufficient privileges")


class AmountError(PaymeError):
    code = -31001
    message = _msg("Noto‘g‘ri summa", "Неверная сумма", "Invalid amount")
    data = "amount"


class TransactionNotFound(PaymeError):
    code = -31003
    message = _msg("Tranzaksiya topilmadi", "Транзакция не найдена", "Transaction not found")
    data = "id"


class CannotPerform(PaymeError):
    code = -31008
    message = _msg(
        "Amalni bajarish mumkin emas",
        "Невозможно выполнить операцию",
        "Unable to perform operation",
    )


class AccountError(PaymeError):
    code = -31050
    message = _msg("Noto‘g‘ri hisob", "Неверный счёт", "Invalid account")
    data = "account"


class MethodNotFound(PaymeError):
    code = -32601
    message = _msg("Metod topilmadi", "Метод не найден", "Method not found")


class ParseError(PaymeError):
    code = -32700
    message = _msg("JSON xatosi", "Ошибка разбора JSON", "Parse error")


class InternalError(PaymeError):
    pass
