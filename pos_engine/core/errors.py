"""
Taxonomía de errores del motor POS.

Todo error visible al operador lleva el monto y el método de pago involucrados:
un descuadre de caja es caro de diagnosticar después.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class PosError(Exception):
    code = "pos_error"
    status_code = 400

    def __init__(self, message: str, *, amount: Any = None, method: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.amount = amount
        self.method = method

    def __str__(self) -> str:
        parts = [f"{self.code}: {self.message}"]
        if self.amount is not None:
            parts.append(f"amount={_fmt(self.amount)}")
        if self.method:
            parts.append(f"method={self.method}")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": str(self),
            "code": self.code,
            "amount": _fmt(self.amount) if self.amount is not None else None,
            "method": self.method,
        }


def _fmt(v: Any) -> str:
    if isinstance(v, Decimal) and v.is_finite():
        return str(v.quantize(Decimal("0.01")))
    return str(v)


# ---------- Validación (sin mutación de estado) ----------
class ValidationError(PosError):
    code = "validation_error"
    status_code = 422


class InvalidAmount(ValidationError):
    code = "invalid_amount"

    def __init__(self, field: str, value: Any, *, method: Optional[str] = None):
        super().__init__(f"{field} must be a finite, non-negative amount", amount=value, method=method)
        self.field = field


class SplitMismatch(ValidationError):
    code = "split_mismatch"


class InsufficientCash(ValidationError):
    code = "insufficient_cash"


class EmptyCart(ValidationError):
    code = "empty_cart"


class EmptyDrawerCount(ValidationError):
    code = "empty_drawer_count"


class UnknownDenomination(ValidationError):
    code = "unknown_denomination"


class InvalidDrawerActivity(ValidationError):
    code = "invalid_drawer_activity"


# ---------- Terminal de pago ----------
class TerminalError(PosError):
    code = "terminal_error"
    status_code = 402


class CardDeclined(TerminalError):
    code = "card_declined"


class TerminalTimeout(TerminalError):
    code = "terminal_timeout"


class TerminalFault(TerminalError):
    code = "terminal_fault"


# ---------- Persistencia ----------
class PersistenceError(PosError):
    code = "persistence_error"
    status_code = 503


class PaymentCapturedNotRecorded(PersistenceError):
    """Cobro con tarjeta capturado pero la transacción no quedó guardada."""

    code = "payment_captured_not_recorded"
    status_code = 502

    def __init__(self, message: str, *, transaction: Any, amount: Any = None, method: Optional[str] = None):
        super().__init__(message, amount=amount, method=method)
        # la transacción capturada se conserva para reenviarla tal cual
        self.transaction = transaction
        self.transaction_id = transaction.id

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["transaction_id"] = self.transaction_id
        out["manual_reconciliation_required"] = True
        return out


# ---------- Turno / caja ----------
class ShiftError(PosError):
    code = "shift_error"
    status_code = 409


class ShiftAlreadyOpen(ShiftError):
    code = "shift_already_open"


class NoOpenShift(ShiftError):
    code = "no_open_shift"


class ShiftClosed(ShiftError):
    code = "shift_closed"


# ---------- Máquina de estados / pantalla ----------
class CheckoutStateError(PosError):
    code = "invalid_checkout_state"
    status_code = 409


class StaleDisplayVersion(PosError):
    code = "stale_display_version"
    status_code = 409
