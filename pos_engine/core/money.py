from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from .errors import InvalidAmount

ZERO = Decimal("0")
CENT = Decimal("0.01")


def money(v) -> Decimal:
    return (
        v.quantize(CENT, rounding=ROUND_HALF_UP)
        if isinstance(v, Decimal)
        else Decimal(str(v)).quantize(CENT, rounding=ROUND_HALF_UP)
    )


def as_decimal(v: Any) -> Decimal:
    """Convierte sin validar (float vía str para no arrastrar binario)."""
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def to_amount(value: Any, field: str = "amount", *, method: Optional[str] = None) -> Decimal:
    """Valida un monto: finito y >= 0. Nunca lo convierte silenciosamente a cero."""
    if value is None or isinstance(value, bool):
        raise InvalidAmount(field, value, method=method)
    try:
        d = as_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(field, value, method=method)
    if not d.is_finite() or d < 0:
        raise InvalidAmount(field, value, method=method)
    return d
