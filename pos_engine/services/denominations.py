from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Tuple

from ..core.errors import InvalidAmount, UnknownDenomination
from ..core.money import ZERO, money

DENOMINATIONS: Tuple[Decimal, ...] = tuple(
    Decimal(v) for v in ("100", "50", "20", "10", "5", "1", "0.25", "0.10", "0.05", "0.01")
)


def _key(raw: Any) -> Decimal:
    try:
        d = Decimal(str(raw).strip().lstrip("$"))
    except (InvalidOperation, ValueError):
        raise UnknownDenomination(f"unknown denomination {raw!r}", amount=raw)
    for known in DENOMINATIONS:
        if d == known:
            return known
    raise UnknownDenomination(f"unknown denomination {raw!r}", amount=raw)


@dataclass(frozen=True)
class DenominationCount:
    """Conteo de billetes/monedas: total = Σ unidades × denominación."""

    counts: Tuple[Tuple[Decimal, int], ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[Any, Any]) -> "DenominationCount":
        merged: Dict[Decimal, int] = {}
        for k, v in (raw or {}).items():
            d = _key(k)
            if isinstance(v, bool) or not isinstance(v, int):
                if isinstance(v, float) and v.is_integer():
                    v = int(v)
                else:
                    raise InvalidAmount(f"count[{k}]", v)
            if v < 0:
                raise InvalidAmount(f"count[{k}]", v)
            merged[d] = merged.get(d, 0) + v
        return cls(tuple((d, merged[d]) for d in DENOMINATIONS if merged.get(d)))

    @property
    def total(self) -> Decimal:
        return money(sum((d * n for d, n in self.counts), ZERO))

    def units(self, denomination: Any) -> int:
        d = _key(denomination)
        return dict(self.counts).get(d, 0)

    def to_dict(self) -> Dict[str, int]:
        return {str(d): n for d, n in self.counts}
