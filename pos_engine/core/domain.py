"""Tipos de dominio del motor de cobro (inmutables salvo la sesión de caja)."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .money import ZERO, as_decimal


class ItemKind(str, Enum):
    SERVICE = "SERVICE"
    PRODUCT = "PRODUCT"


class PricingModel(str, Enum):
    STANDARD = "STANDARD"
    DUAL_PRICING = "DUAL_PRICING"


class SurchargeType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT = "FLAT"


class TipType(str, Enum):
    PERCENT = "PERCENT"
    DOLLAR = "DOLLAR"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    SPLIT = "SPLIT"


class CheckoutState(str, Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    AWAITING_TIP = "AWAITING_TIP"
    TIP_SELECTED = "TIP_SELECTED"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ShiftStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class VarianceClass(str, Enum):
    SHORT = "SHORT"
    OVER = "OVER"
    BALANCED = "BALANCED"


class DrawerActivityType(str, Enum):
    CASH_DROP = "CASH_DROP"  # sale del cajón hacia la caja fuerte
    PAID_IN = "PAID_IN"
    PAID_OUT = "PAID_OUT"  # pago a proveedor / gasto
    NO_SALE = "NO_SALE"  # apertura sin venta; exige motivo


NO_SALE_REASONS = (
    "make_change",
    "verify_cash",
    "error_correction",
    "give_receipt",
    "cash_drop",
    "manager_request",
    "other",  # requiere nota
)


@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    price: Decimal

    def __post_init__(self):
        object.__setattr__(self, "price", as_decimal(self.price))


@dataclass(frozen=True)
class LineItem:
    id: str
    kind: ItemKind
    name: str
    unit_price: Decimal
    quantity: int = 1
    line_discount_percent: Decimal = ZERO

    def __post_init__(self):
        object.__setattr__(self, "kind", ItemKind(self.kind))
        object.__setattr__(self, "unit_price", as_decimal(self.unit_price))
        object.__setattr__(self, "line_discount_percent", as_decimal(self.line_discount_percent))

    @property
    def line_total(self) -> Decimal:
        gross = self.unit_price * self.quantity
        if self.line_discount_percent:
            return gross * (1 - self.line_discount_percent / 100)
        return gross

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "line_discount_percent": str(self.line_discount_percent),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LineItem":
        return cls(
            id=str(d["id"]),
            kind=ItemKind(d["kind"]),
            name=d.get("name") or "",
            unit_price=Decimal(str(d["unit_price"])),
            quantity=int(d.get("quantity", 1)),
            line_discount_percent=Decimal(str(d.get("line_discount_percent") or "0")),
        )


@dataclass(frozen=True)
class CartSnapshot:
    items: Tuple[LineItem, ...] = ()
    global_discount_amount: Decimal = ZERO
    global_discount_source: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "global_discount_amount", as_decimal(self.global_discount_amount))

    @property
    def is_empty(self) -> bool:
        return not self.items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [it.to_dict() for it in self.items],
            "global_discount_amount": str(self.global_discount_amount),
            "global_discount_source": self.global_discount_source,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CartSnapshot":
        return cls(
            items=tuple(LineItem.from_dict(it) for it in d.get("items") or []),
            global_discount_amount=Decimal(str(d.get("global_discount_amount") or "0")),
            global_discount_source=d.get("global_discount_source"),
            version=int(d.get("version") or 0),
        )


@dataclass(frozen=True)
class PricingConfiguration:
    tax_rate: Decimal
    tax_services: bool = True
    tax_products: bool = True
    pricing_model: PricingModel = PricingModel.STANDARD
    card_surcharge_type: SurchargeType = SurchargeType.PERCENTAGE
    card_surcharge: Decimal = ZERO
    tip_enabled: bool = False
    tip_type: TipType = TipType.PERCENT
    tip_suggestions: Tuple[Decimal, ...] = (Decimal("15"), Decimal("20"), Decimal("25"))

    def __post_init__(self):
        object.__setattr__(self, "tax_rate", as_decimal(self.tax_rate))
        object.__setattr__(self, "card_surcharge", as_decimal(self.card_surcharge))
        object.__setattr__(self, "pricing_model", PricingModel(self.pricing_model))
        object.__setattr__(self, "card_surcharge_type", SurchargeType(self.card_surcharge_type))
        object.__setattr__(self, "tip_type", TipType(self.tip_type))
        object.__setattr__(self, "tip_suggestions", tuple(as_decimal(s) for s in self.tip_suggestions))

    def is_taxable(self, kind: ItemKind) -> bool:
        if kind == ItemKind.SERVICE:
            return self.tax_services
        return self.tax_products


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount: Decimal
    discounted_subtotal: Decimal
    tax: Decimal
    tip: Decimal
    total_cash: Decimal
    total_card: Decimal
    total_cash_with_tip: Decimal
    total_card_with_tip: Decimal

    def amount_due(self, method: PaymentMethod) -> Decimal:
        if PaymentMethod(method) == PaymentMethod.CARD:
            return self.total_card_with_tip
        return self.total_cash_with_tip

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.__dict__.items()}


@dataclass(frozen=True)
class CardMeta:
    gateway_tx_id: str
    auth_code: str
    card_last4: str
    card_type: str


@dataclass(frozen=True)
class Transaction:
    id: str
    location_id: str
    register_id: str
    line_items: Tuple[LineItem, ...]
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    tip: Decimal
    total: Decimal
    payment_method: PaymentMethod
    created_at: datetime
    cash_amount: Optional[Decimal] = None
    card_amount: Optional[Decimal] = None
    cash_received: Optional[Decimal] = None
    change_due: Optional[Decimal] = None
    card_meta: Optional[CardMeta] = None
    shift_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        def _s(v):
            return None if v is None else str(v)

        return {
            "id": self.id,
            "location_id": self.location_id,
            "register_id": self.register_id,
            "line_items": [it.to_dict() for it in self.line_items],
            "subtotal": _s(self.subtotal),
            "discount": _s(self.discount),
            "tax": _s(self.tax),
            "tip": _s(self.tip),
            "total": _s(self.total),
            "payment_method": self.payment_method.value,
            "cash_amount": _s(self.cash_amount),
            "card_amount": _s(self.card_amount),
            "cash_received": _s(self.cash_received),
            "change_due": _s(self.change_due),
            "card_meta": dict(self.card_meta.__dict__) if self.card_meta else None,
            "shift_id": self.shift_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CashDrawerSession:
    id: str
    register_id: str
    employee_id: str
    starting_cash: Decimal
    opened_at: datetime
    cash_sales_accumulated: Decimal = ZERO
    drawer_adjustments: Decimal = ZERO
    status: ShiftStatus = ShiftStatus.OPEN
    closed_at: Optional[datetime] = None

    def copy(self) -> "CashDrawerSession":
        return replace(self)

    def public_view(self) -> Dict[str, Any]:
        # Sin "expected": el operador no ve el objetivo mientras cuenta
        return {
            "id": self.id,
            "register_id": self.register_id,
            "employee_id": self.employee_id,
            "status": self.status.value,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass(frozen=True)
class ShiftReport:
    shift_id: str
    employee_id: str
    starting_cash: Decimal
    cash_sales_accumulated: Decimal
    drawer_adjustments: Decimal
    expected: Decimal
    counted: Decimal
    variance: Decimal
    classification: VarianceClass
    opened_at: datetime
    closed_at: datetime
    closing_count: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shift_id": self.shift_id,
            "employee_id": self.employee_id,
            "starting_cash": str(self.starting_cash),
            "cash_sales_accumulated": str(self.cash_sales_accumulated),
            "drawer_adjustments": str(self.drawer_adjustments),
            "expected": str(self.expected),
            "counted": str(self.counted),
            "variance": str(self.variance),
            "classification": self.classification.value,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat(),
            "closing_count": dict(self.closing_count),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ShiftReport":
        return cls(
            shift_id=d["shift_id"],
            employee_id=d["employee_id"],
            starting_cash=Decimal(d["starting_cash"]),
            cash_sales_accumulated=Decimal(d["cash_sales_accumulated"]),
            drawer_adjustments=Decimal(d["drawer_adjustments"]),
            expected=Decimal(d["expected"]),
            counted=Decimal(d["counted"]),
            variance=Decimal(d["variance"]),
            classification=VarianceClass(d["classification"]),
            opened_at=datetime.fromisoformat(d["opened_at"]),
            closed_at=datetime.fromisoformat(d["closed_at"]),
            closing_count=dict(d.get("closing_count") or {}),
        )


@dataclass(frozen=True)
class DrawerActivity:
    shift_id: str
    type: DrawerActivityType
    amount: Decimal
    created_at: datetime
    note: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shift_id": self.shift_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
        }
