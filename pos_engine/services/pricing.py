"""
Calculadora de totales.

Función pura: carrito + configuración + propina -> Totals. Mismas entradas,
mismos totales (bit a bit). Montos negativos o no finitos se rechazan con
InvalidAmount; nunca se convierten en cero.
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from ..core.domain import CartSnapshot, PricingConfiguration, PricingModel, SurchargeType, TipType, Totals
from ..core.errors import InvalidAmount
from ..core.money import ZERO, money, to_amount

# Tasa legacy cuando no hay configuración cargada
DEFAULT_TAX_RATE = Decimal("0.08")


def apply_surcharge(amount: Decimal, config: Optional[PricingConfiguration]) -> Decimal:
    """Aplica el recargo de tarjeta una sola vez (solo con DUAL_PRICING)."""
    if config is None or config.pricing_model != PricingModel.DUAL_PRICING:
        return amount
    # sin monto no hay recargo
    if amount <= ZERO:
        return amount
    surcharge = to_amount(config.card_surcharge, "card_surcharge")
    if config.card_surcharge_type == SurchargeType.PERCENTAGE:
        return amount * (1 + surcharge / 100)
    return amount + surcharge


def _line_total(item) -> Decimal:
    price = to_amount(item.unit_price, f"unit_price[{item.id}]")
    if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity < 1:
        raise InvalidAmount(f"quantity[{item.id}]", item.quantity)
    pct = to_amount(item.line_discount_percent, f"line_discount_percent[{item.id}]")
    if pct > 100:
        raise InvalidAmount(f"line_discount_percent[{item.id}]", pct)
    gross = price * item.quantity
    return gross * (1 - pct / 100) if pct else gross


def compute_totals(
    cart: CartSnapshot,
    config: Optional[PricingConfiguration],
    tip_amount=ZERO,
) -> Totals:
    tip = money(to_amount(tip_amount, "tip_amount"))
    global_discount = to_amount(cart.global_discount_amount, "global_discount_amount")

    line_totals = [(item, _line_total(item)) for item in cart.items]
    raw_subtotal = sum((lt for _, lt in line_totals), ZERO)
    subtotal = money(raw_subtotal)
    discounted = money(max(ZERO, raw_subtotal - global_discount))

    if config is None:
        tax = money(discounted * DEFAULT_TAX_RATE)
    else:
        rate = to_amount(config.tax_rate, "tax_rate")
        taxable = sum((lt for item, lt in line_totals if config.is_taxable(item.kind)), ZERO)
        tax = money(ZERO)
        if raw_subtotal > 0 and taxable > 0:
            # descuento global repartido proporcionalmente a la base gravable
            taxable_discount = global_discount * taxable / raw_subtotal
            tax = money(max(ZERO, taxable - taxable_discount) * rate)

    total_cash = discounted + tax
    total_card = money(apply_surcharge(total_cash, config))
    total_cash_with_tip = total_cash + tip
    # el recargo se aplica una vez al total en efectivo con propina
    total_card_with_tip = money(apply_surcharge(total_cash_with_tip, config))

    return Totals(
        subtotal=subtotal,
        discount=subtotal - discounted,
        discounted_subtotal=discounted,
        tax=tax,
        tip=tip,
        total_cash=total_cash,
        total_card=total_card,
        total_cash_with_tip=total_cash_with_tip,
        total_card_with_tip=total_card_with_tip,
    )


def tip_suggestions(config: Optional[PricingConfiguration], base_amount: Decimal) -> List[Decimal]:
    """Montos sugeridos para la pantalla cliente (PERCENT sobre el total en efectivo)."""
    if config is None or not config.tip_enabled:
        return []
    base = to_amount(base_amount, "tip_base")
    out = []
    for s in config.tip_suggestions:
        s = to_amount(s, "tip_suggestion")
        out.append(money(base * s / 100) if config.tip_type == TipType.PERCENT else money(s))
    return out
