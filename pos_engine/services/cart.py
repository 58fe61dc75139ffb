from __future__ import annotations

from decimal import Decimal
from typing import Callable, List, Optional

from ..core.domain import CartSnapshot, CatalogItem, ItemKind, LineItem
from ..core.money import ZERO, as_decimal

Listener = Callable[[CartSnapshot], None]


def _clamp_percent(percent) -> Decimal:
    p = as_decimal(percent)
    if not p.is_finite():
        # lo rechaza la calculadora (InvalidAmount)
        return p
    return min(max(p, ZERO), Decimal("100"))


class CartStore:
    """
    Carrito en memoria: líneas en orden de inserción + un descuento global.
    Cada mutación produce un CartSnapshot nuevo e inmutable y avisa a los suscriptores.
    Un índice fuera de rango es error de programación (IndexError).
    """

    def __init__(self):
        self._items: List[LineItem] = []
        self._discount: Decimal = ZERO
        self._discount_source: Optional[str] = None
        self._version = 0
        self._listeners: List[Listener] = []
        self._snapshot = CartSnapshot()

    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---------- mutaciones ----------
    def add_item(self, catalog_item: CatalogItem, kind: ItemKind) -> CartSnapshot:
        for i, it in enumerate(self._items):
            if it.id == catalog_item.id:
                self._items[i] = self._with(it, quantity=it.quantity + 1)
                return self._commit()
        self._items.append(
            LineItem(id=catalog_item.id, kind=ItemKind(kind), name=catalog_item.name, unit_price=catalog_item.price)
        )
        return self._commit()

    def remove_item(self, index: int) -> CartSnapshot:
        self._check_index(index)
        del self._items[index]
        return self._commit()

    def set_quantity(self, index: int, quantity: int) -> CartSnapshot:
        self._check_index(index)
        it = self._items[index]
        self._items[index] = self._with(it, quantity=max(1, int(quantity)))
        return self._commit()

    def adjust_quantity(self, index: int, delta: int) -> CartSnapshot:
        self._check_index(index)
        return self.set_quantity(index, self._items[index].quantity + int(delta))

    def apply_line_discount(self, index: int, percent) -> CartSnapshot:
        self._check_index(index)
        it = self._items[index]
        self._items[index] = self._with(it, line_discount_percent=_clamp_percent(percent))
        return self._commit()

    def apply_global_discount(self, amount, source: Optional[str] = None) -> CartSnapshot:
        self._discount = as_decimal(amount)
        self._discount_source = source
        return self._commit()

    def clear(self) -> CartSnapshot:
        self._items = []
        self._discount = ZERO
        self._discount_source = None
        return self._commit()

    # ---------- internos ----------
    def _check_index(self, index: int) -> None:
        if not isinstance(index, int) or not 0 <= index < len(self._items):
            raise IndexError(f"cart index {index} out of range (size {len(self._items)})")

    @staticmethod
    def _with(it: LineItem, **changes) -> LineItem:
        data = dict(
            id=it.id,
            kind=it.kind,
            name=it.name,
            unit_price=it.unit_price,
            quantity=it.quantity,
            line_discount_percent=it.line_discount_percent,
        )
        data.update(changes)
        return LineItem(**data)

    def _commit(self) -> CartSnapshot:
        self._version += 1
        self._snapshot = CartSnapshot(
            items=tuple(self._items),
            global_discount_amount=self._discount,
            global_discount_source=self._discount_source,
            version=self._version,
        )
        for listener in list(self._listeners):
            listener(self._snapshot)
        return self._snapshot
