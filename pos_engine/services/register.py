"""
Registro (caja) = carrito + máquina de estados + canal de pantalla + liquidación.

Una instancia por caja. Toda la ejecución corre en un solo loop: no hay
mutación paralela del mismo carrito.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger
from starlette.concurrency import run_in_threadpool

from ..core.domain import (
    CartSnapshot,
    CatalogItem,
    CheckoutState,
    ItemKind,
    PaymentMethod,
    PricingConfiguration,
    Totals,
    Transaction,
)
from ..core.errors import CheckoutStateError, InvalidAmount, PaymentCapturedNotRecorded, PosError
from ..core.money import as_decimal, money, to_amount
from .cart import CartStore
from .display_sync import CheckoutStateMachine, DisplaySyncChannel, build_display_payload
from .pricing import compute_totals
from .settlement import CheckoutSettlement, SettlementResult, SplitTender
from .shift import CashDrawerManager, ShiftHandle
from .tips import TipOutcome, TipOutcomeReason, TipSolicitation

S = CheckoutState


class Register:
    EDITABLE = frozenset({S.IDLE, S.ACTIVE, S.COMPLETED, S.CANCELLED})

    def __init__(
        self,
        *,
        location_id: str,
        register_id: str,
        config: Optional[PricingConfiguration],
        channel: DisplaySyncChannel,
        settlement: CheckoutSettlement,
        drawer: Optional[CashDrawerManager] = None,
        tip_interval: float = 1.0,
        tip_max_attempts: int = 120,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.location_id = location_id
        self.register_id = register_id
        self.config = config
        self.channel = channel
        self.drawer = drawer
        self._settlement = settlement
        self._tip_interval = tip_interval
        self._tip_max_attempts = tip_max_attempts
        self._sleep = sleep

        self.cart = CartStore()
        self.machine = CheckoutStateMachine()
        self._tip = money(0)
        self._tip_resolved = False
        self._solicitation: Optional[TipSolicitation] = None
        self._tip_task: Optional[asyncio.Task] = None
        self._publish_task: Optional[asyncio.Task] = None
        self.last_tip_outcome: Optional[TipOutcome] = None
        self.last_result: Optional[SettlementResult] = None
        # cobro capturado cuyo registro falló: la caja queda en SETTLING hasta reenviar o conciliar
        self._unrecorded: Optional[Tuple[Transaction, Optional[ShiftHandle]]] = None
        self._log = logger.bind(register_id=register_id, location_id=location_id)

        self.machine.subscribe(self._on_state_change)
        self.cart.subscribe(self._on_cart_change)

    # ---------- lectura ----------
    @property
    def state(self) -> CheckoutState:
        return self.machine.state

    @property
    def tip(self) -> Decimal:
        return self._tip

    @property
    def tip_enabled(self) -> bool:
        return bool(self.config and self.config.tip_enabled)

    @property
    def unrecorded_transaction(self) -> Optional[Transaction]:
        return self._unrecorded[0] if self._unrecorded else None

    def totals(self) -> Totals:
        return compute_totals(self.cart.snapshot, self.config, self._tip)

    def view(self) -> Dict[str, Any]:
        snap = self.cart.snapshot
        unrecorded = self.unrecorded_transaction
        return {
            "register_id": self.register_id,
            "location_id": self.location_id,
            "state": self.state.value,
            "cart": snap.to_dict(),
            "totals": self.totals().to_dict(),
            "tip_resolved": self._tip_resolved,
            "unrecorded_transaction_id": unrecorded.id if unrecorded else None,
        }

    # ---------- carrito ----------
    def _guard_edit(self) -> None:
        if self.state not in self.EDITABLE:
            raise CheckoutStateError(f"cart is locked while {self.state.value}")

    def add_item(self, item: CatalogItem, kind: ItemKind) -> CartSnapshot:
        self._guard_edit()
        to_amount(item.price, f"price[{item.id}]")
        return self.cart.add_item(item, kind)

    def remove_item(self, index: int) -> CartSnapshot:
        self._guard_edit()
        return self.cart.remove_item(index)

    def set_quantity(self, index: int, quantity: int) -> CartSnapshot:
        self._guard_edit()
        return self.cart.set_quantity(index, quantity)

    def adjust_quantity(self, index: int, delta: int) -> CartSnapshot:
        self._guard_edit()
        return self.cart.adjust_quantity(index, delta)

    def apply_line_discount(self, index: int, percent) -> CartSnapshot:
        self._guard_edit()
        # el carrito recorta a 0..100; solo se rechaza lo no finito
        if not as_decimal(percent).is_finite():
            raise InvalidAmount("line_discount_percent", percent)
        return self.cart.apply_line_discount(index, percent)

    def apply_global_discount(self, amount, source: Optional[str] = None) -> CartSnapshot:
        self._guard_edit()
        to_amount(amount, "global_discount_amount")
        return self.cart.apply_global_discount(amount, source)

    def clear(self) -> CartSnapshot:
        self._guard_edit()
        return self.cart.clear()

    def _on_cart_change(self, snap: CartSnapshot) -> None:
        # cualquier cambio invalida la propina ya resuelta
        self._tip = money(0)
        self._tip_resolved = False
        st = self.state
        if snap.is_empty:
            if st != S.IDLE:
                self.machine.transition(S.IDLE)
        else:
            if st in (S.COMPLETED, S.CANCELLED):
                self.machine.transition(S.IDLE)
            if self.state == S.IDLE:
                self.machine.transition(S.ACTIVE)
        self._publish_cart()

    def _on_state_change(self, prev: CheckoutState, new: CheckoutState) -> None:
        self.channel.set_state(new)
        self._log.debug("checkout state {} -> {}", prev.value, new.value)

    def _payload(self, status: CheckoutState, **extra) -> Dict[str, Any]:
        return build_display_payload(self.cart.snapshot, self.totals(), status, self.config, **extra)

    def _publish_cart(self) -> None:
        self.channel.publish_cart(self._payload(self.state))

    async def _publish(self, payload: Dict[str, Any]) -> None:
        try:
            await self.channel.publish_now(payload)
        except Exception as exc:
            self._log.warning("could not publish {} to display: {}", payload.get("status"), exc)

    async def _drain_publish(self) -> None:
        task, self._publish_task = self._publish_task, None
        if task is not None:
            await task

    # ---------- propina ----------
    def start_tip_request(self) -> asyncio.Task:
        if not self.tip_enabled:
            raise CheckoutStateError("tipping is disabled for this location")
        if self.state != S.ACTIVE:
            raise CheckoutStateError(f"cannot request a tip while {self.state.value}")
        self.machine.transition(S.AWAITING_TIP)
        payload = self._payload(S.AWAITING_TIP, tip_prompt=True, tip_amount=money(0))
        self._solicitation = TipSolicitation(
            self.channel, interval=self._tip_interval, max_attempts=self._tip_max_attempts, sleep=self._sleep
        )
        task = self._solicitation.start(payload)
        self._tip_task = task
        task.add_done_callback(self._on_tip_done)
        return task

    async def request_tip(self) -> TipOutcome:
        self.start_tip_request()
        return await self.wait_tip()

    async def wait_tip(self) -> TipOutcome:
        if self._solicitation is None:
            raise CheckoutStateError("no tip request in progress")
        return await self._solicitation.wait()

    def _on_tip_done(self, task: asyncio.Task) -> None:
        if task is not self._tip_task:
            return
        self._tip_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("tip solicitation failed: {}", exc)
            if self.state == S.AWAITING_TIP:
                self.machine.transition(S.ACTIVE)
            return
        outcome: TipOutcome = task.result()
        self.last_tip_outcome = outcome
        self._tip = outcome.amount
        self._tip_resolved = True
        if self.state == S.AWAITING_TIP:
            self.machine.transition(S.TIP_SELECTED)
            if outcome.reason == TipOutcomeReason.TIMEOUT:
                # la pantalla cliente sigue en el prompt: se publica la propina 0 resuelta
                payload = dict(
                    self._payload(S.TIP_SELECTED, tip_amount=outcome.amount), tip_selected=True
                )
                self._publish_task = asyncio.get_running_loop().create_task(self._publish(payload))

    async def skip_tip(self) -> None:
        """El operador omite la propina: se cancela el sondeo y se sigue con propina 0."""
        if self.state != S.AWAITING_TIP:
            raise CheckoutStateError(f"no tip prompt to skip while {self.state.value}")
        self._cancel_tip_task()
        self._tip = money(0)
        self._tip_resolved = True
        self.machine.transition(S.ACTIVE)
        await self.channel.publish_now(self._payload(S.ACTIVE))

    def _cancel_tip_task(self) -> None:
        task, self._tip_task = self._tip_task, None
        if self._solicitation is not None:
            self._solicitation.cancel()
        elif task is not None and not task.done():
            task.cancel()

    # ---------- cobro ----------
    async def checkout(
        self,
        method: PaymentMethod,
        *,
        cash_received=None,
        split: Optional[SplitTender] = None,
    ) -> SettlementResult:
        method = PaymentMethod(method)
        if self._unrecorded is not None:
            raise CheckoutStateError(
                f"payment {self._unrecorded[0].id} captured but not recorded; retry the record or reconcile it",
                amount=self._unrecorded[0].total,
                method=method.value,
            )
        st = self.state
        tip_pending = self.tip_enabled and not self._tip_resolved
        if not (st == S.TIP_SELECTED or (st == S.ACTIVE and not tip_pending)):
            raise CheckoutStateError(
                f"cannot checkout while {st.value}" + (" (tip not resolved)" if tip_pending else ""),
                method=method.value,
            )
        await self._drain_publish()

        snap = self.cart.snapshot
        totals = self.totals()
        shift = await run_in_threadpool(self.drawer.handle) if self.drawer is not None else None
        # validación sin tocar estado
        await self._settlement.validate(snap, totals, method, shift=shift, cash_received=cash_received, split=split)

        self.machine.transition(S.SETTLING)
        try:
            result = await self._settlement.settle(
                snap, totals, method, shift=shift, cash_received=cash_received, split=split
            )
        except PaymentCapturedNotRecorded as exc:
            # el cobro ya se hizo: nada de volver a ACTIVE, otro checkout cobraría dos veces
            self._unrecorded = (exc.transaction, shift)
            self._log.bind(transaction_id=exc.transaction_id).error("register held until the captured payment is recorded")
            raise
        except Exception as exc:
            # carrito intacto para reintentar
            self.machine.transition(S.ACTIVE)
            self._publish_cart()
            if isinstance(exc, PosError):
                self._log.warning("settlement failed: {}", exc)
            raise

        await self._complete(result)
        return result

    async def _complete(self, result: SettlementResult) -> None:
        self.last_result = result
        self.machine.transition(S.COMPLETED)
        await self._publish(
            dict(self._payload(S.COMPLETED), transaction_id=result.transaction.id, change_due=str(result.change_due))
        )
        self.cart.clear()

    def _require_unrecorded(self) -> Tuple[Transaction, Optional[ShiftHandle]]:
        if self._unrecorded is None:
            raise CheckoutStateError("no captured payment is waiting to be recorded")
        return self._unrecorded

    async def retry_record(self) -> SettlementResult:
        """Reenvía la misma transacción capturada al registrador, sin volver a cobrar."""
        tx, shift = self._require_unrecorded()
        result = await self._settlement.resubmit(tx, shift=shift)
        self._unrecorded = None
        await self._complete(result)
        return result

    async def resolve_reconciled(self) -> Transaction:
        """El cobro capturado se concilió a mano: se cierra la venta y se libera la caja."""
        tx, shift = self._require_unrecorded()
        self._unrecorded = None
        log = self._log.bind(transaction_id=tx.id, total=str(tx.total))
        if tx.cash_amount and shift is not None:
            # el efectivo ya está en el cajón
            try:
                await shift.record_cash_sale(tx.cash_amount)
            except PosError as exc:
                log.error("shift cash total not updated for reconciled payment: {}", exc)
        log.warning("captured payment closed by manual reconciliation")
        self.machine.transition(S.COMPLETED)
        await self._publish(dict(self._payload(S.COMPLETED), transaction_id=tx.id))
        self.cart.clear()
        return tx

    async def cancel(self) -> None:
        st = self.state
        if st == S.IDLE:
            return
        if st == S.SETTLING:
            raise CheckoutStateError("cannot cancel while settling")
        self._cancel_tip_task()
        await self._drain_publish()
        if st in (S.ACTIVE, S.AWAITING_TIP, S.TIP_SELECTED):
            self.machine.transition(S.CANCELLED)
            await self._publish(self._payload(S.CANCELLED))
        self.cart.clear()

    async def close(self) -> None:
        """Desmontaje: no deja sondeos ni escrituras pendientes."""
        self._cancel_tip_task()
        task, self._publish_task = self._publish_task, None
        if task is not None and not task.done():
            task.cancel()
        await self.channel.close()


class RegisterHub:
    def __init__(self, factory: Callable[[str], Awaitable[Register]]):
        self._factory = factory
        self._registers: Dict[str, Register] = {}
        self._lock = asyncio.Lock()

    async def get(self, register_id: str) -> Register:
        reg = self._registers.get(register_id)
        if reg is not None:
            return reg
        async with self._lock:
            reg = self._registers.get(register_id)
            if reg is None:
                reg = await self._factory(register_id)
                self._registers[register_id] = reg
            return reg

    async def close_all(self) -> None:
        for reg in list(self._registers.values()):
            await reg.close()
        self._registers.clear()
