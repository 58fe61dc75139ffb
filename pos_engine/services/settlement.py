"""
Liquidación del cobro.

Pipeline estrictamente ordenado: validar -> cobrar tarjeta -> registrar transacción
-> actualizar turno. Ningún paso corre antes de que el anterior resuelva y la
validación falla antes de cualquier efecto.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from loguru import logger

from ..core.domain import CardMeta, CartSnapshot, PaymentMethod, Totals, Transaction
from ..core.errors import (
    EmptyCart,
    InsufficientCash,
    NoOpenShift,
    PaymentCapturedNotRecorded,
    PersistenceError,
    SplitMismatch,
)
from ..core.money import ZERO, money, to_amount
from .recorder import ReconciliationJournal, TransactionRecorder
from .shift import ShiftHandle
from .terminal import PaymentTerminal, TerminalFailure, failure_to_error


@dataclass(frozen=True)
class SplitTender:
    cash_amount: Decimal
    card_amount: Decimal


@dataclass(frozen=True)
class SettlementResult:
    transaction: Transaction
    change_due: Decimal
    record_id: str
    shift_synced: bool = True


@dataclass(frozen=True)
class _Plan:
    method: PaymentMethod
    amount_due: Decimal
    cash_portion: Decimal
    card_portion: Decimal
    cash_received: Optional[Decimal]
    change_due: Decimal


class CheckoutSettlement:
    def __init__(
        self,
        terminal: PaymentTerminal,
        recorder: TransactionRecorder,
        *,
        location_id: str,
        register_id: str,
        journal: Optional[ReconciliationJournal] = None,
        split_tolerance=Decimal("0.01"),
        recorder_max_attempts: int = 3,
        recorder_retry_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._terminal = terminal
        self._recorder = recorder
        self._journal = journal
        self.location_id = location_id
        self.register_id = register_id
        self._split_tol = Decimal(str(split_tolerance))
        self._max_attempts = max(1, recorder_max_attempts)
        self._retry_seconds = recorder_retry_seconds
        self._sleep = sleep
        self._new_id = id_factory
        self._clock = clock

    # ---------- validación ----------
    async def validate(
        self,
        cart: CartSnapshot,
        totals: Totals,
        method: PaymentMethod,
        *,
        shift: Optional[ShiftHandle] = None,
        cash_received=None,
        split: Optional[SplitTender] = None,
    ) -> _Plan:
        method = PaymentMethod(method)
        due = totals.amount_due(method)
        if cart.is_empty:
            raise EmptyCart("nothing to settle", amount=due, method=method.value)

        if method == PaymentMethod.CASH:
            cash_portion, card_portion = due, ZERO
        elif method == PaymentMethod.CARD:
            cash_portion, card_portion = ZERO, due
        else:
            if split is None:
                raise SplitMismatch("split amounts required", amount=due, method=method.value)
            cash_portion = money(to_amount(split.cash_amount, "cash_amount", method=method.value))
            card_portion = money(to_amount(split.card_amount, "card_amount", method=method.value))
            if abs(cash_portion + card_portion - due) > self._split_tol:
                raise SplitMismatch(
                    f"cash {cash_portion} + card {card_portion} != total {due}",
                    amount=due,
                    method=method.value,
                )

        received: Optional[Decimal] = None
        change = money(ZERO)
        if cash_portion > 0:
            if cash_received is None:
                received = cash_portion
            else:
                received = money(to_amount(cash_received, "cash_received", method=method.value))
            if received < cash_portion:
                raise InsufficientCash(
                    f"received {received} < due {cash_portion}",
                    amount=cash_portion,
                    method=method.value,
                )
            change = received - cash_portion
            if shift is None:
                raise NoOpenShift("an open shift is required to take cash", amount=cash_portion, method=method.value)
            await shift.ensure_open()

        return _Plan(method, due, cash_portion, card_portion, received, change)

    # ---------- pipeline ----------
    async def settle(
        self,
        cart: CartSnapshot,
        totals: Totals,
        method: PaymentMethod,
        *,
        shift: Optional[ShiftHandle] = None,
        cash_received=None,
        split: Optional[SplitTender] = None,
    ) -> SettlementResult:
        plan = await self.validate(cart, totals, method, shift=shift, cash_received=cash_received, split=split)
        tx_id = self._new_id()
        log = logger.bind(transaction_id=tx_id, register_id=self.register_id, method=plan.method.value)

        # 1) tarjeta: después de pedir el cobro ya no se cancela (evita doble cargo)
        card_meta: Optional[CardMeta] = None
        if plan.card_portion > 0:
            log.info("charging card {}", plan.card_portion)
            result = await self._terminal.charge(plan.card_portion, reference=tx_id)
            if isinstance(result, TerminalFailure):
                log.warning("card charge failed: {} {}", result.reason.value, result.message)
                raise failure_to_error(result, plan.card_portion, plan.method.value)
            card_meta = result.card_meta()

        tx = Transaction(
            id=tx_id,
            location_id=self.location_id,
            register_id=self.register_id,
            line_items=cart.items,
            subtotal=totals.subtotal,
            discount=totals.discount,
            tax=totals.tax,
            tip=totals.tip,
            total=plan.amount_due,
            payment_method=plan.method,
            created_at=self._clock(),
            cash_amount=plan.cash_portion if plan.cash_portion > 0 else None,
            card_amount=plan.card_portion if plan.card_portion > 0 else None,
            cash_received=plan.cash_received,
            change_due=plan.change_due if plan.cash_portion > 0 else None,
            card_meta=card_meta,
            shift_id=shift.shift_id if shift is not None else None,
        )
        return await self._finish(tx, shift, journal=True)

    async def resubmit(self, tx: Transaction, *, shift: Optional[ShiftHandle] = None) -> SettlementResult:
        """
        Reenvía al registrador una transacción cuyo cobro ya se capturó. No vuelve
        a cobrar: usa el mismo id y los mismos metadatos de tarjeta. La evidencia
        ya quedó en el diario, así que no se vuelve a anexar.
        """
        logger.bind(transaction_id=tx.id, register_id=self.register_id).info("resubmitting captured transaction")
        return await self._finish(tx, shift, journal=False)

    async def _finish(self, tx: Transaction, shift: Optional[ShiftHandle], *, journal: bool) -> SettlementResult:
        log = logger.bind(transaction_id=tx.id, register_id=self.register_id, method=tx.payment_method.value)

        # 2) registro con reintentos (misma clave de idempotencia)
        record_id = await self._record(tx, captured=tx.card_meta is not None, journal=journal)

        # 3) turno (la venta ya quedó registrada)
        shift_synced = True
        if tx.cash_amount and shift is not None:
            try:
                await shift.record_cash_sale(tx.cash_amount)
            except PersistenceError as exc:
                shift_synced = False
                log.error("transaction recorded but shift cash total not updated: {}", exc)

        log.bind(total=str(tx.total)).info("settled")
        return SettlementResult(
            transaction=tx,
            change_due=tx.change_due if tx.change_due is not None else money(ZERO),
            record_id=record_id,
            shift_synced=shift_synced,
        )

    async def _record(self, tx: Transaction, *, captured: bool, journal: bool = True) -> str:
        log = logger.bind(transaction_id=tx.id)
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._recorder.record(tx)
            except PersistenceError as exc:
                last_exc = exc
                log.warning("recorder failed (attempt {}/{}): {}", attempt, self._max_attempts, exc)
                if attempt < self._max_attempts:
                    await self._sleep(self._retry_seconds)

        if captured:
            if journal and self._journal is not None:
                self._journal.append(tx, str(last_exc))
            raise PaymentCapturedNotRecorded(
                "payment captured but not recorded; manual reconciliation required",
                transaction=tx,
                amount=tx.total,
                method=tx.payment_method.value,
            )
        raise PersistenceError(
            f"transaction {tx.id} not recorded: {last_exc}",
            amount=tx.total,
            method=tx.payment_method.value,
        )
