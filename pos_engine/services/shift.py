"""
Manejo de sesiones de cajón (turnos).

open (fondo contado) -> activo (acumula ventas en efectivo) -> close (conteo + diferencia).
El "esperado" solo aparece en el reporte final; mientras se cuenta no se expone.
El reporte se genera una vez al cierre y se guarda congelado.
"""
from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from ..core.domain import (
    NO_SALE_REASONS,
    CashDrawerSession,
    DrawerActivity,
    DrawerActivityType,
    ShiftReport,
    ShiftStatus,
    VarianceClass,
)
from ..core.errors import (
    EmptyDrawerCount,
    InvalidAmount,
    InvalidDrawerActivity,
    NoOpenShift,
    PersistenceError,
    ShiftAlreadyOpen,
    ShiftClosed,
)
from ..core.money import ZERO, money, to_amount
from ..models.pos import CashDrawerSessionRow, DrawerActivityRow
from .denominations import DenominationCount


def classify_variance(variance: Decimal, tolerance: Decimal) -> VarianceClass:
    if variance < -tolerance:
        return VarianceClass.SHORT
    if variance > tolerance:
        return VarianceClass.OVER
    return VarianceClass.BALANCED


def summarize_activities(activities: List[DrawerActivity]) -> Dict[str, int]:
    """Conteos por tipo; muchos NO_SALE en un turno es señal de alerta."""
    counts = {t: 0 for t in DrawerActivityType}
    for a in activities:
        counts[a.type] += 1
    return {
        "total_opens": len(activities),
        "no_sale_count": counts[DrawerActivityType.NO_SALE],
        "cash_drops": counts[DrawerActivityType.CASH_DROP],
        "paid_ins": counts[DrawerActivityType.PAID_IN],
        "paid_outs": counts[DrawerActivityType.PAID_OUT],
    }


# ---------- Almacenes ----------
class ShiftStore:
    def get_open(self, register_id: str) -> Optional[CashDrawerSession]:
        raise NotImplementedError

    def get(self, shift_id: str) -> Optional[CashDrawerSession]:
        raise NotImplementedError

    def insert_open(self, session: CashDrawerSession, opening_count: Dict[str, int]) -> None:
        """Alta atómica: falla con ShiftAlreadyOpen si el registro ya tiene un turno OPEN."""
        raise NotImplementedError

    def add_cash_sale(self, shift_id: str, amount: Decimal) -> None:
        raise NotImplementedError

    def add_activity(self, activity: DrawerActivity, delta: Decimal) -> None:
        raise NotImplementedError

    def list_activities(self, shift_id: str) -> List[DrawerActivity]:
        raise NotImplementedError

    def close(self, shift_id: str, closed_at: datetime, report: ShiftReport) -> None:
        raise NotImplementedError

    def get_report(self, shift_id: str) -> Optional[ShiftReport]:
        raise NotImplementedError


class InMemoryShiftStore(ShiftStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, CashDrawerSession] = {}
        self._reports: Dict[str, ShiftReport] = {}
        self._activities: List[DrawerActivity] = []

    def get_open(self, register_id):
        for s in self._sessions.values():
            if s.register_id == register_id and s.status == ShiftStatus.OPEN:
                return s.copy()
        return None

    def get(self, shift_id):
        s = self._sessions.get(shift_id)
        return s.copy() if s else None

    def insert_open(self, session, opening_count):
        with self._lock:
            if any(
                s.register_id == session.register_id and s.status == ShiftStatus.OPEN
                for s in self._sessions.values()
            ):
                raise ShiftAlreadyOpen(f"register {session.register_id} already has an open shift")
            self._sessions[session.id] = session.copy()

    def add_cash_sale(self, shift_id, amount):
        with self._lock:
            s = self._require_open(shift_id)
            s.cash_sales_accumulated += amount

    def add_activity(self, activity, delta):
        with self._lock:
            s = self._require_open(activity.shift_id)
            s.drawer_adjustments += delta
            self._activities.append(activity)

    def list_activities(self, shift_id):
        return [a for a in self._activities if a.shift_id == shift_id]

    def close(self, shift_id, closed_at, report):
        with self._lock:
            s = self._require_open(shift_id)
            s.status = ShiftStatus.CLOSED
            s.closed_at = closed_at
            self._reports[shift_id] = report

    def get_report(self, shift_id):
        return self._reports.get(shift_id)

    def _require_open(self, shift_id) -> CashDrawerSession:
        s = self._sessions.get(shift_id)
        if s is None:
            raise NoOpenShift(f"shift {shift_id} not found")
        if s.status != ShiftStatus.OPEN:
            raise ShiftClosed(f"shift {shift_id} is closed")
        return s


class SqlShiftStore(ShiftStore):
    def __init__(self, session_factory):
        self._sf = session_factory
        # SQLite no tiene SELECT ... FOR UPDATE; serializamos open/close en proceso
        self._lock = threading.Lock()

    @staticmethod
    def _to_domain(row: CashDrawerSessionRow) -> CashDrawerSession:
        return CashDrawerSession(
            id=row.id,
            register_id=row.register_id,
            employee_id=row.employee_id,
            starting_cash=money(row.starting_cash or 0),
            cash_sales_accumulated=money(row.cash_sales_accumulated or 0),
            drawer_adjustments=money(row.drawer_adjustments or 0),
            status=ShiftStatus(row.status),
            opened_at=row.opened_at,
            closed_at=row.closed_at,
        )

    def get_open(self, register_id):
        with self._sf() as db:
            row = db.query(CashDrawerSessionRow).filter_by(register_id=register_id, status="OPEN").first()
            return self._to_domain(row) if row else None

    def get(self, shift_id):
        with self._sf() as db:
            row = db.get(CashDrawerSessionRow, shift_id)
            return self._to_domain(row) if row else None

    def insert_open(self, session, opening_count):
        with self._lock:
            try:
                with self._sf() as db:
                    exists = (
                        db.query(CashDrawerSessionRow.id)
                        .filter_by(register_id=session.register_id, status="OPEN")
                        .first()
                    )
                    if exists:
                        raise ShiftAlreadyOpen(f"register {session.register_id} already has an open shift")
                    db.add(
                        CashDrawerSessionRow(
                            id=session.id,
                            register_id=session.register_id,
                            employee_id=session.employee_id,
                            status="OPEN",
                            starting_cash=session.starting_cash,
                            cash_sales_accumulated=0,
                            drawer_adjustments=0,
                            opened_at=session.opened_at,
                            opening_count_json=json.dumps(opening_count),
                        )
                    )
                    db.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not open shift: {exc}", amount=session.starting_cash, method="CASH")

    def add_cash_sale(self, shift_id, amount):
        with self._lock:
            try:
                with self._sf() as db:
                    row = self._require_open(db, shift_id)
                    row.cash_sales_accumulated = money((row.cash_sales_accumulated or 0) + amount)
                    db.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not update shift {shift_id}: {exc}", amount=amount, method="CASH")

    def add_activity(self, activity, delta):
        with self._lock:
            try:
                with self._sf() as db:
                    row = self._require_open(db, activity.shift_id)
                    row.drawer_adjustments = money((row.drawer_adjustments or 0) + delta)
                    db.add(
                        DrawerActivityRow(
                            shift_id=activity.shift_id,
                            type=activity.type.value,
                            amount=activity.amount,
                            reason=activity.reason,
                            note=activity.note,
                            created_at=activity.created_at,
                        )
                    )
                    db.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    f"could not record {activity.type.value}: {exc}", amount=activity.amount, method="CASH"
                )

    def list_activities(self, shift_id):
        with self._sf() as db:
            rows = db.query(DrawerActivityRow).filter_by(shift_id=shift_id).order_by(DrawerActivityRow.id).all()
            return [
                DrawerActivity(
                    shift_id=r.shift_id,
                    type=DrawerActivityType(r.type),
                    amount=money(r.amount or 0),
                    created_at=r.created_at,
                    note=r.note,
                    reason=r.reason,
                )
                for r in rows
            ]

    def close(self, shift_id, closed_at, report):
        with self._lock:
            try:
                with self._sf() as db:
                    row = self._require_open(db, shift_id)
                    row.status = "CLOSED"
                    row.closed_at = closed_at
                    row.report_json = json.dumps(report.to_dict())
                    db.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(f"could not close shift {shift_id}: {exc}", amount=report.counted, method="CASH")

    def get_report(self, shift_id):
        with self._sf() as db:
            row = db.get(CashDrawerSessionRow, shift_id)
            if row is None or not row.report_json:
                return None
            return ShiftReport.from_dict(json.loads(row.report_json))

    @staticmethod
    def _require_open(db, shift_id) -> CashDrawerSessionRow:
        row = db.get(CashDrawerSessionRow, shift_id)
        if row is None:
            raise NoOpenShift(f"shift {shift_id} not found")
        if row.status != "OPEN":
            raise ShiftClosed(f"shift {shift_id} is closed")
        return row


# ---------- Manager ----------
@dataclass(frozen=True)
class ShiftHandle:
    """Handle explícito del turno que se pasa a la liquidación (sin estado global)."""

    shift_id: str
    register_id: str
    manager: "CashDrawerManager"

    # el almacén es SQL síncrono: se corre en el threadpool
    async def ensure_open(self) -> None:
        await run_in_threadpool(self.manager.ensure_open, self.shift_id)

    async def record_cash_sale(self, amount) -> None:
        await run_in_threadpool(self.manager.record_cash_sale, self.shift_id, amount)


class CashDrawerManager:
    def __init__(
        self,
        register_id: str,
        store: ShiftStore,
        *,
        tolerance=Decimal("0.005"),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.register_id = register_id
        self._store = store
        self._tolerance = Decimal(str(tolerance))
        self._clock = clock

    def open(self, employee_id: str, count: DenominationCount) -> CashDrawerSession:
        counted = count.total
        if counted <= ZERO:
            raise EmptyDrawerCount("opening count must be greater than zero", amount=counted, method="CASH")
        session = CashDrawerSession(
            id=str(uuid.uuid4()),
            register_id=self.register_id,
            employee_id=str(employee_id),
            starting_cash=counted,
            opened_at=self._clock(),
        )
        self._store.insert_open(session, count.to_dict())
        logger.bind(register_id=self.register_id, shift_id=session.id, employee_id=session.employee_id).info(
            "shift opened with float {}", counted
        )
        return session

    def current(self) -> Optional[CashDrawerSession]:
        return self._store.get_open(self.register_id)

    def handle(self) -> Optional[ShiftHandle]:
        s = self.current()
        return ShiftHandle(shift_id=s.id, register_id=self.register_id, manager=self) if s else None

    def ensure_open(self, shift_id: str) -> CashDrawerSession:
        s = self._store.get(shift_id)
        if s is None:
            raise NoOpenShift(f"shift {shift_id} not found")
        if s.status != ShiftStatus.OPEN:
            raise ShiftClosed(f"shift {shift_id} is closed")
        return s

    def record_cash_sale(self, shift_id: str, amount) -> None:
        amt = money(to_amount(amount, "cash_sale", method="CASH"))
        self._store.add_cash_sale(shift_id, amt)
        logger.bind(shift_id=shift_id).debug("cash sale recorded: {}", amt)

    def record_activity(
        self,
        shift_id: str,
        type_: DrawerActivityType,
        amount=None,
        note: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> DrawerActivity:
        type_ = DrawerActivityType(type_)
        if type_ == DrawerActivityType.NO_SALE:
            # abre el cajón sin mover dinero
            if reason not in NO_SALE_REASONS:
                raise InvalidDrawerActivity(f"no-sale reason must be one of {', '.join(NO_SALE_REASONS)}", method="CASH")
            if reason == "other" and not (note or "").strip():
                raise InvalidDrawerActivity("no-sale reason 'other' requires a note", method="CASH")
            amt, delta = money(ZERO), ZERO
        else:
            if amount is None:
                raise InvalidAmount("amount", amount, method="CASH")
            amt = money(to_amount(amount, "amount", method="CASH"))
            if amt <= ZERO:
                raise InvalidAmount("amount", amount, method="CASH")
            delta = amt if type_ == DrawerActivityType.PAID_IN else -amt
        activity = DrawerActivity(
            shift_id=shift_id, type=type_, amount=amt, created_at=self._clock(), note=note, reason=reason
        )
        self._store.add_activity(activity, delta)
        logger.bind(shift_id=shift_id, type=type_.value, reason=reason).info("drawer activity {} {}", type_.value, amt)
        return activity

    def activities(self, shift_id: str) -> List[DrawerActivity]:
        return self._store.list_activities(shift_id)

    def close(self, count: DenominationCount, shift_id: Optional[str] = None) -> ShiftReport:
        s = self._store.get(shift_id) if shift_id else self._store.get_open(self.register_id)
        if s is None or s.status != ShiftStatus.OPEN:
            raise NoOpenShift(f"no open shift for register {self.register_id}", amount=count.total, method="CASH")

        expected = s.starting_cash + s.cash_sales_accumulated + s.drawer_adjustments
        counted = count.total
        variance = counted - expected
        closed_at = self._clock()
        report = ShiftReport(
            shift_id=s.id,
            employee_id=s.employee_id,
            starting_cash=s.starting_cash,
            cash_sales_accumulated=s.cash_sales_accumulated,
            drawer_adjustments=s.drawer_adjustments,
            expected=expected,
            counted=counted,
            variance=variance,
            classification=classify_variance(variance, self._tolerance),
            opened_at=s.opened_at,
            closed_at=closed_at,
            closing_count=count.to_dict(),
        )
        self._store.close(s.id, closed_at, report)
        logger.bind(register_id=self.register_id, shift_id=s.id).info(
            "shift closed: counted {} variance {} ({})", counted, variance, report.classification.value
        )
        return report

    def report(self, shift_id: str) -> Optional[ShiftReport]:
        return self._store.get_report(shift_id)
