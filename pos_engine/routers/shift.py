from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from ..core.errors import NoOpenShift
from ..core.schemas import DrawerActivityIn, ShiftCloseIn, ShiftOpenIn
from ..services.denominations import DenominationCount
from ..services.shift import CashDrawerManager, summarize_activities

# rutas reales: /pos/shift/*
router = APIRouter(prefix="/pos/shift", tags=["pos-shift"])


def _drawer(request: Request, register_id: Optional[str]) -> CashDrawerManager:
    state = request.app.state
    return state.drawer_for(register_id or state.settings.register_id)


# ---------- OPEN ----------
@router.post("/open")
async def open_shift(payload: ShiftOpenIn, request: Request):
    drawer = _drawer(request, payload.register_id)
    count = DenominationCount.from_mapping(payload.counts)
    session = await run_in_threadpool(drawer.open, payload.employee_id, count)
    out = session.public_view()
    out["shift_id"] = session.id
    out["starting_cash"] = str(session.starting_cash)
    return out


# ---------- CLOSE (conteo ciego -> reporte) ----------
@router.post("/close")
async def close_shift(payload: ShiftCloseIn, request: Request):
    drawer = _drawer(request, payload.register_id)
    count = DenominationCount.from_mapping(payload.counts)
    report = await run_in_threadpool(drawer.close, count, payload.shift_id)
    return report.to_dict()


# ---------- DROP / PAID-IN / PAID-OUT / NO-SALE ----------
@router.post("/activity")
async def drawer_activity(payload: DrawerActivityIn, request: Request):
    drawer = _drawer(request, payload.register_id)
    current = await run_in_threadpool(drawer.current)
    if current is None:
        raise NoOpenShift(f"no open shift for register {drawer.register_id}", amount=payload.amount, method="CASH")
    activity = await run_in_threadpool(
        drawer.record_activity, current.id, payload.type, payload.amount, payload.note, payload.reason
    )
    return activity.to_dict()


@router.get("/activity")
async def list_drawer_activity(request: Request, register_id: Optional[str] = None, shift_id: Optional[str] = None):
    drawer = _drawer(request, register_id)
    if shift_id is None:
        current = await run_in_threadpool(drawer.current)
        if current is None:
            raise NoOpenShift(f"no open shift for register {drawer.register_id}", method="CASH")
        shift_id = current.id
    activities = await run_in_threadpool(drawer.activities, shift_id)
    return {
        "shift_id": shift_id,
        "activities": [a.to_dict() for a in activities],
        "summary": summarize_activities(activities),
    }


# ---------- CURRENT (sin esperado) ----------
@router.get("/current")
async def current_shift(request: Request, register_id: Optional[str] = None):
    drawer = _drawer(request, register_id)
    current = await run_in_threadpool(drawer.current)
    if current is None:
        raise HTTPException(status_code=404, detail="NO_OPEN_SHIFT")
    return current.public_view()


# ---------- REPORT (congelado al cierre) ----------
@router.get("/{shift_id}/report")
async def shift_report(shift_id: str, request: Request):
    report = await run_in_threadpool(_drawer(request, None).report, shift_id)
    if report is None:
        raise HTTPException(status_code=404, detail="REPORT_NOT_FOUND")
    return report.to_dict()
