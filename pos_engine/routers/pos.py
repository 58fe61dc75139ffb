from typing import Callable, Optional

from fastapi import APIRouter, HTTPException, Request

from ..core.domain import CatalogItem, PaymentMethod
from ..core.schemas import CheckoutIn, DiscountIn, ItemIn, ItemPatchIn
from ..services.register import Register
from ..services.settlement import SettlementResult, SplitTender

router = APIRouter(prefix="/pos", tags=["pos"])


async def _register(request: Request, rid: str) -> Register:
    return await request.app.state.hub.get(rid)


def _at_index(fn: Callable, *args):
    try:
        return fn(*args)
    except IndexError:
        raise HTTPException(status_code=404, detail="ITEM_NOT_FOUND")


# ---------- Carrito ----------
@router.get("/register/{rid}")
async def register_view(rid: str, request: Request):
    return (await _register(request, rid)).view()


@router.post("/register/{rid}/items")
async def add_item(rid: str, payload: ItemIn, request: Request):
    reg = await _register(request, rid)
    reg.add_item(CatalogItem(id=payload.id, name=payload.name, price=payload.price), payload.kind)
    return reg.view()


@router.patch("/register/{rid}/items/{index}")
async def update_item(rid: str, index: int, payload: ItemPatchIn, request: Request):
    if payload.quantity is None and payload.delta is None and payload.discount_percent is None:
        raise HTTPException(status_code=422, detail="quantity, delta or discount_percent required")
    reg = await _register(request, rid)
    if payload.quantity is not None:
        _at_index(reg.set_quantity, index, payload.quantity)
    if payload.delta is not None:
        _at_index(reg.adjust_quantity, index, payload.delta)
    if payload.discount_percent is not None:
        _at_index(reg.apply_line_discount, index, payload.discount_percent)
    return reg.view()


@router.delete("/register/{rid}/items/{index}")
async def remove_item(rid: str, index: int, request: Request):
    reg = await _register(request, rid)
    _at_index(reg.remove_item, index)
    return reg.view()


@router.post("/register/{rid}/discount")
async def global_discount(rid: str, payload: DiscountIn, request: Request):
    reg = await _register(request, rid)
    reg.apply_global_discount(payload.amount, payload.source)
    return reg.view()


@router.post("/register/{rid}/clear")
async def clear_cart(rid: str, request: Request):
    reg = await _register(request, rid)
    reg.clear()
    return reg.view()


# ---------- Propina ----------
@router.post("/register/{rid}/tip/request")
async def request_tip(rid: str, request: Request):
    reg = await _register(request, rid)
    # el sondeo corre en segundo plano; la pantalla cliente responde vía /pos/display-sync/tip
    reg.start_tip_request()
    return reg.view()


@router.post("/register/{rid}/tip/skip")
async def skip_tip(rid: str, request: Request):
    reg = await _register(request, rid)
    await reg.skip_tip()
    return reg.view()


def _settled(result: SettlementResult):
    tx = result.transaction
    return {
        "transaction_id": tx.id,
        "record_id": result.record_id,
        "payment_method": tx.payment_method.value,
        "total": str(tx.total),
        "change_due": str(result.change_due),
        "shift_synced": result.shift_synced,
        "transaction": tx.to_dict(),
    }


# ---------- Cobro ----------
@router.post("/register/{rid}/checkout")
async def checkout(rid: str, payload: CheckoutIn, request: Request):
    reg = await _register(request, rid)
    split: Optional[SplitTender] = None
    if payload.method == PaymentMethod.SPLIT and (payload.cash_amount is not None or payload.card_amount is not None):
        split = SplitTender(cash_amount=payload.cash_amount, card_amount=payload.card_amount)
    result = await reg.checkout(payload.method, cash_received=payload.cash_received, split=split)
    return _settled(result)


@router.post("/register/{rid}/cancel")
async def cancel_checkout(rid: str, request: Request):
    reg = await _register(request, rid)
    await reg.cancel()
    return reg.view()


# ---------- Conciliación manual ----------
@router.post("/register/{rid}/reconciliation/retry")
async def retry_record(rid: str, request: Request):
    reg = await _register(request, rid)
    # mismo id de transacción, sin volver a cobrar
    return _settled(await reg.retry_record())


@router.post("/register/{rid}/reconciliation/resolve")
async def resolve_reconciled(rid: str, request: Request):
    reg = await _register(request, rid)
    tx = await reg.resolve_reconciled()
    return dict(reg.view(), transaction_id=tx.id)


@router.get("/reconciliation")
async def reconciliation(request: Request, limit: Optional[int] = None):
    entries = request.app.state.journal.entries(limit)
    return {"count": len(entries), "entries": entries}
