from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from ..core.schemas import TipSubmitIn
from ..services.tips import submit_tip_selection

# Lado pantalla cliente: lee el documento versionado y responde la propina
router = APIRouter(prefix="/pos/display-sync", tags=["display-sync"])


@router.get("")
async def read_display(request: Request, location_id: Optional[str] = None):
    state = request.app.state
    loc = location_id or state.settings.location_id
    doc = await state.display_store.read(loc)
    if doc is None:
        raise HTTPException(status_code=404, detail="DISPLAY_NOT_FOUND")
    return doc.to_dict()


@router.post("/tip")
async def submit_tip(payload: TipSubmitIn, request: Request):
    state = request.app.state
    loc = payload.location_id or state.settings.location_id
    doc = await submit_tip_selection(state.display_store, loc, payload.amount, payload.version)
    return doc.to_dict()
