"""
Sincronización POS -> pantalla cliente y máquina de estados del cobro.

El almacén durable (por location_id) es la fuente de verdad para la segunda
pantalla; el broadcast local es solo vía rápida y best-effort. Cada escritura
durable es compare-and-set sobre un número de versión monotónico, así una
pantalla que reconecta detecta y descarta su estado viejo.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from ..core.domain import CartSnapshot, CheckoutState, PricingConfiguration, Totals
from ..core.errors import CheckoutStateError, StaleDisplayVersion
from ..models.pos import DisplaySyncRow
from .pricing import tip_suggestions

S = CheckoutState

TRANSITIONS: Dict[CheckoutState, frozenset] = {
    S.IDLE: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.IDLE, S.AWAITING_TIP, S.SETTLING, S.CANCELLED}),
    S.AWAITING_TIP: frozenset({S.TIP_SELECTED, S.ACTIVE, S.CANCELLED}),
    S.TIP_SELECTED: frozenset({S.SETTLING, S.CANCELLED}),
    S.SETTLING: frozenset({S.COMPLETED, S.ACTIVE}),
    S.COMPLETED: frozenset({S.IDLE}),
    S.CANCELLED: frozenset({S.IDLE}),
}

StateListener = Callable[[CheckoutState, CheckoutState], None]


class CheckoutStateMachine:
    def __init__(self, initial: CheckoutState = S.IDLE):
        self._state = CheckoutState(initial)
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> CheckoutState:
        return self._state

    def can(self, target: CheckoutState) -> bool:
        return CheckoutState(target) in TRANSITIONS[self._state]

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def transition(self, target: CheckoutState) -> CheckoutState:
        target = CheckoutState(target)
        if not self.can(target):
            raise CheckoutStateError(f"transition {self._state.value} -> {target.value} not allowed")
        prev, self._state = self._state, target
        for listener in list(self._listeners):
            listener(prev, target)
        return prev


# ---------- Documento y almacenes ----------
@dataclass(frozen=True)
class DisplayDocument:
    location_id: str
    version: int
    payload: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def status(self) -> Optional[str]:
        return self.payload.get("status")

    def to_dict(self) -> Dict[str, Any]:
        return {**self.payload, "location_id": self.location_id, "version": self.version}


class DisplaySyncStore:
    """Almacén clave-valor por location_id, con escrituras compare-and-set."""

    async def read(self, location_id: str) -> Optional[DisplayDocument]:
        raise NotImplementedError

    async def compare_and_set(
        self, location_id: str, expected_version: int, payload: Dict[str, Any]
    ) -> DisplayDocument:
        raise NotImplementedError


class InMemoryDisplayStore(DisplaySyncStore):
    def __init__(self):
        self._docs: Dict[str, DisplayDocument] = {}
        self.reads = 0
        self.writes = 0

    async def read(self, location_id: str) -> Optional[DisplayDocument]:
        self.reads += 1
        return self._docs.get(location_id)

    async def compare_and_set(self, location_id, expected_version, payload):
        cur = self._docs.get(location_id)
        current_version = cur.version if cur else 0
        if current_version != expected_version:
            raise StaleDisplayVersion(
                f"expected version {expected_version}, store has {current_version} for {location_id}"
            )
        doc = DisplayDocument(
            location_id=location_id,
            version=current_version + 1,
            payload=dict(payload),
            updated_at=datetime.now(timezone.utc),
        )
        self._docs[location_id] = doc
        self.writes += 1
        return doc


class SqlDisplayStore(DisplaySyncStore):
    def __init__(self, session_factory):
        self._sf = session_factory

    async def read(self, location_id: str) -> Optional[DisplayDocument]:
        return await run_in_threadpool(self._read_sync, location_id)

    async def compare_and_set(self, location_id, expected_version, payload):
        return await run_in_threadpool(self._cas_sync, location_id, expected_version, payload)

    def _read_sync(self, location_id: str) -> Optional[DisplayDocument]:
        with self._sf() as db:
            row = db.get(DisplaySyncRow, location_id)
            if row is None:
                return None
            return DisplayDocument(
                location_id=row.location_id,
                version=row.version,
                payload=json.loads(row.payload_json),
                updated_at=row.updated_at,
            )

    def _cas_sync(self, location_id, expected_version, payload) -> DisplayDocument:
        now = datetime.utcnow()
        body = json.dumps(payload, default=str)
        with self._sf() as db:
            if expected_version == 0:
                db.add(DisplaySyncRow(location_id=location_id, version=1, payload_json=body, updated_at=now))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise StaleDisplayVersion(f"document for {location_id} already exists")
                new_version = 1
            else:
                res = db.execute(
                    update(DisplaySyncRow)
                    .where(DisplaySyncRow.location_id == location_id, DisplaySyncRow.version == expected_version)
                    .values(version=expected_version + 1, payload_json=body, updated_at=now)
                )
                if res.rowcount != 1:
                    db.rollback()
                    raise StaleDisplayVersion(f"expected version {expected_version} for {location_id}")
                db.commit()
                new_version = expected_version + 1
        return DisplayDocument(location_id=location_id, version=new_version, payload=dict(payload), updated_at=now)


class LocalBroadcast:
    """Pub/sub en proceso (vía rápida). Si un suscriptor está lleno, se descarta el mensaje."""

    def __init__(self, maxsize: int = 100):
        self._maxsize = maxsize
        self._subs: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, location_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subs.setdefault(location_id, []).append(q)
        return q

    def unsubscribe(self, location_id: str, q: asyncio.Queue) -> None:
        subs = self._subs.get(location_id) or []
        if q in subs:
            subs.remove(q)

    def publish(self, location_id: str, message: Dict[str, Any]) -> int:
        delivered = 0
        for q in list(self._subs.get(location_id) or []):
            try:
                q.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.bind(location_id=location_id).warning("broadcast subscriber full; message dropped")
        return delivered


def build_display_payload(
    snapshot: CartSnapshot,
    totals: Totals,
    status: CheckoutState,
    config: Optional[PricingConfiguration] = None,
    *,
    tip_prompt: bool = False,
    tip_amount=None,
) -> Dict[str, Any]:
    """Contrato con la pantalla cliente: {items[], subtotal, tax, total, status, ...}."""
    return {
        "items": [it.to_dict() for it in snapshot.items],
        "subtotal": str(totals.discounted_subtotal),
        "tax": str(totals.tax),
        "total": str(totals.total_cash),
        "total_card": str(totals.total_card),
        "status": CheckoutState(status).value,
        "tip_prompt": tip_prompt,
        "tip_type": config.tip_type.value if (tip_prompt and config) else None,
        "tip_suggestions": [str(s) for s in tip_suggestions(config, totals.total_cash)] if tip_prompt else [],
        "tip_amount": None if tip_amount is None else str(tip_amount),
        "tip_selected": False,
        "cart_version": snapshot.version,
    }


class DisplaySyncChannel:
    SUPPRESSED = frozenset({S.AWAITING_TIP, S.SETTLING})

    def __init__(
        self,
        location_id: str,
        store: DisplaySyncStore,
        broadcast: Optional[LocalBroadcast] = None,
        *,
        debounce_seconds: float = 0.3,
        max_cas_attempts: int = 3,
    ):
        self.location_id = location_id
        self._store = store
        self._broadcast = broadcast
        self._debounce = debounce_seconds
        self._max_cas = max_cas_attempts
        self._pending: Optional[asyncio.Task] = None
        self._latest: Optional[Dict[str, Any]] = None
        self._suppressed = False
        self.last_version = 0

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def set_state(self, state: CheckoutState) -> None:
        self._suppressed = CheckoutState(state) in self.SUPPRESSED
        if self._suppressed:
            # un ACTIVE pendiente no debe pisar el handshake de propina
            self._cancel_pending()
            self._latest = None

    def publish_cart(self, payload: Dict[str, Any]) -> bool:
        if self._suppressed:
            return False
        self._fanout(payload)
        self._latest = payload
        self._cancel_pending()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # sin loop: queda pendiente hasta flush()
            return True
        self._pending = loop.create_task(self._debounced())
        return True

    async def publish_now(self, payload: Dict[str, Any]) -> DisplayDocument:
        self._cancel_pending()
        self._latest = None
        self._fanout(payload)
        return await self._write(payload)

    async def read(self) -> Optional[DisplayDocument]:
        return await self._store.read(self.location_id)

    async def flush(self) -> Optional[DisplayDocument]:
        self._cancel_pending()
        payload, self._latest = self._latest, None
        if payload is None:
            return None
        return await self._write(payload)

    async def close(self) -> None:
        self._cancel_pending()
        self._latest = None

    # ---------- internos ----------
    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _fanout(self, payload: Dict[str, Any]) -> None:
        if self._broadcast is None:
            return
        try:
            self._broadcast.publish(self.location_id, {"type": "CART_UPDATE", "data": payload})
        except Exception as exc:
            logger.bind(location_id=self.location_id).warning("local broadcast failed: {}", exc)

    async def _debounced(self) -> None:
        await asyncio.sleep(self._debounce)
        payload, self._latest = self._latest, None
        if payload is None:
            return
        try:
            await self._write(payload)
        except Exception as exc:
            logger.bind(location_id=self.location_id).warning("display sync write failed: {}", exc)

    async def _write(self, payload: Dict[str, Any]) -> DisplayDocument:
        last_exc: Optional[StaleDisplayVersion] = None
        for _ in range(self._max_cas):
            cur = await self._store.read(self.location_id)
            expected = cur.version if cur else 0
            try:
                doc = await self._store.compare_and_set(self.location_id, expected, payload)
            except StaleDisplayVersion as exc:
                last_exc = exc
                continue
            self.last_version = doc.version
            return doc
        raise last_exc or StaleDisplayVersion(f"could not write display document for {self.location_id}")
