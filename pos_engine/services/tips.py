"""
Protocolo de solicitud de propina (fase AWAITING_TIP).

Publica AWAITING_TIP y consulta el almacén compartido cada `interval` segundos
hasta `max_attempts` veces. TIP_SELECTED detiene el sondeo de inmediato; al
agotar los intentos la propina queda en cero (política por defecto, no es una
decisión del cliente). Cancelable por el operador o al desmontar el registro.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from ..core.domain import CheckoutState
from ..core.errors import CheckoutStateError, StaleDisplayVersion
from ..core.money import money, to_amount
from .display_sync import DisplaySyncChannel, DisplaySyncStore


class TipOutcomeReason(str, Enum):
    SELECTED = "SELECTED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class TipOutcome:
    amount: Decimal
    reason: TipOutcomeReason


NO_TIP_TIMEOUT = TipOutcome(money(0), TipOutcomeReason.TIMEOUT)
NO_TIP_SKIPPED = TipOutcome(money(0), TipOutcomeReason.SKIPPED)


class TipSolicitation:
    def __init__(
        self,
        channel: DisplaySyncChannel,
        *,
        interval: float = 1.0,
        max_attempts: int = 120,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._channel = channel
        self._interval = interval
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, awaiting_payload: Dict[str, Any]) -> TipOutcome:
        log = logger.bind(location_id=self._channel.location_id)
        payload = dict(awaiting_payload, status=CheckoutState.AWAITING_TIP.value, tip_prompt=True)
        doc = await self._channel.publish_now(payload)
        log.info("tip prompt published (version {})", doc.version)

        self.attempts = 0
        while self.attempts < self._max_attempts:
            await self._sleep(self._interval)
            self.attempts += 1
            try:
                cur = await self._channel.read()
            except Exception as exc:
                log.warning("error polling for tip (attempt {}/{}): {}", self.attempts, self._max_attempts, exc)
                continue
            if cur is not None and cur.status == CheckoutState.TIP_SELECTED.value and cur.payload.get("tip_selected"):
                amount = money(to_amount(cur.payload.get("tip_amount") or 0, "tip_amount"))
                log.bind(attempts=self.attempts).info("tip selected: {}", amount)
                return TipOutcome(amount, TipOutcomeReason.SELECTED)

        log.bind(attempts=self.attempts).info("tip polling timed out; tip defaults to 0")
        return NO_TIP_TIMEOUT

    def start(self, awaiting_payload: Dict[str, Any]) -> asyncio.Task:
        if self.running:
            raise CheckoutStateError("tip solicitation already running")
        self._task = asyncio.get_running_loop().create_task(self.run(awaiting_payload))
        return self._task

    async def wait(self) -> TipOutcome:
        if self._task is None:
            raise CheckoutStateError("tip solicitation not started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return NO_TIP_SKIPPED
            raise

    def cancel(self) -> bool:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            return True
        return False


async def submit_tip_selection(
    store: DisplaySyncStore, location_id: str, amount, expected_version: Optional[int] = None
):
    """Lado pantalla cliente: registra la propina elegida (cero explícito también vale)."""
    tip = money(to_amount(amount, "tip_amount"))
    cur = await store.read(location_id)
    if cur is None or cur.status != CheckoutState.AWAITING_TIP.value:
        raise CheckoutStateError(
            f"display for {location_id} is not awaiting a tip",
            amount=tip,
        )
    if expected_version is not None and expected_version != cur.version:
        raise StaleDisplayVersion(
            f"tip selection for version {expected_version}, current is {cur.version}",
            amount=tip,
        )
    payload = dict(
        cur.payload,
        status=CheckoutState.TIP_SELECTED.value,
        tip_selected=True,
        tip_amount=str(tip),
        tip_prompt=False,
    )
    return await store.compare_and_set(location_id, cur.version, payload)
