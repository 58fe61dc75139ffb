from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Deque, List, Optional, Tuple, Union
import uuid

import requests
from loguru import logger
from starlette.concurrency import run_in_threadpool

from ..core.domain import CardMeta
from ..core.errors import CardDeclined, TerminalError, TerminalFault, TerminalTimeout


class TerminalFailureReason(str, Enum):
    DECLINED = "DECLINED"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class TerminalApproval:
    gateway_tx_id: str
    auth_code: str
    card_last4: str
    card_type: str

    def card_meta(self) -> CardMeta:
        return CardMeta(
            gateway_tx_id=self.gateway_tx_id,
            auth_code=self.auth_code,
            card_last4=self.card_last4,
            card_type=self.card_type,
        )


@dataclass(frozen=True)
class TerminalFailure:
    reason: TerminalFailureReason
    message: str = ""


TerminalResult = Union[TerminalApproval, TerminalFailure]

_FAILURE_ERRORS = {
    TerminalFailureReason.DECLINED: CardDeclined,
    TerminalFailureReason.TIMEOUT: TerminalTimeout,
    TerminalFailureReason.ERROR: TerminalFault,
}


def failure_to_error(result: TerminalFailure, amount: Decimal, method: str = "CARD") -> TerminalError:
    cls = _FAILURE_ERRORS.get(result.reason, TerminalFault)
    return cls(result.message or result.reason.value.lower(), amount=amount, method=method)


class PaymentTerminal:
    """Terminal con tarjeta presente: {amount} -> aprobación con metadatos o fallo tipado."""

    async def charge(self, amount: Decimal, *, reference: str) -> TerminalResult:
        raise NotImplementedError


class SimulatedTerminal(PaymentTerminal):
    """Terminal de demo/pruebas: aprueba por defecto o devuelve los resultados encolados."""

    def __init__(self, results: Optional[List[TerminalResult]] = None, *, card_last4: str = "4242", card_type: str = "VISA"):
        self._queue: Deque[TerminalResult] = deque(results or [])
        self._last4 = card_last4
        self._type = card_type
        self.calls: List[Tuple[Decimal, str]] = []

    def enqueue(self, result: TerminalResult) -> None:
        self._queue.append(result)

    async def charge(self, amount: Decimal, *, reference: str) -> TerminalResult:
        self.calls.append((amount, reference))
        if self._queue:
            return self._queue.popleft()
        return TerminalApproval(
            gateway_tx_id=f"SIM-{uuid.uuid4().hex[:12].upper()}",
            auth_code=uuid.uuid4().hex[:6].upper(),
            card_last4=self._last4,
            card_type=self._type,
        )


class HttpPaymentTerminal(PaymentTerminal):
    """Puente HTTP hacia el agente de la terminal (POST {base}/sale)."""

    def __init__(self, base_url: str, *, timeout: float = 120.0, session: Optional[requests.Session] = None):
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    async def charge(self, amount: Decimal, *, reference: str) -> TerminalResult:
        return await run_in_threadpool(self._charge_sync, amount, reference)

    def _charge_sync(self, amount: Decimal, reference: str) -> TerminalResult:
        log = logger.bind(reference=reference, amount=str(amount))
        try:
            r = self._session.post(
                f"{self._base}/sale",
                json={"amount": str(amount), "reference": reference},
                timeout=self._timeout,
            )
        except requests.Timeout:
            log.warning("terminal timed out")
            return TerminalFailure(TerminalFailureReason.TIMEOUT, "terminal did not respond")
        except requests.RequestException as exc:
            log.warning("terminal unreachable: {}", exc)
            return TerminalFailure(TerminalFailureReason.ERROR, f"terminal unreachable: {exc}")

        try:
            js = r.json()
        except ValueError:
            return TerminalFailure(TerminalFailureReason.ERROR, f"bad terminal response (HTTP {r.status_code})")

        if r.status_code == 200 and js.get("success"):
            return TerminalApproval(
                gateway_tx_id=str(js.get("gateway_tx_id") or ""),
                auth_code=str(js.get("auth_code") or ""),
                card_last4=str(js.get("card_last4") or ""),
                card_type=str(js.get("card_type") or ""),
            )
        reason = str(js.get("reason") or "ERROR").upper()
        try:
            parsed = TerminalFailureReason(reason)
        except ValueError:
            parsed = TerminalFailureReason.ERROR
        return TerminalFailure(parsed, str(js.get("message") or reason.lower()))
