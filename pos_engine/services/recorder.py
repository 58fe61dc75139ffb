from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from ..core.domain import PaymentMethod, Transaction
from ..core.errors import PersistenceError
from ..models.pos import PosPaymentSplitRow, PosTransactionLineRow, PosTransactionRow
from ..utils.atomic_file import append_jsonl_atomic, read_jsonl


class TransactionRecorder:
    """Persiste una Transaction; la clave de idempotencia es transaction.id."""

    async def record(self, tx: Transaction) -> str:
        raise NotImplementedError


class InMemoryTransactionRecorder(TransactionRecorder):
    def __init__(self, fail_times: int = 0):
        self.records: Dict[str, Transaction] = {}
        self.calls = 0
        self._fail_times = fail_times

    async def record(self, tx: Transaction) -> str:
        self.calls += 1
        if self._fail_times > 0:
            self._fail_times -= 1
            raise PersistenceError("transaction recorder unavailable", amount=tx.total, method=tx.payment_method.value)
        # reintento con la misma clave: no duplica
        self.records.setdefault(tx.id, tx)
        return tx.id


class SqlTransactionRecorder(TransactionRecorder):
    def __init__(self, session_factory):
        self._sf = session_factory

    async def record(self, tx: Transaction) -> str:
        return await run_in_threadpool(self._record_sync, tx)

    def _record_sync(self, tx: Transaction) -> str:
        method = tx.payment_method.value
        try:
            with self._sf() as db:
                # Idempotencia: si ya existe, devuelve lo previo
                dup = db.query(PosTransactionRow).filter_by(idempotency_key=tx.id).first()
                if dup:
                    return dup.idempotency_key

                meta = tx.card_meta
                row = PosTransactionRow(
                    idempotency_key=tx.id,
                    location_id=tx.location_id,
                    register_id=tx.register_id,
                    shift_id=tx.shift_id,
                    payment_method=method,
                    subtotal=tx.subtotal,
                    discount_total=tx.discount,
                    tax_total=tx.tax,
                    tip=tx.tip,
                    total=tx.total,
                    cash_received=tx.cash_received,
                    change_due=tx.change_due,
                    gateway_tx_id=meta.gateway_tx_id if meta else None,
                    auth_code=meta.auth_code if meta else None,
                    card_last4=meta.card_last4 if meta else None,
                    card_type=meta.card_type if meta else None,
                    created_at=tx.created_at,
                )
                db.add(row)
                db.flush()

                for it in tx.line_items:
                    db.add(
                        PosTransactionLineRow(
                            transaction_id=row.id,
                            item_id=it.id,
                            kind=it.kind.value,
                            name=it.name,
                            qty=it.quantity,
                            unit_price=it.unit_price,
                            discount_percent=it.line_discount_percent,
                            line_total=it.line_total,
                        )
                    )
                # Guarda splits (cash/card) para el corte de caja
                if tx.cash_amount:
                    db.add(PosPaymentSplitRow(transaction_id=row.id, method=PaymentMethod.CASH.value, amount=tx.cash_amount))
                if tx.card_amount:
                    db.add(PosPaymentSplitRow(transaction_id=row.id, method=PaymentMethod.CARD.value, amount=tx.card_amount))
                db.commit()
                return tx.id
        except IntegrityError:
            # carrera con otro intento de la misma clave: ya quedó guardada
            return tx.id
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not record transaction {tx.id}: {exc}", amount=tx.total, method=method)


class ReconciliationJournal:
    """
    Evidencia de cobros capturados sin registro persistido. Nunca se descarta:
    se anexa a un JSONL y se revisa manualmente.
    """

    def __init__(self, path: str):
        self.path = path

    def append(self, tx: Transaction, error: str) -> Dict[str, Any]:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": "captured_not_recorded",
            "transaction_id": tx.id,
            "payment_method": tx.payment_method.value,
            "total": str(tx.total),
            "card_amount": str(tx.card_amount) if tx.card_amount is not None else None,
            "gateway_tx_id": tx.card_meta.gateway_tx_id if tx.card_meta else None,
            "error": error,
            "transaction": tx.to_dict(),
        }
        append_jsonl_atomic(self.path, entry)
        logger.bind(transaction_id=tx.id, total=str(tx.total)).error(
            "payment captured but not recorded; evidence written to {}", self.path
        )
        return entry

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        items = read_jsonl(self.path)
        return items[-limit:] if limit else items
