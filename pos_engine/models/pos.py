from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from ..db import Base


class CashDrawerSessionRow(Base):
    __tablename__ = "pos_shift"
    id = Column(String(36), primary_key=True)
    register_id = Column(String(60), nullable=False, index=True)
    employee_id = Column(String(60), nullable=False)
    status = Column(String(10), default="OPEN", index=True)  # OPEN | CLOSED
    starting_cash = Column(Numeric(12, 2), nullable=False)
    cash_sales_accumulated = Column(Numeric(12, 2), default=0)
    drawer_adjustments = Column(Numeric(12, 2), default=0)
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
    opening_count_json = Column(Text, nullable=True)
    report_json = Column(Text, nullable=True)  # congelado al cierre


class DrawerActivityRow(Base):
    __tablename__ = "pos_drawer_activity"
    id = Column(Integer, primary_key=True)
    shift_id = Column(String(36), ForeignKey("pos_shift.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # CASH_DROP | PAID_IN | PAID_OUT | NO_SALE
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(String(40), nullable=True)  # solo NO_SALE
    note = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PosTransactionRow(Base):
    __tablename__ = "pos_transaction"
    id = Column(Integer, primary_key=True)
    idempotency_key = Column(String(36), unique=True, index=True, nullable=False)
    location_id = Column(String(60), nullable=False)
    register_id = Column(String(60), nullable=False)
    shift_id = Column(String(36), nullable=True, index=True)
    payment_method = Column(String(10), nullable=False)  # CASH | CARD | SPLIT
    subtotal = Column(Numeric(12, 2), default=0)
    discount_total = Column(Numeric(12, 2), default=0)
    tax_total = Column(Numeric(12, 2), default=0)
    tip = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), default=0)
    cash_received = Column(Numeric(12, 2), nullable=True)
    change_due = Column(Numeric(12, 2), nullable=True)
    gateway_tx_id = Column(String(80), nullable=True)
    auth_code = Column(String(40), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_type = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class PosTransactionLineRow(Base):
    __tablename__ = "pos_transaction_line"
    id = Column(Integer, primary_key=True)
    transaction_id = Column(Integer, ForeignKey("pos_transaction.id"), nullable=False)
    item_id = Column(String(60), nullable=False)
    kind = Column(String(10), nullable=False)
    name = Column(String(120))
    qty = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount_percent = Column(Numeric(5, 2), default=0)
    line_total = Column(Numeric(12, 2), default=0)


class PosPaymentSplitRow(Base):
    __tablename__ = "pos_payment_split"
    id = Column(Integer, primary_key=True)
    transaction_id = Column(Integer, ForeignKey("pos_transaction.id"), nullable=False)
    method = Column(String(10), nullable=False)  # CASH | CARD
    amount = Column(Numeric(12, 2), nullable=False)


class DisplaySyncRow(Base):
    __tablename__ = "pos_display_sync"
    location_id = Column(String(60), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    payload_json = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)
