"""
Payment record store.

One row per payment attempt, keyed by the processor-issued intent id.
Status only moves pending -> succeeded or pending -> failed, each as a
compare-and-set UPDATE so concurrent webhook deliveries flip it once.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List
from uuid import uuid4
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketbill.core.database import get_db_session, payments, utc_now, as_utc
from marketbill.core.errors import ConflictError
from marketbill.models.payment import (
    PaymentRecord,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
)


logger = logging.getLogger("marketbill.payments")


def row_to_payment(row) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        role=row["role"],
        intent_id=row["intent_id"],
        amount=float(row["amount"]),
        currency=row["currency"],
        status=row["status"],
        metadata=row["metadata"] or {},
        processed_at=as_utc(row["processed_at"]),
        failure_reason=row["failure_reason"],
        created_at=as_utc(row["created_at"]),
    )


def create_pending(
    user_id: str,
    plan_id: str,
    role: str,
    intent_id: str,
    amount: float,
    currency: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> PaymentRecord:
    """Persist a pending record for a freshly opened intent."""
    payment_id = str(uuid4())
    now = utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(payments).values(
                    id=payment_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    role=role,
                    intent_id=intent_id,
                    amount=amount,
                    currency=currency,
                    status=PAYMENT_PENDING,
                    metadata=metadata or {},
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError("Payment intent already recorded", code="duplicate_intent")

    return get_by_intent(intent_id)


def get_by_intent(intent_id: str, session: Optional[Session] = None) -> Optional[PaymentRecord]:
    stmt = select(payments).where(payments.c.intent_id == intent_id)
    if session is not None:
        row = session.execute(stmt).mappings().fetchone()
    else:
        with get_db_session() as own:
            row = own.execute(stmt).mappings().fetchone()
    return row_to_payment(row) if row else None


def mark_succeeded(session: Session, intent_id: str, now: Optional[datetime] = None) -> bool:
    """
    Compare-and-set pending -> succeeded inside the caller's transaction.

    Returns False when the record is already terminal (duplicate delivery).
    """
    now = now or utc_now()
    result = session.execute(
        update(payments)
        .where(and_(payments.c.intent_id == intent_id, payments.c.status == PAYMENT_PENDING))
        .values(status=PAYMENT_SUCCEEDED, processed_at=now, updated_at=now)
    )
    return result.rowcount == 1


def mark_failed(intent_id: str, reason: str, now: Optional[datetime] = None) -> bool:
    """Compare-and-set pending -> failed. Returns False if already terminal."""
    now = now or utc_now()
    with get_db_session() as session:
        result = session.execute(
            update(payments)
            .where(and_(payments.c.intent_id == intent_id, payments.c.status == PAYMENT_PENDING))
            .values(status=PAYMENT_FAILED, failure_reason=reason, processed_at=now, updated_at=now)
        )
        return result.rowcount == 1


def list_payments(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
) -> List[PaymentRecord]:
    """Newest-first payment records for reconciliation views."""
    filters = []
    if status:
        filters.append(payments.c.status == status)
    if user_id:
        filters.append(payments.c.user_id == user_id)

    stmt = select(payments)
    if filters:
        stmt = stmt.where(and_(*filters))

    with get_db_session() as session:
        rows = session.execute(
            stmt.order_by(payments.c.created_at.desc()).limit(max(1, min(limit, 200)))
        ).mappings().all()
    return [row_to_payment(r) for r in rows]
