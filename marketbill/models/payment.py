"""
marketbill/models/payment.py

PaymentRecord: one payment attempt, keyed by the processor-issued intent id.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


PAYMENT_PENDING = "pending"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELED = "canceled"

PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_CANCELED)
TERMINAL_PAYMENT_STATUSES = (PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_CANCELED)


class PaymentRecord(BaseModel):
    """
    Status only moves pending -> succeeded or pending -> failed.
    Both are terminal.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    payment_id: str
    user_id: str
    plan_id: str
    role: str
    intent_id: str
    amount: float
    currency: str
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES
