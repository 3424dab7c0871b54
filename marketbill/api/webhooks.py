"""
Payment processor webhook route.

POST /api/webhooks/payments
- Raw body and stripe-signature header are verified before anything is parsed
- 200 {"received": true, "status": ...} on success or graceful no-op
- 400 on signature failure
- 500 on primary-effect failure so the processor redelivers
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from marketbill.features.billing.webhooks import process_webhook


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payments_webhook(request: Request):
    body = await request.body()
    headers = dict(request.headers)

    outcome = await run_in_threadpool(process_webhook, headers, body)
    return {"received": True, "status": outcome.status}
