"""Payment reconciliation API endpoints."""
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.api.deps import get_current_user, get_db, get_reconciler
from creditflow.schemas.payment import ReconcileResult
from creditflow.services.payment_service import PaymentService
from creditflow.services.reconcile_service import PaymentReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/{order_no}/reconcile", response_model=ReconcileResult)
async def reconcile_order(
    order_no: str,
    db: AsyncSession = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    user_id: str = Depends(get_current_user),
) -> ReconcileResult:
    """
    Verify an order with the gateway and credit it if paid.

    Safe to call any number of times. Clients poll this endpoint after
    returning from the gateway's checkout page until the outcome is
    already_settled or settled_now.
    """
    payments = PaymentService(db)
    await payments.get_order_for_user(order_no, user_id)

    outcome = await reconciler.reconcile(order_no)

    order = await payments.get_order(order_no)
    return ReconcileResult(order_no=order_no, outcome=outcome, status=order.status if order else None)


@router.api_route("/notify", methods=["GET", "POST"], response_class=PlainTextResponse)
async def payment_notification(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PlainTextResponse:
    """
    Asynchronous notification from the payment gateway.

    Parameters arrive in the query string (GET) or as a form body (POST).
    The gateway expects the plain text ``success``; anything else makes it
    retry the notification.
    """
    params = dict(request.query_params)
    if request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        params.update(parse_qsl(body, keep_blank_values=True))

    logger.info("payment_notification_received", order_no=params.get("out_trade_no"))
    acknowledged = await reconciler.settle_from_notification(params)
    return PlainTextResponse("success" if acknowledged else "fail")
