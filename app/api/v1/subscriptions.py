"""Subscription endpoints for the authenticated user.

Trials are started directly; paid plans go through the gateway that bills
them (hosted checkout for recurring plans, client-side order checkout for
fixed-term plans). Fixed-term payments are confirmed synchronously via
``/verify-payment``; everything else is confirmed by provider webhooks.
"""

import logging
from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.deps import CurrentUser, DbSession
from app.config import settings
from app.core.exceptions import (
    ConflictError,
    PaymentMismatchError,
    PaymentNotCapturedError,
    SignatureError,
    SubscriptionNotFoundError,
)
from app.domain.payment_operations import payment_ops
from app.domain.plan_operations import plan_ops
from app.domain.subscription_operations import subscription_ops
from app.models.payment import PaymentRead
from app.models.subscription import SubscriptionRead, SubscriptionStatus
from app.services.payments import gateway_for_plan, get_gateway
from app.services.subscription_machine import subscription_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class CheckoutRequest(BaseModel):
    plan_id: str
    success_url: str | None = None
    cancel_url: str | None = None


class OrderInfo(BaseModel):
    """Client-side checkout handle (Razorpay order)."""

    id: str
    amount_minor_units: int
    currency: str
    key_id: str | None = None


class CheckoutResponse(BaseModel):
    provider: str | None = None
    redirect_url: str | None = None
    order: OrderInfo | None = None
    trial: SubscriptionRead | None = None


class VerifyPaymentRequest(BaseModel):
    payment_id: str
    order_id: str
    signature: str
    plan_id: str


class CancelRequest(BaseModel):
    cancel_at_period_end: bool = True


class CancelResponse(BaseModel):
    message: str
    access_until: datetime
    subscription: SubscriptionRead


class ChangePlanRequest(BaseModel):
    new_plan_id: str


class ChangePlanResponse(BaseModel):
    message: str
    subscription: SubscriptionRead


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/current", response_model=SubscriptionRead | None)
async def get_current_subscription(
    current_user: CurrentUser,
    db: DbSession,
) -> SubscriptionRead | None:
    """The subscription governing the caller's access, or null."""
    subscription = await subscription_ops.get_current_for_user(db, current_user.id)
    if subscription is None or subscription.is_terminal:
        return None
    return SubscriptionRead.model_validate(subscription)


@router.get("/payments", response_model=list[PaymentRead])
async def list_payments(
    current_user: CurrentUser,
    db: DbSession,
    skip: int = 0,
    limit: int = 50,
) -> list[PaymentRead]:
    payments = await payment_ops.list_for_user(db, current_user.id, skip=skip, limit=limit)
    return [PaymentRead.model_validate(payment) for payment in payments]


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    data: CheckoutRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> CheckoutResponse:
    """
    Start a trial, or create the provider checkout for a paid plan.

    The subscription itself is only activated once the payment is confirmed.
    """
    plan = await plan_ops.get_or_404(db, data.plan_id)

    if plan.is_trial:
        subscription = await subscription_machine.start_trial(db, current_user.id, plan.id)
        return CheckoutResponse(trial=SubscriptionRead.model_validate(subscription))

    live = await subscription_ops.get_live_for_user(db, current_user.id)
    if live is not None and live.status == SubscriptionStatus.ACTIVE.value:
        raise ConflictError("User already has an active subscription")

    gateway = gateway_for_plan(plan)
    current = await subscription_ops.get_current_for_user(db, current_user.id)
    customer_id = (
        current.provider_customer_id if current and current.provider == gateway.name else None
    )

    base_url = settings.frontend_url.rstrip("/")
    result = await gateway.create_checkout(
        current_user,
        plan,
        success_url=data.success_url or f"{base_url}/subscription?checkout=success",
        cancel_url=data.cancel_url or f"{base_url}/subscription?checkout=cancelled",
        customer_id=customer_id,
    )

    order = None
    if result.redirect_url is None and result.order_id:
        order = OrderInfo(
            id=result.order_id,
            amount_minor_units=result.amount_minor_units,
            currency=result.currency,
            key_id=result.key_id,
        )
    return CheckoutResponse(
        provider=result.provider,
        redirect_url=result.redirect_url,
        order=order,
    )


@router.post("/verify-payment", response_model=SubscriptionRead)
async def verify_payment(
    data: VerifyPaymentRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> SubscriptionRead:
    """
    Confirm a client-side order payment and activate the subscription.

    Checks the checkout signature, then that the provider reports the
    payment captured against the same order for exactly the plan's price.
    """
    plan = await plan_ops.get_or_404(db, data.plan_id)
    gateway = get_gateway(settings.one_time_provider)
    if not gateway.verify_payment(data.payment_id, data.order_id, data.signature):
        logger.warning(
            f"Payment signature mismatch for user {current_user.id}, payment {data.payment_id}"
        )
        raise SignatureError("Invalid payment signature")

    details = await gateway.fetch_payment(data.payment_id)
    if details.order_id and details.order_id != data.order_id:
        raise SignatureError("Payment does not belong to this order")
    if not details.captured:
        raise PaymentNotCapturedError(details.payment_id, details.status)

    noted_plan = details.notes.get("plan_id")
    if noted_plan and noted_plan != plan.id:
        raise PaymentMismatchError(details.payment_id, f"order was created for '{noted_plan}'")
    if (
        details.amount_minor_units != plan.price_minor_units
        or details.currency.upper() != plan.currency.upper()
    ):
        logger.warning(
            f"Payment {details.payment_id} of {details.amount_minor_units} {details.currency} "
            f"does not cover plan {plan.id} for user {current_user.id}"
        )
        raise PaymentMismatchError(
            details.payment_id,
            f"expected {plan.price_minor_units} {plan.currency}",
        )

    subscription = await subscription_machine.activate_from_payment(
        db,
        current_user.id,
        plan.id,
        details.payment_id,
        provider=gateway.name,
        amount_minor_units=details.amount_minor_units,
        currency=details.currency,
        method=details.method,
    )
    return SubscriptionRead.model_validate(subscription)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    data: CancelRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> CancelResponse:
    """Cancel the current subscription now or at the end of its period."""
    current = await subscription_ops.get_current_for_user(db, current_user.id)
    if current is None or current.is_terminal:
        raise SubscriptionNotFoundError("current")

    subscription = await subscription_machine.request_cancellation(
        db, current.id, cancel_at_period_end=data.cancel_at_period_end
    )
    if data.cancel_at_period_end:
        message = "Subscription will be cancelled at the end of the current period"
        access_until = subscription.current_period_end
    else:
        message = "Subscription cancelled"
        access_until = subscription.ended_at or subscription.current_period_end
    return CancelResponse(
        message=message,
        access_until=access_until,
        subscription=SubscriptionRead.model_validate(subscription),
    )


@router.post("/change", response_model=ChangePlanResponse)
async def change_plan(
    data: ChangePlanRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> ChangePlanResponse:
    """Switch an active recurring subscription to another recurring plan."""
    current = await subscription_ops.get_current_for_user(db, current_user.id)
    if current is None or current.is_terminal:
        raise SubscriptionNotFoundError("current")

    subscription = await subscription_machine.change_plan(db, current.id, data.new_plan_id)
    return ChangePlanResponse(
        message=f"Plan changed to {data.new_plan_id}",
        subscription=SubscriptionRead.model_validate(subscription),
    )
