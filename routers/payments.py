from typing import List

from fastapi import APIRouter, Depends

from deps import (
    CurrentUserDep,
    MailerDep,
    OfficerDep,
    PayPalDep,
    PolicyDep,
    SessionDep,
    StripeDep,
    require_submission_token,
)
from gateway_payment_service import GatewayPaymentService
from payment_activation_service import PaymentActivationService
from staff_query_service import StaffQueryService
import schemas

payments_router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@payments_router.post(
    "/subscriptions/{subscription_id}/mark-paid",
    response_model=schemas.ReconcileResult,
    dependencies=[Depends(require_submission_token("mark_paid"))],
)
async def mark_subscription_paid(
    subscription_id: int,
    request: schemas.MarkPaidRequest,
    db_session: SessionDep,
    officer: OfficerDep,
    policy: PolicyDep,
    mailer: MailerDep,
):
    """Record a bank transfer received outside the gateways."""
    return await PaymentActivationService.mark_paid(
        db_session, subscription_id, officer.id, policy, mailer, reference=request.reference
    )


@payments_router.get("/outstanding", response_model=schemas.Subscription)
async def outstanding_subscription(db_session: SessionDep, current_user: CurrentUserDep):
    _member, subscription, _outstanding = await GatewayPaymentService.payment_context(db_session, current_user)
    return subscription


@payments_router.post(
    "/stripe/checkout",
    response_model=schemas.CheckoutSession,
    dependencies=[Depends(require_submission_token("stripe_checkout"))],
)
async def start_stripe_checkout(
    db_session: SessionDep,
    current_user: CurrentUserDep,
    policy: PolicyDep,
    stripe: StripeDep,
):
    session = await GatewayPaymentService.start_stripe_checkout(db_session, current_user, policy, stripe)
    return schemas.CheckoutSession(session_id=session["id"], url=session.get("url"))


@payments_router.post(
    "/paypal/orders",
    response_model=schemas.PayPalOrder,
    dependencies=[Depends(require_submission_token("paypal_order"))],
)
async def create_paypal_order(
    db_session: SessionDep,
    current_user: CurrentUserDep,
    policy: PolicyDep,
    paypal: PayPalDep,
):
    order = await GatewayPaymentService.create_paypal_order(db_session, current_user, policy, paypal)
    return schemas.PayPalOrder(order_id=order["id"], status=order.get("status"))


@payments_router.post(
    "/paypal/orders/{order_id}/capture",
    response_model=schemas.ReconcileResult,
    dependencies=[Depends(require_submission_token("paypal_capture"))],
)
async def capture_paypal_order(
    order_id: str,
    db_session: SessionDep,
    current_user: CurrentUserDep,
    policy: PolicyDep,
    mailer: MailerDep,
    paypal: PayPalDep,
):
    return await GatewayPaymentService.capture_paypal_order(
        db_session, current_user, order_id, policy, mailer, paypal
    )


@payments_router.get("/subscriptions", response_model=List[schemas.SubscriptionRow])
async def list_subscriptions(
    db_session: SessionDep,
    officer: OfficerDep,
    view: str = "outstanding",
    search: str = "",
):
    """Subscriptions by payment state: outstanding, completed or all."""
    return await StaffQueryService.list_subscriptions(db_session, view=view, search=search)
