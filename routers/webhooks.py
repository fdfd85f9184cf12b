from typing import Optional

from fastapi import APIRouter, Header, Request

from deps import MailerDep, PayPalDep, PolicyDep, SessionDep, StripeDep
from gateway_payment_service import GatewayPaymentService

webhooks_router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@webhooks_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db_session: SessionDep,
    policy: PolicyDep,
    mailer: MailerDep,
    stripe: StripeDep,
    stripe_signature: Optional[str] = Header(default=None),
):
    """Authenticated by the Stripe-Signature header over the raw body."""
    payload = await request.body()
    return await GatewayPaymentService.handle_stripe_webhook(
        db_session, payload, stripe_signature, policy, mailer, stripe
    )


@webhooks_router.post("/paypal")
async def paypal_webhook(
    request: Request,
    db_session: SessionDep,
    policy: PolicyDep,
    mailer: MailerDep,
    paypal: PayPalDep,
):
    payload = await request.body()
    return await GatewayPaymentService.handle_paypal_webhook(
        db_session, payload, request.headers, policy, mailer, paypal
    )
