"""
Billing API routes - premium, points, commissions, invoices and Stripe webhooks
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Header
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal
import logging

from .db.engine import get_db
from .exceptions import BillingError
from .services.billing_gateway import BillingGateway
from .services.billing_service import BillingService
from .services.commission_calculator import CommissionCalculator, CommissionRates
from .services.event_dispatcher import EventDispatcher
from .services.webhook_verifier import verify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to start a hosted checkout"""
    account_id: str = Field(..., min_length=1, max_length=64)
    success_url: str = Field(..., description="Redirect after successful payment")
    cancel_url: str = Field(..., description="Redirect after abandoned payment")


class PointsCheckoutRequest(CheckoutRequest):
    """Request to buy a points package"""
    product: Optional[str] = Field(None, description="Points package key (defaults to the standard package)")


class CheckoutResponse(BaseModel):
    """Checkout session created at Stripe"""
    session_id: str
    url: Optional[str]
    mode: str
    points: Optional[int] = None


class CancelRequest(BaseModel):
    """Request to stop premium auto-renewal"""
    account_id: str = Field(..., min_length=1, max_length=64)


class PremiumStatusResponse(BaseModel):
    """Premium fields of an account"""
    account_id: str
    is_premium: bool
    premium_since: Optional[str]
    premium_until: Optional[str]
    auto_renew: bool
    state: str


class CommissionRequest(BaseModel):
    """Completed job reported by the job board"""
    job_id: str = Field(..., min_length=1, max_length=64)
    employer_id: str = Field(..., min_length=1, max_length=64)
    worker_id: str = Field(..., min_length=1, max_length=64)
    job_amount: Decimal = Field(..., description="Job price in EUR")


class CommissionResponse(BaseModel):
    """Commission recorded for a job"""
    job_id: str
    commission: str
    commission_rate: str
    status: str


class CommissionOverviewResponse(BaseModel):
    """Commission history of an employer"""
    employer_id: str
    total_pending: str
    total_collected: str
    transactions: List[dict]


class InvoiceListResponse(BaseModel):
    """Monthly commission invoices"""
    invoices: List[dict]


class InvoicePaymentResponse(BaseModel):
    """Payment attempt sent to Stripe"""
    invoice_id: int
    external_invoice_id: str
    provider_status: Optional[str]
    payment_status: str


def get_gateway(request: Request) -> BillingGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider is not configured"
        )
    return gateway


def get_config(request: Request):
    return request.app.state.config


@router.post("/premium/checkout", response_model=CheckoutResponse)
def create_premium_checkout(
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_gateway),
    config=Depends(get_config)
):
    """
    Start a premium subscription checkout

    Premium is granted only by the ``checkout.session.completed`` webhook.
    """
    session = BillingService(db, gateway, config).start_premium_checkout(
        body.account_id, body.success_url, body.cancel_url
    )
    return CheckoutResponse(**session)


@router.post("/points/checkout", response_model=CheckoutResponse)
def create_points_checkout(
    body: PointsCheckoutRequest,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_gateway),
    config=Depends(get_config)
):
    """Start a one-time checkout for a points package"""
    session = BillingService(db, gateway, config).start_points_checkout(
        body.account_id, body.success_url, body.cancel_url, product=body.product
    )
    return CheckoutResponse(**session)


@router.get("/premium/status/{account_id}", response_model=PremiumStatusResponse)
def get_premium_status(account_id: str, db: Session = Depends(get_db), config=Depends(get_config)):
    return BillingService(db, None, config).get_premium_status(account_id)


@router.post("/premium/cancel", response_model=PremiumStatusResponse)
def cancel_premium(
    body: CancelRequest,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_gateway),
    config=Depends(get_config)
):
    """
    Cancel premium at the end of the current period

    Nothing changes locally unless Stripe accepted the cancellation.
    """
    return BillingService(db, gateway, config).cancel_premium(body.account_id)


@router.post("/commissions", response_model=CommissionResponse)
def record_commission(body: CommissionRequest, db: Session = Depends(get_db), config=Depends(get_config)):
    """
    Record the commission of a completed job

    Reporting the same job again returns the commission recorded first.
    """
    calculator = CommissionCalculator(db, CommissionRates.from_config(config))
    transaction = calculator.record(body.job_id, body.employer_id, body.worker_id, body.job_amount)
    return CommissionResponse(
        job_id=transaction.job_id,
        commission=str(transaction.commission_amount),
        commission_rate=str(transaction.commission_rate),
        status=transaction.status,
    )


@router.get("/commissions/{employer_id}", response_model=CommissionOverviewResponse)
def get_commission_overview(employer_id: str, db: Session = Depends(get_db), config=Depends(get_config)):
    transactions = BillingService(db, None, config).list_commissions(employer_id)

    totals = {"pending": Decimal("0.00"), "collected": Decimal("0.00")}
    for transaction in transactions:
        totals[transaction.status] = totals.get(transaction.status, Decimal("0.00")) + transaction.commission_amount

    return CommissionOverviewResponse(
        employer_id=employer_id,
        total_pending=str(totals["pending"]),
        total_collected=str(totals["collected"]),
        transactions=[t.to_dict() for t in transactions],
    )


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(account_id: Optional[str] = None, db: Session = Depends(get_db), config=Depends(get_config)):
    invoices = BillingService(db, None, config).list_invoices(account_id)
    return InvoiceListResponse(invoices=[invoice.to_dict() for invoice in invoices])


@router.post("/invoices/{invoice_id}/pay", response_model=InvoicePaymentResponse)
def pay_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_gateway),
    config=Depends(get_config)
):
    """
    Collect a commission invoice now

    The invoice's payment status is updated by the Stripe webhook, not here.
    """
    return BillingService(db, gateway, config).pay_invoice(invoice_id)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config=Depends(get_config),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature")
):
    """
    Handle Stripe webhook events

    Rules:
    - The raw body must carry a valid signature; otherwise 400 and nothing is processed
    - Each event id is applied at most once; redeliveries are acknowledged
    - Processing failures answer 500 so Stripe redelivers the event
    """
    body = await request.body()

    # VerificationError is rendered as 400 by the exception handlers
    event = verify(body, stripe_signature, config.stripe_webhook_secret, config.WEBHOOK_TOLERANCE_SECONDS)

    try:
        result = await run_in_threadpool(EventDispatcher(db, config).dispatch, event)
    except BillingError as e:
        logger.error(f"Stripe webhook {event.event_id} ({event.event_type}) failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}
