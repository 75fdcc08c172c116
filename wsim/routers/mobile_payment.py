"""
Mobile payment router — merchant, mobile app and public endpoints.

Endpoints (all under /api/mobile/payment):

  Merchant (x-api-key):
    POST /request                   — Create a payment request
    GET  /{request_id}/status       — Poll; includes the one-time token once approved
    POST /{request_id}/complete     — Redeem the one-time token for card tokens

  Mobile app (Bearer access token):
    GET  /pending                   — Requests waiting on this user
    GET  /{request_id}              — Review a request and pick a card
    POST /{request_id}/approve      — Approve with a card (explicit consent)

  Either:
    POST /{request_id}/cancel       — The owning merchant or the bound user

  Public:
    GET  /{request_id}/public       — QR landing page data (no return URL, no merchant id)

  Testing (never in production):
    POST /{request_id}/test-approve — x-test-key; approve without a bank round trip
"""

from typing import Callable

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from sqlalchemy.ext.asyncio import AsyncSession

from wsim.context import CallerContext
from wsim.database import get_db
from wsim.dependencies import (
    get_bsim_client,
    get_merchant,
    get_mobile_caller,
    get_optional_merchant,
    get_optional_mobile_caller,
    get_provider_registry,
    require_test_key,
)
from wsim.exceptions import NotAuthenticatedError, PaymentError, validation_message
from wsim.models.merchant import Merchant
from wsim.models.payment_request import MobilePaymentRequest, PaymentStatus
from wsim.schemas.payment import (
    E2EApproveRequest,
    E2EApproveResponse,
    PaymentApproveRequest,
    PaymentApproveResponse,
    PaymentCancelResponse,
    PaymentCompleteRequest,
    PaymentCompleteResponse,
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentDetailResponse,
    PaymentStatusResponse,
    PaymentSummary,
    PendingPaymentsResponse,
    PublicPaymentResponse,
)
from wsim.schemas.wallet import CardResponse
from wsim.services import payment_service
from wsim.services.bsim_client import BsimClient
from wsim.services.providers import ProviderRegistry


class PaymentRoute(APIRoute):
    """
    Route class that keeps every payment error inside the payment code table.

    Request validation failures become INVALID_REQUEST and bearer token
    failures become UNAUTHORIZED, instead of the generic bad_request and
    unauthorized codes used by the rest of the API.
    """

    def get_route_handler(self) -> Callable:
        handler = super().get_route_handler()

        async def payment_route_handler(request: Request) -> Response:
            try:
                return await handler(request)
            except RequestValidationError as exc:
                raise PaymentError("INVALID_REQUEST", validation_message(exc))
            except NotAuthenticatedError as exc:
                raise PaymentError("UNAUTHORIZED", exc.detail)

        return payment_route_handler


router = APIRouter(route_class=PaymentRoute)


def _summary(payment: MobilePaymentRequest) -> PaymentSummary:
    return PaymentSummary(
        request_id=payment.id,
        merchant_name=payment.merchant_name,
        merchant_logo_url=payment.merchant_logo_url,
        order_id=payment.order_id,
        order_description=payment.order_description,
        amount=float(payment.amount),
        currency=payment.currency,
        status=payment.status,
        expires_at=payment.expires_at,
        created_at=payment.created_at,
    )


# ---------------------------------------------------------------------------
# Merchant
# ---------------------------------------------------------------------------

@router.post(
    "/request",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment request",
)
async def create_payment_request(
    body: PaymentCreateRequest,
    merchant: Merchant = Depends(get_merchant),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a 5-minute payment request for the mobile app.

    - **amount**: Positive, authoritative total
    - **order_id**: The merchant's order; a new request cancels the previous
      pending one for the same order
    - **order_details**: Optional breakdown shown on the approval screen
    """
    payment = await payment_service.create_payment_request(
        db,
        merchant,
        amount=body.amount,
        order_id=body.order_id,
        return_url=body.return_url,
        currency=body.currency,
        order_description=body.order_description,
        order_details=body.order_details,
    )
    return PaymentCreateResponse(
        request_id=payment.id,
        deep_link_url=payment_service.deep_link_url(payment.id),
        qr_code_url=payment_service.qr_code_url(payment.id),
        expires_at=payment.expires_at,
        status=payment.status,
    )


@router.get(
    "/{request_id}/status",
    response_model=PaymentStatusResponse,
    summary="Poll a payment request",
)
async def get_status(
    request_id: str,
    merchant: Merchant = Depends(get_merchant),
    db: AsyncSession = Depends(get_db),
):
    payment = await payment_service.get_status(db, request_id, merchant.client_id)
    approved = payment.status == PaymentStatus.APPROVED.value
    return PaymentStatusResponse(
        request_id=payment.id,
        status=payment.status,
        expires_at=payment.expires_at,
        one_time_payment_token=payment.one_time_token if approved else None,
    )


@router.post(
    "/{request_id}/complete",
    response_model=PaymentCompleteResponse,
    summary="Complete an approved payment",
)
async def complete_payment(
    request_id: str,
    body: PaymentCompleteRequest,
    merchant: Merchant = Depends(get_merchant),
    db: AsyncSession = Depends(get_db),
):
    """The one-time token works once; the card tokens are returned with it."""
    payment = await payment_service.complete_payment(
        db, request_id, merchant.client_id, body.one_time_payment_token
    )
    return PaymentCompleteResponse(
        request_id=payment.id,
        status=payment.status,
        card_token=payment.card_token,
        wallet_card_token=payment.wallet_card_token,
    )


@router.post(
    "/{request_id}/cancel",
    response_model=PaymentCancelResponse,
    summary="Cancel a pending payment",
)
async def cancel_payment(
    request_id: str,
    merchant: Merchant | None = Depends(get_optional_merchant),
    caller: CallerContext | None = Depends(get_optional_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    """Allowed for the owning merchant (x-api-key) or the bound user (Bearer)."""
    if merchant is None and caller is None:
        raise PaymentError("UNAUTHORIZED", "x-api-key or Bearer token required")

    payment = await payment_service.cancel_payment(
        db,
        request_id,
        merchant_id=merchant.client_id if merchant else None,
        user_id=caller.user_id if caller else None,
    )
    return PaymentCancelResponse(request_id=payment.id, status=payment.status)


# ---------------------------------------------------------------------------
# Mobile app
# ---------------------------------------------------------------------------

@router.get(
    "/pending",
    response_model=PendingPaymentsResponse,
    summary="List pending payments",
)
async def list_pending(
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    payments = await payment_service.list_pending(db, caller.user_id)
    return PendingPaymentsResponse(requests=[_summary(p) for p in payments])


@router.get(
    "/{request_id}",
    response_model=PaymentDetailResponse,
    summary="Review a payment request",
)
async def view_payment(
    request_id: str,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
):
    """
    The first user to open a request claims it; nobody else can view,
    approve or cancel it afterwards.
    """
    payment, cards = await payment_service.view_payment(db, request_id, caller.user_id)
    return PaymentDetailResponse(
        **_summary(payment).model_dump(),
        order_details=payment.order_details,
        return_url=payment.return_url,
        cards=[CardResponse.model_validate(c) for c in cards],
    )


@router.post(
    "/{request_id}/approve",
    response_model=PaymentApproveResponse,
    summary="Approve a payment",
)
async def approve_payment(
    request_id: str,
    body: PaymentApproveRequest,
    caller: CallerContext = Depends(get_mobile_caller),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    bsim_client: BsimClient = Depends(get_bsim_client),
):
    """
    Approve with one of the user's active cards.

    - **card_id**: The card to pay with
    - **consent**: Must be true
    """
    payment = await payment_service.approve_payment(
        db,
        registry,
        bsim_client,
        request_id=request_id,
        user_id=caller.user_id,
        card_id=body.card_id,
        consent=body.consent,
    )
    return PaymentApproveResponse(
        request_id=payment.id,
        status=payment.status,
        return_url=payment.return_url,
        expires_at=payment.expires_at,
    )


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

@router.get(
    "/{request_id}/public",
    response_model=PublicPaymentResponse,
    summary="Public payment summary",
)
async def get_public(request_id: str, db: AsyncSession = Depends(get_db)):
    payment = await payment_service.get_public(db, request_id)
    return PublicPaymentResponse(
        id=payment.id,
        merchant_name=payment.merchant_name,
        merchant_logo_url=payment.merchant_logo_url,
        amount=float(payment.amount),
        currency=payment.currency,
        order_description=payment.order_description,
        status=payment.status,
        expires_at=payment.expires_at,
    )


# ---------------------------------------------------------------------------
# End-to-end testing
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/test-approve",
    response_model=E2EApproveResponse,
    summary="Approve without the bank (test environments only)",
    dependencies=[Depends(require_test_key)],
)
async def test_approve(
    request_id: str,
    body: E2EApproveRequest,
    db: AsyncSession = Depends(get_db),
):
    payment = await payment_service.test_approve(db, request_id, body.user_id, body.card_id)
    return E2EApproveResponse(
        request_id=payment.id,
        status=payment.status,
        one_time_token=payment.one_time_token,
    )
