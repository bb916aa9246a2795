from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.credits import grant_credits, record_failed_payment
from team_api.db.session import get_session
from team_api.errors import ValidationError
from team_api.models import PaymentStatus
from team_api.payment_security import verify_payment_signature
from team_api.repositories import audit_request

router = APIRouter()


class PaymentConfirmIn(BaseModel):
    external_transaction_id: str = Field(min_length=1, max_length=255)
    team_id: int
    user_id: int | None = None
    credits: int = Field(gt=0)
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="usd", max_length=8)
    status: PaymentStatus = PaymentStatus.SUCCEEDED


@router.post("/payments/confirm", dependencies=[Depends(verify_payment_signature)])
async def confirm_payment(
    payload: PaymentConfirmIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    if payload.status is PaymentStatus.PENDING:
        raise ValidationError("only settled payments can be confirmed")
    if payload.status is PaymentStatus.FAILED:
        payment = await record_failed_payment(
            session,
            payload.team_id,
            payload.external_transaction_id,
            payload.credits,
            user_id=payload.user_id,
            amount_charged=payload.amount,
            currency=payload.currency,
        )
        return {"status": payment.status.value, "payment_id": payment.id, "applied": False}

    result = await grant_credits(
        session,
        payload.team_id,
        payload.credits,
        payload.external_transaction_id,
        user_id=payload.user_id,
        amount_charged=payload.amount,
        currency=payload.currency,
    )
    payment_id = result.payment.id
    if result.applied:
        await audit_request(
            session,
            request,
            actor_user_id=payload.user_id,
            team_id=payload.team_id,
            action="credits.grant",
            target_type="payment",
            target_id=payment_id,
            payload={"credits": payload.credits},
        )
    return {
        "status": PaymentStatus.SUCCEEDED.value,
        "payment_id": payment_id,
        "applied": result.applied,
    }
