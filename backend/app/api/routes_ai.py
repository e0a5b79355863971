import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import get_db
from ..schemas.writing_desk import FollowUpOut, FollowUpRequest, JobForm
from ..services.credits import CreditLedger, InsufficientCreditsError
from ..services.follow_ups import FollowUpGenerationError, generate_follow_ups
from .routes_jobs import current_user_id, verify_api_key

router = APIRouter(tags=["ai"])

settings = get_settings()
logger = logging.getLogger(__name__)


@router.post(
    "/ai/writing-desk/follow-up",
    response_model=FollowUpOut,
    dependencies=[Depends(verify_api_key)],
)
def generate_follow_up_questions(
    payload: FollowUpRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    """
    Charge for and generate clarifying questions for the intake answers.

    The debit is committed before the model is called and refunded if
    generation fails.
    """
    ledger = CreditLedger(db)
    cost = settings.FOLLOW_UP_CREDIT_COST
    try:
        ledger.debit(user_id, cost)
        db.commit()
    except InsufficientCreditsError as exc:
        db.rollback()
        raise HTTPException(
            status_code=402,
            detail={"message": str(exc), "remainingCredits": exc.balance, "requiredCredits": exc.required},
        )

    try:
        result = generate_follow_ups(JobForm.model_validate(payload.model_dump()))
    except FollowUpGenerationError as exc:
        ledger.credit(user_id, cost)
        db.commit()
        logger.warning(
            "Refunded follow-up generation",
            extra={"user_id": user_id, "step": "follow_up_refund"},
        )
        raise HTTPException(status_code=502, detail=str(exc))

    return FollowUpOut(
        follow_up_questions=result.questions,
        notes=result.notes,
        response_id=result.response_id,
        remaining_credits=ledger.balance(user_id),
    )
