from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import get_db
from ..schemas.writing_desk import AdjustCreditsRequest, CreditsOut
from ..services.credits import CreditLedger
from .routes_jobs import current_user_id, verify_api_key

router = APIRouter(tags=["credits"])

settings = get_settings()


@router.get("/user/credits", response_model=CreditsOut, dependencies=[Depends(verify_api_key)])
def get_credits(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CreditsOut(credits=CreditLedger(db).balance(user_id))


@router.post("/user/credits/add", response_model=CreditsOut, dependencies=[Depends(verify_api_key)])
def add_credits(
    payload: AdjustCreditsRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    # Top-ups without payment are a development convenience only
    if not settings.ALLOW_DEV_CREDIT_MUTATION:
        raise HTTPException(status_code=403, detail="Credit mutation is disabled")
    balance = CreditLedger(db).credit(user_id, payload.amount)
    db.commit()
    return CreditsOut(credits=balance)
