# FILE: app/api/routes_credits.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db
from app.core.errors import WorkflowError
from app.core.rbac import Actor, Capability, require_capability
from app.schemas.credit import BonusIn, CreditSummaryOut, CreditTxnOut
from app.services import credit_ledger
from app.utils.resp import err, ok, workflow_err

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/me")
def my_credits(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        totals = credit_ledger.get_credit_totals(db, actor.id)
        rows = credit_ledger.history(db, actor.id, limit)
        out = CreditSummaryOut(
            **totals,
            history=[CreditTxnOut.model_validate(x) for x in rows],
        )
        return ok(out.model_dump())
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        logger.exception("Failed to load credits for user %s", actor.id)
        return err(str(e), status_code=500)


@router.post("/bonus")
def grant_bonus_api(
    payload: BonusIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        require_capability(actor, Capability.CREDIT_GRANT)
        txn = credit_ledger.grant_bonus(
            db,
            customer_id=payload.customer_id,
            amount=payload.amount,
            description=payload.description,
            admin_id=actor.id,
        )
        logger.info("Admin %s granted %s bonus credits to customer %s",
                    actor.id, payload.amount, payload.customer_id)
        return ok(CreditTxnOut.model_validate(txn).model_dump(), status_code=201)
    except WorkflowError as e:
        return workflow_err(e)
    except Exception as e:
        logger.exception("Bonus grant failed")
        return err(str(e), status_code=500)
