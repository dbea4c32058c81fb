"""Admin endpoints for auto-approval rules.

All routes require admin privileges (X-Jellyfin-Token header).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import approval
from app.database import get_db
from app.errors import RequestEngineError
from app.schemas import ApprovalRuleCreate, ApprovalRuleResponse, ApprovalRuleUpdate
from app.services.auth import Requester, require_admin_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/approval-rules", response_model=list[ApprovalRuleResponse])
async def list_approval_rules(
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """List every rule in evaluation order (highest priority first)."""
    rules = await approval.list_rules(db)
    return [ApprovalRuleResponse.model_validate(r) for r in rules]


@router.post("/approval-rules", response_model=ApprovalRuleResponse, status_code=201)
async def create_approval_rule(
    payload: ApprovalRuleCreate,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a rule.

    conditions must fit rule_type, e.g. {"minApprovedRequests": 5} for
    user_trust or {"allowedHours": [22, 23, 0]} for time_based.
    """
    try:
        rule = await approval.create_rule(
            db,
            name=payload.name,
            rule_type=payload.rule_type,
            conditions=payload.conditions,
            description=payload.description,
            enabled=payload.enabled,
            priority=payload.priority,
        )
    except RequestEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    logger.info(f"Approval rule {rule.id} created by {user.username}")
    return ApprovalRuleResponse.model_validate(rule)


@router.get("/approval-rules/{rule_id}", response_model=ApprovalRuleResponse)
async def get_approval_rule(
    rule_id: int,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        rule = await approval.get_rule(db, rule_id)
    except RequestEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return ApprovalRuleResponse.model_validate(rule)


@router.patch("/approval-rules/{rule_id}", response_model=ApprovalRuleResponse)
async def update_approval_rule(
    rule_id: int,
    payload: ApprovalRuleUpdate,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """Partial update; changing rule_type requires new conditions."""
    try:
        rule = await approval.update_rule(db, rule_id, **payload.model_dump(exclude_unset=True))
    except RequestEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    logger.info(f"Approval rule {rule.id} updated by {user.username}")
    return ApprovalRuleResponse.model_validate(rule)


@router.delete("/approval-rules/{rule_id}", status_code=204)
async def delete_approval_rule(
    rule_id: int,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await approval.delete_rule(db, rule_id)
    except RequestEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    logger.info(f"Approval rule {rule_id} deleted by {user.username}")
    return Response(status_code=204)
