"""Approval rule engine.

Decides whether a new request is auto-approved. Rules are evaluated in
priority order (highest first, ties by id) and the first match wins. No match
means the request waits for an admin.

Each rule_type has its own conditions model; the union is discriminated on
rule_type. Payloads are validated on create/update. At evaluation time stored
payloads are re-parsed with unknown fields ignored, and a payload that no
longer parses is skipped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator
from sqlalchemy import func, select

from app.errors import RequestValidationError, RuleNotFoundError
from app.models import ApprovalRule, MediaRequest, RequestState, RuleType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Statuses that count toward a requester's trust
APPROVED_STATES = [RequestState.SUBMITTED, RequestState.AVAILABLE]


# ============================================
# Context / Decision
# ============================================


@dataclass
class ApprovalContext:
    """Everything a rule may look at."""
    requester_id: str
    is_admin: bool = False
    approved_count: Optional[int] = None  # Filled from the DB when None
    genre_ids: list[int] = field(default_factory=list)
    vote_average: Optional[float] = None
    popularity: Optional[float] = None
    certification: Optional[str] = None
    now: datetime = field(default_factory=datetime.now)  # Server local time


@dataclass
class ApprovalDecision:
    auto_approved: bool
    matched_rule_id: Optional[int] = None
    matched_rule_name: Optional[str] = None
    reason: str = "no_match"  # admin, rule, no_match


# ============================================
# Conditions (one model per rule_type)
# ============================================


class _Conditions(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"

    def matches(self, context: ApprovalContext) -> bool:
        raise NotImplementedError


class UserTrustConditions(_Conditions):
    """Approve once the requester has this many approved requests."""

    rule_type: Literal["user_trust"] = "user_trust"
    min_approved_requests: int = Field(alias="minApprovedRequests", ge=1)

    def matches(self, context: ApprovalContext) -> bool:
        return (context.approved_count or 0) >= self.min_approved_requests


class PopularityConditions(_Conditions):
    """Approve when every configured threshold is met."""

    rule_type: Literal["popularity"] = "popularity"
    min_vote_average: Optional[float] = Field(None, alias="minVoteAverage", ge=0, le=10)
    min_popularity: Optional[float] = Field(None, alias="minPopularity", ge=0)

    @model_validator(mode="after")
    def require_threshold(self):
        if self.min_vote_average is None and self.min_popularity is None:
            raise ValueError("popularity rule needs minVoteAverage or minPopularity")
        return self

    def matches(self, context: ApprovalContext) -> bool:
        if self.min_vote_average is not None:
            if context.vote_average is None or context.vote_average < self.min_vote_average:
                return False
        if self.min_popularity is not None:
            if context.popularity is None or context.popularity < self.min_popularity:
                return False
        return True


class TimeBasedConditions(_Conditions):
    """Approve during the listed server-local hours."""

    rule_type: Literal["time_based"] = "time_based"
    allowed_hours: list[Annotated[int, Field(ge=0, le=23)]] = Field(alias="allowedHours", min_length=1)

    def matches(self, context: ApprovalContext) -> bool:
        return context.now.hour in set(self.allowed_hours)


class GenreConditions(_Conditions):
    """Approve when any media genre is allowed."""

    rule_type: Literal["genre"] = "genre"
    allowed_genres: list[int] = Field(alias="allowedGenres", min_length=1)

    def matches(self, context: ApprovalContext) -> bool:
        return bool(set(self.allowed_genres) & set(context.genre_ids))


class ContentRatingConditions(_Conditions):
    """Approve when the media's certification is allowed."""

    rule_type: Literal["content_rating"] = "content_rating"
    allowed_ratings: list[str] = Field(alias="allowedRatings", min_length=1)

    def matches(self, context: ApprovalContext) -> bool:
        if not context.certification:
            return False
        return context.certification in set(self.allowed_ratings)


RuleConditions = Annotated[
    Union[
        UserTrustConditions,
        PopularityConditions,
        TimeBasedConditions,
        GenreConditions,
        ContentRatingConditions,
    ],
    Field(discriminator="rule_type"),
]

_conditions_adapter = TypeAdapter(RuleConditions)


def parse_conditions(rule_type: RuleType, payload: Optional[dict]) -> _Conditions:
    """
    Validate a conditions payload for a rule type.

    Raises:
        ValidationError: payload does not fit the rule type
    """
    data = dict(payload or {})
    data["rule_type"] = RuleType(rule_type).value
    return _conditions_adapter.validate_python(data)


def dump_conditions(conditions: _Conditions) -> dict:
    """Serialize conditions for storage (camelCase, no tag)."""
    return conditions.model_dump(by_alias=True, exclude={"rule_type"}, exclude_none=True)


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "rule_type")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


# ============================================
# Engine
# ============================================


class ApprovalEngine:
    """
    Evaluates approval rules against a request context.

    Usage:
        decision = await approval_engine.evaluate_request(db, context)
        if decision.auto_approved:
            ...
    """

    def evaluate(self, rules: list[ApprovalRule], context: ApprovalContext) -> ApprovalDecision:
        """
        Pick the first matching enabled rule.

        Admins bypass rules entirely and are approved directly.
        """
        if context.is_admin:
            return ApprovalDecision(auto_approved=True, reason="admin")

        ordered = sorted(
            (r for r in rules if r.enabled),
            key=lambda r: (-r.priority, r.id),
        )
        for rule in ordered:
            try:
                conditions = parse_conditions(rule.rule_type, rule.conditions)
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping approval rule {rule.id} ({rule.name}): invalid conditions: {e}")
                continue

            if conditions.matches(context):
                logger.info(
                    f"Approval rule {rule.id} ({rule.name}, {rule.rule_type.value}) "
                    f"matched for requester {context.requester_id}"
                )
                return ApprovalDecision(
                    auto_approved=True,
                    matched_rule_id=rule.id,
                    matched_rule_name=rule.name,
                    reason="rule",
                )

        return ApprovalDecision(auto_approved=False)

    async def evaluate_request(self, db: "AsyncSession", context: ApprovalContext) -> ApprovalDecision:
        """Load enabled rules (and the approved count if needed) and evaluate."""
        if context.is_admin:
            return self.evaluate([], context)

        rules = await list_rules(db, enabled_only=True)
        if context.approved_count is None and any(r.rule_type == RuleType.USER_TRUST for r in rules):
            context.approved_count = await count_approved_requests(db, context.requester_id)
        return self.evaluate(rules, context)


async def count_approved_requests(db: "AsyncSession", user_id: str) -> int:
    """Number of the user's requests that were approved (submitted or available)."""
    stmt = select(func.count()).select_from(MediaRequest).where(
        MediaRequest.requested_by == user_id,
        MediaRequest.status.in_(APPROVED_STATES),
    )
    result = await db.execute(stmt)
    return result.scalar_one()


# ============================================
# Rule CRUD
# ============================================


def _validate_rule_fields(
    name: Optional[str] = None,
    description: Optional[str] = None,
    priority: Optional[int] = None,
) -> None:
    if name is not None and not (1 <= len(name.strip()) <= 100):
        raise RequestValidationError("Rule name must be 1-100 characters", code="invalid_rule")
    if description is not None and len(description) > 500:
        raise RequestValidationError("Rule description must be at most 500 characters", code="invalid_rule")
    if priority is not None and not (0 <= priority <= 1000):
        raise RequestValidationError("Rule priority must be between 0 and 1000", code="invalid_rule")


def _validated_conditions(rule_type: RuleType, conditions: Optional[dict]) -> dict:
    try:
        return dump_conditions(parse_conditions(rule_type, conditions))
    except ValidationError as e:
        raise RequestValidationError(
            f"Invalid conditions for {RuleType(rule_type).value}: {_validation_message(e)}",
            code="invalid_conditions",
        ) from e


async def list_rules(db: "AsyncSession", enabled_only: bool = False) -> list[ApprovalRule]:
    stmt = select(ApprovalRule).order_by(ApprovalRule.priority.desc(), ApprovalRule.id.asc())
    if enabled_only:
        stmt = stmt.where(ApprovalRule.enabled.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_rule(db: "AsyncSession", rule_id: int) -> ApprovalRule:
    rule = await db.get(ApprovalRule, rule_id)
    if rule is None:
        raise RuleNotFoundError(f"Approval rule {rule_id} not found")
    return rule


async def create_rule(
    db: "AsyncSession",
    name: str,
    rule_type: RuleType,
    conditions: dict,
    description: Optional[str] = None,
    enabled: bool = True,
    priority: int = 0,
) -> ApprovalRule:
    """
    Create an approval rule.

    Raises:
        RequestValidationError: bad name/description/priority or conditions
    """
    _validate_rule_fields(name, description, priority)
    rule = ApprovalRule(
        name=name.strip(),
        description=description,
        enabled=enabled,
        priority=priority,
        rule_type=RuleType(rule_type),
        conditions=_validated_conditions(rule_type, conditions),
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    logger.info(f"Created approval rule {rule.id} ({rule.name}, {rule.rule_type.value})")
    return rule


async def update_rule(
    db: "AsyncSession",
    rule_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    enabled: Optional[bool] = None,
    priority: Optional[int] = None,
    rule_type: Optional[RuleType] = None,
    conditions: Optional[dict] = None,
) -> ApprovalRule:
    """
    Update an approval rule.

    Changing rule_type requires conditions for the new type.
    """
    rule = await get_rule(db, rule_id)
    _validate_rule_fields(name, description, priority)

    if rule_type is not None and RuleType(rule_type) != rule.rule_type and conditions is None:
        raise RequestValidationError(
            "Changing rule_type requires conditions for the new type",
            code="invalid_conditions",
        )

    new_type = RuleType(rule_type) if rule_type is not None else rule.rule_type
    if conditions is not None:
        rule.conditions = _validated_conditions(new_type, conditions)
    rule.rule_type = new_type

    if name is not None:
        rule.name = name.strip()
    if description is not None:
        rule.description = description
    if enabled is not None:
        rule.enabled = enabled
    if priority is not None:
        rule.priority = priority
    rule.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(rule)
    logger.info(f"Updated approval rule {rule.id} ({rule.name})")
    return rule


async def delete_rule(db: "AsyncSession", rule_id: int) -> None:
    rule = await get_rule(db, rule_id)
    await db.delete(rule)
    await db.commit()
    logger.info(f"Deleted approval rule {rule_id}")


# Global instance
approval_engine = ApprovalEngine()
