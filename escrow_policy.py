"""
Authorization and risk policy for escrow transitions.

All role checks, lifecycle preconditions and risk-band interpretation live
here as data, so every transition in the engine is gated the same way:

    rule = TRANSITION_RULES[Transition.COMPLETE]
    authorize(Transition.COMPLETE, transaction, actor)      # ForbiddenError
    check_preconditions(Transition.COMPLETE, transaction)   # InvalidStateError

Authorization and precondition failures are deliberately distinct errors so
clients can tell "wrong role" apart from "wrong lifecycle stage".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from escrow_errors import ForbiddenError, InvalidStateError
from escrow_models import (
    Actor,
    AdminAction,
    AIStatus,
    EscrowStatus,
    EscrowTransaction,
    Recommendation,
    RiskTier,
    Role,
)


class Transition(str, Enum):
    """Every mutating operation of the escrow engine."""
    RECORD_ASSESSMENT = "record_assessment"
    ASSESSMENT_FALLBACK = "assessment_fallback"
    ADMIN_APPROVE = "admin_approve"
    ADMIN_REJECT = "admin_reject"
    ADMIN_MANUAL_REVIEW = "admin_manual_review"
    REANALYZE = "reanalyze"
    COMPLETE = "complete"
    DISPUTE = "dispute"


STAFF_ROLES = frozenset({Role.ADMIN, Role.OWNER})


@dataclass(frozen=True)
class TransitionRule:
    """
    Who may perform a transition and from which states.

    Attributes:
        label: Human readable verb used in error messages
        roles: Roles allowed regardless of their relationship to the transaction
        parties: Transaction sides allowed ('buyer', 'seller'), matched by user id
        from_statuses: Statuses the transaction must be in
        ai_statuses: If set, the ai_status the transaction must be in
        blocked_ai_statuses: ai_status values that block the transition
        requires_decision: Whether a recorded risk assessment (a fallback
            counts) must exist
        forbidden_message: Error shown when authorization fails
    """
    label: str
    from_statuses: FrozenSet[EscrowStatus]
    roles: FrozenSet[Role] = frozenset()
    parties: FrozenSet[str] = frozenset()
    ai_statuses: Optional[FrozenSet[AIStatus]] = None
    blocked_ai_statuses: FrozenSet[AIStatus] = frozenset()
    requires_decision: bool = False
    forbidden_message: str = "Not authorized to modify this transaction"


TRANSITION_RULES: Dict[Transition, TransitionRule] = {
    Transition.RECORD_ASSESSMENT: TransitionRule(
        label="record an assessment for",
        roles=frozenset({Role.SYSTEM}),
        from_statuses=frozenset({EscrowStatus.PENDING}),
        ai_statuses=frozenset({AIStatus.PROCESSING}),
        forbidden_message="Only the risk assessor can record assessments",
    ),
    Transition.ASSESSMENT_FALLBACK: TransitionRule(
        label="fall back to manual review for",
        roles=frozenset({Role.SYSTEM}),
        from_statuses=frozenset({EscrowStatus.PENDING}),
        ai_statuses=frozenset({AIStatus.PROCESSING}),
        forbidden_message="Only the system can apply an assessment fallback",
    ),
    Transition.ADMIN_APPROVE: TransitionRule(
        label="approve",
        roles=STAFF_ROLES,
        from_statuses=frozenset({EscrowStatus.PENDING}),
        blocked_ai_statuses=frozenset({AIStatus.PROCESSING}),
        requires_decision=True,
        forbidden_message="Only admins can approve escrow transactions",
    ),
    Transition.ADMIN_REJECT: TransitionRule(
        label="reject",
        roles=STAFF_ROLES,
        from_statuses=frozenset({EscrowStatus.PENDING}),
        forbidden_message="Only admins can reject escrow transactions",
    ),
    Transition.ADMIN_MANUAL_REVIEW: TransitionRule(
        label="send to manual review",
        roles=STAFF_ROLES,
        from_statuses=frozenset({EscrowStatus.PENDING, EscrowStatus.ACTIVE}),
        forbidden_message="Only admins can request manual review",
    ),
    Transition.REANALYZE: TransitionRule(
        label="re-analyze",
        roles=STAFF_ROLES | {Role.SYSTEM},
        from_statuses=frozenset({EscrowStatus.PENDING}),
        forbidden_message="Only admins can request a re-analysis",
    ),
    Transition.COMPLETE: TransitionRule(
        label="complete",
        parties=frozenset({"buyer"}),
        from_statuses=frozenset({EscrowStatus.ACTIVE}),
        forbidden_message="Only the buyer can complete this transaction",
    ),
    Transition.DISPUTE: TransitionRule(
        label="dispute",
        parties=frozenset({"buyer", "seller"}),
        from_statuses=frozenset({EscrowStatus.PENDING, EscrowStatus.ACTIVE}),
        forbidden_message="Only the buyer or seller can dispute this transaction",
    ),
}

ADMIN_ACTION_TRANSITIONS: Dict[AdminAction, Transition] = {
    AdminAction.APPROVE: Transition.ADMIN_APPROVE,
    AdminAction.REJECT: Transition.ADMIN_REJECT,
    AdminAction.MANUAL_REVIEW: Transition.ADMIN_MANUAL_REVIEW,
}

RECOMMENDATION_AI_STATUS: Dict[Recommendation, AIStatus] = {
    Recommendation.APPROVE: AIStatus.APPROVED,
    Recommendation.REJECT: AIStatus.FLAGGED,
    Recommendation.FLAG: AIStatus.FLAGGED,
    Recommendation.MANUAL_REVIEW: AIStatus.MANUAL_REVIEW,
}


def authorize(transition: Transition, transaction: EscrowTransaction, actor: Actor) -> None:
    """
    Verify the actor may perform a transition on a transaction.

    Raises:
        ForbiddenError: If neither the actor's role nor its relationship to
            the transaction grants the transition
    """
    rule = TRANSITION_RULES[transition]

    if actor.role in rule.roles:
        return
    if "buyer" in rule.parties and actor.user_id == transaction.buyer_id:
        return
    if "seller" in rule.parties and actor.user_id == transaction.seller_id:
        return

    raise ForbiddenError(rule.forbidden_message)


def check_preconditions(transition: Transition, transaction: EscrowTransaction) -> None:
    """
    Verify the transaction's lifecycle stage allows a transition.

    Raises:
        InvalidStateError: If status or ai_status do not satisfy the rule
    """
    rule = TRANSITION_RULES[transition]

    if transaction.status not in rule.from_statuses:
        allowed = sorted(s.value for s in rule.from_statuses)
        raise InvalidStateError(
            f"Cannot {rule.label} transaction {transaction.id} in status "
            f"'{transaction.status.value}'. Allowed statuses: {allowed}"
        )

    if rule.ai_statuses is not None and transaction.ai_status not in rule.ai_statuses:
        raise InvalidStateError(
            f"Cannot {rule.label} transaction {transaction.id}: "
            f"AI status is '{transaction.ai_status.value}'"
        )

    if transaction.ai_status in rule.blocked_ai_statuses:
        raise InvalidStateError(
            f"Cannot {rule.label} transaction {transaction.id} while the "
            f"risk assessment is still '{transaction.ai_status.value}'"
        )

    if rule.requires_decision and transaction.ai_decision is None:
        raise InvalidStateError(
            f"Cannot {rule.label} transaction {transaction.id} without a risk "
            f"assessment. Request a re-analysis first."
        )


def ai_status_for(recommendation: Recommendation) -> AIStatus:
    """Map an assessor recommendation onto the transaction's AI status."""
    return RECOMMENDATION_AI_STATUS[recommendation]


# ==================== READ ACCESS ====================

def ensure_can_view_all(actor: Actor) -> None:
    """Only staff may browse the full transaction set and statistics."""
    if not actor.is_staff:
        raise ForbiddenError("Admin access required")


def ensure_can_view_transaction(actor: Actor, transaction: EscrowTransaction) -> None:
    if not (actor.is_staff or transaction.is_participant(actor.user_id)):
        raise ForbiddenError("Not authorized to view this transaction")


def ensure_can_view_participant(actor: Actor, user_id: int) -> None:
    if not (actor.is_staff or actor.user_id == user_id):
        raise ForbiddenError("Not authorized to view another user's transactions")


# ==================== RISK BANDS ====================

class RiskPolicy:
    """
    Advisory interpretation of risk scores.

    Scores below ``low_threshold`` are low risk, scores at or above
    ``high_threshold`` are high risk, everything in between is medium.
    ``review_threshold`` is where the rule-based assessor starts
    recommending manual review. None of these bands ever changes a
    transaction's status by itself; an actor always decides.
    """

    def __init__(
        self,
        low_threshold: int = 30,
        high_threshold: int = 70,
        review_threshold: int = 40
    ):
        if not 0 < low_threshold <= review_threshold <= high_threshold <= 100:
            raise ValueError(
                "Risk thresholds must satisfy 0 < low <= review <= high <= 100, got "
                f"low={low_threshold}, review={review_threshold}, high={high_threshold}"
            )
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.review_threshold = review_threshold

    @classmethod
    def from_config(cls, config) -> "RiskPolicy":
        return cls(
            low_threshold=config.risk_low_threshold,
            high_threshold=config.risk_high_threshold,
            review_threshold=config.risk_review_threshold,
        )

    def classify(self, risk_score: int) -> RiskTier:
        if risk_score < self.low_threshold:
            return RiskTier.LOW
        if risk_score < self.high_threshold:
            return RiskTier.MEDIUM
        return RiskTier.HIGH

    def tier_for(self, transaction: EscrowTransaction) -> Optional[RiskTier]:
        """
        Risk tier of a transaction, or None while its score is unknown.

        The score is only meaningful once an assessor produced it. A fallback
        decision carries the placeholder score 0, so it has no tier either.
        """
        decision = transaction.ai_decision
        if decision is None or decision.fallback:
            return None
        return self.classify(transaction.risk_score)

    def recommend(self, risk_score: int) -> Recommendation:
        if risk_score >= self.high_threshold:
            return Recommendation.REJECT
        if risk_score >= self.review_threshold:
            return Recommendation.MANUAL_REVIEW
        return Recommendation.APPROVE

    def is_conflicting(self, recommendation: Recommendation, risk_score: int) -> bool:
        """
        Check if a recommendation disagrees with the score's band.

        Conflicts are surfaced to admins as-is; they are never reconciled.
        """
        tier = self.classify(risk_score)
        if recommendation == Recommendation.APPROVE:
            return tier == RiskTier.HIGH
        if recommendation in (Recommendation.REJECT, Recommendation.FLAG):
            return tier == RiskTier.LOW
        return False
