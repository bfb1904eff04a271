"""
Escrow Lifecycle Engine

This module owns the escrow state machine. It moves a transaction from
creation through AI risk scoring, admin adjudication, buyer completion and
dispute handling.

Every transition follows the same steps:
    1. load the transaction (NotFoundError if absent)
    2. authorize the actor against the transition table (ForbiddenError)
    3. check the lifecycle precondition (InvalidStateError)
    4. compute the new record and save it conditionally on the version read
       in step 1; a lost race becomes InvalidStateError

Risk assessments run in background tasks tagged with the transaction's
``assessment_nonce``. A result whose tag no longer matches is discarded, and
an assessor that fails or times out drops the transaction into manual review
instead of leaving it processing forever.

Dependencies:
    - escrow_database.py: Persistence (conditional writes)
    - risk_assessment.py: Risk scoring
    - escrow_policy.py: Authorization table and risk bands
    - config.py: Configuration management
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Union

from config import Config, get_config
from escrow_database import ConcurrentUpdateError
from escrow_errors import (
    AssessmentUnavailableError,
    InvalidStateError,
    NotFoundError,
    StaleAssessmentError,
    ValidationError,
)
from escrow_models import (
    SYSTEM_ACTOR,
    Actor,
    AdminAction,
    AIDecision,
    AIStatus,
    DashboardStats,
    EscrowStats,
    EscrowStatus,
    EscrowTransaction,
    Recommendation,
)
from escrow_policy import (
    ADMIN_ACTION_TRANSITIONS,
    RiskPolicy,
    Transition,
    ai_status_for,
    authorize,
    check_preconditions,
    ensure_can_view_all,
    ensure_can_view_participant,
    ensure_can_view_transaction,
)
from risk_assessment import RiskContext
from utils import sanitize_input, validate_amount

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_nonce() -> str:
    return uuid.uuid4().hex


class EscrowService:
    """
    Core escrow business logic service.

    Attributes:
        store: Persistence collaborator (``EscrowDatabase`` or ``InMemoryEscrowStore``)
        assessor: Risk assessor; None disables automatic assessment
        policy: Risk band interpretation
        config: Configuration instance
        notifier: Optional notifier informed of background assessment outcomes
    """

    def __init__(
        self,
        store: Any,
        assessor: Optional[Any] = None,
        policy: Optional[RiskPolicy] = None,
        config: Optional[Config] = None,
        notifier: Optional[Any] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.policy = policy or RiskPolicy.from_config(self.config)
        self.assessor = assessor
        self.notifier = notifier
        self._assessment_tasks: Set[asyncio.Task] = set()
        logger.info("EscrowService initialized successfully")

    # ==================== INTERNALS ====================

    async def _load(self, transaction_id: int) -> EscrowTransaction:
        transaction = await self.store.load(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def _load_for(
        self,
        transition: Transition,
        transaction_id: int,
        actor: Actor
    ) -> EscrowTransaction:
        transaction = await self._load(transaction_id)
        authorize(transition, transaction, actor)
        check_preconditions(transition, transaction)
        return transaction

    async def _persist(
        self,
        current: EscrowTransaction,
        changes: Dict[str, Any]
    ) -> EscrowTransaction:
        """Save ``changes`` on top of ``current`` if nobody else wrote first."""
        changes['updated_at'] = _utcnow()
        updated = current.model_copy(update=changes)

        try:
            return await self.store.save(updated, expected_version=current.version)
        except ConcurrentUpdateError as e:
            logger.warning(f"Lost concurrent update on transaction {current.id}: {e}")
            raise InvalidStateError(
                f"Transaction {current.id} was modified by another request. "
                f"Reload it and try again."
            ) from e

    def _clean_text(self, text: Optional[str], max_length: int, field: str) -> Optional[str]:
        if text is None:
            return None
        if len(text) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters")
        return sanitize_input(text, max_length) or None

    @staticmethod
    def _check_nonce(transaction: EscrowTransaction, nonce: Optional[str]) -> None:
        if nonce is not None and nonce != transaction.assessment_nonce:
            raise StaleAssessmentError(
                f"Assessment for transaction {transaction.id} is stale: "
                f"tag {nonce} does not match the outstanding request"
            )

    # ==================== CREATION ====================

    async def create(
        self,
        buyer_id: int,
        seller_id: int,
        product_id: int,
        amount: Union[Decimal, int, float, str]
    ) -> EscrowTransaction:
        """
        Open a new escrow transaction for a buyer.

        The transaction starts pending with its risk assessment processing.
        If an assessor is configured, the assessment is queued immediately.

        Args:
            buyer_id: User paying into escrow (the caller)
            seller_id: User receiving the funds on completion
            product_id: Traded item
            amount: Escrow amount

        Returns:
            The created transaction

        Raises:
            ValidationError: If buyer equals seller, the amount is invalid, or
                the seller or product does not exist
        """
        logger.info(f"Creating escrow: buyer={buyer_id}, seller={seller_id}, product={product_id}")

        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different users")

        is_valid, amount_dec, error = validate_amount(
            amount, self.config.min_amount, self.config.max_amount
        )
        if not is_valid:
            raise ValidationError(error)

        if not await self.store.user_exists(seller_id):
            raise ValidationError(f"Seller not found: {seller_id}")

        if not await self.store.product_exists(product_id):
            raise ValidationError(f"Product not found: {product_id}")

        transaction = await self.store.insert(
            buyer_id=buyer_id,
            seller_id=seller_id,
            product_id=product_id,
            amount=amount_dec,
            assessment_nonce=_new_nonce(),
        )

        logger.info(f"Escrow transaction {transaction.id} created for {amount_dec}")
        self._schedule_assessment(transaction)
        return transaction

    # ==================== RISK ASSESSMENT ====================

    async def record_assessment(
        self,
        transaction_id: int,
        risk_score: int,
        recommendation: Union[Recommendation, str],
        confidence: int,
        reasons: List[str],
        nonce: Optional[str] = None,
        factors: Optional[Dict[str, bool]] = None,
        actor: Actor = SYSTEM_ACTOR
    ) -> EscrowTransaction:
        """
        Store the result of a risk assessment.

        The new decision replaces the previous one entirely. When ``nonce``
        is given it must match the outstanding request.

        Raises:
            ValidationError: If score, confidence or recommendation are invalid
            NotFoundError: If the transaction does not exist
            ForbiddenError: If the actor is not the risk assessor
            InvalidStateError: If the transaction is not awaiting an assessment
            StaleAssessmentError: If the nonce does not match
        """
        if not 0 <= risk_score <= 100:
            raise ValidationError(f"Risk score must be between 0 and 100, got {risk_score}")
        if not 0 <= confidence <= 100:
            raise ValidationError(f"Confidence must be between 0 and 100, got {confidence}")
        try:
            recommendation = Recommendation(recommendation)
        except ValueError:
            raise ValidationError(f"Unknown recommendation: '{recommendation}'")

        transaction = await self._load_for(Transition.RECORD_ASSESSMENT, transaction_id, actor)
        self._check_nonce(transaction, nonce)

        decision = AIDecision(
            recommendation=recommendation,
            confidence=confidence,
            reasons=list(reasons),
            timestamp=_utcnow(),
            factors=dict(factors or {}),
        )

        if self.policy.is_conflicting(recommendation, risk_score):
            logger.warning(
                f"Transaction {transaction_id}: recommendation '{recommendation.value}' "
                f"conflicts with risk score {risk_score}; left for admin review"
            )

        updated = await self._persist(transaction, {
            'ai_status': ai_status_for(recommendation),
            'risk_score': risk_score,
            'ai_decision': decision,
            'assessment_nonce': None,
        })

        logger.info(
            f"Assessment recorded for {transaction_id}: score={risk_score}, "
            f"recommendation={recommendation.value}, ai_status={updated.ai_status.value}"
        )
        return updated

    async def fallback_to_manual_review(
        self,
        transaction_id: int,
        reason: str,
        nonce: Optional[str] = None
    ) -> EscrowTransaction:
        """
        Route a transaction whose assessment failed to manual review.

        The risk score stays unknown (0); the decision record is marked as a
        fallback and carries the failure reason.

        Raises:
            NotFoundError: If the transaction does not exist
            InvalidStateError: If no assessment is outstanding any more
            StaleAssessmentError: If the nonce does not match
        """
        transaction = await self._load_for(
            Transition.ASSESSMENT_FALLBACK, transaction_id, SYSTEM_ACTOR
        )
        self._check_nonce(transaction, nonce)

        decision = AIDecision(
            recommendation=Recommendation.MANUAL_REVIEW,
            confidence=0,
            reasons=[reason],
            timestamp=_utcnow(),
            fallback=True,
        )

        updated = await self._persist(transaction, {
            'ai_status': AIStatus.MANUAL_REVIEW,
            'risk_score': 0,
            'ai_decision': decision,
            'assessment_nonce': None,
        })

        logger.warning(f"Transaction {transaction_id} fell back to manual review: {reason}")
        return updated

    async def reanalyze(self, transaction_id: int, actor: Actor) -> EscrowTransaction:
        """
        Discard the current assessment and request a fresh one.

        Raises:
            NotFoundError: If the transaction does not exist
            ForbiddenError: If the actor is not staff or the system
            InvalidStateError: If the transaction is no longer pending
        """
        logger.info(f"Re-analysis of {transaction_id} requested by {actor.role.value} {actor.user_id}")

        transaction = await self._load_for(Transition.REANALYZE, transaction_id, actor)

        updated = await self._persist(transaction, {
            'ai_status': AIStatus.PROCESSING,
            'risk_score': 0,
            'ai_decision': None,
            'assessment_nonce': _new_nonce(),
        })

        self._schedule_assessment(updated)
        return updated

    def _schedule_assessment(self, transaction: EscrowTransaction) -> None:
        if self.assessor is None:
            logger.debug(f"No risk assessor configured; {transaction.id} awaits an external assessment")
            return

        task = asyncio.create_task(
            self._assessment_task(transaction.id, transaction.assessment_nonce)
        )
        self._assessment_tasks.add(task)
        task.add_done_callback(self._assessment_tasks.discard)

    async def _assessment_task(self, transaction_id: int, nonce: Optional[str]) -> None:
        try:
            await self.run_assessment(transaction_id, nonce)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The stalled-assessment sweep picks the transaction up later
            logger.error(f"Background assessment of {transaction_id} failed: {e}", exc_info=True)

    async def build_risk_context(self, transaction: EscrowTransaction) -> RiskContext:
        """Gather participant profiles and escrow history for an assessment."""
        buyer, seller, buyer_history, seller_history = await asyncio.gather(
            self.store.get_user_profile(transaction.buyer_id),
            self.store.get_user_profile(transaction.seller_id),
            self.store.participant_history(transaction.buyer_id),
            self.store.participant_history(transaction.seller_id),
        )
        return RiskContext(
            transaction_id=transaction.id,
            buyer_id=transaction.buyer_id,
            seller_id=transaction.seller_id,
            product_id=transaction.product_id,
            amount=transaction.amount,
            buyer=buyer,
            seller=seller,
            buyer_history=buyer_history,
            seller_history=seller_history,
        )

    async def run_assessment(
        self,
        transaction_id: int,
        nonce: Optional[str]
    ) -> Optional[EscrowTransaction]:
        """
        Assess a transaction and record the outcome.

        Timeouts and assessor failures fall back to manual review. Results
        that no longer apply (stale tag, transaction moved on) are discarded.

        Returns:
            The updated transaction, or None if the result was discarded
        """
        if self.assessor is None:
            raise AssessmentUnavailableError("No risk assessor configured")

        transaction = await self._load(transaction_id)
        context = await self.build_risk_context(transaction)
        timeout = self.config.risk_assessment_timeout

        try:
            assessment = await asyncio.wait_for(self.assessor.assess(context), timeout=timeout)
        except asyncio.TimeoutError:
            return await self._fallback_if_current(
                transaction_id, f"Risk assessment timed out after {timeout:g}s", nonce
            )
        except AssessmentUnavailableError as e:
            return await self._fallback_if_current(
                transaction_id, f"Risk assessment unavailable: {e}", nonce
            )

        try:
            updated = await self.record_assessment(
                transaction_id,
                risk_score=assessment.risk_score,
                recommendation=assessment.recommendation,
                confidence=assessment.confidence,
                reasons=assessment.reasons,
                nonce=nonce,
                factors=assessment.factors,
            )
        except InvalidStateError as e:
            logger.info(f"Discarding assessment for {transaction_id}: {e}")
            return None

        if self.notifier is not None:
            await self.notifier.notify_assessed(updated, self.policy.tier_for(updated))
        return updated

    async def _fallback_if_current(
        self,
        transaction_id: int,
        reason: str,
        nonce: Optional[str]
    ) -> Optional[EscrowTransaction]:
        try:
            updated = await self.fallback_to_manual_review(transaction_id, reason, nonce=nonce)
        except InvalidStateError as e:
            logger.info(f"Skipping fallback for {transaction_id}: {e}")
            return None

        if self.notifier is not None:
            await self.notifier.notify_fallback(updated, reason)
        return updated

    async def wait_for_assessments(self) -> None:
        """Wait until every queued background assessment has finished."""
        while self._assessment_tasks:
            await asyncio.gather(*list(self._assessment_tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding assessments and release the assessor."""
        for task in list(self._assessment_tasks):
            task.cancel()
        await asyncio.gather(*list(self._assessment_tasks), return_exceptions=True)

        close = getattr(self.assessor, 'close', None)
        if close is not None:
            await close()
        logger.info("EscrowService closed")

    # ==================== ADMIN FLOW ====================

    async def admin_process(
        self,
        transaction_id: int,
        actor: Actor,
        action: Union[AdminAction, str],
        note: Optional[str] = None
    ) -> EscrowTransaction:
        """
        Apply an admin decision to a transaction.

        - approve: pending -> active, AI status approved (needs a finished assessment)
        - reject: pending -> cancelled, AI status flagged
        - manual_review: status unchanged, AI status manual_review

        Args:
            transaction_id: Transaction to process
            actor: Admin or owner taking the decision
            action: approve, reject or manual_review
            note: Optional admin note

        Returns:
            Updated transaction

        Raises:
            ValidationError: If the action or note is invalid
            NotFoundError: If the transaction does not exist
            ForbiddenError: If the actor is not an admin or owner
            InvalidStateError: If the transaction's state does not allow the action
        """
        try:
            action = AdminAction(action)
        except ValueError:
            raise ValidationError(f"Unknown admin action: '{action}'")

        admin_note = self._clean_text(note, self.config.max_note_length, "Admin note")
        transition = ADMIN_ACTION_TRANSITIONS[action]

        logger.info(f"Admin {actor.user_id} processing {transaction_id}: {action.value}")

        transaction = await self._load_for(transition, transaction_id, actor)

        changes: Dict[str, Any] = {
            'approved_by': actor.user_id,
            'approved_at': _utcnow(),
            'admin_note': admin_note,
        }
        if action == AdminAction.APPROVE:
            changes.update(status=EscrowStatus.ACTIVE, ai_status=AIStatus.APPROVED)
        elif action == AdminAction.REJECT:
            changes.update(status=EscrowStatus.CANCELLED, ai_status=AIStatus.FLAGGED)
        else:
            changes.update(ai_status=AIStatus.MANUAL_REVIEW)

        updated = await self._persist(transaction, changes)
        logger.info(
            f"Transaction {transaction_id} processed: status={updated.status.value}, "
            f"ai_status={updated.ai_status.value}"
        )
        return updated

    # ==================== COMPLETION FLOW ====================

    async def complete(
        self,
        transaction_id: int,
        actor: Actor,
        note: Optional[str] = None
    ) -> EscrowTransaction:
        """
        Buyer confirms the purchase and releases the funds.

        Raises:
            NotFoundError: If the transaction does not exist
            ForbiddenError: If the actor is not the transaction's buyer
            InvalidStateError: If the transaction is not active
        """
        completion_note = self._clean_text(note, self.config.max_note_length, "Completion note")

        logger.info(f"Buyer {actor.user_id} completing {transaction_id}")

        transaction = await self._load_for(Transition.COMPLETE, transaction_id, actor)

        updated = await self._persist(transaction, {
            'status': EscrowStatus.COMPLETED,
            'completed_by': actor.user_id,
            'completed_at': _utcnow(),
            'completion_note': completion_note,
        })

        logger.info(f"Transaction {transaction_id} completed")
        return updated

    # ==================== DISPUTE FLOW ====================

    async def dispute(
        self,
        transaction_id: int,
        actor: Actor,
        reason: str
    ) -> EscrowTransaction:
        """
        Buyer or seller raises a dispute.

        Raises:
            ValidationError: If the reason is empty or too long
            NotFoundError: If the transaction does not exist
            ForbiddenError: If the actor is not a participant
            InvalidStateError: If the transaction is not pending or active
        """
        dispute_reason = self._clean_text(
            reason, self.config.max_dispute_reason_length, "Dispute reason"
        )
        if not dispute_reason:
            raise ValidationError("Dispute reason is required")

        logger.info(f"User {actor.user_id} disputing {transaction_id}")

        transaction = await self._load_for(Transition.DISPUTE, transaction_id, actor)

        updated = await self._persist(transaction, {
            'status': EscrowStatus.DISPUTED,
            'disputed_by': actor.user_id,
            'disputed_at': _utcnow(),
            'dispute_reason': dispute_reason,
        })

        logger.warning(f"Dispute opened on {transaction_id} by user {actor.user_id}")
        return updated

    # ==================== QUERIES ====================

    async def get_transaction(
        self,
        transaction_id: int,
        actor: Optional[Actor] = None
    ) -> EscrowTransaction:
        transaction = await self._load(transaction_id)
        if actor is not None:
            ensure_can_view_transaction(actor, transaction)
        return transaction

    async def list_by_status(
        self,
        status: Union[EscrowStatus, str],
        actor: Optional[Actor] = None
    ) -> List[EscrowTransaction]:
        """List transactions in a status, newest first."""
        if actor is not None:
            ensure_can_view_all(actor)
        try:
            status = EscrowStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: '{status}'")
        return await self.store.query_by_status(status)

    async def list_by_participant(
        self,
        user_id: int,
        actor: Optional[Actor] = None
    ) -> List[EscrowTransaction]:
        """List transactions where the user is buyer or seller, newest first."""
        if actor is not None:
            ensure_can_view_participant(actor, user_id)
        return await self.store.query_by_participant(user_id)

    async def get_stats(self, actor: Optional[Actor] = None) -> EscrowStats:
        if actor is not None:
            ensure_can_view_all(actor)
        counts = await self.store.count_by_status()
        return EscrowStats(
            pending=counts.get(EscrowStatus.PENDING.value, 0),
            active=counts.get(EscrowStatus.ACTIVE.value, 0),
            completed=counts.get(EscrowStatus.COMPLETED.value, 0),
            disputed=counts.get(EscrowStatus.DISPUTED.value, 0),
        )

    async def get_dashboard_stats(self, actor: Optional[Actor] = None) -> DashboardStats:
        if actor is not None:
            ensure_can_view_all(actor)
        return await self.store.dashboard_summary(self.policy.high_threshold)

    async def get_review_queue(self) -> Dict[str, int]:
        """Count transactions waiting on a human decision."""
        pending = await self.store.query_by_status(EscrowStatus.PENDING)
        disputed = await self.store.query_by_status(EscrowStatus.DISPUTED)
        return {
            'manual_review': sum(1 for t in pending if t.ai_status == AIStatus.MANUAL_REVIEW),
            'flagged': sum(1 for t in pending if t.ai_status == AIStatus.FLAGGED),
            'awaiting_decision': sum(1 for t in pending if t.ai_status == AIStatus.APPROVED),
            'disputed': len(disputed),
        }


# Singleton instance management
_escrow_service_instance: Optional[EscrowService] = None


async def get_escrow_service(
    config: Optional[Config] = None,
    notifier: Optional[Any] = None
) -> EscrowService:
    """
    Get or create the escrow service singleton instance.

    Builds the configured store and risk assessor on first use.

    Args:
        config: Configuration instance (optional)
        notifier: Notifier for background assessment outcomes (optional)

    Returns:
        EscrowService instance
    """
    global _escrow_service_instance

    if _escrow_service_instance is None:
        from escrow_database import create_escrow_store
        from risk_assessment import create_risk_assessor

        config = config or get_config()
        policy = RiskPolicy.from_config(config)
        store = await create_escrow_store(config)

        _escrow_service_instance = EscrowService(
            store,
            assessor=create_risk_assessor(config, policy),
            policy=policy,
            config=config,
            notifier=notifier,
        )

    return _escrow_service_instance
