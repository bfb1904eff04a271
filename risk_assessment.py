"""
Risk assessment for escrow transactions.

An assessor turns a ``RiskContext`` (the transaction plus what the
marketplace knows about both parties) into a ``RiskAssessment``: a 0-100
risk score, a categorical recommendation, a confidence and the reasons
behind it.

Two assessors are available:

- ``RuleBasedRiskAssessor``: deterministic scoring over verification status,
  account age, wallet balance, amount and escrow history
- ``RemoteRiskAssessor``: delegates to an external AI service over HTTP

Assessment is advisory. The escrow engine records the result; it never
changes a transaction's status on the score alone.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from escrow_errors import AssessmentUnavailableError
from escrow_models import ParticipantHistory, Recommendation, UserProfile, CamelModel
from escrow_policy import RiskPolicy

logger = logging.getLogger(__name__)

HIGH_VALUE_AMOUNT = Decimal('1000000')
BALANCE_RATIO_LIMIT = Decimal('0.8')
GOOD_HISTORY_COUNT = 5


class RiskContext(CamelModel):
    """Everything an assessor may look at for one transaction."""
    transaction_id: int
    buyer_id: int
    seller_id: int
    product_id: int
    amount: Decimal
    buyer: Optional[UserProfile] = None
    seller: Optional[UserProfile] = None
    buyer_history: ParticipantHistory = Field(default_factory=ParticipantHistory)
    seller_history: ParticipantHistory = Field(default_factory=ParticipantHistory)
    now: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RiskAssessment(CamelModel):
    """Result of a risk assessment."""
    risk_score: int = Field(ge=0, le=100)
    recommendation: Recommendation
    confidence: int = Field(ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)
    factors: Dict[str, bool] = Field(default_factory=dict)


def _account_age_days(profile: UserProfile, now: datetime) -> Optional[int]:
    if profile.created_at is None:
        return None
    created_at = profile.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (now - created_at).days


class RuleBasedRiskAssessor:
    """
    Score transactions with fixed marketplace heuristics.

    Risk factors add to the score (capped at 100); the recommendation follows
    the policy's review and high thresholds. Positive factors raise the
    confidence but never lower the score. Facts the marketplace does not
    know (a missing profile or creation date) contribute nothing.
    """

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    async def assess(self, context: RiskContext) -> RiskAssessment:
        risk_score = 0
        reasons: List[str] = []
        buyer, seller = context.buyer, context.seller

        # Verification status
        if buyer is not None and not buyer.is_verified:
            risk_score += 20
            reasons.append("Buyer is not verified")
        if seller is not None and not seller.is_verified:
            risk_score += 15
            reasons.append("Seller is not verified")

        # Account age
        buyer_age = _account_age_days(buyer, context.now) if buyer else None
        seller_age = _account_age_days(seller, context.now) if seller else None

        if buyer_age is not None and buyer_age < 7:
            risk_score += 25
            reasons.append("Buyer account is very new (less than 7 days)")
        elif buyer_age is not None and buyer_age < 30:
            risk_score += 10
            reasons.append("Buyer account is relatively new (less than 30 days)")

        if seller_age is not None and seller_age < 7:
            risk_score += 20
            reasons.append("Seller account is very new (less than 7 days)")

        # Amount relative to the buyer's wallet
        high_balance_ratio = False
        if buyer is not None:
            balance_ratio = context.amount / max(buyer.wallet_balance + context.amount, Decimal('1'))
            if balance_ratio > BALANCE_RATIO_LIMIT:
                high_balance_ratio = True
                risk_score += 15
                reasons.append("Transaction amount is very high relative to buyer's wallet balance")

        high_value = context.amount > HIGH_VALUE_AMOUNT
        if high_value:
            risk_score += 10
            reasons.append("High-value transaction (>1M IDR)")

        # Escrow history
        buyer_completed = context.buyer_history.completed_as_buyer
        seller_completed = context.seller_history.completed_as_seller
        buyer_disputes = context.buyer_history.disputed_as_buyer
        seller_disputes = context.seller_history.disputed_as_seller

        if buyer_completed == 0:
            risk_score += 15
            reasons.append("Buyer has no previous completed transactions")
        if seller_completed == 0:
            risk_score += 10
            reasons.append("Seller has no previous completed transactions")

        if buyer_disputes > 0:
            risk_score += buyer_disputes * 20
            reasons.append(f"Buyer has {buyer_disputes} disputed transaction(s)")
        if seller_disputes > 0:
            risk_score += seller_disputes * 15
            reasons.append(f"Seller has {seller_disputes} disputed transaction(s)")

        risk_score = min(risk_score, 100)

        recommendation = self.policy.recommend(risk_score)
        confidence = {
            Recommendation.REJECT: 90,
            Recommendation.MANUAL_REVIEW: 75,
        }.get(recommendation, 85)

        if buyer is not None and seller is not None and buyer.is_verified and seller.is_verified:
            reasons.append("Both parties are verified users")
            confidence += 5
        if buyer_completed >= GOOD_HISTORY_COUNT and seller_completed >= GOOD_HISTORY_COUNT:
            reasons.append("Both parties have good transaction history")
            confidence += 10
        if buyer_disputes == 0 and seller_disputes == 0:
            reasons.append("No dispute history for both parties")
            confidence += 5

        factors = {
            'user_verification': any(p is not None and not p.is_verified for p in (buyer, seller)),
            'account_age': any(age is not None and age < 30 for age in (buyer_age, seller_age)),
            'transaction_history': buyer_completed == 0 or seller_completed == 0,
            'dispute_history': buyer_disputes > 0 or seller_disputes > 0,
            'high_value': high_value,
            'balance_ratio': high_balance_ratio,
        }

        logger.debug(
            f"Rule-based assessment for transaction {context.transaction_id}: "
            f"score={risk_score}, recommendation={recommendation.value}"
        )

        return RiskAssessment(
            risk_score=risk_score,
            recommendation=recommendation,
            confidence=min(confidence, 100),
            reasons=reasons,
            factors=factors,
        )


class RemoteRiskAssessor:
    """
    Ask an external AI risk service for an assessment.

    The service receives the context as camelCase JSON and must answer with
    ``{"riskScore", "recommendation", "confidence", "reasons", "factors"}``.

    Args:
        url: Assessment endpoint
        api_key: Optional bearer token
        timeout: Per-request timeout in seconds
        client: Optional shared ``httpx.AsyncClient``
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def assess(self, context: RiskContext) -> RiskAssessment:
        """
        Request an assessment from the remote service.

        Raises:
            AssessmentUnavailableError: On transport errors, non-2xx replies
                or a reply that is not a valid assessment
        """
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        payload = context.model_dump(mode='json', by_alias=True)

        logger.info(f"Requesting remote risk assessment for transaction {context.transaction_id}")

        try:
            response = await self._get_client().post(self.url, json=payload, headers=headers)
            response.raise_for_status()
            return RiskAssessment.model_validate(response.json())

        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from risk service: {e}")
            logger.error(f"Response content: {e.response.text}")
            raise AssessmentUnavailableError(f"HTTP error: {e}") from e

        except httpx.TimeoutException as e:
            logger.error(f"Timeout contacting risk service: {e}")
            raise AssessmentUnavailableError(f"Request timeout: {e}") from e

        except httpx.HTTPError as e:
            logger.error(f"Request error contacting risk service: {e}")
            raise AssessmentUnavailableError(f"Request failed: {e}") from e

        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Malformed risk service response: {e}")
            raise AssessmentUnavailableError(f"Malformed assessment: {e}") from e


def create_risk_assessor(config, policy: Optional[RiskPolicy] = None):
    """
    Create the configured risk assessor.

    Uses the remote AI service when RISK_SERVICE_URL is set, otherwise the
    built-in rule-based assessor.
    """
    policy = policy or RiskPolicy.from_config(config)

    if config.has_risk_service:
        logger.info(f"Using remote risk assessor at {config.risk_service_url}")
        return RemoteRiskAssessor(
            config.risk_service_url,
            api_key=config.risk_service_api_key,
            timeout=config.risk_assessment_timeout,
        )

    logger.info("Using rule-based risk assessor")
    return RuleBasedRiskAssessor(policy)
