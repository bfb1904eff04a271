"""
Data model for the AI-assisted escrow system.

Defines the enumerations that drive the escrow state machine and the
pydantic records exchanged between the engine, its collaborators and the
HTTP API. Records serialise with camelCase aliases so API clients see the
same field names the marketplace front end already uses.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EscrowStatus(str, Enum):
    """Enumeration of possible escrow transaction states."""
    PENDING = "pending"              # Created, waiting for risk assessment and admin
    ACTIVE = "active"                # Approved, funds held until buyer completes
    COMPLETED = "completed"          # Buyer completed, funds released to seller
    DISPUTED = "disputed"            # Buyer or seller raised a dispute
    CANCELLED = "cancelled"          # Rejected by admin


TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.CANCELLED})


class AIStatus(str, Enum):
    """Verdict of the most recent risk assessment."""
    PROCESSING = "processing"
    APPROVED = "approved"
    FLAGGED = "flagged"
    MANUAL_REVIEW = "manual_review"


class Recommendation(str, Enum):
    """Categorical recommendation produced by the risk assessor."""
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"
    MANUAL_REVIEW = "manual_review"


class AdminAction(str, Enum):
    """Decisions an admin can take on a transaction."""
    APPROVE = "approve"
    REJECT = "reject"
    MANUAL_REVIEW = "manual_review"


class Role(str, Enum):
    """Caller roles known to the engine."""
    USER = "user"
    ADMIN = "admin"
    OWNER = "owner"
    SYSTEM = "system"


class RiskTier(str, Enum):
    """Advisory risk band derived from a risk score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CamelModel(BaseModel):
    """Base for records exchanged with API clients in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Actor(CamelModel):
    """The identity invoking a transition."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    user_id: Optional[int] = None
    role: Role = Role.USER

    @property
    def is_staff(self) -> bool:
        """Check if the actor is an admin or the marketplace owner."""
        return self.role in (Role.ADMIN, Role.OWNER)


SYSTEM_ACTOR = Actor(role=Role.SYSTEM)


class AIDecision(CamelModel):
    """Structured record of the last risk assessment."""
    recommendation: Recommendation
    confidence: int = Field(ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)
    timestamp: datetime
    analysis_version: str = "1.0"
    factors: Dict[str, bool] = Field(default_factory=dict)
    fallback: bool = False


class EscrowTransaction(CamelModel):
    """
    A single escrow transaction.

    ``version`` is bumped by the store on every successful save and is the
    basis of the conditional-write discipline. ``assessment_nonce`` tags the
    outstanding risk assessment request, if any.
    """
    id: int
    buyer_id: int
    seller_id: int
    product_id: int
    amount: Decimal

    status: EscrowStatus = EscrowStatus.PENDING
    ai_status: AIStatus = AIStatus.PROCESSING
    risk_score: int = Field(default=0, ge=0, le=100)
    ai_decision: Optional[AIDecision] = None
    assessment_nonce: Optional[str] = None

    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    admin_note: Optional[str] = None

    completed_by: Optional[int] = None
    completed_at: Optional[datetime] = None
    completion_note: Optional[str] = None

    disputed_by: Optional[int] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None

    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_participant(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in (self.buyer_id, self.seller_id)


class EscrowStats(CamelModel):
    """Transaction counts by status."""
    pending: int = 0
    active: int = 0
    completed: int = 0
    disputed: int = 0


class DashboardStats(EscrowStats):
    """Extended statistics for the admin dashboard."""
    total: int = 0
    completed_today: int = 0
    cancelled: int = 0
    ai_processed: int = 0
    flagged: int = 0
    high_risk: int = 0
    total_volume: Decimal = Decimal("0")
    average_processing_minutes: int = 0


class UserProfile(CamelModel):
    """Marketplace facts about a user that feed the risk assessment."""
    user_id: int
    is_verified: bool = False
    created_at: Optional[datetime] = None
    wallet_balance: Decimal = Decimal("0")


class ParticipantHistory(CamelModel):
    """Past escrow outcomes of a user, split by the side they were on."""
    completed_as_buyer: int = 0
    completed_as_seller: int = 0
    disputed_as_buyer: int = 0
    disputed_as_seller: int = 0
