"""
Shared fixtures for the escrow service test suite.

Provides an isolated configuration, an in-memory store, the engine wired
without a risk assessor (assessments are recorded explicitly by tests) and
the actors used throughout the scenarios.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from config import Config
from escrow_database import InMemoryEscrowStore
from escrow_models import Actor, AIDecision, EscrowTransaction, Recommendation, Role
from escrow_service import EscrowService

BUYER_ID = 1
SELLER_ID = 2
PRODUCT_ID = 10
ADMIN_ID = 99
OWNER_ID = 100
OUTSIDER_ID = 50

ISOLATED_ENV_KEYS = (
    "DATABASE_URL",
    "SUPABASE_DB_URL",
    "TELEGRAM_BOT_TOKEN",
    "ADMIN_CHAT_ID",
    "RISK_SERVICE_URL",
    "RISK_SERVICE_API_KEY",
    "MIN_ESCROW_AMOUNT",
    "MAX_ESCROW_AMOUNT",
    "RISK_LOW_THRESHOLD",
    "RISK_HIGH_THRESHOLD",
    "RISK_REVIEW_THRESHOLD",
    "STALLED_ASSESSMENT_MINUTES",
    "LOG_LEVEL",
    "API_PORT",
    "APP_ENV",
    "APP_NAME",
)


@pytest.fixture
def config(monkeypatch):
    """Configuration with no external services."""
    for key in ISOLATED_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("RISK_ASSESSMENT_TIMEOUT", "0.5")
    return Config()


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def service(store, config):
    return EscrowService(store, config=config)


@pytest.fixture
def buyer():
    return Actor(user_id=BUYER_ID)


@pytest.fixture
def seller():
    return Actor(user_id=SELLER_ID)


@pytest.fixture
def admin():
    return Actor(user_id=ADMIN_ID, role=Role.ADMIN)


@pytest.fixture
def owner():
    return Actor(user_id=OWNER_ID, role=Role.OWNER)


@pytest.fixture
def outsider():
    return Actor(user_id=OUTSIDER_ID)


@pytest_asyncio.fixture
async def pending_tx(service) -> EscrowTransaction:
    """Freshly created transaction, assessment still processing."""
    return await service.create(BUYER_ID, SELLER_ID, PRODUCT_ID, 100)


@pytest_asyncio.fixture
async def assessed_tx(service, pending_tx) -> EscrowTransaction:
    """Pending transaction with a low-risk approve assessment."""
    return await service.record_assessment(
        pending_tx.id,
        risk_score=10,
        recommendation=Recommendation.APPROVE,
        confidence=85,
        reasons=["No risk factors"],
        nonce=pending_tx.assessment_nonce,
    )


@pytest_asyncio.fixture
async def active_tx(service, assessed_tx, admin) -> EscrowTransaction:
    return await service.admin_process(assessed_tx.id, admin, "approve")


def make_transaction(**overrides) -> EscrowTransaction:
    """Build a transaction record without going through the engine."""
    now = datetime.now(timezone.utc)
    fields = dict(
        id=1,
        buyer_id=BUYER_ID,
        seller_id=SELLER_ID,
        product_id=PRODUCT_ID,
        amount="250000.00",
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return EscrowTransaction.model_validate(fields)


def make_decision(**overrides) -> AIDecision:
    """Build an assessment record, by default a confident approval."""
    fields = dict(
        recommendation=Recommendation.APPROVE,
        confidence=85,
        reasons=["No risk factors"],
        timestamp=datetime.now(timezone.utc),
    )
    fields.update(overrides)
    return AIDecision.model_validate(fields)


@pytest.fixture
def transaction_factory():
    return make_transaction
