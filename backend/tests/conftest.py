"""
Shared fixtures for the analysis platform tests.
"""

from __future__ import annotations

import pytest

from backend.app.config import PlatformSettings
from backend.app.engine.analysis_store import AnalysisStore
from backend.app.engine.connectors import StaticConnector
from backend.app.engine.directory import EntityDirectory
from backend.app.engine.orchestrator import AnalysisOrchestrator
from backend.app.engine.result_cache import ResultCache
from backend.app.schema.directory_schema import (
    Dataset,
    Organization,
    SubscriptionTier,
    TechnicalLevel,
    User,
)
from backend.tests.fakes import (
    DATASET_ID,
    ORDERS_SCHEMA,
    ORG_ID,
    OTHER_DATASET_ID,
    OTHER_ORG_ID,
    OTHER_USER_ID,
    USER_ID,
    FakeProvider,
    FakeSandbox,
    RecordingNotifier,
)

# ── Fixtures ─────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> PlatformSettings:
    return PlatformSettings(_env_file=None, step_timeout_seconds=5)


@pytest.fixture
def directory() -> EntityDirectory:
    d = EntityDirectory()
    d.add_organization(Organization(id=ORG_ID, name="Acme"))
    d.add_organization(Organization(id=OTHER_ORG_ID, name="Globex"))
    d.add_user(User(
        id=USER_ID,
        organization_id=ORG_ID,
        email="analyst@acme.test",
        subscription_tier=SubscriptionTier.PROFESSIONAL,
        technical_level=TechnicalLevel.INTERMEDIATE,
    ))
    d.add_user(User(id=OTHER_USER_ID, organization_id=OTHER_ORG_ID))
    d.add_dataset(
        Dataset(
            id=DATASET_ID,
            organization_id=ORG_ID,
            name="orders",
            description="One row per customer order",
            location="/data/orders.csv",
        ),
        StaticConnector(ORDERS_SCHEMA, sample_rows=[{"region": "EU", "amount": 12.5}]),
    )
    d.add_dataset(Dataset(
        id=OTHER_DATASET_ID,
        organization_id=OTHER_ORG_ID,
        name="invoices",
        schema_metadata={"tables": {"invoices": ["id", "total"]}},
    ))
    return d


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def cache(settings, directory) -> ResultCache:
    return ResultCache(settings, directory)


@pytest.fixture
def orchestrator(settings, directory, cache, provider, sandbox, notifier):
    """Orchestrator with no dispatcher: tests call ``run`` themselves."""
    orch = AnalysisOrchestrator(
        settings,
        store=AnalysisStore(),
        directory=directory,
        cache=cache,
        provider_factory=lambda model: provider,
        sandbox=sandbox,
        notifier=notifier,
    )
    yield orch
    orch.shutdown()
