import os

# Importing pricelab.main creates tables on the configured database; keep that in memory
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from pricelab.db import Base, make_engine, make_session_factory
from pricelab.models import Variant
from pricelab.store import ExperimentStore


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ScriptedRandom:
    """Returns the given values in order, then keeps repeating the last one."""

    def __init__(self, *values: float):
        self.values = list(values)
        self.calls = 0

    def random(self) -> float:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        return value


@pytest.fixture
def session_factory(tmp_path):
    # A file database so worker threads each get their own connection
    engine = make_engine(f"sqlite:///{tmp_path / 'experiments.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 1, 5, 9, 0, 0))


@pytest.fixture
def store(session_factory, clock):
    return ExperimentStore(session_factory, clock)


@pytest.fixture
def scripted_random():
    return ScriptedRandom


@pytest.fixture
def make_experiment(store):
    def _make(**overrides):
        data = {
            "organization_id": "org_acme",
            "name": "Pro plan $49 vs $59",
            "hypothesis": "A $59 Pro plan earns more per visitor without hurting conversion",
            "target_plan_id": "price_pro_monthly",
            "target_plan_name": "Pro",
            "planned_duration": 14,
            "traffic_allocation": 100,
            "minimum_sample_size": 100,
            "variants": [
                {"name": "Control", "price_cents": 4900, "is_control": True},
                {"name": "Higher", "price_cents": 5900},
            ],
        }
        data.update(overrides)
        return store.create_experiment(**data)

    return _make


@pytest.fixture
def running_experiment(store, make_experiment):
    experiment = make_experiment()
    return store.transition(experiment.id, "start")


@pytest.fixture
def set_counters(session_factory):
    """Write variant counters directly, to set up analysis scenarios."""

    def _set(variant_id, visitors, conversions, total_revenue=0, churned=0):
        with session_factory() as session:
            session.execute(
                update(Variant)
                .where(Variant.id == variant_id)
                .values(
                    visitors=visitors,
                    conversions=conversions,
                    total_revenue=total_revenue,
                    churned=churned,
                )
            )
            session.commit()

    return _set
