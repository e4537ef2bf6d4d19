# pricelab/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    # Naive UTC, matching what SQLite hands back from DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExperimentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


class Experiment(Base):
    __tablename__ = "pricing_experiments"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)

    name = Column(String, nullable=False)
    hypothesis = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    target_plan_id = Column(String, nullable=False)
    target_plan_name = Column(String, nullable=False)

    status = Column(
        Enum(ExperimentStatus, name="experiment_status"),
        nullable=False,
        default=ExperimentStatus.DRAFT,
    )
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    planned_duration = Column(Integer, nullable=False)  # days, informational
    traffic_allocation = Column(Float, nullable=False, default=50.0)  # percent
    minimum_sample_size = Column(Integer, nullable=False)  # per variant
    minimum_detectable_effect = Column(Float, nullable=False, default=0.05)
    confidence_level = Column(Float, nullable=False, default=0.95)

    # Carried through untouched; the engine never reads these
    ai_generated = Column(Boolean, nullable=False, default=False)
    expected_lift = Column(Float, nullable=True)
    priority = Column(Integer, nullable=True)
    risks = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # One-to-many: Experiment → Variants
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.id",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_pricing_experiments_org_status", "organization_id", "status"),
    )

    @property
    def control(self):
        return next((v for v in self.variants if v.is_control), None)


class Variant(Base):
    __tablename__ = "experiment_variants"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(
        Integer,
        ForeignKey("pricing_experiments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    is_control = Column(Boolean, nullable=False, default=False)
    price_cents = Column(Integer, nullable=False)
    original_price_cents = Column(Integer, nullable=True)

    # Only ever changed through the store's atomic increments
    visitors = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    churned = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Integer, nullable=False, default=0)  # cents

    created_at = Column(DateTime, nullable=False, default=utcnow)

    experiment = relationship("Experiment", back_populates="variants")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_variant_price_non_negative"),
        CheckConstraint("conversions <= visitors", name="ck_variant_conversions_le_visitors"),
        CheckConstraint("churned <= conversions", name="ck_variant_churned_le_conversions"),
    )


class Assignment(Base):
    __tablename__ = "experiment_assignments"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(
        Integer,
        ForeignKey("pricing_experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id = Column(
        Integer,
        ForeignKey("experiment_variants.id", ondelete="CASCADE"),
        nullable=False,
    )
    visitor_id = Column(String, nullable=False)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)

    converted = Column(Boolean, nullable=False, default=False)
    converted_at = Column(DateTime, nullable=True)
    customer_id = Column(String, nullable=True, index=True)
    subscription_id = Column(String, nullable=True)
    conversion_revenue = Column(Integer, nullable=True)

    churned = Column(Boolean, nullable=False, default=False)
    churned_at = Column(DateTime, nullable=True)
    lifetime_revenue = Column(Integer, nullable=True)

    variant = relationship("Variant", lazy="joined")

    __table_args__ = (
        # At most one bucket per visitor per experiment
        UniqueConstraint("experiment_id", "visitor_id", name="uq_assignment_experiment_visitor"),
        Index("ix_assignment_experiment_variant", "experiment_id", "variant_id"),
    )
