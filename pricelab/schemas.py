# pricelab/schemas.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import ExperimentStatus


class VariantCreate(BaseModel):
    name: str
    price_cents: int = Field(..., ge=0)
    is_control: bool = False


class ExperimentCreate(BaseModel):
    organization_id: str
    name: str
    hypothesis: str
    description: Optional[str] = None
    target_plan_id: str
    target_plan_name: str
    planned_duration: int = Field(..., gt=0, description="Days, informational only.")
    traffic_allocation: Optional[float] = Field(None, gt=0, le=100)
    confidence_level: float = 0.95
    minimum_sample_size: Optional[int] = Field(None, gt=0)
    minimum_detectable_effect: Optional[float] = Field(None, gt=0)
    # At least 2 and exactly one control are checked by the store (400, not 422)
    variants: List[VariantCreate]
    ai_generated: bool = False
    expected_lift: Optional[float] = None
    priority: Optional[int] = None
    risks: Optional[List[str]] = None


class VariantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    is_control: bool
    price_cents: int
    original_price_cents: Optional[int] = None
    visitors: int
    conversions: int
    churned: int
    total_revenue: int


class ExperimentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: str
    name: str
    hypothesis: str
    description: Optional[str] = None
    target_plan_id: str
    target_plan_name: str
    status: ExperimentStatus
    planned_duration: int
    traffic_allocation: float
    minimum_sample_size: int
    minimum_detectable_effect: float
    confidence_level: float
    ai_generated: bool
    expected_lift: Optional[float] = None
    priority: Optional[int] = None
    risks: Optional[List[str]] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    variants: List[VariantOut]


class ExperimentSummary(ExperimentOut):
    assignment_count: int = 0


class ExperimentList(BaseModel):
    experiments: List[ExperimentSummary]


class TransitionRequest(BaseModel):
    action: Literal["start", "pause", "resume", "end", "cancel"]


class AssignRequest(BaseModel):
    visitor_id: str = Field(..., min_length=1)


class AssignmentDecision(BaseModel):
    assigned: bool
    variant_id: Optional[int] = None
    price_cents: Optional[int] = None


class ConversionRequest(BaseModel):
    visitor_id: str
    customer_id: str
    subscription_id: str
    revenue_cents: int = Field(..., ge=0)


class ChurnRequest(BaseModel):
    customer_id: str
    lifetime_revenue: int = Field(..., ge=0)


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    experiment_id: int
    variant_id: int
    visitor_id: str
    assigned_at: datetime
    converted: bool
    converted_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    conversion_revenue: Optional[int] = None
    churned: bool
    churned_at: Optional[datetime] = None
    lifetime_revenue: Optional[int] = None


class OutcomeResponse(BaseModel):
    recorded: bool
    assignment: Optional[AssignmentOut] = None
