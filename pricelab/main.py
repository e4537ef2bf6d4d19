from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from . import models
from .analyzer import ResultsAnalyzer, results_frame
from .bucketing import Bucketer
from .db import SessionLocal, engine
from .errors import ExperimentNotFoundError, ExperimentValidationError, InvalidTransitionError
from .schemas import (
    AssignmentDecision,
    AssignmentOut,
    AssignRequest,
    ChurnRequest,
    ConversionRequest,
    ExperimentCreate,
    ExperimentList,
    ExperimentOut,
    ExperimentSummary,
    OutcomeResponse,
    TransitionRequest,
)
from .store import ExperimentStore


app = FastAPI(title="pricelab")

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)


# Dependencies that give routes their engine components
def get_store() -> ExperimentStore:
    return ExperimentStore(SessionLocal)


def get_bucketer(store: ExperimentStore = Depends(get_store)) -> Bucketer:
    return Bucketer(store)


def get_analyzer(store: ExperimentStore = Depends(get_store)) -> ResultsAnalyzer:
    return ResultsAnalyzer(store)


@app.exception_handler(ExperimentNotFoundError)
async def experiment_not_found(request: Request, exc: ExperimentNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
    )


@app.exception_handler(ExperimentValidationError)
async def validation_failed(request: Request, exc: ExperimentValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.post("/experiments", response_model=ExperimentOut, status_code=201)
def create_experiment(payload: ExperimentCreate, store: ExperimentStore = Depends(get_store)):
    return store.create_experiment(**payload.model_dump())


@app.get("/experiments", response_model=ExperimentList)
def list_experiments(
    organization_id: str,
    status: Optional[models.ExperimentStatus] = None,
    store: ExperimentStore = Depends(get_store),
):
    experiments = store.list_experiments(organization_id, status)
    counts = store.assignment_counts(e.id for e in experiments)
    return {
        "experiments": [
            ExperimentSummary(
                **ExperimentOut.model_validate(e).model_dump(),
                assignment_count=counts[e.id],
            )
            for e in experiments
        ]
    }


@app.get("/experiments/{experiment_id}", response_model=ExperimentOut)
def get_experiment(experiment_id: int, organization_id: str, store: ExperimentStore = Depends(get_store)):
    return store.get_experiment(experiment_id, organization_id)


@app.patch("/experiments/{experiment_id}", response_model=ExperimentOut)
def transition_experiment(
    experiment_id: int,
    payload: TransitionRequest,
    organization_id: str,
    store: ExperimentStore = Depends(get_store),
):
    """
    Update experiment status (start, pause, resume, end, cancel).
    """
    return store.transition(experiment_id, payload.action, organization_id)


@app.delete("/experiments/{experiment_id}", status_code=204)
def delete_experiment(experiment_id: int, organization_id: str, store: ExperimentStore = Depends(get_store)):
    store.delete_experiment(experiment_id, organization_id)
    return Response(status_code=204)


@app.post("/experiments/{experiment_id}/assignments", response_model=AssignmentDecision)
def assign_visitor(
    experiment_id: int,
    payload: AssignRequest,
    bucketer: Bucketer = Depends(get_bucketer),
):
    """
    Bucket a visitor. `assigned: false` means "show the regular price".
    """
    decision = bucketer.assign_visitor(experiment_id, payload.visitor_id)
    if decision is None:
        return {"assigned": False}
    return decision.to_dict()


@app.post("/experiments/{experiment_id}/conversions", response_model=OutcomeResponse)
def record_conversion(
    experiment_id: int,
    payload: ConversionRequest,
    bucketer: Bucketer = Depends(get_bucketer),
):
    assignment = bucketer.record_conversion(
        experiment_id,
        payload.visitor_id,
        payload.customer_id,
        payload.subscription_id,
        payload.revenue_cents,
    )
    return {
        "recorded": assignment is not None,
        "assignment": AssignmentOut.model_validate(assignment) if assignment else None,
    }


@app.post("/experiments/{experiment_id}/churns", response_model=OutcomeResponse)
def record_churn(
    experiment_id: int,
    payload: ChurnRequest,
    bucketer: Bucketer = Depends(get_bucketer),
):
    assignment = bucketer.record_churn(experiment_id, payload.customer_id, payload.lifetime_revenue)
    return {
        "recorded": assignment is not None,
        "assignment": AssignmentOut.model_validate(assignment) if assignment else None,
    }


@app.get("/experiments/{experiment_id}/results")
def experiment_results(
    experiment_id: int,
    organization_id: str,
    analyzer: ResultsAnalyzer = Depends(get_analyzer),
):
    return analyzer.get_results(experiment_id, organization_id).to_dict()


@app.get("/experiments/{experiment_id}/results.csv")
def experiment_results_csv(
    experiment_id: int,
    organization_id: str,
    analyzer: ResultsAnalyzer = Depends(get_analyzer),
):
    df = results_frame(analyzer.get_results(experiment_id, organization_id))
    return Response(
        content=df.to_csv(index=False),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="experiment-{experiment_id}-results.csv"'},
    )


@app.get("/plans/{plan_id}/experiment", response_model=Optional[ExperimentOut])
def plan_experiment(plan_id: str, organization_id: str, store: ExperimentStore = Depends(get_store)):
    """
    The running experiment for a plan, if any. Pricing pages call this to
    decide whether to bucket the visitor at all.
    """
    return store.running_experiment_for_plan(organization_id, plan_id)
