import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from pricelab.errors import ExperimentNotFoundError, ExperimentValidationError, InvalidTransitionError
from pricelab.models import ExperimentStatus
from pricelab.stats import required_sample_size


def test_create_experiment_starts_as_draft(make_experiment):
    experiment = make_experiment()

    assert experiment.id is not None
    assert experiment.status == ExperimentStatus.DRAFT
    assert experiment.started_at is None
    assert experiment.ended_at is None
    assert [v.name for v in experiment.variants] == ["Control", "Higher"]
    assert experiment.control.price_cents == 4900
    for v in experiment.variants:
        assert (v.visitors, v.conversions, v.churned, v.total_revenue) == (0, 0, 0, 0)
        assert v.original_price_cents == v.price_cents


def test_create_experiment_promotes_first_variant_to_control(make_experiment):
    experiment = make_experiment(
        variants=[
            {"name": "A", "price_cents": 2900},
            {"name": "B", "price_cents": 3900},
            {"name": "C", "price_cents": 4900},
        ]
    )

    assert [v.is_control for v in experiment.variants] == [True, False, False]


def test_create_experiment_defaults(make_experiment):
    experiment = make_experiment(traffic_allocation=None, minimum_sample_size=None)

    assert experiment.traffic_allocation == 50
    assert experiment.confidence_level == 0.95
    assert experiment.minimum_detectable_effect == 0.05
    assert experiment.minimum_sample_size == required_sample_size(0.05, 0.95)


def test_create_experiment_keeps_metadata(make_experiment):
    experiment = make_experiment(
        description="Suggested from churn analysis",
        ai_generated=True,
        expected_lift=12.5,
        priority=2,
        risks=["Higher churn in SMB segment"],
    )

    assert experiment.ai_generated is True
    assert experiment.expected_lift == 12.5
    assert experiment.priority == 2
    assert experiment.risks == ["Higher churn in SMB segment"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "   "},
        {"hypothesis": ""},
        {"planned_duration": 0},
        {"traffic_allocation": 0},
        {"traffic_allocation": 120},
        {"confidence_level": 0.8},
        {"minimum_sample_size": 0},
        {"minimum_detectable_effect": 0},
        {"variants": [{"name": "Only", "price_cents": 4900}]},
        {
            "variants": [
                {"name": "A", "price_cents": 4900, "is_control": True},
                {"name": "B", "price_cents": 5900, "is_control": True},
            ]
        },
        {
            "variants": [
                {"name": "A", "price_cents": 4900},
                {"name": "B", "price_cents": -1},
            ]
        },
        {
            "variants": [
                {"name": "A", "price_cents": 4900},
                {"name": "B", "price_cents": 59.5},
            ]
        },
    ],
)
def test_create_experiment_rejects_invalid_input(store, make_experiment, overrides):
    with pytest.raises(ExperimentValidationError):
        make_experiment(**overrides)

    assert store.list_experiments("org_acme") == []


def _advance_to(store, experiment_id, status):
    path = {
        ExperimentStatus.DRAFT: [],
        ExperimentStatus.RUNNING: ["start"],
        ExperimentStatus.PAUSED: ["start", "pause"],
        ExperimentStatus.COMPLETED: ["start", "end"],
        ExperimentStatus.CANCELLED: ["cancel"],
    }[status]
    for action in path:
        store.transition(experiment_id, action)


@pytest.mark.parametrize(
    "start_status, action, expected",
    [
        (ExperimentStatus.DRAFT, "start", ExperimentStatus.RUNNING),
        (ExperimentStatus.RUNNING, "pause", ExperimentStatus.PAUSED),
        (ExperimentStatus.PAUSED, "resume", ExperimentStatus.RUNNING),
        (ExperimentStatus.RUNNING, "end", ExperimentStatus.COMPLETED),
        (ExperimentStatus.PAUSED, "end", ExperimentStatus.COMPLETED),
        (ExperimentStatus.DRAFT, "cancel", ExperimentStatus.CANCELLED),
        (ExperimentStatus.RUNNING, "cancel", ExperimentStatus.CANCELLED),
        (ExperimentStatus.PAUSED, "cancel", ExperimentStatus.CANCELLED),
    ],
)
def test_legal_transitions(store, make_experiment, start_status, action, expected):
    experiment = make_experiment()
    _advance_to(store, experiment.id, start_status)

    updated = store.transition(experiment.id, action)

    assert updated.status == expected
    assert store.get_experiment(experiment.id).status == expected


@pytest.mark.parametrize(
    "start_status, action",
    [
        (ExperimentStatus.DRAFT, "pause"),
        (ExperimentStatus.DRAFT, "resume"),
        (ExperimentStatus.DRAFT, "end"),
        (ExperimentStatus.RUNNING, "start"),
        (ExperimentStatus.RUNNING, "resume"),
        (ExperimentStatus.PAUSED, "start"),
        (ExperimentStatus.PAUSED, "pause"),
        (ExperimentStatus.COMPLETED, "start"),
        (ExperimentStatus.COMPLETED, "resume"),
        (ExperimentStatus.COMPLETED, "cancel"),
        (ExperimentStatus.CANCELLED, "start"),
        (ExperimentStatus.CANCELLED, "end"),
    ],
)
def test_illegal_transitions_leave_status_unchanged(store, make_experiment, start_status, action):
    experiment = make_experiment()
    _advance_to(store, experiment.id, start_status)

    with pytest.raises(InvalidTransitionError) as excinfo:
        store.transition(experiment.id, action)

    assert excinfo.value.current == start_status.value
    assert excinfo.value.requested == action
    assert store.get_experiment(experiment.id).status == start_status


def test_transition_timestamps(store, make_experiment, clock):
    experiment = make_experiment()
    started = clock()

    running = store.transition(experiment.id, "start")
    assert running.started_at == started
    assert running.ended_at is None

    clock.advance(days=2)
    store.transition(experiment.id, "pause")
    clock.advance(days=1)
    resumed = store.transition(experiment.id, "resume")
    assert resumed.started_at == started

    clock.advance(days=4)
    completed = store.transition(experiment.id, "end")
    assert completed.ended_at == started + timedelta(days=7)


def test_transition_unknown_action(store, make_experiment):
    experiment = make_experiment()

    with pytest.raises(ExperimentValidationError):
        store.transition(experiment.id, "restart")


def test_transition_missing_experiment(store):
    with pytest.raises(ExperimentNotFoundError):
        store.transition(9999, "start")


def test_get_missing_experiment(store):
    with pytest.raises(ExperimentNotFoundError) as excinfo:
        store.get_experiment(9999)

    assert excinfo.value.experiment_id == 9999


def test_concurrent_start_succeeds_once(store, make_experiment):
    experiment = make_experiment()

    def start():
        try:
            store.transition(experiment.id, "start")
            return "ok"
        except InvalidTransitionError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: start(), range(8)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7
    assert store.get_experiment(experiment.id).status == ExperimentStatus.RUNNING


def test_delete_draft(store, make_experiment):
    experiment = make_experiment()

    store.delete_experiment(experiment.id)

    with pytest.raises(ExperimentNotFoundError):
        store.get_experiment(experiment.id)


@pytest.mark.parametrize(
    "status",
    [ExperimentStatus.RUNNING, ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED],
)
def test_delete_only_drafts(store, make_experiment, status):
    experiment = make_experiment()
    _advance_to(store, experiment.id, status)

    with pytest.raises(InvalidTransitionError) as excinfo:
        store.delete_experiment(experiment.id)

    assert excinfo.value.current == status.value
    assert store.get_experiment(experiment.id).status == status


def test_delete_missing_experiment(store):
    with pytest.raises(ExperimentNotFoundError):
        store.delete_experiment(9999)


def test_list_experiments_by_organization_and_status(store, make_experiment, clock):
    first = make_experiment(name="First")
    clock.advance(hours=1)
    second = make_experiment(name="Second")
    make_experiment(organization_id="org_other", name="Elsewhere")
    store.transition(second.id, "start")

    listed = store.list_experiments("org_acme")
    assert [e.name for e in listed] == ["Second", "First"]

    running = store.list_experiments("org_acme", ExperimentStatus.RUNNING)
    assert [e.id for e in running] == [second.id]

    assert store.list_experiments("org_acme", ExperimentStatus.COMPLETED) == []
    assert store.list_experiments("org_nobody") == []
    assert first.id not in [e.id for e in store.list_experiments("org_other")]


def test_assignment_counts(store, running_experiment, make_experiment):
    other = make_experiment(name="Untouched")
    control, treatment = running_experiment.variants

    store.insert_assignment(running_experiment.id, "v1", control.id)
    store.insert_assignment(running_experiment.id, "v2", treatment.id)
    store.insert_assignment(running_experiment.id, "v3", treatment.id)

    counts = store.assignment_counts([running_experiment.id, other.id])
    assert counts == {running_experiment.id: 3, other.id: 0}
    assert store.assignment_counts([]) == {}


def test_running_experiment_for_plan(store, make_experiment):
    draft = make_experiment()
    assert store.running_experiment_for_plan("org_acme", "price_pro_monthly") is None

    store.transition(draft.id, "start")
    found = store.running_experiment_for_plan("org_acme", "price_pro_monthly")
    assert found.id == draft.id

    assert store.running_experiment_for_plan("org_acme", "price_team_monthly") is None
    assert store.running_experiment_for_plan("org_other", "price_pro_monthly") is None

    store.transition(draft.id, "pause")
    assert store.running_experiment_for_plan("org_acme", "price_pro_monthly") is None


def test_insert_assignment_counts_visitor_once(store, running_experiment):
    control = running_experiment.control

    first, created = store.insert_assignment(running_experiment.id, "visitor-1", control.id)
    again, created_again = store.insert_assignment(running_experiment.id, "visitor-1", control.id)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert store.get_experiment(running_experiment.id).control.visitors == 1


def test_transition_rejection_names_current_and_target_status(store, running_experiment):
    with pytest.raises(InvalidTransitionError) as excinfo:
        store.transition(running_experiment.id, "start")

    assert excinfo.value.target == "RUNNING"
    assert str(excinfo.value) == (
        f"Cannot start experiment {running_experiment.id}: status is RUNNING, cannot move to RUNNING"
    )


@pytest.mark.parametrize("attempt", range(5))
def test_concurrent_pause_and_cancel(store, running_experiment, attempt):
    barrier = threading.Barrier(2)

    def apply(action):
        barrier.wait()
        try:
            return store.transition(running_experiment.id, action).status
        except InvalidTransitionError as exc:
            return exc.current

    with ThreadPoolExecutor(max_workers=2) as pool:
        paused, cancelled = pool.map(apply, ["pause", "cancel"])

    # cancel is legal from RUNNING and PAUSED, so it always lands; pause only
    # lands if it ran first, otherwise it sees the cancellation
    assert cancelled == ExperimentStatus.CANCELLED
    assert paused in (ExperimentStatus.PAUSED, ExperimentStatus.CANCELLED.value)
    final = store.get_experiment(running_experiment.id)
    assert final.status == ExperimentStatus.CANCELLED
    assert final.ended_at is not None


def test_experiment_scoped_to_organization(store, make_experiment):
    experiment = make_experiment()

    assert store.get_experiment(experiment.id, "org_acme").id == experiment.id
    with pytest.raises(ExperimentNotFoundError):
        store.get_experiment(experiment.id, "org_other")
    with pytest.raises(ExperimentNotFoundError):
        store.transition(experiment.id, "start", "org_other")
    with pytest.raises(ExperimentNotFoundError):
        store.delete_experiment(experiment.id, "org_other")

    assert store.get_experiment(experiment.id).status == ExperimentStatus.DRAFT

    store.transition(experiment.id, "start", "org_acme")
    with pytest.raises(ExperimentNotFoundError):
        store.transition(experiment.id, "pause", "org_other")
    assert store.get_experiment(experiment.id).status == ExperimentStatus.RUNNING


def test_insert_assignment_requires_running_experiment(store, running_experiment):
    control = running_experiment.control
    store.transition(running_experiment.id, "pause")

    assignment, created = store.insert_assignment(running_experiment.id, "visitor-1", control.id)

    assert (assignment, created) == (None, False)
    assert store.get_assignment(running_experiment.id, "visitor-1") is None
    assert store.get_experiment(running_experiment.id).control.visitors == 0
