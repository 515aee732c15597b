from conftest import spec

from recon.diff import DiffEngine, dependency_order
from recon.state import ActionType, AppliedState, WorkloadStatus


def status(s, **overrides):
    fields = dict(
        name=s.name,
        generation=s.generation,
        replicas=s.replicas,
        template_hash=s.template_hash(),
        ready_replicas=s.replicas,
        depends_on=tuple(s.depends_on),
    )
    fields.update(overrides)
    return WorkloadStatus(**fields)


def observed(*statuses):
    return AppliedState({st.name: st for st in statuses})


def kinds(plan):
    return [(a.type, a.workload) for a in plan.actions]


def test_create_from_empty():
    a = spec("a", replicas=2)
    plan = DiffEngine().compute([a], AppliedState())
    assert kinds(plan) == [(ActionType.CREATE, "a")]
    action = plan.actions[0]
    assert (action.to_generation, action.replicas) == (1, 2)


def test_generation_bump_is_update():
    old = spec("a", generation=1)
    new = spec("a", image="registry.example.com/a:2.0", generation=2)
    plan = DiffEngine().compute([new], observed(status(old)))
    assert kinds(plan) == [(ActionType.UPDATE, "a")]
    assert (plan.actions[0].from_generation, plan.actions[0].to_generation) == (1, 2)


def test_replica_mismatch_only_is_scale():
    a = spec("a", replicas=3)
    plan = DiffEngine().compute([a], observed(status(a, replicas=1)))
    assert kinds(plan) == [(ActionType.SCALE, "a")]


def test_drift_is_update_at_same_generation():
    a = spec("a")
    plan = DiffEngine().compute([a], observed(status(a, drifted=True)))
    assert kinds(plan) == [(ActionType.UPDATE, "a")]
    assert plan.actions[0].to_generation == a.generation


def test_converged_is_empty():
    a = spec("a")
    assert DiffEngine().compute([a], observed(status(a))).is_empty


def test_tombstone_is_recreated():
    a = spec("a", generation=2)
    plan = DiffEngine().compute([a], observed(status(a, present=False)))
    assert kinds(plan) == [(ActionType.CREATE, "a")]
    assert plan.actions[0].from_generation == 2


def test_dependencies_precede_dependents_with_name_tiebreak():
    desired = [
        spec("catalog", depends_on=["movie", "rating", "discovery"]),
        spec("rating", depends_on=["discovery"]),
        spec("movie", depends_on=["discovery"]),
        spec("discovery"),
        spec("audit"),
    ]
    plan = DiffEngine().compute(desired, AppliedState())
    assert [a.workload for a in plan.actions] == ["audit", "discovery", "movie", "rating", "catalog"]


def test_orphan_without_prune():
    a = spec("a")
    b = spec("b")
    plan = DiffEngine(prune=False).compute([a], observed(status(a), status(b)))
    assert plan.is_empty
    assert plan.orphans == ("b",)


def test_prune_deletes_last_dependents_first():
    a = spec("a")
    old_x = spec("x")
    old_y = spec("y", depends_on=["x"])
    plan = DiffEngine().compute([a], observed(status(old_x), status(old_y)), prune=True)
    assert kinds(plan) == [(ActionType.CREATE, "a"), (ActionType.DELETE, "y"), (ActionType.DELETE, "x")]


def test_prune_keeps_workload_still_required():
    base = spec("base")
    app = spec("app", depends_on=["base"])
    plan = DiffEngine(prune=True).compute([app], observed(status(base), status(app)))
    assert plan.is_empty
    assert plan.orphans == ("base",)


def test_cycle_and_downstream_blocked():
    desired = [
        spec("a", depends_on=["b"]),
        spec("b", depends_on=["a"]),
        spec("c", depends_on=["a"]),
        spec("d"),
    ]
    plan = DiffEngine().compute(desired, AppliedState())
    assert kinds(plan) == [(ActionType.CREATE, "d")]
    assert {name for name, _ in plan.blocked} == {"a", "b", "c"}


def test_undeclared_dependency_blocked():
    plan = DiffEngine().compute([spec("a", depends_on=["ghost"])], AppliedState())
    assert plan.is_empty
    assert plan.blocked[0][0] == "a"


def test_dependency_present_but_undesired_is_allowed_without_prune():
    base = spec("base")
    plan = DiffEngine().compute([spec("app", depends_on=["base"])], observed(status(base)))
    assert kinds(plan) == [(ActionType.CREATE, "app")]


def test_never_regresses_newer_observed_generation():
    a = spec("a", generation=1)
    plan = DiffEngine().compute([a], observed(status(a, generation=3)))
    assert plan.is_empty
    assert plan.blocked[0][0] == "a"


def test_in_flight_target_not_emitted_twice():
    old = spec("a", generation=1)
    new = spec("a", generation=2, image="registry.example.com/a:2.0")
    engine = DiffEngine()
    first = engine.compute([new], observed(status(old)))
    second = engine.compute([new], observed(status(old)), in_flight={"a": 2})
    assert kinds(first) == [(ActionType.UPDATE, "a")]
    assert second.is_empty


def test_dependency_order_reports_leftovers():
    ordered, leftover = dependency_order({"a": ["b"], "b": ["a"], "c": []})
    assert ordered == ["c"]
    assert leftover == {"a", "b"}
