import threading
import time

import pytest

from conftest import FakeCluster, spec

from recon.diff import DiffEngine
from recon.errors import TransientInfraError
from recon.executor import SyncExecutor
from recon.state import ActionStatus, ActionType, JoinState, LiveWorkload, NodeRole
from recon.topology import TopologyModel


@pytest.fixture
def executor(cluster, fast_retry):
    return SyncExecutor(cluster, retry=fast_retry, readiness_timeout_s=0.2, readiness_poll_s=0.005)


def plan_for(executor, desired, **kwargs):
    return DiffEngine().compute(desired, executor.snapshot(), in_flight=executor.in_flight(), **kwargs)


def comparable(state):
    return {
        name: (s.generation, s.replicas, s.template_hash, s.present)
        for name, s in state.workloads.items()
    }


def wait_until(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_create_records_generation_and_replicas(executor, cluster):
    report = executor.apply(plan_for(executor, [spec("a", replicas=2)]))
    assert report.status == "synced"
    record = executor.snapshot().get("a")
    assert (record.generation, record.replicas, record.present) == (1, 2, True)
    assert record.ready_replicas == 2
    assert record.ready
    assert cluster.workloads["a"].replicas == 2


def test_unready_workload_without_dependents_is_recorded_unready(executor, cluster):
    cluster.unready.add("a")
    report = executor.apply(plan_for(executor, [spec("a", replicas=2)]))
    assert report.result_for("a").status == ActionStatus.APPLIED
    record = executor.snapshot().get("a")
    assert record.generation == 1
    assert not record.ready


def test_applying_same_plan_twice_is_idempotent(executor, cluster):
    plan = plan_for(executor, [spec("a", replicas=2), spec("b")])
    executor.apply(plan)
    first = comparable(executor.snapshot())
    again = executor.apply(plan)
    assert {r.status for r in again.results} == {ActionStatus.NOOP}
    assert again.status == "noop"
    assert comparable(executor.snapshot()) == first
    assert len(cluster.ops("create")) == 2


def test_snapshot_is_a_copy(executor):
    executor.apply(plan_for(executor, [spec("a")]))
    snap = executor.snapshot()
    snap.workloads["a"].generation = 99
    assert executor.snapshot().get("a").generation == 1


def test_dependencies_execute_before_dependents(executor, cluster):
    desired = [
        spec("catalog", depends_on=["movie", "rating"]),
        spec("movie", depends_on=["discovery"]),
        spec("rating", depends_on=["discovery"]),
        spec("discovery"),
    ]
    report = executor.apply(plan_for(executor, desired))
    assert report.status == "synced"
    order = [name for _, name in cluster.ops("create")]
    assert order[0] == "discovery"
    assert order[-1] == "catalog"


def test_failed_dependency_aborts_only_its_chain(executor, cluster, transient):
    cluster.fail("discovery", *(transient() for _ in range(5)))
    desired = [spec("discovery"), spec("movie", depends_on=["discovery"]), spec("audit")]
    report = executor.apply(plan_for(executor, desired))
    assert report.result_for("discovery").status == ActionStatus.FAILED
    assert report.result_for("discovery").attempts == 3
    assert report.result_for("movie").status == ActionStatus.ABORTED
    assert report.result_for("audit").status == ActionStatus.APPLIED
    assert report.status == "degraded"
    assert executor.snapshot().get("movie") is None


def test_transient_errors_are_retried(executor, cluster, transient):
    cluster.fail("a", transient(), transient())
    report = executor.apply(plan_for(executor, [spec("a")]))
    result = report.result_for("a")
    assert result.status == ActionStatus.APPLIED
    assert result.attempts == 3


def test_invalid_spec_fails_without_touching_cluster(executor, cluster):
    report = executor.apply(plan_for(executor, [spec("a", image="Not A Valid Image!")]))
    result = report.result_for("a")
    assert result.status == ActionStatus.FAILED
    assert result.error_type == "SpecValidationError"
    assert report.status == "failed"
    assert cluster.ops() == []


def test_stale_action_is_superseded_and_generation_never_decreases(executor):
    old_plan = plan_for(executor, [spec("a", generation=1)])
    executor.apply(plan_for(executor, [spec("a", image="registry.example.com/a:2.0", generation=2)]))
    report = executor.apply(old_plan)
    assert report.result_for("a").status == ActionStatus.SUPERSEDED
    assert executor.snapshot().get("a").generation == 2


def test_superseded_dependency_does_not_abort_dependents(executor, cluster):
    stale = plan_for(executor, [spec("base", generation=1), spec("app", depends_on=["base"])])
    executor.apply(plan_for(executor, [spec("base", image="registry.example.com/base:2.0", generation=2)]))

    report = executor.apply(stale)
    assert report.result_for("base").status == ActionStatus.SUPERSEDED
    assert report.result_for("app").status == ActionStatus.APPLIED
    assert "app" in cluster.workloads
    assert executor.snapshot().get("base").generation == 2
    assert report.status == "synced"


def test_generation_race_rebases_action(executor, cluster):
    plan = plan_for(executor, [spec("a", image="registry.example.com/a:2.0", generation=2)])
    assert plan.actions[0].type == ActionType.CREATE
    cluster.create_workload(spec("a", generation=1))
    executor.observe(cluster.list_workloads())

    report = executor.apply(plan)
    result = report.result_for("a")
    assert result.status == ActionStatus.APPLIED
    assert result.action.type == ActionType.UPDATE
    assert executor.snapshot().get("a").generation == 2


def test_concurrent_diff_does_not_duplicate_in_flight_update(executor, cluster):
    executor.apply(plan_for(executor, [spec("a", generation=1)]))
    new = spec("a", image="registry.example.com/a:2.0", generation=2)
    plan = plan_for(executor, [new])
    assert [a.type for a in plan.actions] == [ActionType.UPDATE]

    cluster.gate = threading.Event()
    worker = threading.Thread(target=executor.apply, args=(plan,))
    worker.start()
    assert wait_until(lambda: executor.in_flight() == {"a": 2})
    assert plan_for(executor, [new]).is_empty

    cluster.gate.set()
    worker.join(timeout=5)
    assert plan_for(executor, [new]).is_empty
    assert len(cluster.ops("update")) == 1
    assert executor.in_flight() == {}


def test_unready_dependency_rolls_back_fresh_create(executor, cluster):
    cluster.unready.add("base")
    report = executor.apply(plan_for(executor, [spec("base"), spec("app", depends_on=["base"])]))
    base = report.result_for("base")
    assert base.status == ActionStatus.FAILED
    assert base.rolled_back
    assert report.result_for("app").status == ActionStatus.ABORTED
    assert "base" not in cluster.workloads
    assert executor.snapshot().get("base") is None


def test_unready_update_restores_previous_spec(executor, cluster):
    executor.apply(plan_for(executor, [spec("base", generation=1)]))
    cluster.unready.add("base")
    desired = [spec("base", image="registry.example.com/base:2.0", generation=2), spec("app", depends_on=["base"])]
    report = executor.apply(plan_for(executor, desired))
    assert report.result_for("base").rolled_back
    assert cluster.workloads["base"].generation == 1
    assert executor.snapshot().get("base").generation == 1


def test_dependency_outside_plan_must_be_ready(executor, cluster):
    cluster.unready.add("base")
    executor.apply(plan_for(executor, [spec("base")]))
    report = executor.apply(plan_for(executor, [spec("base"), spec("app", depends_on=["base"])]))
    result = report.result_for("app")
    assert result.status == ActionStatus.FAILED
    assert "not ready" in result.error
    assert "app" not in cluster.workloads


def test_cancel_before_start_applies_nothing(executor, cluster):
    cancel = threading.Event()
    cancel.set()
    report = executor.apply(plan_for(executor, [spec("a"), spec("b")]), cancel=cancel)
    assert {r.status for r in report.results} == {ActionStatus.CANCELLED}
    assert report.status == "failed"
    assert cluster.workloads == {}


def test_cancel_lets_running_action_finish(cluster, fast_retry):
    executor = SyncExecutor(cluster, retry=fast_retry, concurrency=1, readiness_timeout_s=0.2, readiness_poll_s=0.005)
    cancel = threading.Event()
    cluster.gate = threading.Event()
    plan = plan_for(executor, [spec("a"), spec("b", depends_on=["a"])])
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.update(report=executor.apply(plan, cancel=cancel)))
    worker.start()
    assert wait_until(cluster.entered.is_set)
    cancel.set()
    cluster.gate.set()
    worker.join(timeout=5)

    report = outcome["report"]
    assert report.result_for("a").status == ActionStatus.APPLIED
    assert report.result_for("b").status == ActionStatus.CANCELLED
    assert executor.snapshot().get("a").generation == 1
    assert "b" not in cluster.workloads


def test_role_placement_needs_ready_node(cluster, fast_retry):
    topology = TopologyModel()
    topology.declare("worker-1")
    executor = SyncExecutor(cluster, topology=topology, retry=fast_retry)
    desired = [spec("a", node_role=NodeRole.WORKER)]
    report = executor.apply(plan_for(executor, desired))
    assert report.result_for("a").error_type == "TransientInfraError"

    topology.transition("worker-1", JoinState.JOINING)
    topology.transition("worker-1", JoinState.READY)
    report = executor.apply(plan_for(executor, desired))
    assert report.result_for("a").status == ActionStatus.APPLIED


def test_delete_leaves_tombstone(executor, cluster):
    executor.apply(plan_for(executor, [spec("a"), spec("b")]))
    report = executor.apply(plan_for(executor, [spec("a")], prune=True))
    assert report.result_for("b").status == ActionStatus.APPLIED
    record = executor.snapshot().get("b")
    assert record.present is False
    assert record.generation == 1
    assert "b" not in cluster.workloads


def test_observe_adopts_detects_drift_and_disappearance(executor, cluster):
    cluster.create_workload(spec("legacy", generation=4))
    executor.apply(plan_for(executor, [spec("a"), spec("b")]))
    cluster.drift("a")
    cluster.delete_workload("b")

    changed = executor.observe(cluster.list_workloads())
    assert set(changed) == {"legacy", "a", "b"}
    snap = executor.snapshot()
    assert snap.get("legacy").generation == 4
    assert snap.get("a").drifted
    assert snap.get("b").present is False

    plan = plan_for(executor, [spec("a"), spec("b")])
    assert [(a.type, a.workload) for a in plan.actions] == [
        (ActionType.UPDATE, "a"),
        (ActionType.CREATE, "b"),
    ]


def test_concurrency_is_bounded(fast_retry):
    class SlowCluster(FakeCluster):
        def __init__(self):
            super().__init__()
            self.active = 0
            self.peak = 0
            self.counter_lock = threading.Lock()

        def create_workload(self, s):
            with self.counter_lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(0.02)
            super().create_workload(s)
            with self.counter_lock:
                self.active -= 1

    cluster = SlowCluster()
    executor = SyncExecutor(cluster, retry=fast_retry, concurrency=2)
    report = executor.apply(plan_for(executor, [spec(f"w{i}") for i in range(6)]))
    assert report.status == "synced"
    assert cluster.peak == 2


def test_monotonic_under_observed_newer_generation(executor, cluster):
    executor.apply(plan_for(executor, [spec("a", generation=1)]))
    cluster.workloads["a"] = LiveWorkload(name="a", replicas=1, ready_replicas=1, generation=5, template_hash="other")
    executor.observe(cluster.list_workloads())
    assert executor.snapshot().get("a").generation == 5
    cluster.workloads["a"] = LiveWorkload(name="a", replicas=1, ready_replicas=1, generation=2, template_hash="other")
    executor.observe(cluster.list_workloads())
    assert executor.snapshot().get("a").generation == 5


def test_prune_off_reports_orphan_and_keeps_it(executor, cluster):
    executor.apply(plan_for(executor, [spec("a"), spec("b")]))
    report = executor.apply(plan_for(executor, [spec("a")], prune=False))
    assert report.orphans == ("b",)
    assert report.status == "noop"
    assert "b" in cluster.workloads
    assert executor.snapshot().get("b").present
    assert cluster.ops("delete") == []
