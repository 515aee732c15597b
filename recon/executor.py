"""Sync executor: applies SyncPlans and owns the applied-state record."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, List, Mapping, Optional, Set

from recon.cluster import ClusterSurface
from recon.errors import (
    Cancelled,
    ConflictError,
    ReconcileError,
    SpecValidationError,
    TransientInfraError,
)
from recon.retry import Backoff, call_with_retry, sleep_or_cancel
from recon.state import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    AppliedState,
    ApplyReport,
    LiveWorkload,
    SyncPlan,
    WorkloadSpec,
    WorkloadStatus,
    _NOT_APPLIED,
)
from recon.topology import TopologyModel

logger = logging.getLogger(__name__)


class SyncExecutor:
    """
    Applies SyncPlans with a bounded worker pool.

    The executor is the single writer of AppliedState. Actions on the same
    workload are serialized by a per-workload lock; an action only starts once
    every in-plan action it depends on has settled without failing. A
    superseded dependency counts as settled; readiness is still checked.
    """

    def __init__(
        self,
        cluster: ClusterSurface,
        topology: Optional[TopologyModel] = None,
        concurrency: int = 4,
        retry: Optional[Backoff] = None,
        readiness_timeout_s: float = 120.0,
        readiness_poll_s: float = 2.0,
        rollback: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            cluster: Cluster API surface actions are applied to
            topology: When given, role-selected workloads need a ready node of that role
            concurrency: Worker pool size
            retry: Per-action retry schedule for transient failures
            readiness_timeout_s: How long to wait for a workload to become ready
            readiness_poll_s: Poll interval while waiting for readiness
            rollback: Restore the previous spec when a workload fails to become ready
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.cluster = cluster
        self.topology = topology
        self.concurrency = concurrency
        self.retry = retry or Backoff(attempts=3, base_delay_s=0.5, max_delay_s=10.0)
        self.readiness_timeout_s = readiness_timeout_s
        self.readiness_poll_s = readiness_poll_s
        self.rollback = rollback
        self._clock = clock

        self._state = AppliedState()
        self._state_lock = threading.Lock()
        self._applied_specs: Dict[str, WorkloadSpec] = {}
        self._in_flight: Dict[str, int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.last_report: Optional[ApplyReport] = None

    # -------- read --------

    def snapshot(self) -> AppliedState:
        with self._state_lock:
            return self._state.copy()

    def in_flight(self) -> Dict[str, int]:
        with self._state_lock:
            return dict(self._in_flight)

    def applied_spec(self, name: str) -> Optional[WorkloadSpec]:
        with self._state_lock:
            return self._applied_specs.get(name)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    # -------- observation --------

    def observe(self, live: Mapping[str, LiveWorkload]) -> List[str]:
        """
        Fold the live cluster view into AppliedState.

        Workloads currently being applied are skipped; their action refreshes
        them. Unknown managed workloads are adopted with the generation
        recorded on them.

        Returns:
            Names whose record changed
        """
        with self._state_lock:
            names = sorted(set(live) | set(self._state.workloads))
        changed: List[str] = []
        for name in names:
            lock = self._lock_for(name)
            if not lock.acquire(blocking=False):
                continue
            try:
                if self._observe_locked(name, live.get(name)):
                    changed.append(name)
            finally:
                lock.release()
        if changed:
            logger.info(f"Observed changes on {len(changed)} workloads: {', '.join(changed)}")
        return changed

    def _observe_locked(self, name: str, lw: Optional[LiveWorkload]) -> bool:
        with self._state_lock:
            status = self._state.workloads.get(name)
            if lw is None:
                if status is None or not status.present:
                    return False
                status.present = False
                status.ready_replicas = 0
                status.updated_at = time.time()
                logger.warning(f"Workload {name} disappeared from the cluster")
                return True
            if status is None:
                self._state.workloads[name] = WorkloadStatus(
                    name=name,
                    generation=lw.generation,
                    replicas=lw.replicas,
                    template_hash=lw.template_hash,
                    ready_replicas=lw.ready_replicas,
                    depends_on=tuple(lw.depends_on),
                )
                logger.info(f"Adopted workload {name} at generation {lw.generation}")
                return True

            before = (status.present, status.replicas, status.ready_replicas, status.drifted, status.generation)
            if lw.generation > status.generation:
                # applied elsewhere at a newer generation; never step backwards
                status.generation = lw.generation
                status.template_hash = lw.template_hash
                status.depends_on = tuple(lw.depends_on)
            status.present = True
            status.replicas = lw.replicas
            status.ready_replicas = lw.ready_replicas
            status.drifted = status.template_hash is not None and lw.template_hash != status.template_hash
            after = (status.present, status.replicas, status.ready_replicas, status.drifted, status.generation)
            if before != after:
                status.updated_at = time.time()
                if status.drifted and not before[3]:
                    logger.warning(f"Workload {name} drifted from applied generation {status.generation}")
                return True
            return False

    # -------- apply --------

    def apply(self, plan: SyncPlan, cancel: Optional[threading.Event] = None) -> ApplyReport:
        """
        Apply a plan and report per-action outcomes.

        Non-delete actions run first, as soon as their in-plan dependencies have
        succeeded; deletes run afterwards, dependents first. A failed action
        aborts only the actions downstream of it.

        Args:
            plan: The plan to apply (consumed once)
            cancel: Stops scheduling new actions once set; running actions
                finish at a consistent boundary

        Returns:
            ApplyReport with one result per action, in plan order
        """
        report = ApplyReport(plan_id=plan.plan_id, orphans=plan.orphans, blocked=plan.blocked)
        if plan.is_empty:
            report.finished_at = time.time()
            self.last_report = report
            return report

        cancel = cancel or threading.Event()
        with self._state_lock:
            for action in plan.actions:
                self._in_flight[action.workload] = max(self._in_flight.get(action.workload, -1), action.to_generation)

        results: Dict[str, ActionResult] = {}
        try:
            forward = [a for a in plan.actions if a.type != ActionType.DELETE]
            deletes = [a for a in plan.actions if a.type == ActionType.DELETE]
            in_plan = {a.workload for a in forward}
            prereqs = {a.workload: [d for d in a.depends_on if d in in_plan] for a in forward}
            needed_ready = {d for reqs in prereqs.values() for d in reqs}
            self._run_phase(forward, prereqs, needed_ready, results, cancel)

            delete_names = {a.workload for a in deletes}
            delete_prereqs = {
                a.workload: [b.workload for b in deletes if a.workload in b.depends_on and b.workload in delete_names]
                for a in deletes
            }
            self._run_phase(deletes, delete_prereqs, set(), results, cancel)
        finally:
            with self._state_lock:
                for action in plan.actions:
                    if self._in_flight.get(action.workload) == action.to_generation:
                        del self._in_flight[action.workload]

        report.results = [results[a.workload] for a in plan.actions]
        report.finished_at = time.time()
        self.last_report = report
        counts: Dict[str, int] = {}
        for result in report.results:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        logger.info(f"Applied {plan.plan_id}: {report.status} {counts}")
        return report

    def _run_phase(
        self,
        actions: List[Action],
        prereqs: Dict[str, List[str]],
        needed_ready: Set[str],
        results: Dict[str, ActionResult],
        cancel: threading.Event,
    ) -> None:
        if not actions:
            return
        pending = list(actions)
        running: Dict[Future, Action] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="sync") as pool:
            while pending or running:
                progressed = False
                for action in list(pending):
                    reqs = prereqs.get(action.workload, [])
                    if any(r not in results for r in reqs):
                        continue
                    pending.remove(action)
                    progressed = True
                    failed = [r for r in reqs if results[r].status in _NOT_APPLIED]
                    if failed:
                        results[action.workload] = ActionResult(
                            action=action,
                            status=ActionStatus.ABORTED,
                            error=f"dependency {failed[0]} did not apply ({results[failed[0]].status.value})",
                        )
                        logger.warning(f"Aborted {action.type.value} {action.workload}: dependency {failed[0]} did not apply")
                        continue
                    if cancel.is_set():
                        results[action.workload] = ActionResult(action=action, status=ActionStatus.CANCELLED, error="cancelled before start")
                        continue
                    future = pool.submit(self._run_action, action, action.workload in needed_ready, cancel)
                    running[future] = action
                if not running:
                    if pending and not progressed:
                        # prerequisites outside this phase never settle; treat as aborted
                        for action in pending:
                            results[action.workload] = ActionResult(
                                action=action, status=ActionStatus.ABORTED, error="unsatisfiable prerequisites"
                            )
                        pending.clear()
                    continue
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    action = running.pop(future)
                    results[action.workload] = future.result()

    def _run_action(self, action: Action, wait_ready: bool, cancel: threading.Event) -> ActionResult:
        with self._lock_for(action.workload):
            attempts = [0]
            try:
                return self._execute_locked(action, wait_ready, cancel, attempts)
            except Cancelled as e:
                return ActionResult(action=action, status=ActionStatus.CANCELLED, attempts=attempts[0], error=str(e))
            except ConflictError as e:
                logger.info(f"{action.type.value} {action.workload} superseded: {e}")
                return ActionResult(
                    action=action, status=ActionStatus.SUPERSEDED, attempts=attempts[0],
                    error=str(e), error_type=type(e).__name__,
                )
            except ReconcileError as e:
                logger.error(f"{action.type.value} {action.workload} failed: {e}")
                return ActionResult(
                    action=action, status=ActionStatus.FAILED, attempts=attempts[0],
                    error=str(e), error_type=type(e).__name__,
                )
            except Exception as e:
                logger.exception(f"Unexpected error applying {action.type.value} {action.workload}")
                return ActionResult(
                    action=action, status=ActionStatus.FAILED, attempts=attempts[0],
                    error=str(e), error_type=type(e).__name__,
                )

    def _current(self, name: str) -> Optional[WorkloadStatus]:
        with self._state_lock:
            status = self._state.workloads.get(name)
            return replace(status) if status else None

    def _rebase(self, action: Action, current: Optional[WorkloadStatus]) -> Action:
        """Re-derive an action whose observed generation moved since the diff."""
        if action.type == ActionType.DELETE:
            return action
        present = current is not None and current.present
        if not present:
            kind = ActionType.CREATE
        elif current.generation < action.to_generation or current.drifted:
            kind = ActionType.UPDATE
        else:
            kind = ActionType.SCALE
        return replace(
            action,
            type=kind,
            from_generation=current.generation if current else 0,
            reason=f"{action.reason}; rebased onto applied generation {current.generation if current else 0}",
        )

    def _in_sync(self, action: Action, current: Optional[WorkloadStatus]) -> bool:
        if action.type == ActionType.DELETE:
            return current is None or not current.present
        return (
            current is not None
            and current.present
            and not current.drifted
            and current.generation == action.to_generation
            and current.replicas == action.replicas
        )

    def _execute_locked(self, action: Action, wait_ready: bool, cancel: threading.Event, attempts: List[int]) -> ActionResult:
        name = action.workload
        current = self._current(name)

        if current is not None and current.generation > action.to_generation:
            raise ConflictError(
                f"applied generation {current.generation} is newer than target {action.to_generation}",
                workload=name,
                current_generation=current.generation,
            )
        if self._in_sync(action, current):
            return ActionResult(action=action, status=ActionStatus.NOOP)

        observed_generation = current.generation if current else 0
        observed_present = current is not None and current.present
        expected_present = action.type in (ActionType.UPDATE, ActionType.SCALE, ActionType.DELETE)
        if observed_generation != action.from_generation or observed_present != expected_present:
            conflict = ConflictError(
                f"{name} is at generation {observed_generation} (present={observed_present}), "
                f"plan expected {action.from_generation}",
                workload=name,
                current_generation=observed_generation,
            )
            logger.info(f"Rebasing {action.type.value} {name}: {conflict}")
            action = self._rebase(action, current)

        if action.type == ActionType.DELETE:
            return self._delete(action, cancel, attempts)

        spec = action.spec
        if spec is None:
            raise SpecValidationError(f"{action.type.value} {name} carries no spec", field="spec")
        spec.validate()
        self._check_placement(spec, cancel)
        for dep in action.depends_on:
            self._await_ready(dep, cancel)

        def _count(attempt: int) -> None:
            attempts[0] = attempt

        previous_spec = self.applied_spec(name)
        if action.type == ActionType.CREATE:
            op = lambda: self.cluster.create_workload(spec)
        elif action.type == ActionType.UPDATE:
            op = lambda: self.cluster.update_workload(spec)
        else:
            op = lambda: self.cluster.scale_workload(name, action.replicas)
        call_with_retry(op, self.retry, cancel=cancel, describe=f"{action.type.value} {name}", on_attempt=_count)

        ready_replicas = 0
        if wait_ready:
            try:
                live = self._await_live_ready(name, cancel)
                ready_replicas = live.ready_replicas
            except Cancelled:
                logger.info(f"Readiness wait for {name} cancelled; recording applied generation {spec.generation}")
            except TransientInfraError as e:
                rolled_back = self._roll_back(action, current, previous_spec)
                if not rolled_back:
                    self._commit(spec, ready_replicas=0)
                return ActionResult(
                    action=action, status=ActionStatus.FAILED, attempts=attempts[0],
                    error=str(e), error_type=type(e).__name__, rolled_back=rolled_back,
                )
        else:
            ready_replicas = self._read_ready_replicas(name)

        self._commit(spec, ready_replicas=ready_replicas)
        return ActionResult(action=action, status=ActionStatus.APPLIED, attempts=attempts[0])

    def _delete(self, action: Action, cancel: threading.Event, attempts: List[int]) -> ActionResult:
        name = action.workload

        def _count(attempt: int) -> None:
            attempts[0] = attempt

        call_with_retry(
            lambda: self.cluster.delete_workload(name),
            self.retry,
            cancel=cancel,
            describe=f"delete {name}",
            on_attempt=_count,
        )
        with self._state_lock:
            status = self._state.workloads.get(name)
            if status is not None:
                status.present = False
                status.ready_replicas = 0
                status.drifted = False
                status.updated_at = time.time()
            self._applied_specs.pop(name, None)
        return ActionResult(action=action, status=ActionStatus.APPLIED, attempts=attempts[0])

    def _read_ready_replicas(self, name: str) -> int:
        """One non-blocking read-back of the live ready count after a mutation."""
        try:
            live = self.cluster.read_workload(name)
        except TransientInfraError as e:
            logger.debug(f"Could not read back {name} after apply: {e}")
            return 0
        return live.ready_replicas if live is not None else 0

    def _commit(self, spec: WorkloadSpec, ready_replicas: int) -> None:
        """Record `spec` as the running generation, all fields at once."""
        with self._state_lock:
            existing = self._state.workloads.get(spec.name)
            if existing is not None and existing.generation > spec.generation:
                raise ConflictError(
                    f"refusing to move {spec.name} back from generation {existing.generation} to {spec.generation}",
                    workload=spec.name,
                    current_generation=existing.generation,
                )
            self._state.workloads[spec.name] = WorkloadStatus(
                name=spec.name,
                generation=spec.generation,
                replicas=spec.replicas,
                template_hash=spec.template_hash(),
                ready_replicas=ready_replicas,
                present=True,
                drifted=False,
                depends_on=tuple(spec.depends_on),
            )
            self._applied_specs[spec.name] = spec

    def _check_placement(self, spec: WorkloadSpec, cancel: threading.Event) -> None:
        if self.topology is None or spec.node_role is None:
            return

        def _has_node() -> None:
            if not self.topology.ready_nodes(spec.node_role):
                raise TransientInfraError(f"no ready {spec.node_role.value} node for {spec.name}")

        call_with_retry(_has_node, self.retry, cancel=cancel, describe=f"placement check for {spec.name}")

    def _await_ready(self, name: str, cancel: threading.Event) -> None:
        """Block until dependency `name` is ready, per AppliedState or the live cluster."""
        with self._state_lock:
            status = self._state.workloads.get(name)
            if status is not None and status.ready:
                return
        self._await_live_ready(name, cancel)

    def _await_live_ready(self, name: str, cancel: threading.Event) -> LiveWorkload:
        deadline = self._clock() + self.readiness_timeout_s
        while True:
            try:
                live = self.cluster.read_workload(name)
            except TransientInfraError as e:
                logger.debug(f"Readiness poll for {name} failed: {e}")
                live = None
            if live is not None and live.ready_replicas >= live.replicas:
                with self._state_lock:
                    status = self._state.workloads.get(name)
                    if status is not None and status.present:
                        status.ready_replicas = live.ready_replicas
                return live
            if self._clock() >= deadline:
                raise TransientInfraError(f"{name} not ready after {self.readiness_timeout_s:.0f}s")
            sleep_or_cancel(self.readiness_poll_s, cancel)

    def _roll_back(self, action: Action, previous: Optional[WorkloadStatus], previous_spec: Optional[WorkloadSpec]) -> bool:
        """Undo a mutation whose workload never became ready. True when the cluster is back to `previous`."""
        if not self.rollback:
            return False
        name = action.workload
        try:
            if action.type == ActionType.CREATE and (previous is None or not previous.present):
                self.cluster.delete_workload(name)
            elif action.type == ActionType.UPDATE and previous_spec is not None:
                self.cluster.update_workload(previous_spec)
            elif action.type == ActionType.SCALE and previous is not None:
                self.cluster.scale_workload(name, previous.replicas)
            else:
                logger.warning(f"No previous spec recorded for {name}; cannot roll back {action.type.value}")
                return False
        except ReconcileError as e:
            logger.error(f"Rollback of {action.type.value} {name} failed: {e}")
            return False
        logger.warning(f"Rolled back {action.type.value} {name} after readiness failure")
        return True
