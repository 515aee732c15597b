"""Drift watcher: periodic observe, diff and self-heal loop."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from recon.cluster import ClusterSurface
from recon.desired import DesiredStateStore
from recon.diff import DiffEngine
from recon.errors import ConflictError, SpecValidationError, TopologyError, TransientInfraError
from recon.executor import SyncExecutor
from recon.join import JoinCoordinator
from recon.state import ApplyReport, JoinState, NodeEvent, SyncPlan
from recon.topology import TopologyModel

logger = logging.getLogger(__name__)


class WatcherState(Enum):
	IDLE = "idle"
	POLLING = "polling"
	DIFF_FOUND = "diff-found"
	TRIGGERING_SYNC = "triggering-sync"
	NO_DIFF = "no-diff"
	IDLE_WAIT = "idle-wait"
	STOPPED = "stopped"


class DriftWatcher:
	"""
	Background loop that keeps the cluster converged on the desired state.

	Each tick refreshes node health, folds the live workloads into applied
	state, reloads the desired state and diffs the two. With self-heal on the
	plan is applied right away; otherwise it is held as the pending plan until
	an operator approves it.
	"""

	def __init__(
		self,
		store: DesiredStateStore,
		diff: DiffEngine,
		executor: SyncExecutor,
		cluster: ClusterSurface,
		topology: Optional[TopologyModel] = None,
		join: Optional[JoinCoordinator] = None,
		interval_s: float = 30.0,
		self_heal: bool = True,
		prune: Optional[bool] = None,
		heartbeat_stale_s: float = 120.0,
		clock: Callable[[], float] = time.time,
	) -> None:
		"""
		Args:
			store: Desired-state store reloaded every tick
			diff: Diff engine
			executor: Executor that owns applied state
			cluster: Cluster API surface used for live workloads and node health
			topology: When given, node heartbeats are refreshed every tick
			join: When given, expired join tokens are swept every tick
			interval_s: Seconds between ticks
			self_heal: Apply plans automatically instead of holding them for approval
			prune: Prune override passed to the diff engine
			heartbeat_stale_s: A ready node silent this long becomes unreachable
		"""
		self.store = store
		self.diff = diff
		self.executor = executor
		self.cluster = cluster
		self.topology = topology
		self.join = join
		self.interval_s = interval_s
		self.prune = prune
		self.heartbeat_stale_s = heartbeat_stale_s
		self._clock = clock

		self._self_heal = self_heal
		self._state = WatcherState.IDLE
		self._state_lock = threading.Lock()
		self._transitions: Deque[Tuple[float, str]] = deque(maxlen=256)
		self._apply_lock = threading.Lock()
		self._cancel = threading.Event()
		self._stop_event = threading.Event()
		self._wake = threading.Event()
		self._thread: Optional[threading.Thread] = None

		self._pending: Optional[SyncPlan] = None
		self.last_plan: Optional[SyncPlan] = None
		self.last_report: Optional[ApplyReport] = None
		self.last_error: Optional[str] = None
		self.last_tick_at: Optional[float] = None
		self.ticks = 0

		if self.topology is not None:
			self.topology.subscribe(self._on_node_event)

	# -------- state --------

	@property
	def state(self) -> WatcherState:
		with self._state_lock:
			return self._state

	def _set_state(self, state: WatcherState) -> None:
		with self._state_lock:
			if state == self._state:
				return
			logger.debug(f"Watcher {self._state.value} -> {state.value}")
			self._state = state
			self._transitions.append((time.time(), state.value))

	def transitions(self) -> List[str]:
		with self._state_lock:
			return [name for _, name in self._transitions]

	@property
	def self_heal(self) -> bool:
		return self._self_heal

	def pause_self_heal(self) -> None:
		self._self_heal = False
		logger.info("Self-heal paused; plans will wait for approval")

	def resume_self_heal(self) -> None:
		self._self_heal = True
		logger.info("Self-heal resumed")
		self.wake()

	@property
	def pending_plan(self) -> Optional[SyncPlan]:
		return self._pending

	@property
	def running(self) -> bool:
		return self._thread is not None and self._thread.is_alive()

	# -------- ticks --------

	def poll_once(self) -> Optional[ApplyReport]:
		"""
		Run one observe/diff/apply cycle.

		Returns:
			The ApplyReport when a plan was applied, else None
		"""
		self._set_state(WatcherState.POLLING)
		self.ticks += 1
		self.last_tick_at = self._clock()

		if self.join is not None:
			expired = self.join.expire_stale()
			if expired:
				logger.info(f"Expired join tokens for: {', '.join(expired)}")
		self.refresh_nodes()

		try:
			self.executor.observe(self.cluster.list_workloads())
		except TransientInfraError as e:
			logger.warning(f"Could not list live workloads, diffing against last known state: {e}")

		try:
			desired = self.store.load()
		except (TransientInfraError, SpecValidationError) as e:
			desired = self.store.current
			self.last_error = str(e)
			kept = desired.revision if desired else "none"
			logger.warning(f"Desired state reload failed, keeping revision {kept}: {e}")
		if desired is None:
			self._set_state(WatcherState.NO_DIFF)
			return None

		plan = self.diff.compute(
			desired.specs,
			self.executor.snapshot(),
			prune=self.prune,
			in_flight=self.executor.in_flight(),
			revision=desired.revision,
		)
		self.last_plan = plan
		if plan.is_empty:
			self._pending = None
			self._set_state(WatcherState.NO_DIFF)
			return None

		self._set_state(WatcherState.DIFF_FOUND)
		if not self._self_heal:
			if self._pending is None or self._pending.actions != plan.actions:
				logger.info(f"Holding {plan.plan_id} ({len(plan.actions)} actions) for approval")
				self._pending = plan
			return None

		self._set_state(WatcherState.TRIGGERING_SYNC)
		return self.apply_plan(plan)

	def apply_plan(self, plan: SyncPlan) -> ApplyReport:
		"""Apply `plan`, serialized with every other apply issued through this watcher."""
		with self._apply_lock:
			self._cancel = threading.Event()
			report = self.executor.apply(plan, cancel=self._cancel)
			self.last_report = report
			if self._pending is not None and self._pending.plan_id == plan.plan_id:
				self._pending = None
			return report

	def approve(self, plan_id: Optional[str] = None) -> ApplyReport:
		"""
		Apply the pending plan.

		Raises:
			ConflictError: No pending plan, or `plan_id` names a different one
		"""
		plan = self._pending
		if plan is None:
			raise ConflictError("no pending plan to approve")
		if plan_id is not None and plan_id != plan.plan_id:
			raise ConflictError(f"pending plan is {plan.plan_id}, not {plan_id}")
		logger.info(f"Applying approved plan {plan.plan_id}")
		self._set_state(WatcherState.TRIGGERING_SYNC)
		report = self.apply_plan(plan)
		self._set_state(WatcherState.POLLING)
		return report

	def refresh_nodes(self) -> None:
		"""Move ready nodes with stale heartbeats to unreachable, and back when they report Ready again."""
		if self.topology is None:
			return
		try:
			health = self.cluster.list_nodes()
		except TransientInfraError as e:
			logger.warning(f"Could not refresh node health: {e}")
			return
		now = self._clock()
		for node in self.topology.list_nodes(include_decommissioned=False):
			seen = health.get(node.node_id)
			alive = seen is not None and seen.ready
			try:
				if node.join_state == JoinState.READY:
					if alive:
						self.topology.record_heartbeat(node.node_id, seen.last_heartbeat or now)
					elif node.last_heartbeat is None or now - node.last_heartbeat > self.heartbeat_stale_s:
						self.topology.transition(node.node_id, JoinState.UNREACHABLE, reason="heartbeat stale")
				elif node.join_state == JoinState.UNREACHABLE and alive:
					self.topology.transition(node.node_id, JoinState.READY, reason="node reported Ready")
					self.topology.record_heartbeat(node.node_id, seen.last_heartbeat or now)
			except TopologyError as e:
				# a concurrent join moved the node first
				logger.debug(f"Skipping health update for {node.node_id}: {e}")

	# -------- thread --------

	def _on_node_event(self, event: NodeEvent) -> None:
		self.wake()

	def wake(self) -> None:
		self._wake.set()

	def start(self) -> None:
		if self.running:
			logger.warning("Drift watcher already running")
			return
		self._stop_event.clear()
		self._set_state(WatcherState.IDLE)
		self._thread = threading.Thread(target=self._run, daemon=True, name="DriftWatcher")
		self._thread.start()
		logger.info(f"Started drift watcher (interval {self.interval_s}s, self-heal {self._self_heal})")

	def stop(self, cancel_in_flight: bool = False, timeout: Optional[float] = None) -> None:
		"""
		Stop before the next tick. An apply already running finishes first.

		Args:
			cancel_in_flight: Also cancel actions of the running apply that have not started
			timeout: Seconds to wait for the loop thread
		"""
		self._stop_event.set()
		self._wake.set()
		if cancel_in_flight:
			self._cancel.set()
		if self._thread is not None:
			self._thread.join(timeout=timeout)
			if self._thread.is_alive():
				logger.warning("Drift watcher did not stop within timeout")
				return
			self._thread = None
		self._set_state(WatcherState.STOPPED)
		logger.info("Stopped drift watcher")

	def _run(self) -> None:
		repolled = False
		while not self._stop_event.is_set():
			report = None
			try:
				report = self.poll_once()
			except Exception as e:
				self.last_error = str(e)
				logger.error(f"Drift watcher tick failed: {e}")
			if self._stop_event.is_set():
				break
			# verify convergence right after a successful sync, once
			if report is not None and report.status == "synced" and not repolled:
				repolled = True
				continue
			repolled = False
			self._set_state(WatcherState.IDLE_WAIT)
			self._wake.wait(self.interval_s)
			self._wake.clear()
		self._set_state(WatcherState.STOPPED)

	def status(self) -> Dict[str, Any]:
		return {
			"state": self.state.value,
			"running": self.running,
			"self_heal": self._self_heal,
			"interval_s": self.interval_s,
			"ticks": self.ticks,
			"last_tick_at": self.last_tick_at,
			"last_error": self.last_error,
			"pending_plan": self._pending.plan_id if self._pending else None,
			"last_report": self.last_report.to_dict() if self.last_report else None,
		}
