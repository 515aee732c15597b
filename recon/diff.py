"""Diff engine: desired workloads vs applied state into an ordered SyncPlan."""

from __future__ import annotations

import heapq
import logging
import uuid
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from recon.state import Action, ActionType, AppliedState, SyncPlan, WorkloadSpec

logger = logging.getLogger(__name__)

DesiredInput = Union[Mapping[str, WorkloadSpec], Iterable[WorkloadSpec]]


def dependency_order(graph: Mapping[str, Iterable[str]]) -> Tuple[List[str], Set[str]]:
	"""
	Kahn's algorithm with a name-ordered ready queue.

	Args:
		graph: node -> nodes it depends on (edges to unknown nodes are ignored)

	Returns:
		(ordered, leftover): dependencies first, ties broken by name; `leftover`
		holds nodes on a cycle or downstream of one.
	"""
	deps = {name: {d for d in graph[name] if d in graph and d != name} for name in graph}
	dependents: Dict[str, Set[str]] = {name: set() for name in graph}
	for name, required in deps.items():
		for dep in required:
			dependents[dep].add(name)

	remaining = {name: len(required) for name, required in deps.items()}
	ready = [name for name, count in remaining.items() if count == 0]
	heapq.heapify(ready)
	ordered: List[str] = []
	while ready:
		name = heapq.heappop(ready)
		ordered.append(name)
		for child in dependents[name]:
			remaining[child] -= 1
			if remaining[child] == 0:
				heapq.heappush(ready, child)
	return ordered, set(graph) - set(ordered)


class DiffEngine:
	"""
	Computes the SyncPlan that moves applied state toward desired state.

	Creates, updates and scales follow dependency order (name order among
	independent workloads); deletes come last, dependents before the
	workloads they depend on.
	"""

	def __init__(self, prune: bool = False) -> None:
		self.prune = prune

	def compute(
		self,
		desired: DesiredInput,
		observed: AppliedState,
		prune: Optional[bool] = None,
		in_flight: Optional[Mapping[str, int]] = None,
		revision: Optional[str] = None,
	) -> SyncPlan:
		"""
		Args:
			desired: Desired workload specs (mapping by name or iterable)
			observed: Applied state snapshot to diff against
			prune: Override the engine's prune policy for this pass
			in_flight: workload -> target generation currently being applied;
				actions already covered by an in-flight target are not emitted
			revision: Source revision recorded on the plan

		Returns:
			An immutable SyncPlan
		"""
		prune = self.prune if prune is None else prune
		in_flight = in_flight or {}
		specs = dict(desired) if isinstance(desired, Mapping) else {s.name: s for s in desired}
		present = observed.present()

		blocked = self._blocked(specs, observed)
		graph = {name: spec.depends_on for name, spec in specs.items() if name not in blocked}
		ordered, leftover = dependency_order(graph)
		for name in sorted(leftover):
			blocked.setdefault(name, "dependency cycle")

		actions: List[Action] = []
		for name in ordered:
			action = self._action_for(specs[name], observed)
			if action is None:
				continue
			if in_flight.get(name, -1) >= action.to_generation:
				logger.debug(f"Skipping {action.type.value} {name}: generation {in_flight[name]} already in flight")
				continue
			actions.append(action)

		orphans: List[str] = []
		deletions: Dict[str, Action] = {}
		required = {dep for spec in specs.values() for dep in spec.depends_on}
		for name in sorted(set(present) - set(specs)):
			status = present[name]
			if not prune:
				orphans.append(name)
				continue
			if name in required:
				logger.info(f"Not pruning {name}: still required by a desired workload")
				orphans.append(name)
				continue
			deletions[name] = Action(
				type=ActionType.DELETE,
				workload=name,
				from_generation=status.generation,
				to_generation=status.generation,
				replicas=0,
				depends_on=tuple(status.depends_on),
				reason="not in desired state (prune enabled)",
			)
		# reverse dependency order: a dependent is deleted before what it depends on
		delete_order, delete_cycles = dependency_order({n: a.depends_on for n, a in deletions.items()})
		for name in reversed(delete_order + sorted(delete_cycles)):
			if in_flight.get(name, -1) >= deletions[name].to_generation:
				continue
			actions.append(deletions[name])

		plan = SyncPlan(
			plan_id=f"plan-{uuid.uuid4().hex[:8]}",
			actions=tuple(actions),
			revision=revision,
			orphans=tuple(orphans),
			blocked=tuple(sorted(blocked.items())),
		)
		if actions or orphans or blocked:
			logger.info(
				f"Computed {plan.plan_id}: {len(actions)} actions, "
				f"{len(orphans)} orphans, {len(blocked)} blocked"
			)
		return plan

	def _blocked(self, specs: Mapping[str, WorkloadSpec], observed: AppliedState) -> Dict[str, str]:
		blocked: Dict[str, str] = {}
		present = observed.present()
		for name, spec in specs.items():
			status = observed.get(name)
			if status is not None and status.generation > spec.generation:
				blocked[name] = (
					f"applied generation {status.generation} is newer than desired generation {spec.generation}"
				)
				continue
			for dep in spec.depends_on:
				if dep in specs:
					continue
				if dep in present:
					continue
				blocked[name] = f"depends on undeclared workload {dep}"
				break

		# a workload waiting on a blocked dependency is blocked as well
		changed = True
		while changed:
			changed = False
			for name, spec in specs.items():
				if name in blocked:
					continue
				for dep in spec.depends_on:
					if dep in blocked and not blocked[dep].startswith("applied generation"):
						blocked[name] = f"depends on blocked workload {dep}"
						changed = True
						break
		return blocked

	@staticmethod
	def _action_for(spec: WorkloadSpec, observed: AppliedState) -> Optional[Action]:
		status = observed.get(spec.name)
		common = dict(
			workload=spec.name,
			to_generation=spec.generation,
			replicas=spec.replicas,
			spec=spec,
			depends_on=tuple(spec.depends_on),
		)
		if status is None or not status.present:
			reason = "missing from cluster" if status is not None else "new workload"
			return Action(
				type=ActionType.CREATE,
				from_generation=status.generation if status else 0,
				reason=reason,
				**common,
			)
		if status.generation < spec.generation:
			return Action(
				type=ActionType.UPDATE,
				from_generation=status.generation,
				reason=f"generation {status.generation} -> {spec.generation}",
				**common,
			)
		if status.drifted:
			return Action(
				type=ActionType.UPDATE,
				from_generation=status.generation,
				reason="live template drifted from applied spec",
				**common,
			)
		if status.replicas != spec.replicas:
			return Action(
				type=ActionType.SCALE,
				from_generation=status.generation,
				reason=f"replicas {status.replicas} -> {spec.replicas}",
				**common,
			)
		return None
