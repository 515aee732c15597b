from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request

from recon.controller import Controller
from recon.errors import (
	Cancelled,
	ConflictError,
	HandshakeTimeout,
	ReconcileError,
	SpecValidationError,
	TokenAlreadyUsed,
	TokenError,
	TokenExpired,
	TopologyError,
	TransientInfraError,
)

logger = logging.getLogger(__name__)


def error_status(e: ReconcileError) -> int:
	"""HTTP status for a controller error."""
	if isinstance(e, TokenExpired):
		return 410
	if isinstance(e, (TokenAlreadyUsed, ConflictError, TopologyError)):
		return 409
	if isinstance(e, TokenError):
		return 403
	if isinstance(e, HandshakeTimeout):
		return 504
	if isinstance(e, (TransientInfraError, Cancelled)):
		return 503
	if isinstance(e, SpecValidationError):
		return 422
	return 500


def create_app(controller: Controller) -> Flask:
	app = Flask(__name__)
	# Store the controller in app config so gunicorn hooks can reach it
	app.config['recon_controller'] = controller

	@app.errorhandler(ReconcileError)
	def reconcile_error(e: ReconcileError) -> Tuple[Any, int]:
		status = error_status(e)
		if status >= 500:
			logger.error(f"{request.method} {request.path} failed: {e}")
		return jsonify({"error": str(e), "type": type(e).__name__}), status

	def _node_or_404(node_id: str):
		node = controller.topology.get(node_id)
		if node is None:
			return None, (jsonify({"error": f"unknown node: {node_id}"}), 404)
		return node, None

	@app.get("/healthz")
	def healthz() -> Any:
		return jsonify({"status": "ok"})

	@app.get("/status")
	def status() -> Any:
		return jsonify(controller.status())

	# -------- nodes --------

	@app.get("/nodes")
	def nodes() -> Any:
		return jsonify({"nodes": [n.to_dict() for n in controller.topology.list_nodes()]})

	@app.get("/nodes/<node_id>")
	def node(node_id: str) -> Any:
		found, missing = _node_or_404(node_id)
		if missing:
			return missing
		return jsonify(found.to_dict())

	@app.post("/nodes/<node_id>/join")
	def request_join(node_id: str) -> Any:
		_, missing = _node_or_404(node_id)
		if missing:
			return missing
		result = controller.join.request_join(node_id)
		return jsonify(result.to_dict()), 201

	@app.post("/nodes/<node_id>/complete")
	def complete_join(node_id: str) -> Any:
		_, missing = _node_or_404(node_id)
		if missing:
			return missing
		body: Dict[str, Any] = request.get_json(silent=True) or {}
		token = body.get("token")
		if not token:
			return jsonify({"error": "missing 'token' field"}), 400
		joined = controller.join.complete_join(node_id, token)
		return jsonify(joined.to_dict())

	@app.post("/nodes/<node_id>/decommission")
	def decommission(node_id: str) -> Any:
		_, missing = _node_or_404(node_id)
		if missing:
			return missing
		return jsonify(controller.topology.decommission(node_id).to_dict())

	@app.get("/events")
	def events() -> Any:
		limit = request.args.get("limit", default=100, type=int)
		return jsonify({"events": [e.to_dict() for e in controller.topology.recent_events(limit)]})

	# -------- workloads --------

	@app.get("/plan")
	def plan() -> Any:
		if request.args.get("fresh", "").lower() in ("1", "true", "yes"):
			return jsonify(controller.plan().to_dict())
		watcher = controller.watcher
		current = watcher.pending_plan or watcher.last_plan
		if current is None:
			return jsonify({"error": "no plan computed yet"}), 404
		data = current.to_dict()
		data["pending"] = watcher.pending_plan is not None
		return jsonify(data)

	@app.post("/plan/approve")
	def approve() -> Any:
		body: Dict[str, Any] = request.get_json(silent=True) or {}
		report = controller.watcher.approve(body.get("plan_id"))
		return jsonify(report.to_dict())

	@app.post("/sync")
	def sync() -> Any:
		body: Dict[str, Any] = request.get_json(silent=True) or {}
		dry_run = bool(body.get("dry_run", False))
		prune = body.get("prune")
		plan, report = controller.sync(dry_run=dry_run, prune=None if prune is None else bool(prune))
		return jsonify({
			"plan": plan.to_dict(),
			"report": report.to_dict() if report else None,
		})

	@app.post("/self-heal/pause")
	def pause_self_heal() -> Any:
		controller.watcher.pause_self_heal()
		return jsonify({"self_heal": False})

	@app.post("/self-heal/resume")
	def resume_self_heal() -> Any:
		controller.watcher.resume_self_heal()
		return jsonify({"self_heal": True})

	@app.get("/applied")
	def applied() -> Any:
		return jsonify({"workloads": controller.executor.snapshot().to_dict()})

	@app.get("/desired")
	def desired() -> Any:
		current = controller.store.current
		if current is None:
			return jsonify({"error": "desired state not loaded yet"}), 404
		return jsonify(current.to_dict())

	@app.get("/report")
	def report() -> Any:
		last = controller.watcher.last_report
		if last is None:
			return jsonify({"error": "nothing applied yet"}), 404
		return jsonify(last.to_dict())

	return app
