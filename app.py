from __future__ import annotations

import os
import logging

from recon.api import create_app
from recon.config import load_config
from recon.controller import Controller
from recon.errors import ReconcileError

logger = logging.getLogger(__name__)


def seed_topology(controller: Controller) -> None:
    """Declare the configured nodes. Safe to call multiple times."""

    existing = {node.node_id for node in controller.topology.list_nodes()}
    declared = controller.populate_topology()
    added = [node.node_id for node in declared if node.node_id not in existing]
    if added:
        logger.info(f"Seeded topology with {len(added)} nodes: {', '.join(added)}")


def build_app():
	"""Build the Flask app around a controller built from configuration."""
	cfg = load_config()
	logging.basicConfig(
		level=getattr(logging, os.getenv("RECON_LOG_LEVEL", cfg.log_level).upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)

	controller = Controller.from_config(cfg)
	seed_topology(controller)

	try:
		controller.recover()
	except ReconcileError as e:
		logger.warning(f"Could not recover applied state at startup: {e}")

	if cfg.watcher.auto_start:
		controller.start()
	else:
		logger.info("Watcher auto-start disabled, waiting for operator sync")

	return create_app(controller)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=int(os.getenv("RECON_PORT", "8080")))
