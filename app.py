from __future__ import annotations

import os
import logging

from nodectl.api import create_app
from nodectl.config import load_config
from nodectl.reconciler import NodeReconciler

logger = logging.getLogger(__name__)


def build_reconciler() -> NodeReconciler:
	"""Build a reconciler from $NODECTL_CONFIG and NODECTL_* overrides."""
	config = load_config()
	if os.getenv("NODECTL_SIMULATE", "0") == "1":
		# Point at an in-process simulated controller instead of a real cluster.
		from nodectl.simulator import ControllerSimulator, seed_demo
		sim = ControllerSimulator(api_version=config.api_version, auth_token=config.auth_token)
		seed_demo(sim)
		config.controller_url = "http://controller"
		config.discover = True
		logger.info("Using simulated controller")
		return NodeReconciler(config, session=sim.session())
	return NodeReconciler(config)


def build_app():
	"""Build the Flask app. Polling is started by the caller (or gunicorn hook)."""
	logging.basicConfig(
		level=os.getenv("NODECTL_LOG_LEVEL", "INFO").upper(),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	reconciler = build_reconciler()
	logger.info(f"Reconciler targeting {reconciler.config.controller_url}, tracking {len(reconciler.tracked())} node(s)")
	return create_app(reconciler)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.config['reconciler'].start()
	app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
