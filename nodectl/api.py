from __future__ import annotations

import logging
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict

from flask import Flask, jsonify, request

from nodectl import gate
from nodectl.errors import (
	AuthFailure,
	NetworkFailure,
	NotFound,
	PreconditionFailed,
	ReconcilerError,
	ServerRejected,
)
from nodectl.reconciler import NodeReconciler

logger = logging.getLogger(__name__)

_STATUS_FOR_ERROR = (
	(NotFound, 404),
	(PreconditionFailed, 409),
	(ServerRejected, 422),
	(AuthFailure, 502),
	(NetworkFailure, 504),
)


def _error_response(error: ReconcilerError):
	status = 500
	for cls, code in _STATUS_FOR_ERROR:
		if isinstance(error, cls):
			status = code
			break
	return jsonify({"error": error.to_dict()}), status


def create_app(reconciler: NodeReconciler) -> Flask:
	app = Flask(__name__)
	# Keep the reconciler reachable from gunicorn hooks
	app.config['reconciler'] = reconciler

	@app.errorhandler(ReconcilerError)
	def handle_reconciler_error(error: ReconcilerError) -> Any:
		return _error_response(error)

	@app.errorhandler(FutureTimeout)
	def handle_timeout(error: Exception) -> Any:
		return _error_response(NetworkFailure("Timed out waiting for the node's queued work"))

	@app.get("/healthz")
	def healthz() -> Any:
		rec = app.config['reconciler']
		return jsonify({
			"status": "ok",
			"polling": rec.poll_loop.running,
			"tracked": len(rec.tracked()),
		})

	@app.get("/nodes")
	def list_nodes() -> Any:
		rec = app.config['reconciler']
		return jsonify({"nodes": [view.to_dict() for view in rec.views()]})

	@app.post("/nodes")
	def track_node() -> Any:
		rec = app.config['reconciler']
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		name = body.get("name")
		if not name:
			return jsonify({"error": "missing 'name' field"}), 400
		added = rec.track(name)
		rec.refresh(name)
		return jsonify({"name": name, "tracked": True, "added": added}), 201 if added else 200

	@app.get("/nodes/<name>")
	def get_node(name: str) -> Any:
		rec = app.config['reconciler']
		return jsonify(rec.view(name).to_dict())

	@app.delete("/nodes/<name>")
	def untrack_node(name: str) -> Any:
		rec = app.config['reconciler']
		if not rec.untrack(name):
			return jsonify({"error": f"node '{name}' is not tracked"}), 404
		return jsonify({"name": name, "tracked": False})

	@app.post("/nodes/<name>/refresh")
	def refresh_node(name: str) -> Any:
		rec = app.config['reconciler']
		future = rec.refresh(name)
		try:
			future.result(timeout=_wait_s(rec))
		except ReconcilerError as e:
			if isinstance(e, NotFound):
				return _error_response(e)
			# Stale data is still data: report it alongside the last snapshot.
			logger.warning(f"Refresh of {name} failed: {e}")
			return jsonify({"error": e.to_dict(), "view": rec.view(name).to_dict()}), 200
		return jsonify(rec.view(name).to_dict())

	@app.get("/nodes/<name>/actions")
	def list_actions(name: str) -> Any:
		rec = app.config['reconciler']
		view = rec.view(name)
		return jsonify({
			"name": name,
			"actions": [
				{
					"name": command.name,
					"label": command.label,
					"enabled": command.name in view.enabled_commands,
					"requires_confirmation": command.requires_confirmation,
				}
				for command in rec.dispatcher.commands.values()
			],
		})

	@app.post("/nodes/<name>/actions/<command>")
	def run_action(name: str, command: str) -> Any:
		rec = app.config['reconciler']
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		cmd = gate.COMMANDS.get(command)
		if cmd is not None and cmd.requires_confirmation and not body.get("confirm"):
			return jsonify({"error": f"'{command}' requires \"confirm\": true"}), 400
		future = rec.execute(name, command)
		future.result(timeout=_wait_s(rec))
		view = rec.view(name)
		return jsonify({"name": name, "command": command, "status": "accepted", "view": view.to_dict()})

	return app


def _wait_s(rec: NodeReconciler) -> float:
	# Three fetches plus retries, with headroom for queued work.
	return rec.config.request_timeout_s * (rec.config.get_retries + 1) * 3
