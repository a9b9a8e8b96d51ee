#!/usr/bin/env python3
"""
Task Board Server
-----------------
Serves the board as a JSON API and hosts the inbound webhooks. All state
lives in the TaskboardRuntime; request handlers only dispatch intents to it.

Usage:
    taskboard-server --config taskboard.yaml
    taskboard-server --host 0.0.0.0 --port 3000 --db /var/lib/taskboard/board.db

API:
    GET    /api/board                 → { columns, activity, sync_state, saving, save_error, connection_error, stats }
    POST   /api/tasks                 → create  { title, status?, description?, priority?, tags?, link? }
    PUT    /api/tasks/<id>            → edit fields
    DELETE /api/tasks/<id>
    POST   /api/tasks/<id>/move       → { status, index? }
    DELETE /api/activity              → clear the activity log
    POST   /api/refresh               → re-read the board (visibility regained)
    POST   /api/reload                → retry after a connection error
    POST   /api/errors/dismiss        → dismiss the save error banner
    GET|POST /api/webhooks/github
    GET|POST /api/webhooks/deployments
    GET    /health
"""
import argparse
import hmac
import logging
import sys
from functools import wraps

from flask import Flask, jsonify, request

from .app import TaskboardRuntime
from .config import Config
from .errors import ConfigError
from .schema import format_timestamp, parse_tags
from .webhooks import (
    DEPLOY_SIGNATURE_HEADER,
    GITHUB_SIGNATURE_HEADER,
    DeploymentWebhook,
    GitHubWebhook,
)

logger = logging.getLogger(__name__)


def create_app(runtime: TaskboardRuntime) -> Flask:
    app = Flask(__name__)
    config = runtime.config

    github = GitHubWebhook(config.github_webhook_secret, runtime.record_activity)
    deployments = DeploymentWebhook(
        config.deploy_webhook_secret, runtime.record_activity, runtime.send_alert
    )

    if not config.api_secret:
        logger.warning("API secret not set; mutating endpoints are open")

    # ── Auth ─────────────────────────────────────────────────────────────────

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if config.api_secret:
                provided = request.headers.get("X-API-Key", "").strip()
                if not hmac.compare_digest(provided, config.api_secret):
                    code = 401 if not provided else 403
                    return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    def dispatch(fn, *args, **kwargs):
        """Run a board intent on the loop thread, mapping errors to statuses."""
        try:
            return runtime.call(fn, *args, **kwargs), None
        except KeyError as e:
            return None, (jsonify({"error": str(e).strip("'\"")}), 404)
        except ValueError as e:
            return None, (jsonify({"error": str(e)}), 400)

    def json_object():
        """Request body as a dict, or None when it is not a JSON object."""
        data = request.get_json(force=True, silent=True)
        if data is None:
            return {}
        return data if isinstance(data, dict) else None

    def board_payload() -> dict:
        cache = runtime.cache
        columns = runtime.board.columns()
        activity = []
        for item in cache.activity():
            entry = item.to_dict()
            entry["when"] = format_timestamp(item.timestamp)
            activity.append(entry)
        return {
            "columns": [c.to_dict() for c in columns],
            "activity": activity,
            "sync_state": cache.sync_state.value,
            "saving": cache.saving,
            "save_error": cache.save_error.to_dict() if cache.save_error else None,
            "connection_error": cache.connection_error.to_dict() if cache.connection_error else None,
            "stats": {"total": sum(len(c.tasks) for c in columns), **{c.id: len(c.tasks) for c in columns}},
        }

    # ── Board ────────────────────────────────────────────────────────────────

    @app.route("/api/board")
    def api_board():
        return jsonify(runtime.call(board_payload))

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def api_create_task():
        data = json_object()
        if data is None:
            return jsonify({"error": "Request body must be a JSON object"}), 400
        tags = data.get("tags")
        if isinstance(tags, str):
            tags = parse_tags(tags)
        task, error = dispatch(
            runtime.board.create_task,
            data.get("title", ""),
            status=data.get("status", "backlog"),
            description=data.get("description"),
            priority=data.get("priority", "medium"),
            tags=tags,
            link=data.get("link"),
        )
        if error:
            return error
        return jsonify({"task": task.to_dict(), "id": task.id}), 201

    @app.route("/api/tasks/<task_id>", methods=["PUT"])
    @require_api_key
    def api_update_task(task_id):
        data = json_object()
        if data is None:
            return jsonify({"error": "Request body must be a JSON object"}), 400
        if isinstance(data.get("tags"), str):
            data["tags"] = parse_tags(data["tags"])
        task, error = dispatch(runtime.board.update_task, task_id, **data)
        if error:
            return error
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_task(task_id):
        task, error = dispatch(runtime.board.delete_task, task_id)
        if error:
            return error
        return jsonify({"deleted": task.id})

    @app.route("/api/tasks/<task_id>/move", methods=["POST"])
    @require_api_key
    def api_move_task(task_id):
        data = json_object()
        if data is None:
            return jsonify({"error": "Request body must be a JSON object"}), 400
        status = data.get("status")
        if not isinstance(status, str) or not status.strip():
            return jsonify({"error": "status is required"}), 400
        index = data.get("index")
        if index is not None and not isinstance(index, int):
            return jsonify({"error": "index must be an integer"}), 400
        task, error = dispatch(runtime.board.move_task, task_id, status.strip().lower(), index)
        if error:
            return error
        return jsonify({"task": task.to_dict()})

    @app.route("/api/activity", methods=["DELETE"])
    @require_api_key
    def api_clear_activity():
        runtime.call(runtime.recorder.clear)
        return jsonify({"cleared": True})

    @app.route("/api/refresh", methods=["POST"])
    def api_refresh():
        changed = runtime.run(runtime.cache.refresh())
        return jsonify({"changed": changed})

    @app.route("/api/reload", methods=["POST"])
    def api_reload():
        ok = runtime.run(runtime.cache.reload())
        return jsonify({"connected": ok}), 200 if ok else 503

    @app.route("/api/errors/dismiss", methods=["POST"])
    def api_dismiss_error():
        runtime.call(runtime.cache.dismiss_error)
        return jsonify({"dismissed": True})

    # ── Webhooks ─────────────────────────────────────────────────────────────

    @app.route("/api/webhooks/github", methods=["GET"])
    def github_descriptor():
        return jsonify(github.descriptor())

    @app.route("/api/webhooks/github", methods=["POST"])
    def github_webhook():
        body, status = github.handle(request.get_data(), request.headers.get(GITHUB_SIGNATURE_HEADER))
        return jsonify(body), status

    @app.route("/api/webhooks/deployments", methods=["GET"])
    def deployments_descriptor():
        return jsonify(deployments.descriptor())

    @app.route("/api/webhooks/deployments", methods=["POST"])
    def deployments_webhook():
        body, status = deployments.handle(request.get_data(), request.headers.get(DEPLOY_SIGNATURE_HEADER))
        return jsonify(body), status

    @app.route("/health")
    def health():
        cache = runtime.cache
        return jsonify({
            "status": "ok" if cache.connection_error is None else "degraded",
            "backend": config.backend,
            "sync_state": cache.sync_state.value,
        })

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--config", help="Path to taskboard.yaml")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--db", help="Path to board.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--backend", choices=["sqlite", "local"], help="Store backend")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        config = Config.load(args.config)
        if args.db:
            config.db_path = args.db
        if args.backend:
            config.backend = args.backend
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    runtime = TaskboardRuntime(config)
    if not runtime.start():
        logger.error("Board store unreachable; serving in connection-error state (POST /api/reload to retry)")

    logger.info(f"Task board on http://{args.host}:{args.port} (backend={config.backend})")
    try:
        create_app(runtime).run(host=args.host, port=args.port, debug=False, threaded=True)
    finally:
        runtime.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
