"""Task scheduler API routes: queue introspection, ETA and maintenance."""

import logging
from flask import Blueprint, jsonify, request

logger = logging.getLogger(__name__)


def init_task_routes(api_key_required, scheduler):
    """Initialize task scheduler routes.

    Args:
        api_key_required: Auth decorator
        scheduler: TaskScheduler instance
    """
    bp_tasks = Blueprint('tasks', __name__, url_prefix='/api/tasks')

    @bp_tasks.get("/")
    @api_key_required
    def api_list_tasks():
        """
        List tasks with optional filtering.

        Query params:
            status: Filter by status (queued, processing, completed, failed)
            task_type: Filter by task type
            limit: Max results (default 50)
        """
        status = request.args.get("status")
        task_type = request.args.get("task_type")
        limit = int(request.args.get("limit", 50))

        tasks = scheduler.list_tasks(status=status, task_type=task_type, limit=limit)
        return jsonify({"tasks": tasks})

    @bp_tasks.get("/queue")
    @api_key_required
    def api_queue():
        """Pending tasks in execution order with cumulative ETAs."""
        return jsonify({"tasks": scheduler.get_queue()})

    @bp_tasks.get("/status")
    @api_key_required
    def api_queue_status():
        return jsonify(scheduler.get_queue_status())

    @bp_tasks.get("/eta")
    @api_key_required
    def api_total_eta():
        return jsonify(scheduler.get_total_eta())

    @bp_tasks.get("/durations")
    @api_key_required
    def api_durations():
        """Average duration per task type and its sample count."""
        return jsonify({"durations": scheduler.stats.to_dict()})

    @bp_tasks.get("/<task_id>")
    @api_key_required
    def api_get_task(task_id):
        """Get a specific task by ID."""
        task = scheduler.get_task(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404
        return jsonify(task)

    @bp_tasks.post("/<task_id>/retry")
    @api_key_required
    def api_retry_task(task_id):
        result = scheduler.retry_task(task_id)
        if "error" in result:
            code = 404 if result["error"] == "Task not found" else 400
            return jsonify(result), code
        return jsonify(result)

    @bp_tasks.post("/clear-completed")
    @api_key_required
    def api_clear_completed():
        return jsonify(scheduler.clear_completed())

    return bp_tasks
