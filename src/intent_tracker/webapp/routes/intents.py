"""Intent routes: browsing, corrections, merges and the activity recap."""

import logging
from flask import Blueprint, jsonify, request

from ...services.errors import PermanentTaskError, TaskError
from ...services.task_kinds import GenerateActivitySummary, MergeIntents

logger = logging.getLogger(__name__)


def _error_response(error: Exception):
    """Map an engine failure onto an HTTP error."""
    message = str(error)
    if isinstance(error, PermanentTaskError):
        code = 404 if "not found" in message.lower() else 400
    elif isinstance(error, TaskError):
        code = 503
    else:
        code = 400
    return jsonify({"error": message}), code


def _required(body, *keys):
    missing = [k for k in keys if not body.get(k)]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")


def init_intent_routes(api_key_required, engine, store, coordinator, scheduler):
    """Initialize intent routes.

    Args:
        api_key_required: Auth decorator
        engine: IntentEngine for merges, reassignments and splits
        store: Document store for reads
        coordinator: MergeCoordinator for scan status and manual scans
        scheduler: TaskScheduler whose execution lane serializes corrections
            with running task bodies
    """
    bp_intents = Blueprint('intents', __name__, url_prefix='/api/intents')

    @bp_intents.get("/")
    @api_key_required
    def api_list_intents():
        """
        List intents, most recently updated first.

        Query params:
            status: Comma-separated statuses (e.g. "active,emerging")
            limit: Max results (default 100)
        """
        statuses = [s.strip() for s in (request.args.get("status") or "").split(",") if s.strip()]
        limit = int(request.args.get("limit", 100))
        intents = store.list_intents(statuses=statuses or None, limit=limit)
        return jsonify({"intents": intents})

    @bp_intents.get("/<intent_id>")
    @api_key_required
    def api_get_intent(intent_id):
        intent = store.get_intent(intent_id)
        if not intent:
            return jsonify({"error": "Intent not found"}), 404
        intent["merge_chain"] = [i["id"] for i in engine.get_merge_chain(intent_id)]
        return jsonify(intent)

    @bp_intents.get("/<intent_id>/pages")
    @api_key_required
    def api_intent_pages(intent_id):
        if not store.get_intent(intent_id):
            return jsonify({"error": "Intent not found"}), 404
        pages = store.get_pages_by_intent(intent_id)
        for page in pages:
            page.pop("embedding", None)
        return jsonify({"pages": pages})

    @bp_intents.post("/merge")
    @api_key_required
    def api_merge_intents():
        body = request.get_json(silent=True) or {}
        try:
            _required(body, "source_id", "target_id")
            with scheduler.exclusive(oracle_priority=MergeIntents.PRIORITY):
                result = engine.merge_intents(body["source_id"], body["target_id"])
        except (TaskError, ValueError) as e:
            logger.warning(f"Manual merge failed: {e}")
            return _error_response(e)
        return jsonify(result)

    @bp_intents.post("/reassign")
    @api_key_required
    def api_reassign_page():
        body = request.get_json(silent=True) or {}
        try:
            _required(body, "page_id", "intent_id")
            with scheduler.exclusive():
                result = engine.reassign_page(body["page_id"], body["intent_id"])
        except (TaskError, ValueError) as e:
            return _error_response(e)
        return jsonify(result)

    @bp_intents.post("/create-from-page")
    @api_key_required
    def api_create_from_page():
        body = request.get_json(silent=True) or {}
        try:
            _required(body, "page_id")
            with scheduler.exclusive():
                result = engine.create_intent_from_page(body["page_id"])
        except (TaskError, ValueError) as e:
            return _error_response(e)
        return jsonify(result), 201

    @bp_intents.post("/check-inactive")
    @api_key_required
    def api_check_inactive():
        with scheduler.exclusive():
            result = engine.check_inactive_intents()
        return jsonify(result)

    @bp_intents.get("/nudges")
    @api_key_required
    def api_nudges():
        """
        Suggested reminders and merge hints for open intents.

        Query params:
            limit: Max nudges (default 3)
        """
        limit = int(request.args.get("limit", 3))
        return jsonify({"nudges": engine.suggest_nudges(limit=limit)})

    @bp_intents.get("/merge-status")
    @api_key_required
    def api_merge_status():
        return jsonify(coordinator.status())

    @bp_intents.post("/scan")
    @api_key_required
    def api_force_scan():
        """Schedule a merge scan that ignores the minimum scan interval."""
        coordinator.force_scan()
        return jsonify({"success": True, **coordinator.status()}), 202

    @bp_intents.get("/activity-summary")
    @api_key_required
    def api_activity_summary():
        summary = store.get_setting("activity_summary")
        if not summary:
            return jsonify({"error": "No activity summary yet"}), 404
        return jsonify(summary)

    @bp_intents.post("/activity-summary")
    @api_key_required
    def api_generate_activity_summary():
        with scheduler.exclusive(oracle_priority=GenerateActivitySummary.PRIORITY):
            summary = engine.generate_activity_summary()
        return jsonify(summary)

    return bp_intents
