"""Event stream routes."""

import logging
from flask import Blueprint, Response, jsonify, request

from ..services.event_system import clear_events, event_stream, get_events

logger = logging.getLogger(__name__)


def init_event_routes(api_key_required):
    bp_events = Blueprint('events', __name__, url_prefix='/api/events')

    @bp_events.get("/")
    @api_key_required
    def api_recent_events():
        step = request.args.get("step")
        limit = int(request.args.get("limit", 200))
        return jsonify({"events": get_events(step=step, limit=limit)})

    @bp_events.get("/stream")
    @api_key_required
    def api_event_stream():
        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        return Response(event_stream(), mimetype="text/event-stream", headers=headers)

    @bp_events.post("/clear")
    @api_key_required
    def api_clear_events():
        clear_events()
        return jsonify({"success": True})

    return bp_events
