"""Page ingestion and lookup routes."""

import logging
from flask import Blueprint, jsonify, request

logger = logging.getLogger(__name__)


def _public(page):
    page = dict(page)
    page.pop("embedding", None)
    return page


def init_page_routes(api_key_required, engine, store):
    """Initialize page routes.

    Args:
        api_key_required: Auth decorator
        engine: IntentEngine that stores pages and queues their processing
        store: Document store for reads
    """
    bp_pages = Blueprint('pages', __name__, url_prefix='/api/pages')

    @bp_pages.post("/")
    @api_key_required
    def api_submit_page():
        """
        Store a captured page. Returns immediately; all analysis is queued.

        Body: url (required), title, content, timestamp, interactions, metadata
        """
        body = request.get_json(silent=True) or {}
        try:
            result = engine.submit_page(body)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(result), 201

    @bp_pages.get("/")
    @api_key_required
    def api_list_pages():
        limit = int(request.args.get("limit", 100))
        intent_id = request.args.get("intent_id")
        if intent_id:
            pages = store.get_pages_by_intent(intent_id)[:limit]
        else:
            pages = store.query_pages(limit=limit)
        return jsonify({"pages": [_public(p) for p in pages]})

    @bp_pages.get("/<page_id>")
    @api_key_required
    def api_get_page(page_id):
        page = store.get_page(page_id)
        if not page:
            return jsonify({"error": "Page not found"}), 404
        return jsonify(_public(page))

    return bp_pages
