from flask import Flask, jsonify, request
from flask_cors import CORS
from functools import wraps
import logging

from ..context import AppContext
from .routes.events import init_event_routes
from .routes.intents import init_intent_routes
from .routes.pages import init_page_routes
from .routes.tasks import init_task_routes
from .services.event_system import init_event_logging

logger = logging.getLogger(__name__)


def create_app(context: AppContext = None) -> Flask:
    """
    Build the Flask app around an application context.

    Args:
        context: Wired components; built from the environment when omitted

    Returns:
        Configured Flask app (the context is in ``app.extensions["intent_tracker"]``)
    """
    ctx = context or AppContext()
    settings = ctx.settings

    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": settings.cors_origins or ["*"]}})
    app.extensions["intent_tracker"] = ctx

    init_event_logging()

    # --- Auth helper ---
    def api_key_required(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            # If no key configured, allow open access (for local dev)
            if not settings.api_key:
                return fn(*args, **kwargs)
            key = request.headers.get("X-API-Key") or request.args.get("api_key")
            if key != settings.api_key:
                return jsonify({"error": "unauthorized"}), 401
            return fn(*args, **kwargs)

        return wrapper

    app.register_blueprint(init_page_routes(api_key_required, ctx.engine, ctx.store))
    app.register_blueprint(init_intent_routes(api_key_required, ctx.engine, ctx.store, ctx.coordinator, ctx.scheduler))
    app.register_blueprint(init_task_routes(api_key_required, ctx.scheduler))
    app.register_blueprint(init_event_routes(api_key_required))

    @app.get("/api/health")
    def api_health():
        return jsonify({
            "status": "ok",
            "oracle_enabled": settings.oracle_enabled,
            "model": settings.ollama_model,
        })

    return app


def main():
    ctx = AppContext()
    app = create_app(ctx)
    ctx.start()
    logger.info(f"Starting intent tracker API with DB: {ctx.settings.db_url}")
    try:
        app.run(host="0.0.0.0", port=8080, debug=ctx.settings.debug, use_reloader=False)
    finally:
        ctx.stop()


if __name__ == "__main__":
    main()
