"""Web surface: Flask app factory, API blueprints and the event stream."""
