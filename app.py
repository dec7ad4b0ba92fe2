"""
LTI 1.1 Tool Provider - OAuth 1.0a request authentication.
Main application entry point.
"""

import logging
import os
from flask import Flask, jsonify
from config import Config
from lti.errors import LTIError
from lti.nonce_store import create_nonce_store
from models.database import db  # Single shared SQLAlchemy instance


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config_class=Config, nonce_store=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(level=logging.DEBUG if app.debug else logging.INFO)

    # Initialise extensions (uses the db created in models/database.py)
    db.init_app(app)

    # One nonce ledger per application; tests may inject their own
    if nonce_store is None:
        nonce_store = create_nonce_store(app.config)
    app.extensions['lti_nonce_store'] = nonce_store

    # ------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------
    from routes.lti_routes import lti_bp

    app.register_blueprint(lti_bp)

    # ------------------------------------------------------------------
    # Every authentication failure maps to its own status code; nothing
    # falls through to a generic 500.
    # ------------------------------------------------------------------
    @app.errorhandler(LTIError)
    def _handle_lti_error(error):
        if error.status_code >= 500:
            app.logger.error(f'{error.kind}: {error.message}')
        else:
            app.logger.warning(f'LTI request rejected - {error.kind}: {error.message}')
        return jsonify(error=error.kind, message=error.message), error.status_code

    @app.route("/", methods=["GET"])
    def index():
        return (
            "<h3>LTI Tool</h3>"
            "<p>This application is an LTI tool. "
            "Please launch it from your LMS course.</p>"
        ), 200

    # ------------------------------------------------------------------
    # Create database tables (if they don't exist)
    # ------------------------------------------------------------------
    with app.app_context():
        # Import models so SQLAlchemy knows about them
        from models.database import NonceRecord, LTILaunch, OutcomeResult  # noqa: F401
        db.create_all()

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=True)
