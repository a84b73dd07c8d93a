"""Resonance Loop Web API

Flask application exposing candidate selection, feedback submission and
harmonization cycles. Business logic lives in the services package.
"""

import os
import sys
import atexit
import signal
import logging
from flask import Flask, jsonify
from flask_cors import CORS

from resonance_loop.errors import ResonanceError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def cleanup_resources():
    """Release the embedding model so worker shutdown does not leak it."""
    try:
        from resonance_loop.embedders.sentence_transformer_embedder import cleanup_model
        cleanup_model()
        logger.info("Resource cleanup completed")
    except Exception as e:
        logger.warning(f"Error during resource cleanup: {e}")


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    cleanup_resources()
    sys.exit(0)


def create_app(service=None) -> Flask:
    """Build the Flask app.

    Args:
        service: Optional ResonanceService; a default one backed by ROE_DB_URL is built otherwise
    """
    from resonance_loop.routes.selection import selection_bp
    from resonance_loop.routes.feedback import feedback_bp
    from resonance_loop.routes.harmonization import harmonization_bp
    from resonance_loop.routes.system import system_bp

    if service is None:
        from resonance_loop.services.resonance_service import ResonanceService
        service = ResonanceService()

    app = Flask(__name__)
    CORS(app)
    app.config['RESONANCE_SERVICE'] = service

    app.register_blueprint(selection_bp)
    app.register_blueprint(feedback_bp)
    app.register_blueprint(harmonization_bp)
    app.register_blueprint(system_bp)

    @app.errorhandler(ResonanceError)
    def handle_resonance_error(e):
        if e.status_code >= 500:
            logger.error(f"{type(e).__name__}: {e}")
        else:
            logger.info(f"{type(e).__name__}: {e}")
        return jsonify({'error': str(e), 'type': type(e).__name__}), e.status_code

    return app


def main():
    """Run the Flask development server."""
    atexit.register(cleanup_resources)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    app = create_app()
    port = int(os.environ.get('ROE_PORT', 5000))
    logger.info(f"Current configuration: {app.config['RESONANCE_SERVICE'].state.config}")
    print(f"Resonance loop ready at: http://localhost:{port}")
    app.run(debug=False, host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
