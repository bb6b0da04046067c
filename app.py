"""
Milestone Multisig Payout Service application entry point.

Sets up the Flask app, configuration, CORS, database, the approval lock
registry and chain collaborators, and registers the blueprints.
"""

import atexit
import os
import logging
from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS
from config import get_config
from db.database import init_db
from db.session_manager import init_approval_locks
from routes.approval_routes import approval_bp
from routes.committee_routes import committee_bp
from services.approval_service import ApprovalService
from services.committee_service import CommitteeService
from services.discovery_service import StructureDiscoverer, SubstrateChainReader
from utils.error_handling import register_error_handlers
from utils.security_utils import add_security_headers


# Load environment variables from .env file
load_dotenv()


def _init_cors(app):
    allowed_origins = app.config.get('CORS_ORIGINS', '*')
    origins = '*' if allowed_origins == '*' else [origin.strip() for origin in allowed_origins.split(',')]
    CORS(app, resources={
        r"/*": {
            "origins": origins,
            "methods": ["GET", "POST", "PUT", "OPTIONS"],
            "allow_headers": ["Content-Type"],
        }
    })


def create_app(config_class=None, payout_executor=None, chain_reader=None):
    """
    Build the Flask application.

    Args:
        config_class: Configuration class; defaults to the one selected by FLASK_ENV
        payout_executor: ``PayoutExecutor`` used by execute. Signing keys are held
            outside this service, so there is no default executor.
        chain_reader: ``ChainReader`` for discovery; built from CHAIN_RPC_URL when omitted
    """
    app = Flask(__name__)
    config_class = config_class or get_config()
    app.config.from_object(config_class)

    logging.basicConfig(
        level=getattr(logging, app.config.get('LOG_LEVEL', 'INFO'), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    _init_cors(app)

    # Initialize database and the per-approval lock registry
    init_db(app)
    locks = init_approval_locks(app)

    register_error_handlers(app)

    if chain_reader is None and app.config.get('CHAIN_RPC_URL'):
        chain_reader = SubstrateChainReader(app.config['CHAIN_RPC_URL'], ss58_format=app.config['SS58_PREFIX'])
        atexit.register(chain_reader.close)

    discoverer = None
    if chain_reader is not None:
        discoverer = StructureDiscoverer(
            chain_reader,
            prefix=app.config['SS58_PREFIX'],
            cache_ttl=app.config['DISCOVERY_CACHE_TTL']
        )

    app.extensions['chain_reader'] = chain_reader
    app.extensions['structure_discoverer'] = discoverer
    app.extensions['committee_service'] = CommitteeService(discoverer)
    app.extensions['approval_service'] = ApprovalService(
        payout_executor=payout_executor,
        execution_timeout=app.config['EXECUTION_TIMEOUT_SECONDS'],
        expiry_hours=app.config['APPROVAL_EXPIRY_HOURS'],
        locks=locks
    )

    # Register blueprints
    app.register_blueprint(approval_bp)
    app.register_blueprint(committee_bp)

    @app.route("/health")
    def health():
        return jsonify({
            'status': 'ok',
            'chain': app.config.get('CHAIN_NETWORK'),
            'discovery': discoverer is not None,
            'execution': payout_executor is not None,
        })

    # Add security headers to all responses
    if app.config.get('SECURITY_HEADERS_ENABLED', True):
        @app.after_request
        def after_request(response):
            return add_security_headers(response)

    logging.info(
        "Multisig payout service starting (env: %s)",
        os.environ.get("FLASK_ENV", "development")
    )
    return app


def close_app(app):
    """Release the resources owned by ``app`` (lock registry, chain connection)."""
    locks = app.extensions.get('approval_locks')
    if locks is not None:
        locks.close()
    chain_reader = app.extensions.get('chain_reader')
    if chain_reader is not None:
        chain_reader.close()


app = create_app()


# This block allows the app to be run directly for development purposes
if __name__ == "__main__":
    app.run(host=app.config['HOST'], port=app.config['PORT'])
