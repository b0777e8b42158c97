from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config['STRIPE_SECRET_KEY'] = os.getenv('STRIPE_SECRET_KEY', '')
    app.config['STRIPE_API_VERSION'] = os.getenv('STRIPE_API_VERSION', '')
    app.config['STRIPE_WEBHOOK_SECRET'] = os.getenv('STRIPE_WEBHOOK_SECRET', '')
    app.config['PAYMENT_CURRENCY'] = os.getenv('PAYMENT_CURRENCY', 'usd')
    app.config['PLATFORM_FEE_PERCENT'] = float(os.getenv('PLATFORM_FEE_PERCENT', '0.02'))
    app.config['MIN_CHARGE_CENTS'] = int(os.getenv('MIN_CHARGE_CENTS', '50'))
    app.config['PAYMENT_RETRY_ATTEMPTS'] = int(os.getenv('PAYMENT_RETRY_ATTEMPTS', '3'))
    app.config['PAYMENT_RETRY_WAIT'] = float(os.getenv('PAYMENT_RETRY_WAIT', '1.0'))
    app.config['PAYMENT_CLIENT'] = None
    app.config['NOTIFICATION_SINK'] = None

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    from .services.payments import PaymentOrchestrator
    app.extensions['payments'] = PaymentOrchestrator.from_config(app.config)

    from .routes.transactions import txn_bp
    app.register_blueprint(txn_bp, url_prefix='/transactions')
    from .routes.webhooks import webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix='/webhooks')

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            payload = {
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                }
            }
            kind = getattr(e, 'kind', None)
            if kind:
                payload['error']['code'] = kind
            return payload, e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500

    from .openapi import build_openapi_spec

    @app.route('/openapi.json')
    def openapi_spec():
        return build_openapi_spec()

    return app


def get_db():
    return SessionLocal()
