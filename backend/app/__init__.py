from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
from datetime import timedelta
import logging
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    from .config.audit import load_audit_settings

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['JWT_ALGORITHM'] = os.getenv('JWT_ALGORITHM', 'HS256')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=int(os.getenv('JWT_ACCESS_TOKEN_MINUTES', '60')))
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')
    app.config.update(load_audit_settings())

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    app.logger.setLevel(app.config['LOG_LEVEL'])
    logging.getLogger('app.audit').setLevel(app.config['LOG_LEVEL'])

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

    # Token failures use the same error shape (and 401) as every other error
    @jwt.unauthorized_loader
    def missing_token(reason):
        return _error_body(401, 'Unauthorized', 'Missing bearer token'), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return _error_body(401, 'Unauthorized', 'Invalid token'), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _error_body(401, 'Unauthorized', 'Token expired'), 401

    # One session per request; a fresh session means entities are reloaded (and re-cached for audit) each request
    @app.teardown_request
    def remove_session(exc):
        SessionLocal.remove()

    init_audit(app, db_engine, SessionLocal.session_factory)

    from .routes.iam import iam_bp
    from .routes.inventory import inv_bp
    from .routes.sales import sales_bp
    from .routes.customers import cust_bp
    from .routes.audit import audit_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')
    app.register_blueprint(inv_bp, url_prefix='/inventory')
    app.register_blueprint(sales_bp, url_prefix='/sales')
    app.register_blueprint(cust_bp, url_prefix='/customers')
    app.register_blueprint(audit_bp, url_prefix='/audit')

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            return _error_body(e.code, e.name, e.description), e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return _error_body(500, 'Internal Server Error', 'Unexpected error'), 500

    return app


def init_audit(app: Flask, engine, session_factory):
    """Wire the change-capture listener and correlation interceptor into app.

    The listener hooks the application's own sessionmaker; audit rows are
    written through a separate sessionmaker when running in independent mode.
    """
    from .audit.correlation import correlation
    from .audit.interceptor import init_correlation
    from .audit.listener import AuditEntityListener
    from .audit.metadata import RequestMetadataResolver
    from .audit.state_cache import OriginalStateCache
    from .audit.writer import AuditLogWriter

    init_correlation(app, correlation, app.config['AUDIT_CORRELATION_EXCLUDE_PREFIXES'])
    if not app.config['AUDIT_ENABLED']:
        app.logger.info('Audit trail disabled')
        return None
    independent = app.config['AUDIT_INDEPENDENT_TRANSACTION']
    if independent and engine.dialect.name == 'sqlite':
        # in-memory shares one connection, file databases allow a single writer
        app.logger.info('SQLite backend: audit records share the business transaction')
        independent = False
    writer = AuditLogWriter(sessionmaker(bind=engine, expire_on_commit=False), independent=independent)
    cache = OriginalStateCache(
        ttl_seconds=app.config['AUDIT_STATE_CACHE_TTL_SECONDS'],
        max_entries=app.config['AUDIT_STATE_CACHE_MAX_ENTRIES'],
    )
    listener = AuditEntityListener(writer, RequestMetadataResolver(), cache, correlation)
    listener.attach(session_factory)
    app.extensions['audit'] = listener
    return listener


def _error_body(status: int, title: str, detail: str) -> Dict[str, Any]:
    return {'error': {'status': status, 'title': title, 'detail': detail}}


def get_db():
    return SessionLocal()
