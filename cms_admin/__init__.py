"""
CMS Admin Editor

Editing engine and JSON API behind the content admin: blog posts,
industries, projects, services and tags.

Enhanced with:
- CSRF protection
- Rate limiting
- Security headers
- Draft autosave
- Audit logging
"""

import os
from datetime import datetime
from flask import Flask, request, g
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()


def create_app(test_config=None):
    """Application factory pattern."""
    app = Flask(__name__, instance_relative_config=True)

    # Default configuration
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production'),
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', 'sqlite:///cms_admin.db'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,

        # CSRF settings
        WTF_CSRF_ENABLED=True,
        WTF_CSRF_TIME_LIMIT=3600,  # 1 hour
        WTF_CSRF_SSL_STRICT=False,  # Disabled for development

        # Rate limiting settings
        RATELIMIT_STORAGE_URI=os.environ.get('REDIS_URL', 'memory://'),
        RATELIMIT_STRATEGY='fixed-window',
        RATELIMIT_HEADERS_ENABLED=True,

        # CMS API
        CMS_API_BASE_URL=os.environ.get('CMS_API_BASE_URL', 'http://localhost:8000'),
        CMS_API_TOKEN=os.environ.get('CMS_API_TOKEN', ''),
        CMS_API_TIMEOUT=float(os.environ.get('CMS_API_TIMEOUT', 30)),
        CMS_SUBMITTER=None,

        # Drafts
        DRAFT_BACKEND=os.environ.get('DRAFT_BACKEND', 'database'),
        DRAFT_AUTOSAVE_SECONDS=float(os.environ.get('DRAFT_AUTOSAVE_SECONDS', 30)),
        DRAFT_DEBOUNCE_SECONDS=float(os.environ.get('DRAFT_DEBOUNCE_SECONDS', 2)),

        # Open editor sessions untouched this long are closed
        EDITOR_SESSION_IDLE_SECONDS=float(os.environ.get('EDITOR_SESSION_IDLE_SECONDS', 3600)),
    )

    if test_config is None:
        # Load instance config if it exists
        app.config.from_pyfile('config.py', silent=True)
    else:
        # Load test config
        app.config.from_mapping(test_config)

    # Ensure instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    db.init_app(app)

    # Import and initialize security (after db init to avoid circular imports)
    from cms_admin.security import add_security_headers, init_security
    init_security(app)

    from cms_admin.routes import editor_bp, init_editor
    init_editor(app)
    app.register_blueprint(editor_bp)

    @app.after_request
    def after_request(response):
        """Add security headers to all responses."""
        return add_security_headers(response)

    @app.before_request
    def before_request():
        g.request_start_time = datetime.utcnow()

    @app.after_request
    def log_request(response):
        """Log request completion."""
        if hasattr(g, 'request_start_time'):
            duration = (datetime.utcnow() - g.request_start_time).total_seconds()
            app.logger.info(
                f'{request.method} {request.path} - {response.status_code} - {duration:.3f}s'
            )
        return response

    # Create database tables
    with app.app_context():
        from cms_admin import models  # noqa: F401
        db.create_all()

    @app.errorhandler(500)
    def internal_error(error):
        """Handle internal errors."""
        db.session.rollback()
        app.logger.error(f'Internal error: {str(error)}')
        return {'ok': False, 'errors': [{'field': '', 'message': 'Internal server error', 'code': 'internal_error'}]}, 500

    return app
