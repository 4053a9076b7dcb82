"""
Security hardening module.

Provides CSRF protection, rate limiting, input sanitization and response
headers for the editor API.
"""

import re
from datetime import timedelta

from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect


# Initialize extensions at module level
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["2000 per day", "500 per hour"]
)


# Security configuration defaults
DEFAULT_CONFIG = {
    'SESSION_COOKIE_SECURE': True,
    'SESSION_COOKIE_HTTPONLY': True,
    'SESSION_COOKIE_SAMESITE': 'Lax',
    'PERMANENT_SESSION_LIFETIME': timedelta(hours=8),
    'WTF_CSRF_TIME_LIMIT': 3600,  # 1 hour
    'WTF_CSRF_SSL_STRICT': True,
}


def add_security_headers(response):
    """
    Add security headers to response.
    This is a standalone function that can be used as an after_request handler.
    """
    response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"

    # Prevent MIME type sniffing
    response.headers['X-Content-Type-Options'] = 'nosniff'

    # Prevent clickjacking
    response.headers['X-Frame-Options'] = 'DENY'

    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

    # Session state must never be cached
    response.headers['Cache-Control'] = 'no-store'

    return response


def init_security(app):
    """Initialize security extensions with the app."""
    for key, value in DEFAULT_CONFIG.items():
        if key not in app.config:
            app.config[key] = value

    csrf.init_app(app)
    limiter.init_app(app)


# Rate limit configurations
RATE_LIMITS = {
    'submit': "20 per hour",
    'draft': "120 per hour",
    'session': "60 per hour",
    'edit': "1200 per hour",
}


def rate_limit_submit():
    """Decorator for submit endpoint rate limiting."""
    return limiter.limit(RATE_LIMITS['submit'])


def rate_limit_draft():
    """Decorator for draft write rate limiting."""
    return limiter.limit(RATE_LIMITS['draft'])


def rate_limit_session():
    """Decorator for opening editor sessions."""
    return limiter.limit(RATE_LIMITS['session'])


def rate_limit_edit():
    """Decorator for field and structure edits."""
    return limiter.limit(RATE_LIMITS['edit'])


# Input sanitization
HTML_TAG_PATTERN = re.compile(r'<[^>]+>')
SCRIPT_PATTERN = re.compile(r'<script[^>]*>.*?</script>', re.DOTALL | re.IGNORECASE)
EVENT_HANDLER_PATTERN = re.compile(r'on\w+\s*=', re.IGNORECASE)


def sanitize_string(value: str, max_length: int = 10000) -> str:
    """
    Sanitize a plain-text value (alt text, file names) for storage and display.

    Args:
        value: Input string
        max_length: Maximum allowed length

    Returns:
        Sanitized string
    """
    if value is None:
        return ''

    if not isinstance(value, str):
        value = str(value)

    value = SCRIPT_PATTERN.sub('', value)
    value = EVENT_HANDLER_PATTERN.sub('', value)
    value = HTML_TAG_PATTERN.sub('', value)
    value = value[:max_length]
    return value.strip()


def get_client_ip() -> str:
    """Get the client IP address, handling proxies."""
    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        # Get first IP in chain
        return forwarded_for.split(',')[0].strip()

    real_ip = request.headers.get('X-Real-Ip')
    if real_ip:
        return real_ip

    return request.remote_addr or 'unknown'
