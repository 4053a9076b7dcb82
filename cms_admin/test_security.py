"""
Security Tests

Tests for security features:
- Input sanitization
- Response headers
- Rate limit configuration
- Client IP resolution
"""

import unittest

from flask import Flask, Response

from cms_admin.security import (
    RATE_LIMITS, add_security_headers, get_client_ip, sanitize_string,
)


class TestInputSanitization(unittest.TestCase):
    """Test input sanitization functions."""

    def test_sanitize_string_removes_script(self):
        """Test that script blocks are removed entirely."""
        sanitized = sanitize_string('<script>alert("xss")</script>Team photo')
        self.assertEqual(sanitized, 'Team photo')

    def test_sanitize_string_removes_tags_and_handlers(self):
        """Test that markup and inline handlers are stripped."""
        sanitized = sanitize_string('<img src=x onerror=alert(1)>Harbour at dawn')
        self.assertNotIn('<', sanitized)
        self.assertNotIn('onerror=', sanitized)
        self.assertTrue(sanitized.endswith('Harbour at dawn'))

    def test_sanitize_string_preserves_safe_text(self):
        """Test that safe text is preserved."""
        safe = 'Engineers at O\'Connor & Co. - 2024'
        self.assertEqual(sanitize_string(safe), safe)

    def test_sanitize_string_handles_unicode(self):
        """Test handling of unicode characters."""
        unicode_text = 'Café façade, Müller'
        self.assertEqual(sanitize_string(unicode_text), unicode_text)

    def test_sanitize_string_trims_whitespace(self):
        self.assertEqual(sanitize_string('  hero.png  '), 'hero.png')

    def test_sanitize_string_empty_input(self):
        """Test handling of empty input."""
        self.assertEqual(sanitize_string(''), '')
        self.assertEqual(sanitize_string(None), '')

    def test_sanitize_string_max_length(self):
        self.assertEqual(len(sanitize_string('A' * 500, max_length=255)), 255)

    def test_sanitize_non_string(self):
        self.assertEqual(sanitize_string(42), '42')


class TestSecurityHeaders(unittest.TestCase):

    def test_headers_added(self):
        response = add_security_headers(Response('{}', mimetype='application/json'))
        self.assertEqual(response.headers['X-Content-Type-Options'], 'nosniff')
        self.assertEqual(response.headers['X-Frame-Options'], 'DENY')
        self.assertEqual(response.headers['Cache-Control'], 'no-store')
        self.assertIn("default-src 'none'", response.headers['Content-Security-Policy'])


class TestRateLimits(unittest.TestCase):

    def test_submit_is_strictest(self):
        self.assertEqual(RATE_LIMITS['submit'], '20 per hour')
        self.assertEqual(set(RATE_LIMITS), {'submit', 'draft', 'session', 'edit'})


class TestClientIp(unittest.TestCase):

    def setUp(self):
        self.app = Flask(__name__)

    def test_forwarded_for_first_hop(self):
        headers = {'X-Forwarded-For': '203.0.113.7, 10.0.0.1'}
        with self.app.test_request_context('/', headers=headers):
            self.assertEqual(get_client_ip(), '203.0.113.7')

    def test_real_ip(self):
        with self.app.test_request_context('/', headers={'X-Real-Ip': '198.51.100.2'}):
            self.assertEqual(get_client_ip(), '198.51.100.2')

    def test_remote_addr(self):
        with self.app.test_request_context('/', environ_base={'REMOTE_ADDR': '192.0.2.10'}):
            self.assertEqual(get_client_ip(), '192.0.2.10')


if __name__ == '__main__':
    unittest.main()
