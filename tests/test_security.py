"""Security tests.

Tests:
- Security headers are present on responses (including errors)
- HSTS only outside debug
- Errors are rendered as JSON, never HTML
"""


class TestSecurityHeaders:
    """Verify security headers are present on responses."""

    def test_x_content_type_options(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Content-Type-Options") == "nosniff"

    def test_x_frame_options(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Frame-Options") == "DENY"

    def test_referrer_policy(self, client):
        response = client.get("/health")
        assert response.headers.get("Referrer-Policy") == "no-referrer"

    def test_csp_header(self, client):
        csp = client.get("/health").headers.get("Content-Security-Policy")
        assert "default-src 'none'" in csp
        assert "frame-ancestors 'none'" in csp

    def test_no_store(self, client):
        assert client.get("/health").headers.get("Cache-Control") == "no-store"

    def test_headers_on_error_responses(self, client):
        response = client.get("/does-not-exist")
        assert response.status_code == 404
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("Cache-Control") == "no-store"

    def test_no_hsts_in_debug(self, client):
        """Testing config runs with DEBUG=True."""
        assert "Strict-Transport-Security" not in client.get("/health").headers

    def test_hsts_outside_debug(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "DEBUG", False)
        hsts = client.get("/health").headers.get("Strict-Transport-Security")
        assert hsts == "max-age=31536000; includeSubDomains"


class TestJsonErrors:

    def test_404_is_json(self, client):
        response = client.get("/does-not-exist")
        body = response.get_json()
        assert body["status"] == "error"
        assert body["error"] == "not_found"

    def test_405_is_json(self, client):
        response = client.get("/webhooks/tasks")
        assert response.status_code == 405
        assert response.get_json()["error"] == "method_not_allowed"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json()["data"]["service"] == "codledger"
