import requests

import health_monitor


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload or {}

    def json(self):
        return self._payload


def test_backend_api_ok(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get", lambda url, timeout: FakeResponse(200))

    ok, message = health_monitor.check_backend_api()

    assert ok is True
    assert message.endswith("OK (200)")


def test_backend_api_failure_and_error(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get", lambda url, timeout: FakeResponse(502))
    assert health_monitor.check_backend_api() == (False, "backend-api /health: FAIL (502)")

    def refuse(url, timeout):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(health_monitor.requests, "get", refuse)
    ok, message = health_monitor.check_backend_api()
    assert ok is False
    assert "ERROR" in message


def test_cache_check_reads_redis_status(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get",
                        lambda url, timeout: FakeResponse(200, {"status": "available"}))
    assert health_monitor.check_cache_via_api() == (True, "backend-api cache: available")

    monkeypatch.setattr(health_monitor.requests, "get",
                        lambda url, timeout: FakeResponse(200, {"status": "unavailable"}))
    assert health_monitor.check_cache_via_api()[0] is False


def test_local_database_and_disabled_redis_are_skipped():
    # tests run on sqlite with redis turned off
    assert health_monitor.check_database()[0] is True
    assert "SKIPPED" in health_monitor.check_redis()[1]


def test_monitor_all_services_collects_results(monkeypatch):
    monkeypatch.setattr(health_monitor.requests, "get", lambda url, timeout: FakeResponse(200, {"status": "available"}))

    results = health_monitor.monitor_all_services()

    assert results == {"backend_api": True, "cache_via_api": True, "database": True, "redis": True}
