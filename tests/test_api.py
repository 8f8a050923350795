from http.client import HTTPConnection
from json import loads
from threading import Event, Thread

import pytest

from vigie.api import ApiServer, parse_images
from vigie.metrics import Metrics
from vigie.session import Supervisor

TOKEN = "s3cret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def api_settings(make_settings):
    return make_settings(http_api_update=True, http_api_metrics=True, http_api_token=TOKEN)


@pytest.fixture
def supervisor(engine, api_settings):
    return Supervisor(engine, api_settings, metrics=Metrics())


@pytest.fixture
def server(supervisor, api_settings):
    server = ApiServer(supervisor, api_settings, address=("127.0.0.1", 0))
    server.start()
    yield server
    server.stop()


def _request(server, method, path, headers=None):
    host, port = server.server_address[:2]
    connection = HTTPConnection(host, port, timeout=10)
    try:
        connection.request(method, path, headers=headers or {})
        response = connection.getresponse()
        return response.status, dict(response.getheaders()), response.read()
    finally:
        connection.close()


def test_parse_images():
    assert parse_images("image=a,b&image=c&other=x") == ["a", "b", "c"]
    assert parse_images("") == []


def test_health(server):
    status, _, body = _request(server, "GET", "/health")
    assert (status, body) == (200, b"OK")


def test_update_requires_token(server):
    status, _, body = _request(server, "POST", "/v1/update", {"Authorization": "Bearer wrong"})
    assert status == 401
    assert loads(body)["error"] == "unauthorized"
    assert _request(server, "POST", "/v1/update")[0] == 401


def test_full_update(server, engine):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    status, headers, body = _request(server, "POST", "/v1/update", AUTH)
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    payload = loads(body)
    assert payload["summary"] == {"scanned": 1, "updated": 1, "failed": 0, "restarted": 0}
    assert payload["api_version"] == "v1"
    assert payload["timing"]["duration_ms"] >= 0
    assert payload["timestamp"].endswith("Z")


def test_busy_full_update_is_rejected(server, supervisor):
    supervisor.lock.try_acquire()
    try:
        status, headers, body = _request(server, "POST", "/v1/update", AUTH)
    finally:
        supervisor.lock.release()
    assert status == 429
    assert headers["Retry-After"] == "30"
    assert loads(body)["error"] == "another update is already running"


def test_targeted_update_waits_for_lock(server, supervisor, engine):
    engine.add("cache", image="redis:7", image_id="sha256:redis-old")
    engine.add("web")
    engine.publish("redis:7", "sha256:redis-new")
    supervisor.lock.try_acquire()
    results = {}

    def _call():
        results["response"] = _request(server, "POST", "/v1/update?image=redis", AUTH)

    caller = Thread(target=_call)
    caller.start()
    caller.join(0.3)
    assert caller.is_alive()
    supervisor.lock.release()
    caller.join(10)

    status, _, body = results["response"]
    assert status == 200
    assert loads(body)["summary"]["updated"] == 1
    assert engine.pulls == ["redis:7"]


def test_targeted_update_times_out(make_settings, engine):
    settings = make_settings(http_api_update=True, http_api_token=TOKEN, http_api_queue_timeout=0.2)
    supervisor = Supervisor(engine, settings, metrics=Metrics())
    server = ApiServer(supervisor, settings, address=("127.0.0.1", 0))
    server.start()
    supervisor.lock.try_acquire()
    try:
        status, _, _ = _request(server, "POST", "/v1/update?image=redis", AUTH)
    finally:
        supervisor.lock.release()
        server.stop()
    assert status == 503


def test_unknown_routes(server):
    assert _request(server, "GET", "/nope")[0] == 404
    assert _request(server, "POST", "/v1/other", AUTH)[0] == 404


def test_metrics_endpoint(server, supervisor):
    supervisor.metrics.register_scan(None)
    assert _request(server, "GET", "/v1/metrics")[0] == 401
    status, headers, body = _request(server, "GET", "/v1/metrics", AUTH)
    assert status == 200
    assert headers["Content-Type"].startswith("text/plain")
    assert b"watchtower_scans_skipped_total 1.0" in body


def test_disabled_endpoints_are_not_found(make_settings, engine):
    settings = make_settings()
    server = ApiServer(Supervisor(engine, settings), settings, address=("127.0.0.1", 0))
    server.start()
    try:
        assert _request(server, "POST", "/v1/update", AUTH)[0] == 404
        assert _request(server, "GET", "/v1/metrics")[0] == 404
        assert _request(server, "GET", "/health")[0] == 200
    finally:
        server.stop()


def test_stop_unblocks_serving_thread(supervisor, api_settings):
    server = ApiServer(supervisor, api_settings, address=("127.0.0.1", 0))
    server.start()
    stopped = Event()
    Thread(target=lambda: (server.stop(), stopped.set())).start()
    assert stopped.wait(5)
