"""Tests for the HTTP control API."""

import pytest
import yaml
from fastapi.testclient import TestClient

import miao.main as main
from miao.composer import ConfigComposer
from miao.health import ConnectivityProbe, HealthMonitor
from miao.models import checks, engine_events
from miao.process import EngineSupervisor
from miao.rules import RuleSetBuilder
from miao.settings import SettingsStore
from miao.subscription import SubscriptionFetcher

SUB_URL = "https://sub.example/clash"
PROBE_URL = "https://gstatic.com/generate_204"
RULES_URL = "https://rules.example/direct-list.txt"


@pytest.fixture
def routes(clash_doc):
    return {
        SUB_URL: (200, clash_doc),
        PROBE_URL: (204, ""),
        RULES_URL: (200, "full:a.cn\nb.cn\n"),
    }


@pytest.fixture
def app_env(tmp_path, monkeypatch, db, fake_runner, transport_factory, routes):
    """Point the app's components at a temporary home and fake engine."""
    settings_path = tmp_path / "miao.yaml"
    settings_path.write_text(yaml.safe_dump({
        "sing_box_home": "engine",
        "subs": [SUB_URL],
        "rules": {"direct_txt": RULES_URL},
        "node_filter": ["JP"],
    }))
    home = tmp_path / "engine"
    transport = transport_factory(routes)

    store = SettingsStore(settings_path)
    fetcher = SubscriptionFetcher(transport=transport)
    composer = ConfigComposer(store, fetcher)
    probe = ConnectivityProbe(PROBE_URL, transport=transport)
    supervisor = EngineSupervisor(fake_runner, probe, home, grace_seconds=0.01, events=engine_events)
    rule_builder = RuleSetBuilder(home, RULES_URL, transport=transport)
    monitor = HealthMonitor(supervisor, probe, checks)

    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "fetcher", fetcher)
    monkeypatch.setattr(main, "composer", composer)
    monkeypatch.setattr(main, "probe", probe)
    monkeypatch.setattr(main, "supervisor", supervisor)
    monkeypatch.setattr(main, "rule_builder", rule_builder)
    monkeypatch.setattr(main, "health_monitor", monitor)
    return {"home": home, "routes": routes, "runner": fake_runner, "settings_path": settings_path}


@pytest.fixture
def client(app_env):
    return TestClient(main.app)


def test_status_when_stopped(client):
    response = client.get("/api/status")

    assert response.status_code == 200
    data = response.json()
    assert data["running"] is False
    assert data["state"] == "stopped"
    assert data["metrics"] is None


def test_start_stop_cycle(client, app_env):
    response = client.post("/api/service/start")
    assert response.status_code == 200
    assert response.json()["running"] is True

    response = client.post("/api/service/start")
    assert response.status_code == 409

    response = client.post("/api/service/stop")
    assert response.status_code == 200
    assert response.json()["state"] == "stopped"
    assert app_env["runner"].live() == []

    events = client.get("/api/engine/events").json()
    assert [e["action"] for e in events] == ["stop", "start"]


def test_start_reports_connectivity_failure(client, app_env):
    app_env["routes"][PROBE_URL] = (200, "captive portal")

    response = client.post("/api/service/start")

    assert response.status_code == 502
    assert app_env["runner"].live() == []
    assert client.get("/api/status").json()["state"] == "failed"


def test_restart(client):
    client.post("/api/service/start")

    response = client.post("/api/service/restart")

    assert response.status_code == 200
    assert response.json()["status"] == "restarted"
    assert response.json()["pid"] == 1001


def test_generate_and_read_config(client, app_env):
    assert client.get("/api/config").status_code == 404

    response = client.post("/api/config/generate")
    assert response.status_code == 200
    assert response.json()["nodes"] == ["JP Tokyo 01"]

    data = client.get("/api/config").json()
    assert data["config_content"]["outbounds"][0]["outbounds"] == ["JP Tokyo 01"]
    assert data["config_stat"]["size"] > 0
    assert client.get("/api/status").json()["config_generated_at"] is not None


def test_generate_with_failed_subscription_still_succeeds(client, app_env):
    del app_env["routes"][SUB_URL]

    response = client.post("/api/subs/refresh")

    assert response.status_code == 200
    assert response.json()["subscriptions"][0]["status"] == "error"
    assert response.json()["nodes"] == []


def test_subscription_management(client, app_env):
    assert client.get("/api/subs").json()[0]["status"] == "pending"

    response = client.post("/api/subs", json={"url": "https://other.example/sub"})
    assert response.status_code == 200
    assert client.post("/api/subs", json={"url": "not a url"}).status_code == 400
    assert client.post("/api/subs", json={"url": SUB_URL}).status_code == 400

    saved = yaml.safe_load(app_env["settings_path"].read_text())
    assert saved["subs"] == [SUB_URL, "https://other.example/sub"]

    response = client.request("DELETE", "/api/subs", json={"url": "https://other.example/sub"})
    assert response.status_code == 200
    response = client.request("DELETE", "/api/subs", json={"url": "https://other.example/sub"})
    assert response.status_code == 404


def test_node_management(client):
    node = {"tag": "home", "protocol": "anytls", "server": "h.example", "server_port": 443, "password": "pw"}

    response = client.post("/api/nodes", json=node)
    assert response.status_code == 200
    assert response.json()["node"]["tag"] == "home"

    assert client.post("/api/nodes", json=node).status_code == 400
    assert client.post("/api/nodes", json={"tag": "x", "protocol": "vmess"}).status_code == 400

    tags = [n["tag"] for n in client.get("/api/nodes").json()]
    assert tags == ["home"]

    assert client.request("DELETE", "/api/nodes", json={"tag": "home"}).status_code == 200
    assert client.request("DELETE", "/api/nodes", json={"tag": "home"}).status_code == 404


def test_rule_generation(client, app_env, make_engine):
    make_engine('printf "SRS" > "$4"', home=app_env["home"])

    response = client.post("/api/rule/generate")

    assert response.status_code == 200
    assert response.json()["domain"] == 1
    assert response.json()["domain_suffix"] == 1
    info = client.get("/api/rule").json()
    assert info["artifact"]["size"] == 3
    assert info["building"] is False


def test_rule_generation_failure(client, app_env, make_engine):
    make_engine("exit 1", home=app_env["home"])

    response = client.post("/api/rule/generate")

    assert response.status_code == 500


def test_manual_net_check(client, app_env):
    response = client.post("/api/net-checks/manual")
    assert response.status_code == 200
    assert response.json()["status_code"] == 204

    app_env["routes"][PROBE_URL] = (500, "")
    assert client.post("/api/net-checks/manual").status_code == 503

    history = client.get("/api/checks", params={"limit": 5}).json()
    assert [c["success"] for c in history] == [False, True]


def test_connectivity_to_url(client, app_env):
    app_env["routes"]["https://www.example.com/"] = (200, "ok")

    response = client.post("/api/connectivity", json={"url": "https://www.example.com/"})

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_engine_logs(client, app_env):
    assert client.get("/api/engine/logs").status_code == 404

    app_env["home"].mkdir(parents=True, exist_ok=True)
    (app_env["home"] / "box.log").write_text("one\ntwo\nthree\n")

    data = client.get("/api/engine/logs", params={"lines": 2}).json()
    assert data == {"lines": ["two\n", "three\n"], "total": 3}
