import pytest

from conftest import spec

from recon.api import create_app
from recon.config import ControllerConfig
from recon.controller import Controller
from recon.installer import ChartInstaller
from recon.retry import Backoff
from recon.source import InMemorySource


@pytest.fixture
def source():
    src = InMemorySource()
    src.publish([spec("discovery-server", generation=0), spec("movie", depends_on=["discovery-server"], generation=0)])
    return src


@pytest.fixture
def controller(cluster, source, helm, fast_retry):
    cfg = ControllerConfig.from_dict({
        "controller": {"controller_id": "cp-test", "api_endpoint": "10.0.0.10:6443", "ca_cert_hash": "sha256:" + "00" * 32},
        "nodes": [
            {"node_id": "master", "role": "controller", "address": "10.0.0.10"},
            {"node_id": "worker-1", "address": "10.0.0.11"},
        ],
        "watcher": {"auto_start": False},
        "sync": {"readiness_timeout_s": 0.2, "readiness_poll_s": 0.005, "backoff_base_s": 0.001},
    })
    ctl = Controller(cfg, cluster, source, installer=ChartInstaller(runner=helm, retry=fast_retry))
    ctl.join.handshake = Backoff(attempts=2, base_delay_s=0.001, max_delay_s=0.001)
    ctl.populate_topology()
    try:
        yield ctl
    finally:
        ctl.stop(timeout=2)


@pytest.fixture
def client(controller):
    app = create_app(controller)
    app.config["TESTING"] = True
    return app.test_client()


def test_health_and_status(client):
    assert client.get("/healthz").get_json() == {"status": "ok"}
    status = client.get("/status").get_json()
    assert status["controller_id"] == "cp-test"
    assert status["nodes"] == {"master": "unjoined", "worker-1": "unjoined"}


def test_nodes_listing_and_unknown_node(client):
    nodes = client.get("/nodes").get_json()["nodes"]
    assert [n["node_id"] for n in nodes] == ["master", "worker-1"]
    assert client.get("/nodes/ghost").status_code == 404
    assert client.post("/nodes/ghost/join").status_code == 404


def test_join_flow_and_token_reuse(client, cluster):
    issued = client.post("/nodes/worker-1/join")
    assert issued.status_code == 201
    body = issued.get_json()
    assert body["join_command"].startswith("kubeadm join 10.0.0.10:6443 --token ")

    cluster.add_node("worker-1", ready=True)
    done = client.post("/nodes/worker-1/complete", json={"token": body["token"]})
    assert done.status_code == 200
    assert done.get_json()["join_state"] == "ready"

    again = client.post("/nodes/worker-1/complete", json={"token": body["token"]})
    assert again.status_code == 409
    assert again.get_json()["type"] == "TokenAlreadyUsed"
    assert client.post("/nodes/worker-1/join").status_code == 409


def test_complete_requires_token(client):
    assert client.post("/nodes/worker-1/complete", json={}).status_code == 400


def test_expired_token_is_gone(client, controller):
    controller.join.token_ttl_s = 0
    token = client.post("/nodes/worker-1/join").get_json()["token"]
    response = client.post("/nodes/worker-1/complete", json={"token": token})
    assert response.status_code == 410
    assert controller.topology.get("worker-1").join_state.value == "unjoined"


def test_handshake_timeout_maps_to_504(client, controller):
    token = client.post("/nodes/worker-1/join").get_json()["token"]
    response = client.post("/nodes/worker-1/complete", json={"token": token})
    assert response.status_code == 504
    assert controller.topology.get("worker-1").join_state.value == "failed"


def test_decommissioned_node_cannot_join(client):
    assert client.post("/nodes/worker-1/decommission").get_json()["decommissioned"] is True
    assert client.post("/nodes/worker-1/join").status_code == 409


def test_dry_run_then_sync(client, cluster):
    dry = client.post("/sync", json={"dry_run": True}).get_json()
    assert [a["workload"] for a in dry["plan"]["actions"]] == ["discovery-server", "movie"]
    assert dry["report"] is None
    assert cluster.workloads == {}

    applied = client.post("/sync", json={}).get_json()
    assert applied["report"]["status"] == "synced"
    workloads = client.get("/applied").get_json()["workloads"]
    assert workloads["movie"]["generation"] == 1
    assert client.get("/report").get_json()["status"] == "synced"
    assert client.get("/desired").get_json()["revision"] == "r1"


def test_pause_hold_and_approve(client, controller, cluster):
    assert client.get("/plan").status_code == 404
    assert client.post("/self-heal/pause").get_json() == {"self_heal": False}
    controller.recover()
    controller.watcher.poll_once()

    pending = client.get("/plan").get_json()
    assert pending["pending"] is True
    assert cluster.workloads == {}

    assert client.post("/plan/approve", json={"plan_id": "plan-nope"}).status_code == 409
    report = client.post("/plan/approve", json={"plan_id": pending["plan_id"]}).get_json()
    assert report["status"] == "synced"
    assert client.post("/plan/approve").status_code == 409
    assert client.post("/self-heal/resume").get_json() == {"self_heal": True}


def test_events_record_transitions(client):
    client.post("/nodes/worker-1/join")
    events = client.get("/events").get_json()["events"]
    assert events[-1]["node_id"] == "worker-1"
    assert events[-1]["current"] == "joining"


def test_bootstrap_runs_whole_sequence(controller, cluster, helm):
    controller.config.charts = []
    summary = controller.bootstrap(join=False, start_watcher=False)
    assert summary["report"]["status"] == "synced"
    assert set(cluster.workloads) == {"discovery-server", "movie"}
    plan, report = controller.sync()
    assert plan.is_empty


def test_from_config_leaves_seeding_to_caller(cluster, source):
    cfg = ControllerConfig.from_dict({
        "controller": {"ca_cert_hash": "sha256:" + "00" * 32},
        "nodes": [{"node_id": "master", "role": "controller"}, {"node_id": "worker-1"}],
        "watcher": {"auto_start": False},
    })
    ctl = Controller.from_config(cfg, cluster=cluster, source=source)
    assert ctl.topology.list_nodes() == []
    declared = ctl.populate_topology()
    assert sorted(n.node_id for n in declared) == ["master", "worker-1"]
    assert len(ctl.populate_topology()) == 2
    assert len(ctl.topology.list_nodes()) == 2
