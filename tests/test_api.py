import pytest
from fastapi.testclient import TestClient

from fleet.clock import ManualClock
from fleet.config import Settings
from fleet.controller import FleetController
from fleet.health import StaticProbe
from fleet.main import create_app
from fleet.models import Group
from fleet.providers import InMemoryProvider
from fleet.routing import InMemoryRouter


@pytest.fixture
def fleet_controller():
    return FleetController(Settings(INITIAL_COUNT=3, INITIAL_VERSION="v1"), clock=ManualClock(1000.0))


@pytest.fixture
def client(fleet_controller):
    app = create_app(fleet_controller, run_loops=False)
    with TestClient(app) as client:
        yield client


def _start(client, version="v2"):
    return client.post(
        "/rollouts", json={"target_version": version, "artifact_ref": f"registry/app:{version}"}
    )


class TestProbes:
    def test_liveness(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["status"] == "alive"

    def test_readiness_when_started(self, client):
        r = client.get("/ready")
        assert r.status_code == 200
        assert r.json() == {"status": "ready", "rollout_state": "idle"}

    def test_readiness_before_start(self, fleet_controller):
        app = create_app(fleet_controller, run_loops=False)
        app.state.controller = fleet_controller
        r = TestClient(app).get("/ready")
        assert r.status_code == 503
        assert r.json()["status"] == "not_ready"


class TestRollouts:
    def test_start_rollout(self, client):
        r = _start(client)
        assert r.status_code == 202
        data = r.json()
        assert data["state"] == "provisioning"
        assert data["outcome"] == "in_progress"
        assert data["source_group"] == "blue"
        assert data["target_group"] == "green"
        assert data["desired_count"] == 3
        assert data["weights"] == {"blue": 100, "green": 0}

    def test_concurrent_rollout_conflicts(self, client):
        plan_id = _start(client).json()["plan_id"]
        r = _start(client, "v3")
        assert r.status_code == 409
        assert r.json()["active_plan_id"] == plan_id

    def test_invalid_request(self, client):
        r = client.post("/rollouts", json={"target_version": "v2"})
        assert r.status_code == 422
        r = client.post("/rollouts", json={"target_version": "", "artifact_ref": "x"})
        assert r.status_code == 422

    def test_status_and_history(self, client):
        plan_id = _start(client).json()["plan_id"]
        r = client.get(f"/rollouts/{plan_id}")
        assert r.status_code == 200
        assert r.json()["controller_state"] == "provisioning"

        r = client.get("/rollouts")
        assert [p["plan_id"] for p in r.json()["rollouts"]] == [plan_id]

    def test_unknown_plan(self, client):
        assert client.get("/rollouts/nope").status_code == 404
        r = client.post("/rollouts/nope/cancel")
        assert r.status_code == 404
        assert "nope" in r.json()["error"]

    def test_cancel(self, client):
        plan_id = _start(client).json()["plan_id"]
        r = client.post(f"/rollouts/{plan_id}/cancel", json={"reason": "wrong build"})
        assert r.status_code == 202
        assert r.json()["state"] == "rolling_back"
        assert r.json()["reason"] == "cancelled: wrong build"


class TestFleetViews:
    def test_fleet(self, client):
        data = client.get("/fleet").json()
        blue = data["groups"]["blue"]
        assert blue["weight"] == 100
        assert blue["version"] == "v1"
        assert blue["desired_count"] == 3
        assert len(blue["instances"]) == 3
        assert data["groups"]["green"]["instances"] == []

    def test_scaling_before_first_tick(self, client):
        data = client.get("/scaling").json()
        assert data["last_decision"] is None
        assert data["config"]["min_capacity"] == 2

    def test_metrics(self, client):
        _start(client)
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "rollout_transitions_total" in r.text
        assert 'group_weight_percent{group="blue"} 100.0' in r.text


class TestColdStart:
    @pytest.mark.asyncio
    async def test_leftovers_pin_traffic_to_larger_group(self):
        clock = ManualClock(1000.0)
        provider = InMemoryProvider(clock)
        provider.seed(Group.BLUE, "v1", "registry/app:v1", 1)
        provider.seed(Group.GREEN, "v2", "registry/app:v2", 2)
        router = InMemoryRouter()

        controller = FleetController(
            Settings(), clock=clock, provider=provider, router=router, probe=StaticProbe()
        )
        await controller.start(run_loops=False)

        assert router.current_weights() == {Group.GREEN: 100, Group.BLUE: 0}
        assert router.refreshes == 0
        snap = controller.registry.snapshot()
        assert snap.serving_group() is Group.GREEN
        assert snap.groups[Group.GREEN].desired_count == 2
        assert controller.started
        await controller.stop()
        assert not controller.started

    @pytest.mark.asyncio
    async def test_loaded_fleet_is_rendered_and_tracked(self):
        clock = ManualClock(1000.0)
        provider = InMemoryProvider(clock)
        provider.seed(Group.BLUE, "v1", "registry/app:v1", 2)
        router = InMemoryRouter()

        controller = FleetController(
            Settings(), clock=clock, provider=provider, router=router, probe=StaticProbe()
        )
        await controller.start(run_loops=False)
        assert router.refreshes == 1
        assert controller.executor.router is router

        await controller.executor.reconcile(Group.BLUE, 3)
        assert router.refreshes == 2
        await controller.stop()
