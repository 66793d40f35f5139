"""HTTP API tests against an in-process server with real Python predictors."""

import pytest
from fastapi.testclient import TestClient

from autoserve.api import create_app
from autoserve.core.config import ControllerConfig, ReplicaConfig, ServingConfig


pytestmark = pytest.mark.integration

ECHO = "tests.fake_predictors:EchoPredictor"


def deployment(name, path=ECHO, **autoscaling):
    scaling = {"min_replicas": 0, "max_replicas": 2, "target_replica_concurrency": 1, "cold_start_timeout": 10.0}
    scaling.update(autoscaling)
    return {"name": name, "predictor": {"type": "python", "path": path}, "autoscaling": scaling}


@pytest.fixture
def client():
    config = ServingConfig(
        controller=ControllerConfig(control_interval=0.2),
        replica=ReplicaConfig(health_check_interval=0.02),
    )
    app = create_app(config=config)
    with TestClient(app) as test_client:
        yield test_client


class TestHealthAndMetrics:
    """Test operational endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["healthy"] is True
        assert body["checks"]["engine"] == "running"

    def test_metrics(self, client):
        client.post("/apis", json=deployment("echo", min_replicas=1))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "autoserve_replicas" in response.text

    def test_autoscaler_stats(self, client):
        response = client.get("/autoscaler/stats")

        assert response.status_code == 200
        assert response.json()["data"]["running"] is True


class TestDeployments:
    """Test deployment management."""

    def test_deploy_list_and_undeploy(self, client):
        response = client.post("/apis", json=deployment("echo"))
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "echo"

        listed = client.get("/apis").json()["data"]
        assert [api["name"] for api in listed] == ["echo"]

        status = client.get("/apis/echo").json()["data"]
        assert status["spec"]["autoscaling"]["max_replicas"] == 2
        assert status["queue_depth"] == 0

        assert client.delete("/apis/echo").status_code == 200
        assert client.get("/apis/echo").status_code == 404

    def test_redeploy(self, client):
        client.post("/apis", json=deployment("echo"))

        response = client.post("/apis", json=deployment("echo", max_replicas=3))

        assert response.status_code == 200
        assert "redeployed" in response.json()["message"]
        assert client.get("/apis/echo").json()["data"]["spec"]["autoscaling"]["max_replicas"] == 3

    def test_invalid_bounds(self, client):
        response = client.post("/apis", json=deployment("echo", min_replicas=3, max_replicas=1))

        assert response.status_code == 400
        assert response.json()["error_code"] == "CONFIGURATION_ERROR"

    def test_invalid_predictor_type(self, client):
        body = deployment("echo")
        body["predictor"]["type"] = "onnx"

        assert client.post("/apis", json=body).status_code == 422

    def test_undeploy_unknown(self, client):
        assert client.delete("/apis/missing").status_code == 404


class TestPredict:
    """Test inference requests end to end."""

    def test_predict_with_cold_start(self, client):
        client.post("/apis", json=deployment("echo"))

        response = client.post("/predict/echo", json={"x": [1, 2, 3]})

        assert response.status_code == 200
        assert response.json() == {"echo": {"x": [1, 2, 3]}}
        assert client.get("/apis/echo").json()["data"]["replicas"]["ready"] == 1

    def test_unknown_api(self, client):
        response = client.post("/predict/missing", json={})

        assert response.status_code == 404
        assert response.json()["error_code"] == "API_NOT_FOUND"

    def test_inference_error(self, client):
        client.post("/apis", json=deployment("echo", min_replicas=1))

        response = client.post("/predict/echo", json={"fail": True})

        assert response.status_code == 500
        assert response.json()["error_code"] == "INFERENCE_ERROR"

    def test_cold_start_timeout_returns_retry_after(self, client):
        client.post("/apis", json=deployment(
            "broken", path="tests.fake_predictors:BrokenPredictor", cold_start_timeout=0.5
        ))

        response = client.post("/predict/broken", json={})

        assert response.status_code == 503
        assert response.json()["error_code"] == "COLD_START_TIMEOUT"
        assert response.headers["Retry-After"] == "1"
