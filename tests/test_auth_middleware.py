import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bulkvideo.auth_middleware import WorkerAuthMiddleware


def make_client(secret, environment="production") -> TestClient:
    app = FastAPI()
    app.add_middleware(WorkerAuthMiddleware, secret=secret, environment=environment)

    @app.get("/bulk-video/ping")
    def ping():
        return {"ok": True}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return TestClient(app)


def test_valid_secret_passes():
    client = make_client("s3cret")
    response = client.get("/bulk-video/ping", headers={"X-Worker-Secret": "s3cret"})
    assert response.status_code == 200


@pytest.mark.parametrize("headers", [{}, {"X-Worker-Secret": "wrong"}, {"X-Worker-Secret": ""}])
def test_missing_or_wrong_secret_is_401(headers):
    response = make_client("s3cret").get("/bulk-video/ping", headers=headers)
    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid or missing worker secret"}


def test_public_paths_skip_auth():
    assert make_client("s3cret").get("/health").status_code == 200


def test_development_without_secret_allows_traffic():
    assert make_client("", environment="development").get("/bulk-video/ping").status_code == 200


def test_production_without_secret_is_misconfigured():
    response = make_client("", environment="production").get("/bulk-video/ping")
    assert response.status_code == 500
