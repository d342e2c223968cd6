import json
import logging

from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from handoff.app_logging import _install_access_logging


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.post("/api/sessions/{session_id}/messages")
    async def post_message(session_id: str, request: Request):
        return {"rid": request.state.request_id, "session": session_id}

    @app.get("/ws-info")
    async def ws_info():
        return {"ok": True}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    _install_access_logging(app)
    return app


def test_access_logging_request_id_session_and_scrubbing(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post(
            "/api/sessions/s-42/messages",
            json={"content": "hi", "token": "secret"},
            headers={"X-Request-Id": "abc", "Authorization": "Bearer secret"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc", "session": "s-42"}

        record = caplog.records[0]
        data = json.loads(record.getMessage())
        assert data["request_id"] == "abc"
        assert data["session_id"] == "s-42"
        assert data["headers"]["authorization"] == "***"
        assert data["body"] == {"content": "hi", "token": "***"}

        caplog.clear()
        client.get("/api/health")
        assert len(caplog.records) == 0


def test_query_tokens_are_masked(caplog):
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        client.get("/ws-info", params={"token": "t0k", "page": "2"})

        data = json.loads(caplog.records[0].getMessage())
        assert data["query"] == {"token": "***", "page": "2"}
        assert data["session_id"] is None
        assert "body" not in data
