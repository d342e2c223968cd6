"""FastAPI application wiring for the chat handoff relay.

- Configures logging, Prometheus metrics and rate limiting.
- Holds one :class:`~handoff.relay.SessionRelay` on ``app.state`` that every
  route shares, backed by an in-process bus and an in-memory chat store.
- Exposes health and version endpoints next to the session, escalation and
  websocket routers.
"""

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .bus import ChannelBus
from .config import get_settings
from .limits import limiter
from .relay import SessionRelay
from .routers import escalations, realtime, sessions
from .store import InMemoryChatStore

load_dotenv()

app = FastAPI(title="Chat Handoff Relay", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.state.relay = SessionRelay(
    ChannelBus(),
    InMemoryChatStore(),
    max_message_length=get_settings().chat_max_message_length,
)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.include_router(escalations.router)
app.include_router(sessions.router)
app.include_router(realtime.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
