import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from n8n_monitor import config
from n8n_monitor.api.deps import build_services
from n8n_monitor.api.routes import router
from n8n_monitor.core.errors import NotFoundError, UpstreamError, ValidationError
from n8n_monitor.core.scheduler import Scheduler
from n8n_monitor.db.database import get_session_factory, init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.services = build_services(get_session_factory())
    task = None
    if config.MONITOR_ENABLED:
        scheduler = Scheduler(app.state.services)
        task = asyncio.create_task(scheduler.start())
    yield
    if task is not None:
        task.cancel()
    app.state.services.locks.clear()


app = FastAPI(title="n8n Monitor", lifespan=lifespan)
app.include_router(router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(UpstreamError)
async def upstream_handler(request: Request, exc: UpstreamError):
    logger.warning("Upstream failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.get("/health")
def health():
    return {"status": "ok"}
