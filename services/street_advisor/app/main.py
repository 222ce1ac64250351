import asyncio

from fastapi import FastAPI

from src.common.logging import setup_logging
from src.common.metrics import setup_metrics
from src.common.settings import settings
from src.common.telemetry import setup_otel

from . import deps
from .api import router

app = FastAPI(title="street_advisor")
setup_metrics(app, "street_advisor")
setup_otel(app, "street_advisor")

_background: set[asyncio.Task] = set()


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging(settings.log_level)
    # погода подгружается в фоне и не блокирует запуск
    task = asyncio.get_running_loop().create_task(deps.get_orchestrator().refresh_weather())
    _background.add(task)
    task.add_done_callback(_background.discard)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    orchestrator = deps.get_orchestrator()
    await orchestrator.wait_background()
    await orchestrator.resolver.aclose()


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> dict[str, str]:
    return {"status": "ready"}


app.include_router(router)
