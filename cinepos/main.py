import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cinepos.middleware import RequestIdMiddleware
from cinepos.db import Base, engine
from cinepos.config import settings
from cinepos.errors import OrderError, ValidationFailed
from cinepos import models  # noqa: F401  (registers tables)
from cinepos.services import sweeper
from cinepos.util.logging import setup_json_logging

from cinepos.routers import auth, admin, catalog, orders, payments, sync, printjob, reports, dashboard, notifications
from cinepos.routers import settings as settings_router

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_json_logging(settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    task = None
    if settings.SWEEPER_ENABLED:
        task = asyncio.create_task(sweeper.run_forever())
    try:
        yield
    finally:
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(title="CinePOS API", version="1.0.0", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    if exc.status_code >= 500:
        log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    err = ValidationFailed("request validation failed", errors=errors)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "INTERNAL", "detail": "internal error"})


app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(catalog.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(settings_router.router)
app.include_router(sync.router)
app.include_router(printjob.router)
app.include_router(reports.router)
app.include_router(dashboard.router)
app.include_router(notifications.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}
