from fastapi import FastAPI

from shopchat.config import settings
from shopchat.logging_config import get_logger, mask_secret, setup_logging
from shopchat.routers import admin, webhook
from shopchat.services.coordinator import build_coordinator

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Shopchat API",
    description="LINE shop assistant: fragment aggregation, bounded LLM dispatch, operator takeover",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(admin.router)


@app.on_event("startup")
async def start_coordinator() -> None:
    if getattr(app.state, "coordinator", None) is not None:
        return
    app.state.coordinator = build_coordinator(settings)
    logger.info(
        "Coordinator started",
        extra={
            "context": {
                "candidates": settings.candidate_models(),
                "concurrency": settings.dispatch_concurrency,
                "silence_seconds": settings.silence_seconds,
                "products": len(app.state.coordinator.catalog),
                "redis": bool(settings.redis_url),
                "openrouter_api_key": mask_secret(settings.openrouter_api_key),
                "line_access_token": mask_secret(settings.line_access_token),
            }
        },
    )


@app.on_event("shutdown")
async def stop_coordinator() -> None:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return
    # Pending bursts are answered rather than dropped.
    await coordinator.aclose(flush=True)
    app.state.coordinator = None
    logger.info("Coordinator stopped")


@app.get("/health")
async def health():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return {"status": "starting"}
    limiter = coordinator.dispatcher.limiter
    return {
        "status": "ok",
        "pending_buffers": len(coordinator.state.buffers),
        "takeovers": len(coordinator.state.takeovers),
        "dispatch_in_flight": limiter.in_flight,
        "dispatch_waiting": limiter.waiting,
    }
