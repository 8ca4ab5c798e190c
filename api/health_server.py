import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


risk_service = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global risk_service
    from main import RiskService
    risk_service = RiskService()
    task = asyncio.create_task(risk_service.start())
    try:
        yield
    finally:
        if risk_service:
            await risk_service.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def create_app(service=None, use_lifespan: bool = True) -> FastAPI:
    """Build the health API. Passing ``service`` binds an already running RiskService."""
    global risk_service
    if service is not None:
        risk_service = service
    api_cfg = config.section('api')
    app = FastAPI(
        title="Options Risk Core",
        version="0.1.0",
        lifespan=lifespan if use_lifespan and service is None else None,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_cfg.get('cors_origins', []),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        if not risk_service:
            return {"running": False, "error": "Risk service not initialized"}
        payload = risk_service.risk_manager.health()
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        return payload

    @app.get("/metrics/cycle")
    async def cycle_metrics():
        if not risk_service:
            return {"error": "Risk service not initialized"}
        return risk_service.risk_manager.cycle_metrics()

    @app.post("/metrics/reset")
    async def reset_metrics():
        if not risk_service:
            return {"error": "Risk service not initialized"}
        risk_service.risk_manager.reset_metrics()
        return {"status": "reset", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/positions")
    async def positions():
        if not risk_service:
            return {"error": "Risk service not initialized"}
        items = [p.to_dict() for p in risk_service.position_cache.snapshot_all()]
        return {"positions": items, "count": len(items)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8080)),
        log_level="info"
    )
