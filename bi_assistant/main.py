import hmac
import os
import time
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request, BackgroundTasks
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.alerts import check_alerts, trigger_alert
from bi_assistant.db import async_engine, get_db, get_session_factory
from bi_assistant.inbound import handle_inbound, normalize_inbound
from bi_assistant.llm import ModelClient
from bi_assistant.logging import TraceMiddleware, init_logging
from bi_assistant.messaging import EvolutionGateway
from bi_assistant.metrics import instrumentator
from bi_assistant.orchestrator import Orchestrator
from bi_assistant.powerbi import PowerBIExecutor
from bi_assistant.queue import QUEUE_BATCH_SIZE, QueueWorker
from bi_assistant.schemas import AlertCheckResponse, DrainResponse, HealthResponse, TriggerResponse, WebhookResponse
from bi_assistant.speech import SpeechService
from bi_assistant.utils import logger

# Configuration
CRON_SECRET = os.getenv("CRON_SECRET", "dev-secret")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
MAX_BATCH_SIZE = int(os.getenv("MAX_BATCH_SIZE", "100"))

# Initialize structured logging
init_logging()

app = FastAPI(title="BI Assistant", version="1.0.0")

# Set up Prometheus metrics
instrumentator.instrument(app).expose(app, include_in_schema=True, should_gzip=True)

# Add trace middleware for request tracing
app.add_middleware(TraceMiddleware)

# Shared clients; tests replace them through dependency_overrides
_executor = PowerBIExecutor()
_gateway = EvolutionGateway()
_model_client = ModelClient()
_speech = SpeechService()


def get_executor() -> PowerBIExecutor:
    return _executor


def get_gateway() -> EvolutionGateway:
    return _gateway


def get_model_client() -> ModelClient:
    return _model_client


def get_speech() -> SpeechService:
    return _speech


def get_worker(
    model: ModelClient = Depends(get_model_client),
    executor: PowerBIExecutor = Depends(get_executor),
    gateway: EvolutionGateway = Depends(get_gateway),
    speech: SpeechService = Depends(get_speech),
) -> QueueWorker:
    return QueueWorker(Orchestrator(model, executor), gateway, speech)


@app.on_event("shutdown")
async def shutdown_event():
    await async_engine.dispose()


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _matches(candidate: Optional[str], secret: str) -> bool:
    return bool(candidate) and hmac.compare_digest(candidate, secret)


# Dependency for cron trigger authentication
def require_cron_secret(authorization: Optional[str] = Header(None), key: Optional[str] = Query(None)):
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not CRON_SECRET or not (_matches(token, CRON_SECRET) or _matches(key, CRON_SECRET)):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


# Dependency for webhook authentication; open when no secret is configured
def require_webhook_secret(apikey: Optional[str] = Header(None), key: Optional[str] = Query(None)):
    if not WEBHOOK_SECRET:
        return True
    if not (_matches(apikey, WEBHOOK_SECRET) or _matches(key, WEBHOOK_SECRET)):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


async def drain_in_background(session_factory, worker: QueueWorker):
    """One drain pass after an inbound message was enqueued"""
    try:
        async with session_factory() as session:
            await worker.drain(session)
    except Exception as e:
        logger.error("Background drain failed", error=str(e))


@app.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)):
    start_time = time.time()
    health_data = {"status": "ok", "components": {}, "latency_ms": 0}

    try:
        await db.execute(text("SELECT 1"))
        health_data["components"]["database"] = {"status": "ok"}
    except Exception as e:
        health_data["status"] = "error"
        health_data["components"]["database"] = {"status": "error", "detail": str(e)}

    health_data["latency_ms"] = round((time.time() - start_time) * 1000, 2)

    if health_data["status"] == "error":
        return JSONResponse(status_code=500, content=health_data)
    return health_data


@app.post("/queue/process", response_model=DrainResponse, dependencies=[Depends(require_cron_secret)])
async def process_queue(
    batch_size: int = Query(QUEUE_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE),
    db: AsyncSession = Depends(get_db),
    worker: QueueWorker = Depends(get_worker),
):
    summary = await worker.drain(db, batch_size=batch_size)
    return summary.as_dict()


@app.api_route("/alerts/check", methods=["GET", "POST"], response_model=AlertCheckResponse,
               dependencies=[Depends(require_cron_secret)])
async def alerts_check(
    db: AsyncSession = Depends(get_db),
    executor: PowerBIExecutor = Depends(get_executor),
    gateway: EvolutionGateway = Depends(get_gateway),
):
    return await check_alerts(db, executor, gateway)


@app.post("/alerts/{alert_id}/trigger", response_model=TriggerResponse, dependencies=[Depends(require_cron_secret)])
async def alerts_trigger(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    executor: PowerBIExecutor = Depends(get_executor),
    gateway: EvolutionGateway = Depends(get_gateway),
):
    result = await trigger_alert(db, alert_id, executor, gateway)
    if result is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    if result.get("error"):
        return JSONResponse(status_code=502, content=result)
    return result


@app.post("/webhook/whatsapp", response_model=WebhookResponse, dependencies=[Depends(require_webhook_secret)])
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    gateway: EvolutionGateway = Depends(get_gateway),
    speech: SpeechService = Depends(get_speech),
    worker: QueueWorker = Depends(get_worker),
    session_factory=Depends(get_session_factory),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")

    message = normalize_inbound(payload)
    result = await handle_inbound(db, message, gateway, speech)
    if result.status == "queued":
        background_tasks.add_task(drain_in_background, session_factory, worker)

    logger.info("Webhook handled", status=result.status, reason=result.reason)
    return result.as_dict()
