from __future__ import annotations
from datetime import datetime
from fastapi import FastAPI, Query, Response
from pydantic import BaseModel, ConfigDict
from prometheus_client import REGISTRY, generate_latest, CONTENT_TYPE_LATEST
import redis
from performance_monitor.config import get_settings
from performance_monitor.infrastructure import db
from performance_monitor.collection.run_log import recent_entries
from performance_monitor.api.schedule import router as schedule_router

app = FastAPI(title="Performance Monitor API", version="0.1.0")
app.include_router(schedule_router)


class CollectionLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    collection_time: datetime
    collector_name: str
    collection_status: str
    rows_collected: int
    duration_ms: int
    error_message: str | None = None


@app.get("/health")
def health():
    return {"db": db.healthcheck(), "status": "ok"}


@app.get("/ready")
def readiness():
    """Readiness probe that ensures DB and Redis are reachable."""
    settings = get_settings()
    db_ok = db.healthcheck()
    redis_ok = True
    try:
        r = redis.Redis.from_url(settings.redis_url)
        r.ping()
    except redis.RedisError:
        redis_ok = False
    status = db_ok and redis_ok
    return {"status": "ok" if status else "degraded", "db": db_ok, "redis": redis_ok}


@app.get("/metrics")
def metrics():
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/collection-log", response_model=list[CollectionLogOut])
def collection_log(
    collector: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    session = db.SessionLocal()
    try:
        return recent_entries(session, collector_name=collector, status=status, limit=limit)
    finally:
        session.close()

