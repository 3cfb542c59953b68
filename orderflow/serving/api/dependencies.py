"""
FastAPI dependencies for services created in the application lifespan.
"""

from fastapi import HTTPException, Request

from orderflow.ingestion.jobs import JobProducer
from orderflow.ledger.metrics import MetricsLedger


def get_ledger(request: Request) -> MetricsLedger:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Metrics store unavailable")
    return ledger


def get_job_producer(request: Request) -> JobProducer:
    producer = getattr(request.app.state, "job_producer", None)
    if producer is None:
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return producer
