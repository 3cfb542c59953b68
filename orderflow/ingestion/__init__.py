"""
Job Ingestion Module
"""
from .jobs import JobConsumer, JobEnvelope, JobProducer, JobStatus, JobType, build_handlers

__all__ = [
    "JobConsumer",
    "JobEnvelope",
    "JobProducer",
    "JobStatus",
    "JobType",
    "build_handlers",
]
