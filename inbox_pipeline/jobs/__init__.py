"""Durable job queue and the worker pool that drains it."""

from inbox_pipeline.jobs.job_queue import JobQueue

__all__ = ["JobQueue"]
