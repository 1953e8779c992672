"""Data models for the job queue."""

from .job import EnqueueOptions, EnqueueResult, FailOutcome, Job, JobStatus, QueueStats

__all__ = ['EnqueueOptions', 'EnqueueResult', 'FailOutcome', 'Job', 'JobStatus', 'QueueStats']
