"""Worker registry."""

from agentcrew.workers.pool import CapabilityFactory, Worker, WorkerPool, WorkerStatus

__all__ = ["CapabilityFactory", "Worker", "WorkerPool", "WorkerStatus"]
