"""
FastAPI dependency wiring.

Shared services are built once in the application lifespan and stored on
app.state; routes receive them through these getters, so tests can swap any
of them with app.dependency_overrides or create_app(...) arguments.

Usage in a route:
    @router.post("/jobs")
    async def enqueue(body: EnqueueRequest, queue: Queue): ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from docpipeline.pipeline.queue import QueueManager
from docpipeline.streaming.status_stream import StatusStreamService


def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager


def get_status_stream(request: Request) -> StatusStreamService:
    return request.app.state.status_stream


Queue        = Annotated[QueueManager,        Depends(get_queue_manager)]
StatusStream = Annotated[StatusStreamService, Depends(get_status_stream)]
