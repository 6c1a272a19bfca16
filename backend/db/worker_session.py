"""Worker-safe workflow service for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager

from app.config import get_settings
from db.session import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_service():
    """Provide a WorkflowService bound to a per-call engine.

    Usage:
        async with worker_service() as service:
            report = await service.scheduler.sweep()
    """
    from services.workflow_service import build_workflow_service

    settings = get_settings()
    engine = create_db_engine(settings)
    service = build_workflow_service(settings, session_factory=create_session_factory(engine))
    try:
        yield service
    finally:
        directory = service.engine.resolver.directory
        if hasattr(directory, "close"):
            await directory.close()
        await engine.dispose()
