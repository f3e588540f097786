"""FastAPI dependencies for request authorization and app-state clients.

This module provides reusable FastAPI dependencies for:
- Shared-secret authorization of queue and scheduler endpoints
- Access to the clients built once in the application lifespan
"""

import hmac
from typing import Annotated, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from retouch.core.config import Settings
from retouch.services.dispatch.interface import JobDispatcher
from retouch.services.submission import SubmissionService
from retouch.uow import UnitOfWork
from retouch.workers.job_runner import JobRunner


def get_settings(request: Request) -> Settings:
    """Get the settings instance loaded in the application lifespan."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_job_runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


def get_submission_service(
    request: Request,
    settings: Settings = Depends(get_settings),
    uow_factory=Depends(get_uow_factory),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> SubmissionService:
    """Submission service targeting the configured worker URL.

    Without APP_URL the worker is addressed on the host that received the
    submission (local development).
    """
    worker_url = settings.worker_url or str(request.url_for("run_worker"))
    return SubmissionService(uow_factory, dispatcher, worker_url)


def _bearer_matches(authorization: str | None, secret: str) -> bool:
    if not authorization or not authorization.startswith("Bearer "):
        return False
    # Constant-time comparison
    return hmac.compare_digest(authorization[len("Bearer ") :].encode(), secret.encode())


async def require_worker_secret(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require ``Authorization: Bearer <WORKER_SECRET>`` when a worker secret is configured.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or wrong
    """
    if not settings.worker_secret:
        return
    if not _bearer_matches(authorization, settings.worker_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def require_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``; deny when no secret is configured.

    Raises:
        HTTPException: 401 Unauthorized if the secret is unset, missing or wrong
    """
    if not settings.cron_secret or not _bearer_matches(authorization, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
