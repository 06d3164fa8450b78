"""FastAPI dependencies for request context and common operations.

This module provides reusable FastAPI dependencies for:
- Caller identity (trusted X-User-Id header set by the gateway)
- Access to the service container and unit of work factory
- Worker endpoint authentication
"""

import hmac
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from pixelforge.container import Services
from pixelforge.services.dispatcher import TaskDispatcher
from pixelforge.uow import UoWFactory


def get_services(request: Request) -> Services:
    """Get the service container from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        Services instance created in the app lifespan
    """
    return request.app.state.services


def get_uow_factory(request: Request) -> UoWFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.works.list_by_user(user_id)
    """
    return request.app.state.services.uow_factory


def get_dispatcher(services: Services = Depends(get_services)) -> TaskDispatcher:
    return TaskDispatcher(services)


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Read the caller identity set by the authenticating gateway.

    Raises:
        HTTPException: 401 if the header is missing or not a UUID
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")


async def verify_worker_key(
    x_worker_key: Annotated[str | None, Header()] = None,
    services: Services = Depends(get_services),
) -> None:
    """Authenticate a launch request against WORKER_API_KEY.

    An empty WORKER_API_KEY (development and tests) disables the check.

    Raises:
        HTTPException: 401 if the key does not match
    """
    expected = services.settings.worker_api_key
    if not expected:
        return
    if not x_worker_key or not hmac.compare_digest(x_worker_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid worker key")
