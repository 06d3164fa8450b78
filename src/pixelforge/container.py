"""Service container shared by the API app, the worker app and the CLI.

Collaborators are constructed once per process and passed explicitly to
handlers, workers and the dispatcher. Tests build the same container with
in-memory fakes in place of the HTTP clients.
"""

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelforge.core.config import Settings
from pixelforge.core.database import setup_db_session
from pixelforge.services.ai.replicate_client import ReplicateClient
from pixelforge.services.credits import CreditLedger, Reconciler
from pixelforge.services.prompt.builder import PromptBuilder
from pixelforge.services.storage.client import StorageClient
from pixelforge.services.watermark.client import WatermarkClient
from pixelforge.services.worker_launcher import WorkerLauncher
from pixelforge.uow import UoWFactory, create_uow_factory


@dataclass
class Services:
    """Everything the pipeline needs, wired once per process."""

    settings: Settings
    uow_factory: UoWFactory
    ledger: CreditLedger
    reconciler: Reconciler
    ai: Any  # ReplicateClient or a fake with the same interface
    storage: Any  # StorageClient or a fake
    prompts: PromptBuilder
    watermark: Any  # WatermarkClient or a fake
    launcher: WorkerLauncher


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Services:
    """Create the service container from settings.

    Args:
        settings: Application settings
        session_factory: Existing session factory (created from DATABASE_URL when omitted)

    Returns:
        Wired Services instance
    """
    if session_factory is None:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    ledger = CreditLedger()

    return Services(
        settings=settings,
        uow_factory=uow_factory,
        ledger=ledger,
        reconciler=Reconciler(uow_factory, ledger),
        ai=ReplicateClient(
            api_token=settings.replicate_api_token,
            default_model=settings.replicate_model_version,
            timeout_seconds=settings.ai_call_timeout_seconds,
        ),
        storage=StorageClient(
            base_url=settings.storage_base_url,
            api_key=settings.storage_api_key,
            timeout=settings.storage_timeout_seconds,
        ),
        prompts=PromptBuilder(),
        watermark=WatermarkClient(
            service_url=settings.watermark_service_url,
            text=settings.watermark_text,
        ),
        launcher=WorkerLauncher(
            base_url=settings.worker_base_url,
            api_key=settings.worker_api_key,
            timeout=settings.worker_launch_timeout_seconds,
        ),
    )
