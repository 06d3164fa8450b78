"""pytest fixtures for PixelForge backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped in-memory SQLite database with all tables
- uow_factory: Function-scoped UnitOfWork factory
- services: Service container with fake AI, storage and watermark clients and a
  WorkerLauncher talking to an in-process fake worker service
- user / make_task: Data builders
"""

import asyncio
import os
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio
from sqlmodel import SQLModel

import pixelforge.models  # noqa: F401
from pixelforge.container import Services
from pixelforge.core.config import Settings
from pixelforge.core.database import setup_db_session
from pixelforge.models.task import Task, TaskState, TaskType, status_for_state
from pixelforge.models.user import User
from pixelforge.models.work import Work, WorkStatus
from pixelforge.services.ai.replicate_client import GenerationResult, PredictionStatus
from pixelforge.services.credits import CreditLedger, Reconciler
from pixelforge.services.exceptions import StorageNotFoundError
from pixelforge.services.prompt.builder import PromptBuilder
from pixelforge.services.worker_launcher import WorkerLauncher
from pixelforge.uow import create_uow_factory


class FakeAI:
    """In-memory stand-in for ReplicateClient."""

    def __init__(self):
        self.generate_calls: list[dict] = []
        self.started: list[dict] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0
        self.prediction = PredictionStatus(status="processing")

    async def generate(self, prompt, images, model_ref=None, count=1, timeout=None):
        self.generate_calls.append(
            {"prompt": prompt, "images": images, "model_ref": model_ref, "count": count}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(
            images=[
                {"url": f"https://replicate.delivery/out/{i}.png", "width": 1024, "height": 1024}
                for i in range(1, count + 1)
            ],
            description="A model wearing the garments",
            model=model_ref or "google/nano-banana",
        )

    async def start_prediction(self, prompt, images, model_ref=None, count=1):
        if self.error is not None:
            raise self.error
        self.started.append({"prompt": prompt, "images": images, "model_ref": model_ref})
        return f"pred-{len(self.started)}"

    async def check_prediction(self, prediction_id, model=None):
        return self.prediction


class FakeStorage:
    """In-memory object storage. Refs listed in missing raise StorageNotFoundError."""

    def __init__(self):
        self.missing: set[str] = set()
        self.objects: dict[str, bytes] = {}
        self.downloads: list[str] = []

    async def download(self, ref: str):
        self.downloads.append(ref)
        if ref in self.missing:
            raise StorageNotFoundError(f"Object not found: {ref}")
        return b"\x89PNG fake image bytes", "image/png"

    async def upload(self, path: str, content: bytes, content_type: str = "image/png") -> str:
        self.objects[path] = content
        return f"https://cdn.test/{path}"

    async def store_generated(self, image_url: str, path: str) -> str:
        self.objects[path] = image_url.encode()
        return f"https://cdn.test/{path}"


class FakeWatermark:
    def __init__(self):
        self.applied: list[str] = []

    async def apply(self, image_url: str) -> bytes:
        self.applied.append(image_url)
        return b"watermarked"


class FakeWorkerService:
    """httpx MockTransport handler standing in for the worker service."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 202
        self.timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("acknowledgement timed out", request=request)
        return httpx.Response(self.status_code, json={"accepted": self.status_code < 400})


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite://",
        SCHEDULER_CONCURRENCY=1,
        SCHEDULER_BATCH_SIZE=10,
        MAX_RETRIES=3,
        MAX_ACTIVE_TASKS=3,
        WORKER_BASE_URL="http://workers.test",
        WORKER_API_KEY="worker-secret",
        WORKER_DEADLINE_SECONDS=5,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    """Provide a fresh in-memory database with every table created."""
    factory = setup_db_session(settings.database_url)
    engine = factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def uow_factory(session_factory):
    return create_uow_factory(session_factory)


@pytest.fixture
def worker_service() -> FakeWorkerService:
    return FakeWorkerService()


@pytest_asyncio.fixture
async def services(settings, uow_factory, worker_service):
    ledger = CreditLedger()
    container = Services(
        settings=settings,
        uow_factory=uow_factory,
        ledger=ledger,
        reconciler=Reconciler(uow_factory, ledger),
        ai=FakeAI(),
        storage=FakeStorage(),
        prompts=PromptBuilder(),
        watermark=FakeWatermark(),
        launcher=WorkerLauncher(
            base_url=settings.worker_base_url,
            api_key=settings.worker_api_key,
            timeout=1.0,
            transport=httpx.MockTransport(worker_service),
        ),
    )
    yield container
    await container.launcher.drain()


@pytest_asyncio.fixture
async def user(uow_factory) -> User:
    """User with 20 credits."""
    async with await uow_factory() as uow:
        created = await uow.users.add(User(credits=20))
    return created


@pytest.fixture
def make_task(uow_factory):
    """Insert a task (and its work) in a given state, with credits already charged."""

    async def _make(
        user: User,
        state: TaskState = TaskState.PENDING,
        task_type: TaskType = TaskType.PHOTOGRAPHY,
        params: Optional[dict[str, Any]] = None,
        state_data: Optional[dict[str, Any]] = None,
        credits_cost: int = 2,
        **fields: Any,
    ) -> Task:
        fields.setdefault("credits_deducted", True)
        task = Task(
            user_id=user.id,
            type=task_type,
            state=state,
            status=status_for_state(state),
            params=params
            if params is not None
            else {"images": ["uploads/a.png", "uploads/b.png"], "count": 2, "parameters": {}},
            state_data=state_data or {},
            credits_cost=credits_cost,
            **fields,
        )
        async with await uow_factory() as uow:
            await uow.tasks.add(task)
            if credits_cost and task.credits_deducted:
                await uow.users.debit(user.id, credits_cost)
            await uow.works.add(
                Work(
                    task_id=task.id,
                    user_id=user.id,
                    type=task_type.value,
                    status=WorkStatus.PROCESSING,
                )
            )
        return task

    return _make
