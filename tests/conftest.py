import asyncio
import os
import sys
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any, Generator

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Module-level engine and config are built at import time
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="slidecast-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_RUNTIME_DIR / 'app.db'}")
os.environ.setdefault("MEDIA_ROOT", str(_RUNTIME_DIR / "media"))
os.environ.setdefault("GENERATION_ENABLE_STUB", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from database import create_database_engine, create_session_factory, init_database  # noqa: E402
from services.generation.monitor import MonitorPolicy  # noqa: E402
from services.generation.providers import StubGenerationProvider  # noqa: E402
from services.generation.service import GenerationService  # noqa: E402
from services.storage import LocalObjectStorage  # noqa: E402
from services.websocket_progress import websocket_manager  # noqa: E402
from shared.enums import JobState, ProviderType  # noqa: E402
from shared.utils import config as service_config  # noqa: E402

FAST_POLICY = MonitorPolicy(initial_delay=0.01, poll_interval=0.01, max_duration=5.0, status_timeout=1.0)


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator:
    """SQLite-backed session factory with all tables created."""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_database(engine)
    try:
        yield create_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture
def storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(root=tmp_path / "objects", public_base_url="http://storage.test/media")


@pytest.fixture
def stub_provider(tmp_path: Path) -> StubGenerationProvider:
    return StubGenerationProvider(result_dir=tmp_path / "stub_results")


@pytest.fixture(autouse=True)
def test_environment(tmp_path: Path) -> Generator:
    """Point staging at a per-test directory and reset shared WebSocket state."""
    original_staging = service_config.get("staging_dir")
    service_config.set("staging_dir", str(tmp_path / "staging"))

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(websocket_manager.reset())
    finally:
        loop.close()

    try:
        yield
    finally:
        service_config.set("staging_dir", original_staging)


@pytest.fixture
def build_service(session_factory, storage, stub_provider) -> Callable[..., GenerationService]:
    """Factory for a GenerationService wired to the stub provider and fast timings."""

    def _build(
        provider: StubGenerationProvider | None = None,
        policy: MonitorPolicy = FAST_POLICY,
        **kwargs: Any,
    ) -> GenerationService:
        provider = provider or stub_provider
        return GenerationService(
            session_factory=session_factory,
            providers={ProviderType.STUB: provider},
            storage=kwargs.pop("storage", storage),
            settings=service_config,
            policies={ProviderType.STUB: policy},
            **kwargs,
        )

    return _build


@pytest.fixture
def wait_for() -> Callable[..., Awaitable[Any]]:
    """Poll a condition on the running loop until it holds or the timeout elapses."""

    async def _wait(condition: Callable[[], Any], timeout: float = 3.0, interval: float = 0.01) -> Any:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = condition()
            if result:
                return result
            if asyncio.get_running_loop().time() >= deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait


@pytest.fixture
def wait_for_state(wait_for) -> Callable[..., Awaitable[Any]]:
    """Wait until a job reaches one of the given states and return it."""

    async def _wait(
        service: GenerationService,
        job_id: str,
        states: Iterable[JobState] = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED),
        timeout: float = 3.0,
    ):
        values = {JobState(state).value for state in states}

        def _check():
            job = service.job_store.get(job_id)
            return job if job is not None and job.state in values else None

        return await wait_for(_check, timeout=timeout)

    return _wait
