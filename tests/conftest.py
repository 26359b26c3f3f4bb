import tempfile
import threading
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from chunkflow.api.main import create_app
from chunkflow.engine import Engine
from chunkflow.errors import ErrorKind, GenerationError
from chunkflow.generators import ContentGenerator, StubGenerator
from chunkflow.models import EngineConfig
from chunkflow.queue.sqlite_backend import SQLiteChunkQueue, SQLiteDatabase, SQLiteItemStore


class ScriptedGenerator(ContentGenerator):
    """Test generator: fails selected payloads, records every call.

    Args:
        transient: Payloads that always raise a transient error
        permanent: Payloads that always raise a permanent error
        hook: Called with the payload before generating
    """

    name = "scripted"

    def __init__(self, transient=(), permanent=(), hook=None):
        self.transient = set(transient)
        self.permanent = set(permanent)
        self.hook = hook
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, payload, config):
        with self._lock:
            self.calls.append(payload)
        if self.hook is not None:
            self.hook(payload)
        if payload in self.permanent:
            raise GenerationError(f"invalid api key for {payload}", ErrorKind.PERMANENT, 401)
        if payload in self.transient:
            raise GenerationError(f"upstream 503 for {payload}", ErrorKind.TRANSIENT, 503)
        return f"opener for {payload}"

    def attempts_for(self, payload):
        with self._lock:
            return self.calls.count(payload)


@pytest.fixture
def temp_dir():
    """Temporary directory for databases and artifacts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def database(temp_dir):
    """Shared SQLite handle on a temporary file."""
    db = SQLiteDatabase(temp_dir / "test.db")
    yield db
    db.close()


@pytest.fixture
def store(database):
    return SQLiteItemStore(database)


@pytest.fixture
def queue(database):
    return SQLiteChunkQueue(database)


@pytest.fixture
def test_config(temp_dir):
    """Engine config with zero backoff, short polls and no janitor delays."""
    return EngineConfig.from_dict({
        "database": {
            "path": str(temp_dir / "engine.db"),
            "artifact_dir": str(temp_dir / "artifacts"),
        },
        "queue": {"chunk_size": 500},
        "workers": {"count": 2, "poll_interval_s": 0.01},
        "retry": {"max_retries": 3, "base_delay_s": 0.0},
        "janitor": {
            "interval_s": 3600,
            "startup_delay_s": 3600,
            "cleanup_attempts": 2,
            "cleanup_pause_s": 0.0,
            "completion_cleanup_delay_s": 0.0,
        },
        "generator": {"backend": "stub"},
    })


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def engine(test_config, generator):
    """Engine that is not started: tests drive workers inline."""
    eng = Engine(test_config, generator=generator)
    yield eng
    eng.shutdown()


@pytest.fixture
def controller(engine):
    return engine.controller


@pytest.fixture
def api_engine(test_config):
    """Running engine backed by the stub generator, for API tests."""
    eng = Engine(test_config, generator=StubGenerator())
    eng.start()
    yield eng
    eng.shutdown()


@pytest.fixture(scope="function")
async def client(api_engine):
    app = create_app(engine=api_engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_generator():
    """Factory for ScriptedGenerator instances."""
    return ScriptedGenerator
