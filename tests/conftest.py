from __future__ import annotations

import copy
import os
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable

import pytest

os.environ.setdefault("SUPABASE_URL", "http://supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("INTERNAL_API_KEY", "internal-key")

from app.models.recipe import Recipe, RecipeStatus, RecipeStep, StepType
from app.providers.common import ProviderResult
from app.providers.registry import OutputFormatAdapter
from app.providers.stt import SonioxSTTAdapter
from app.services.execution_store import ExecutionStore
from app.services.recipe_engine import RecipeEngine
from app.services.scoring import FactCheckScorer
from app.services.step_executor import StepExecutor


class _Query:
    def __init__(self, table: "_Table", action: str, payload: Any = None, on_conflict: str | None = None):
        self._table = table
        self._action = action
        self._payload = payload
        self._on_conflict = on_conflict
        self._filters: list[Callable[[dict[str, Any]], bool]] = []
        self._order: tuple[str, bool] | None = None
        self._limit: int | None = None

    def eq(self, column: str, value: Any):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values: list[Any]):
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def lt(self, column: str, value: Any):
        self._filters.append(lambda row: row.get(column) is not None and row.get(column) < value)
        return self

    def order(self, column: str, desc: bool = False):
        self._order = (column, desc)
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _matches(self) -> list[dict[str, Any]]:
        return [row for row in self._table.rows if all(check(row) for check in self._filters)]

    def execute(self):
        if self._action == "select":
            rows = self._matches()
            if self._order is not None:
                column, desc = self._order
                rows = sorted(rows, key=lambda row: (row.get(column) is None, row.get(column)), reverse=desc)
            if self._limit is not None:
                rows = rows[: self._limit]
            return SimpleNamespace(data=copy.deepcopy(rows))

        if self._action == "insert":
            payloads = self._payload if isinstance(self._payload, list) else [self._payload]
            return SimpleNamespace(data=[copy.deepcopy(self._table.insert_row(item)) for item in payloads])

        if self._action == "update":
            updated = []
            for row in self._matches():
                row.update(copy.deepcopy(self._payload))
                updated.append(copy.deepcopy(row))
            return SimpleNamespace(data=updated)

        if self._action == "upsert":
            keys = [key.strip() for key in (self._on_conflict or "id").split(",")]
            for row in self._table.rows:
                if all(row.get(key) == self._payload.get(key) for key in keys):
                    row.update(copy.deepcopy(self._payload))
                    return SimpleNamespace(data=[copy.deepcopy(row)])
            return SimpleNamespace(data=[copy.deepcopy(self._table.insert_row(self._payload))])

        if self._action == "delete":
            removed = self._matches()
            self._table.rows = [row for row in self._table.rows if row not in removed]
            return SimpleNamespace(data=copy.deepcopy(removed))

        raise AssertionError(f"Unexpected action: {self._action}")


class _Table:
    def __init__(self, stub: "_SupabaseStub", name: str):
        self.stub = stub
        self.name = name
        self.rows: list[dict[str, Any]] = []

    def insert_row(self, payload: dict[str, Any]) -> dict[str, Any]:
        timestamp = self.stub.tick()
        row = {"id": str(uuid.uuid4()), "created_at": timestamp, "updated_at": timestamp}
        row.update(copy.deepcopy(payload))
        self.rows.append(row)
        return row

    def select(self, *_args, **_kwargs):
        return _Query(self, "select")

    def insert(self, payload: Any):
        return _Query(self, "insert", payload)

    def update(self, payload: dict[str, Any]):
        return _Query(self, "update", payload)

    def upsert(self, payload: dict[str, Any], on_conflict: str | None = None):
        return _Query(self, "upsert", payload, on_conflict=on_conflict)

    def delete(self):
        return _Query(self, "delete")


class _Bucket:
    def __init__(self, storage: "_StorageStub", name: str):
        self._storage = storage
        self._name = name

    def upload(self, path: str, file: bytes, file_options: dict[str, Any] | None = None):
        self._storage.objects[(self._name, path)] = {"content": file, "file_options": file_options}
        return SimpleNamespace(path=path)

    def create_signed_url(self, path: str, expires_in: int):
        return {"signedURL": f"https://storage.test/{self._name}/{path}?expires={expires_in}"}


class _StorageStub:
    def __init__(self):
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}

    def from_(self, bucket: str) -> _Bucket:
        return _Bucket(self, bucket)


class _SupabaseStub:
    """In-memory stand-in for the supabase client: filters run at execute time."""

    def __init__(self):
        self.tables: dict[str, _Table] = {}
        self.storage = _StorageStub()
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def table(self, table_name: str) -> _Table:
        if table_name not in self.tables:
            self.tables[table_name] = _Table(self, table_name)
        return self.tables[table_name]

    def rows(self, table_name: str) -> list[dict[str, Any]]:
        return self.table(table_name).rows


class FakeAdapter:
    """Records params and answers through ``respond`` (may raise)."""

    def __init__(self, provider: str, respond: Callable[[dict[str, Any]], ProviderResult]):
        self.provider = provider
        self.respond = respond
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        self.calls.append(params)
        return self.respond(params)


class ManualScheduler:
    def __init__(self):
        self.scheduled: list[str] = []
        self.schedule_counts: list[int] = []

    async def schedule(self, execution_id: str, *, schedule_count: int = 0) -> str:
        self.scheduled.append(execution_id)
        self.schedule_counts.append(schedule_count)
        return f"run-{len(self.scheduled)}"


def _echo_llm(params: dict[str, Any]) -> ProviderResult:
    return ProviderResult(
        output={"text": f"LLM: {params['user_content']}"},
        usage={"input_tokens": 1_000_000, "output_tokens": 500_000},
        latency_ms=12,
        model=params["model"],
        provider_response_id="resp-llm",
    )


def _fake_tts(params: dict[str, Any]) -> ProviderResult:
    return ProviderResult(
        output={"audio": b"ID3-audio", "mime_type": "audio/mpeg", "voice_id": "voice-1", "chars": len(params["text"])},
        usage={"chars": 1000},
        latency_ms=30,
        model="eleven_v3",
    )


@pytest.fixture
def supabase() -> _SupabaseStub:
    return _SupabaseStub()


@pytest.fixture
def store(supabase: _SupabaseStub) -> ExecutionStore:
    return ExecutionStore(client=supabase)


@pytest.fixture
def make_recipe(store: ExecutionStore):
    def _make(steps: list[dict[str, Any]], *, status: RecipeStatus = RecipeStatus.ACTIVE, slug: str = "test-recipe") -> Recipe:
        row = {
            "name": slug.upper(),
            "slug": slug,
            "input_kind": "text",
            "input_modes": ["text"],
            "default_lang": "sl",
            "status": status.value,
            "current_version": 1,
        }
        return store.create_recipe(row, [RecipeStep(**step) for step in steps])

    return _make


@pytest.fixture
def adapters() -> dict[StepType, Any]:
    return {
        StepType.STT: SonioxSTTAdapter(api_key=None),
        StepType.LLM: FakeAdapter("llm", _echo_llm),
        StepType.TTS: FakeAdapter("elevenlabs", _fake_tts),
        StepType.OUTPUT_FORMAT: OutputFormatAdapter(),
    }


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_engine(store: ExecutionStore, supabase: _SupabaseStub, scheduler: ManualScheduler):
    def _store_artifact(execution_id: str, step_index: int, content: bytes, mime_type: str) -> str:
        key = f"executions/{execution_id}/step-{step_index}.mp3"
        supabase.storage.from_("recipe-artifacts").upload(key, content, {"content-type": mime_type})
        return key

    def _make(adapters: dict[StepType, Any], **executor_kwargs: Any) -> RecipeEngine:
        executor = StepExecutor(
            store,
            adapters,
            timeouts={step_type: 5.0 for step_type in StepType},
            llm_default_model="gpt-5-mini",
            preview_max_chars=executor_kwargs.pop("preview_max_chars", 200),
            sign_url=lambda key: f"https://storage.test/signed/{key}",
            store_artifact=_store_artifact,
            **executor_kwargs,
        )
        return RecipeEngine(store, executor, scheduler, scorer=FactCheckScorer())

    return _make


@pytest.fixture
def fake_adapter():
    return FakeAdapter
