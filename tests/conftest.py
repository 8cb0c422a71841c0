"""Pytest configuration and shared fixtures."""

import asyncio
import json
import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Set test environment
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-REDACTED")
os.environ.setdefault("TASKGRAPH_LOG_TO_FILE", "false")
os.environ.setdefault("TASKGRAPH_LOG_LEVEL", "DEBUG")
os.environ.setdefault("TASKGRAPH_AI_RETRY_DELAY", "0")

from taskgraph.ai.models import AIConfig, AIRole, RetryPolicy, RoleConfig  # noqa: E402
from taskgraph.ai.orchestrator import AIOrchestrator  # noqa: E402
from taskgraph.ai.providers import ProviderRequest, ProviderResponse  # noqa: E402
from taskgraph.core.exceptions import ProviderCallError  # noqa: E402
from taskgraph.tasks.models import Subtask, Task, TaskCollection, TaskStatus  # noqa: E402
from taskgraph.tasks.mutations import TaskMutationEngine  # noqa: E402
from taskgraph.tasks.store import JsonTaskStore  # noqa: E402

PROJECT = "demo"


# =============================================================================
# FAKE PROVIDERS
# =============================================================================


class ScriptedProvider:
    """
    Provider that replays a queue of responses.

    Queue items may be a string (response text), a dict or list (encoded as
    JSON), an exception instance (raised) or an async callable taking the
    request (awaited, for slow or cancellable calls).
    """

    def __init__(self, name: str, responses: list[Any] | None = None) -> None:
        self.name = name
        self.responses: list[Any] = list(responses or [])
        self.calls: list[ProviderRequest] = []

    def push(self, *items: Any) -> None:
        self.responses.extend(items)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        if not self.responses:
            raise ProviderCallError(f"{self.name}: no scripted response left", retryable=False)

        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(request)
        if isinstance(item, (dict, list)):
            item = json.dumps(item)
        return ProviderResponse(text=item, input_tokens=100, output_tokens=50, model=request.model)


def _slow_response(delay: float, text: str = "{}") -> Callable[[ProviderRequest], Awaitable[ProviderResponse]]:
    """Build a queue item that sleeps before answering."""

    async def respond(request: ProviderRequest) -> ProviderResponse:
        await asyncio.sleep(delay)
        return ProviderResponse(text=text, input_tokens=10, output_tokens=5, model=request.model)

    return respond


@pytest.fixture
def slow_response() -> Callable[..., Callable[[ProviderRequest], Awaitable[ProviderResponse]]]:
    return _slow_response


@pytest.fixture
def ai_config() -> AIConfig:
    """Three roles on fake providers, zero retry delay."""
    return AIConfig(
        roles={
            AIRole.MAIN: RoleConfig(provider="primary", model="primary-model"),
            AIRole.RESEARCH: RoleConfig(provider="research", model="research-model"),
            AIRole.FALLBACK: RoleConfig(provider="backup", model="backup-model"),
        },
        primary_retry=RetryPolicy(max_retries=2, initial_delay=0.0),
        fallback_retry=RetryPolicy(max_retries=1, initial_delay=0.0),
        timeout_seconds=5.0,
    )


@pytest.fixture
def providers() -> dict[str, ScriptedProvider]:
    return {
        "primary": ScriptedProvider("primary"),
        "research": ScriptedProvider("research"),
        "backup": ScriptedProvider("backup"),
    }


@pytest.fixture
def orchestrator(ai_config: AIConfig, providers: dict[str, ScriptedProvider]) -> AIOrchestrator:
    return AIOrchestrator(ai_config, providers=providers)


# =============================================================================
# TASK DATA
# =============================================================================


@pytest.fixture
def mock_settings() -> Generator:
    """Clear cached settings around a test."""
    from taskgraph.core.config import clear_settings_cache

    clear_settings_cache()

    yield

    clear_settings_cache()


@pytest.fixture
def sample_collection() -> TaskCollection:
    """Provide a small project: a chain 1 <- 2 <- 3 plus an independent task 4."""
    return TaskCollection(
        tasks=[
            Task(
                id=1,
                title="Initialize repository",
                description="Create the project skeleton and CI pipeline",
                status=TaskStatus.DONE,
                priority="high",
            ),
            Task(
                id=2,
                title="Design database schema",
                description="Define tables for users and orders, plus migration scripts",
                priority="high",
                dependencies=[1],
            ),
            Task(
                id=3,
                title="Implement order API",
                description="REST API endpoints for orders with authentication",
                dependencies=[2],
                subtasks=[
                    Subtask(id=1, title="Create router"),
                    Subtask(id=2, title="Add validation"),
                ],
            ),
            Task(
                id=4,
                title="Write README",
                priority="low",
            ),
        ],
        lastTaskId=4,
        metadata={"projectName": "Demo"},
    )


@pytest.fixture
def project_ref() -> str:
    return PROJECT


@pytest.fixture
def json_store(tmp_path: Path) -> JsonTaskStore:
    return JsonTaskStore(tmp_path / "data", backup_retention=3)


@pytest_asyncio.fixture
async def seeded_store(json_store: JsonTaskStore, sample_collection: TaskCollection) -> AsyncGenerator[JsonTaskStore, None]:
    """JSON store with the sample collection saved under PROJECT."""
    await json_store.save(PROJECT, sample_collection)
    yield json_store


@pytest.fixture
def engine(seeded_store: JsonTaskStore, orchestrator: AIOrchestrator) -> TaskMutationEngine:
    return TaskMutationEngine(seeded_store, orchestrator, batch_concurrency=2)


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
