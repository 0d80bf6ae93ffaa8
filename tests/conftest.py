"""Shared fakes and fixtures."""
import asyncio
import json
from collections import Counter
from typing import Dict, List, Optional

import pytest

from reelflow.api.base import (
    BaseGenerationClient,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    StatusResult,
    TaskStatus,
)
from reelflow.core.config import Config
from reelflow.core.exceptions import MergeError
from reelflow.persistence.base import InMemoryWorkflowStore
from reelflow.utils.storage import ObjectStore
from reelflow.workflow.merger import Merger, MergeResult
from reelflow.workflow.orchestrator import WorkflowOrchestrator


SCRIPT = json.dumps({
    "characters": [
        {"name": "Mira", "imagePrompt": "a young courier with a red scarf"},
        {"name": "Tobi", "imagePrompt": "a small grey robot"},
    ],
    "scenes": [
        {"id": 1, "imagePrompt": "Mira and Tobi on a rooftop", "videoPrompt": "they look at the skyline"},
        {"id": 2, "imagePrompt": "Mira running down stairs", "videoPrompt": "fast tracking shot"},
        {"id": 3, "imagePrompt": "Tobi waving at a train", "videoPrompt": "the train leaves"},
    ],
})

OWNER = "owner-key"


class FakeGenerationClient(BaseGenerationClient):
    """
    In-process provider.

    Every submission gets a task handle (or a finished artifact when
    ``async_tasks`` is off). A task answers ``pending`` for ``pending_polls``
    status checks, then reports the outcome registered for its prompt in
    ``outcomes`` (success by default).
    """

    def __init__(self, script: str = SCRIPT, async_tasks: bool = True, pending_polls: int = 0):
        super().__init__(api_key="test-key")
        self.script = script
        self.async_tasks = async_tasks
        self.pending_polls = pending_polls

        self.outcomes: Dict[str, TaskStatus] = {}
        self.submit_errors: List[Exception] = []
        self.gate: Optional[asyncio.Event] = None
        self.last_frame_models = {"seedance"}

        self.requests: List[GenerationRequest] = []
        self.script_calls = 0
        self.status_calls: Counter = Counter()
        self.tasks: Dict[str, Dict] = {}
        self.active = 0
        self.peak = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    def _get_default_base_url(self) -> str:
        return "https://provider.test"

    def supports_last_frame(self, model):
        return model in self.last_frame_models

    async def generate_script(self, prompt, source_video_url=None, model=None):
        self.script_calls += 1
        await asyncio.sleep(0)
        return self.script

    async def generate(self, request):
        self.requests.append(request)
        number = len(self.requests)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.submit_errors:
                raise self.submit_errors.pop(0)
        finally:
            self.active -= 1

        suffix = ".mp4" if request.kind == GenerationKind.VIDEO else ".png"
        if not self.async_tasks:
            return GenerationResult(artifact_url=f"https://provider.test/sync-{number}{suffix}")

        handle = f"task-{number}"
        self.add_task(handle, request.prompt, suffix, self.pending_polls)
        return GenerationResult(task_handle=handle)

    def add_task(self, handle, prompt, suffix=".png", pending_polls=0):
        self.tasks[handle] = {"prompt": prompt, "suffix": suffix, "remaining": pending_polls}

    async def get_status(self, task_handle):
        self.status_calls[task_handle] += 1
        await asyncio.sleep(0)
        task = self.tasks[task_handle]
        if task["remaining"] > 0:
            task["remaining"] -= 1
            return StatusResult(status=TaskStatus.PENDING)

        outcome = self.outcomes.get(task["prompt"], TaskStatus.SUCCEEDED)
        if outcome == TaskStatus.SUCCEEDED:
            return StatusResult(
                status=outcome,
                artifact_url=f"https://provider.test/{task_handle}{task['suffix']}",
            )
        return StatusResult(status=outcome, error="content policy violation")

    def prompts(self, kind: Optional[GenerationKind] = None) -> List[str]:
        return [r.prompt for r in self.requests if kind is None or r.kind == kind]


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.puts: Dict[str, object] = {}
        self.errors: List[Exception] = []

    async def put(self, source, key=None):
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        self.puts[key] = source
        return f"https://store.test/{key}"


class FakeMerger(Merger):
    def __init__(self):
        self.calls: List[List[str]] = []
        self.error: Optional[MergeError] = None

    async def merge(self, video_urls, key=None):
        self.calls.append(list(video_urls))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return MergeResult(url=f"https://store.test/{key}", strategy="concat")


def make_config(**overrides) -> Config:
    """Config with instant timers and an in-memory store."""
    data = {
        "provider": {"api_key": "test-key"},
        "polling": {"interval": 0, "image_max_attempts": 5, "video_max_attempts": 5},
        "retry": {"max_attempts": 3, "base_delay": 0},
        "storage": {"backend": "memory"},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return Config.from_dict(data)


class Harness:
    """Orchestrator plus the fakes behind it."""

    def __init__(self, config=None, client=None, store=None):
        self.config = config or make_config()
        self.client = client or FakeGenerationClient()
        self.object_store = FakeObjectStore()
        self.store = store or InMemoryWorkflowStore()
        self.merger = FakeMerger()
        self.snapshots = []
        self.orchestrator = self.build()

    def build(self) -> WorkflowOrchestrator:
        orchestrator = WorkflowOrchestrator(
            self.client,
            self.object_store,
            self.store,
            self.merger,
            self.config,
            OWNER,
        )
        orchestrator.subscribe(self.snapshots.append)
        return orchestrator


@pytest.fixture
def harness():
    return Harness()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Spin the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)
