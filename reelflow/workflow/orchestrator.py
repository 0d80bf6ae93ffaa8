"""
Workflow Orchestrator
=====================

Drives a workflow from script to merged video and exposes the command
surface used by the presentation layer.

The orchestrator is the single owner of the in-memory aggregate. Every
state-affecting change goes through ``_checkpoint``, which recomputes the
stage, persists the whole aggregate and publishes an immutable snapshot to
subscribers. Item jobs are bound to ``(item id, epoch)``; a job whose item
was deleted or reset in the meantime finishes without touching anything.
"""

import asyncio
import logging
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union, TYPE_CHECKING

from ..api.base import BaseGenerationClient, GenerationKind, GenerationRequest
from ..core.config import Config
from ..core.exceptions import (
    ReelflowError,
    ScriptParseError,
    StoppedError,
    ValidationError,
    WorkflowNotFoundError,
)
from ..core.security import redact_api_key, validate_url
from ..utils.storage import ObjectStore, guess_suffix, object_key
from .dispatcher import Dispatcher, DispatchReport, Job
from .merger import Merger
from .models import (
    ChatMessage,
    ITEM_TYPES,
    Character,
    Item,
    ItemKind,
    ItemStatus,
    Scene,
    StepStatus,
    Video,
    Workflow,
    WorkflowSettings,
    WorkflowStage,
    WorkflowStatus,
)
from .poller import Poller
from .retry import with_retry
from .script import build_script_prompt, parse_script
from .state import (
    ENTRY_STATUS,
    final_status,
    progress,
    recompute_stage,
    reset_item,
    transition,
)

if TYPE_CHECKING:
    from ..persistence.base import WorkflowStore

logger = logging.getLogger(__name__)


INTERRUPTED_MESSAGE = "Generation interrupted, please retry"

# Error codes of items whose provider task may still finish
REATTACHABLE_CODES = ("StoppedError", "PollTimeoutError")

STAGE_ORDER = list(WorkflowStage)

STAGE_NOTIFICATIONS = {
    WorkflowStage.CHARACTERS_DONE: ("characters", "Character images finished"),
    WorkflowStage.SCENES_DONE: ("scenes", "Scene images finished"),
    WorkflowStage.VIDEOS_DONE: ("videos", "Videos finished"),
}

# Payload keys that add_item never takes from the caller
RESERVED_FIELDS = {
    "id", "status", "epoch", "task_handle", "error", "error_code",
    "started_at", "completed_at", "durable_url",
}

# Fields an edit may not change on top of the reserved ones
EDIT_PROTECTED_FIELDS = RESERVED_FIELDS | {
    "artifact_url", "interrupted_from", "scene_id", "scene_index", "video_id",
}


# =============================================================================
# Command Types
# =============================================================================


@dataclass
class WorkflowInput:
    """Input of ``start``: a source video, an idea, or a ready-made script."""

    title: str = ""
    source_video_url: Optional[str] = None
    idea: Optional[str] = None
    script: Optional[str] = None
    script_prompt: Optional[str] = None


@dataclass
class ItemOverrides:
    """Replacement values applied by an explicit retry."""

    prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    model: Optional[str] = None
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[int] = None

    def for_item(self, item: Item) -> Dict[str, Any]:
        """Map the overrides onto the fields ``item`` actually has."""
        values = {
            "prompt": self.prompt,
            "model": self.model,
            "size": self.size,
            "aspect_ratio": self.aspect_ratio,
        }
        if isinstance(item, Scene):
            values["video_prompt"] = self.video_prompt
            values["video_duration"] = self.duration
        elif isinstance(item, Video):
            values["duration"] = self.duration

        known = {f.name for f in fields(item)}
        return {k: v for k, v in values.items() if v is not None and k in known}


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Read-only view of the aggregate at one checkpoint."""

    workflow_id: str
    stage: WorkflowStage
    status: WorkflowStatus
    progress: Mapping[str, Any]
    data: Mapping[str, Any]

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowSnapshot":
        return cls(
            workflow_id=workflow.id,
            stage=workflow.stage,
            status=workflow.status,
            progress=_freeze(progress(workflow)),
            data=_freeze(workflow.to_dict()),
        )

    def items(self, kind: ItemKind) -> Tuple[Mapping[str, Any], ...]:
        return self.data[f"{kind.value}s"]


Subscriber = Callable[[WorkflowSnapshot], None]


# =============================================================================
# Orchestrator
# =============================================================================


class WorkflowOrchestrator:
    """
    Background workflow orchestrator.

    Usage:
        orchestrator = WorkflowOrchestrator(client, object_store, store, merger, config, owner_key)
        unsubscribe = orchestrator.subscribe(render)
        workflow = await orchestrator.start(WorkflowInput(idea="A cat learns to surf"))

    ``start``, ``resume`` and ``advance`` run the pipeline until it has
    nothing left to do (or pauses); wrap them in a task to run them in the
    background and call ``stop`` from elsewhere.
    """

    def __init__(
        self,
        client: BaseGenerationClient,
        object_store: ObjectStore,
        store: "WorkflowStore",
        merger: Merger,
        config: Config,
        owner_key: str,
        *,
        dispatcher: Optional[Dispatcher] = None,
        poller: Optional[Poller] = None,
    ):
        self.client = client
        self.object_store = object_store
        self.store = store
        self.merger = merger
        self.config = config
        self.owner_key = owner_key

        self.dispatcher = dispatcher or Dispatcher(config.job_class_limits())
        self.poller = poller or Poller(client, config.polling)

        self.workflow: Optional[Workflow] = None
        self._stop_event = asyncio.Event()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None
        self._save_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribers: List[Subscriber] = []
        self._running = False

    # -------------------------------------------------------------------------
    # Lifecycle Commands
    # -------------------------------------------------------------------------

    async def start(self, request: WorkflowInput) -> Workflow:
        """
        Create a workflow and run it.

        Args:
            request: Source video, idea or script plus an optional title

        Returns:
            The workflow once the run has finished or paused

        Raises:
            ValidationError: If the input is empty or a run is in progress
        """
        if self._running:
            raise ValidationError("A workflow is already running", field="workflow")
        if not (request.source_video_url or request.idea or request.script):
            raise ValidationError(
                "A source video, an idea or a script is required",
                field="source_video_url",
            )
        if request.source_video_url:
            validate_url(request.source_video_url)

        workflow = Workflow(
            owner_key=self.owner_key,
            title=request.title or "Untitled workflow",
            source_video_url=request.source_video_url,
            idea=request.idea,
            script_prompt=request.script_prompt,
            settings=WorkflowSettings.from_config(self.config.generation),
        )
        if request.script:
            workflow.script = request.script
            workflow.script_status = StepStatus.DONE

        self.workflow = workflow
        logger.info(f"Starting workflow {workflow.id} ({workflow.title})")
        self._begin_run()
        await self._checkpoint()

        await self._run_pipeline()
        return workflow

    async def stop(self) -> None:
        """Stop admitting work and end every in-flight poll."""
        self._stop_event.set()
        workflow = self.workflow
        if workflow is None:
            return
        logger.info(f"Stop requested for workflow {workflow.id}")
        if workflow.status in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING):
            workflow.status = WorkflowStatus.STOPPED
            await self._checkpoint()

    async def restore(self, workflow_id: Optional[str] = None) -> Optional[Workflow]:
        """
        Load a workflow and mark its abandoned work as interrupted.

        Args:
            workflow_id: Workflow to load; defaults to the owner's most
                recently updated active workflow

        Returns:
            The restored workflow, or None when the owner has nothing to resume

        Raises:
            WorkflowNotFoundError: If ``workflow_id`` is unknown or belongs
                to another owner
        """
        if self._running:
            raise ValidationError("A workflow is already running", field="workflow")

        if workflow_id:
            workflow = await self.store.load(workflow_id)
            if workflow is None or workflow.owner_key != self.owner_key:
                raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        else:
            active = await self.store.list_active_for_owner(self.owner_key)
            if not active:
                logger.info("No workflow to restore")
                return None
            workflow = active[0]

        interrupted = 0
        for kind in ItemKind:
            for item in workflow.items(kind):
                if item.status.is_in_flight:
                    transition(item, ItemStatus.INTERRUPTED)
                    item.error = INTERRUPTED_MESSAGE
                    interrupted += 1

        if workflow.script_status == StepStatus.RUNNING:
            workflow.script_status = StepStatus.PENDING
        if workflow.merge_status == StepStatus.RUNNING:
            workflow.merge_status = StepStatus.PENDING

        if interrupted or workflow.status == WorkflowStatus.RUNNING:
            workflow.status = WorkflowStatus.INTERRUPTED

        self.workflow = workflow
        logger.info(f"Restored workflow {workflow.id}: {interrupted} interrupted items")
        await self._checkpoint()
        return workflow

    async def resume(self, workflow_id: Optional[str] = None) -> Optional[Workflow]:
        """
        Re-attach to unfinished provider tasks and continue the run.

        Items holding a task handle are polled again without resubmission;
        items cut short while uploading copy their provider artifact again;
        everything else that was cut short goes back to
        ``pending``.
        """
        if self._running:
            raise ValidationError("A workflow is already running", field="workflow")
        if self.workflow is None or (workflow_id and self.workflow.id != workflow_id):
            if await self.restore(workflow_id) is None:
                return None

        workflow = self.workflow
        self._begin_run()
        epoch = workflow.next_epoch()

        reattach: Dict[ItemKind, List[str]] = {kind: [] for kind in ItemKind}
        for kind in ItemKind:
            for item in workflow.items(kind):
                if not self._is_resumable(item):
                    continue
                # Only an upload that was cut short reuses the provider artifact
                uploadable = item.interrupted_from == ItemStatus.UPLOADING and bool(item.artifact_url)
                if item.task_handle or uploadable:
                    item.epoch = epoch
                    reattach[kind].append(item.id)
                else:
                    reset_item(item, epoch)

        count = sum(len(ids) for ids in reattach.values())
        logger.info(f"Resuming workflow {workflow.id}: re-attaching {count} items")
        await self._checkpoint()

        cancel_event = self._stop_event
        jobs = [
            Job(
                key=item_id,
                run=self._bind(self._resume_item, kind, item_id, epoch, cancel_event),
                job_class=kind.job_class,
            )
            for kind in ItemKind
            for item_id in reattach[kind]
        ]
        if jobs:
            await self.dispatcher.dispatch(jobs, cancel_event=cancel_event)

        await self._run_pipeline(cancel_event)
        return workflow

    async def advance(self) -> Workflow:
        """Continue a workflow paused between collections."""
        workflow = self._require()
        if self._running:
            raise ValidationError("A workflow is already running", field="workflow")
        self._begin_run()
        await self._checkpoint()
        await self._run_pipeline()
        return workflow

    # -------------------------------------------------------------------------
    # Item Commands
    # -------------------------------------------------------------------------

    async def retry_item(
        self,
        kind: ItemKind,
        item_id: str,
        overrides: Optional[ItemOverrides] = None,
    ) -> Item:
        """
        Regenerate one item, optionally with a new prompt, model or size.

        Any job still running for the item belongs to an older epoch and
        will be discarded when it completes.
        """
        workflow = self._require()
        item = workflow.get(kind, item_id)
        epoch = workflow.next_epoch()
        reset_item(item, epoch, overrides.for_item(item) if overrides else None)
        if kind is ItemKind.VIDEO:
            self._reset_merge()

        logger.info(f"Retrying {kind.value} {item_id} (epoch {epoch})")
        self._clear_stop()
        await self._checkpoint()
        await self._dispatch(kind, [item_id], epoch)
        await self._settle()
        return item

    async def batch_regenerate(
        self,
        kind: ItemKind,
        prompts: Optional[Dict[str, str]] = None,
    ) -> DispatchReport:
        """
        Regenerate every item of a collection under a new epoch.

        Args:
            kind: Collection to regenerate
            prompts: Replacement prompts by item id

        Returns:
            DispatchReport of the batch
        """
        workflow = self._require()
        epoch = workflow.next_epoch()
        item_ids = []
        for item in workflow.items(kind):
            prompt = (prompts or {}).get(item.id)
            reset_item(item, epoch, {"prompt": prompt} if prompt else None)
            item_ids.append(item.id)
        if kind is ItemKind.VIDEO:
            self._reset_merge()

        logger.info(f"Regenerating {len(item_ids)} {kind.value} items (epoch {epoch})")
        self._clear_stop()
        await self._checkpoint()
        report = await self._dispatch(kind, item_ids, epoch)
        await self._settle()
        return report

    async def update_item(self, kind: ItemKind, item_id: str, changes: Dict[str, Any]) -> Item:
        """
        Edit an item's stored values without regenerating it.

        Args:
            kind: Item collection
            item_id: Item to edit
            changes: New values for editable fields (prompt, name, model, ...)

        Returns:
            The edited item

        Raises:
            ValidationError: For a reserved or unknown field, or an empty prompt
        """
        workflow = self._require()
        item = workflow.get(kind, item_id)
        known = {f.name for f in fields(item)}
        for key in changes:
            if key in EDIT_PROTECTED_FIELDS or key not in known:
                raise ValidationError(f"{kind.value} field {key!r} cannot be edited", field=key)
        if "prompt" in changes and not (changes["prompt"] or "").strip():
            raise ValidationError("Prompt is required", field="prompt")

        for key, value in changes.items():
            setattr(item, key, value)
        logger.info(f"Updated {kind.value} {item_id}: {', '.join(sorted(changes))}")
        await self._checkpoint()
        return item

    async def upload_item_image(
        self,
        kind: ItemKind,
        item_id: str,
        data: bytes,
        suffix: str = ".png",
    ) -> Item:
        """
        Replace a character or scene image with a user-supplied file.

        The item takes a new epoch, so a generation still running for it is
        discarded when it completes.

        Args:
            kind: ``character`` or ``scene``
            item_id: Item whose image is replaced
            data: Image bytes
            suffix: File extension of the stored object

        Returns:
            The item, ``done`` with the uploaded image
        """
        if kind is ItemKind.VIDEO:
            raise ValidationError("Only character and scene images can be uploaded", field="kind")
        if not data:
            raise ValidationError("Image data is empty", field="data")

        workflow = self._require()
        item = workflow.get(kind, item_id)
        epoch = workflow.next_epoch()
        reset_item(item, epoch)
        item.artifact_url = None

        logger.info(f"Uploading image for {kind.value} {item_id} ({len(data)} bytes, epoch {epoch})")
        self._clear_stop()
        try:
            await self._upload(kind, item_id, epoch, data, self._stop_event, suffix=suffix)
        except Exception as e:
            await self._fail(kind, item_id, epoch, e)
            raise
        await self._settle()
        return item

    async def add_item(
        self,
        kind: ItemKind,
        payload: Dict[str, Any],
        insert_after: Optional[str] = None,
    ) -> Item:
        """
        Insert a new pending item.

        Args:
            kind: Target collection
            payload: Field values (``prompt`` is required)
            insert_after: Id of the item to insert after; appended when omitted

        Returns:
            The new item, with a fresh id
        """
        workflow = self._require()
        item_type = ITEM_TYPES[kind]
        known = {f.name for f in fields(item_type)} - RESERVED_FIELDS
        values = {k: v for k, v in payload.items() if k in known}
        if not (values.get("prompt") or "").strip():
            raise ValidationError("Prompt is required", field="prompt")

        items = workflow.items(kind)
        position = workflow.index_of(kind, insert_after) + 1 if insert_after else len(items)

        scene = None
        if kind is ItemKind.VIDEO and values.get("scene_id"):
            scene = workflow.get(ItemKind.SCENE, values["scene_id"])

        item = item_type(id=workflow.new_item_id(kind), **values)
        if isinstance(item, Character) and not item.name:
            item.name = f"Character {len(workflow.characters) + 1}"
        if scene is not None:
            scene.video_id = item.id
        items.insert(position, item)
        if kind is ItemKind.VIDEO:
            self._reset_merge()

        logger.info(f"Added {kind.value} {item.id} at position {position}")
        await self._checkpoint()
        return item

    async def delete_item(self, kind: ItemKind, item_id: str) -> None:
        """Remove an item; a job still running for it becomes a no-op."""
        workflow = self._require()
        items = workflow.items(kind)
        item = items.pop(workflow.index_of(kind, item_id))
        if item.status.is_in_flight:
            logger.info(f"Deleted {kind.value} {item_id} while {item.status.value}; its job will be discarded")
        else:
            logger.info(f"Deleted {kind.value} {item_id}")
        if kind is ItemKind.VIDEO:
            self._reset_merge()
        await self._checkpoint()

    async def reorder(self, kind: ItemKind, item_id: str, to_index: int) -> None:
        """Move an item within its collection; ids and jobs are unaffected."""
        workflow = self._require()
        items = workflow.items(kind)
        item = items.pop(workflow.index_of(kind, item_id))
        to_index = max(0, min(to_index, len(items)))
        items.insert(to_index, item)
        if kind is ItemKind.VIDEO:
            self._reset_merge()
        await self._checkpoint()

    # -------------------------------------------------------------------------
    # Script, Chat and Merge Commands
    # -------------------------------------------------------------------------

    async def update_script(self, text: str, reparse: bool = True) -> Workflow:
        """
        Replace the script.

        With ``reparse`` the character and scene lists are rebuilt from the
        new text (fresh ids; jobs of the old items are discarded). Call
        ``advance`` to generate them.
        """
        workflow = self._require()
        workflow.script = text
        workflow.script_status = StepStatus.DONE
        workflow.script_error = None
        if reparse:
            workflow.parsed = False
            if not self._running:
                workflow.status = WorkflowStatus.WAITING
            await self._parse_script()
        else:
            await self._checkpoint()
        return workflow

    async def add_chat_message(self, role: str, content: str) -> ChatMessage:
        workflow = self._require()
        message = ChatMessage(role=role, content=content)
        workflow.chat.append(message)
        await self._checkpoint()
        return message

    async def retry_merge(self) -> Workflow:
        """Run the merge again after a failure or a change to the videos."""
        workflow = self._require()
        if not any(v.status == ItemStatus.DONE for v in workflow.videos):
            raise ValidationError("No finished videos to merge", field="videos")
        if not all(v.status.is_terminal for v in workflow.videos):
            raise ValidationError("Videos are still being generated", field="videos")
        self._reset_merge()
        self._clear_stop()
        await self._merge()
        if not self._running:
            await self._finish()
        return workflow

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot.from_workflow(self._require())

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Receive a snapshot after every checkpoint.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run_pipeline(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        workflow = self._require()
        # A run only answers to the stop signal it started with
        cancel_event = cancel_event or self._stop_event
        self._running = True
        try:
            await self._run_steps(cancel_event)
        except ReelflowError as e:
            # Stage-blocking failure; item state is preserved
            logger.error(f"Workflow {workflow.id} halted: {redact_api_key(e.message)}")
        finally:
            self._running = False

        if workflow.status != WorkflowStatus.WAITING:
            await self._finish(cancel_event)

    async def _run_steps(self, cancel_event: asyncio.Event) -> None:
        workflow = self._require()
        if not workflow.parsed:
            if not workflow.script:
                await self._generate_script(cancel_event)
            if cancel_event.is_set() or not workflow.script:
                return
            await self._parse_script()

        for kind in ItemKind:
            if cancel_event.is_set():
                return
            if kind is ItemKind.VIDEO:
                self._build_videos()
            dispatched = await self._run_collection(kind, cancel_event)
            if cancel_event.is_set():
                return
            if dispatched and kind is not ItemKind.VIDEO and not self.config.workflow.auto_advance:
                workflow.status = WorkflowStatus.WAITING
                logger.info(f"Workflow {workflow.id} waiting after {kind.value} images")
                await self._checkpoint()
                return

        await self._merge()

    async def _generate_script(self, cancel_event: asyncio.Event) -> None:
        workflow = self._require()
        workflow.script_status = StepStatus.RUNNING
        workflow.script_error = None
        await self._checkpoint()

        prompt = build_script_prompt(workflow.script_prompt, workflow.idea)
        try:
            text = await with_retry(
                lambda: self.client.generate_script(
                    prompt,
                    source_video_url=workflow.source_video_url,
                    model=self.config.generation.script_model,
                ),
                max_attempts=self.config.retry.max_attempts,
                base_delay=self.config.retry.base_delay,
                cancel_event=cancel_event,
                description="script generation",
            )
        except StoppedError:
            workflow.script_status = StepStatus.PENDING
            await self._checkpoint()
            return
        except ReelflowError as e:
            workflow.script_status = StepStatus.ERROR
            workflow.script_error = e.message
            await self._checkpoint()
            raise

        workflow.script = text
        workflow.script_status = StepStatus.DONE
        logger.info(f"Script generated ({len(text)} chars)")
        await self._checkpoint()

    async def _parse_script(self) -> None:
        workflow = self._require()
        try:
            parsed = parse_script(workflow.script)
        except ScriptParseError as e:
            workflow.script_status = StepStatus.ERROR
            workflow.script_error = e.message
            await self._checkpoint()
            raise

        settings = workflow.settings
        workflow.characters = [
            Character(
                id=workflow.new_item_id(ItemKind.CHARACTER),
                name=c.name,
                prompt=c.prompt or c.description or c.name,
                description=c.description,
            )
            for c in parsed.characters
        ]
        workflow.scenes = [
            Scene(
                id=workflow.new_item_id(ItemKind.SCENE),
                number=s.number,
                prompt=s.image_prompt,
                video_prompt=s.video_prompt,
                video_model=settings.video_model,
                video_duration=settings.video_duration,
            )
            for s in parsed.scenes
        ]
        workflow.videos = []
        self._reset_merge()
        workflow.parsed = True
        await self._checkpoint()

    def _build_videos(self) -> None:
        """Create a video for every finished scene that has none yet, in scene order."""
        workflow = self._require()
        positions = {scene.id: index for index, scene in enumerate(workflow.scenes)}
        for index, scene in enumerate(workflow.scenes):
            if scene.status != ItemStatus.DONE or scene.video_id:
                continue
            video = Video(
                id=workflow.new_item_id(ItemKind.VIDEO),
                prompt=scene.video_prompt or scene.prompt,
                model=scene.video_model,
                duration=scene.video_duration,
                scene_id=scene.id,
                scene_index=index,
            )
            scene.video_id = video.id

            position = len(workflow.videos)
            for i, existing in enumerate(workflow.videos):
                if positions.get(existing.scene_id, -1) > index:
                    position = i
                    break
            workflow.videos.insert(position, video)
            self._reset_merge()
            logger.debug(f"Built {video.id} from {scene.id}")

    async def _run_collection(self, kind: ItemKind, cancel_event: asyncio.Event) -> bool:
        """Dispatch the pending items of a collection; False if there were none."""
        workflow = self._require()
        pending = [item.id for item in workflow.items(kind) if item.status == ItemStatus.PENDING]
        if not pending:
            return False

        epoch = workflow.next_epoch()
        for item_id in pending:
            workflow.get(kind, item_id).epoch = epoch

        logger.info(f"Generating {len(pending)} {kind.value} items (epoch {epoch})")
        await self._checkpoint()
        report = await self._dispatch(kind, pending, epoch, cancel_event)
        logger.info(
            f"{kind.value} batch finished: {len(report.completed)} ok, "
            f"{len(report.failures)} failed, {len(report.not_admitted)} not admitted"
        )
        return True

    async def _merge(self) -> None:
        workflow = self._require()
        if workflow.merge_status == StepStatus.DONE:
            return
        if not workflow.videos or not all(v.status.is_terminal for v in workflow.videos):
            return
        urls = [v.url for v in workflow.videos if v.status == ItemStatus.DONE and v.url]
        if not urls:
            return

        workflow.merge_status = StepStatus.RUNNING
        workflow.merge_error = None
        await self._checkpoint()

        try:
            result = await self.merger.merge(urls, key=object_key(workflow.id, "merged", suffix=".mp4"))
        except ReelflowError as e:
            workflow.merge_status = StepStatus.ERROR
            workflow.merge_error = e.message
            logger.error(f"Merge failed for workflow {workflow.id}: {e.message}")
            await self._checkpoint()
            return

        workflow.merged_url = result.url
        workflow.merge_strategy = result.strategy
        workflow.merge_status = StepStatus.DONE
        if result.degraded:
            logger.warning(f"Merged with fallback strategy {result.strategy}")
        await self._checkpoint()

    async def _finish(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        workflow = self._require()
        if (cancel_event or self._stop_event).is_set():
            workflow.status = WorkflowStatus.STOPPED
        else:
            workflow.status = final_status(workflow)
        logger.info(f"Workflow {workflow.id} finished: {workflow.status.value}")
        await self._checkpoint()

    async def _settle(self) -> None:
        """After a command outside a run, carry the pipeline forward."""
        workflow = self._require()
        if self._running or workflow.status in (
            WorkflowStatus.WAITING,
            WorkflowStatus.STOPPED,
            WorkflowStatus.INTERRUPTED,
        ):
            return
        workflow.status = WorkflowStatus.RUNNING
        await self._run_pipeline()

    # -------------------------------------------------------------------------
    # Item Jobs
    # -------------------------------------------------------------------------

    async def _dispatch(
        self,
        kind: ItemKind,
        item_ids: List[str],
        epoch: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchReport:
        cancel_event = cancel_event or self._stop_event
        jobs = [
            Job(
                key=item_id,
                run=self._bind(self._run_item, kind, item_id, epoch, cancel_event),
                job_class=kind.job_class,
            )
            for item_id in item_ids
        ]
        return await self.dispatcher.dispatch(jobs, cancel_event=cancel_event)

    @staticmethod
    def _bind(method, kind: ItemKind, item_id: str, epoch: int, cancel_event: asyncio.Event):
        return lambda: method(kind, item_id, epoch, cancel_event)

    def _current(self, kind: ItemKind, item_id: str, epoch: int) -> Optional[Item]:
        """The item if it still exists and still belongs to ``epoch``."""
        item = self.workflow.find(kind, item_id) if self.workflow else None
        if item is None or item.epoch != epoch:
            return None
        return item

    def _discard(self, kind: ItemKind, item_id: str, epoch: int) -> None:
        logger.warning(f"Discarding stale result for {kind.value} {item_id} (epoch {epoch})")

    async def _run_item(
        self,
        kind: ItemKind,
        item_id: str,
        epoch: int,
        cancel_event: asyncio.Event,
    ) -> None:
        item = self._current(kind, item_id, epoch)
        if item is None or item.status != ItemStatus.PENDING:
            return

        try:
            transition(item, ENTRY_STATUS[kind])
            await self._checkpoint()

            request = self._build_request(item)
            result = await with_retry(
                lambda: self.client.generate(request),
                max_attempts=self.config.retry.max_attempts,
                base_delay=self.config.retry.base_delay,
                cancel_event=cancel_event,
                description=f"{kind.value} {item_id}",
            )

            item = self._current(kind, item_id, epoch)
            if item is None:
                return self._discard(kind, item_id, epoch)

            if result.is_async:
                item.task_handle = result.task_handle
                await self._follow(kind, item_id, epoch, cancel_event)
            else:
                await self._upload(kind, item_id, epoch, result.artifact_url, cancel_event)
        except Exception as e:
            await self._fail(kind, item_id, epoch, e)
            raise

    async def _resume_item(
        self,
        kind: ItemKind,
        item_id: str,
        epoch: int,
        cancel_event: asyncio.Event,
    ) -> None:
        item = self._current(kind, item_id, epoch)
        if item is None:
            return

        try:
            if item.task_handle:
                await self._follow(kind, item_id, epoch, cancel_event)
            else:
                await self._upload(kind, item_id, epoch, item.artifact_url, cancel_event)
        except Exception as e:
            await self._fail(kind, item_id, epoch, e)
            raise

    async def _follow(
        self,
        kind: ItemKind,
        item_id: str,
        epoch: int,
        cancel_event: asyncio.Event,
    ) -> None:
        """Poll the item's task handle, then upload the artifact."""
        item = self._current(kind, item_id, epoch)
        transition(item, ItemStatus.POLLING)
        await self._checkpoint()

        artifact_url = await self.poller.poll(item.task_handle, kind.job_class, cancel_event)

        if self._current(kind, item_id, epoch) is None:
            return self._discard(kind, item_id, epoch)
        await self._upload(kind, item_id, epoch, artifact_url, cancel_event)

    async def _upload(
        self,
        kind: ItemKind,
        item_id: str,
        epoch: int,
        source: Union[str, bytes],
        cancel_event: asyncio.Event,
        suffix: Optional[str] = None,
    ) -> None:
        """
        Copy an artifact to the object store and finish the item.

        ``source`` is the provider URL, or the bytes of a user upload.
        """
        item = self._current(kind, item_id, epoch)
        if isinstance(source, str):
            item.artifact_url = source
        transition(item, ItemStatus.UPLOADING)
        await self._checkpoint()

        if suffix is None:
            suffix = ".mp4" if kind is ItemKind.VIDEO else ".png"
            if isinstance(source, str):
                suffix = guess_suffix(source, default=suffix)
        key = object_key(self.workflow.id, kind.value, item_id, suffix=suffix)
        durable_url = await with_retry(
            lambda: self.object_store.put(source, key=key),
            max_attempts=self.config.retry.max_attempts,
            base_delay=self.config.retry.base_delay,
            cancel_event=cancel_event,
            description=f"upload of {kind.value} {item_id}",
        )

        item = self._current(kind, item_id, epoch)
        if item is None:
            return self._discard(kind, item_id, epoch)
        item.durable_url = durable_url
        transition(item, ItemStatus.DONE)
        logger.info(f"{kind.value} {item_id} done")
        await self._checkpoint()

    async def _fail(self, kind: ItemKind, item_id: str, epoch: int, error: Exception) -> None:
        item = self._current(kind, item_id, epoch)
        if item is None:
            return self._discard(kind, item_id, epoch)
        if item.status.is_terminal:
            return

        message = getattr(error, "message", None) or str(error)
        code = getattr(error, "code", None) or type(error).__name__
        logger.error(f"{kind.value} {item_id} failed: {redact_api_key(message)}")
        transition(item, ItemStatus.ERROR, error=message, error_code=code)
        await self._checkpoint()

    def _build_request(self, item: Item) -> GenerationRequest:
        workflow = self._require()
        settings = workflow.settings

        if isinstance(item, Character):
            return GenerationRequest(
                kind=GenerationKind.TEXT_TO_IMAGE,
                prompt=item.prompt,
                model=item.model or settings.image_model,
                size=item.size or settings.image_size,
                aspect_ratio=item.aspect_ratio or settings.aspect_ratio,
            )

        if isinstance(item, Scene):
            references = [
                c.url for c in workflow.characters
                if c.status == ItemStatus.DONE and c.url
            ]
            if references:
                kind = GenerationKind.IMAGE_EDIT
                model = item.model or settings.edit_model
            else:
                kind = GenerationKind.TEXT_TO_IMAGE
                model = item.model or settings.image_model
            return GenerationRequest(
                kind=kind,
                prompt=item.prompt,
                model=model,
                reference_images=references,
                size=item.size or settings.image_size,
                aspect_ratio=item.aspect_ratio or settings.aspect_ratio,
            )

        self._refresh_frames(item)
        return GenerationRequest(
            kind=GenerationKind.VIDEO,
            prompt=item.prompt,
            model=item.model or settings.video_model,
            first_frame=item.first_frame,
            last_frame=item.last_frame,
            duration=item.duration or settings.video_duration,
            aspect_ratio=settings.aspect_ratio,
        )

    def _refresh_frames(self, video: Video) -> None:
        """Take the frames from the current scene images."""
        workflow = self._require()
        scene = workflow.find(ItemKind.SCENE, video.scene_id) if video.scene_id else None
        if scene is None:
            return

        index = workflow.index_of(ItemKind.SCENE, scene.id)
        video.scene_index = index
        if scene.url:
            video.first_frame = scene.url

        video.last_frame = None
        model = video.model or workflow.settings.video_model
        if workflow.settings.video_mode == "first-last-frame" and self.client.supports_last_frame(model):
            if index + 1 < len(workflow.scenes):
                following = workflow.scenes[index + 1]
                if following.status == ItemStatus.DONE:
                    video.last_frame = following.url

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def _checkpoint(self) -> None:
        """Recompute the stage, persist the aggregate, publish a snapshot."""
        workflow = self._require()
        async with self._checkpoint_lock():
            previous = workflow.stage
            stage = recompute_stage(workflow)
            if stage != previous:
                logger.info(f"Workflow {workflow.id} stage: {previous.value} -> {stage.value}")
                if STAGE_ORDER.index(stage) > STAGE_ORDER.index(previous):
                    self._notify_stage(workflow, stage)
            workflow.touch()
            await self.store.save(workflow)
            snapshot = WorkflowSnapshot.from_workflow(workflow)

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Snapshot subscriber failed: {e}")

    @staticmethod
    def _notify_stage(workflow: Workflow, stage: WorkflowStage) -> None:
        if stage not in STAGE_NOTIFICATIONS:
            return
        collection, label = STAGE_NOTIFICATIONS[stage]
        items = getattr(workflow, collection)
        done = sum(1 for item in items if item.status == ItemStatus.DONE)
        workflow.chat.append(ChatMessage(
            role="assistant",
            content=f"{label}: {done}/{len(items)} ready.",
            stage_notification=stage.value,
        ))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require(self) -> Workflow:
        if self.workflow is None:
            raise WorkflowNotFoundError("No workflow loaded")
        return self.workflow

    def _begin_run(self) -> None:
        self._clear_stop()
        self._require().status = WorkflowStatus.RUNNING

    def _clear_stop(self) -> None:
        """
        Give new work a stop signal that is not set.

        A run that was stopped keeps its own, already set, event and winds
        down regardless.
        """
        loop = asyncio.get_running_loop()
        if self._stop_event.is_set() or self._event_loop is not loop:
            self._stop_event = asyncio.Event()
            self._event_loop = loop

    def _checkpoint_lock(self) -> asyncio.Lock:
        # Commands may arrive from separate asyncio.run calls
        loop = asyncio.get_running_loop()
        if self._save_lock is None or self._lock_loop is not loop:
            self._save_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._save_lock

    def _reset_merge(self) -> None:
        workflow = self._require()
        workflow.merge_status = StepStatus.PENDING
        workflow.merged_url = None
        workflow.merge_strategy = None
        workflow.merge_error = None

    @staticmethod
    def _is_resumable(item: Item) -> bool:
        if item.status == ItemStatus.INTERRUPTED:
            return True
        if item.status != ItemStatus.ERROR or item.error_code not in REATTACHABLE_CODES:
            return False
        # A stop without a handle goes back to pending; a timeout needs the handle
        return item.error_code == "StoppedError" or bool(item.task_handle)
