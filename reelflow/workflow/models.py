"""
Workflow Models
===============

The workflow aggregate: characters, scenes, videos, chat transcript and the
script/merge steps of one production run.

Items are addressed by id, never by position. Ids come from a per-workflow
sequence that only moves forward, so a deleted item's id is never handed out
again and a late completion for it finds nothing to update.
"""

import uuid
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, List, Dict, Any, Union

from ..core.config import GenerationConfig
from ..core.exceptions import ItemNotFoundError

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class ItemKind(Enum):
    """The three item collections of a workflow."""

    CHARACTER = "character"
    SCENE = "scene"
    VIDEO = "video"

    @property
    def job_class(self) -> str:
        """Dispatcher job class: character and scene images share one ceiling."""
        return "video" if self is ItemKind.VIDEO else "image"

    @property
    def id_prefix(self) -> str:
        return {"character": "char", "scene": "scene", "video": "video"}[self.value]


class ItemStatus(Enum):
    """Lifecycle status of a single item."""

    PENDING = "pending"
    GENERATING = "generating"
    SUBMITTING = "submitting"
    POLLING = "polling"
    UPLOADING = "uploading"
    DONE = "done"
    ERROR = "error"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.DONE, ItemStatus.ERROR)

    @property
    def is_in_flight(self) -> bool:
        return self in (
            ItemStatus.GENERATING,
            ItemStatus.SUBMITTING,
            ItemStatus.POLLING,
            ItemStatus.UPLOADING,
        )


class WorkflowStage(Enum):
    """Derived progress marker of a workflow."""

    IDLE = "idle"
    SCRIPT = "script"
    SCRIPT_DONE = "script_done"
    PARSING_DONE = "parsing_done"
    CHARACTERS = "characters"
    CHARACTERS_DONE = "characters_done"
    SCENES = "scenes"
    SCENES_DONE = "scenes_done"
    VIDEOS = "videos"
    VIDEOS_DONE = "videos_done"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(Enum):
    """Overall run status of a workflow."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    PARTIAL = "partial"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        """Completed and failed workflows are never offered for resume."""
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


class StepStatus(Enum):
    """Status of the single-shot script and merge steps."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


# =============================================================================
# Serialization Helpers
# =============================================================================


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# Items
# =============================================================================


@dataclass
class Item:
    """
    Fields shared by every generated item.

    ``artifact_url`` is the provider URL and is treated as ephemeral;
    ``durable_url`` is set once the artifact has been copied to the object
    store. ``epoch`` identifies the dispatch generation that owns the item:
    a job whose epoch no longer matches must not touch it.
    """

    kind: ClassVar[ItemKind]

    id: str = ""
    prompt: str = ""
    status: ItemStatus = ItemStatus.PENDING
    model: Optional[str] = None

    artifact_url: Optional[str] = None
    durable_url: Optional[str] = None
    task_handle: Optional[str] = None
    # Status an item held when its run was cut short
    interrupted_from: Optional[ItemStatus] = None

    error: Optional[str] = None
    error_code: Optional[str] = None

    epoch: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def url(self) -> Optional[str]:
        """Best available artifact URL (durable first)."""
        return self.durable_url or self.artifact_url

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = {f.name: _encode(getattr(self, f.name)) for f in fields(self)}
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "status" in values:
            values["status"] = ItemStatus(values["status"])
        if values.get("interrupted_from"):
            values["interrupted_from"] = ItemStatus(values["interrupted_from"])
        for key in ("started_at", "completed_at"):
            if key in values:
                values[key] = _decode_datetime(values[key])
        return cls(**values)


@dataclass
class Character(Item):
    """A recurring character; its image is the reference for scene images."""

    kind: ClassVar[ItemKind] = ItemKind.CHARACTER

    name: str = ""
    description: str = ""
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None


@dataclass
class Scene(Item):
    """
    One shot of the script.

    ``prompt`` is the image prompt; the video built from this scene lives in
    ``Workflow.videos`` and is linked through ``video_id``.
    """

    kind: ClassVar[ItemKind] = ItemKind.SCENE

    number: Optional[int] = None
    video_prompt: str = ""
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None
    video_model: Optional[str] = None
    video_duration: Optional[int] = None
    video_id: Optional[str] = None

    @property
    def image_prompt(self) -> str:
        return self.prompt


@dataclass
class Video(Item):
    """A clip animated from a scene image."""

    kind: ClassVar[ItemKind] = ItemKind.VIDEO

    scene_id: Optional[str] = None
    scene_index: Optional[int] = None
    first_frame: Optional[str] = None
    last_frame: Optional[str] = None
    duration: Optional[int] = None


ITEM_TYPES = {
    ItemKind.CHARACTER: Character,
    ItemKind.SCENE: Scene,
    ItemKind.VIDEO: Video,
}


@dataclass
class ChatMessage:
    """One entry of the chat transcript."""

    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=datetime.now)
    stage_notification: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "stage_notification": self.stage_notification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            id=data.get("id") or uuid.uuid4().hex[:12],
            created_at=_decode_datetime(data.get("created_at")) or datetime.now(),
            stage_notification=data.get("stage_notification"),
        )


@dataclass
class WorkflowSettings:
    """Generation defaults captured when the workflow starts."""

    image_model: str = "gemini"
    edit_model: str = "gemini-edit"
    image_size: str = "1K"
    aspect_ratio: str = "9:16"
    video_model: str = "sora-2-pro"
    video_duration: int = 10
    video_mode: str = "first-last-frame"

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "WorkflowSettings":
        return cls(
            image_model=config.image_model,
            edit_model=config.edit_model,
            image_size=config.image_size,
            aspect_ratio=config.aspect_ratio,
            video_model=config.video_model,
            video_duration=config.video_duration,
            video_mode=config.video_mode,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# =============================================================================
# Aggregate
# =============================================================================


@dataclass
class Workflow:
    """
    One end-to-end production run, from script to merged video.

    Owned by a single orchestrator while active; every state-affecting change
    is mirrored to the workflow store as a whole-aggregate write.
    """

    # Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    owner_key: str = ""
    title: str = ""

    # Input
    source_video_url: Optional[str] = None
    idea: Optional[str] = None
    script_prompt: Optional[str] = None

    # Script step
    script: str = ""
    script_status: StepStatus = StepStatus.PENDING
    script_error: Optional[str] = None
    parsed: bool = False

    # Progress
    stage: WorkflowStage = WorkflowStage.IDLE
    status: WorkflowStatus = WorkflowStatus.IDLE

    # Items
    characters: List[Character] = field(default_factory=list)
    scenes: List[Scene] = field(default_factory=list)
    videos: List[Video] = field(default_factory=list)
    chat: List[ChatMessage] = field(default_factory=list)

    # Merge step
    merge_status: StepStatus = StepStatus.PENDING
    merged_url: Optional[str] = None
    merge_strategy: Optional[str] = None
    merge_error: Optional[str] = None

    settings: WorkflowSettings = field(default_factory=WorkflowSettings)

    # Counters
    next_seq: int = 1
    epoch_counter: int = 0

    # Timestamps
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    # -------------------------------------------------------------------------
    # Identity and epochs
    # -------------------------------------------------------------------------

    def new_item_id(self, kind: ItemKind) -> str:
        """Allocate a fresh item id; ids are never reused."""
        item_id = f"{kind.id_prefix}-{self.next_seq}"
        self.next_seq += 1
        return item_id

    def next_epoch(self) -> int:
        """Allocate the next dispatch epoch."""
        self.epoch_counter += 1
        return self.epoch_counter

    # -------------------------------------------------------------------------
    # Item access
    # -------------------------------------------------------------------------

    def items(self, kind: ItemKind) -> List[Item]:
        """The ordered collection for ``kind`` (the live list)."""
        if kind is ItemKind.CHARACTER:
            return self.characters
        if kind is ItemKind.SCENE:
            return self.scenes
        return self.videos

    def find(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        for item in self.items(kind):
            if item.id == item_id:
                return item
        return None

    def get(self, kind: ItemKind, item_id: str) -> Item:
        """Like ``find`` but raises ``ItemNotFoundError``."""
        item = self.find(kind, item_id)
        if item is None:
            raise ItemNotFoundError(kind.value, item_id)
        return item

    def index_of(self, kind: ItemKind, item_id: str) -> int:
        for index, item in enumerate(self.items(kind)):
            if item.id == item_id:
                return index
        raise ItemNotFoundError(kind.value, item_id)

    def video_for_scene(self, scene_id: str) -> Optional[Video]:
        for video in self.videos:
            if video.scene_id == scene_id:
                return video
        return None

    def touch(self) -> None:
        self.updated_at = datetime.now()

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "owner_key": self.owner_key,
            "title": self.title,
            "source_video_url": self.source_video_url,
            "idea": self.idea,
            "script_prompt": self.script_prompt,
            "script": self.script,
            "script_status": self.script_status.value,
            "script_error": self.script_error,
            "parsed": self.parsed,
            "stage": self.stage.value,
            "status": self.status.value,
            "characters": [c.to_dict() for c in self.characters],
            "scenes": [s.to_dict() for s in self.scenes],
            "videos": [v.to_dict() for v in self.videos],
            "chat": [m.to_dict() for m in self.chat],
            "merge_status": self.merge_status.value,
            "merged_url": self.merged_url,
            "merge_strategy": self.merge_strategy,
            "merge_error": self.merge_error,
            "settings": self.settings.to_dict(),
            "next_seq": self.next_seq,
            "epoch_counter": self.epoch_counter,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            owner_key=data.get("owner_key", ""),
            title=data.get("title", ""),
            source_video_url=data.get("source_video_url"),
            idea=data.get("idea"),
            script_prompt=data.get("script_prompt"),
            script=data.get("script", ""),
            script_status=StepStatus(data.get("script_status", "pending")),
            script_error=data.get("script_error"),
            parsed=data.get("parsed", False),
            stage=WorkflowStage(data.get("stage", "idle")),
            status=WorkflowStatus(data.get("status", "idle")),
            characters=[Character.from_dict(c) for c in data.get("characters", [])],
            scenes=[Scene.from_dict(s) for s in data.get("scenes", [])],
            videos=[Video.from_dict(v) for v in data.get("videos", [])],
            chat=[ChatMessage.from_dict(m) for m in data.get("chat", [])],
            merge_status=StepStatus(data.get("merge_status", "pending")),
            merged_url=data.get("merged_url"),
            merge_strategy=data.get("merge_strategy"),
            merge_error=data.get("merge_error"),
            settings=WorkflowSettings.from_dict(data.get("settings", {})),
            next_seq=data.get("next_seq", 1),
            epoch_counter=data.get("epoch_counter", 0),
            created_at=_decode_datetime(data.get("created_at")) or datetime.now(),
            updated_at=_decode_datetime(data.get("updated_at")) or datetime.now(),
        )
