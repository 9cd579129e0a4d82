"""Data models for the batch image generator."""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, List, Literal, Union, Annotated

from pydantic import BaseModel, ConfigDict, Field, computed_field


DEBUG_LOG_LIMIT = 10
INTERRUPTED_ERROR = "interrupted: process restarted while processing"


def utcnow() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    """Status shared by batch tasks and their items."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    """Kind of generation requests a batch task holds."""
    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_TO_IMAGE = "image_to_image"
    MIXED = "mixed"


class ModelFamily(str, Enum):
    """Model families with distinct generation APIs."""
    DALLE = "dalle"
    GEMINI = "gemini"
    OPENAI = "openai"


class DownloadStatus(str, Enum):
    """Download job status enumeration."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchTaskConfig(BaseModel):
    """Immutable per-task execution settings."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str
    model_family: ModelFamily = ModelFamily.OPENAI
    concurrent_limit: int = Field(default=3, ge=1)
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    auto_download: bool = True
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None
    quality: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def max_attempts(self) -> int:
        """Initial attempt plus configured retries."""
        return self.retry_attempts + 1


class GenerationRequest(BaseModel):
    """Payload handed to a generation backend."""
    model_config = ConfigDict(protected_namespaces=())

    prompt: str
    model: str
    model_family: ModelFamily
    source_images: List[str] = Field(default_factory=list)
    mask: Optional[str] = None
    size: Optional[str] = None
    aspect_ratio: Optional[str] = None
    quality: Optional[str] = None
    n: int = 1
    timeout_seconds: Optional[float] = None

    @property
    def is_image_to_image(self) -> bool:
        """Whether the request edits existing images."""
        return bool(self.source_images)


class GenerationResponse(BaseModel):
    """Successful backend response."""
    image_ref: str


class RequestLog(BaseModel):
    """Debug record of an outgoing generation request."""
    kind: Literal["request"] = "request"
    id: str = Field(default_factory=new_id)
    task_item_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    request: GenerationRequest


class ResponseLog(BaseModel):
    """Debug record of a successful generation response."""
    kind: Literal["response"] = "response"
    id: str = Field(default_factory=new_id)
    task_item_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    image_ref: str
    duration_ms: int


class ErrorLog(BaseModel):
    """Debug record of a failed generation call."""
    kind: Literal["error"] = "error"
    id: str = Field(default_factory=new_id)
    task_item_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    code: Optional[str] = None
    duration_ms: int


DebugLog = Annotated[Union[RequestLog, ResponseLog, ErrorLog], Field(discriminator="kind")]


class TaskItemSpec(BaseModel):
    """Input used to create a task item."""
    prompt: str
    source_images: List[str] = Field(default_factory=list)
    mask: Optional[str] = None
    priority: int = 0


class TaskItem(BaseModel):
    """One generation request inside a batch task."""
    id: str = Field(default_factory=new_id)
    prompt: str
    source_images: List[str] = Field(default_factory=list)
    mask: Optional[str] = None
    # Reserved; items are always offered in list order.
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    debug_logs: List[DebugLog] = Field(default_factory=list)

    def add_log(self, entry: Union[RequestLog, ResponseLog, ErrorLog]) -> None:
        """Append a debug log entry, keeping only the most recent ones."""
        self.debug_logs.append(entry)
        if len(self.debug_logs) > DEBUG_LOG_LIMIT:
            del self.debug_logs[:-DEBUG_LOG_LIMIT]


class TaskResult(BaseModel):
    """Artifact produced by a completed task item."""
    id: str = Field(default_factory=new_id)
    task_item_id: str
    image_ref: str
    downloaded: bool = False
    local_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    duration_ms: Optional[int] = None


class BatchTask(BaseModel):
    """Batch task aggregate."""
    id: str = Field(default_factory=new_id)
    name: str
    type: TaskType = TaskType.TEXT_TO_IMAGE
    status: TaskStatus = TaskStatus.PENDING
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    config: BatchTaskConfig
    items: List[TaskItem] = Field(default_factory=list)
    results: List[TaskResult] = Field(default_factory=list)
    error: Optional[str] = None

    @computed_field
    @property
    def progress(self) -> int:
        """Percentage of resolved items, halves rounded up."""
        if self.total_items <= 0:
            return 0
        resolved = self.completed_items + self.failed_items
        return (200 * resolved + self.total_items) // (2 * self.total_items)

    def recount(self) -> None:
        """Derive the aggregate counters from item states."""
        self.total_items = len(self.items)
        self.completed_items = sum(1 for item in self.items if item.status == TaskStatus.COMPLETED)
        self.failed_items = sum(1 for item in self.items if item.status == TaskStatus.FAILED)

    def get_item(self, item_id: str) -> Optional[TaskItem]:
        """Find an item by id."""
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def get_result(self, result_id: str) -> Optional[TaskResult]:
        """Find a result by id."""
        for result in self.results:
            if result.id == result_id:
                return result
        return None


class DownloadJob(BaseModel):
    """Queue entry for persisting a task result."""
    id: str
    source: str
    filename: str
    task_id: Optional[str] = None
    task_item_id: Optional[str] = None
    task_name: Optional[str] = None
    status: DownloadStatus = DownloadStatus.PENDING
    retry_count: int = 0
    error: Optional[str] = None
    progress: float = 0.0
    bytes_per_sec: float = 0.0
    local_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
