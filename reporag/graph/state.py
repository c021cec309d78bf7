"""
Ingestion run state definitions.

RunStatus is the saga's state machine. IngestionState is the LangGraph state
passed between step nodes.
"""

from typing import TypedDict, Dict, List, Optional, Annotated, Any, FrozenSet
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
import operator
import re


class RunStatus(str, Enum):
    """Lifecycle status of an ingestion run."""
    CREATED = "created"
    BUCKET_PROVISIONED = "bucket_provisioned"
    DOCUMENTS_COLLECTED = "documents_collected"
    DOCUMENTS_PROCESSED = "documents_processed"
    SCRATCH_RELEASED = "scratch_released"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_in_progress(self) -> bool:
        """True while steps may still write artifacts for the run."""
        return self in FORWARD_STATUSES and self is not RunStatus.COMPLETED


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})

# Forward path, in order.
FORWARD_STATUSES = (
    RunStatus.CREATED,
    RunStatus.BUCKET_PROVISIONED,
    RunStatus.DOCUMENTS_COLLECTED,
    RunStatus.DOCUMENTS_PROCESSED,
    RunStatus.SCRATCH_RELEASED,
    RunStatus.COMPLETED,
)

TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.CREATED: frozenset({RunStatus.BUCKET_PROVISIONED, RunStatus.COMPENSATING}),
    RunStatus.BUCKET_PROVISIONED: frozenset({RunStatus.DOCUMENTS_COLLECTED, RunStatus.COMPENSATING}),
    RunStatus.DOCUMENTS_COLLECTED: frozenset({RunStatus.DOCUMENTS_PROCESSED, RunStatus.COMPENSATING}),
    RunStatus.DOCUMENTS_PROCESSED: frozenset({RunStatus.SCRATCH_RELEASED, RunStatus.COMPENSATING}),
    RunStatus.SCRATCH_RELEASED: frozenset({RunStatus.COMPLETED, RunStatus.COMPENSATING}),
    RunStatus.COMPENSATING: frozenset({RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    """Whether the state machine allows moving from current to target."""
    return target in TRANSITIONS[current]


class StepStatus(str, Enum):
    """Status of one saga step record."""
    PENDING = "pending"
    COMPLETED = "completed"
    COMPENSATED = "compensated"


@dataclass
class RepositoryDescriptor:
    """Where to fetch sources from and which files to keep."""
    url: str
    branch: str = "main"
    path: str = ""
    file_extensions: List[str] = field(default_factory=lambda: ["md"])

    def __post_init__(self):
        self.path = (self.path or "").strip("/")
        self.file_extensions = normalize_extensions(self.file_extensions)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryDescriptor":
        return cls(
            url=data["url"],
            branch=data.get("branch") or "main",
            path=data.get("path") or "",
            file_extensions=list(data.get("file_extensions") or []),
        )


def normalize_extensions(extensions: List[str]) -> List[str]:
    """Lower-case, strip leading dots, drop blanks and duplicates (order kept)."""
    normalized = []
    for ext in extensions or []:
        ext = ext.strip().lstrip(".").lower()
        if ext and ext not in normalized:
            normalized.append(ext)
    return normalized


@dataclass
class IngestionRun:
    """Read model of a persisted ingestion run."""
    run_id: str
    repository: RepositoryDescriptor
    status: RunStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    error_message: Optional[str] = None
    failed_step: Optional[str] = None
    cancel_requested: bool = False


class IngestionState(TypedDict):
    """
    Shared state for the ingestion graph.

    Each step node reads what it needs and returns only the keys it updates.
    completed_steps is appended to rather than replaced.
    """
    run_id: str
    repository: Dict[str, Any]
    status: RunStatus
    archive_key: Optional[str]
    content_unit_count: Optional[int]
    completed_steps: Annotated[List[str], operator.add]


def create_initial_state(run_id: str, repository: RepositoryDescriptor) -> IngestionState:
    """Create a fresh graph state for driving a run."""
    return IngestionState(
        run_id=run_id,
        repository=repository.to_dict(),
        status=RunStatus.CREATED,
        archive_key=None,
        content_unit_count=None,
        completed_steps=[],
    )


def parse_github_url(url: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Parse GitHub URL to extract owner and repo.

    Supports formats:
    - https://github.com/owner/repo
    - https://github.com/owner/repo.git
    - git@github.com:owner/repo.git

    Returns:
        Tuple of (owner, repo) or (None, None) if invalid
    """
    if not url:
        return None, None

    https_match = re.match(r'https?://github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$', url)
    if https_match:
        return https_match.group(1), https_match.group(2)

    ssh_match = re.match(r'git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$', url)
    if ssh_match:
        return ssh_match.group(1), ssh_match.group(2)

    return None, None
