"""Resumable run state.

One JSON document per plan identity records which tasks have succeeded and
under which fingerprint. Documents are written atomically (temp file, fsync,
rename) so a crash leaves either the old or the new state, never a torn file.
"""

import hashlib
import os
import re
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError


class RunStatus(str, Enum):
    """Status of a plan run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(BaseModel):
    """Persisted progress of the latest run of a plan."""

    model_config = ConfigDict(extra="ignore")

    plan_identity: str
    run_number: int | None = None
    session_id: str | None = None
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed: dict[str, str] = Field(
        default_factory=dict,
        description="Task key -> fingerprint of tasks that succeeded",
    )
    outcomes: dict[str, str] = Field(
        default_factory=dict,
        description="Task key -> last outcome",
    )

    def mark(self, task_key: str, outcome: str, fingerprint: str | None = None) -> None:
        """Record a task's outcome.

        Successes store their fingerprint. Only a failure forgets an earlier
        success; cancelled and skipped tasks never ran, so they keep it.
        """
        self.outcomes[task_key] = outcome
        if outcome == "success" and fingerprint:
            self.completed[task_key] = fingerprint
        elif outcome == "failed":
            self.completed.pop(task_key, None)
        self.updated_at = _utcnow()


def atomic_write(path: str | Path, content: str) -> None:
    """
    Write a file via temp-file-then-rename.

    Args:
        path: Destination path.
        content: Text to write.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class StateStore:
    """
    Load and save RunState documents under a state directory.

    Example:
        >>> store = StateStore(".maestro")
        >>> state = store.load("plans/feature.md") or RunState(plan_identity="plans/feature.md")
        >>> store.save(state)
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)

    def path_for(self, plan_identity: str) -> Path:
        """State file path for a plan identity."""
        slug = _UNSAFE.sub("_", plan_identity).strip("_")[:64] or "plan"
        digest = hashlib.sha256(plan_identity.encode("utf-8")).hexdigest()[:12]
        return self.state_dir / "runs" / f"{slug}-{digest}.json"

    def load(self, plan_identity: str) -> RunState | None:
        """Load the saved state, or None if missing or unreadable."""
        path = self.path_for(plan_identity)
        if not path.exists():
            return None

        try:
            return RunState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable run state {path}: {e}")
            return None

    def save(self, state: RunState) -> Path:
        """Persist state atomically."""
        path = self.path_for(state.plan_identity)
        atomic_write(path, state.model_dump_json(indent=2))
        logger.debug(f"Run state saved to {path}")
        return path

    def clear(self, plan_identity: str) -> bool:
        """Delete saved state. Returns False if there was none."""
        path = self.path_for(plan_identity)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Cleared run state for {plan_identity}")
        return True
