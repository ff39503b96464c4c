"""Data models for hosts, collected files, records and quotas."""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Node roles in the cluster."""
    COORDINATOR = "coordinator"
    EXECUTOR = "executor"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role, accepting the plural spellings used for directories."""
        normalized = value.strip().lower()
        if normalized in ("coordinator", "coordinators"):
            return cls.COORDINATOR
        if normalized in ("executor", "executors"):
            return cls.EXECUTOR
        raise ValueError(f"unknown node role '{value}'")

    @property
    def directory(self) -> str:
        return self.value + "s"


class Host(BaseModel):
    """A cluster node reachable by the transport."""
    address: str
    role: Role

    model_config = ConfigDict(frozen=True)


class RemoteCommand(BaseModel):
    """An argument vector that may carry a secret."""
    args: List[str]
    mask: bool = False
    secret: Optional[str] = None

    def command_line(self) -> str:
        return " ".join(self.args)

    def redacted(self) -> str:
        """Command line safe for logging."""
        return redact(self.command_line(), self.secret)


def redact(text: str, secret: Optional[str]) -> str:
    if not secret:
        return text
    return text.replace(secret, "REDACTED")


class CollectedFile(BaseModel):
    """A file produced by a collection job."""
    path: str
    size: int = 0


class DiagnosticRecord(BaseModel):
    """One historical query record from queries.json."""
    id: str
    planning_time: float = 0
    execution_time: float = 0
    query_cost: float = 0
    is_error: bool = False
    start: int = 0  # epoch millis

    model_config = ConfigDict(frozen=True)


# Shares of the requested total per bucket; slow-exec also takes the remainder.
SLOW_EXEC_SHARE = 0.4
OTHER_SHARE = 0.2
# Below this many profiles everything goes to slow-exec.
MIN_SPLIT_TOTAL = 4


class SelectionQuota(BaseModel):
    """How many job profiles to pick per category."""
    slow_planning: int = Field(default=0, ge=0)
    slow_exec: int = Field(default=0, ge=0)
    high_cost: int = Field(default=0, ge=0)
    recent_errors: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.slow_planning + self.slow_exec + self.high_cost + self.recent_errors

    @classmethod
    def from_total(cls, total: int, overrides: Optional[Dict[str, Optional[int]]] = None) -> "SelectionQuota":
        """Split a requested total into the four buckets.

        Overrides with a value other than None replace the computed share
        for their category, so the resulting total may differ from the
        requested one.
        """
        if total < 0:
            raise ValueError("requested total must not be negative")
        shares = {"slow_planning": 0, "slow_exec": 0, "high_cost": 0, "recent_errors": 0}
        if 0 < total < MIN_SPLIT_TOTAL:
            shares["slow_exec"] = total
        elif total >= MIN_SPLIT_TOTAL:
            shares["slow_exec"] = int(total * SLOW_EXEC_SHARE)
            for key in ("slow_planning", "high_cost", "recent_errors"):
                shares[key] = int(total * OTHER_SHARE)
            shares["slow_exec"] += total - sum(shares.values())

        for key, value in (overrides or {}).items():
            if key not in shares:
                raise ValueError(f"unknown quota category '{key}'")
            if value is not None:
                shares[key] = value
        return cls(**shares)


class RemoteJobState(str, Enum):
    """Lifecycle states of a query job submitted over REST."""
    NOT_SUBMITTED = "NOT_SUBMITTED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    ENQUEUED = "ENQUEUED"
    PLANNING = "PLANNING"
    PENDING = "PENDING"
    METADATA_RETRIEVAL = "METADATA_RETRIEVAL"
    QUEUED = "QUEUED"
    ENGINE_START = "ENGINE_START"
    EXECUTION_PLANNING = "EXECUTION_PLANNING"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteJobState.COMPLETED, RemoteJobState.FAILED, RemoteJobState.CANCELED)
