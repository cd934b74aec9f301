"""
Deployer Data Models

Request and queue models, the persisted deployment record, and the
in-memory state of a single orchestration run.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Product(str, PyEnum):
    WHISPER = "whisper"
    SD = "sd"
    LLAMA = "llama"


ALLOWED_PRODUCTS = frozenset(p.value for p in Product)


class Customer(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    email: Optional[str] = None


class JobRequest(BaseModel):
    """
    A request to run one product for a bounded number of minutes.

    ``product`` is left unconstrained here; the orchestrator rejects unknown
    products with ``invalid_product`` rather than a schema error. ``minutes``
    is not range-checked either: teardown clamps it to at least one minute
    and at most ``MAX_TEARDOWN_DELAY_SECONDS``.
    """
    model_config = ConfigDict(frozen=True)

    product: Any = None
    minutes: int = 60
    customer: Customer = PydanticField(default_factory=Customer)
    payment: Optional[Any] = None

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_or_empty(cls, value):
        return {} if value is None else value


class QueuedJob(JobRequest):
    """A job request waiting in the queue."""

    enqueued_at: datetime = PydanticField(default_factory=utcnow)
    idempotency_key: Optional[str] = None

    @classmethod
    def from_request(cls, job: JobRequest, idempotency_key: Optional[str] = None) -> "QueuedJob":
        return cls(**job.model_dump(), idempotency_key=idempotency_key)


class DeploymentStatus(str, PyEnum):
    """Lifecycle of a persisted deployment session."""
    CREATED = "created"
    LEASE_ACQUIRED = "lease_acquired"
    MANIFEST_SENT = "manifest_sent"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"
    CLOSE_FAILED = "close_failed"


class DeploymentRecord(SQLModel, table=True):
    """
    Persisted deployment session.

    An ``active`` row with ``close_at`` set is a pending teardown; rows are
    reconciled on startup so a restart does not leak deployments.
    """
    __tablename__ = "deployments"

    id: str = Field(primary_key=True, description="UUID session identifier")
    dseq: str = Field(index=True, description="Deployment sequence (epoch seconds)")
    owner: str = Field(description="Signing account address")
    product: str = Field(index=True)
    minutes: int = Field(default=60)
    status: DeploymentStatus = Field(default=DeploymentStatus.CREATED, index=True)
    provider: Optional[str] = Field(default=None)
    gseq: Optional[int] = Field(default=None)
    oseq: Optional[int] = Field(default=None)
    uri: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    idempotency_key: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    close_at: Optional[datetime] = Field(default=None, index=True)
    closed_at: Optional[datetime] = Field(default=None)


@dataclass(frozen=True)
class Lease:
    gseq: int
    oseq: int
    provider: str


@dataclass
class DeploymentSession:
    """Ephemeral state of one orchestration run."""
    session_id: str
    product: str
    minutes: int
    owner: str
    dseq: str
    sdl_path: Optional[str] = None
    lease: Optional[Lease] = None
    uri: Optional[str] = None


@dataclass
class DeploymentResult:
    """Caller-visible outcome of an orchestration run."""
    uri: Optional[str]
    dry_run: bool = False
    dseq: Optional[str] = None
    lease: Optional[Lease] = None
    idempotency_key: Optional[str] = None
    customer: Optional[Dict[str, Any]] = None
    payment: Optional[Any] = None
    status: str = "ok"

    def to_response(self) -> Dict[str, Any]:
        if self.dry_run:
            return {
                "status": self.status,
                "uri": self.uri,
                "idempotency_key": self.idempotency_key,
                "dry_run": True,
            }
        return {
            "status": self.status,
            "uri": self.uri,
            "dseq": self.dseq,
            "gseq": self.lease.gseq if self.lease else None,
            "oseq": self.lease.oseq if self.lease else None,
            "provider": self.lease.provider if self.lease else None,
            "idempotency_key": self.idempotency_key,
            "customer": self.customer,
            "payment": self.payment,
            "dry_run": False,
        }
