"""All shared types, enums, and type aliases. Everything imports from here."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    TRIGGER = "TRIGGER"       # entry point, exactly one per graph
    ACTION = "ACTION"         # invokes a tool
    CONDITION = "CONDITION"   # branches on conditions
    APPROVAL = "APPROVAL"     # gated by a mandate

class ErrorStrategy(str, Enum):
    STOP = "STOP"
    CONTINUE = "CONTINUE"
    RETRY = "RETRY"
    ROLLBACK = "ROLLBACK"

class StepStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"

class ExecutionStatus(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED, ExecutionStatus.TIMEOUT,
})

class AgentStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"
    ERROR = "ERROR"

class AgentType(str, Enum):
    PAYMENT = "PAYMENT"
    WORKFLOW = "WORKFLOW"
    DATA_PROCESSOR = "DATA_PROCESSOR"
    NOTIFICATION = "NOTIFICATION"
    CUSTOM = "CUSTOM"

class MandateType(str, Enum):
    INTENT = "INTENT"
    CART = "CART"
    PAYMENT = "PAYMENT"
    APPROVAL = "APPROVAL"
    CANCELLATION = "CANCELLATION"

class MandateStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    EXPIRED = "EXPIRED"        # sideways, terminal
    CANCELLED = "CANCELLED"    # sideways, terminal
    REJECTED = "REJECTED"      # sideways, terminal

class ApprovalLevel(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"

class SignatureAlgorithm(str, Enum):
    ECDSA = "ECDSA"
    RSA = "RSA"
    ED25519 = "ED25519"

class ToolCategory(str, Enum):
    PAYMENT = "PAYMENT"
    DATA = "DATA"
    COMMUNICATION = "COMMUNICATION"
    LOGIC = "LOGIC"
    INTEGRATION = "INTEGRATION"
    CUSTOM = "CUSTOM"

class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


# ── Workflow Graph ─────────────────────────────────────────────────────

class ErrorHandling(BaseModel):
    """Per-step failure policy."""
    strategy: ErrorStrategy = ErrorStrategy.STOP
    max_retries: int = Field(default=3, ge=0, le=10)
    fallback_step_id: Optional[str] = None

class ConditionalConnection(BaseModel):
    expression: str                     # e.g. "amount > 100"
    next_step_id: str

class StepConnections(BaseModel):
    success_step_id: Optional[str] = None
    failure_step_id: Optional[str] = None
    conditions: list[ConditionalConnection] = Field(default_factory=list)

class WorkflowStep(BaseModel):
    """One node in an agent's workflow graph."""
    id: str
    type: StepType
    name: str
    description: str = ""
    tool_type: str                      # registry key, e.g. "http_request"
    parameters: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int = 30_000
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)
    connections: StepConnections = Field(default_factory=StepConnections)
    requires_authorization: bool = False  # gate on a mandate even for non-APPROVAL steps
    enabled: bool = True                  # disabled steps are recorded SKIPPED

    @property
    def is_gated(self) -> bool:
        return self.type == StepType.APPROVAL or self.requires_authorization

class WorkflowGraph(BaseModel):
    """Ordered step collection for one agent version."""
    agent_id: str
    version: str = "1.0.0"
    steps: list[WorkflowStep] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)  # graph defaults


# ── Agents ─────────────────────────────────────────────────────────────

class Money(BaseModel):
    value: float = Field(ge=0)
    currency: str = "USD"

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

class AgentConstraints(BaseModel):
    max_execution_minutes: Optional[float] = None
    approval_required: bool = False
    budget_limit: Optional[Money] = None
    geo_restrictions: list[str] = Field(default_factory=list)

class AgentMetrics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_ms: float = 0.0
    last_execution_ms: Optional[float] = None
    total_cost: float = 0.0
    average_cost_per_execution: float = 0.0

class AgentDefinition(BaseModel):
    """A named, versioned workflow graph plus lifecycle status."""
    id: str
    tenant_id: str
    created_by: str
    name: str
    description: str = ""
    type: AgentType = AgentType.WORKFLOW
    status: AgentStatus = AgentStatus.DRAFT
    version: str = "1.0.0"
    graph: WorkflowGraph
    constraints: AgentConstraints = Field(default_factory=AgentConstraints)
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)
    is_deleted: bool = False
    last_executed_at: Optional[datetime] = None

    def can_execute(self) -> bool:
        return self.status == AgentStatus.ACTIVE and not self.is_deleted


# ── Execution ──────────────────────────────────────────────────────────

class ExecutionContext(BaseModel):
    """Per-run state. `variables` has exactly one writer: the step loop.

    `metadata` is descriptive and fixed at creation: it is stored as a
    read-only mapping.
    """
    execution_id: str
    agent_id: str
    tenant_id: str
    initiator_id: str
    session_id: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("metadata")
    @classmethod
    def freeze_metadata(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(v))

    @field_serializer("metadata")
    def dump_metadata(self, v: Mapping[str, Any]) -> dict[str, Any]:
        return dict(v)

    def describe(self) -> Mapping[str, Any]:
        return self.metadata


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    step_name: str = ""
    status: StepStatus
    output: Any = None
    duration_ms: float = 0.0
    error: Optional[str] = None
    attempts: int = 1
    timestamp: datetime = Field(default_factory=utcnow)

class ExecutionMetrics(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_steps(cls, steps: list[StepResult]) -> "ExecutionMetrics":
        return cls(
            total=len(steps),
            success=sum(1 for s in steps if s.status == StepStatus.SUCCESS),
            failed=sum(1 for s in steps if s.status == StepStatus.FAILURE),
            skipped=sum(1 for s in steps if s.status == StepStatus.SKIPPED),
        )

class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: str
    agent_id: str
    status: ExecutionStatus
    steps: list[StepResult] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    started_at: datetime
    completed_at: datetime
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    error: Optional[str] = None
    rollback_failures: list[str] = Field(default_factory=list)

class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


# ── Mandates ───────────────────────────────────────────────────────────

class MandateIntent(BaseModel):
    action: str
    description: str = Field(max_length=1000)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("action")
    @classmethod
    def normalize_action(cls, v: str) -> str:
        return v.strip().lower()

class Recipient(BaseModel):
    type: str = "MERCHANT"              # MERCHANT | USER | AGENT | EXTERNAL
    id: Optional[str] = None
    name: str
    address: Optional[dict[str, Any]] = None

class LineItem(BaseModel):
    id: str
    name: str
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    total_price: float = Field(ge=0)
    metadata: Optional[dict[str, Any]] = None

class Taxes(BaseModel):
    amount: float = Field(ge=0)
    rate: float = Field(ge=0, le=1)
    jurisdiction: str = ""

class Shipping(BaseModel):
    amount: float = Field(ge=0)
    method: str = ""
    address: Optional[dict[str, Any]] = None

class TransactionDetails(BaseModel):
    amount: Money
    recipient: Recipient
    items: list[LineItem] = Field(default_factory=list)
    taxes: Optional[Taxes] = None
    shipping: Optional[Shipping] = None

class AllowedHours(BaseModel):
    start: str = Field(pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
    end: str = Field(pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

class TimeRestrictions(BaseModel):
    allowed_days: list[int] = Field(default_factory=list)   # 0-6, Sunday-Saturday
    allowed_hours: Optional[AllowedHours] = None
    time_zone: str = "UTC"

class MandateAuthorization(BaseModel):
    max_amount: Optional[Money] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    geo_restrictions: list[str] = Field(default_factory=list)
    time_restrictions: Optional[TimeRestrictions] = None
    requires_approval: bool = False
    approval_level: ApprovalLevel = ApprovalLevel.USER

    @field_validator("valid_from", "valid_until")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

class MandateCompliance(BaseModel):
    aml_check: bool = False
    sanctions: bool = False
    fraud_check: bool = False
    risk_score: Optional[float] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None

class MandateContent(BaseModel):
    intent: MandateIntent
    transaction: Optional[TransactionDetails] = None
    authorization: MandateAuthorization = Field(default_factory=MandateAuthorization)
    compliance: MandateCompliance = Field(default_factory=MandateCompliance)

class MandateSignature(BaseModel):
    algorithm: SignatureAlgorithm
    public_key: str                     # PEM
    signature: str                      # hex
    key_id: str                         # key rotation identifier
    timestamp: datetime = Field(default_factory=utcnow)

class MandateCryptography(BaseModel):
    hash: str = ""
    hash_algorithm: str = "sha256"
    signatures: list[MandateSignature] = Field(default_factory=list)

class MandateChainLink(BaseModel):
    chain_id: str
    previous_mandate_id: Optional[str] = None
    next_mandate_id: Optional[str] = None   # set after sealing, not hashed
    sequence_number: int = Field(default=0, ge=0)

class MandateApproval(BaseModel):
    approver_id: str
    role: str
    approved_at: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = None

class MandateExecutionResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

class MandateExecution(BaseModel):
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    result: Optional[MandateExecutionResult] = None

class Mandate(BaseModel):
    """Hash-sealed, signable authorization record."""
    mandate_id: str
    tenant_id: Optional[str] = None
    agent_id: Optional[str] = None
    created_by: str
    type: MandateType
    version: str = "1.0.0"
    content: MandateContent
    cryptography: MandateCryptography = Field(default_factory=MandateCryptography)
    chain: MandateChainLink
    status: MandateStatus = MandateStatus.PENDING
    status_reason: Optional[str] = None  # why it was rejected or cancelled
    approvals: list[MandateApproval] = Field(default_factory=list)
    execution: MandateExecution = Field(default_factory=MandateExecution)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0                   # optimistic concurrency counter

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now) or utcnow()
        expires_at = as_utc(self.expires_at)
        if expires_at is not None and expires_at < now:
            return True
        valid_until = as_utc(self.content.authorization.valid_until)
        return valid_until is not None and valid_until < now

    @property
    def needs_approval(self) -> bool:
        return (
            self.content.authorization.requires_approval
            and self.status == MandateStatus.PENDING
            and not self.approvals
        )


# ── Tools ──────────────────────────────────────────────────────────────

class ParameterValidation(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[list[Any]] = None

class ToolParameter(BaseModel):
    name: str
    type: ParameterType
    required: bool = False
    description: str = ""
    default: Any = None
    validation: Optional[ParameterValidation] = None

class ToolDefinition(BaseModel):
    """Registration record for a step executor."""
    name: str
    description: str = ""
    category: ToolCategory = ToolCategory.CUSTOM
    version: str = "1.0.0"
    parameters: list[ToolParameter] = Field(default_factory=list)
    required_permissions: list[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = None    # hint; the step's timeout wins
    retryable: bool = False
    cost: float = 0.0
    requires_approval: bool = False
