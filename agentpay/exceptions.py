"""Typed exception hierarchy. Every error the engine can raise."""


class AgentPayError(Exception):
    """Base exception for all engine errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


# ── Workflow graph ──────────────────────────────────────────────────────────


class WorkflowError(AgentPayError):
    """Base exception for all workflow-related errors."""
    pass


class WorkflowValidationError(WorkflowError):
    """Workflow graph is structurally invalid (trigger count, cycles, dangling edges)."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


# ── Agents ──────────────────────────────────────────────────────────────────


class AgentError(AgentPayError):
    """Base exception for agent lookup and lifecycle errors."""
    def __init__(self, message: str, agent_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.agent_id = agent_id


class AgentNotFound(AgentError):
    """Requested agent does not exist in the repository."""
    pass


class AgentNotExecutable(AgentError):
    """Agent lifecycle status forbids execution (not ACTIVE, or deleted)."""
    def __init__(self, message: str, agent_id: str = "", status: str = "", **kwargs):
        super().__init__(message, agent_id=agent_id, **kwargs)
        self.status = status


# ── Tools ───────────────────────────────────────────────────────────────────


class ToolError(AgentPayError):
    """Tool execution failed."""
    def __init__(self, message: str, tool_name: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """No tool registered under the requested name."""
    pass


class ParameterValidationError(ToolError):
    """Resolved step parameters violate the tool's parameter schema."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


class StepTimeoutError(ToolError):
    """A step's tool call lost the race against its timeout."""
    def __init__(self, message: str, timeout_ms: float = 0, step_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms
        self.step_id = step_id


class RollbackPartialFailureError(ToolError):
    """A compensating rollback action failed. Logged and recorded, never raised out of the engine."""
    def __init__(self, message: str, step_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.step_id = step_id


# ── Mandates ────────────────────────────────────────────────────────────────


class MandateError(AgentPayError):
    """Base exception for mandate chain errors."""
    def __init__(self, message: str, mandate_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.mandate_id = mandate_id


class MandateNotFound(MandateError):
    """No mandate stored under the requested id."""
    pass


class MandateGateError(MandateError):
    """Authorization required by a step is missing, invalid, or not approved."""
    def __init__(self, message: str, reason: str = "mandate_not_approved", **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason


class MandateStateError(MandateError):
    """Operation not allowed in the mandate's current status."""
    def __init__(self, message: str, current_status: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class MandateIntegrityError(MandateError):
    """Stored hash or chain linkage does not match recomputed values: possible tampering."""
    pass


class MandateConflictError(MandateError):
    """Optimistic concurrency check failed: the mandate was modified concurrently."""
    def __init__(self, message: str, expected: int = 0, actual: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class SignatureError(MandateError):
    """Signing failed or no signer/verifier is configured."""
    pass
