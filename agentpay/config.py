"""Application configuration. All env vars defined here with defaults."""

from pydantic_settings import BaseSettings
from typing import Optional


class AgentPayConfig(BaseSettings):
    # ── App ──
    app_name: str = "agentpay"
    debug: bool = False
    log_level: str = "INFO"

    # ── Workflow ──
    default_step_timeout_ms: int = 30_000
    long_timeout_warning_ms: int = 300_000      # steps above this get a validation warning
    max_workflow_steps: int = 100
    max_execution_ms: Optional[int] = None      # per-run wall clock; None = unlimited

    # ── Mandates ──
    mandate_approval_threshold: int = 1         # approvals needed for PENDING → APPROVED
    mandate_default_ttl_seconds: int = 86_400   # applied to engine-created mandates
    mandate_hash_algorithm: str = "sha256"      # sha256 | sha512 | blake2b

    # ── Built-in tools ──
    http_user_agent: str = "AgentPay-Hub/1.0"
    http_default_timeout_ms: int = 30_000
    wait_min_ms: int = 100
    wait_max_ms: int = 300_000

    # ── Cost ──
    cost_per_step: float = 0.01
    cost_per_second: float = 0.001

    # ── Audit ──
    event_topics_logged: list[str] = ["*"]      # topics written to the agentpay.audit logger

    model_config = {"env_prefix": "AGENTPAY_", "env_file": ".env", "extra": "ignore"}


config = AgentPayConfig()
