"""Mandate chain, signing, ledger and the workflow orchestrator."""

from agentpay.core.ledger import MandateLedger
from agentpay.core.mandates import MandateChain, compute_mandate_hash
from agentpay.core.orchestrator import AgentOrchestrator
from agentpay.core.signing import MandateSigner, MandateVerifier

__all__ = [
    "AgentOrchestrator", "MandateChain", "MandateLedger",
    "MandateSigner", "MandateVerifier", "compute_mandate_hash",
]
