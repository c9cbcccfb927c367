"""Creates, approves and executes hash-sealed mandates. The authorization backbone.

A mandate's hash covers ``{mandate_id, type, content, chain, created_at}`` as
canonical JSON.  The forward link ``chain.next_mandate_id`` is excluded: it
is attached after the mandate is sealed, and adding a successor must not
invalidate signatures already made over the predecessor.

Status only moves forward (PENDING → APPROVED → EXECUTED) or sideways into
a terminal state (EXPIRED, CANCELLED, REJECTED).  Every mutation is
serialised per mandate and written through the ledger's revision check.
"""

import asyncio
import hashlib
import json
import logging
import secrets
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from agentpay.config import AgentPayConfig
from agentpay.core.ledger import MandateLedger
from agentpay.core.signing import MandateSigner, MandateVerifier
from agentpay.exceptions import (
    MandateGateError, MandateIntegrityError, MandateNotFound, MandateStateError, SignatureError,
)
from agentpay.types import (
    Mandate, MandateApproval, MandateChainLink, MandateContent, MandateCryptography,
    MandateExecution, MandateExecutionResult, MandateSignature, MandateStatus, MandateType,
    utcnow,
)

logger = logging.getLogger(__name__)

SUPPORTED_HASH_ALGORITHMS = ("sha256", "sha512", "blake2b")

_ALLOWED_TRANSITIONS: dict[MandateStatus, frozenset] = {
    MandateStatus.PENDING: frozenset({
        MandateStatus.APPROVED, MandateStatus.EXPIRED,
        MandateStatus.CANCELLED, MandateStatus.REJECTED,
    }),
    MandateStatus.APPROVED: frozenset({
        MandateStatus.EXECUTED, MandateStatus.EXPIRED, MandateStatus.CANCELLED,
    }),
    MandateStatus.EXECUTED: frozenset(),
    MandateStatus.EXPIRED: frozenset(),
    MandateStatus.CANCELLED: frozenset(),
    MandateStatus.REJECTED: frozenset(),
}

_ID_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class _LockEntry:
    """Per-mandate lock, dropped once no coroutine holds or waits on it."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def new_mandate_id(mandate_type: MandateType, now: Optional[datetime] = None) -> str:
    """``MND_YYYYMMDD_<TYPE>_<6 random>``"""
    return f"MND_{(now or utcnow()):%Y%m%d}_{mandate_type.value}_{_random_suffix(6)}"


def new_chain_id(now: Optional[datetime] = None) -> str:
    """``CHN_YYYYMMDD_<8 random>``"""
    return f"CHN_{(now or utcnow()):%Y%m%d}_{_random_suffix(8)}"


def compute_mandate_hash(mandate: Mandate, algorithm: str = "sha256") -> str:
    """Canonical digest of the sealed part of a mandate.

    Raises:
        ValueError: unsupported algorithm
    """
    if algorithm not in SUPPORTED_HASH_ALGORITHMS:
        raise ValueError(
            f"Unsupported hash algorithm '{algorithm}'; expected one of {SUPPORTED_HASH_ALGORITHMS}"
        )
    sealed = mandate.model_dump(
        mode="json",
        include={"mandate_id", "type", "content", "chain", "created_at"},
    )
    sealed["chain"].pop("next_mandate_id", None)
    canonical = json.dumps(sealed, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.new(algorithm, canonical.encode()).hexdigest()


def hash_matches(mandate: Mandate) -> bool:
    try:
        expected = compute_mandate_hash(mandate, mandate.cryptography.hash_algorithm)
    except ValueError:
        return False
    return bool(mandate.cryptography.hash) and secrets.compare_digest(
        expected, mandate.cryptography.hash
    )


def can_execute(mandate: Mandate, now: Optional[datetime] = None) -> bool:
    """APPROVED, not expired, and approval either not required or present."""
    return (
        mandate.status == MandateStatus.APPROVED
        and not mandate.is_expired(now)
        and (not mandate.content.authorization.requires_approval or bool(mandate.approvals))
    )


class MandateChain:
    """Mandate lifecycle: create, sign, approve, execute, verify.

    Args:
        store: MandateLedger holding the mandates
        signer: Optional signer; when set, ``create`` attaches the creator's signature
        verifier: Optional verifier; when set, ``is_valid`` checks every signature
        approval_threshold: Approvals needed for PENDING → APPROVED (defaults to config)
        require_signatures: Whether the execution gate demands at least one signature.
                            Defaults to True when a signer or verifier is configured.
        event_sink: Optional sink for ``mandate:*`` events
    """

    def __init__(
        self,
        store: Optional[MandateLedger] = None,
        signer: Optional[MandateSigner] = None,
        verifier: Optional[MandateVerifier] = None,
        approval_threshold: Optional[int] = None,
        config: Optional[AgentPayConfig] = None,
        event_sink=None,
        require_signatures: Optional[bool] = None,
    ):
        self.config = config or AgentPayConfig()
        self.store = store or MandateLedger()
        self.signer = signer
        self.verifier = verifier
        self.approval_threshold = max(
            1, approval_threshold if approval_threshold is not None
            else self.config.mandate_approval_threshold
        )
        self.require_signatures = (
            require_signatures if require_signatures is not None
            else (signer is not None or verifier is not None)
        )
        self.event_sink = event_sink
        self._locks: dict[str, _LockEntry] = {}

    # ── Internals ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _locked(self, mandate_id: str):
        entry = self._locks.get(mandate_id)
        if entry is None:
            entry = self._locks[mandate_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[mandate_id]

    async def _load(self, mandate_id: str) -> Mandate:
        mandate = await self.store.get(mandate_id)
        if mandate is None:
            raise MandateNotFound(f"Mandate '{mandate_id}' not found", mandate_id=mandate_id)
        return mandate

    def _transition(self, mandate: Mandate, target: MandateStatus, **updates: Any) -> Mandate:
        if target not in _ALLOWED_TRANSITIONS[mandate.status]:
            raise MandateStateError(
                f"Mandate '{mandate.mandate_id}' cannot move from {mandate.status.value} to {target.value}",
                mandate_id=mandate.mandate_id,
                current_status=mandate.status.value,
            )
        return mandate.model_copy(update={"status": target, "updated_at": utcnow(), **updates})

    def _seal(self, mandate: Mandate) -> Mandate:
        digest = compute_mandate_hash(mandate, mandate.cryptography.hash_algorithm)
        crypto = mandate.cryptography.model_copy(update={"hash": digest})
        return mandate.model_copy(update={"cryptography": crypto})

    def _with_signature(self, mandate: Mandate, signature: MandateSignature) -> Mandate:
        crypto = mandate.cryptography.model_copy(
            update={"signatures": [*mandate.cryptography.signatures, signature]}
        )
        return mandate.model_copy(update={"cryptography": crypto, "updated_at": utcnow()})

    async def _expire(self, mandate: Mandate) -> Mandate:
        expired = self._transition(mandate, MandateStatus.EXPIRED)
        stored = await self.store.save(expired, expected_revision=mandate.revision)
        logger.info("[Mandates] %s expired", mandate.mandate_id)
        return stored

    def _publish(self, topic: str, mandate: Mandate, **data: Any) -> None:
        if self.event_sink is None:
            return
        payload = {
            "timestamp": utcnow().isoformat(),
            "tenant_id": mandate.tenant_id,
            "agent_id": mandate.agent_id,
            "data": {"mandate_id": mandate.mandate_id, "status": mandate.status.value, **data},
        }
        try:
            self.event_sink.publish(topic, payload)
        except Exception as exc:
            logger.warning("[Mandates] Event sink failed for %s: %s", topic, exc)

    # ── Lookup ───────────────────────────────────────────────────────────

    async def get(self, mandate_id: str) -> Mandate:
        """Raises MandateNotFound."""
        return await self._load(mandate_id)

    async def find(self, mandate_id: str) -> Optional[Mandate]:
        return await self.store.get(mandate_id)

    # ── Creation ─────────────────────────────────────────────────────────

    async def create(
        self,
        content: Union[MandateContent, dict],
        creator_id: str,
        type: MandateType = MandateType.INTENT,
        tenant_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        previous_mandate_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Mandate:
        """Create a PENDING mandate, sealed with its hash.

        Unlinked mandates start a new chain at sequence 0.  A mandate linked
        to ``previous_mandate_id`` inherits that chain and the next sequence
        number, and the predecessor's forward link is set.

        Raises:
            MandateNotFound: the predecessor does not exist
            MandateStateError: the predecessor already has a successor
        """
        if isinstance(content, dict):
            content = MandateContent.model_validate(content)
        now = utcnow()
        if expires_at is None and ttl_seconds is not None:
            expires_at = now + timedelta(seconds=ttl_seconds)
        mandate_id = new_mandate_id(type, now)

        if previous_mandate_id is None:
            return await self._store_new(
                self._build(mandate_id, content, creator_id, type, tenant_id, agent_id,
                            MandateChainLink(chain_id=new_chain_id(now), sequence_number=0),
                            expires_at, now)
            )

        async with self._locked(previous_mandate_id):
            previous = await self._load(previous_mandate_id)
            if previous.chain.next_mandate_id:
                raise MandateStateError(
                    f"Mandate '{previous_mandate_id}' already links to "
                    f"'{previous.chain.next_mandate_id}'",
                    mandate_id=previous_mandate_id,
                    current_status=previous.status.value,
                )
            link = MandateChainLink(
                chain_id=previous.chain.chain_id,
                previous_mandate_id=previous_mandate_id,
                sequence_number=previous.chain.sequence_number + 1,
            )
            mandate = await self._store_new(
                self._build(mandate_id, content, creator_id, type,
                            tenant_id or previous.tenant_id, agent_id or previous.agent_id,
                            link, expires_at, now)
            )
            forward = previous.chain.model_copy(update={"next_mandate_id": mandate_id})
            await self.store.save(
                previous.model_copy(update={"chain": forward, "updated_at": utcnow()}),
                expected_revision=previous.revision,
            )
            return mandate

    def _build(
        self, mandate_id, content, creator_id, mandate_type, tenant_id, agent_id,
        link, expires_at, now,
    ) -> Mandate:
        mandate = Mandate(
            mandate_id=mandate_id,
            tenant_id=tenant_id,
            agent_id=agent_id,
            created_by=creator_id,
            type=mandate_type,
            content=content,
            cryptography=MandateCryptography(hash_algorithm=self.config.mandate_hash_algorithm),
            chain=link,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        mandate = self._seal(mandate)
        if self.signer is not None:
            mandate = self._with_signature(mandate, self.signer.sign(mandate))
        return mandate

    async def _store_new(self, mandate: Mandate) -> Mandate:
        stored = await self.store.save(mandate)
        logger.info(
            "[Mandates] Created %s (chain %s #%d)",
            stored.mandate_id, stored.chain.chain_id, stored.chain.sequence_number,
        )
        self._publish("mandate:created", stored, chain_id=stored.chain.chain_id)
        return stored

    async def amend(self, mandate_id: str, content: Union[MandateContent, dict]) -> Mandate:
        """Replace the content of a PENDING mandate and re-seal it.

        Existing signatures covered the old hash, so they are dropped; the
        configured signer (if any) signs again.
        """
        if isinstance(content, dict):
            content = MandateContent.model_validate(content)
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            if mandate.status != MandateStatus.PENDING or mandate.approvals:
                raise MandateStateError(
                    f"Mandate '{mandate_id}' can only be amended while PENDING and unapproved",
                    mandate_id=mandate_id,
                    current_status=mandate.status.value,
                )
            crypto = mandate.cryptography.model_copy(update={"signatures": []})
            updated = self._seal(mandate.model_copy(
                update={"content": content, "cryptography": crypto, "updated_at": utcnow()}
            ))
            if self.signer is not None:
                updated = self._with_signature(updated, self.signer.sign(updated))
            return await self.store.save(updated, expected_revision=mandate.revision)

    # ── Signatures ───────────────────────────────────────────────────────

    async def add_signature(self, mandate_id: str, signature: MandateSignature) -> Mandate:
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            if self.verifier is not None and not self.verifier.verify(mandate, signature):
                raise SignatureError(
                    f"Signature by key '{signature.key_id}' does not verify", mandate_id=mandate_id
                )
            return await self.store.save(
                self._with_signature(mandate, signature), expected_revision=mandate.revision
            )

    async def sign(self, mandate_id: str) -> Mandate:
        """Attach the configured signer's signature.

        Raises:
            SignatureError: no signer configured
        """
        if self.signer is None:
            raise SignatureError("No signer configured", mandate_id=mandate_id)
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            return await self.store.save(
                self._with_signature(mandate, self.signer.sign(mandate)),
                expected_revision=mandate.revision,
            )

    # ── Approval ─────────────────────────────────────────────────────────

    async def add_approval(
        self, mandate_id: str, approver_id: str, role: str, notes: Optional[str] = None
    ) -> Mandate:
        """Record one approval; reaching the threshold moves the mandate to APPROVED.

        Raises:
            MandateStateError: not PENDING, approval not required, duplicate
                approver, or expired (the mandate is then marked EXPIRED)
        """
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            if mandate.status != MandateStatus.PENDING:
                raise MandateStateError(
                    f"Mandate '{mandate_id}' is {mandate.status.value}, not PENDING",
                    mandate_id=mandate_id, current_status=mandate.status.value,
                )
            if not mandate.content.authorization.requires_approval:
                raise MandateStateError(
                    f"Mandate '{mandate_id}' does not require approval",
                    mandate_id=mandate_id, current_status=mandate.status.value,
                )
            if any(a.approver_id == approver_id for a in mandate.approvals):
                raise MandateStateError(
                    f"'{approver_id}' has already approved mandate '{mandate_id}'",
                    mandate_id=mandate_id, current_status=mandate.status.value,
                )
            if mandate.is_expired():
                await self._expire(mandate)
                raise MandateStateError(
                    f"Mandate '{mandate_id}' has expired",
                    mandate_id=mandate_id, current_status=MandateStatus.EXPIRED.value,
                )

            approvals = [
                *mandate.approvals,
                MandateApproval(approver_id=approver_id, role=role, notes=notes),
            ]
            if len(approvals) >= self.approval_threshold:
                updated = self._transition(mandate, MandateStatus.APPROVED, approvals=approvals)
            else:
                updated = mandate.model_copy(update={"approvals": approvals, "updated_at": utcnow()})
            stored = await self.store.save(updated, expected_revision=mandate.revision)

        logger.info(
            "[Mandates] %s approved by %s (%d/%d)",
            mandate_id, approver_id, len(approvals), self.approval_threshold,
        )
        if stored.status == MandateStatus.APPROVED:
            self._publish("mandate:approved", stored, approver_id=approver_id)
        return stored

    async def authorize(self, mandate_id: str, actor_id: str) -> Mandate:
        """System path PENDING → APPROVED for mandates that need no human approval.

        Raises:
            MandateStateError: approval is required, or the mandate is not PENDING / expired
        """
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            if mandate.content.authorization.requires_approval:
                raise MandateStateError(
                    f"Mandate '{mandate_id}' requires approval; use add_approval",
                    mandate_id=mandate_id, current_status=mandate.status.value,
                )
            if mandate.status == MandateStatus.PENDING and mandate.is_expired():
                await self._expire(mandate)
                raise MandateStateError(
                    f"Mandate '{mandate_id}' has expired",
                    mandate_id=mandate_id, current_status=MandateStatus.EXPIRED.value,
                )
            stored = await self.store.save(
                self._transition(mandate, MandateStatus.APPROVED),
                expected_revision=mandate.revision,
            )
        logger.info("[Mandates] %s authorized by %s", mandate_id, actor_id)
        self._publish("mandate:approved", stored, approver_id=actor_id)
        return stored

    async def reject(self, mandate_id: str, approver_id: str, reason: str = "") -> Mandate:
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            status_reason = f"rejected by {approver_id}" + (f": {reason}" if reason else "")
            stored = await self.store.save(
                self._transition(mandate, MandateStatus.REJECTED, status_reason=status_reason),
                expected_revision=mandate.revision,
            )
        logger.info("[Mandates] %s rejected by %s", mandate_id, approver_id)
        return stored

    async def cancel(self, mandate_id: str, reason: str = "") -> Mandate:
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            stored = await self.store.save(
                self._transition(mandate, MandateStatus.CANCELLED, status_reason=reason or None),
                expected_revision=mandate.revision,
            )
        logger.info("[Mandates] %s cancelled", mandate_id)
        return stored

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Move every expired PENDING/APPROVED mandate to EXPIRED.  Returns their ids."""
        now = now or utcnow()
        candidates = [
            *(await self.store.list_by_status(MandateStatus.PENDING)),
            *(await self.store.list_by_status(MandateStatus.APPROVED)),
        ]
        expired: list[str] = []
        for candidate in candidates:
            if not candidate.is_expired(now):
                continue
            async with self._locked(candidate.mandate_id):
                mandate = await self._load(candidate.mandate_id)
                if mandate.status in (MandateStatus.PENDING, MandateStatus.APPROVED):
                    await self._expire(mandate)
                    expired.append(mandate.mandate_id)
        return expired

    # ── Checks ───────────────────────────────────────────────────────────

    def is_valid(self, mandate: Mandate, verify_signatures: bool = False) -> bool:
        """Not expired, hash matches, and at least one signature.

        With a verifier configured (or ``verify_signatures=True``) every
        signature must also verify against the current hash.
        """
        if mandate.is_expired():
            return False
        if not hash_matches(mandate):
            return False
        if not mandate.cryptography.signatures:
            return False
        if verify_signatures or self.verifier is not None:
            verifier = self.verifier or MandateVerifier()
            return all(verifier.verify(mandate, s) for s in mandate.cryptography.signatures)
        return True

    def can_execute(self, mandate: Mandate) -> bool:
        return can_execute(mandate)

    async def check_gate(self, mandate_id: str) -> Mandate:
        """Return the mandate if a gated step may run under it.

        Signatures are checked only when ``require_signatures`` is set, which
        is the default once a signer or verifier is configured.  Without one,
        an unsigned mandate whose hash is intact passes the gate even though
        ``is_valid`` reports it invalid.

        Raises:
            MandateGateError: reason is one of ``mandate_not_found``,
                ``mandate_expired``, ``mandate_invalid`` or ``mandate_not_approved``
        """
        mandate = await self.store.get(mandate_id)
        if mandate is None:
            raise MandateGateError(
                f"Mandate '{mandate_id}' not found", reason="mandate_not_found", mandate_id=mandate_id
            )
        if mandate.is_expired() or mandate.status == MandateStatus.EXPIRED:
            raise MandateGateError(
                f"Mandate '{mandate_id}' has expired", reason="mandate_expired", mandate_id=mandate_id
            )
        if not hash_matches(mandate):
            raise MandateGateError(
                f"Mandate '{mandate_id}' hash does not match its content",
                reason="mandate_invalid", mandate_id=mandate_id,
            )
        if self.require_signatures and not self.is_valid(mandate):
            raise MandateGateError(
                f"Mandate '{mandate_id}' has no valid signature",
                reason="mandate_invalid", mandate_id=mandate_id,
            )
        if not can_execute(mandate):
            raise MandateGateError(
                f"Mandate '{mandate_id}' is {mandate.status.value}, not approved",
                reason="mandate_not_approved", mandate_id=mandate_id,
            )
        return mandate

    # ── Execution ────────────────────────────────────────────────────────

    async def execute(
        self,
        mandate_id: str,
        executor_id: str,
        result: Union[MandateExecutionResult, dict, None] = None,
    ) -> Mandate:
        """Mark an APPROVED mandate EXECUTED.  Happens exactly once per mandate.

        Raises:
            MandateStateError: the mandate cannot execute (wrong status, expired,
                or missing required approval)
        """
        if isinstance(result, dict):
            result = MandateExecutionResult.model_validate(result)
        async with self._locked(mandate_id):
            mandate = await self._load(mandate_id)
            if not can_execute(mandate):
                if mandate.status == MandateStatus.APPROVED and mandate.is_expired():
                    await self._expire(mandate)
                raise MandateStateError(
                    f"Mandate '{mandate_id}' cannot be executed in status {mandate.status.value}",
                    mandate_id=mandate_id, current_status=mandate.status.value,
                )
            execution = MandateExecution(
                executed_at=utcnow(),
                executed_by=executor_id,
                result=result or MandateExecutionResult(success=True),
            )
            stored = await self.store.save(
                self._transition(mandate, MandateStatus.EXECUTED, execution=execution),
                expected_revision=mandate.revision,
            )
        logger.info("[Mandates] %s executed by %s", mandate_id, executor_id)
        self._publish("mandate:executed", stored, executed_by=executor_id)
        return stored

    # ── Chains ───────────────────────────────────────────────────────────

    async def get_chain(self, chain_id: str) -> list[Mandate]:
        return await self.store.get_chain(chain_id)

    async def verify_chain(self, chain_id: str) -> bool:
        """Check every hash and link in a chain.

        Raises:
            MandateNotFound: no mandates carry this chain id
            MandateIntegrityError: hash mismatch, sequence gap, or broken link
        """
        mandates = await self.store.get_chain(chain_id)
        if not mandates:
            raise MandateNotFound(f"Chain '{chain_id}' has no mandates")
        for i, mandate in enumerate(mandates):
            mid = mandate.mandate_id
            if not hash_matches(mandate):
                raise MandateIntegrityError(
                    f"Chain '{chain_id}': hash mismatch on {mid}", mandate_id=mid
                )
            if mandate.chain.sequence_number != i:
                raise MandateIntegrityError(
                    f"Chain '{chain_id}': expected sequence {i}, {mid} has "
                    f"{mandate.chain.sequence_number}",
                    mandate_id=mid,
                )
            expected_prev = mandates[i - 1].mandate_id if i else None
            if mandate.chain.previous_mandate_id != expected_prev:
                raise MandateIntegrityError(
                    f"Chain '{chain_id}': {mid} links back to "
                    f"{mandate.chain.previous_mandate_id}, expected {expected_prev}",
                    mandate_id=mid,
                )
            expected_next = mandates[i + 1].mandate_id if i + 1 < len(mandates) else None
            if mandate.chain.next_mandate_id != expected_next:
                raise MandateIntegrityError(
                    f"Chain '{chain_id}': {mid} links forward to "
                    f"{mandate.chain.next_mandate_id}, expected {expected_next}",
                    mandate_id=mid,
                )
        return True
