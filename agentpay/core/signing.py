"""Asymmetric signatures over mandate hashes (Ed25519, ECDSA P-256, RSA-PSS).

A signature covers the UTF-8 bytes of the mandate's hex hash, so it stays
valid for exactly as long as the hash does.  Public keys travel with the
signature as PEM; ``key_id`` is a short fingerprint of the DER public key
for key-rotation bookkeeping.
"""

import hashlib
import logging
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from agentpay.exceptions import SignatureError
from agentpay.types import Mandate, MandateSignature, SignatureAlgorithm

logger = logging.getLogger(__name__)

PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]
PublicKey = Union[ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey]

_PSS = padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def _algorithm_for(key: Union[PrivateKey, PublicKey]) -> SignatureAlgorithm:
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey)):
        return SignatureAlgorithm.ED25519
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return SignatureAlgorithm.ECDSA
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return SignatureAlgorithm.RSA
    raise SignatureError(f"Unsupported key type: {type(key).__name__}")


def public_key_pem(key: PublicKey) -> str:
    return key.public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


def derive_key_id(key: PublicKey) -> str:
    """First 16 hex chars of SHA-256 over the DER-encoded public key."""
    der = key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return hashlib.sha256(der).hexdigest()[:16]


class MandateSigner:
    """Holds one private key and produces MandateSignature records."""

    def __init__(self, private_key: PrivateKey, key_id: Optional[str] = None):
        self.algorithm = _algorithm_for(private_key)
        self._private_key = private_key
        self.public_key = private_key.public_key()
        self.key_id = key_id or derive_key_id(self.public_key)

    @classmethod
    def generate(cls, algorithm: SignatureAlgorithm = SignatureAlgorithm.ED25519) -> "MandateSigner":
        """Create a signer with a fresh key pair."""
        if algorithm == SignatureAlgorithm.ED25519:
            key = ed25519.Ed25519PrivateKey.generate()
        elif algorithm == SignatureAlgorithm.ECDSA:
            key = ec.generate_private_key(ec.SECP256R1())
        elif algorithm == SignatureAlgorithm.RSA:
            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        else:
            raise SignatureError(f"Unsupported signature algorithm: {algorithm}")
        return cls(key)

    @classmethod
    def from_pem(cls, pem: bytes, password: Optional[bytes] = None, key_id: Optional[str] = None) -> "MandateSigner":
        try:
            key = serialization.load_pem_private_key(pem, password=password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SignatureError(f"Could not load private key: {exc}") from exc
        return cls(key, key_id=key_id)

    def private_key_pem(self, password: Optional[bytes] = None) -> bytes:
        encryption = (
            serialization.BestAvailableEncryption(password) if password
            else serialization.NoEncryption()
        )
        return self._private_key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
        )

    def sign_hash(self, digest: str) -> MandateSignature:
        """Sign a hex digest string."""
        data = digest.encode()
        if self.algorithm == SignatureAlgorithm.ED25519:
            raw = self._private_key.sign(data)
        elif self.algorithm == SignatureAlgorithm.ECDSA:
            raw = self._private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        else:
            raw = self._private_key.sign(data, _PSS, hashes.SHA256())
        return MandateSignature(
            algorithm=self.algorithm,
            public_key=public_key_pem(self.public_key),
            signature=raw.hex(),
            key_id=self.key_id,
        )

    def sign(self, mandate: Mandate) -> MandateSignature:
        if not mandate.cryptography.hash:
            raise SignatureError(
                f"Mandate '{mandate.mandate_id}' has no hash to sign", mandate_id=mandate.mandate_id
            )
        return self.sign_hash(mandate.cryptography.hash)


class MandateVerifier:
    """Checks MandateSignature records against a mandate's current hash.

    With ``trusted_key_ids`` set, signatures from any other key are rejected
    even when mathematically valid.
    """

    def __init__(self, trusted_key_ids: Optional[set[str]] = None):
        self.trusted_key_ids = set(trusted_key_ids) if trusted_key_ids is not None else None

    def verify(self, mandate: Mandate, signature: MandateSignature) -> bool:
        """True only if ``signature`` is a valid signature of the mandate's hash.  Never raises."""
        if self.trusted_key_ids is not None and signature.key_id not in self.trusted_key_ids:
            logger.warning("[Signing] Untrusted key %s on %s", signature.key_id, mandate.mandate_id)
            return False
        try:
            key = serialization.load_pem_public_key(signature.public_key.encode())
            if _algorithm_for(key) != signature.algorithm:
                return False
            raw = bytes.fromhex(signature.signature)
            data = mandate.cryptography.hash.encode()
            if signature.algorithm == SignatureAlgorithm.ED25519:
                key.verify(raw, data)
            elif signature.algorithm == SignatureAlgorithm.ECDSA:
                key.verify(raw, data, ec.ECDSA(hashes.SHA256()))
            else:
                key.verify(raw, data, _PSS, hashes.SHA256())
            return True
        except InvalidSignature:
            logger.warning("[Signing] Bad signature by %s on %s", signature.key_id, mandate.mandate_id)
            return False
        except (ValueError, TypeError, UnsupportedAlgorithm, SignatureError) as exc:
            logger.warning("[Signing] Unverifiable signature on %s: %s", mandate.mandate_id, exc)
            return False
