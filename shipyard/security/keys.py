"""Key management for credential signing and verification."""

from __future__ import annotations

import uuid
from typing import Any, Dict, NamedTuple, Optional

from cryptography.hazmat.primitives.asymmetric import rsa


class SigningKey(NamedTuple):
    kid: str
    algorithm: str
    key: Any


class KeyProvider:
    """Provides the current signing key and the keys accepted for verification."""

    def signing_key(self) -> SigningKey:  # pragma: no cover - interface
        raise NotImplementedError

    def verification_keys(self) -> Dict[str, SigningKey]:  # pragma: no cover
        """Return mapping of ``kid`` to verification keys."""
        raise NotImplementedError


class StaticKeyProvider(KeyProvider):
    """A single fixed key.

    For HMAC algorithms ``key`` is the shared secret and also verifies. For
    asymmetric algorithms ``key`` is the private key and ``public_key`` (derived
    from it when omitted) verifies.
    """

    def __init__(
        self,
        key: Any,
        algorithm: str = "HS256",
        kid: str = "default",
        public_key: Optional[Any] = None,
    ) -> None:
        self._signing = SigningKey(kid=kid, algorithm=algorithm, key=key)
        if public_key is None:
            public_key = key.public_key() if hasattr(key, "public_key") else key
        self._verification = SigningKey(kid=kid, algorithm=algorithm, key=public_key)

    def signing_key(self) -> SigningKey:
        return self._signing

    def verification_keys(self) -> Dict[str, SigningKey]:
        return {self._verification.kid: self._verification}


def generate_signing_key(key_size: int = 2048) -> StaticKeyProvider:
    """Create an ephemeral RS256 key pair.

    Credentials never outlive the process, so a key generated at startup is
    enough for local brokers.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return StaticKeyProvider(
        private_key, algorithm="RS256", kid=f"ephemeral-{uuid.uuid4().hex[:8]}"
    )
