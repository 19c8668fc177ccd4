"""JWS signing and verification of broker-issued credentials."""

from __future__ import annotations

from typing import Any, Dict

import jwt

from ..exceptions import CredentialRejected
from .keys import KeyProvider


class CredentialSigner:
    """Signs credential claims as compact JWS tokens and verifies them.

    Expiry is not checked here: :class:`~shipyard.security.broker.CredentialBroker`
    compares ``exp`` against its own clock so the check is deterministic.
    """

    def __init__(self, key_provider: KeyProvider, issuer: str) -> None:
        self.key_provider = key_provider
        self.issuer = issuer

    def sign(self, claims: Dict[str, Any]) -> str:
        signing = self.key_provider.signing_key()
        payload = {"iss": self.issuer, **claims}
        return jwt.encode(
            payload, signing.key, algorithm=signing.algorithm, headers={"kid": signing.kid}
        )

    def verify(self, token: str, audience: str) -> Dict[str, Any]:
        """Return the claims of ``token`` if its signature and audience are valid."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.exceptions.DecodeError as exc:
            raise CredentialRejected(f"malformed token: {exc}") from exc

        keys = self.key_provider.verification_keys()
        key = keys.get(header.get("kid"))
        if key is None:
            raise CredentialRejected("unknown signing key")
        try:
            return jwt.decode(
                token,
                key.key,
                algorithms=[key.algorithm],
                audience=audience,
                issuer=self.issuer,
                options={"verify_exp": False, "verify_iat": False},
            )
        except jwt.exceptions.InvalidTokenError as exc:
            raise CredentialRejected(f"invalid token: {exc}") from exc
