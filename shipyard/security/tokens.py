"""Run-identity assertions and the trust anchors that validate them."""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Mapping, Optional

import jwt
import requests

from ..config import TrustConfig
from ..exceptions import InvalidAssertion
from .keys import KeyProvider

REQUIRED_CLAIMS = ["sub", "exp", "iat"]

# Algorithms a published JWK may be used with; never taken from the token header.
JWKS_ALGORITHMS = ["RS256", "RS384", "RS512"]

# PyJWT raises InvalidKeyError (a PyJWTError) or TypeError when the header
# names an algorithm the key does not fit.
DECODE_ERRORS = (jwt.exceptions.PyJWTError, ValueError, TypeError)


class TrustAnchor:
    """Validates run-identity assertions.

    ``validate`` may block (key fetches), so callers run it in a worker thread.
    """

    def validate(self, token: str) -> Mapping[str, Any]:  # pragma: no cover - interface
        """Validate ``token`` and return its claims."""
        raise NotImplementedError


class StaticTrustAnchor(TrustAnchor):
    """Trusts assertions signed by keys known up front."""

    def __init__(
        self,
        key_provider: KeyProvider,
        audience: str = "shipyard",
        issuer: str = "shipyard-local",
        leeway: int = 0,
    ) -> None:
        self.key_provider = key_provider
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway

    def validate(self, token: str) -> Mapping[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
            key = self.key_provider.verification_keys().get(header.get("kid"))
            if key is None:
                raise InvalidAssertion("no matching key for assertion")
            return jwt.decode(
                token,
                key.key,
                algorithms=[key.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": REQUIRED_CLAIMS},
            )
        except DECODE_ERRORS as exc:
            raise InvalidAssertion(str(exc)) from exc


class JwksTrustAnchor(TrustAnchor):
    """Trusts assertions signed by keys published at a JWKS endpoint."""

    cache_ttl = 300

    def __init__(self, config: TrustConfig) -> None:
        if not config.jwks_url:
            raise ValueError("JwksTrustAnchor requires trust.jwks_url")
        self.config = config
        self._jwks_cache: List[Mapping] = []
        self._last_fetch: float = 0

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.config.jwks_url, timeout=5)
        resp.raise_for_status()
        self._jwks_cache = resp.json().get("keys", [])
        self._last_fetch = time.time()

    def validate(self, token: str) -> Mapping[str, Any]:
        now = time.time()
        try:
            if not self._jwks_cache or now - self._last_fetch > self.cache_ttl:
                self._fetch_jwks()
        except requests.RequestException as exc:
            raise InvalidAssertion(f"could not fetch JWKS: {exc}") from exc

        try:
            header = jwt.get_unverified_header(token)
            for key in self._jwks_cache:
                if key.get("kid") == header.get("kid"):
                    return jwt.decode(
                        token,
                        jwt.algorithms.RSAAlgorithm.from_jwk(key),
                        audience=self.config.audience,
                        issuer=self.config.issuer,
                        leeway=self.config.leeway,
                        algorithms=self._algorithms(key),
                        options={"require": REQUIRED_CLAIMS},
                    )
        except DECODE_ERRORS as exc:
            raise InvalidAssertion(str(exc)) from exc
        raise InvalidAssertion("no matching JWK found")

    @staticmethod
    def _algorithms(jwk: Mapping[str, Any]) -> List[str]:
        alg = jwk.get("alg")
        if alg is None:
            return JWKS_ALGORITHMS
        if alg not in JWKS_ALGORITHMS:
            raise InvalidAssertion(f"JWK {jwk.get('kid')} uses unsupported algorithm {alg}")
        return [alg]


class RunIdentityProvider:
    """Mints run-identity assertions for pipeline runs.

    Hosted CI systems hand each job an OIDC token; for local runs and tests
    this provider plays that role.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        audience: str = "shipyard",
        issuer: str = "shipyard-local",
        lifetime_seconds: int = 3600,
    ) -> None:
        self.key_provider = key_provider
        self.audience = audience
        self.issuer = issuer
        self.lifetime_seconds = lifetime_seconds

    def mint(self, run_id: str, extra_claims: Optional[Dict[str, Any]] = None) -> str:
        now = int(time.time())
        claims = {
            "sub": run_id,
            "aud": self.audience,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.lifetime_seconds,
            "jti": uuid.uuid4().hex,
            **(extra_claims or {}),
        }
        signing = self.key_provider.signing_key()
        return jwt.encode(
            claims, signing.key, algorithm=signing.algorithm, headers={"kid": signing.kid}
        )
