"""
Registry authentication.

Models the Docker Registry v2 auth flow as an explicit state machine:
``UNAUTHENTICATED -> TOKEN_REQUESTED -> AUTHENTICATED``. The client sends a
request without credentials; on ``401`` it hands the challenge to
``RegistryAuth.handle_challenge``, which fetches a bearer token from the
realm (or prepares basic credentials) so the request can be retried once.
"""
from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import httpx

from ..errors import AuthFailure, NetworkError

logger = logging.getLogger(__name__)

__all__ = ["AuthState", "AuthChallenge", "RegistryAuth", "DockerAuth"]

# Refresh cached tokens this long before they expire
_TOKEN_EXPIRY_MARGIN_S = 30
_DEFAULT_TOKEN_TTL_S = 60


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_REQUESTED = "token_requested"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class AuthChallenge:
    """Parsed ``WWW-Authenticate`` header."""
    scheme: str
    realm: Optional[str] = None
    service: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def parse(cls, header: str) -> Optional[AuthChallenge]:
        """
        Parse ``Bearer realm="...",service="...",scope="..."`` or ``Basic realm="..."``.

        Returns None when the header is empty or uses an unknown scheme.
        """
        scheme, _, params_text = header.strip().partition(" ")
        scheme = scheme.lower()
        if scheme not in ("bearer", "basic"):
            return None
        params = {m.group(1).lower(): m.group(2) for m in re.finditer(r'(\w+)="([^"]*)"', params_text)}
        return cls(
            scheme=scheme,
            realm=params.get("realm"),
            service=params.get("service"),
            scope=params.get("scope"),
        )


class DockerAuth:
    """Read registry credentials from the Docker config file."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.home() / ".docker" / "config.json"

    def get_credentials(self, registry: str) -> Optional[Tuple[str, str]]:
        """
        Get credentials for registry from Docker config.

        Returns: (username, password) or None if not found
        """
        config = self._load_config()
        if not config:
            return None

        auths = config.get("auths", {})
        for key in (registry, f"https://{registry}", f"http://{registry}"):
            if key in auths:
                auth_entry = auths[key]
                break
        else:
            return None

        # Handle base64 encoded auth field
        if "auth" in auth_entry:
            try:
                decoded = base64.b64decode(auth_entry["auth"]).decode()
            except (binascii.Error, UnicodeDecodeError) as e:
                logger.debug("Ignoring malformed auth entry for %s: %s", registry, e)
            else:
                if ":" in decoded:
                    username, password = decoded.split(":", 1)
                    return (username, password)

        if "username" in auth_entry and "password" in auth_entry:
            return (auth_entry["username"], auth_entry["password"])

        return None

    def _load_config(self) -> Optional[dict]:
        if not self.config_path.exists():
            return None
        try:
            with open(self.config_path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("Cannot read Docker config %s: %s", self.config_path, e)
            return None


class RegistryAuth:
    """
    Auth negotiation for one registry.

    Credentials are passed in explicitly; nothing is read from the
    environment here. Bearer tokens are cached per scope.
    """

    def __init__(self, registry: str, *,
                 credentials: Optional[Tuple[str, str]] = None,
                 token: Optional[str] = None):
        self.registry = registry
        self.credentials = credentials
        self.state = AuthState.UNAUTHENTICATED
        self._authorization: Optional[str] = None
        # Token cache: {service/scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}
        if token:
            self._authorization = f"Bearer {token}"
            self.state = AuthState.AUTHENTICATED

    def apply(self, headers: httpx.Headers) -> None:
        """Attach the current Authorization header, if any."""
        if self.state is AuthState.AUTHENTICATED and self._authorization:
            headers["Authorization"] = self._authorization

    async def handle_challenge(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        """
        Answer a ``401`` so the original request can be retried once.

        Raises:
            AuthFailure: If there is no usable challenge, credentials are
                required but missing, or the token endpoint rejects them
            NetworkError: If the token endpoint is unreachable
        """
        challenge = AuthChallenge.parse(response.headers.get("WWW-Authenticate", ""))
        if challenge is None:
            raise AuthFailure(f"Registry {self.registry} returned 401 without a usable challenge")

        if challenge.scheme == "basic":
            if not self.credentials:
                raise AuthFailure(f"Registry {self.registry} requires credentials")
            username, password = self.credentials
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
            self._authorization = f"Basic {encoded}"
            self.state = AuthState.AUTHENTICATED
            return

        if not challenge.realm:
            raise AuthFailure(f"Bearer challenge from {self.registry} has no realm")

        cache_key = f"{challenge.service or ''}:{challenge.scope or ''}"
        cached = self._token_cache.get(cache_key)
        if cached and time.time() < cached[1] - _TOKEN_EXPIRY_MARGIN_S and f"Bearer {cached[0]}" != self._authorization:
            self._authorization = f"Bearer {cached[0]}"
            self.state = AuthState.AUTHENTICATED
            return

        self.state = AuthState.TOKEN_REQUESTED
        try:
            token, expires_in = await self._fetch_token(client, challenge)
        except BaseException:
            self.state = AuthState.UNAUTHENTICATED
            raise
        self._token_cache[cache_key] = (token, time.time() + expires_in)
        self._authorization = f"Bearer {token}"
        self.state = AuthState.AUTHENTICATED
        logger.debug("Obtained token for %s scope=%s", self.registry, challenge.scope)

    async def _fetch_token(self, client: httpx.AsyncClient, challenge: AuthChallenge) -> Tuple[str, float]:
        params = {}
        if challenge.service:
            params["service"] = challenge.service
        if challenge.scope:
            params["scope"] = challenge.scope
        try:
            response = await client.get(challenge.realm, params=params, auth=self.credentials)
        except httpx.TransportError as e:
            raise NetworkError(f"Token request to {challenge.realm} failed: {e}") from e

        if response.status_code != 200:
            raise AuthFailure(
                f"Token request to {challenge.realm} rejected with HTTP {response.status_code}"
            )
        try:
            token_data = response.json()
        except json.JSONDecodeError as e:
            raise AuthFailure(f"Token endpoint {challenge.realm} returned invalid JSON") from e

        token = token_data.get("token") or token_data.get("access_token")
        if not token:
            raise AuthFailure(f"Token endpoint {challenge.realm} returned no token")
        return token, float(token_data.get("expires_in", _DEFAULT_TOKEN_TTL_S))
