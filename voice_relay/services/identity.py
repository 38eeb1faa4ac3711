"""
Identity provider client used by the relay's authentication gate.

Browsers cannot attach headers to a websocket upgrade, so clients send their access
token as the second entry of the sub-protocol list: ``["websocket", <token>]``.
The token is verified against the provider's user endpoint (Supabase GoTrue
compatible: ``GET {url}/auth/v1/user``).
"""

import logging
from typing import Iterable, Optional

import httpx

from voice_relay.config.constants import LOGGER_NAME, WEBSOCKET_PROTOCOL_TAG
from voice_relay.errors import AuthError
from voice_relay.models.connection import Identity

logger = logging.getLogger(LOGGER_NAME)

VERIFY_TIMEOUT = 5.0  # seconds


def parse_subprotocols(header: Optional[str]) -> list:
    """Split a ``Sec-WebSocket-Protocol`` header value into its entries."""
    if not header:
        return []
    return [p.strip() for p in header.split(",") if p.strip()]


def extract_bearer_token(
    subprotocols: Iterable[str], authorization: Optional[str] = None
) -> Optional[str]:
    """
    Find the caller's access token in the upgrade handshake.

    The sub-protocol list takes precedence; an ``Authorization: Bearer`` header is
    accepted for non-browser clients.

    Args:
        subprotocols: Entries offered in ``Sec-WebSocket-Protocol``
        authorization: Raw ``Authorization`` header, if any

    Returns:
        The token, or None if the handshake carries none
    """
    protocols = list(subprotocols)
    if WEBSOCKET_PROTOCOL_TAG in protocols:
        idx = protocols.index(WEBSOCKET_PROTOCOL_TAG)
        if idx + 1 < len(protocols):
            return protocols[idx + 1]

    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


class IdentityVerifier:
    """
    Verifies access tokens with the identity provider.
    """

    def __init__(
        self,
        base_url: str,
        public_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = VERIFY_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def user_endpoint(self) -> str:
        return f"{self.base_url}/auth/v1/user"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def verify(self, token: Optional[str]) -> Identity:
        """
        Resolve a token to an identity.

        Raises:
            AuthError: If the token is missing, rejected, or cannot be checked
        """
        if not token:
            raise AuthError("Missing access token")

        headers = {
            "Authorization": f"Bearer {token}",
            "apikey": self.public_key,
        }
        try:
            response = await self._get_client().get(self.user_endpoint, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise AuthError("Unable to verify access token") from e

        if response.status_code != 200:
            logger.warning(f"Identity provider rejected token (status {response.status_code})")
            raise AuthError("Invalid or expired access token")

        try:
            user = response.json()
        except ValueError as e:
            raise AuthError("Invalid identity provider response") from e

        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            raise AuthError("Invalid identity provider response")

        logger.info(f"Authenticated user: {user_id}")
        return Identity(subject=str(user_id), email=user.get("email"))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
