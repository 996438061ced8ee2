"""
Credential providers.

The protocol client asks a provider for a bearer token each time it opens
a transport and never keeps the token afterwards. Providers here cover a
fixed key, a token fetched from the presentation layer's own server, and
a short-lived key minted with the OpenAI SDK.
"""

import logging
from typing import Optional, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from realtime_voice.config import get_settings
from realtime_voice.errors import CredentialError

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def get_token(self) -> str:
        ...


class StaticCredentialProvider:
    """Returns the same token every time."""

    def __init__(self, token: str):
        if not token:
            raise CredentialError("Empty credential")
        self._token = token

    async def get_token(self) -> str:
        return self._token


class HTTPCredentialProvider:
    """
    Fetches a token from an HTTP endpoint.

    The endpoint is expected to answer a POST with JSON holding the token
    under ``apiKey``, ``token`` or ``client_secret`` (either a string or an
    object with a ``value`` field).
    """

    TOKEN_KEYS = ("apiKey", "token", "client_secret")

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._http_client = http_client

    async def _post(self) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self.url, headers=self.headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, headers=self.headers)

    async def get_token(self) -> str:
        try:
            response = await self._post()
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise CredentialError(f"Credential request failed: {e}") from e
        except ValueError as e:
            raise CredentialError("Credential endpoint returned invalid JSON") from e

        if isinstance(data, dict):
            for key in self.TOKEN_KEYS:
                value = data.get(key)
                if isinstance(value, dict):
                    value = value.get("value")
                if isinstance(value, str) and value:
                    return value

        raise CredentialError("Credential endpoint response did not contain a token")


class EphemeralKeyProvider:
    """Mints a short-lived client secret for a realtime session."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: str = "alloy",
    ):
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key
        self.model = model or settings.realtime_model
        self.voice = voice

    async def get_token(self) -> str:
        if not self._api_key:
            raise CredentialError("OPENAI_API_KEY is not configured")

        client = AsyncOpenAI(api_key=self._api_key)
        try:
            session = await client.beta.realtime.sessions.create(
                model=self.model,
                voice=self.voice,
            )
        except OpenAIError as e:
            raise CredentialError(f"Failed to mint ephemeral key: {e}") from e

        logger.info("Minted ephemeral realtime key (expires_at=%s)", session.client_secret.expires_at)
        return session.client_secret.value
