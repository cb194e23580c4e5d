"""Resolves a bearer credential to a user id with the identity provider."""
from typing import Optional

import httpx
import structlog

from binthere.core.config import settings

logger = structlog.get_logger(__name__)


class IdentityResolver:
    def __init__(
        self,
        auth_url: Optional[str] = settings.AUTH_URL,
        api_key: Optional[str] = settings.AUTH_API_KEY,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth_url = auth_url.rstrip("/") if auth_url else None
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.auth_url)

    async def resolve(self, token: str) -> Optional[str]:
        """User id for `token`, or None if the provider rejects it or cannot be reached."""
        if not self.configured:
            logger.warning("identity_provider_not_configured")
            return None

        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.auth_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error("identity_request_failed", error=str(e))
            return None

        if response.status_code != 200:
            logger.info("identity_rejected", status_code=response.status_code)
            return None

        try:
            user_id = response.json().get("id")
        except ValueError:
            logger.error("identity_response_unparseable")
            return None
        return str(user_id) if user_id else None
