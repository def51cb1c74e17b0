"""
HTTP client for the WhatsApp Cloud API.

The engine depends only on the MessagingClient protocol:
- send_template(to, template_name, parameters) -> provider message id
- send_text(to, body) -> provider message id

Both raise SendFailure when the provider rejects the call or the
transport fails.
"""

import logging
from typing import Optional, Protocol, Sequence

import httpx

from notifier.exceptions import SendFailure

logger = logging.getLogger(__name__)


class MessagingClient(Protocol):
    async def send_template(self, to: str, template_name: str, parameters: Sequence[str]) -> str:
        ...

    async def send_text(self, to: str, body: str) -> str:
        ...


def _error_detail(response: httpx.Response) -> str:
    """Extract the provider's error message, falling back to the raw body."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code}: {response.text[:200]}"


class WhatsAppCloudClient:
    """
    Client for POST {base_url}/{phone_number_id}/messages.
    """

    def __init__(
        self,
        token: str,
        phone_number_id: str,
        base_url: str = "https://graph.facebook.com/v18.0",
        language: str = "pt_BR",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            token: Bearer token for the Cloud API
            phone_number_id: Sender phone number id
            base_url: Graph API base URL including version
            language: Template language code
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.token = token
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings) -> "WhatsAppCloudClient":
        return cls(
            token=settings.WHATSAPP_TOKEN,
            phone_number_id=settings.PHONE_NUMBER_ID,
            base_url=settings.GRAPH_API_URL,
            language=settings.TEMPLATE_LANGUAGE,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.phone_number_id}/messages"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: dict) -> str:
        client = await self._get_client()

        try:
            response = await client.post(self.messages_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"WhatsApp request failed: {e}")
            raise SendFailure(str(e) or e.__class__.__name__) from e

        if response.status_code >= 300:
            detail = _error_detail(response)
            logger.warning(f"WhatsApp API error {response.status_code}: {detail}")
            raise SendFailure(detail, status_code=response.status_code)

        try:
            return response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise SendFailure(f"Unexpected response body: {response.text[:200]}") from e

    async def send_template(self, to: str, template_name: str, parameters: Sequence[str]) -> str:
        """Send a template message and return the provider message id."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": self.language},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": value} for value in parameters],
                    }
                ],
            },
        }
        return await self._post(payload)

    async def send_text(self, to: str, body: str) -> str:
        """Send a free-text message and return the provider message id."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        return await self._post(payload)
