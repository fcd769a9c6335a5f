"""
Vapi REST client - outbound call creation.

Auth: Bearer token (the organization's private key).
Docs: https://docs.vapi.ai/api-reference/calls/create
"""
import logging
from typing import Optional

import httpx

from apex.utils.redaction import mask_phone

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.vapi.ai"
TIMEOUT = 15.0


class VapiError(Exception):
    """Vapi request failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class VapiClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def create_call(
        self,
        assistant_id: str,
        phone_number_id: str,
        customer_number: str,
        customer_name: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """Place an outbound call. Returns the Vapi call object (has "id")."""
        customer = {"number": customer_number}
        if customer_name:
            customer["name"] = customer_name
        body = {
            "assistantId": assistant_id,
            "phoneNumberId": phone_number_id,
            "customer": customer,
            "metadata": metadata or {},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/call", headers=self._headers, json=body
                )
        except httpx.HTTPError as e:
            raise VapiError(f"Vapi request failed: {e}") from e

        if response.status_code >= 400:
            raise VapiError(
                f"Vapi error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise VapiError("Vapi returned a non-JSON response", response.status_code) from e
        if not isinstance(data, dict) or not data.get("id"):
            raise VapiError("Vapi response has no call id", response.status_code)

        logger.info("Vapi call created: %s to %s", data["id"], mask_phone(customer_number))
        return data
