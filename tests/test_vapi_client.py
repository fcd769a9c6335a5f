"""
Tests for apex/services/vapi.py - outbound call creation over httpx.
"""
import json

import httpx
import pytest

from apex.services.vapi import VapiClient, VapiError


def _client(handler) -> VapiClient:
    return VapiClient("priv_key", base_url="https://vapi.test/", transport=httpx.MockTransport(handler))


async def _create(client: VapiClient) -> dict:
    return await client.create_call(
        assistant_id="asst_1",
        phone_number_id="pn_1",
        customer_number="+15125550123",
        customer_name="Jane",
        metadata={"leadId": "lead-1"},
    )


class TestCreateCall:
    async def test_posts_call_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "call_1", "status": "queued"})

        data = await _create(_client(handler))

        assert data["id"] == "call_1"
        assert seen["url"] == "https://vapi.test/call"
        assert seen["auth"] == "Bearer priv_key"
        assert seen["body"] == {
            "assistantId": "asst_1",
            "phoneNumberId": "pn_1",
            "customer": {"number": "+15125550123", "name": "Jane"},
            "metadata": {"leadId": "lead-1"},
        }

    async def test_error_status(self):
        client = _client(lambda request: httpx.Response(400, json={"message": "bad number"}))
        with pytest.raises(VapiError) as exc:
            await _create(client)
        assert exc.value.status_code == 400

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(VapiError) as exc:
            await _create(_client(handler))
        assert exc.value.status_code is None

    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(VapiError):
            await _create(client)

    async def test_missing_call_id(self):
        client = _client(lambda request: httpx.Response(200, json={"status": "queued"}))
        with pytest.raises(VapiError, match="no call id"):
            await _create(client)
