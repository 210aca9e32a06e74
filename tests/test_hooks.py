import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from async_mail_queue.hooks import HttpDeliveryHook

HOOK_URL = "https://app.example.com/hooks/delivered"


@pytest.mark.asyncio
async def test_hook_posts_owner_with_bearer_token():
    hook = HttpDeliveryHook(HOOK_URL, token="secret123")

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, payload={"ok": True})
        await hook("mailbox-7")

        request = m.requests[("POST", URL(HOOK_URL))][0]
        assert request.kwargs["json"] == {"owner": "mailbox-7"}
        assert request.kwargs["headers"].get("Authorization") == "Bearer secret123"
        assert request.kwargs["auth"] is None


@pytest.mark.asyncio
async def test_hook_uses_basic_auth():
    hook = HttpDeliveryHook(HOOK_URL, user="admin", password="pass123")

    with aioresponses() as m:
        m.post(HOOK_URL, status=204)
        await hook("mailbox-7")

        request = m.requests[("POST", URL(HOOK_URL))][0]
        assert request.kwargs["auth"] == aiohttp.BasicAuth("admin", "pass123")


@pytest.mark.asyncio
async def test_hook_raises_on_error_status():
    hook = HttpDeliveryHook(HOOK_URL)

    with aioresponses() as m:
        m.post(HOOK_URL, status=503)
        with pytest.raises(aiohttp.ClientResponseError):
            await hook("mailbox-7")
