"""Collaborators invoked after a job has been delivered."""

from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from .logger import get_logger

DeliveredCallable = Callable[[str], Awaitable[None]]

logger = get_logger("DeliveryHook")


class HttpDeliveryHook:
    """Notify the owning application that ``owner`` had a message delivered.

    The application uses it to refresh derived per-owner state such as the
    storage usage of the mailbox. Authentication is a bearer token or HTTP
    basic credentials.
    """

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.token = token
        self.user = user
        self.password = password
        self.timeout = float(timeout)

    async def __call__(self, owner: str) -> None:
        headers: Dict[str, str] = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        logger.debug("Posting delivery notification for %s to %s", owner, self.url)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(
                self.url,
                json={"owner": owner},
                auth=auth,
                headers=headers or None,
            ) as resp:
                resp.raise_for_status()
