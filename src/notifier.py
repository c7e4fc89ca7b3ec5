import asyncio
import aiohttp
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Set, Union

from models import TitleEvent, WebhookConfig


logger = logging.getLogger(__name__)

TitleHandler = Callable[[str], Union[None, Awaitable[None]]]


class NotificationManager:
    """
    Tells the outside world what is playing.

    Every call to notify() fans the title out to the registered handlers
    and webhooks as independent tasks; nothing is awaited by the caller and
    failures are logged here, never raised.
    """

    def __init__(self, user_agent: str = "bucket-stream-webhook/1.0"):
        self.webhooks: List[WebhookConfig] = []
        self.title_handlers: List[TitleHandler] = []
        self.user_agent = user_agent
        self._pending: Set[asyncio.Task] = set()

    def add_webhook(self, webhook: WebhookConfig):
        """Add a webhook configuration."""
        self.webhooks.append(webhook)
        logger.info(f"Added webhook for {webhook.url}")

    def remove_webhook(self, webhook_url: str) -> bool:
        """Remove a webhook by URL."""
        initial_count = len(self.webhooks)
        self.webhooks = [wh for wh in self.webhooks if str(wh.url) != webhook_url]
        removed = len(self.webhooks) != initial_count
        if removed:
            logger.info(f"Removed webhook {webhook_url}")
        return removed

    def add_handler(self, handler: TitleHandler):
        """Add a title handler function (sync or async)."""
        self.title_handlers.append(handler)
        logger.info(f"Added title handler: {getattr(handler, '__name__', repr(handler))}")

    def notify(self, title: str) -> List[asyncio.Task]:
        """Dispatch the title to every handler and webhook without waiting."""
        tasks = []
        for handler in self.title_handlers:
            tasks.append(self._spawn(self._call_handler(handler, title)))
        for webhook in self.webhooks:
            tasks.append(self._spawn(self.send_webhook(webhook, TitleEvent(name=title))))
        logger.debug(f"Dispatched title '{title}' to {len(tasks)} listeners")
        return tasks

    async def drain(self, timeout: Optional[float] = None):
        """Wait for in-flight notifications (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _call_handler(self, handler: TitleHandler, title: str):
        try:
            result = handler(title)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Error in title handler {getattr(handler, '__name__', repr(handler))}: {e}")

    async def send_webhook(self, webhook: WebhookConfig, event: TitleEvent) -> bool:
        """Send a title event to a single webhook, retrying with backoff."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            **webhook.headers
        }

        for attempt in range(webhook.retry_attempts + 1):
            try:
                async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=webhook.timeout)) as session:
                    async with session.post(
                        str(webhook.url),
                        json=event.model_dump(),
                        headers=headers
                    ) as response:
                        if response.status < 400:
                            logger.info(f"Webhook {webhook.url} updated with '{event.name}'")
                            return True
                        else:
                            logger.warning(f"Webhook failed with status {response.status}: {webhook.url}")

            except Exception as e:
                logger.warning(f"Webhook attempt {attempt + 1} failed for {webhook.url}: {e}")

            # Wait before retry (except on last attempt)
            if attempt < webhook.retry_attempts:
                await asyncio.sleep(2 ** attempt)  # Exponential backoff

        logger.error(f"All webhook attempts failed for {webhook.url}")
        return False
