"""
Webhook system for sending order event notifications.

Allows external systems to subscribe to order events (order.created,
order.status_changed, order.updated, order.deleted). ``dispatch`` is
registered as an ``OrderLifecycleManager`` subscriber.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
import httpx

from . import config

logger = logging.getLogger(__name__)


async def send_webhook(event_type: str, data: Dict[str, Any], urls: Optional[List[str]] = None,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.status_changed")
        data: Event data payload
        urls: Target URLs (defaults to WEBHOOK_URLS)
        transport: httpx transport override (tests)
    """
    urls = config.WEBHOOK_URLS if urls is None else urls
    if not urls:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, transport=transport) as client:
        # Send all webhooks concurrently
        await asyncio.gather(*(send_single_webhook(client, url, payload) for url in urls))


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> bool:
    """
    Send a webhook to a single URL.

    Returns:
        True if the receiver accepted the event
    """
    try:
        response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
        return False
    return True


def dispatch(event_type: str, data: Dict[str, Any]) -> None:
    """
    Order-lifecycle subscriber forwarding events to the webhook URLs.

    Inside a running event loop the delivery is scheduled as a task;
    otherwise it runs to completion before returning.
    """
    if not config.WEBHOOK_URLS:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(send_webhook(event_type, data))
        return
    loop.create_task(send_webhook(event_type, data))
