"""
═══════════════════════════════════════════════════════════
 ClinicQ — Realtime change feed on queue_tokens
═══════════════════════════════════════════════════════════
"""

import logging

from supabase import acreate_client

from booking import QueueStatusReader
from db import get_credentials, new_client

logger = logging.getLogger(__name__)

CHANNEL = "queue_tokens_changes"

class TokenChangeFeed:
    """Table-wide insert/update/delete notifications for ``queue_tokens``.

    Not filtered server-side; subscribers re-read whatever they need.
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    async def connect(cls, url=None, key=None):
        if not url or not key:
            url, key = get_credentials()
        if not url or not key:
            raise RuntimeError("Missing Supabase credentials")
        return cls(await acreate_client(url, key))

    async def subscribe(self, callback, name=CHANNEL):
        channel = self.client.channel(name)
        channel.on_postgres_changes("*", schema="public", table="queue_tokens", callback=callback)
        await channel.subscribe()
        logger.info("Subscribed to %s", name)
        return channel

    async def unsubscribe(self, channel):
        await self.client.remove_channel(channel)
        logger.info("Released realtime channel")

async def follow_tokens(actor, on_update, stop, store=None, feed=None, client=None):
    """Push the actor's token list to ``on_update`` on every queue change until ``stop`` is set.

    Returns the last list delivered. The channel is released on exit,
    including cancellation.
    """
    feed = feed or await TokenChangeFeed.connect()
    reader = QueueStatusReader(actor, store, client=client or new_client())
    reader.add_listener(on_update)
    await reader.watch(feed)
    try:
        await stop.wait()
    finally:
        await reader.close()
    return reader.tokens
