# /autoreply/utils/queue.py

import json
import time
import uuid
import asyncio
import logging
import redis as redis_package
from typing import Dict

from autoreply.config.settings import settings
from autoreply.models.domain import InboundMessage
from autoreply.services.auto_reply_service import auto_reply_engine
from autoreply.services.cache_service import cache_service

# Redis Streams queue between ingestion and the auto-reply engine. The HTTP
# handler only enqueues; workers run the decision pipeline.

logger = logging.getLogger(__name__)


class RedisMessageQueue:
    def __init__(self, redis_client, stream_name: str = "inbound_messages", max_workers: int = 5, engine=None):
        self.redis = redis_client
        self.stream_name = stream_name
        self.consumer_group = "auto_reply_processors"
        self.max_workers = max_workers
        self.engine = engine or auto_reply_engine
        self.workers = []
        self.running = False

    async def initialize(self):
        if not self.redis: return
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self):
        if not self.redis: return
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} Redis message queue workers.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _worker(self, consumer_name: str):
        last_reclaim = 0.0
        while self.running:
            try:
                if time.monotonic() - last_reclaim >= settings.queue_reclaim_interval_seconds:
                    last_reclaim = time.monotonic()
                    await self._reclaim_stale(consumer_name)

                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                # messages is a list of streams: [(b'stream_name', [(b'msg_id', {..})])]
                stream_name, stream_messages = messages[0]
                await self._handle_entries(stream_name, stream_messages)
            except Exception as e:
                if self.running:
                    logger.error(f"Redis worker '{consumer_name}' error: {e}")
                    await asyncio.sleep(5)

    async def _handle_entries(self, stream_name, entries):
        """
        Process and acknowledge stream entries. An entry whose processing fails
        stays pending and is picked up again by _reclaim_stale; entries that can
        never be processed are acknowledged and dropped.
        """
        for message_id, fields in entries:
            entry_id = message_id.decode() if isinstance(message_id, bytes) else message_id
            if not fields:
                # Trimmed from the stream while pending.
                await self.redis.xack(stream_name, self.consumer_group, message_id)
                continue
            try:
                message_data = json.loads(fields[b'data'].decode())
                await self._process_message_from_queue(message_data)
            except (KeyError, ValueError) as e:
                logger.error(f"Dropping malformed message {entry_id}: {e}")
            except Exception as e:
                logger.error(f"Error processing message {entry_id}, left pending for retry: {e}", exc_info=True)
                continue
            await self.redis.xack(stream_name, self.consumer_group, message_id)

    async def _reclaim_stale(self, consumer_name: str) -> int:
        """Take over entries that were read but not acknowledged within the idle window, and process them."""
        result = await self.redis.xautoclaim(
            self.stream_name,
            self.consumer_group,
            consumer_name,
            min_idle_time=settings.queue_reclaim_idle_ms,
            start_id="0-0",
            count=10,
        )
        entries = result[1]
        if entries:
            logger.warning(f"Consumer '{consumer_name}' reclaimed {len(entries)} pending messages")
            await self._handle_entries(self.stream_name, entries)
        return len(entries)

    async def _process_message_from_queue(self, data: Dict):
        """Runs the idempotent decide-record-deliver pipeline for one queued message."""
        message = InboundMessage.model_validate(data)
        decision = await self.engine.process_inbound(message)
        logger.info(f"Message {message.id} for tenant {message.tenant_id}: {decision.kind.value}")
        return decision

    async def add_message(self, message: InboundMessage) -> bool:
        """Adds a message to the stream. Returns False when Redis is unavailable."""
        if not self.redis:
            return False
        await self.redis.xadd(self.stream_name, {"data": message.model_dump_json(by_alias=True)})
        return True

    async def is_duplicate_message(self, message_id: str, tenant_id: str) -> bool:
        """Checks for duplicate message ids to prevent re-processing."""
        if not self.redis: return False
        # SET NX returns True when the key was created, so a falsy result means we've seen it.
        return not await self.redis.set(
            self._duplicate_key(message_id, tenant_id), "1", ex=settings.duplicate_window_seconds, nx=True
        )

    async def process_now(self, message: InboundMessage):
        """
        Inline processing for when the stream is unavailable. A failure releases
        the duplicate marker so the ingestion layer's redelivery is accepted.
        """
        try:
            return await self.engine.process_inbound(message)
        except Exception as e:
            logger.error(f"Processing message {message.id} failed; releasing it for redelivery: {e}", exc_info=True)
            await self.release_message(message.id, message.tenant_id)
            return None

    async def release_message(self, message_id: str, tenant_id: str):
        if not self.redis: return
        try:
            await self.redis.delete(self._duplicate_key(message_id, tenant_id))
        except Exception as e:
            logger.warning(f"Could not release duplicate marker for message {message_id}: {e}")

    @staticmethod
    def _duplicate_key(message_id: str, tenant_id: str) -> str:
        return f"processed:{tenant_id}:{message_id}"


message_queue = RedisMessageQueue(cache_service.redis, max_workers=settings.queue_workers)
