"""
MallFlow 事件总线
- redis 后端：Redis Streams + 消费组，至少一次投递，超过投递次数进入死信流
- memory 后端：进程内直接投递（单进程部署与测试）
处理器必须幂等
"""
import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from tenacity import (
    AsyncRetrying,
    RetryError,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mf_core.config import Settings, get_settings
from mf_core.utils.logger import LogContext, get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventPayload:
    """事件载荷"""

    def __init__(
        self,
        event_id: Optional[str] = None,
        topic: str = "",
        member_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None
    ):
        self.event_id = event_id or str(uuid.uuid4())
        self.topic = topic
        self.member_id = member_id
        self.payload = payload or {}
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "ts": self.timestamp,
            "topic": self.topic,
            "member_id": self.member_id,
            "payload": self.payload
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventPayload":
        return cls(
            event_id=data.get("event_id"),
            topic=data.get("topic", ""),
            member_id=data.get("member_id"),
            payload=data.get("payload", {}),
            timestamp=data.get("ts")
        )


@dataclass
class DeadLetter:
    """投递失败的事件"""
    topic: str
    handler: str
    event: Dict[str, Any]
    error: str
    deliveries: int


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", repr(handler))


class EventBus:
    """事件总线实现"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.backend = self.settings.event_bus_backend
        self.redis_client: Optional[redis.Redis] = None
        self.subscriptions: Dict[str, List[Handler]] = {}
        self.dead_letters: List[DeadLetter] = []
        self._consumer_tasks: List[asyncio.Task] = []
        self._running = False

    @asynccontextmanager
    async def _get_redis(self):
        if not self.redis_client:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        try:
            yield self.redis_client
        except Exception:
            logger.error("Redis operation failed", exc_info=True)
            raise

    async def initialize(self) -> None:
        logger.info("Initializing event bus", backend=self.backend)
        if self.backend == "redis":
            async with self._get_redis() as r:
                await r.ping()
        self._running = True

    async def shutdown(self) -> None:
        logger.info("Shutting down event bus")
        self._running = False

        for task in self._consumer_tasks:
            task.cancel()
        if self._consumer_tasks:
            await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
        self._consumer_tasks.clear()

        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None

    def _get_stream_name(self, topic: str) -> str:
        return f"mf:events:{topic}"

    def _get_dead_letter_stream(self, topic: str) -> str:
        return f"mf:events:{topic}:dlq"

    def _get_consumer_group(self, topic: str, handler: Handler) -> str:
        # 每个处理器独立消费组，各自确认、各自重试
        return f"mf:group:{topic}:{_handler_name(handler)}"

    @staticmethod
    def _check_topic(topic: str) -> None:
        if not topic.startswith("mf."):
            raise ValueError(f"Invalid topic format: {topic}")

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None
    ) -> str:
        """发布事件到指定主题"""
        self._check_topic(topic)

        event = EventPayload(topic=topic, member_id=payload.get("member_id"), payload=payload)

        if self.backend == "memory":
            logger.debug("Publishing event in-process", topic=topic, event_id=event.event_id, key=key)
            await self._dispatch_local(topic, event)
            return event.event_id

        event_data = {"data": json.dumps(event.to_dict(), default=str)}
        if key:
            event_data["key"] = key

        async with self._get_redis() as r:
            message_id = await r.xadd(self._get_stream_name(topic), event_data)

        logger.debug(f"Published event to {topic}", event_id=event.event_id, message_id=message_id)
        return event.event_id

    async def subscribe(self, topic: str, handler: Handler) -> None:
        """订阅事件主题"""
        self._check_topic(topic)
        self.subscriptions.setdefault(topic, []).append(handler)

        if self.backend == "memory":
            logger.info(f"Subscribed to topic {topic}", handler=_handler_name(handler))
            return

        stream_name = self._get_stream_name(topic)
        group_name = self._get_consumer_group(topic, handler)
        async with self._get_redis() as r:
            try:
                await r.xgroup_create(stream_name, group_name, id="0", mkstream=True)
                logger.info(f"Created consumer group {group_name} for {stream_name}")
            except redis.ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

        self._consumer_tasks.append(asyncio.create_task(self._consume_stream(topic, handler)))
        logger.info(f"Subscribed to topic {topic}", handler=_handler_name(handler))

    # ---- memory 后端 ----

    async def _dispatch_local(self, topic: str, event: EventPayload) -> None:
        for handler in list(self.subscriptions.get(topic, [])):
            await self._deliver_with_retry(topic, handler, event)

    async def _deliver_with_retry(self, topic: str, handler: Handler, event: EventPayload) -> bool:
        """按 event_max_deliveries 重试投递，耗尽后记入死信"""
        settings = self.settings
        retrying = AsyncRetrying(
            stop=stop_after_attempt(settings.event_max_deliveries),
            wait=wait_exponential_jitter(
                multiplier=settings.job_backoff_base_seconds,
                max=settings.job_backoff_max_seconds,
                jitter=settings.job_backoff_jitter_seconds,
            ),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._invoke(handler, event)
        except RetryError as e:
            self._record_dead_letter(topic, handler, event, e.last_attempt.exception(), settings.event_max_deliveries)
            return False
        return True

    async def _invoke(self, handler: Handler, event: EventPayload) -> None:
        with LogContext(trace_id=event.event_id, member_id=event.member_id):
            await handler(event.payload)

    def _record_dead_letter(
        self,
        topic: str,
        handler: Handler,
        event: EventPayload,
        error: Optional[BaseException],
        deliveries: int
    ) -> DeadLetter:
        letter = DeadLetter(
            topic=topic,
            handler=_handler_name(handler),
            event=event.to_dict(),
            error=str(error),
            deliveries=deliveries,
        )
        self.dead_letters.append(letter)
        logger.error(
            "Event delivery exhausted, moved to dead letter",
            topic=topic,
            handler=letter.handler,
            event_id=event.event_id,
            deliveries=deliveries,
            err=letter.error,
        )
        return letter

    # ---- redis 后端 ----

    async def _consume_stream(self, topic: str, handler: Handler) -> None:
        stream_name = self._get_stream_name(topic)
        group_name = self._get_consumer_group(topic, handler)
        consumer_name = f"{group_name}:{uuid.uuid4().hex[:8]}"

        logger.info(f"Starting consumer {consumer_name} for {topic}")

        while self._running:
            try:
                async with self._get_redis() as r:
                    await self._reclaim_stale(r, topic, handler, stream_name, group_name, consumer_name)

                    messages = await r.xreadgroup(
                        group_name,
                        consumer_name,
                        {stream_name: ">"},
                        count=10,
                        block=1000
                    )
                    for _stream, stream_messages in messages or []:
                        for message_id, data in stream_messages:
                            await self._handle_message(r, topic, handler, stream_name, group_name, message_id, data)

            except asyncio.CancelledError:
                logger.info(f"Consumer {consumer_name} cancelled")
                break
            except Exception:
                logger.error(f"Consumer {consumer_name} error", exc_info=True)
                await asyncio.sleep(5)

    async def _handle_message(self, r, topic, handler, stream_name, group_name, message_id, data) -> None:
        event = EventPayload.from_dict(json.loads(data.get("data", "{}")))
        try:
            await self._invoke(handler, event)
        except Exception:
            # 不确认，等待空闲超时后被重新认领
            logger.warning(f"Error processing message {message_id}", topic=topic, exc_info=True)
            return
        await r.xack(stream_name, group_name, message_id)
        logger.debug(f"Processed message {message_id} from {topic}")

    async def _reclaim_stale(self, r, topic, handler, stream_name, group_name, consumer_name) -> None:
        """认领空闲超时的未确认消息；超过投递次数的转入死信流"""
        pending = await r.xpending_range(
            stream_name,
            group_name,
            min="-",
            max="+",
            count=50,
            idle=self.settings.event_claim_idle_ms
        )
        for entry in pending:
            message_id = entry["message_id"]
            if entry["times_delivered"] >= self.settings.event_max_deliveries:
                await self._move_to_dead_letter(r, topic, handler, stream_name, group_name, message_id,
                                                entry["times_delivered"])
                continue

            claimed = await r.xclaim(
                stream_name,
                group_name,
                consumer_name,
                min_idle_time=self.settings.event_claim_idle_ms,
                message_ids=[message_id]
            )
            for claimed_id, data in claimed:
                if data:
                    await self._handle_message(r, topic, handler, stream_name, group_name, claimed_id, data)

    async def _move_to_dead_letter(self, r, topic, handler, stream_name, group_name, message_id, deliveries) -> None:
        entries = await r.xrange(stream_name, min=message_id, max=message_id)
        data = entries[0][1] if entries else {}
        await r.xadd(self._get_dead_letter_stream(topic), {
            "data": data.get("data", "{}"),
            "message_id": message_id,
            "handler": _handler_name(handler),
            "deliveries": str(deliveries),
        })
        await r.xack(stream_name, group_name, message_id)
        event = EventPayload.from_dict(json.loads(data.get("data", "{}")))
        self._record_dead_letter(topic, handler, event, RuntimeError("max deliveries exceeded"), deliveries)

    async def get_pending_messages(self, topic: str, handler: Handler) -> List[Dict[str, Any]]:
        """获取待处理的消息"""
        if self.backend == "memory":
            return []

        stream_name = self._get_stream_name(topic)
        group_name = self._get_consumer_group(topic, handler)
        async with self._get_redis() as r:
            messages = await r.xpending_range(stream_name, group_name, min="-", max="+", count=100)

        return [
            {
                "message_id": msg["message_id"],
                "consumer": msg["consumer"],
                "idle_time_ms": msg["time_since_delivered"],
                "delivery_count": msg["times_delivered"]
            }
            for msg in messages
        ]

    async def retry_dead_letters(self, topic: Optional[str] = None) -> int:
        """人工重放 memory 后端的死信（处理器需幂等）"""
        replayed = 0
        remaining: List[DeadLetter] = []
        for letter in self.dead_letters:
            if topic and letter.topic != topic:
                remaining.append(letter)
                continue
            handlers = [h for h in self.subscriptions.get(letter.topic, []) if _handler_name(h) == letter.handler]
            event = EventPayload.from_dict(letter.event)
            ok = True
            for handler in handlers:
                try:
                    await self._invoke(handler, event)
                except Exception as e:
                    logger.error("Dead letter replay failed", topic=letter.topic, handler=letter.handler, err=str(e))
                    ok = False
            if ok and handlers:
                replayed += 1
            else:
                remaining.append(letter)
        self.dead_letters = remaining
        return replayed
