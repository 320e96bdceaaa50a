"""Indexing queue transport.

``RabbitMQQueue`` speaks to the RabbitMQ management HTTP API. Delivery is
at-least-once: messages are pulled with ``ack_requeue_false`` and the worker
either acknowledges them, hands them back through ``retry`` (republished with
an incremented attempt counter) or moves them to the dead-letter queue once
``max_attempts`` is exhausted. The redelivery policy lives here, not in the
consumer.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import requests

from core.config import Settings
from core.errors import DependencyError

logger = logging.getLogger(__name__)

SEND_BATCH_LIMIT = 100


@dataclass
class QueueMessage:
    message_id: str
    body: Any
    attempts: int = 1

    def to_wire(self) -> dict[str, Any]:
        return {"message_id": self.message_id, "attempts": self.attempts, "body": self.body}

    @classmethod
    def from_wire(cls, payload: Any) -> QueueMessage:
        doc = payload
        if isinstance(payload, (str, bytes)):
            try:
                doc = json.loads(payload)
            except json.JSONDecodeError:
                doc = payload
        if isinstance(doc, dict) and "body" in doc and "message_id" in doc:
            attempts = doc.get("attempts")
            return cls(
                message_id=str(doc["message_id"]),
                body=doc["body"],
                attempts=attempts if isinstance(attempts, int) and attempts > 0 else 1,
            )
        # Bare bodies published by other producers
        return cls(message_id=str(uuid.uuid4()), body=doc)


class MessageQueue(ABC):
    max_attempts: int = 5

    async def ensure_ready(self) -> None:
        """Declare whatever the transport needs before use."""

    @abstractmethod
    async def send_batch(self, bodies: list[Any]) -> int:
        """Publish bodies; returns how many were routed."""

    async def send(self, body: Any) -> None:
        await self.send_batch([body])

    @abstractmethod
    async def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        ...

    async def ack(self, message: QueueMessage) -> None:
        """Messages are removed on receipt; nothing to do by default."""

    @abstractmethod
    async def retry(self, message: QueueMessage) -> None:
        ...

    @abstractmethod
    async def dead_letter(self, message: QueueMessage, reason: str) -> None:
        ...


class RabbitMQQueue(MessageQueue):
    def __init__(
        self,
        *,
        management_url: str,
        user: str,
        password: str,
        vhost: str = "/",
        queue: str = "archivist.index",
        max_attempts: int = 5,
        timeout: float = 5.0,
    ):
        self.management_url = management_url.rstrip("/")
        self.auth = (user, password)
        self.vhost = vhost
        self.queue = queue
        self.dead_queue = f"{queue}.dead"
        self.max_attempts = max_attempts
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> RabbitMQQueue:
        return cls(
            management_url=settings.rabbitmq_management_url,
            user=settings.rabbitmq_user,
            password=settings.rabbitmq_password,
            vhost=settings.rabbitmq_vhost,
            queue=settings.queue_name,
            max_attempts=settings.queue_max_attempts,
        )

    def _vhost_path(self) -> str:
        if self.vhost == "/":
            return "%2F"
        return requests.utils.quote(self.vhost, safe="")

    def _queue_path(self, name: str) -> str:
        return f"/api/queues/{self._vhost_path()}/{requests.utils.quote(name, safe='')}"

    async def _request(self, method: str, path: str, payload: dict | None = None) -> requests.Response:
        url = f"{self.management_url}{path}"

        def _do() -> requests.Response:
            return requests.request(method, url, auth=self.auth, json=payload, timeout=self.timeout)

        try:
            return await asyncio.to_thread(_do)
        except requests.RequestException as exc:
            raise DependencyError(f"rabbitmq {method} {path} failed: {exc}") from exc

    async def ensure_ready(self) -> None:
        resp = await self._request("GET", "/api/overview")
        if resp.status_code != 200:
            raise DependencyError(f"rabbitmq overview HTTP {resp.status_code}")
        for name in (self.queue, self.dead_queue):
            r = await self._request(
                "PUT",
                self._queue_path(name),
                payload={"durable": True, "auto_delete": False, "arguments": {}},
            )
            if r.status_code not in (200, 201, 204):
                raise DependencyError(f"rabbitmq queue declare {name!r} HTTP {r.status_code}: {r.text[:200]}")
        logger.info(f"Queues ready: {self.queue}, {self.dead_queue}")

    async def _publish(self, routing_key: str, message: QueueMessage) -> None:
        resp = await self._request(
            "POST",
            f"/api/exchanges/{self._vhost_path()}/amq.default/publish",
            payload={
                "properties": {"content_type": "application/json", "delivery_mode": 2},
                "routing_key": routing_key,
                "payload": json.dumps(message.to_wire(), default=str),
                "payload_encoding": "string",
            },
        )
        routed = resp.status_code == 200 and bool(resp.json().get("routed"))
        if not routed:
            raise DependencyError(f"publish not routed: HTTP {resp.status_code} body={resp.text[:200]}")

    async def send_batch(self, bodies: list[Any]) -> int:
        sent = 0
        for body in bodies:
            await self._publish(self.queue, QueueMessage(message_id=str(uuid.uuid4()), body=body))
            sent += 1
        return sent

    async def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        resp = await self._request(
            "POST",
            f"{self._queue_path(self.queue)}/get",
            payload={
                "count": max_messages,
                "ackmode": "ack_requeue_false",
                "encoding": "auto",
                "truncate": 500000,
            },
        )
        if resp.status_code != 200:
            raise DependencyError(f"queue get HTTP {resp.status_code}: {resp.text[:200]}")
        msgs = resp.json()
        if not isinstance(msgs, list):
            return []
        return [QueueMessage.from_wire(m.get("payload")) for m in msgs if isinstance(m, dict)]

    async def retry(self, message: QueueMessage) -> None:
        if message.attempts >= self.max_attempts:
            await self.dead_letter(message, f"gave up after {message.attempts} attempts")
            return
        nxt = QueueMessage(message_id=message.message_id, body=message.body, attempts=message.attempts + 1)
        await self._publish(self.queue, nxt)

    async def dead_letter(self, message: QueueMessage, reason: str) -> None:
        logger.warning(f"Dead-lettering message {message.message_id}: {reason}")
        await self._publish(self.dead_queue, message)


def build_queue(settings: Settings) -> MessageQueue:
    if not settings.rabbitmq_enabled:
        raise ValueError("RABBITMQ_ENABLED is off; no queue transport configured")
    return RabbitMQQueue.from_settings(settings)


__all__ = [
    "MessageQueue",
    "QueueMessage",
    "RabbitMQQueue",
    "SEND_BATCH_LIMIT",
    "build_queue",
]
