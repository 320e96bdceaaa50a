import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.errors import DependencyError
from core.queue import QueueMessage, RabbitMQQueue, build_queue


pytestmark = [pytest.mark.asyncio(loop_scope="session"), pytest.mark.core]


def _resp(status=200, payload=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload
    r.text = text
    return r


@pytest.fixture
def rabbit():
    return RabbitMQQueue(
        management_url="http://rabbit:15672/",
        user="u",
        password="p",
        queue="archivist.index",
        max_attempts=3,
    )


class TestQueueMessage:
    async def test_wire_round_trip(self):
        msg = QueueMessage(message_id="abc", body={"objectKey": "quotes/x.json"}, attempts=2)
        again = QueueMessage.from_wire(json.dumps(msg.to_wire()))
        assert again == msg

    async def test_bare_body_gets_an_id(self):
        msg = QueueMessage.from_wire('{"objectKey": "quotes/x.json"}')
        assert msg.body == {"objectKey": "quotes/x.json"}
        assert msg.attempts == 1
        assert msg.message_id


class TestRabbitMQQueue:
    async def test_send_batch_publishes_each_body(self, rabbit):
        with patch("core.queue.requests.request", return_value=_resp(payload={"routed": True})) as req:
            sent = await rabbit.send_batch([{"objectKey": "a.json"}, {"objectKey": "b.json"}])
        assert sent == 2
        assert req.call_count == 2
        method, url = req.call_args.args
        assert method == "POST"
        assert url == "http://rabbit:15672/api/exchanges/%2F/amq.default/publish"
        payload = req.call_args.kwargs["json"]
        assert payload["routing_key"] == "archivist.index"
        assert json.loads(payload["payload"])["body"] == {"objectKey": "b.json"}

    async def test_unrouted_publish_is_a_dependency_error(self, rabbit):
        with patch("core.queue.requests.request", return_value=_resp(payload={"routed": False})):
            with pytest.raises(DependencyError):
                await rabbit.send({"objectKey": "a.json"})

    async def test_connection_error_is_a_dependency_error(self, rabbit):
        with patch("core.queue.requests.request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(DependencyError):
                await rabbit.receive()

    async def test_receive_decodes_payloads(self, rabbit):
        wire = QueueMessage(message_id="m1", body={"objectKey": "a.json"}, attempts=2).to_wire()
        with patch(
            "core.queue.requests.request",
            return_value=_resp(payload=[{"payload": json.dumps(wire)}]),
        ) as req:
            msgs = await rabbit.receive(5)
        assert msgs == [QueueMessage(message_id="m1", body={"objectKey": "a.json"}, attempts=2)]
        assert req.call_args.kwargs["json"]["ackmode"] == "ack_requeue_false"
        assert req.call_args.kwargs["json"]["count"] == 5

    async def test_retry_increments_attempts(self, rabbit):
        with patch("core.queue.requests.request", return_value=_resp(payload={"routed": True})) as req:
            await rabbit.retry(QueueMessage(message_id="m1", body={}, attempts=1))
        payload = req.call_args.kwargs["json"]
        assert payload["routing_key"] == "archivist.index"
        assert json.loads(payload["payload"])["attempts"] == 2

    async def test_retry_dead_letters_when_exhausted(self, rabbit):
        with patch("core.queue.requests.request", return_value=_resp(payload={"routed": True})) as req:
            await rabbit.retry(QueueMessage(message_id="m1", body={}, attempts=3))
        assert req.call_args.kwargs["json"]["routing_key"] == "archivist.index.dead"

    async def test_ensure_ready_declares_both_queues(self, rabbit):
        with patch("core.queue.requests.request", return_value=_resp(status=204)) as req:
            req.side_effect = [_resp(status=200), _resp(status=201), _resp(status=204)]
            await rabbit.ensure_ready()
        urls = [c.args[1] for c in req.call_args_list]
        assert urls[1].endswith("/api/queues/%2F/archivist.index")
        assert urls[2].endswith("/api/queues/%2F/archivist.index.dead")


async def test_build_queue_requires_rabbitmq(settings):
    settings.rabbitmq_enabled = False
    with pytest.raises(ValueError):
        build_queue(settings)
