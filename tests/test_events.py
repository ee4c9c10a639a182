import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from events import Dispatcher, Outbox, RedisEventPublisher, RedisNotifier, dumps
from models import QueueStatus
from providers import ConsultationConfig
from services import QueueController

from conftest import FailingNotifier, RecordingPublisher


def test_dispatcher_delivers_and_counts_failures():
    publisher = RecordingPublisher()
    notifier = FailingNotifier()
    outbox = Outbox()
    outbox.publish("queue:session:s1", {"type": "queue_updated"})
    outbox.notify("patient-1", "token_called", {"token_number": 1})
    outbox.notify("patient-2", "queue_next", {"token_number": 2})

    failures = Dispatcher(publisher, notifier).flush(outbox)

    assert failures == 2
    assert notifier.attempts == 2
    assert publisher.events == [("queue:session:s1", {"type": "queue_updated"})]
    assert len(outbox) == 0


def test_notification_failure_never_undoes_the_queue_operation(store, clock, locks, build_queue):
    publisher = RecordingPublisher()
    controller = QueueController(
        store,
        clock=clock,
        consultation_config=ConsultationConfig(store),
        dispatcher=Dispatcher(publisher, FailingNotifier()),
        locks=locks,
    )
    session, tokens = build_queue([1, 2, 3])

    result = controller.skip(tokens[1].id)

    assert result.new_token_number == 3
    assert store.get_token(tokens[1].id).queue_status == QueueStatus.skipped
    assert publisher.on(f"queue:session:{session.id}")


def test_redis_publisher_and_notifier_serialise_payloads():
    client = MagicMock()
    when = datetime(2025, 1, 6, 9, 40)

    RedisEventPublisher(client).publish("queue:patient:p1", {"at": when, "status": QueueStatus.no_show})
    RedisNotifier(client, list_name="notes").notify("p1", "token_called", {"token_number": 4})

    topic, body = client.publish.call_args.args
    assert topic == "queue:patient:p1"
    assert json.loads(body) == {"at": "2025-01-06T09:40:00", "status": "no-show"}
    list_name, message = client.lpush.call_args.args
    assert list_name == "notes"
    decoded = json.loads(message)
    assert (decoded["user_id"], decoded["type"], decoded["payload"]) == ("p1", "token_called", {"token_number": 4})


def test_publishing_without_redis_is_a_no_op(monkeypatch):
    monkeypatch.setattr("events.get_redis", lambda: None)

    RedisEventPublisher().publish("queue:session:s1", {"type": "queue_updated"})
    RedisNotifier().notify("p1", "token_called", {})


def test_dumps_rejects_unknown_objects():
    with pytest.raises(TypeError, match="not JSON serializable"):
        dumps({"value": object()})
