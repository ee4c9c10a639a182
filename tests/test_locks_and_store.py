import threading
from datetime import datetime

import pytest

from errors import SessionBusyError
from events import Dispatcher
from locks import SessionLocks
from models import ClinicSession, EventType, ProviderSettings, QueueStatus, SessionStatus, TokenStatus
from providers import ConsultationConfig
from services import QueueController
from store import QueueStore, make_engine

from conftest import DAY, PROVIDER, RecordingNotifier, RecordingPublisher, numbers_by_patient


def test_busy_session_times_out_instead_of_blocking(controller, build_queue, locks):
    session, _ = build_queue([1, 2])
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with locks.hold(session.id):
            held.set()
            release.wait(5)

    worker = threading.Thread(target=hold_lock)
    worker.start()
    try:
        assert held.wait(5)
        with pytest.raises(SessionBusyError) as excinfo:
            controller.call_next(session.id)
        assert excinfo.value.retryable is True
        assert excinfo.value.http_status == 503
    finally:
        release.set()
        worker.join()

    assert controller.call_next(session.id).appointment.token_number == 1


def test_different_sessions_do_not_block_each_other():
    locks = SessionLocks(timeout=0.1)

    with locks.hold("a"):
        with locks.hold("b"):
            pass
        with pytest.raises(SessionBusyError):
            with locks.hold("a"):
                pass


def test_forget_keeps_a_held_lock():
    locks = SessionLocks(timeout=0.1)

    with locks.hold("a"):
        locks.forget("a")
        with pytest.raises(SessionBusyError):
            with locks.hold("a"):
                pass
    locks.forget("a")
    with locks.hold("a"):
        pass


def test_stale_session_write_is_rejected(build_queue, store):
    session, _ = build_queue([1])
    first = store.get_session(session.id)
    second = store.get_session(session.id)

    first.current_token = 1
    store.save_session(first)
    second.current_token = 5

    with pytest.raises(SessionBusyError):
        store.save_session(second)
    saved = store.get_session(session.id)
    assert saved.current_token == 1
    assert saved.version == first.version


def test_atomic_rolls_back_everything_on_error(build_queue, store):
    session, tokens = build_queue([1, 2])

    with pytest.raises(RuntimeError):
        with store.atomic():
            token = store.get_token(tokens[1].id)
            token.status = TokenStatus.completed
            store.save_token(token)
            store.record_event(session.id, EventType.called)
            raise RuntimeError("boom")

    assert store.get_token(tokens[1].id).status == TokenStatus.scheduled
    assert store.list_events(session.id) == []


def test_find_tokens_filters_and_orders_by_number(build_queue, store):
    session, _ = build_queue([3, (1, TokenStatus.completed, QueueStatus.completed), 2])

    assert [t.token_number for t in store.find_tokens(session.id)] == [1, 2, 3]
    assert [t.token_number for t in store.find_tokens(session.id, statuses=[TokenStatus.scheduled])] == [2, 3]
    assert store.next_token_number(session.id) == 4


def test_consultation_length_comes_from_provider_settings(store):
    config = ConsultationConfig(store, default_minutes=20)
    assert config.get_average_consultation_minutes("dr-ahmed") == 20

    store.save_provider_settings(ProviderSettings(provider_id="dr-ahmed", average_consultation_minutes=12))
    assert config.get_average_consultation_minutes("dr-ahmed") == 12

    store.save_provider_settings(ProviderSettings(provider_id="dr-ahmed", average_consultation_minutes=0))
    assert config.get_average_consultation_minutes("dr-ahmed") == 20


def test_timestamps_round_trip_as_local_naive_datetimes(build_queue, store):
    paused = datetime(2025, 1, 6, 10, 15)
    session, _ = build_queue([1], status=SessionStatus.paused, paused_at=paused)

    saved = store.get_session(session.id)
    assert saved.paused_at == paused
    assert saved.paused_at.tzinfo is None
    assert saved.created_at.tzinfo is None
    assert ClinicSession.__table__.c.paused_at.type.timezone is False


def test_move_bumps_the_session_version(controller, build_queue, store):
    session, tokens = build_queue([1, 2, 3])
    before = store.get_session(session.id).version

    controller.move(tokens[2].id, "up")

    assert store.get_session(session.id).version == before + 1


# ============================================================================
# SHARED DATABASE FILE
# ============================================================================


def file_controller(url, clock):
    store = QueueStore(make_engine(url))
    store.create_tables()
    return QueueController(
        store,
        clock=clock,
        consultation_config=ConsultationConfig(store, default_minutes=20),
        dispatcher=Dispatcher(RecordingPublisher(), RecordingNotifier()),
        locks=SessionLocks(timeout=5),
    )


def lay_out(controller, patients=("p1", "p2", "p3", "p4")):
    session = controller.open_session(PROVIDER, DAY, "09:00", "13:00")
    tokens = {patient: controller.register_token(session.id, patient) for patient in patients}
    controller.start_session(session.id)
    return session, tokens


def test_write_from_another_process_rolls_back_the_stale_operation(tmp_path, clock, monkeypatch):
    url = f"sqlite:///{tmp_path / 'queue.db'}"
    here = file_controller(url, clock)
    elsewhere = file_controller(url, clock)
    session, tokens = lay_out(here)
    read_tokens = here.store.find_tokens

    def read_then_move_elsewhere(session_id, *args, **kwargs):
        found = read_tokens(session_id, *args, **kwargs)
        monkeypatch.setattr(here.store, "find_tokens", read_tokens)
        elsewhere.move(tokens["p2"].id, "up")
        return found

    monkeypatch.setattr(here.store, "find_tokens", read_then_move_elsewhere)

    with pytest.raises(SessionBusyError):
        here.skip(tokens["p2"].id)

    assert numbers_by_patient(here.store, session.id) == {"p1": 2, "p2": 1, "p3": 3, "p4": 4}
    assert here.store.get_token(tokens["p2"].id).queue_status == QueueStatus.waiting


def test_concurrent_skip_and_recall_on_one_session_serialize(tmp_path, clock):
    controller = file_controller(f"sqlite:///{tmp_path / 'queue.db'}", clock)
    session, tokens = lay_out(controller)
    skipped = controller.store.get_token(tokens["p4"].id)
    skipped.queue_status = QueueStatus.skipped
    controller.store.save_token(skipped)

    start = threading.Barrier(2)
    errors = []

    def run(operation, appointment_id):
        start.wait(5)
        try:
            operation(appointment_id)
        except Exception as exc:
            errors.append(exc)

    workers = [
        threading.Thread(target=run, args=(controller.skip, tokens["p2"].id)),
        threading.Thread(target=run, args=(controller.recall, tokens["p4"].id)),
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(10)

    assert errors == []
    # Either order ends in the same numbering
    assert numbers_by_patient(controller.store, session.id) == {"p1": 1, "p2": 4, "p3": 2, "p4": 3}
    recalled = controller.store.get_token(tokens["p4"].id)
    assert recalled.recall_count == 1
    assert recalled.queue_status == QueueStatus.waiting
    assert controller.store.get_token(tokens["p2"].id).queue_status == QueueStatus.skipped
