import threading
import time

import pytest
from unittest.mock import MagicMock

from pyenvoy.exceptions import EnvoyConnectionError, EnvoyResponseError, UnauthorizedError
from pyenvoy.exporter.metrics import (INVERTER_LAST_REPORT_WATTS, LAST_SUCCESSFUL_POLL, POLL_ERRORS,
                                      PRODUCTION_WATTS_NOW, PRODUCTION_WH_LIFETIME, MetricsStore,
                                      describe_envoy_metrics)
from pyenvoy.exporter.poller import Poller
from pyenvoy.models import InverterReading, ProductionRecord

SERIAL = '122012345678'
GATEWAY = {'gateway': SERIAL}


def production(w_now, wh_lifetime):
    return [ProductionRecord(type="inverters", active_count=2, reading_time=1672574917, w_now=w_now,
                             wh_lifetime=wh_lifetime),
            ProductionRecord(type="eim", active_count=1, reading_time=1672574917, w_now=1.0, wh_lifetime=2.0)]


def inverter(serial, watts):
    return InverterReading(serial_number=serial, last_report_date=1672574900, dev_type=1, last_report_watts=watts,
                           max_report_watts=296)


def inverter_watts(store, serial):
    return store.get(INVERTER_LAST_REPORT_WATTS, {'gateway': SERIAL, 'serial': serial})


@pytest.fixture(name="client")
def fixture_client():
    client = MagicMock()
    client.communication_check.return_value = {'482100000001': 5, '482100000002': 4}
    client.fetch_production.return_value = production(450.5, 3183.0)
    client.fetch_inverters.return_value = [inverter('482100000001', 18), inverter('482100000002', 21)]
    return client


@pytest.fixture(name="poller")
def fixture_poller(client):
    store = describe_envoy_metrics(MetricsStore())
    return Poller(client, store, SERIAL, interval=0)


def test_successful_cycle(poller):
    assert poller.poll_once() is True
    store = poller.store
    assert store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5
    assert store.get(PRODUCTION_WH_LIFETIME, GATEWAY) == 3183.0
    assert inverter_watts(store, '482100000001') == 18
    assert inverter_watts(store, '482100000002') == 21
    assert store.get(LAST_SUCCESSFUL_POLL, GATEWAY) is not None
    poller.client.invalidate_session.assert_not_called()


def test_latest_production_wins(poller, client):
    poller.poll_once()
    client.fetch_production.return_value = production(12.0, 3200.0)
    poller.poll_once()
    assert poller.store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 12.0
    assert poller.store.get(PRODUCTION_WH_LIFETIME, GATEWAY) == 3200.0


def test_empty_production_keeps_values(poller, client):
    poller.poll_once()
    client.fetch_production.return_value = []
    assert poller.poll_once() is True
    assert poller.store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5


def test_production_failure_keeps_stale_values(poller, client):
    poller.poll_once()
    client.fetch_production.side_effect = EnvoyConnectionError("Timeout waiting for Envoy API")
    client.fetch_inverters.return_value = [inverter('482100000001', 99)]
    assert poller.poll_once() is False
    store = poller.store
    assert store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5
    assert store.get(POLL_ERRORS, {'gateway': SERIAL, 'step': 'production'}) == 1
    # later steps of the same cycle still ran
    assert inverter_watts(store, '482100000001') == 99


def test_missing_inverter_keeps_last_value(poller, client):
    poller.poll_once()
    client.fetch_inverters.return_value = [inverter('482100000001', 30)]
    poller.poll_once()
    assert inverter_watts(poller.store, '482100000001') == 30
    assert inverter_watts(poller.store, '482100000002') == 21


def test_unauthorized_comm_check_invalidates_session(poller, client):
    client.communication_check.side_effect = UnauthorizedError("401 Session rejected")
    assert poller.poll_once() is False
    client.invalidate_session.assert_called_once_with()
    client.fetch_production.assert_called_once_with()
    client.fetch_inverters.assert_called_once_with()
    assert poller.store.get(POLL_ERRORS, {'gateway': SERIAL, 'step': 'comm_check'}) == 1
    assert poller.store.get(LAST_SUCCESSFUL_POLL, GATEWAY) is None


def test_invalidation_happens_before_next_cycle(poller, client):
    calls = []
    client.communication_check.side_effect = [UnauthorizedError("401"), {}]
    client.invalidate_session.side_effect = lambda: calls.append('invalidate')
    client.fetch_production.side_effect = lambda: calls.append('production') or []
    poller.poll_once()
    poller.poll_once()
    assert calls == ['invalidate', 'production', 'production']


def test_other_comm_check_errors_do_not_invalidate(poller, client):
    client.communication_check.side_effect = EnvoyResponseError("503", 503)
    poller.poll_once()
    client.invalidate_session.assert_not_called()
    assert poller.store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5


def test_inverter_failure(poller, client):
    client.fetch_inverters.side_effect = EnvoyConnectionError("down")
    assert poller.poll_once() is False
    assert poller.store.get(POLL_ERRORS, {'gateway': SERIAL, 'step': 'inverters'}) == 1
    assert poller.store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5


def test_run_survives_failing_cycles(poller):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) >= 3:
            poller.stop()
        return False

    poller.poll_once = flaky
    poller.run()
    assert len(calls) == 3


def test_background_thread(poller, client):
    client.fetch_production.side_effect = EnvoyConnectionError("down")
    thread = poller.start()
    deadline = time.time() + 5
    while poller.cycles < 3 and time.time() < deadline:
        time.sleep(0.01)
    poller.stop(timeout=5)
    assert poller.cycles >= 3
    assert not thread.is_alive()
    assert thread.daemon
    assert poller.store.get(POLL_ERRORS, {'gateway': SERIAL, 'step': 'production'}) >= 3


def test_single_cycle_in_flight(poller, client):
    active = []
    overlap = []
    lock = threading.Lock()

    def slow_check():
        with lock:
            active.append(1)
            if len(active) > 1:
                overlap.append(1)
        time.sleep(0.005)
        with lock:
            active.pop()
        return {}

    client.communication_check.side_effect = slow_check
    poller.start()
    deadline = time.time() + 5
    while poller.cycles < 5 and time.time() < deadline:
        time.sleep(0.01)
    poller.stop(timeout=5)
    assert overlap == []


def test_failed_invalidation_does_not_stop_cycle(poller, client):
    client.communication_check.side_effect = UnauthorizedError("401 Session rejected")
    client.invalidate_session.side_effect = RuntimeError("session lock broken")
    assert poller.poll_once() is False
    client.fetch_production.assert_called_once_with()
    client.fetch_inverters.assert_called_once_with()
    assert poller.store.get(POLL_ERRORS, {'gateway': SERIAL, 'step': 'comm_check'}) == 1
    assert poller.store.get(PRODUCTION_WATTS_NOW, GATEWAY) == 450.5
