"""
Poller - fetches data from the gateway on a fixed interval.

Each cycle runs three steps in order, then sleeps:

    1. communication check - a 401 drops the cached session so the next
       request authenticates again
    2. production totals  -> envoy_production_watts_now / _wh_lifetime
    3. inverter readings  -> envoy_inverter_last_report_watts

A failing step is logged and counted in envoy_poll_errors_total; the metrics
it would have updated keep their previous values and the remaining steps
still run. Nothing raised inside a cycle stops the loop.
"""
import logging
import threading
import time
from typing import Optional

from pyenvoy.exceptions import UnauthorizedError
from pyenvoy.exporter.metrics import (MetricsStore, PRODUCTION_WATTS_NOW, PRODUCTION_WH_LIFETIME,
                                      INVERTER_LAST_REPORT_WATTS, POLL_ERRORS, LAST_SUCCESSFUL_POLL)

DEFAULT_INTERVAL = 20

log = logging.getLogger(__name__)


class Poller(object):
    def __init__(self, client, store: MetricsStore, serial: str, interval: float = DEFAULT_INTERVAL):
        self.client = client
        self.store = store
        self.serial = serial
        self.interval = interval
        self.cycles = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def labels(self):
        return {'gateway': self.serial}

    def _failed(self, step: str):
        self.store.increment_counter(POLL_ERRORS, {'gateway': self.serial, 'step': step})

    def check_communication(self) -> bool:
        try:
            devices = self.client.communication_check()
        except UnauthorizedError as exc:
            log.warning("Communication check unauthorized - invalidating session: %s" % exc)
            self._failed('comm_check')
            try:
                self.client.invalidate_session()
            except Exception as err:
                log.error("error invalidating session: %s" % err)
            return False
        except Exception as exc:
            log.error("error running communication check: %s" % exc)
            self._failed('comm_check')
            return False
        if devices:
            log.info("Found devices [count=%d]" % len(devices))
        return True

    def update_production(self) -> bool:
        try:
            production = self.client.fetch_production()
        except Exception as exc:
            log.error("error getting production data: %s" % exc)
            self._failed('production')
            return False
        if production:
            self.store.set_gauge(PRODUCTION_WATTS_NOW, self.labels, production[0].w_now)
            self.store.set_gauge(PRODUCTION_WH_LIFETIME, self.labels, production[0].wh_lifetime)
        return True

    def update_inverters(self) -> bool:
        try:
            inverters = self.client.fetch_inverters()
        except Exception as exc:
            log.error("error getting inverters data: %s" % exc)
            self._failed('inverters')
            return False
        for inverter in inverters or []:
            self.store.set_gauge(INVERTER_LAST_REPORT_WATTS,
                                 {'gateway': self.serial, 'serial': inverter.serial_number},
                                 inverter.last_report_watts)
        return True

    def poll_once(self) -> bool:
        """Run one cycle, True when every step succeeded"""
        results = [self.check_communication(), self.update_production(), self.update_inverters()]
        self.cycles += 1
        ok = all(results)
        if ok:
            self.store.set_gauge(LAST_SUCCESSFUL_POLL, self.labels, time.time())
        log.debug("Poll cycle %d complete [ok=%s]" % (self.cycles, ok))
        return ok

    def run(self):
        """Poll until stop() is called or the process exits"""
        log.info("Poller started for gateway %s (every %ss)" % (self.serial, self.interval))
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                log.exception("Unexpected error in poll cycle")
            # Fixed sleep after each cycle, fetch time is not compensated
            self._stop.wait(self.interval)
        log.info("Poller stopped")

    def start(self) -> threading.Thread:
        """Run the poller in a daemon thread"""
        self._thread = threading.Thread(target=self.run, name="poller", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
