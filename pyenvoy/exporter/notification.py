import logging
import threading
from typing import Optional

from pyenvoy.exporter.metrics import MetricsStore, JWT_REFRESHES, SESSION_REFRESHES, SESSION_USES

log = logging.getLogger(__name__)


class SessionNotification(object):
    """
    Receives token and session lifecycle events from EnvoyClient and turns
    them into metrics and log lines. Handlers run on the caller's thread.
    Writing to a store without the envoy metrics declared raises ValueError,
    EnvoyClient logs and drops such errors.
    """

    def __init__(self, store: MetricsStore, serial: str, logger: Optional[logging.Logger] = None):
        self.store = store
        self.serial = serial
        self.logger = logger or log
        self.last_session: Optional[str] = None
        self.uses = 0
        self._lock = threading.Lock()

    @property
    def labels(self):
        return {'gateway': self.serial}

    def on_jwt_refreshed(self):
        self.logger.debug("JWT refreshed")
        self.store.increment_counter(JWT_REFRESHES, self.labels)

    def on_jwt_error(self, err):
        self.logger.error("JWT error: %s" % err)

    def on_session_refreshed(self, session_id: str):
        self.logger.debug("Session refreshed [session=%s]" % session_id)
        self.store.increment_counter(SESSION_REFRESHES, self.labels)

    def on_session_used(self, session_id: str):
        # session_uses counts uses of the current session only
        with self._lock:
            if self.last_session != session_id:
                self.last_session = session_id
                self.uses = 0
            self.uses += 1
            self.store.set_gauge(SESSION_USES, self.labels, self.uses)
        self.logger.debug("Session used [session=%s]" % session_id)

    def on_session_error(self, err):
        self.logger.error("Session error: %s" % err)
