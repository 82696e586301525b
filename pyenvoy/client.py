import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from requests import Response

from pyenvoy import enlighten
from pyenvoy.exceptions import (EnvoyConnectionError, EnvoyResponseError, UnauthorizedError, LoginError,
                                InvalidConfigurationParameter)
from pyenvoy.models import ProductionRecord, InverterReading

DEFAULT_ADDRESS = "https://envoy.local"
SESSION_COOKIE = "sessionId"

log = logging.getLogger(__name__)


class EnvoyClient(object):
    def __init__(self, address: str = DEFAULT_ADDRESS, serial: str = "", username: str = "", password: str = "",
                 jwt: str = "", timeout: int = 10, notification: Any = None, poolmaxsize: int = 10):
        """
        Represents an Enphase Envoy gateway.

        Args:
            address      = URL of the gateway (e.g. https://192.168.1.40)
            serial       = Gateway serial number, tokens are bound to it
            username     = Enlighten account email
            password     = Enlighten account password
            jwt          = Pre-issued token, used instead of an Enlighten login
            timeout      = Seconds for the timeout on http requests
            notification = Object receiving token and session lifecycle events
            poolmaxsize  = Pool max size for http connection re-use
        """
        self.address = (address or "").rstrip('/')
        self.serial = serial
        self.username = username
        self.password = password
        self.jwt = jwt or ""
        self.timeout = timeout
        self.notification = notification
        self.session_id: Optional[str] = None  # gateway session cookie
        self._jwt_from_enlighten = False  # only tokens we fetched ourselves are dropped on 401
        self._validate_init_configuration()

        # Create session object for http connection re-use
        self.session = requests.Session()
        # noinspection PyUnresolvedReferences
        a = requests.adapters.HTTPAdapter(pool_maxsize=poolmaxsize)
        self.session.mount('https://', a)

    def _validate_init_configuration(self):
        parsed = urlparse(self.address)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise InvalidConfigurationParameter(f"Invalid gateway address: '{self.address}'")
        if not self.serial:
            raise InvalidConfigurationParameter("Gateway serial number is required")
        if not self.jwt and not (self.username and self.password):
            raise InvalidConfigurationParameter("Either a JWT or an Enlighten username and password is required")
        if not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
            raise InvalidConfigurationParameter(f"Invalid timeout: {self.timeout}")

    def set_notification(self, notification: Any):
        """Register the object receiving lifecycle events"""
        self.notification = notification

    def _notify(self, event: str, *args):
        # Notifications are fire-and-forget, they never fail the request
        handler = getattr(self.notification, event, None) if self.notification is not None else None
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as exc:
            log.debug(f"Notification handler {event} failed: {exc}")

    def invalidate_session(self):
        """Forget the gateway session so the next call authenticates again"""
        log.debug('Invalidating Envoy session')
        self.session_id = None

    def _get_jwt(self) -> str:
        if self.jwt:
            return self.jwt
        try:
            self.jwt = enlighten.fetch_jwt(self.session, self.username, self.password, self.serial, self.timeout)
        except LoginError as exc:
            self._notify('on_jwt_error', exc)
            raise
        self._jwt_from_enlighten = True
        self._notify('on_jwt_refreshed')
        return self.jwt

    def _get_session(self) -> str:
        # Re-use the cached session until it is invalidated
        if self.session_id:
            self._notify('on_session_used', self.session_id)
            return self.session_id

        jwt = self._get_jwt()
        url = "%s/auth/check_jwt" % self.address
        try:
            r: Response = self.session.get(url, headers={'Authorization': 'Bearer ' + jwt}, verify=False,
                                           timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            err = EnvoyConnectionError(f"Unable to connect to Envoy at {self.address}: {exc}")
            self._notify('on_session_error', err)
            raise err from exc

        if r.status_code == 401:
            if self._jwt_from_enlighten:
                # Token expired or revoked - fetch a new one next time
                self.jwt = ""
                self._jwt_from_enlighten = False
            err = UnauthorizedError('401 Token rejected by Envoy at %s' % url)
            self._notify('on_session_error', err)
            raise err
        if r.status_code != 200:
            err = EnvoyResponseError('Unable to establish session with Envoy at %s (status code %s)' %
                                     (url, r.status_code), r.status_code)
            self._notify('on_session_error', err)
            raise err

        session_id = r.cookies.get(SESSION_COOKIE)
        if not session_id:
            err = EnvoyResponseError('No %s cookie returned by Envoy at %s' % (SESSION_COOKIE, url))
            self._notify('on_session_error', err)
            raise err
        self.session_id = session_id
        self._notify('on_session_refreshed', session_id)
        return session_id

    def poll(self, api: str) -> Any:
        """Query the gateway and return the decoded JSON payload"""
        session_id = self._get_session()
        url = "%s%s" % (self.address, api)
        log.debug(' -- envoy: Request Envoy for %s' % api)
        try:
            r: Response = self.session.get(url, cookies={SESSION_COOKIE: session_id}, verify=False,
                                           timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise EnvoyConnectionError('Timeout waiting for Envoy API %s' % url) from exc
        except requests.exceptions.ConnectionError as exc:
            raise EnvoyConnectionError('Unable to connect to Envoy at %s' % url) from exc
        except requests.exceptions.RequestException as exc:
            raise EnvoyConnectionError(f'Unknown error connecting to Envoy at {url}: {exc}') from exc

        if r.status_code == 401:
            raise UnauthorizedError('401 Session rejected by Envoy API at %s' % url)
        elif r.status_code == 404:
            raise EnvoyResponseError('404 Envoy API not found at %s' % url, 404)
        elif 400 <= r.status_code < 500:
            raise EnvoyResponseError('Unhandled HTTP response code %s at %s' % (r.status_code, url), r.status_code)
        elif r.status_code >= 500:
            raise EnvoyResponseError('Server-side problem at Envoy API (status code %s) at %s' %
                                     (r.status_code, url), r.status_code)
        try:
            return r.json()
        except ValueError as exc:
            raise EnvoyResponseError(f"Unable to parse payload from {url} as JSON: {exc}") from exc

    def communication_check(self) -> Dict[str, int]:
        """
        PCU communication check

        Returns a mapping of device serial number to the number of successful
        power line exchanges.
        """
        payload = self.poll('/installer/pcu_comm_check')
        if not isinstance(payload, dict):
            raise EnvoyResponseError(f"Unexpected communication check payload: {payload!r}")
        try:
            return {str(serial): int(count) for serial, count in payload.items()}
        except (TypeError, ValueError) as exc:
            raise EnvoyResponseError(f"Unable to parse communication check payload: {exc}") from exc

    def fetch_production(self) -> List[ProductionRecord]:
        """ Production totals, the first record is the inverter aggregate """
        payload = self.poll('/production.json?details=1')
        try:
            return [ProductionRecord.from_json(p) for p in payload.get('production') or []]
        except (AttributeError, TypeError, ValueError) as exc:
            raise EnvoyResponseError(f"Unable to parse production payload: {exc}") from exc

    def fetch_inverters(self) -> List[InverterReading]:
        """ Last report of every microinverter """
        payload = self.poll('/api/v1/production/inverters')
        if not isinstance(payload, list):
            raise EnvoyResponseError(f"Unexpected inverters payload: {payload!r}")
        try:
            return [InverterReading.from_json(i) for i in payload]
        except (KeyError, TypeError, ValueError) as exc:
            raise EnvoyResponseError(f"Unable to parse inverters payload: {exc}") from exc
