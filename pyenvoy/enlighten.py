# pyEnvoy Module - Enlighten Token Functions
# -*- coding: utf-8 -*-
"""
 Enlighten Token Functions
    Token based Envoy firmware (D7.x and later) only accepts requests that
    carry a JWT issued by Enphase for the gateway serial number. The token is
    obtained in two steps:

    1. Log in to Enlighten with the account email and password to get a
       web session id.
    2. Ask the Entrez token service for a token bound to that session id
       and the gateway serial number.

    The returned token is long lived (owner tokens last a year) and is
    exchanged with the gateway for a short lived session cookie by the client.
"""
import logging

import requests

from pyenvoy.exceptions import LoginError

ENLIGHTEN_LOGIN_URL = "https://enlighten.enphaseenergy.com/login/login.json"
ENTREZ_TOKEN_URL = "https://entrez.enphaseenergy.com/tokens"

log = logging.getLogger(__name__)


def login(session, username: str, password: str, timeout: int = 10) -> str:
    """Log in to Enlighten and return the web session id"""
    pload = {"user[email]": username, "user[password]": password}
    try:
        r = session.post(ENLIGHTEN_LOGIN_URL, data=pload, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise LoginError(f"Unable to connect to Enlighten: {exc}") from exc
    if r.status_code != 200:
        raise LoginError("Enlighten login failed with status code %s" % r.status_code)
    try:
        payload = r.json()
    except ValueError as exc:
        raise LoginError(f"Unable to parse Enlighten login response: {exc}") from exc
    session_id = payload.get('session_id')
    if not session_id:
        raise LoginError("Invalid Enlighten Login: %s" % payload.get('message', 'no session id'))
    log.debug('Enlighten login successful for %s' % username)
    return session_id


def request_token(session, session_id: str, serial: str, username: str, timeout: int = 10) -> str:
    """Request a gateway token from Entrez for the given Enlighten session"""
    pload = {"session_id": session_id, "serial_num": serial, "username": username}
    try:
        r = session.post(ENTREZ_TOKEN_URL, json=pload, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise LoginError(f"Unable to connect to Entrez token service: {exc}") from exc
    if r.status_code != 200:
        raise LoginError("Token request for gateway %s failed with status code %s" % (serial, r.status_code))
    token = r.text.strip()
    if not token:
        raise LoginError("Empty token returned for gateway %s" % serial)
    return token


def fetch_jwt(session, username: str, password: str, serial: str, timeout: int = 10) -> str:
    """Log in to Enlighten and return a JWT for the gateway"""
    if not username or not password:
        raise LoginError("Enlighten username and password are required to request a token")
    session_id = login(session, username, password, timeout)
    return request_token(session, session_id, serial, username, timeout)
