# pyEnvoy Module
# -*- coding: utf-8 -*-
"""
 Python module to interface with the Enphase Envoy Gateway and export its
 production data as Prometheus metrics

 For more information see README.md

 Features
    * Works with Enphase Envoy gateways running token based firmware (D7.x+)
    * Authenticates with an Enlighten account or a pre-issued JWT
    * Will cache the gateway session and re-use it until it is invalidated
    * Reports token and session lifecycle events to a notification object
    * Can discover a gateway on the local network (envoy.local or /24 scan)
    * Prometheus exporter that polls the gateway in a background thread

 Classes
    EnvoyClient(address, serial, username, password, jwt, timeout, notification)

 Parameters
    address = "https://envoy.local"   # URL of the Envoy gateway
    serial                             # (required) Serial number of the gateway
    username = ""                      # Enlighten account email
    password = ""                      # Enlighten account password
    jwt = ""                           # Pre-issued token (skips Enlighten login)
    timeout = 10                       # Timeout for HTTPS calls in seconds
    notification = None                # Receives token and session lifecycle events

 Functions
    communication_check()    # Return {serial: count} from the PCU communication check
    fetch_production()       # Return list of ProductionRecord
    fetch_inverters()        # Return list of InverterReading
    invalidate_session()     # Drop the cached gateway session
    set_notification(obj)    # Register lifecycle notification handlers

 Requirements
    This module requires the following modules: requests, bs4, prometheus_client
    pip install requests beautifulsoup4 prometheus_client
"""
import logging
import sys

version_tuple = (0, 3, 0)
version = __version__ = '%d.%d.%d' % version_tuple
__author__ = 'pyenvoy'

# noinspection PyPackageRequirements
import urllib3

from pyenvoy.exceptions import (EnvoyError, EnvoyConnectionError, EnvoyResponseError, UnauthorizedError,
                                LoginError, DiscoveryError, InvalidConfigurationParameter)
from pyenvoy.models import ProductionRecord, InverterReading, Gateway
from pyenvoy.client import EnvoyClient, DEFAULT_ADDRESS

urllib3.disable_warnings()  # Disable SSL warnings, the gateway uses a self-signed certificate

log = logging.getLogger(__name__)
log.debug('%s version %s', __name__, __version__)
log.debug('Python %s on %s', sys.version, sys.platform)

__all__ = [
    'EnvoyClient', 'DEFAULT_ADDRESS', 'ProductionRecord', 'InverterReading', 'Gateway',
    'EnvoyError', 'EnvoyConnectionError', 'EnvoyResponseError', 'UnauthorizedError',
    'LoginError', 'DiscoveryError', 'InvalidConfigurationParameter', 'set_debug', 'version',
]


def set_debug(toggle=True, color=True):
    """Enable verbose logging"""
    if toggle:
        if color:
            logging.basicConfig(format='\x1b[31;1m%(levelname)s:%(message)s\x1b[0m', level=logging.DEBUG)
        else:
            logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.DEBUG)
        log.setLevel(logging.DEBUG)
        log.debug("%s [%s]\n" % (__name__, __version__))
    else:
        log.setLevel(logging.NOTSET)
