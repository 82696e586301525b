#!/usr/bin/env python
# pyEnvoy Module - Prometheus Exporter
# -*- coding: utf-8 -*-
"""
 Prometheus Exporter
    Polls an Enphase Envoy gateway in a background thread and serves the
    latest production and inverter values on /metrics for Prometheus to
    scrape.

 Startup
    1. Load configuration (see pyenvoy.exporter.config)
    2. Discover the gateway when no serial is configured
    3. Connect the client to the gateway and register session notifications
    4. Start the poller thread and serve metrics until the process ends

 Exit Codes
    2 - no serial configured and discovery failed
    3 - unable to create the gateway client
    4 - unable to listen on the metrics address
"""
import ipaddress
import logging
import signal
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Optional, Tuple
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

import pyenvoy
from pyenvoy import scan
from pyenvoy.client import EnvoyClient
from pyenvoy.exceptions import DiscoveryError, EnvoyError, InvalidConfigurationParameter
from pyenvoy.exporter.config import Config, load_config
from pyenvoy.exporter.metrics import MetricsStore, StoreCollector, describe_envoy_metrics
from pyenvoy.exporter.notification import SessionNotification
from pyenvoy.exporter.poller import Poller

EXIT_DISCOVERY_FAILED = 2
EXIT_CLIENT_FAILED = 3
EXIT_LISTEN_FAILED = 4

log = logging.getLogger(__name__)


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class MetricsServer(ThreadingHTTPServer):
    """HTTP server exposing a collector registry on a single path"""

    def __init__(self, server_address, registry: CollectorRegistry, metrics_path: str = "/metrics"):
        self.registry = registry
        self.metrics_path = metrics_path
        super().__init__(server_address, MetricsHandler)


# noinspection PyPep8Naming
class MetricsHandler(BaseHTTPRequestHandler):
    def log_message(self, log_format, *args):
        log.debug("%s %s" % (self.address_string(), log_format % args))

    def address_string(self):
        # replace function to avoid lookup delays
        hostaddr, hostport = self.client_address[:2]
        return hostaddr

    def do_GET(self):
        if urlparse(self.path).path != self.server.metrics_path:
            self.send_response(404)
            self.send_header('Content-type', 'text/plain; charset=utf-8')
            self.end_headers()
            self.wfile.write(b"Not Found\n")
            return
        output = generate_latest(self.server.registry)
        self.send_response(200)
        self.send_header('Content-type', CONTENT_TYPE_LATEST)
        self.send_header('Content-Length', str(len(output)))
        self.end_headers()
        self.wfile.write(output)


def build_registry(store: MetricsStore) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(StoreCollector(store))
    return registry


def gateway_address(discovered_ip: Optional[str], configured: str) -> str:
    """Address to use after discovery, the configured one when the IP is unusable"""
    if not discovered_ip:
        return configured
    try:
        ip = ipaddress.ip_address(discovered_ip)
    except ValueError:
        log.warning("Discovered address %r is not an IP address - using %s" % (discovered_ip, configured))
        return configured
    if ip.version == 6:
        return "https://[%s]" % ip
    return "https://%s" % ip


def resolve_gateway(config: Config) -> Tuple[str, str]:
    """Return (address, serial), discovering the gateway when no serial is configured"""
    if config.serial:
        return config.address, config.serial
    gateway = scan.discover()
    log.info("Using discovered envoy [envoy_ip=%s, serial=%s]" % (gateway.ip, gateway.serial))
    return gateway_address(gateway.ip, config.address), gateway.serial


def setup_logging(debug: bool):
    logging.basicConfig(format='%(asctime)s %(levelname)s:%(name)s:%(message)s', level=logging.INFO)
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        pyenvoy.set_debug(True)


# Signal handler - Exit on SIGTERM
# noinspection PyUnusedLocal
def sig_term_handle(signum, frame):
    raise SystemExit


def main(environ=None) -> int:
    try:
        config = load_config(environ)
    except InvalidConfigurationParameter as exc:
        logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.INFO)
        log.error("Invalid configuration: %s" % exc)
        return 1
    setup_logging(config.debug)
    log.info("pyEnvoy [%s] Prometheus Exporter" % pyenvoy.version)
    log.debug("Settings %s" % config.masked())

    try:
        address, serial = resolve_gateway(config)
    except DiscoveryError as exc:
        log.error("Missing serial and failed discovery: %s" % exc)
        return EXIT_DISCOVERY_FAILED

    store = describe_envoy_metrics(MetricsStore())
    notification = SessionNotification(store, serial)
    try:
        client = EnvoyClient(address, serial, username=config.username, password=config.password,
                             jwt=config.jwt, timeout=config.timeout, notification=notification)
    except (InvalidConfigurationParameter, EnvoyError) as exc:
        log.error("Quitting because of error opening envoy: %s" % exc)
        return EXIT_CLIENT_FAILED

    host, port = config.listen_address
    try:
        server = MetricsServer((host, port), build_registry(store), config.metrics_path)
    except OSError as exc:
        log.error("Unable to listen on %s: %s" % (config.listen, exc))
        return EXIT_LISTEN_FAILED

    poller = Poller(client, store, serial, interval=config.refresh)
    poller.start()
    log.info("Start listening [address=%s, path=%s]" % (config.listen, config.metrics_path))
    signal.signal(signal.SIGTERM, sig_term_handle)
    try:
        server.serve_forever()
    except (KeyboardInterrupt, SystemExit):
        log.info("Shutdown requested")
    finally:
        server.server_close()
        poller.stop(timeout=1)
    log.info("Program exit")
    return 0


if __name__ == '__main__':
    sys.exit(main())
