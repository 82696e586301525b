# pyEnvoy Module - Scan Function
# -*- coding: utf-8 -*-
"""
 Scan Function
    Find an Enphase Envoy gateway on the local network. The gateway
    announces itself over mDNS as envoy.local, so that name is tried first.
    When it does not resolve, the local /24 network is scanned for hosts
    answering /info.xml with an envoy_info document.

 Example /info.xml response
    <envoy_info>
      <time>1672574917</time>
      <device>
        <sn>122012345678</sn>
        <pn>800-00555-r03</pn>
        <software>D7.0.88</software>
        <imeter>true</imeter>
      </device>
    </envoy_info>
"""
import errno
import ipaddress
import logging
import socket
import threading
import time
import warnings
from queue import Queue
from typing import Final, List, Optional

import requests
from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from pyenvoy.exceptions import DiscoveryError
from pyenvoy.models import Gateway

MDNS_HOSTNAME: Final[str] = "envoy.local"
INFO_PORT: Final[int] = 80

log = logging.getLogger(__name__)

# info.xml is small and flat, html.parser reads it without lxml
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)


def get_my_ip() -> str:
    """Get the local IP address of the machine.

    Returns:
        str: IP address of the localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.connect(('8.8.8.8', 80))
        return s.getsockname()[0]


def check_connection(addr: str, timeout: float, port: int = INFO_PORT, max_retries: int = 10,
                     retry_delay: float = 0.1) -> bool:
    """Checks for simple connection status to a provided address.

    Args:
        addr (str): The address to attempt connection to.
        timeout (float): Socket timeout in seconds.
        port (int, optional): The port to connect to. Defaults to 80.
        max_retries (int, optional): Maximum number of retry attempts. Defaults to 10.
        retry_delay (float, optional): Delay between connection retries in seconds. Defaults to 0.1.

    Returns:
        bool: True if connection is successful, False otherwise.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as conn:
        conn.settimeout(timeout)
        for _ in range(max_retries):
            try:
                result = conn.connect_ex((addr, port))
            except OSError as exc:
                log.debug(f"Connection attempt to {addr}:{port} failed: {exc}")
                return False
            if result == 0:
                return True
            elif result != errno.EAGAIN:
                return False
            time.sleep(retry_delay)
    return False


def parse_info(addr: str, text: str) -> Optional[Gateway]:
    """Build a Gateway from an /info.xml document, None if it is not an Envoy"""
    soup = BeautifulSoup(text, "html.parser")
    if soup.find("envoy_info") is None:
        return None
    sn = soup.find("sn")
    if sn is None or not sn.get_text(strip=True):
        return None
    pn = soup.find("pn")
    software = soup.find("software")
    return Gateway(
        ip=addr,
        serial=sn.get_text(strip=True),
        part_number=pn.get_text(strip=True) if pn is not None else None,
        firmware=software.get_text(strip=True) if software is not None else None,
    )


def probe(addr: str, timeout: float) -> Optional[Gateway]:
    """Ask a host for /info.xml and return the Gateway it describes"""
    try:
        response = requests.get(f'http://{addr}/info.xml', timeout=timeout)
    except requests.exceptions.RequestException as exc:
        log.debug(f"{addr} - not an Envoy gateway: {exc}")
        return None
    if response.status_code != 200:
        return None
    return parse_info(addr, response.text)


def scan_ip(addr: str, timeout: float, result_queue: Queue) -> None:
    """Thread Worker: Scan IP Address for presence of an Envoy gateway."""
    if not check_connection(addr, timeout):
        return
    gateway = probe(addr, max(timeout, 2.0))
    if gateway is not None:
        log.debug(f"Found Envoy {gateway.serial} at {addr} [Firmware {gateway.firmware}]")
        result_queue.put(gateway)


def scan(ip: Optional[str] = None, max_threads: int = 30, timeout: float = 1.0) -> List[Gateway]:
    """Scan the local network for Envoy gateways.

    Args:
        ip (Optional[str], optional): IP address to determine the network to scan. If None, autodetects.
        max_threads (int, optional): Maximum number of hosts to scan simultaneously. Defaults to 30.
        timeout (float, optional): Timeout in seconds for each host scan. Defaults to 1.0.

    Returns:
        List[Gateway]: The gateways found, ordered by address.
    """
    try:
        ip = get_my_ip() if ip is None else ip
        network = ipaddress.IPv4Network(ip + '/24', strict=False)
    except (OSError, ValueError) as exc:
        log.warning(f"Unable to determine the local network automatically ({exc}) - using 192.168.1.0/24")
        network = ipaddress.IPv4Network('192.168.1.0/24')

    max_threads = min(200, max_threads)
    log.info(f"Scanning {network} for Envoy gateways")

    result_queue = Queue()
    threads: List[threading.Thread] = []
    for addr in network.hosts():
        thread = threading.Thread(target=scan_ip, args=(str(addr), timeout, result_queue), daemon=True)
        thread.start()
        threads.append(thread)

        # Limit the number of concurrent threads
        while len(threads) >= max_threads:
            threads = [t for t in threads if t.is_alive()]
            time.sleep(0.01)

    for thread in threads:
        thread.join()

    discovered: List[Gateway] = []
    while not result_queue.empty():
        discovered.append(result_queue.get())
    discovered.sort(key=lambda g: ipaddress.IPv4Address(g.ip))
    return discovered


def resolve_mdns(hostname: str = MDNS_HOSTNAME) -> Optional[str]:
    """Resolve the gateway's mDNS name through the system resolver"""
    try:
        return socket.gethostbyname(hostname)
    except OSError as exc:
        log.debug(f"Unable to resolve {hostname}: {exc}")
        return None


def discover(timeout: float = 1.0, ip: Optional[str] = None) -> Gateway:
    """Find a single Envoy gateway.

    Tries envoy.local first and falls back to scanning the local network.

    Raises:
        DiscoveryError: no gateway answered.
    """
    addr = resolve_mdns()
    if addr:
        gateway = probe(addr, max(timeout, 2.0))
        if gateway is not None:
            return gateway
        log.debug(f"{MDNS_HOSTNAME} resolved to {addr} but did not answer as an Envoy")

    gateways = scan(ip=ip, timeout=timeout)
    if not gateways:
        raise DiscoveryError("No Envoy gateway found on the local network")
    if len(gateways) > 1:
        log.warning("Found %d Envoy gateways, using %s (%s)" % (len(gateways), gateways[0].serial, gateways[0].ip))
    return gateways[0]
