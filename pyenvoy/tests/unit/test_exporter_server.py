import socket
import threading

import pytest
import requests
from unittest.mock import patch, MagicMock

from pyenvoy.exceptions import DiscoveryError
from pyenvoy.exporter import server
from pyenvoy.exporter.metrics import PRODUCTION_WATTS_NOW, MetricsStore, describe_envoy_metrics
from pyenvoy.models import Gateway


@pytest.fixture(name="metrics_server")
def fixture_metrics_server():
    store = describe_envoy_metrics(MetricsStore())
    store.set_gauge(PRODUCTION_WATTS_NOW, {'gateway': '123'}, 450.5)
    httpd = server.MetricsServer(('127.0.0.1', 0), server.build_registry(store))
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()
    thread.join(5)


def url(httpd, path):
    return "http://127.0.0.1:%d%s" % (httpd.server_address[1], path)


def test_metrics_endpoint(metrics_server):
    r = requests.get(url(metrics_server, "/metrics"), timeout=5)
    assert r.status_code == 200
    assert r.headers['Content-type'].startswith('text/plain')
    assert 'envoy_production_watts_now{gateway="123"} 450.5' in r.text


def test_metrics_endpoint_ignores_query(metrics_server):
    r = requests.get(url(metrics_server, "/metrics?name[]=envoy_production_watts_now"), timeout=5)
    assert r.status_code == 200


def test_unknown_path(metrics_server):
    r = requests.get(url(metrics_server, "/"), timeout=5)
    assert r.status_code == 404
    assert r.text == "Not Found\n"


@pytest.mark.parametrize("discovered, expected", [
    ("192.168.1.40", "https://192.168.1.40"),
    ("fe80::1", "https://[fe80::1]"),
    ("", "https://envoy.local"),
    (None, "https://envoy.local"),
    ("<nil>", "https://envoy.local"),
])
def test_gateway_address(discovered, expected):
    assert server.gateway_address(discovered, "https://envoy.local") == expected


@patch('pyenvoy.exporter.server.scan.discover')
def test_resolve_gateway_with_serial(mock_discover):
    config = server.load_config({'ENVOY_CONFIG': '', 'ENVOY_SERIAL': '122012345678',
                                 'ENVOY_ADDRESS': 'https://10.0.0.5'})
    assert server.resolve_gateway(config) == ('https://10.0.0.5', '122012345678')
    mock_discover.assert_not_called()


@patch('pyenvoy.exporter.server.scan.discover')
def test_resolve_gateway_discovers(mock_discover):
    mock_discover.return_value = Gateway(ip="192.168.1.40", serial="122012345678")
    config = server.load_config({'ENVOY_CONFIG': ''})
    assert server.resolve_gateway(config) == ('https://192.168.1.40', '122012345678')


@patch('pyenvoy.exporter.server.scan.discover', side_effect=DiscoveryError("No Envoy found"))
def test_main_discovery_failed(mock_discover):
    assert server.main({'ENVOY_CONFIG': ''}) == server.EXIT_DISCOVERY_FAILED


def test_main_client_failed():
    environ = {'ENVOY_CONFIG': '', 'ENVOY_SERIAL': '122012345678'}
    assert server.main(environ) == server.EXIT_CLIENT_FAILED


def test_main_invalid_configuration():
    assert server.main({'ENVOY_CONFIG': '', 'ENVOY_REFRESH': 'often'}) == 1


def test_main_invalid_config_file(tmp_path):
    path = tmp_path / "envoy.yaml"
    path.write_text("address: [unclosed\n")
    assert server.main({'ENVOY_CONFIG': str(path), 'ENVOY_SERIAL': '122012345678', 'ENVOY_JWT': 'token'}) == 1


@patch('pyenvoy.exporter.server.Poller')
def test_main_listen_address_in_use(mock_poller_cls):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(('127.0.0.1', 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        environ = {'ENVOY_CONFIG': '', 'ENVOY_SERIAL': '122012345678', 'ENVOY_JWT': 'token',
                   'ENVOY_LISTEN': '127.0.0.1:%d' % port}
        assert server.main(environ) == server.EXIT_LISTEN_FAILED
    mock_poller_cls.return_value.start.assert_not_called()


@patch('pyenvoy.exporter.server.signal.signal')
@patch('pyenvoy.exporter.server.Poller')
@patch('pyenvoy.exporter.server.MetricsServer')
def test_main_serves_until_interrupted(mock_server_cls, mock_poller_cls, mock_signal):
    httpd = MagicMock()
    httpd.serve_forever.side_effect = KeyboardInterrupt
    mock_server_cls.return_value = httpd
    environ = {'ENVOY_CONFIG': '', 'ENVOY_SERIAL': '122012345678', 'ENVOY_JWT': 'token',
               'ENVOY_LISTEN': '127.0.0.1:9100', 'ENVOY_REFRESH': '5'}

    assert server.main(environ) == 0

    assert mock_server_cls.call_args.args[0] == ('127.0.0.1', 9100)
    assert mock_server_cls.call_args.args[2] == '/metrics'
    client, store, serial = mock_poller_cls.call_args.args
    assert serial == '122012345678'
    assert client.notification is not None
    assert mock_poller_cls.call_args.kwargs['interval'] == 5
    mock_poller_cls.return_value.start.assert_called_once_with()
    mock_poller_cls.return_value.stop.assert_called_once_with(timeout=1)
    httpd.server_close.assert_called_once_with()
