"""Prometheus exporter for Enphase Envoy gateways"""
from pyenvoy.exporter.metrics import MetricsStore, StoreCollector, describe_envoy_metrics
from pyenvoy.exporter.notification import SessionNotification
from pyenvoy.exporter.poller import Poller
