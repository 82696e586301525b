"""Records returned by the Envoy gateway APIs."""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ProductionRecord:
    """One entry of the ``production`` array in /production.json

    The first entry is the inverter aggregate on every firmware, later entries
    (``eim``) only exist when production CTs are installed.
    """
    type: str
    active_count: int
    reading_time: int
    w_now: float
    wh_lifetime: float

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'ProductionRecord':
        return cls(
            type=str(data.get('type', '')),
            active_count=int(data.get('activeCount', 0)),
            reading_time=int(data.get('readingTime', 0)),
            w_now=float(data.get('wNow', 0.0)),
            wh_lifetime=float(data.get('whLifetime', 0.0)),
        )


@dataclass
class InverterReading:
    """One microinverter from /api/v1/production/inverters"""
    serial_number: str
    last_report_date: int
    dev_type: int
    last_report_watts: float
    max_report_watts: float

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'InverterReading':
        return cls(
            serial_number=str(data['serialNumber']),
            last_report_date=int(data.get('lastReportDate', 0)),
            dev_type=int(data.get('devType', 0)),
            last_report_watts=float(data.get('lastReportWatts', 0)),
            max_report_watts=float(data.get('maxReportWatts', 0)),
        )


@dataclass
class Gateway:
    """A gateway found on the network"""
    ip: str
    serial: str
    part_number: Optional[str] = None
    firmware: Optional[str] = None
