"""
HTTP collaborators for NDVI, Sentinel-1 radar and climate records.

The engine only depends on the `fetch` call shapes; these classes are the
reference implementations over a JSON/HTTP service. Every request carries
a timeout and every failure surfaces as ProviderError.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional, Tuple, Union

import requests

from ..config import (
    NDVI_PROVIDER_URL,
    RADAR_PROVIDER_URL,
    CLIMATE_PROVIDER_URL,
    DEFAULT_HTTP_TIMEOUT,
)
from ..errors import ProviderError
from .timeseries import (
    UNAVAILABLE,
    NdviReport,
    RadarObservation,
    parse_series,
    parse_radar_series,
    format_date,
)

logger = logging.getLogger(__name__)

PRECIPITATION = "precipitation"
WATER_BALANCE = "water-balance"
THERMAL = "thermal"
ENVELOPE = "envelope"


def _post_json(url: str, payload: Dict[str, Any], timeout: float) -> Optional[Dict[str, Any]]:
    """POST a JSON payload; 404 means 'no data' and returns None."""
    try:
        response = requests.post(url, json=payload, timeout=timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
    except requests.exceptions.Timeout as e:
        raise ProviderError(f"Timeout after {timeout}s calling {url}") from e
    except requests.exceptions.RequestException as e:
        raise ProviderError(f"Request to {url} failed: {e}") from e
    except ValueError as e:
        raise ProviderError(f"Invalid JSON from {url}: {e}") from e


class HttpNdviProvider:
    """NDVI / weather report for a field geometry and season."""

    def __init__(self, url: str = NDVI_PROVIDER_URL, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch(self, geometry: Union[str, dict], season_start: date, crop_type: str) -> Optional[NdviReport]:
        logger.info(f"[NDVI] Fetching report from {self.url} (season {format_date(season_start)}, {crop_type})")
        data = _post_json(self.url, {
            'geometry': geometry,
            'season_start': format_date(season_start),
            'crop_type': crop_type,
        }, self.timeout)
        if data is None:
            return None
        return parse_ndvi_report(data)


def parse_ndvi_report(data: Dict[str, Any]) -> NdviReport:
    try:
        ndvi = parse_series(data.get('ndvi') or [])
        historical = tuple(parse_series(season) for season in data.get('historical_ndvi') or [])
        area = float(data.get('area_ha') or 0.0)
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"Malformed NDVI report: {e}") from e

    return NdviReport(
        ndvi=ndvi,
        historical=historical,
        area_ha=area,
        precipitation=data.get('precipitation'),
        soil=data.get('soil'),
        zarc=data.get('zarc'),
    )


class HttpRadarProvider:
    """Sentinel-1 VV/VH series; returns UNAVAILABLE when there is no coverage."""

    def __init__(self, url: str = RADAR_PROVIDER_URL, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch(
        self,
        workspace_id: Optional[str],
        geometry: Union[str, dict],
        start: date,
        end: date
    ) -> Union[Tuple[RadarObservation, ...], str]:
        data = _post_json(self.url, {
            'workspace_id': workspace_id,
            'geometry': geometry,
            'from': format_date(start),
            'to': format_date(end),
        }, self.timeout)

        if data is None or data.get('source') == UNAVAILABLE:
            logger.info("[RADAR] No Sentinel-1 coverage for this field")
            return UNAVAILABLE

        try:
            series = parse_radar_series(data.get('data') or [])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Malformed radar payload: {e}") from e

        logger.info(f"[RADAR] Fetched {len(series)} Sentinel-1 scenes")
        return series


class HttpClimateService:
    """
    One climate sub-service (precipitation, water balance, thermal or
    climate envelope). Records are passed through as dicts.
    """

    def __init__(self, kind: str, base_url: str = CLIMATE_PROVIDER_URL, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.kind = kind
        self.url = f"{base_url.rstrip('/')}/{kind}"
        self.timeout = timeout

    def fetch(
        self,
        workspace_id: Optional[str],
        geometry: Union[str, dict],
        planting_date: Optional[date],
        crop_type: str
    ) -> Optional[Dict[str, Any]]:
        return _post_json(self.url, {
            'workspace_id': workspace_id,
            'geometry': geometry,
            'planting_date': format_date(planting_date),
            'crop_type': crop_type,
        }, self.timeout)
