"""
Time series types for per-field NDVI and Sentinel-1 backscatter data.

Series are plain tuples of named tuples ordered by date. They are never
mutated in place: helpers always return filtered or derived copies.
"""

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

# Returned by radar collaborators when no Sentinel-1 coverage exists
UNAVAILABLE = "UNAVAILABLE"

DateLike = Union[date, datetime, str]


class Observation(NamedTuple):
    """A single optical NDVI sample for a field."""
    date: date
    raw: Optional[float] = None
    smooth: Optional[float] = None
    interp: Optional[float] = None
    cloud_cover: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        """Best available NDVI: smoothed, then interpolated, then raw."""
        if self.smooth is not None:
            return self.smooth
        if self.interp is not None:
            return self.interp
        return self.raw

    @property
    def quality(self) -> float:
        """Sample quality in 0-1 derived from cloud cover percentage."""
        if not self.cloud_cover:
            return 1.0
        return max(0.0, 1.0 - self.cloud_cover / 100.0)


class RadarObservation(NamedTuple):
    """A Sentinel-1 backscatter sample (dB)."""
    date: date
    vv: float
    vh: float


class NdviReport(NamedTuple):
    """Payload returned by the NDVI/weather provider for one field."""
    ndvi: Tuple[Observation, ...]
    historical: Tuple[Tuple[Observation, ...], ...] = ()
    area_ha: float = 0.0
    precipitation: Any = None
    soil: Any = None
    zarc: Any = None


def parse_date(value: DateLike) -> date:
    """Accepts a date, datetime or ISO string and returns a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    if 'T' in text:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).date()
    return datetime.strptime(text[:10], '%Y-%m-%d').date()


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _opt_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_observation(item: Dict[str, Any]) -> Observation:
    """Builds an Observation from a provider dict (ndvi_raw/ndvi_smooth/... keys)."""
    return Observation(
        date=parse_date(item['date']),
        raw=_opt_float(item.get('ndvi_raw', item.get('ndvi'))),
        smooth=_opt_float(item.get('ndvi_smooth')),
        interp=_opt_float(item.get('ndvi_interp')),
        cloud_cover=_opt_float(item.get('cloud_cover')),
    )


def observation_to_dict(obs: Observation) -> Dict[str, Any]:
    return {
        'date': obs.date.isoformat(),
        'ndvi_raw': obs.raw,
        'ndvi_smooth': obs.smooth,
        'ndvi_interp': obs.interp,
        'cloud_cover': obs.cloud_cover,
    }


def parse_radar_observation(item: Dict[str, Any]) -> Optional[RadarObservation]:
    """Builds a RadarObservation; returns None when VV or VH is missing."""
    vv = _opt_float(item.get('vv'))
    vh = _opt_float(item.get('vh'))
    if vv is None or vh is None:
        return None
    return RadarObservation(date=parse_date(item['date']), vv=vv, vh=vh)


def parse_series(items: Iterable[Dict[str, Any]]) -> Tuple[Observation, ...]:
    return tuple(sorted((parse_observation(i) for i in items), key=lambda o: o.date))


def parse_radar_series(items: Iterable[Dict[str, Any]]) -> Tuple[RadarObservation, ...]:
    parsed = [parse_radar_observation(i) for i in items]
    return tuple(sorted((p for p in parsed if p is not None), key=lambda o: o.date))


def valid_sorted(series: Iterable[Observation]) -> List[Observation]:
    """Observations with a usable NDVI value, in chronological order."""
    return sorted((o for o in series if o.value is not None), key=lambda o: o.date)


def max_gap_days(dates: Iterable[date]) -> int:
    """Largest spacing, in days, between consecutive dates."""
    ordered = sorted(dates)
    best = 0
    for prev, curr in zip(ordered, ordered[1:]):
        best = max(best, (curr - prev).days)
    return best
