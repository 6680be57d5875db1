"""
Data types and external collaborators for pheno_fusion.

This module provides:
- NDVI / radar time-series types and parsing (timeseries.py)
- HTTP providers for NDVI, radar and climate records (providers.py)
- Field area from GeoJSON geometry (geometry.py)
- Reference in-memory record store (store.py)
"""

from .timeseries import (
    Observation,
    RadarObservation,
    NdviReport,
    UNAVAILABLE,
    parse_date,
    parse_series,
    parse_radar_series,
)
from .providers import HttpNdviProvider, HttpRadarProvider, HttpClimateService
from .geometry import field_area_ha
from .store import InMemoryRecordStore

__all__ = [
    # timeseries
    'Observation',
    'RadarObservation',
    'NdviReport',
    'UNAVAILABLE',
    'parse_date',
    'parse_series',
    'parse_radar_series',
    # providers
    'HttpNdviProvider',
    'HttpRadarProvider',
    'HttpClimateService',
    # geometry
    'field_area_ha',
    # store
    'InMemoryRecordStore',
]
