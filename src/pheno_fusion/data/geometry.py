import json
import logging
from typing import Optional, Union

import pyproj
from shapely.geometry import shape
from shapely.ops import transform as shapely_transform

logger = logging.getLogger(__name__)


def _utm_crs(lon: float, lat: float) -> str:
    utm_zone = int((lon + 180) / 6) + 1
    hemisphere = 'north' if lat >= 0 else 'south'
    return f"+proj=utm +zone={utm_zone} +{hemisphere} +datum=WGS84"


def load_geometry(geometry: Union[str, dict]) -> dict:
    """
    Accepts a GeoJSON geometry, Feature or FeatureCollection (dict or JSON
    string) and returns the first geometry dict.
    """
    if isinstance(geometry, str):
        geometry = json.loads(geometry)

    kind = geometry.get("type")
    if kind == "FeatureCollection":
        features = geometry.get("features") or []
        if not features:
            raise ValueError("FeatureCollection has no features")
        return load_geometry(features[0])
    if kind == "Feature":
        return geometry["geometry"]
    return geometry


def field_area_ha(geometry: Union[str, dict]) -> float:
    """
    Field area in hectares, measured in the UTM zone of the geometry's
    centroid.

    Args:
        geometry: GeoJSON in WGS84 (lon, lat) coordinates.

    Returns:
        float: Area in hectares.
    """
    geom = shape(load_geometry(geometry))
    if geom.is_empty:
        return 0.0

    centroid = geom.centroid
    project_to_utm = pyproj.Transformer.from_crs(
        "EPSG:4326",
        _utm_crs(centroid.x, centroid.y),
        always_xy=True
    ).transform
    geom_utm = shapely_transform(project_to_utm, geom)
    return geom_utm.area / 10000.0


def safe_field_area_ha(geometry: Union[str, dict, None]) -> Optional[float]:
    """field_area_ha, or None when the geometry is missing or malformed."""
    if not geometry:
        return None
    try:
        return field_area_ha(geometry)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning(f"[GEOMETRY] Could not compute field area: {e}")
        return None
