"""
Building store.

Turns building feature properties (one area column per land use) into
Building entities and answers land-use queries over them.
"""

import logging
from typing import Any, Iterable, Optional, Sequence

from accessmap.models.schemas import Building, LandUse
from accessmap.utils.geo import ring_centroid

logger = logging.getLogger(__name__)

ALL_LAND_USES = [lu.value for lu in LandUse]

# Land uses never offered as destinations
NON_DESTINATION_LAND_USES = {
    LandUse.RESIDENTIAL.value,
    LandUse.UTILITIES.value,
    LandUse.UNDEFINED.value,
}


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int = 1) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def building_from_properties(
    properties: dict,
    polygons: Sequence,
) -> Optional[Building]:
    """
    Build a Building from feature properties and footprint coordinates.

    Args:
        properties: Feature properties ('Building ID', 'Height', 'Floors'
            and one area column per land use)
        polygons: MultiPolygon coordinates of the footprint

    Returns:
        Building, or None if the properties carry no id
    """
    building_id = str(properties.get("Building ID") or "")
    if not building_id:
        return None

    land_use_areas = {}
    for land_use in ALL_LAND_USES:
        area = _to_float(properties.get(land_use))
        if area > 0:
            land_use_areas[land_use] = area

    return Building(
        id=building_id,
        centroid=ring_centroid(polygons),
        height=_to_float(properties.get("Height")),
        floors=_to_int(properties.get("Floors")),
        land_use_areas=land_use_areas,
    )


def buildings_from_features(features: Iterable[dict]) -> list[Building]:
    """
    Convert parsed GeoJSON building features into Building entities.

    Polygon geometries are treated as single-part MultiPolygons. Features
    without properties or id are skipped.
    """
    buildings = []
    skipped = 0

    for feature in features:
        properties = feature.get("properties")
        geometry = feature.get("geometry") or {}
        if not properties:
            skipped += 1
            continue

        coordinates = geometry.get("coordinates") or []
        if geometry.get("type") == "Polygon":
            coordinates = [coordinates]

        building = building_from_properties(properties, coordinates)
        if building is None:
            skipped += 1
            continue
        buildings.append(building)

    if skipped:
        logger.warning("Skipped %d building features without id", skipped)

    return buildings


def buildings_with_land_use(buildings: Iterable[Building], land_use: str) -> list[Building]:
    return [b for b in buildings if b.area_for(land_use) > 0]


def residential_buildings(buildings: Iterable[Building]) -> list[Building]:
    return [b for b in buildings if b.is_residential]


def available_land_uses(buildings: Iterable[Building]) -> list[str]:
    """Destination land uses present in the data, sorted."""
    uses = set()
    for building in buildings:
        for land_use in building.land_use_areas:
            if land_use not in NON_DESTINATION_LAND_USES:
                uses.add(land_use)
    return sorted(uses)
