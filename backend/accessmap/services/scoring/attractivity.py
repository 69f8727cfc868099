"""
Destination weights ("attractivity") for the accessibility formula.
"""

from abc import ABC, abstractmethod
from typing import Optional

from accessmap.models.schemas import AttractivityMode


class Attractivity(ABC):
    """Weight of a single destination."""

    @abstractmethod
    def weight(self, destination) -> float:
        ...

    def __call__(self, destination) -> float:
        return self.weight(destination)


class FloorAreaAttractivity(Attractivity):
    """Floor area of the selected land use."""

    def __init__(self, land_use: str):
        self.land_use = land_use

    def weight(self, destination) -> float:
        return destination.area_for(self.land_use)


class VolumeAttractivity(Attractivity):
    """Floor area of the selected land use times building height."""

    def __init__(self, land_use: str):
        self.land_use = land_use

    def weight(self, destination) -> float:
        return destination.area_for(self.land_use) * destination.height


class CountAttractivity(Attractivity):
    """1 for every building hosting the land use."""

    def __init__(self, land_use: str):
        self.land_use = land_use

    def weight(self, destination) -> float:
        return 1.0 if destination.area_for(self.land_use) > 0 else 0.0


class AssignedAttractivity(Attractivity):
    """User-assigned weight carried by pins and grid attractors."""

    def __init__(self, default: float = 1.0):
        self.default = default

    def weight(self, destination) -> float:
        value = getattr(destination, "attractivity", None)
        return self.default if value is None else value


def create_attractivity(mode: AttractivityMode, land_use: Optional[str] = None) -> Attractivity:
    """Build the attractivity function for a mode."""
    if mode == AttractivityMode.ASSIGNED:
        return AssignedAttractivity()

    if land_use is None:
        raise ValueError(f"Attractivity mode {mode.value!r} requires a land use")

    if mode == AttractivityMode.FLOOR_AREA:
        return FloorAreaAttractivity(land_use)
    if mode == AttractivityMode.VOLUME:
        return VolumeAttractivity(land_use)
    if mode == AttractivityMode.COUNT:
        return CountAttractivity(land_use)
    raise ValueError(f"Unsupported attractivity mode: {mode!r}")
