from pydantic import BaseModel, Field
from typing import Annotated, Literal, Optional, Union
from enum import Enum


Coordinate = tuple[float, float]  # (lng, lat)


class LandUse(str, Enum):
    """Land use categories carried as per-building area columns."""
    RESIDENTIAL = "Generic Residential"
    RETAIL = "Generic Retail"
    FOOD_AND_BEVERAGE = "Generic Food and Beverage Service"
    ENTERTAINMENT = "Generic Entertainment"
    SERVICE = "Generic Service"
    HEALTH = "Generic Health and Wellbeing"
    EDUCATION = "Generic Education"
    OFFICE = "Generic Office Building"
    CULTURE = "Generic Culture"
    CIVIC = "Generic Civic Function"
    SPORT = "Generic Sport Facility"
    LIGHT_INDUSTRIAL = "Generic Light Industrial"
    ACCOMMODATION = "Generic Accommodation"
    TRANSPORTATION = "Generic Transportation Service"
    UTILITIES = "Generic Utilities"
    UNDEFINED = "Undefined Land use"


class AttractivityMode(str, Enum):
    """How much a destination weighs in the score."""
    FLOOR_AREA = "floor_area"
    VOLUME = "volume"  # floor area * height
    COUNT = "count"  # 1 per qualifying destination
    ASSIGNED = "assigned"  # user-assigned weight on pins/attractors


class AnalysisMode(str, Enum):
    """Per-building scoring or hexagon grid scoring."""
    BUILDINGS = "buildings"
    GRID = "grid"


class PipelineState(str, Enum):
    """Scoring pipeline state."""
    IDLE = "idle"
    COMPUTING = "computing"
    READY = "ready"


# =============================================================================
# Network & Entity Models
# =============================================================================


class StreetSegment(BaseModel):
    """A street polyline; only its end points become graph nodes."""
    coordinates: list[Coordinate]
    length: Optional[Union[float, str]] = None  # authoritative length in meters


class Building(BaseModel):
    """A building footprint reduced to what scoring needs."""
    id: str
    centroid: Coordinate
    height: float = 0.0
    floors: int = 1
    land_use_areas: dict[str, float] = Field(default_factory=dict)  # sqm per land use
    nearest_node_id: Optional[str] = None

    @property
    def is_residential(self) -> bool:
        return self.land_use_areas.get(LandUse.RESIDENTIAL.value, 0) > 0

    def area_for(self, land_use: str) -> float:
        """Floor area dedicated to a land use (0 when absent)."""
        return self.land_use_areas.get(land_use, 0) or 0


class CustomPin(BaseModel):
    """A user-placed destination in building mode."""
    id: str
    coord: Coordinate
    attractivity: float = Field(default=1.0, ge=0)
    nearest_node_id: Optional[str] = None


class GridAttractor(BaseModel):
    """A user-placed destination in grid mode."""
    id: str
    coord: Coordinate
    attractivity: float = Field(default=1.0, ge=0)
    nearest_node_id: Optional[str] = None


class HexCell(BaseModel):
    """Hexagon grid cell used as an origin in grid mode."""
    id: str
    center: Coordinate
    vertices: list[Coordinate] = Field(default_factory=list)
    intersects_street: bool = False
    nearest_node_id: Optional[str] = None


class MeasurementPoint(BaseModel):
    """One end of an ad hoc distance measurement."""
    id: Literal["A", "B"]
    coord: Coordinate
    nearest_node_id: Optional[str] = None


# =============================================================================
# Decay Curve Configuration
# =============================================================================


class ControlPoint(BaseModel):
    """One knot of a piecewise-linear decay curve."""
    x: float = Field(..., ge=0)  # distance in meters
    y: float = Field(..., ge=0, le=1)


DEFAULT_POLYLINE_POINTS = [
    # Approximates f(d) = e^(-0.003 * d)
    ControlPoint(x=0, y=1),
    ControlPoint(x=250, y=0.472),
    ControlPoint(x=500, y=0.223),
    ControlPoint(x=750, y=0.105),
    ControlPoint(x=1000, y=0.050),
    ControlPoint(x=1500, y=0.011),
    ControlPoint(x=2000, y=0.002),
]


class PolylineCurveConfig(BaseModel):
    mode: Literal["polyline"] = "polyline"
    points: list[ControlPoint] = Field(
        default_factory=lambda: list(DEFAULT_POLYLINE_POINTS), min_length=2
    )


class BezierCurveConfig(BaseModel):
    """Cubic bezier from (0, 1) to (max_distance, 0) shaped by two handles."""
    mode: Literal["bezier"] = "bezier"
    handles: tuple[Coordinate, Coordinate] = ((400.0, 1.0), (800.0, 0.0))
    max_distance: float = Field(default=2000.0, gt=0)


class NegativeExponentialCurveConfig(BaseModel):
    """f(d) = e^(-alpha * d)"""
    mode: Literal["negative_exponential"] = "negative_exponential"
    alpha: float = Field(default=0.003, ge=0)


class ExponentialPowerCurveConfig(BaseModel):
    """f(d) = e^(-(d / b)^c)"""
    mode: Literal["exponential_power"] = "exponential_power"
    b: float = Field(default=700.0, gt=0)  # scale
    c: float = Field(default=2.0, gt=0)  # shape


CurveConfig = Annotated[
    Union[
        PolylineCurveConfig,
        BezierCurveConfig,
        NegativeExponentialCurveConfig,
        ExponentialPowerCurveConfig,
    ],
    Field(discriminator="mode"),
]


# =============================================================================
# Results
# =============================================================================


class MatrixProgress(BaseModel):
    """Progress update during distance matrix construction."""
    stage: str  # 'matrix', 'complete'
    percent: int = Field(..., ge=0, le=100)
    message: str
    mode: AnalysisMode = AnalysisMode.BUILDINGS


class ScoreSummary(BaseModel):
    """Summary statistics over a raw score map."""
    min: float = 0.0
    max: float = 0.0
    average: float = 0.0
    count: int = 0


class MeasurementResult(BaseModel):
    """Point-to-point network path between two arbitrary points."""
    distance_m: float
    euclidean_m: float
    formatted: str
    coordinates: list[Coordinate]
    node_path: list[str]
    midpoint: Coordinate


# =============================================================================
# API Models
# =============================================================================


class NetworkLoadRequest(BaseModel):
    """Street network and buildings for a new session."""
    streets: list[StreetSegment] = Field(default_factory=list)
    street_features: list[dict] = Field(default_factory=list)  # GeoJSON LineStrings
    buildings: list[Building] = Field(default_factory=list)
    building_features: list[dict] = Field(default_factory=list)  # GeoJSON (Multi)Polygons


class NetworkStats(BaseModel):
    node_count: int
    edge_count: int
    component_count: int
    building_count: int
    residential_count: int
    available_land_uses: list[str]


class MatrixBuildRequest(BaseModel):
    mode: AnalysisMode = AnalysisMode.BUILDINGS


class MatrixBuildResponse(BaseModel):
    mode: AnalysisMode
    source_count: int
    processing_time_seconds: float


class ScoreRequest(BaseModel):
    """Building-mode scoring inputs."""
    curve: CurveConfig = Field(default_factory=PolylineCurveConfig)
    land_use: LandUse = LandUse.RETAIL
    attractivity_mode: AttractivityMode = AttractivityMode.FLOOR_AREA
    custom_pins: Optional[list[CustomPin]] = None  # when set, pins replace buildings


class GridScoreRequest(BaseModel):
    """Grid-mode scoring inputs."""
    curve: CurveConfig = Field(default_factory=PolylineCurveConfig)
    hex_cells: list[HexCell]
    attractors: list[GridAttractor]


class ScoreResponse(BaseModel):
    mode: AnalysisMode
    state: PipelineState
    raw_scores: dict[str, float]
    normalized_scores: dict[str, float]
    summary: ScoreSummary


class MeasureRequest(BaseModel):
    a: Coordinate
    b: Coordinate


class CurveSampleRequest(BaseModel):
    curve: CurveConfig = Field(default_factory=PolylineCurveConfig)
    max_distance: Optional[float] = Field(default=None, gt=0)  # settings default when omitted
    steps: int = Field(default=100, ge=1, le=1000)


class CurveSampleResponse(BaseModel):
    mode: str
    samples: list[tuple[float, float]]  # (distance, weight)


class SessionStatus(BaseModel):
    loaded: bool
    state: PipelineState
    analysis_mode: AnalysisMode
    computing: dict[str, bool]
    building_matrix_ready: bool
    full_matrix_ready: bool
    node_count: int = 0
    building_count: int = 0
