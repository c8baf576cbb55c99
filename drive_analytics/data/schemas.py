"""
Pydantic schemas for the pipeline's data model.

Defines the parsed telemetry sample, map polygons, threshold rules and
neighbor records, with validation rules for coordinates and ranges.
"""
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


class LogSample(BaseModel):
    """
    One parsed, validated drive-test measurement.

    Coordinates are mandatory and range-checked; every metric is nullable
    because drive-test devices report whatever the modem exposes.

    Example:
        >>> sample = LogSample(
        ...     session_id='1042',
        ...     lat=28.6139,
        ...     lng=77.2090,
        ...     rsrp=-95.0,
        ...     provider='Jio',
        ...     technology='4G',
        ... )
    """
    id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[str] = None

    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False, description="Latitude in decimal degrees")
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False, description="Longitude in decimal degrees")

    # RF and service metrics
    rsrp: Optional[float] = Field(None, description="Reference Signal Received Power (dBm)")
    rsrq: Optional[float] = Field(None, description="Reference Signal Received Quality (dB)")
    sinr: Optional[float] = Field(None, description="Signal-to-Interference-plus-Noise Ratio (dB)")
    dl_tpt: Optional[float] = Field(None, description="Downlink throughput (Mbps)")
    ul_tpt: Optional[float] = Field(None, description="Uplink throughput (Mbps)")
    mos: Optional[float] = Field(None, description="Voice Mean Opinion Score")
    jitter: Optional[float] = Field(None, description="Jitter (ms)")
    latency: Optional[float] = Field(None, description="Latency (ms)")
    packet_loss: Optional[float] = Field(None, description="Packet loss (%)")
    speed: Optional[float] = Field(None, description="Device speed")
    battery: Optional[float] = Field(None, description="Battery level (%)")
    level: Optional[float] = None
    tac: Optional[float] = None
    num_cells: Optional[int] = None

    # Categorical
    provider: Optional[str] = Field(None, description="Canonical operator brand")
    technology: str = Field("Unknown", description="Canonical network generation (2G..5G)")
    band: str = ""
    pci: str = ""
    cell_id: str = ""
    nodeb_id: str = ""
    indoor_outdoor: Optional[str] = None
    apps: str = ""

    model_config = {
        "frozen": True,
        "str_strip_whitespace": True,
    }

    @property
    def latitude(self) -> float:
        return self.lat

    @property
    def longitude(self) -> float:
        return self.lng


class LatLng(BaseModel):
    """A single polygon vertex."""
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)

    model_config = {"frozen": True}


class BoundingBox(BaseModel):
    """Axis-aligned extent of a polygon, used as a cheap pre-check."""
    south: float
    west: float
    north: float
    east: float

    model_config = {"frozen": True}

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


class Polygon(BaseModel):
    """
    A map selection or project boundary.

    ``rings`` holds one or more vertex rings; the first is the outer
    boundary and any further rings are holes. Rings need not be closed.
    """
    id: Optional[str] = None
    name: Optional[str] = None
    rings: List[List[LatLng]] = Field(..., min_length=1)
    session_ids: List[str] = Field(default_factory=list)
    bbox: Optional[BoundingBox] = None

    model_config = {"frozen": True}

    @field_validator('rings')
    @classmethod
    def check_rings(cls, v):
        for ring in v:
            if len(ring) < 3:
                raise ValueError(f"Polygon ring needs at least 3 vertices, got {len(ring)}")
        return v

    @model_validator(mode='before')
    @classmethod
    def compute_bbox(cls, data):
        if isinstance(data, dict) and data.get('bbox') is None and data.get('rings'):
            outer = data['rings'][0]
            lats = [p['lat'] if isinstance(p, dict) else p.lat for p in outer]
            lngs = [p['lng'] if isinstance(p, dict) else p.lng for p in outer]
            data = {
                **data,
                'bbox': {
                    'south': min(lats), 'north': max(lats),
                    'west': min(lngs), 'east': max(lngs),
                },
            }
        return data

    @classmethod
    def from_coords(
        cls,
        coords: List[Tuple[float, float]],
        holes: Optional[List[List[Tuple[float, float]]]] = None,
        **kwargs
    ) -> 'Polygon':
        """
        Build a polygon from ``(lat, lng)`` tuples.

        Example:
            >>> square = Polygon.from_coords([(0, 0), (0, 1), (1, 1), (1, 0)])
        """
        rings = [coords] + list(holes or [])
        return cls(
            rings=[[{'lat': lat, 'lng': lng} for lat, lng in ring] for ring in rings],
            **kwargs
        )


class ThresholdRule(BaseModel):
    """One colored range of a metric's domain."""
    min: float
    max: float
    color: str
    label: Optional[str] = None
    range: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator('min', 'max', mode='before')
    @classmethod
    def parse_bound(cls, v):
        # Threshold settings are stored as JSON strings; bounds often arrive quoted
        if isinstance(v, str):
            return float(v.strip())
        return v


class SourceKind(str, Enum):
    """Record family a neighbor observation was read from."""
    COLLISION = "collision"
    PRIMARY = "primary"


class NeighborRecord(BaseModel):
    """A neighbor or collision-candidate cell observed at a location."""
    id: str
    pci: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    cell_id: Optional[str] = None
    band: Optional[str] = None
    primary_pci: Optional[str] = None
    primary_cell_id: Optional[str] = None
    rsrp: Optional[float] = None
    rsrq: Optional[float] = None
    sinr: Optional[float] = None
    mos: Optional[float] = None
    dl_tpt: Optional[float] = None
    ul_tpt: Optional[float] = None
    latency: Optional[float] = None
    jitter: Optional[float] = None
    source_kind: SourceKind

    model_config = {"frozen": True}

    @property
    def is_collision(self) -> bool:
        return self.source_kind is SourceKind.COLLISION
