"""
Neighbor cell and PCI collision resolution.

The neighbours endpoint returns two record families per session:

- ``pci_collision_primary``: a PCI with the locations (and cells) where it
  was served; the same PCI at more than one distinct location is a
  collision candidate
- ``primaries``: a serving cell with the neighbours measured around it

Both families are flattened into :class:`NeighborRecord` objects keyed by
a stable identity so repeated sessions do not double count. Records
without usable coordinates are dropped and counted, never inferred.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from drive_analytics.data.parser import parse_number
from drive_analytics.data.schemas import NeighborRecord, SourceKind
from drive_analytics.data.sources import LogSource
from drive_analytics.fetch.cancellation import CancellationToken
from drive_analytics.utils.config import FetchSettings
from drive_analytics.utils.exceptions import NeighborResolutionError, OperationCancelled
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

# Two observations of a PCI closer than this (degrees) are the same location
LOCATION_TOLERANCE_DEG = 0.0001

NEIGHBOR_METRICS = ('rsrp', 'rsrq', 'sinr', 'mos', 'dl_tpt', 'ul_tpt', 'latency', 'jitter')


@dataclass(frozen=True)
class PciCollision:
    """A PCI observed at several distinct locations."""
    pci: str
    locations: Tuple[Tuple[float, float], ...]

    @property
    def location_count(self) -> int:
        return len(self.locations)


@dataclass
class NeighborStats:
    """Counters of one resolution."""
    total: int = 0
    unique_pcis: int = 0
    collisions: int = 0
    with_coords: int = 0
    without_coords: int = 0
    from_collisions: int = 0
    from_primaries: int = 0
    duplicates: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class NeighborResolution:
    """Deduplicated neighbors, detected collisions and counters."""
    all_neighbors: List[NeighborRecord] = field(default_factory=list)
    collisions: List[PciCollision] = field(default_factory=list)
    stats: NeighborStats = field(default_factory=NeighborStats)

    @property
    def collision_pcis(self) -> List[str]:
        return [c.pci for c in self.collisions]


def _coordinates(record: Mapping) -> Optional[Tuple[float, float]]:
    lat = parse_number(record.get('lat'))
    lng = parse_number(record.get('lon') if record.get('lon') not in (None, '') else record.get('lng'))
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def _pci_text(value: Any) -> str:
    # PCI 0 is valid, so only None / "" count as missing
    if value is None:
        return ''
    number = parse_number(value)
    if number is not None and number.is_integer():
        return str(int(number))
    return str(value).strip()


def _identity(kind: str, pci: str, lat: float, lng: float) -> str:
    return f"{kind}-{pci}-{lat:.5f}-{lng:.5f}"


def _text_or_none(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


def _unwrap(response: Any) -> Mapping:
    """Accept the bare body or one ``data`` / ``Data`` envelope around it."""
    if not isinstance(response, Mapping):
        return {}
    if 'pci_collision_primary' in response or 'primaries' in response:
        return response
    for key in ('data', 'Data'):
        inner = response.get(key)
        if isinstance(inner, Mapping):
            return inner
    return response


def _is_new_location(known: List[Tuple[float, float]], lat: float, lng: float) -> bool:
    return not any(
        abs(k_lat - lat) < LOCATION_TOLERANCE_DEG and abs(k_lng - lng) < LOCATION_TOLERANCE_DEG
        for k_lat, k_lng in known
    )


def resolve_neighbor_responses(responses: Iterable[Any]) -> NeighborResolution:
    """
    Flatten, deduplicate and analyse neighbour responses.

    Args:
        responses: One decoded response per session

    Returns:
        NeighborResolution; collisions are computed across all responses,
        so a PCI seen at one place in each of two sessions is a collision

    Example:
        >>> result = resolve_neighbor_responses([{
        ...     "pci_collision_primary": [{"pci": 101, "locations": [
        ...         {"lat": 28.61, "lon": 77.20}, {"lat": 28.70, "lon": 77.10}]}],
        ... }])
        >>> result.collisions[0].location_count
        2
    """
    stats = NeighborStats()
    neighbors: List[NeighborRecord] = []
    seen_ids = set()
    pcis = set()
    # PCI -> distinct collision-family locations, in first-seen order
    pci_locations: Dict[str, List[Tuple[float, float]]] = {}

    def add(record: NeighborRecord) -> None:
        if record.id in seen_ids:
            stats.duplicates += 1
            return
        seen_ids.add(record.id)
        neighbors.append(record)

    for response in responses:
        body = _unwrap(response)

        for collision in body.get('pci_collision_primary') or []:
            if not isinstance(collision, Mapping):
                continue
            pci = _pci_text(collision.get('pci'))
            if not pci:
                continue
            for location in collision.get('locations') or []:
                coords = _coordinates(location) if isinstance(location, Mapping) else None
                if coords is None:
                    stats.without_coords += 1
                    continue
                lat, lng = coords
                pcis.add(pci)
                stats.from_collisions += 1

                known = pci_locations.setdefault(pci, [])
                if _is_new_location(known, lat, lng):
                    known.append((lat, lng))

                cells = [c for c in (location.get('cells') or []) if isinstance(c, Mapping)] or [{}]
                for cell in cells:
                    stats.with_coords += 1
                    add(NeighborRecord(
                        id=str(cell.get('id') or _identity('collision', pci, lat, lng)),
                        pci=pci,
                        lat=lat,
                        lng=lng,
                        cell_id=_text_or_none(cell.get('cell_id')),
                        source_kind=SourceKind.COLLISION,
                    ))

        for primary in body.get('primaries') or []:
            if not isinstance(primary, Mapping):
                continue
            for neighbor in primary.get('neighbours_data') or []:
                if not isinstance(neighbor, Mapping):
                    continue
                coords = _coordinates(neighbor)
                if coords is None:
                    stats.without_coords += 1
                    continue
                lat, lng = coords
                pci = _pci_text(neighbor.get('pci'))
                if pci:
                    pcis.add(pci)
                stats.with_coords += 1
                stats.from_primaries += 1
                try:
                    record = NeighborRecord(
                        id=str(neighbor.get('id') or _identity('neighbor', pci, lat, lng)),
                        pci=pci,
                        lat=lat,
                        lng=lng,
                        cell_id=_text_or_none(neighbor.get('cell_id')),
                        band=_text_or_none(neighbor.get('band')),
                        primary_pci=_text_or_none(_pci_text(primary.get('primary_pci'))),
                        primary_cell_id=_text_or_none(primary.get('primary_cell_id')),
                        source_kind=SourceKind.PRIMARY,
                        **{m: parse_number(neighbor.get(m)) for m in NEIGHBOR_METRICS},
                    )
                except ValidationError as e:
                    logger.debug("neighbor_record_invalid", pci=pci, error=str(e))
                    continue
                add(record)

    collisions = [
        PciCollision(pci=pci, locations=tuple(locations))
        for pci, locations in pci_locations.items()
        if len(locations) > 1
    ]

    stats.total = len(neighbors)
    stats.unique_pcis = len(pcis)
    stats.collisions = len(collisions)

    return NeighborResolution(all_neighbors=neighbors, collisions=collisions, stats=stats)


def neighbor_cache_key(session_ids: Iterable) -> str:
    return "-".join(sorted(str(s) for s in session_ids))


class NeighborResolver:
    """
    Sequential per-session neighbour retrieval with failure isolation.

    A newer :meth:`resolve` call supersedes an older one; the older caller
    receives ``None``. Results are reused for ``neighbor_cache_ttl_s``.
    """

    def __init__(self, source: LogSource, settings: Optional[FetchSettings] = None, clock=time.monotonic):
        self.source = source
        self.settings = settings or FetchSettings()
        self._clock = clock
        self._token: Optional[CancellationToken] = None
        self._cache: Dict[str, Tuple[float, NeighborResolution]] = {}

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    def invalidate(self) -> None:
        self._cache.clear()

    def _cached(self, key: str) -> Optional[NeighborResolution]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, resolution = entry
        if self._clock() - stored_at >= self.settings.neighbor_cache_ttl_s:
            del self._cache[key]
            return None
        return resolution

    async def resolve(self, session_ids: Sequence[Any]) -> Optional[NeighborResolution]:
        """
        Resolve neighbours of every session.

        Args:
            session_ids: Sessions to query, one request each

        Returns:
            NeighborResolution, an empty one for no sessions, or ``None``
            when superseded by a newer call

        Raises:
            NeighborResolutionError: Every session failed
        """
        session_ids = [s for s in session_ids if s is not None and str(s).strip() != '']
        if not session_ids:
            return NeighborResolution()

        key = neighbor_cache_key(session_ids)
        cached = self._cached(key)
        if cached is not None:
            logger.debug("neighbor_cache_hit", sessions=key)
            return cached

        self.cancel()
        token = CancellationToken(label=f"neighbors:{key}")
        self._token = token

        try:
            responses, failures = await self._collect(session_ids, token)
        except OperationCancelled:
            logger.debug("neighbor_resolution_superseded", sessions=key)
            return None

        if len(failures) == len({str(s) for s in session_ids}):
            raise NeighborResolutionError("No neighbor data retrieved", failed_sessions=failures)

        resolution = resolve_neighbor_responses(responses)
        self._cache[key] = (self._clock(), resolution)
        logger.info(
            "neighbors_resolved",
            sessions=len(session_ids),
            failed=len(failures),
            **resolution.stats.to_dict(),
        )
        return resolution

    async def _collect(self, session_ids: Sequence[Any], token: CancellationToken):
        responses = []
        failures: Dict[str, str] = {}
        for index, session_id in enumerate(session_ids):
            try:
                response = await token.run(self.source.get_neighbours(session_id))
            except OperationCancelled:
                raise
            except Exception as e:
                failures[str(session_id)] = str(e)
                logger.warning("neighbor_session_failed", session_id=session_id, error=str(e))
            else:
                if response is not None:
                    responses.append(response)

            if index < len(session_ids) - 1:
                await token.sleep(self.settings.neighbor_delay_s)
        return responses, failures
