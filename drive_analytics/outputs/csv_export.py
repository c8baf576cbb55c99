"""
CSV exports of fetched samples, hand-overs, neighbours and statistics.

Every writer returns the path it wrote, or ``None`` when there was
nothing to write, and logs the row count.
"""
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from drive_analytics.analysis.neighbors import NeighborResolution
from drive_analytics.core.transitions import Transition
from drive_analytics.data.schemas import LogSample
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

SAMPLE_COLUMNS = [
    'session_id', 'timestamp', 'lat', 'lng', 'provider', 'technology', 'band',
    'pci', 'cell_id', 'nodeb_id', 'rsrp', 'rsrq', 'sinr', 'dl_tpt', 'ul_tpt',
    'mos', 'jitter', 'latency', 'packet_loss', 'speed', 'indoor_outdoor', 'apps',
]

TRANSITION_COLUMNS = ['kind', 'from', 'to', 'at_index', 'lat', 'lng', 'timestamp', 'session_id']

NEIGHBOR_COLUMNS = [
    'id', 'source_kind', 'pci', 'lat', 'lng', 'cell_id', 'band', 'primary_pci',
    'primary_cell_id', 'rsrp', 'rsrq', 'sinr', 'mos', 'dl_tpt', 'ul_tpt',
]


def sanitize_file_name(name: Any, default: str = "export") -> str:
    """
    Make a string safe to use as a file name.

    Runs of anything other than letters, digits, ``-`` and ``_`` become a
    single ``_``; the result is capped at 64 characters.

    Example:
        >>> sanitize_file_name("RSRP by operator / 4G")
        'RSRP_by_operator_4G'
    """
    text = re.sub(r'[^\w\-]+', '_', str(name or ''))
    return text[:64] or default


def timestamped_name(stem: str, suffix: str = ".csv", now: Optional[datetime] = None) -> str:
    """``<stem>_<YYYYmmdd_HHMMSS><suffix>`` with the stem sanitised."""
    now = now or datetime.now()
    return f"{sanitize_file_name(stem)}_{now.strftime('%Y%m%d_%H%M%S')}{suffix}"


def _write(df: pd.DataFrame, path: Path, kind: str) -> Optional[Path]:
    if df.empty:
        logger.warning("export_skipped_empty", kind=kind, path=str(path))
        return None
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info("export_written", kind=kind, path=str(path), rows=len(df))
    return path


def samples_to_dataframe(samples: Iterable[LogSample]) -> pd.DataFrame:
    """One row per sample, in :data:`SAMPLE_COLUMNS` order."""
    rows = [s.model_dump(include=set(SAMPLE_COLUMNS)) for s in samples]
    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)


def export_samples_csv(samples: Iterable[LogSample], path: Path) -> Optional[Path]:
    """
    Write parsed samples to CSV.

    Args:
        samples: Samples in fetch order
        path: Destination file

    Returns:
        The path written, or ``None`` if there were no samples
    """
    return _write(samples_to_dataframe(samples), path, kind="samples")


def export_transitions_csv(
    transitions: Mapping[str, Sequence[Transition]],
    path: Path,
) -> Optional[Path]:
    """Write the output of ``detect_transitions`` as one table."""
    rows = [t.to_dict() for kind in transitions for t in transitions[kind]]
    rows.sort(key=lambda r: (r['at_index'], r['kind']))
    return _write(pd.DataFrame(rows, columns=TRANSITION_COLUMNS), path, kind="transitions")


def export_neighbors_csv(resolution: NeighborResolution, path: Path) -> Optional[Path]:
    """Write resolved neighbour records, flagging PCIs involved in collisions."""
    collision_pcis = set(resolution.collision_pcis)
    rows = []
    for record in resolution.all_neighbors:
        row = record.model_dump(include=set(NEIGHBOR_COLUMNS), mode='json')
        row['in_collision'] = record.pci in collision_pcis
        rows.append(row)
    df = pd.DataFrame(rows, columns=NEIGHBOR_COLUMNS + ['in_collision'])
    return _write(df, path, kind="neighbors")


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (dict, list, tuple, set))


def export_stats_csv(rows: Sequence[Mapping[str, Any]], path: Path) -> Optional[Path]:
    """
    Write statistic rows (operator averages, rankings, box summaries).

    Nested values such as per-network breakdowns cannot be flattened into a
    single cell, so any column holding a dict or list is left out.

    Example:
        >>> export_stats_csv([{"name": "Jio", "value": -92.4, "count": 120}],
        ...                  Path("out/rsrp_by_operator.csv"))
    """
    if not rows:
        logger.warning("export_skipped_empty", kind="stats", path=str(path))
        return None

    columns: List[str] = []
    nested = set()
    for row in rows:
        for key, value in row.items():
            if key not in columns:
                columns.append(key)
            if not _is_scalar(value):
                nested.add(key)

    flat: List[Dict[str, Any]] = [
        {k: v for k, v in row.items() if k not in nested} for row in rows
    ]
    if nested:
        logger.debug("export_nested_columns_dropped", columns=sorted(nested))
    df = pd.DataFrame(flat, columns=[c for c in columns if c not in nested])
    return _write(df, path, kind="stats")
