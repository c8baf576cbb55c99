"""
Decoders for the varying response shapes of the remote services.

Endpoints return either a bare list, a ``{Status, Data}`` envelope, a
``{data: [...]}`` page body, or that body wrapped once more. Each shape is
an explicit, independently testable decoder; they are tried in a fixed
precedence and the first match wins. Nothing here raises on an
unexpected payload: the caller's default is returned instead.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from drive_analytics.data.parser import parse_number

_MISSING = object()

ENVELOPE_LIST_KEYS = ('Data', 'data', 'Result', 'result')
TOTAL_COUNT_KEYS = ('total_count', 'totalCount', 'TotalCount')
COUNT_KEYS = ('Count', 'count', 'total', 'data')


@dataclass(frozen=True)
class RecordShape:
    """A named decoder: returns the extracted value or ``_MISSING``."""
    name: str
    decode: Callable[[Any], Any]


def _bare_list(response):
    return response if isinstance(response, list) else _MISSING


def _failed_status(response):
    # Status == 0 is the telemetry API's "no result" envelope
    if isinstance(response, dict) and response.get('Status') == 0:
        return []
    return _MISSING


def _envelope_list(response):
    if isinstance(response, dict):
        for key in ENVELOPE_LIST_KEYS:
            if isinstance(response.get(key), list):
                return response[key]
    return _MISSING


def _first_list_value(response):
    if isinstance(response, dict):
        for value in response.values():
            if isinstance(value, list):
                return value
    return _MISSING


def _envelope_value(response):
    if isinstance(response, dict):
        for key in ('Data', 'data'):
            if response.get(key) is not None:
                return response[key]
    return _MISSING


def _bare_object(response):
    return response if isinstance(response, dict) else _MISSING


RECORD_SHAPES: Tuple[RecordShape, ...] = (
    RecordShape('list', _bare_list),
    RecordShape('failed_status', _failed_status),
    RecordShape('envelope_list', _envelope_list),
    RecordShape('envelope_value', _envelope_value),
    RecordShape('object', _bare_object),
)

LIST_SHAPES: Tuple[RecordShape, ...] = (
    RecordShape('list', _bare_list),
    RecordShape('failed_status', _failed_status),
    RecordShape('envelope_list', _envelope_list),
    RecordShape('first_list_value', _first_list_value),
)


def decode_response(response: Any, fallback: Any = None, shapes=RECORD_SHAPES) -> Any:
    """
    Extract the payload from an API response.

    Args:
        response: Decoded JSON body (any type)
        fallback: Value returned when no shape matches
        shapes: Ordered decoders to try

    Returns:
        The value produced by the first matching shape, else ``fallback``

    Example:
        >>> decode_response({"Status": 1, "Data": [{"a": 1}]})
        [{'a': 1}]
        >>> decode_response({"Status": 0, "Message": "none"}, fallback=[])
        []
    """
    if response is None:
        return fallback
    for shape in shapes:
        value = shape.decode(response)
        if value is not _MISSING:
            return value
    return fallback


def decode_records(response: Any) -> List[Any]:
    """
    Extract a list of rows, or ``[]`` when the payload carries none.

    Example:
        >>> decode_records({"result": [1, 2]})
        [1, 2]
        >>> decode_records("unexpected")
        []
    """
    value = decode_response(response, fallback=[], shapes=LIST_SHAPES)
    return value if isinstance(value, list) else []


def decode_count(response: Any) -> int:
    """
    Extract a single count from a number or a ``{Count: n}`` style body.

    Example:
        >>> decode_count({"Status": 1, "Data": {"count": "42"}})
        42
    """
    value = decode_response(response, fallback=response)
    if isinstance(value, dict):
        if value.get('Status') == 0:
            return 0
        for key in COUNT_KEYS:
            if key in value:
                value = value[key]
                break
        else:
            return 0
    number = parse_number(value)
    return int(number) if number is not None else 0


@dataclass(frozen=True)
class PageBody:
    """One decoded page of the network-log endpoint."""
    records: List[Any]
    total_count: Optional[int] = None
    app_summary: dict = field(default_factory=dict)
    io_summary: dict = field(default_factory=dict)
    tpt_volume: Any = None
    shape: str = 'empty'


def _page_from_body(body: dict, records: List[Any], shape: str) -> PageBody:
    total = None
    for key in TOTAL_COUNT_KEYS:
        number = parse_number(body.get(key))
        if number:
            total = int(number)
            break
    return PageBody(
        records=records,
        total_count=total,
        app_summary=body.get('app_summary') or {},
        io_summary=body.get('io_summary') or {},
        tpt_volume=body.get('tpt_volume'),
        shape=shape,
    )


def _wrapped_page(response) -> Optional[PageBody]:
    inner = response.get('data') if isinstance(response, dict) else None
    if isinstance(inner, dict) and inner.get('data') is not None:
        records = inner['data'] if isinstance(inner['data'], list) else []
        return _page_from_body(inner, records, 'wrapped_page')
    return None


def _page_body(response) -> Optional[PageBody]:
    if isinstance(response, dict) and isinstance(response.get('data'), list):
        return _page_from_body(response, response['data'], 'page_body')
    return None


def _list_page(response) -> Optional[PageBody]:
    if isinstance(response, list):
        return PageBody(records=response, shape='list')
    return None


def _envelope_page(response) -> Optional[PageBody]:
    if isinstance(response, dict):
        records = decode_records(response)
        return _page_from_body(response, records, 'envelope')
    return None


PAGE_SHAPES: Tuple[Callable[[Any], Optional[PageBody]], ...] = (
    _wrapped_page,
    _page_body,
    _list_page,
    _envelope_page,
)


def decode_page(response: Any) -> PageBody:
    """
    Decode one network-log page into records, total count and summaries.

    Example:
        >>> page = decode_page({"data": [{"lat": 1, "lon": 2}], "total_count": 9})
        >>> page.shape, page.total_count, len(page.records)
        ('page_body', 9, 1)
    """
    for decoder in PAGE_SHAPES:
        page = decoder(response)
        if page is not None:
            return page
    return PageBody(records=[])
