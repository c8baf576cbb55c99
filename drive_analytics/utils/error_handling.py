"""
Error handling utilities.

Decorators and helpers shared by the pipeline stages: DataFrame column
checks, safe arithmetic, and mapping of exceptions to the single
user-facing message a calling UI shows.
"""
import asyncio
import inspect
import math
from functools import wraps
from typing import List, Callable, Optional

import pandas as pd

from drive_analytics.utils.logging_config import get_logger
from drive_analytics.utils.exceptions import (
    AuthenticationError,
    DataValidationError,
    FetchError,
    NeighborResolutionError,
    NetworkError,
    OperationCancelled,
    RemoteApiError,
    RemoteTimeoutError,
)

logger = get_logger(__name__)


def require_columns(required_cols: List[str], df_param: str = "df"):
    """
    Decorator to validate required columns exist in DataFrame.

    Parameters
    ----------
    required_cols : List[str]
        List of required column names
    df_param : str
        Name of the DataFrame parameter to check

    Raises
    ------
    DataValidationError
        If the parameter is missing, not a DataFrame, or lacks columns
    """
    def decorator(func: Callable) -> Callable:
        sig = inspect.signature(func)
        param_names = list(sig.parameters.keys())

        @wraps(func)
        def wrapper(*args, **kwargs):
            df = kwargs.get(df_param)
            if df is None and df_param in param_names:
                param_idx = param_names.index(df_param)
                if param_idx < len(args):
                    df = args[param_idx]

            if df is None:
                raise DataValidationError(f"DataFrame parameter '{df_param}' not found")

            if not isinstance(df, pd.DataFrame):
                raise DataValidationError(
                    f"Parameter '{df_param}' must be a pandas DataFrame, got {type(df)}"
                )

            missing_cols = set(required_cols) - set(df.columns)
            if missing_cols:
                raise DataValidationError(
                    f"Missing required columns in {df_param}: {sorted(missing_cols)}. "
                    f"Available columns: {sorted(df.columns.tolist())}"
                )

            return func(*args, **kwargs)
        return wrapper
    return decorator


def safe_division(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Divide two numbers, returning ``default`` on zero, NaN or overflow.

    Parameters
    ----------
    numerator : float
    denominator : float
    default : float
        Value to return when the division is not meaningful

    Returns
    -------
    float
    """
    if numerator is None or denominator is None:
        return default
    if denominator == 0 or math.isnan(denominator) or math.isnan(numerator):
        return default

    result = numerator / denominator
    if not math.isfinite(result):
        return default
    return result


def is_cancellation(error: Optional[BaseException]) -> bool:
    """True if ``error`` only signals that an operation was superseded."""
    return isinstance(error, (OperationCancelled, asyncio.CancelledError))


def user_message(error: BaseException) -> Optional[str]:
    """
    Map an exception to the one-line notification shown to the user.

    Cancellation maps to ``None`` (nothing is shown). Timeouts get their own
    wording so long-running operations are not reported as a dead network.

    Examples
    --------
    >>> user_message(RemoteTimeoutError("GetNetworkLog", endpoint="/api/MapView/GetNetworkLog"))
    'The server took too long to respond. Try a smaller selection or retry later.'
    """
    if is_cancellation(error):
        return None
    if isinstance(error, RemoteTimeoutError):
        return "The server took too long to respond. Try a smaller selection or retry later."
    if isinstance(error, AuthenticationError):
        return "Session expired. Please login again."
    if isinstance(error, NetworkError):
        return "No response from server. Please check your connection."
    if isinstance(error, FetchError):
        return f"Could not load logs: {error}. Retry to try again."
    if isinstance(error, NeighborResolutionError):
        return f"Failed: {error}"
    if isinstance(error, RemoteApiError):
        return f"Error: {error}"
    return f"Error: {error}"
