"""
Candle Service Errors

Coded exception hierarchy shared by the ingestion, aggregation and
persistence layers. Every error carries a context dict (pair, timeframe,
bucket, sequence id where known) so failures can be diagnosed and
backfilled from the logs alone.
"""

from enum import Enum
from typing import Any, Dict, Optional


class CandleErrorCode(Enum):
    """Error classification codes"""
    MALFORMED_NUMERIC_INPUT = "malformed_numeric_input"
    TRANSIENT_FETCH = "transient_fetch"
    TRANSIENT_WRITE = "transient_write"
    RETRIES_EXHAUSTED = "retries_exhausted"
    RETRY_CANCELLED = "retry_cancelled"
    PERSISTENCE_FAILED = "persistence_failed"
    OUT_OF_ORDER_TIMESTAMP = "out_of_order_timestamp"
    INVALID_CONFIG = "invalid_config"


class CandleServiceError(Exception):
    """
    Base exception with error code and retryable flag.

    Attributes:
        message: Human-readable error description
        code: Structured error code for programmatic handling
        retryable: Whether a ResilientCaller should retry the operation
        context: Identifying details (pair, timeframe, bucket_start, sequence_id)
    """

    def __init__(
        self,
        message: str,
        code: CandleErrorCode,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.context = dict(context or {})


class MalformedNumericInput(CandleServiceError, ValueError):
    """A price, volume or fixed-point value is not a valid decimal numeral"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, CandleErrorCode.MALFORMED_NUMERIC_INPUT, context=context)


class TransientError(CandleServiceError):
    """Network, RPC or database hiccup that is worth retrying"""

    def __init__(
        self,
        message: str,
        code: CandleErrorCode,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, retryable=True, context=context)


class TransientFetchError(TransientError):
    """EventSource could not fetch trades"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, CandleErrorCode.TRANSIENT_FETCH, context=context)


class TransientWriteError(TransientError):
    """CandleStore could not persist or load a candle"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, CandleErrorCode.TRANSIENT_WRITE, context=context)


class RetriesExhausted(CandleServiceError):
    """
    Raised by ResilientCaller once every attempt has failed.

    The last failure is available as ``last_error`` and as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, CandleErrorCode.RETRIES_EXHAUSTED, context=context)
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelled(CandleServiceError):
    """A stop request interrupted a retry backoff"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, CandleErrorCode.RETRY_CANCELLED, context=context)


class CandlePersistenceError(CandleServiceError):
    """
    One or more closed candles could not be stored.

    The trade that triggered the flush is still applied and the candles
    are already evicted from memory; ``failures`` lists them for backfill.
    """

    def __init__(self, failures: list):
        keys = ", ".join(
            f"{c.pair}/{c.timeframe}@{c.bucket_start.isoformat()}" for c in failures
        )
        super().__init__(
            f"Failed to persist {len(failures)} closed candle(s): {keys}",
            CandleErrorCode.PERSISTENCE_FAILED,
            context={"candles": keys},
        )
        self.failures = list(failures)


class OutOfOrderTimestamp(CandleServiceError):
    """A trade maps to a bucket that has already been rolled over. Fatal."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, CandleErrorCode.OUT_OF_ORDER_TIMESTAMP, context=context)


class ConfigError(CandleServiceError, ValueError):
    """Service configuration is missing or invalid"""

    def __init__(self, message: str):
        super().__init__(message, CandleErrorCode.INVALID_CONFIG)
