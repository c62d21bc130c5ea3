"""
Market Data Types

Core types flowing through the candle generator: trade events coming off
the chain and the OHLCV candles built from them. These types are used for
NATS messaging and TimescaleDB persistence.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
import json

from dataflow.candle_aggregation.bucketing import EPOCH, to_utc
from dataflow.errors import MalformedNumericInput
from dataflow.numeric.fixed_point import parse_decimal, to_decimal


class AppliedOutcome(Enum):
    """Result of folding one trade into the aggregator"""
    APPLIED = "applied"
    REJECTED_DUPLICATE = "rejected_duplicate"
    REJECTED_STALE = "rejected_stale"


def _parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = to_utc(value)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ValueError(f"Timestamp must be non-negative, got {value}")
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        parsed = to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if parsed < EPOCH:
        raise ValueError(f"Timestamp before 1970-01-01: {value!r}")
    return parsed


def _numeric_field(data: dict, name: str) -> Decimal:
    """Read ``name`` as a decimal string, or ``name_raw`` as an 18-decimal integer"""
    if data.get(name) is not None:
        return parse_decimal(data[name], field=name)
    raw = data.get(f"{name}_raw")
    if raw is not None:
        return to_decimal(raw)
    raise MalformedNumericInput(
        f"Missing {name}",
        context={"pair": data.get("pair"), "sequence_id": data.get("sequence_id")},
    )


@dataclass(frozen=True)
class TradeEvent:
    """A single swap observed on-chain"""
    pair: str
    price: Decimal
    volume: Decimal
    occurred_at: datetime
    sequence_id: int

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "pair": self.pair,
            "price": str(self.price),
            "volume": str(self.volume),
            "occurred_at": self.occurred_at.isoformat(),
            "sequence_id": self.sequence_id,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "TradeEvent":
        """
        Create TradeEvent from dictionary.

        Raises:
            MalformedNumericInput: If price or volume is not a valid numeral
            ValueError: If pair, sequence_id or occurred_at is missing or invalid
        """
        try:
            price = _numeric_field(data, "price")
            volume = _numeric_field(data, "volume")
        except MalformedNumericInput as e:
            e.context.setdefault("pair", data.get("pair"))
            e.context.setdefault("sequence_id", data.get("sequence_id"))
            raise

        if not data.get("pair"):
            raise ValueError("Trade event is missing pair")
        sequence_id = data.get("sequence_id")
        if isinstance(sequence_id, bool) or not isinstance(sequence_id, int):
            try:
                sequence_id = int(str(sequence_id), 0)
            except ValueError:
                raise ValueError(f"Invalid sequence_id: {sequence_id!r}") from None

        return cls(
            pair=data["pair"],
            price=price,
            volume=volume,
            occurred_at=_parse_timestamp(data["occurred_at"]),
            sequence_id=sequence_id,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "TradeEvent":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass(frozen=True)
class Candle:
    """OHLCV candle for one pair, timeframe and bucket"""
    pair: str
    timeframe: str  # '1m', '5m', '15m', '1h', '4h', '1d'
    bucket_start: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    trade_count: int
    is_closed: bool = False
    last_sequence_id: Optional[int] = None  # Highest trade folded in

    def closed(self) -> "Candle":
        """Copy of this candle marked as closed"""
        return replace(self, is_closed=True)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "pair": self.pair,
            "timeframe": self.timeframe,
            "bucket_start": self.bucket_start.isoformat(),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "trade_count": self.trade_count,
            "is_closed": self.is_closed,
            "last_sequence_id": self.last_sequence_id,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        """Create Candle from dictionary"""
        return cls(
            pair=data["pair"],
            timeframe=data["timeframe"],
            bucket_start=_parse_timestamp(data["bucket_start"]),
            open=parse_decimal(data["open"], field="open"),
            high=parse_decimal(data["high"], field="high"),
            low=parse_decimal(data["low"], field="low"),
            close=parse_decimal(data["close"], field="close"),
            volume=parse_decimal(data.get("volume", "0"), field="volume"),
            trade_count=int(data.get("trade_count", 0)),
            is_closed=bool(data.get("is_closed", False)),
            last_sequence_id=data.get("last_sequence_id"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Candle":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))
