from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Literal, Optional


Decision = Literal["BUY", "SELL", "HOLD"]
Side = Literal["BUY", "SELL"]
PositionStatus = Literal["PENDING", "ACTIVE", "COMPLETED"]
VolumeDirection = Literal["increasing", "decreasing", "neutral"]
Contribution = Optional[Literal["bullish", "bearish"]]
EventKind = Literal[
    "opened",
    "entry_filled",
    "entry_cancelled",
    "exit_submitted",
    "exit_filled",
    "exit_deferred",
    "exit_failed",
]


@dataclass(frozen=True)
class TradingPair:
    symbol: str
    base_asset: str
    quote_asset: str


@dataclass(frozen=True)
class Candle:
    open_time: int  # ms since epoch
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class MACD:
    value: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0
    previous_histogram: float = 0.0


@dataclass(frozen=True)
class BollingerBands:
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0


@dataclass(frozen=True)
class Stochastic:
    k: float = 50.0
    d: float = 50.0


@dataclass(frozen=True)
class VolumeTrend:
    trend: VolumeDirection = "neutral"
    change_pct: float = 0.0


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: float
    sma: float
    ema_short: float
    ema_long: float
    macd: MACD
    bollinger: BollingerBands
    stochastic: Stochastic
    volume: VolumeTrend


@dataclass(frozen=True)
class Signal:
    symbol: str
    decision: Decision
    confidence: float
    current_price: float
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    indicators: Optional[IndicatorSnapshot] = None
    bullish_score: float = 0.0
    bearish_score: float = 0.0
    contributions: Dict[str, Contribution] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderAck:
    order_id: str
    status: str = "NEW"


@dataclass(frozen=True)
class Position:
    """
    A single order's lifecycle.

    PENDING: accepted by the exchange, fill not confirmed.
    ACTIVE: entry filled; BUY positions are watched for take-profit/stop-loss.
    COMPLETED: terminal (exit filled for BUY, fill confirmed for SELL, or entry cancelled).
    """

    id: str
    symbol: str
    base_asset: str
    quote_asset: str
    side: Side
    quantity: float
    entry_price: float
    status: PositionStatus
    opened_at: datetime
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    filled_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    exit_order_id: Optional[str] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    realized_pnl: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.entry_price

    @property
    def closing(self) -> bool:
        return self.exit_order_id is not None and self.status == "ACTIVE"


@dataclass
class PerformanceCounters:
    total_trades: int = 0
    profitable_trades: int = 0
    total_profit_loss: float = 0.0
    win_rate: float = 0.0

    def recompute_win_rate(self) -> float:
        if self.total_trades <= 0:
            self.win_rate = 0.0
        else:
            self.win_rate = self.profitable_trades / self.total_trades * 100.0
        return self.win_rate


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    position: Position
    price: float
    pnl: Optional[float] = None
    message: Optional[str] = None
