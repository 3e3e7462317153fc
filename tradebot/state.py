from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from tradebot.ledger import BalanceLedger
from tradebot.schemas import PerformanceCounters, Position

SNAPSHOT_VERSION = 1

_DATETIME_FIELDS = ("opened_at", "filled_at", "closed_at")
_POSITION_FIELDS = {f.name for f in fields(Position)}


def _dt_out(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v is not None else None


def _dt_in(v: Any) -> Optional[datetime]:
    if v is None:
        return None
    return datetime.fromisoformat(str(v))


def position_to_dict(p: Position) -> Dict[str, Any]:
    d = asdict(p)
    for name in _DATETIME_FIELDS:
        d[name] = _dt_out(d[name])
    return d


def _mapping(v: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(v, Mapping):
        raise TypeError(f"{what} must be an object, got {type(v).__name__}")
    return v


def _sequence(v: Any, what: str) -> List[Any]:
    if not isinstance(v, list):
        raise TypeError(f"{what} must be a list, got {type(v).__name__}")
    return v


def position_from_dict(d: Mapping[str, Any]) -> Position:
    d = _mapping(d, "position")
    data = {k: v for k, v in d.items() if k in _POSITION_FIELDS}
    for name in _DATETIME_FIELDS:
        data[name] = _dt_in(data.get(name))
    data["quantity"] = float(data["quantity"])
    data["entry_price"] = float(data["entry_price"])
    if data.get("side") not in ("BUY", "SELL"):
        raise ValueError(f"bad side: {data.get('side')!r}")
    if data.get("status") not in ("PENDING", "ACTIVE", "COMPLETED"):
        raise ValueError(f"bad status: {data.get('status')!r}")
    return Position(**data)


@dataclass
class TradingState:
    """
    Everything the lifecycle manager owns: open positions, bounded history, ledger and
    counters. Injected, never global.
    """

    balances: BalanceLedger
    open_positions: List[Position] = field(default_factory=list)
    history: List[Position] = field(default_factory=list)
    performance: PerformanceCounters = field(default_factory=PerformanceCounters)
    started_at: Optional[datetime] = None
    last_report_at: Optional[datetime] = None
    history_limit: int = 100

    @classmethod
    def initial(cls, balances: Mapping[str, float], history_limit: int = 100) -> "TradingState":
        return cls(balances=BalanceLedger(balances), history_limit=history_limit)

    def archive(self, position: Position) -> None:
        self.history.append(position)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]

    def to_document(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "open_positions": [position_to_dict(p) for p in self.open_positions],
            "history": [position_to_dict(p) for p in self.history[-self.history_limit :]],
            "balances": self.balances.as_dict(),
            "performance": asdict(self.performance),
            "started_at": _dt_out(self.started_at),
            "last_report_at": _dt_out(self.last_report_at),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], history_limit: int = 100) -> "TradingState":
        """Raises KeyError/TypeError/ValueError on a malformed document."""
        if not isinstance(doc, Mapping):
            raise TypeError(f"snapshot must be an object, got {type(doc).__name__}")

        open_positions = [position_from_dict(d) for d in _sequence(doc.get("open_positions", []), "open_positions")]
        history = [position_from_dict(d) for d in _sequence(doc.get("history", []), "history")]
        if any(p.status == "COMPLETED" for p in open_positions):
            raise ValueError("completed position found in the open set")
        if any(p.status != "COMPLETED" for p in history):
            raise ValueError("non-completed position found in history")

        perf = _mapping(doc.get("performance") or {}, "performance")
        performance = PerformanceCounters(
            total_trades=int(perf.get("total_trades", 0)),
            profitable_trades=int(perf.get("profitable_trades", 0)),
            total_profit_loss=float(perf.get("total_profit_loss", 0.0)),
        )
        performance.recompute_win_rate()

        balances = {str(k): float(v) for k, v in _mapping(doc.get("balances") or {}, "balances").items()}
        return cls(
            balances=BalanceLedger(balances),
            open_positions=open_positions,
            history=history[-history_limit:],
            performance=performance,
            started_at=_dt_in(doc.get("started_at")),
            last_report_at=_dt_in(doc.get("last_report_at")),
            history_limit=history_limit,
        )
