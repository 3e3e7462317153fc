from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Sequence, Tuple

from tradebot.config import TradingConfig
from tradebot.indicators import compute_snapshot
from tradebot.schemas import Candle, Contribution, Decision, IndicatorSnapshot, Signal
from tradebot.strategies.base import Strategy


Predicate = Callable[[IndicatorSnapshot, float], bool]


@dataclass(frozen=True)
class ScoreRule:
    name: str
    weight: float
    bullish: Predicate
    bearish: Predicate


def _macd_rising(s: IndicatorSnapshot, _price: float) -> bool:
    return s.macd.histogram > 0 and s.macd.histogram > s.macd.previous_histogram


def _macd_falling(s: IndicatorSnapshot, _price: float) -> bool:
    return s.macd.histogram < 0 and s.macd.histogram < s.macd.previous_histogram


DEFAULT_RULES: Tuple[ScoreRule, ...] = (
    ScoreRule("rsi", 2.0, lambda s, p: s.rsi < 30, lambda s, p: s.rsi > 70),
    ScoreRule("ema_cross", 3.0, lambda s, p: s.ema_short > s.ema_long, lambda s, p: s.ema_short < s.ema_long),
    ScoreRule("macd_momentum", 2.5, _macd_rising, _macd_falling),
    ScoreRule(
        "volume_trend",
        1.5,
        lambda s, p: s.volume.trend == "increasing" and p > s.sma,
        lambda s, p: s.volume.trend == "increasing" and p < s.sma,
    ),
    ScoreRule("bollinger", 2.0, lambda s, p: p < s.bollinger.lower, lambda s, p: p > s.bollinger.upper),
    ScoreRule(
        "stochastic",
        2.0,
        lambda s, p: s.stochastic.k < 20 and s.stochastic.k > s.stochastic.d,
        lambda s, p: s.stochastic.k > 80 and s.stochastic.k < s.stochastic.d,
    ),
)


@dataclass(frozen=True)
class Score:
    decision: Decision
    confidence: float
    bullish: float
    bearish: float
    total_weight: float
    contributions: Dict[str, Contribution] = field(default_factory=dict)


def score_snapshot(
    snapshot: IndicatorSnapshot,
    price: float,
    rules: Sequence[ScoreRule] = DEFAULT_RULES,
) -> Score:
    total = sum(r.weight for r in rules)
    bullish = 0.0
    bearish = 0.0
    contributions: Dict[str, Contribution] = {}

    for rule in rules:
        if rule.bullish(snapshot, price):
            bullish += rule.weight
            contributions[rule.name] = "bullish"
        elif rule.bearish(snapshot, price):
            bearish += rule.weight
            contributions[rule.name] = "bearish"
        else:
            contributions[rule.name] = None

    decision: Decision = "HOLD"
    confidence = 0.0
    if total > 0 and bullish > bearish:
        decision = "BUY"
        confidence = bullish / total * 100.0
    elif total > 0 and bearish > bullish:
        decision = "SELL"
        confidence = bearish / total * 100.0

    return Score(
        decision=decision,
        confidence=min(100.0, max(0.0, confidence)),
        bullish=bullish,
        bearish=bearish,
        total_weight=total,
        contributions=contributions,
    )


class WeightedScoreStrategy(Strategy):
    MIN_CANDLES = 30

    def __init__(self, cfg: TradingConfig, rules: Sequence[ScoreRule] = DEFAULT_RULES):
        self._cfg = cfg
        self._rules = tuple(rules)

    @property
    def total_weight(self) -> float:
        return sum(r.weight for r in self._rules)

    def exit_levels(self, price: float) -> Tuple[float, float]:
        take_profit = price * (1 + self._cfg.take_profit_pct / 100.0)
        stop_loss = price * (1 - self._cfg.stop_loss_pct / 100.0)
        return take_profit, stop_loss

    def evaluate(self, symbol: str, candles: Sequence[Candle]) -> Signal:
        if len(candles) < self.MIN_CANDLES:
            last = float(candles[-1].close) if candles else 0.0
            return Signal(symbol=symbol, decision="HOLD", confidence=0.0, current_price=last)

        snapshot = compute_snapshot(candles)
        price = float(candles[-1].close)
        score = score_snapshot(snapshot, price, self._rules)

        take_profit = stop_loss = None
        if score.decision == "BUY":
            take_profit, stop_loss = self.exit_levels(price)

        return Signal(
            symbol=symbol,
            decision=score.decision,
            confidence=score.confidence,
            current_price=price,
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            indicators=snapshot,
            bullish_score=score.bullish,
            bearish_score=score.bearish,
            contributions=score.contributions,
        )
