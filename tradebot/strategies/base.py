from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from tradebot.schemas import Candle, Signal


class Strategy(ABC):
    @abstractmethod
    def evaluate(self, symbol: str, candles: Sequence[Candle]) -> Signal:
        """
        Returns a Signal for the latest candle.
        Must be deterministic: the same candles always give the same Signal.
        """
        raise NotImplementedError
