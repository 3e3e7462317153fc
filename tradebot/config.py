from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from tradebot.errors import ConfigError
from tradebot.schemas import TradingPair


class BinanceExchangeConfig(BaseModel):
    base_url: str = "https://api.binance.com"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    # Freshness window the exchange applies to signed requests (ms).
    recv_window: int = 5000
    # Optional proxy (e.g. "http://127.0.0.1:7890")
    proxy: Optional[str] = None


class SimulatedExchangeConfig(BaseModel):
    """
    Offline random-walk exchange. Orders fill on the first status query.
    """

    start_price: float = 100.0
    drift: float = 0.0
    volatility: float = 0.01
    seed: Optional[int] = None
    start_prices: Dict[str, float] = Field(default_factory=dict)


class ExchangeConfig(BaseModel):
    type: Literal["simulated", "binance"] = "simulated"
    binance: BinanceExchangeConfig = Field(default_factory=BinanceExchangeConfig)
    simulated: SimulatedExchangeConfig = Field(default_factory=SimulatedExchangeConfig)


class TradingConfig(BaseModel):
    trading_amount: float = Field(default=0.1, gt=0)
    # Asset `trading_amount` is denominated in; converted to base quantity per pair.
    amount_asset: str = "BNB"
    take_profit_pct: float = Field(default=2.5, gt=0)
    stop_loss_pct: float = Field(default=1.5, gt=0, lt=100)
    confidence_threshold: float = Field(default=75.0, ge=0, le=100)
    candle_interval: str = "1h"
    candle_limit: int = Field(default=100, ge=30, le=1000)


def _default_min_intervals() -> Dict[str, float]:
    return {
        "default": 0.5,
        "/api/v3/order": 1.0,
        "/api/v3/account": 1.0,
        "/api/v3/klines": 0.3,
    }


class RequestsConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    jitter_seconds: float = Field(default=0.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    min_interval_seconds: Dict[str, float] = Field(default_factory=_default_min_intervals)

    @field_validator("min_interval_seconds")
    @classmethod
    def _ensure_default(cls, v: Dict[str, float]) -> Dict[str, float]:
        merged = _default_min_intervals()
        merged.update(v)
        return merged


class TelegramConfig(BaseModel):
    enabled: bool = False
    base_url: str = "https://api.telegram.org"
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None


class NotifierConfig(BaseModel):
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: Optional[str] = None


class PairConfig(BaseModel):
    symbol: str
    base_asset: str
    quote_asset: str

    def to_pair(self) -> TradingPair:
        return TradingPair(symbol=self.symbol, base_asset=self.base_asset, quote_asset=self.quote_asset)


def _default_pairs() -> List[PairConfig]:
    return [
        PairConfig(symbol="BNBUSDT", base_asset="BNB", quote_asset="USDT"),
        PairConfig(symbol="BTCBNB", base_asset="BTC", quote_asset="BNB"),
        PairConfig(symbol="ETHBNB", base_asset="ETH", quote_asset="BNB"),
        PairConfig(symbol="ADABNB", base_asset="ADA", quote_asset="BNB"),
        PairConfig(symbol="DOGEBNB", base_asset="DOGE", quote_asset="BNB"),
    ]


class AppConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, gt=0)
    trading_pairs: List[PairConfig] = Field(default_factory=_default_pairs)
    state_path: str = "trading_status.json"
    history_limit: int = Field(default=100, ge=1)
    report_interval_hours: float = Field(default=6.0, gt=0)
    report_currency: str = "USDT"
    notify_signals: bool = True
    sync_balances_on_start: bool = False

    @field_validator("trading_pairs")
    @classmethod
    def _non_empty(cls, v: List[PairConfig]) -> List[PairConfig]:
        if not v:
            raise ValueError("at least one trading pair is required")
        symbols = [p.symbol for p in v]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"duplicate trading pairs: {symbols}")
        return v


class Config(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    requests: RequestsConfig = Field(default_factory=RequestsConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    initial_balance: Dict[str, float] = Field(default_factory=lambda: {"BNB": 1.0, "USDT": 1000.0})

    @field_validator("initial_balance")
    @classmethod
    def _non_negative(cls, v: Dict[str, float]) -> Dict[str, float]:
        negative = [k for k, amount in v.items() if amount < 0]
        if negative:
            raise ValueError(f"initial balance cannot be negative: {negative}")
        return v

    def pairs(self) -> List[TradingPair]:
        return [p.to_pair() for p in self.app.trading_pairs]


# env var -> (section path, field)
_ENV_OVERRIDES = {
    "BINANCE_API_KEY": (("exchange", "binance"), "api_key"),
    "BINANCE_SECRET_KEY": (("exchange", "binance"), "api_secret"),
    "TELEGRAM_BOT_TOKEN": (("notifier", "telegram"), "bot_token"),
    "TELEGRAM_CHAT_ID": (("notifier", "telegram"), "chat_id"),
}


def apply_env_overrides(cfg: Config, env: Optional[Mapping[str, str]] = None) -> Config:
    env = os.environ if env is None else env
    for var, (path, attr) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        section: object = cfg
        for name in path:
            section = getattr(section, name)
        setattr(section, attr, value)
    return cfg


def validate_for_startup(cfg: Config) -> None:
    """
    Credentials are never defaulted: missing ones abort startup.
    """
    missing: list[str] = []
    if cfg.exchange.type == "binance":
        if not cfg.exchange.binance.api_key:
            missing.append("BINANCE_API_KEY")
        if not cfg.exchange.binance.api_secret:
            missing.append("BINANCE_SECRET_KEY")
    if cfg.notifier.telegram.enabled:
        if not cfg.notifier.telegram.bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not cfg.notifier.telegram.chat_id:
            missing.append("TELEGRAM_CHAT_ID")
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


def load_config(config_path: str | Path, env: Optional[Mapping[str, str]] = None) -> Config:
    p = Path(config_path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {p}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e
    try:
        cfg = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {p}:\n{e}") from e
    return apply_env_overrides(cfg, env)
