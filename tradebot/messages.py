from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Mapping, Optional

from tradebot.config import Config
from tradebot.schemas import LifecycleEvent, PerformanceCounters, Position, Signal, TradingPair


_DECISION_BADGE = {"BUY": "🟢 BUY", "SELL": "🔴 SELL", "HOLD": "⚪ HOLD"}


def _performance_lines(perf: PerformanceCounters) -> str:
    return (
        f"Total Trades: {perf.total_trades}\n"
        f"Win Rate: {perf.win_rate:.2f}%\n"
        f"Total P/L: {perf.total_profit_loss:.8f}"
    )


def signal_message(signal: Signal, tp_pct: float, sl_pct: float) -> str:
    lines = [
        f"🔮 <b>{escape(signal.symbol)} Prediction Update</b>",
        f"Current Price: {signal.current_price}",
        f"Signal: {_DECISION_BADGE[signal.decision]}",
        f"Confidence: {signal.confidence:.2f}%",
    ]
    ind = signal.indicators
    if ind is not None:
        lines += [
            "",
            "<b>Indicators:</b>",
            f"RSI: {ind.rsi:.2f}",
            f"SMA: {ind.sma:.8g}",
            f"EMA: 9-period {ind.ema_short:.8g}, 21-period {ind.ema_long:.8g}",
            f"MACD: {ind.macd.value:.6g} / signal {ind.macd.signal:.6g} (hist {ind.macd.histogram:.4g})",
            f"Volume: {ind.volume.trend} ({ind.volume.change_pct:+.2f}%)",
            f"Bollinger: {ind.bollinger.lower:.8g} / {ind.bollinger.middle:.8g} / {ind.bollinger.upper:.8g}",
            f"Stochastic: %K {ind.stochastic.k:.2f}, %D {ind.stochastic.d:.2f}",
        ]
    if signal.decision == "BUY" and signal.take_profit_price is not None and signal.stop_loss_price is not None:
        lines += [
            "",
            "<b>Entry Plan:</b>",
            f"Take Profit: {signal.take_profit_price:.8g} (+{tp_pct}%)",
            f"Stop Loss: {signal.stop_loss_price:.8g} (-{sl_pct}%)",
        ]
    return "\n".join(lines)


def order_message(position: Position) -> str:
    badge = "🟢" if position.side == "BUY" else "🔴"
    lines = [
        f"{badge} <b>{position.side} Order Placed</b>",
        f"Symbol: {escape(position.symbol)}",
        f"Amount: {position.quantity:.6f} {escape(position.base_asset)}",
        f"Price: {position.entry_price}",
        f"Total: {position.notional:.8g} {escape(position.quote_asset)}",
    ]
    if position.take_profit_price is not None and position.stop_loss_price is not None:
        lines += [
            "",
            f"Take Profit: {position.take_profit_price:.8g}",
            f"Stop Loss: {position.stop_loss_price:.8g}",
        ]
    lines += ["", f"Order ID: {escape(position.id)}"]
    return "\n".join(lines)


def lifecycle_message(event: LifecycleEvent, perf: PerformanceCounters) -> Optional[str]:
    p = event.position
    if event.kind == "entry_filled":
        return (
            "🔄 <b>Order Completed</b>\n"
            f"Symbol: {escape(p.symbol)}\n"
            f"Side: {p.side}\n"
            f"Quantity: {p.quantity}\n"
            f"Price: {p.entry_price}\n"
            f"Total: {p.notional:.8g} {escape(p.quote_asset)}"
        )
    if event.kind == "entry_cancelled":
        return f"⚠️ <b>Order Not Filled</b>\n{escape(p.symbol)} {p.side} order {escape(p.id)}: {escape(event.message or '')}"
    if event.kind == "exit_submitted":
        title = "💰 <b>Take Profit Triggered</b>" if event.message == "take_profit" else "🛑 <b>Stop Loss Triggered</b>"
        return (
            f"{title}\n"
            f"Symbol: {escape(p.symbol)}\n"
            f"Quantity: {p.quantity}\n"
            f"Entry Price: {p.entry_price}\n"
            f"Exit Price: {event.price}\n"
            f"Exit Order ID: {escape(p.exit_order_id or '')}"
        )
    if event.kind == "exit_filled":
        pnl = event.pnl or 0.0
        pct = (event.price - p.entry_price) / p.entry_price * 100.0 if p.entry_price else 0.0
        title = "💰 <b>Take Profit Executed</b>" if event.message == "take_profit" else "🛑 <b>Stop Loss Executed</b>"
        return (
            f"{title}\n"
            f"Symbol: {escape(p.symbol)}\n"
            f"Quantity: {p.quantity}\n"
            f"Entry Price: {p.entry_price}\n"
            f"Exit Price: {event.price}\n"
            f"Profit: {pnl:.8g} {escape(p.quote_asset)} ({pct:.2f}%)\n"
            "\n<b>Performance Summary:</b>\n"
            f"{_performance_lines(perf)}"
        )
    if event.kind == "exit_deferred":
        return f"⚠️ <b>Insufficient Balance</b>\nExit for {escape(p.symbol)} deferred: {escape(event.message or '')}"
    if event.kind == "exit_failed":
        return f"❌ <b>Exit Order Failed</b>\n{escape(p.symbol)}: {escape(event.message or '')}"
    return None


def report_message(
    per_asset: Mapping[str, float],
    amounts: Mapping[str, float],
    total: float,
    currency: str,
    perf: PerformanceCounters,
    open_count: int,
    completed_count: int,
    started_at: Optional[datetime],
) -> str:
    balance_lines = [f"{escape(a)}: {amounts[a]:.6f} (≈{per_asset.get(a, 0.0):.2f} {currency})" for a in sorted(amounts)]
    since = started_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip() if started_at else "unknown"
    return (
        "📊 <b>Performance Report</b>\n"
        "\n<b>Current Balance:</b>\n"
        + "\n".join(balance_lines)
        + f"\nTotal Value: {total:.2f} {currency}\n"
        "\n<b>Trading Performance:</b>\n"
        f"Total Trades: {perf.total_trades}\n"
        f"Profitable Trades: {perf.profitable_trades}\n"
        f"Win Rate: {perf.win_rate:.2f}%\n"
        f"Total Profit/Loss: {perf.total_profit_loss:.8f}\n"
        f"\n<b>Active Orders:</b> {open_count}\n"
        f"<b>Completed Orders:</b> {completed_count}\n"
        f"\n<b>Bot Status:</b> Running since {since}"
    )


def startup_message(cfg: Config, pairs: Iterable[TradingPair], balances: Mapping[str, float]) -> str:
    t = cfg.trading
    minutes = cfg.app.interval_seconds / 60.0
    return (
        "🤖 <b>Trading Bot Started</b>\n"
        "\n<b>Trading Settings:</b>\n"
        f"Trading Amount: {t.trading_amount} {escape(t.amount_asset)}\n"
        f"Take Profit: {t.take_profit_pct}%\n"
        f"Stop Loss: {t.stop_loss_pct}%\n"
        f"Confidence Threshold: {t.confidence_threshold}%\n"
        f"Check Interval: {minutes:g} minutes\n"
        f"Exchange: {cfg.exchange.type}\n"
        "\n<b>Trading Pairs:</b>\n"
        + ", ".join(escape(p.symbol) for p in pairs)
        + "\n\n<b>Balance:</b>\n"
        + ", ".join(f"{escape(a)}: {v}" for a, v in sorted(balances.items()))
    )


def shutdown_message(reason: str) -> str:
    return f"🛑 <b>Bot shutting down</b>\nReason: {escape(reason)}"


def insufficient_balance_message(symbol: str, side: str, detail: str) -> str:
    return f"⚠️ <b>Insufficient Balance</b>\nCannot {side.lower()} {escape(symbol)}: {escape(detail)}"


def error_message(where: str, error: BaseException) -> str:
    return f"❌ <b>Error in Trading Bot</b>\n{escape(where)}: {escape(f'{type(error).__name__}: {error}')}"
