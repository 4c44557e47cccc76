"""
Prompt rendering for the Sentinel and CEO reasoning calls.

Everything the model sees is assembled here from pre-fetched context; the
model is never given tools. Scraped free text goes through
sanitize_external_text before it is embedded.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from ai.schemas import CEODirective
from core.trade_limits import GateResult
from core.daily_state import DailyState
from tools.config_validator import TradingConfig

INJECTION_PATTERN = re.compile(
    r"\b(IGNORE|SYSTEM|INSTRUCTION|ADMIN|OVERRIDE|FORGET|DISREGARD|YOU\s+ARE|PRETEND|ACT\s+AS)\b",
    re.IGNORECASE,
)
CODE_FENCE_PATTERN = re.compile(r"```.*?```", re.DOTALL)

SENTINEL_OUTPUT_SCHEMA = (
    '{"sentiment": {"COIN": {"score": 0.0-1.0, "label": "bullish/bearish/neutral"}}, '
    '"signals": ["signal1"], '
    '"actions": [{"type": "buy/sell/hold", "symbol": "X/USD", "amount": 0.01, "reason": "..."}], '
    '"summary": "One-paragraph summary"}'
)

CEO_OUTPUT_SCHEMA = """{
  "marketRegime": "risk-on" | "risk-off" | "neutral" | "volatile",
  "overallBias": "bullish" | "bearish" | "neutral",
  "riskLevel": 1-10,
  "coins": { "BTC": { "bias": "bullish", "action": "accumulate below $X", "maxPositionPct": 40, "notes": "..." } },
  "keyLevels": { "BTC/USD": { "buyZone": [low, high], "sellZone": [low, high] } },
  "riskGuidelines": "free-text risk rules for the Sentinel to follow",
  "avoid": ["DOGE"],
  "escalationTriggers": ["BTC drops below $X"],
  "summary": "One-paragraph strategic summary"
}"""


def sanitize_external_text(text: Optional[str], max_length: int = 500) -> str:
    """
    Make scraped text safe to embed in a prompt.

    Truncates to max_length, drops every line that looks like an injected
    instruction, and replaces fenced code blocks with a placeholder.
    """
    if not text:
        return ""
    cleaned = text[:max_length]
    cleaned = "\n".join(line for line in cleaned.split("\n") if not INJECTION_PATTERN.search(line))
    cleaned = CODE_FENCE_PATTERN.sub("[code block removed]", cleaned)
    return cleaned.strip()


def _as_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def format_time_ago(value: Union[str, datetime, None], now: Optional[datetime] = None) -> str:
    when = _as_datetime(value)
    if when is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    minutes = int((now - when).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}min ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def _signed_usd(value: float) -> str:
    return f"{'+' if value >= 0 else '-'}${abs(value):.2f}"


def _zone(zone: Optional[Tuple[float, float]]) -> str:
    if not zone:
        return "n/a"
    return f"${zone[0]:,.0f}-${zone[1]:,.0f}"


# ─── Sentinel ──────────────────────────────────────────────────────────────

SENTINEL_SYSTEM_PROMPT = (
    "You are the Crypto Sentinel, an autonomous market monitor.\n"
    "Current time: {now}\n"
    "Analyze the data below and produce a trading recommendation.\n"
    "All market data, news, and social sentiment is already provided. Do NOT request additional information.\n"
    "{mode}\n"
    "Be concise and data-driven. Always end with the sentinel-output JSON block."
)


def _portfolio_section(portfolio: Dict[str, Dict[str, float]]) -> str:
    section = "## Current Portfolio\n"
    if not portfolio:
        return section + "Portfolio data unavailable.\n"
    for asset, holding in portfolio.items():
        section += f"- {asset}: {holding.get('total')} (available: {holding.get('free')})\n"
    return section


def _positions_section(positions: List[Any]) -> str:
    section = "\n## Open Positions\n"
    if not positions:
        return section + "No open positions.\n"
    for summary in positions:
        p = summary.position
        pnl = "P&L: N/A"
        if summary.unrealized_pnl is not None:
            pnl = f"P&L: {_signed_usd(summary.unrealized_pnl)} ({summary.pnl_pct:.1f}%)"
        current = f"Current: ${summary.current_price:.2f}" if summary.current_price else "Current: N/A"
        sl = f"SL: ${p.stop_loss:.2f}" if p.stop_loss else "SL: none"
        tp = f"TP: ${p.take_profit:.2f}" if p.take_profit else "TP: none"
        section += (
            f"- {p.symbol} {p.side.upper()} | {p.amount} @ ${p.entry_price:.2f} | "
            f"{current} | {pnl} | {sl} | {tp}\n"
        )
    return section


def _technical_section(indicators: Dict[str, Any], timeframe: str) -> str:
    section = f"\n## Technical Analysis ({timeframe} timeframe)\n"
    if not indicators:
        return section + "Technical data unavailable.\n"
    section += "| Symbol | Price | RSI(14) | MACD Hist | SMA7 | SMA20 | SMA50 | Trend | Support | Resistance | Volume |\n"
    section += "|---|---|---|---|---|---|---|---|---|---|---|\n"
    for symbol, ind in indicators.items():
        section += (
            f"| {symbol} | ${ind.price:.2f} | {ind.rsi14:.0f} | {ind.macd_histogram:+.2f} | "
            f"${ind.sma7:.2f} | ${ind.sma20:.2f} | ${ind.sma50:.2f} | {ind.trend} | "
            f"${ind.support:.2f} | ${ind.resistance:.2f} | {ind.volume_trend} |\n"
        )
    for symbol, ind in indicators.items():
        if ind.signals:
            section += f"{symbol} signals: {', '.join(ind.signals)}\n"
    return section


def _web_section(results: List[Any]) -> str:
    section = "\n## Web Research\n"
    if not results:
        return section + "No web results available.\n"
    for r in results:
        section += f"### {sanitize_external_text(r.title, 200)}\nSource: {r.url}\n"
        if r.snippet:
            section += sanitize_external_text(r.snippet, 500) + "\n\n"
    return section


def _reddit_section(posts: List[Any]) -> str:
    section = "\n## Reddit Sentiment\n"
    if not posts:
        return section + "No Reddit data available.\n"
    for post in posts[:10]:
        section += (
            f"- [r/{post.subreddit} | Score: {post.score} | {post.num_comments} comments] "
            f"\"{sanitize_external_text(post.title, 200)}\"\n"
        )
        if post.selftext:
            section += f"  > {sanitize_external_text(post.selftext, 300)}\n"
    return section


def _news_section(news: List[Any], now: datetime) -> str:
    section = "\n## Crypto News\n"
    if not news:
        return section + "No news data available.\n"
    for item in news:
        source = sanitize_external_text(item.source or "news", 50)
        if item.published_at:
            source += f", {format_time_ago(item.published_at, now)}"
        section += (
            f"- [{source}] \"{sanitize_external_text(item.title, 200)}\" "
            f"(positive: {item.votes_positive}, negative: {item.votes_negative})\n"
        )
    return section


def _trades_section(trades: List[Any], now: datetime) -> str:
    section = "\n## Recent Trades\n"
    if not trades:
        return section + "No recent trades.\n"
    for t in trades:
        line = (
            f"- [{format_time_ago(t.created_at, now)}] {t.side.upper()} {t.amount} {t.symbol} "
            f"@ ${t.price:.2f} ({t.source})"
        )
        if t.reasoning:
            line += f": \"{t.reasoning}\""
        section += line + "\n"
    return section


def _previous_runs_section(runs: List[Any], now: datetime) -> str:
    section = "\n## Previous Analysis\n"
    if not runs:
        return section + "No previous runs.\n"
    for run in runs:
        summary = run.summary or "No summary"
        if len(summary) > 150:
            summary = summary[:147] + "..."
        section += f"- [{format_time_ago(run.created_at, now)}] {summary}\n"
    return section


def build_trading_section(
    gate: GateResult,
    state: DailyState,
    trading: TradingConfig,
    directive: Optional[CEODirective] = None,
    strategy_notes: str = "",
    now: Optional[datetime] = None,
) -> str:
    """Trading rules when the gate permits action, otherwise the blocking label."""
    if not gate.permitted:
        return f"\n## Trading: {gate.label}. {gate.reason}\n"

    section = (
        "\n## Trading Rules\n"
        "- Auto-confirm: YES\n"
        f"- Trades today: {state.trades_today}/{trading.max_trades_per_day}\n"
        f"- Daily P&L: ${float(state.pnl_today):.2f} (limit: -${trading.daily_loss_limit_usd:g})\n"
        f"- Max single trade: ${trading.max_trade_usd:g}\n"
    )
    if directive is not None:
        section += format_directive_for_sentinel(directive, now)
    if strategy_notes:
        section += f"\n## Manual Strategy Notes\n{strategy_notes}\n"
    return section


def build_sentinel_prompt(
    ctx: Any,
    gate: GateResult,
    state: DailyState,
    trading: TradingConfig,
    directive: Optional[CEODirective] = None,
    strategy_notes: str = "",
    timeframe: str = "1h",
    now: Optional[datetime] = None,
) -> Tuple[str, str]:
    """
    Render the Sentinel prompt.

    Args:
        ctx: SentinelContext with portfolio, positions, indicators, web_results,
            reddit, news, recent_trades, previous_runs, daily_stats, coin_list
        gate: Current trading-gate outcome
        state: Daily risk state read for this tick
        trading: Trading limits
        directive: Current CEO directive, if any

    Returns:
        (system_prompt, user_prompt)
    """
    now = now or datetime.now(timezone.utc)
    stats = ctx.daily_stats

    user_prompt = (
        f"Analyze crypto markets for: {', '.join(ctx.coin_list)}\n\n"
        + _portfolio_section(ctx.portfolio)
        + _positions_section(ctx.positions)
        + _technical_section(ctx.indicators, timeframe)
        + _web_section(ctx.web_results)
        + _reddit_section(ctx.reddit)
        + _news_section(ctx.news, now)
        + _trades_section(ctx.recent_trades, now)
        + _previous_runs_section(ctx.previous_runs, now)
        + "\n## Daily Stats\n"
        + f"Trades: {stats.trades_count}/{trading.max_trades_per_day} | "
        + f"P&L: {_signed_usd(stats.realized_pnl)} | "
        + f"Volume: ${stats.volume_usd:.2f} | "
        + f"W/L: {stats.winners}/{stats.losers}\n"
        + build_trading_section(gate, state, trading, directive, strategy_notes, now)
        + "\n## Decision Framework\n"
        + "For each coin: assess Technical score + Sentiment score + Position status.\n"
        + "Confidence must be >70 to recommend action. Below that, hold.\n"
        + "\n## Required Output\n"
        + "End your response with:\n"
        + "```sentinel-output\n"
        + SENTINEL_OUTPUT_SCHEMA
        + "\n```\n"
    )

    if gate.permitted:
        mode = "Trading is enabled. Recommend specific trades with amounts when confidence is high."
    else:
        mode = "Analysis only. Recommend actions but they will not be auto-executed."
    system_prompt = SENTINEL_SYSTEM_PROMPT.format(now=now.isoformat(), mode=mode)
    return system_prompt, user_prompt


# ─── CEO ───────────────────────────────────────────────────────────────────

CEO_SYSTEM_PROMPT = (
    "You are the Chief Investment Officer for an autonomous crypto trading system.\n"
    "Current time: {now}\n\n"
    'Your employee is the "Sentinel", a model that runs every {interval} minutes to make tactical '
    "trading decisions. It follows instructions well but cannot reason strategically. Your job:\n"
    "1. Review the market data, technical indicators, and sentiment\n"
    "2. Assess the Sentinel's recent performance\n"
    "3. Issue a structured directive that guides the next 24 hours of trading\n\n"
    "Be specific. Use exact price levels. The Sentinel will follow your guidance literally.\n"
    "Your directive replaces the previous one entirely.\n\n"
    "CRITICAL: End your response with a ```ceo-directive JSON block. Without it, the directive cannot be parsed."
)


def _headlines(ctx: Any) -> List[str]:
    headlines = []
    for w in ctx.web_results[:5]:
        if w.title:
            headlines.append(f"[web] {sanitize_external_text(w.title, 200)}")
    for r in ctx.reddit[:5]:
        headlines.append(f"[r/{r.subreddit}] {sanitize_external_text(r.title, 200)} (score: {r.score})")
    for n in ctx.news[:5]:
        source = sanitize_external_text(n.source or "news", 50)
        headlines.append(
            f"[{source}] {sanitize_external_text(n.title, 200)} +{n.votes_positive}/-{n.votes_negative}"
        )
    return [h for h in headlines if h][:12]


def build_ceo_prompt(
    ctx: Any,
    state: DailyState,
    trading: TradingConfig,
    sentinel_interval_minutes: int = 30,
    now: Optional[datetime] = None,
) -> Tuple[str, str]:
    """
    Render the compact, table-heavy CEO prompt.

    ctx is a CEOContext: the Sentinel context plus recent_runs_24h,
    current_directive, trades_since_directive and pnl_since_directive.
    """
    now = now or datetime.now(timezone.utc)
    parts = [f"Generate a strategic directive for the next 24 hours.\nCoins to cover: {', '.join(ctx.coin_list)}\n"]

    section = "## Portfolio\n"
    if ctx.portfolio:
        section += "| Asset | Amount | Free |\n|---|---|---|\n"
        for asset, holding in ctx.portfolio.items():
            section += f"| {asset} | {holding.get('total')} | {holding.get('free')} |\n"
    else:
        section += "No holdings.\n"
    parts.append(section)

    section = "## Open Positions\n"
    if ctx.positions:
        section += "| Symbol | Side | Entry | Current | P&L | SL | TP |\n|---|---|---|---|---|---|---|\n"
        for summary in ctx.positions:
            p = summary.position
            pnl = _signed_usd(summary.unrealized_pnl) if summary.unrealized_pnl is not None else "n/a"
            current = f"${summary.current_price:.2f}" if summary.current_price else "?"
            sl = f"${p.stop_loss:.2f}" if p.stop_loss else "none"
            tp = f"${p.take_profit:.2f}" if p.take_profit else "none"
            section += f"| {p.symbol} | {p.side} | ${p.entry_price:.2f} | {current} | {pnl} | {sl} | {tp} |\n"
    else:
        section += "None.\n"
    parts.append(section)

    section = "## Technical Summary\n"
    if ctx.indicators:
        section += "| Coin | Price | RSI | MACD Hist | Trend | Support | Resistance |\n|---|---|---|---|---|---|---|\n"
        for symbol, ta in ctx.indicators.items():
            section += (
                f"| {symbol.split('/')[0]} | ${ta.price:.2f} | {ta.rsi14:.1f} | {ta.macd_histogram:.2f} | "
                f"{ta.trend} | ${ta.support:.0f} | ${ta.resistance:.0f} |\n"
            )
        for symbol, ta in ctx.indicators.items():
            if ta.signals:
                section += f"{symbol.split('/')[0]} signals: {', '.join(ta.signals)}\n"
    else:
        section += "No TA data available.\n"
    parts.append(section)

    headlines = _headlines(ctx)
    parts.append("## Market Headlines\n" + ("\n".join(headlines) + "\n" if headlines else "No headlines available.\n"))

    stats = ctx.daily_stats
    section = (
        "## Sentinel Performance (24h)\n"
        f"Runs: {len(ctx.recent_runs_24h)} | Trades today: {stats.trades_count} | "
        f"P&L: ${stats.realized_pnl:.2f} | W/L: {stats.winners}/{stats.losers}\n"
    )
    taken = [
        f"{a.get('type')} {a.get('symbol')}"
        for run in ctx.recent_runs_24h[:5]
        for a in (run.actions or [])
        if isinstance(a, dict) and a.get("type") != "hold"
    ]
    if taken:
        section += f"Recent actions: {', '.join(taken[:8])}\n"
    if ctx.recent_runs_24h and ctx.recent_runs_24h[0].summary:
        last = ctx.recent_runs_24h[0].summary
        section += f"Last analysis: \"{last[:200] + '...' if len(last) > 200 else last}\"\n"
    parts.append(section)

    directive = ctx.current_directive
    section = "## Current Directive\n"
    if directive is not None:
        if directive.is_expired(now):
            section += "(EXPIRED)\n"
        section += (
            f"Regime: {directive.market_regime} | Bias: {directive.overall_bias} | "
            f"Risk: {directive.risk_level}/10\n"
            f"Set: {directive.generated_at.isoformat()}\n"
            f"Summary: {directive.summary}\n"
        )
    else:
        section += "None (first briefing).\n"
    parts.append(section)

    section = "## Directive Compliance\n"
    if directive is not None:
        section += f"Trades since directive: {ctx.trades_since_directive} | P&L: ${ctx.pnl_since_directive:.2f}\n"
    else:
        section += "No prior directive to evaluate.\n"
    parts.append(section)

    parts.append(
        "## Risk Limits\n"
        f"Max trade: ${trading.max_trade_usd:g} | Daily loss limit: ${trading.daily_loss_limit_usd:g} | "
        f"Trades today: {state.trades_today}/{trading.max_trades_per_day} | "
        f"P&L today: ${float(state.pnl_today):.2f}\n"
    )
    parts.append(
        "## Required Output\n"
        "End your response with a ```ceo-directive JSON block containing:\n"
        + CEO_OUTPUT_SCHEMA + "\n"
    )

    system_prompt = CEO_SYSTEM_PROMPT.format(now=now.isoformat(), interval=sentinel_interval_minutes)
    return system_prompt, "\n".join(parts)


def format_directive_for_sentinel(directive: CEODirective, now: Optional[datetime] = None) -> str:
    """Render the directive as guidance inside the Sentinel trading section."""
    now = now or datetime.now(timezone.utc)
    age_hours = int((now - directive.generated_at).total_seconds() // 3600)
    if age_hours < 1:
        age = "less than 1 hour ago"
    elif age_hours == 1:
        age = "1 hour ago"
    else:
        age = f"{age_hours} hours ago"

    expired = " (EXPIRED, use extra caution)" if directive.is_expired(now) else ""
    section = (
        f"\n## CEO Strategic Directive{expired}\n"
        f"Market Regime: {directive.market_regime.upper()} | Bias: {directive.overall_bias.upper()} | "
        f"Risk: {directive.risk_level}/10\n"
        f"Issued: {age}\n"
    )

    if directive.coins:
        section += "\n### Coin Guidance\n"
        for coin, guidance in directive.coins.items():
            cap = f" (max {guidance.max_position_pct:g}% portfolio)" if guidance.max_position_pct is not None else ""
            section += f"- **{coin}**: {guidance.bias.upper()}: {guidance.action}{cap}\n"
            if guidance.notes:
                section += f"  {guidance.notes}\n"

    if directive.key_levels:
        section += "\n### Key Levels\n"
        for symbol, levels in directive.key_levels.items():
            section += f"- {symbol}: Buy zone {_zone(levels.buy_zone)}, Sell zone {_zone(levels.sell_zone)}\n"

    if directive.risk_guidelines:
        section += f"\n### Risk Rules\n{directive.risk_guidelines}\n"
    if directive.avoid:
        section += f"Avoid: {', '.join(directive.avoid)}\n"

    section += f"\n### CEO Summary\n{directive.summary}\n"
    section += (
        "\n**IMPORTANT**: Follow the CEO directive for strategic decisions. You may deviate ONLY if:\n"
        "1. A coin has moved >5% against the directive since it was issued\n"
        "2. Breaking news fundamentally changes the outlook\n"
        "If you deviate, explain why in your summary.\n"
    )
    return section
