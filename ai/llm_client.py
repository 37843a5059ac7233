"""
Decision source clients.

A decision source turns a DecisionContext into one tagged decision. The LLM
client talks to OpenAI-compatible endpoints (OpenAI, OpenRouter) or
Anthropic; transport failures raise DecisionSourceError so the caller can
count them against the circuit breaker, while malformed output is reduced to
a Hold by the parser.
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from ai.decision_parser import parse_decision
from ai.schemas import Decision, DecisionContext, Hold
from core.exceptions import DecisionSourceError

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# ─── Data Structures ───────────────────────────────────────────────────────


@dataclass
class DecisionResponse:
    """One decision plus what is needed to audit how it was produced."""
    decision: Decision
    model: str
    raw_response: Optional[str] = None
    thinking: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    duration_ms: float = 0.0


class DecisionSource(ABC):
    model: str = "unknown"

    @abstractmethod
    def request_decision(self, context: DecisionContext) -> DecisionResponse:
        ...


# ─── Prompt ────────────────────────────────────────────────────────────────

SYSTEM_PROMPT = """You are a disciplined perpetual futures trader on Hyperliquid.
You manage ONE decision per cycle for the account described below.

Allowed decisions:
- OPEN_LONG / OPEN_SHORT: open a new leveraged position
- CLOSE: close an existing position
- HOLD: do nothing

Rules:
- Every open MUST include stop_loss and take_profit as absolute prices
- leverage between 1 and {max_leverage}
- size_usd is the notional (margin x leverage); alternatively give size_pct of account as margin
- Never open a symbol that already has a position

Respond ONLY with JSON:
{{
  "decision": "HOLD" | "OPEN_LONG" | "OPEN_SHORT" | "CLOSE",
  "symbol": "BTC",
  "confidence": 0.0 to 1.0,
  "leverage": 1 to {max_leverage},
  "size_usd": <notional USD>,
  "stop_loss": <price>,
  "take_profit": <price>,
  "reasoning": "<brief reason>"
}}"""


def build_prompt(context: DecisionContext) -> Dict[str, str]:
    """Build system and user messages for one decision request."""
    lines = [
        f"Account value: ${context.account_value:,.2f}",
        f"Available margin: ${context.available_margin:,.2f}",
        f"Tradable symbols: {', '.join(context.symbols) or '(none)'}",
        "",
        "PRICES:",
    ]
    for symbol in context.symbols:
        price = context.prices.get(symbol)
        if price is not None:
            lines.append(f"  {symbol}: ${price:,.4f}")

    lines += ["", "OPEN POSITIONS:"]
    if not context.positions:
        lines.append("  (none)")
    for p in context.positions:
        lines.append(
            f"  {p.get('symbol')} {p.get('side')} ${p.get('size_usd', 0):,.2f} x{p.get('leverage', 1):g} "
            f"entry {p.get('entry_price', 0):,.4f} PnL {p.get('unrealized_pnl_pct', 0):+.2f}% "
            f"SL {p.get('stop_loss')} TP {p.get('take_profit')}"
        )

    if context.performance:
        lines += ["", "PERFORMANCE:"]
        for key, value in context.performance.items():
            lines.append(f"  {key}: {value}")

    if context.market_data:
        summary = context.market_data.get("summary")
        lines += ["", "MARKET DATA:"]
        if summary:
            lines.append(str(summary))
        else:
            lines.append(json.dumps(context.market_data, default=str)[:4000])

    return {
        "system": SYSTEM_PROMPT.format(max_leverage=f"{context.max_leverage:g}"),
        "user": "\n".join(lines),
    }


# ─── LLM Client ────────────────────────────────────────────────────────────


class LlmDecisionSource(DecisionSource):
    """
    Decision source backed by a chat-completions style model.

    Responsibilities:
    - Build the prompt from the decision context
    - Call the provider SDK (lazy-imported)
    - Fall back to the `reasoning` field when content is empty
    - Hand the text to the fail-closed parser
    """

    def __init__(
        self,
        provider: Literal["openai", "openrouter", "anthropic"],
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_s: float = 60.0,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ):
        self.provider = provider
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature

        # Lazy-import provider SDKs
        if provider in ("openai", "openrouter"):
            import openai
            if provider == "openrouter":
                base_url = base_url or OPENROUTER_BASE_URL
            self.client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)
        elif provider == "anthropic":
            import anthropic
            self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout_s)
        else:
            raise ValueError(f"Unknown provider: {provider}")

    def request_decision(self, context: DecisionContext) -> DecisionResponse:
        prompt = build_prompt(context)
        started = time.monotonic()
        try:
            if self.provider == "anthropic":
                content = self._call_anthropic(prompt)
            else:
                content = self._call_openai(prompt)
        except Exception as e:
            raise DecisionSourceError(f"{self.provider} request failed: {e}") from e
        duration_ms = (time.monotonic() - started) * 1000

        parsed = parse_decision(content, account_value=context.account_value, allowed_symbols=context.symbols)
        for warning in parsed.warnings:
            logger.warning(f"[{context.account_id}] parser: {warning}")
        logger.info(
            f"[{context.account_id}] {self.model} -> {parsed.decision.action} "
            f"in {duration_ms:.0f}ms ({len(content or '')} chars)"
        )
        return DecisionResponse(
            decision=parsed.decision,
            model=self.model,
            raw_response=content,
            thinking=parsed.thinking,
            warnings=parsed.warnings,
            duration_ms=duration_ms,
        )

    def _call_openai(self, prompt: Dict[str, str]) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": prompt["system"]},
                {"role": "user", "content": prompt["user"]},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        message = response.choices[0].message
        content = message.content or ""
        if not content:
            # Reasoning models may put the answer in a separate field
            reasoning = getattr(message, "reasoning", None)
            if reasoning:
                logger.info(f"Empty content, using reasoning field ({len(reasoning)} chars)")
                content = reasoning
        return content

    def _call_anthropic(self, prompt: Dict[str, str]) -> str:
        response = self.client.messages.create(
            model=self.model,
            system=prompt["system"],
            messages=[{"role": "user", "content": prompt["user"]}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return "".join(getattr(block, "text", "") for block in response.content)


# ─── Scripted Source for Testing / Dry Runs ────────────────────────────────

ScriptStep = Union[Decision, Exception]


class ScriptedDecisionSource(DecisionSource):
    """Returns pre-configured decisions in order, then Hold. Exceptions in the script are raised."""

    def __init__(self, script: Optional[Sequence[ScriptStep]] = None, model: str = "scripted"):
        self.script = list(script or [])
        self.model = model
        self.call_count = 0
        self.contexts: List[DecisionContext] = []

    def request_decision(self, context: DecisionContext) -> DecisionResponse:
        self.call_count += 1
        self.contexts.append(context)
        step = self.script.pop(0) if self.script else Hold(reasoning="script exhausted")
        if isinstance(step, Exception):
            raise DecisionSourceError(str(step)) from step
        return DecisionResponse(decision=step, model=self.model, raw_response=json.dumps(step.to_dict()))


# ─── Factory ───────────────────────────────────────────────────────────────


def create_decision_source(config: Optional[Dict[str, Any]]) -> DecisionSource:
    """
    Build a decision source from the `decision_source` section of app.yaml.

    provider "scripted" yields an always-Hold source (dry runs).
    """
    config = config or {}
    provider = config.get("provider", "openai")
    if provider == "scripted":
        return ScriptedDecisionSource(model=config.get("model", "scripted"))

    api_key_env = config.get("api_key_env", "OPENAI_API_KEY")
    api_key = os.getenv(api_key_env, "")
    if not api_key:
        raise ValueError(f"Decision source API key not set (env {api_key_env})")

    return LlmDecisionSource(
        provider=provider,
        model=config.get("model", "gpt-4o-mini"),
        api_key=api_key,
        base_url=config.get("base_url"),
        timeout_s=float(config.get("timeout_seconds", 60.0)),
        max_tokens=int(config.get("max_tokens", 2000)),
        temperature=float(config.get("temperature", 0.3)),
    )
