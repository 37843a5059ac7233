"""
Decision parser.

Turns raw model text into exactly one tagged decision. The parser never
raises: anything it cannot make sense of becomes a Hold, and every correction
it applies along the way is reported as a warning string.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from ai.schemas import Close, Decision, Hold, OpenLong, OpenShort

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)
_FENCE_START_RE = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_END_RE = re.compile(r"\n?```\s*$")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")
_SYMBOL_SUFFIX_RE = re.compile(r"[-/](USD|USDC|USDT|PERP)$", re.IGNORECASE)


class RawDecision(BaseModel):
    """Wire shape of a model response."""
    decision: Literal["OPEN_LONG", "OPEN_SHORT", "CLOSE", "HOLD"]
    symbol: Optional[str] = None
    confidence: float = Field(default=0.5)
    leverage: Optional[float] = Field(default=None, gt=0)
    size_usd: Optional[float] = Field(default=None, ge=0)
    size_pct: Optional[float] = Field(default=None, ge=0, le=100)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reasoning: str = ""

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, v: Any) -> str:
        return "" if v is None else str(v)


@dataclass
class ParsedDecision:
    decision: Decision
    thinking: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    payload: Optional[Dict[str, Any]] = None

    @property
    def fell_back(self) -> bool:
        return isinstance(self.decision, Hold) and self.payload is None


def _split_thinking(text: str) -> Tuple[Optional[str], str]:
    match = _THINK_RE.search(text)
    if not match:
        return None, text
    return match.group(1).strip(), _THINK_RE.sub("", text).strip()


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_END_RE.sub("", _FENCE_START_RE.sub("", cleaned)).strip()
    return cleaned


def _load_json(text: str, warnings: List[str]) -> Optional[Any]:
    candidate = text
    if not candidate.startswith("{") and not candidate.startswith("["):
        match = _OBJECT_RE.search(candidate)
        if not match:
            return None
        candidate = match.group(0)
        warnings.append("JSON_EXTRACTION_FALLBACK: extracted JSON object from surrounding text")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    repaired = _TRAILING_COMMA_RE.sub(r"\1", candidate.replace("'", '"'))
    try:
        data = json.loads(repaired)
    except json.JSONDecodeError:
        return None
    warnings.append("JSON_REPAIRED: fixed quotes or trailing commas")
    return data


def _hold(reason: str, thinking: Optional[str], warnings: List[str]) -> ParsedDecision:
    logger.warning(f"Decision parse fell back to HOLD: {reason}")
    return ParsedDecision(Hold(reasoning=reason, confidence=0.0), thinking, warnings)


def _normalize_symbol(symbol: Optional[str], warnings: List[str]) -> Optional[str]:
    if not symbol:
        return None
    cleaned = _SYMBOL_SUFFIX_RE.sub("", symbol.strip().upper())
    if cleaned != symbol:
        warnings.append(f"SYMBOL_CORRECTED: {symbol} -> {cleaned}")
    return cleaned


def parse_decision(
    text: Optional[str],
    account_value: Optional[float] = None,
    allowed_symbols: Optional[Iterable[str]] = None,
) -> ParsedDecision:
    """
    Parse model output into Hold / OpenLong / OpenShort / Close.

    Handles <think> blocks, markdown fences, prose around the JSON object,
    single quotes and trailing commas, a list of decisions (first one wins),
    and the legacy "action" key. An open with only size_pct is converted to a
    notional using account_value as margin base.
    """
    warnings: List[str] = []
    if not text or not text.strip():
        return _hold("Empty AI response", None, warnings)

    thinking, content = _split_thinking(text)
    data = _load_json(_strip_fences(content), warnings)
    if data is None:
        return _hold("No parseable JSON in AI response", thinking, warnings)

    if isinstance(data, list):
        if not data:
            return _hold("Empty decision list", thinking, warnings)
        if len(data) > 1:
            warnings.append(f"MULTIPLE_DECISIONS_DROPPED: kept first of {len(data)}")
        data = data[0]
    if not isinstance(data, dict):
        return _hold("AI response is not a JSON object", thinking, warnings)

    payload = dict(data)
    if "decision" not in payload and "action" in payload:
        payload["decision"] = payload.pop("action")
        warnings.append("LEGACY_FORMAT_RECOVERED: used 'action' as 'decision'")

    leverage = payload.get("leverage")
    if isinstance(leverage, (int, float)) and leverage < 1:
        warnings.append(f"LEVERAGE_CORRECTED: {leverage} -> 1")
        payload["leverage"] = 1

    try:
        raw = RawDecision.model_validate(payload)
    except ValidationError as e:
        return _hold(f"Invalid decision payload: {e.errors()[0].get('msg', e)}", thinking, warnings)

    confidence = raw.confidence
    if not 0.0 <= confidence <= 1.0:
        confidence = min(1.0, max(0.0, confidence))
        warnings.append(f"CONFIDENCE_CLAMPED: {raw.confidence} -> {confidence}")

    if raw.decision == "HOLD":
        return ParsedDecision(Hold(reasoning=raw.reasoning, confidence=confidence), thinking, warnings, payload)

    symbol = _normalize_symbol(raw.symbol, warnings)
    if symbol is None:
        return _hold(f"{raw.decision} without symbol", thinking, warnings)
    if allowed_symbols is not None and symbol not in set(allowed_symbols):
        warnings.append(f"SYMBOL_NOT_ALLOWED: {symbol}")
        return _hold(f"Symbol {symbol} is not tradable for this account", thinking, warnings)

    if raw.decision == "CLOSE":
        return ParsedDecision(Close(symbol=symbol, confidence=confidence, reasoning=raw.reasoning),
                              thinking, warnings, payload)

    leverage = raw.leverage
    if leverage is None:
        leverage = 1.0
        warnings.append("LEVERAGE_CORRECTED: missing -> 1")

    size_usd = raw.size_usd
    if not size_usd and raw.size_pct and account_value:
        size_usd = account_value * raw.size_pct / 100 * leverage
        warnings.append(f"SIZE_FROM_PCT: {raw.size_pct}% of ${account_value:.2f} margin")
    if not size_usd:
        return _hold(f"{raw.decision} without position size", thinking, warnings)

    cls = OpenLong if raw.decision == "OPEN_LONG" else OpenShort
    decision = cls(
        symbol=symbol,
        size_usd=float(size_usd),
        leverage=float(leverage),
        stop_loss=raw.stop_loss,
        take_profit=raw.take_profit,
        confidence=confidence,
        reasoning=raw.reasoning,
    )
    return ParsedDecision(decision, thinking, warnings, payload)
