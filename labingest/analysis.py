from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from labingest.config import Settings
from labingest.errors import AnalysisError
from labingest.format_parser import ParsedData
from labingest.llm_provider import LlmJsonResult, generate_json_with_gemini, generate_json_with_openai
from labingest.schema_models import Flag, FlagLevel

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Analysis completed"
DEFAULT_RECOMMENDATIONS = "No specific recommendations"
DEFAULT_CONFIDENCE = 50
EXCERPT_MAX_ROWS = 200
EXCERPT_MAX_POINTS = 500

SYSTEM_INSTRUCTIONS = (
    "You are an expert analytical chemist with decades of experience in chromatography, "
    "spectroscopy, and laboratory data analysis. Provide accurate, detailed chemical analysis."
)
RESPONSE_SCHEMA = (
    "{\n"
    '  "summary": "Brief summary of findings",\n'
    '  "flags": [\n'
    "    {\n"
    '      "level": "info|warning|critical",\n'
    '      "message": "Description of the issue",\n'
    '      "parameter": "Parameter name",\n'
    '      "value": "Actual value",\n'
    '      "expected_range": "Expected range if applicable"\n'
    "    }\n"
    "  ],\n"
    '  "recommendations": "Detailed recommendations",\n'
    '  "confidence": 85\n'
    "}"
)


@dataclass(frozen=True)
class AnalysisVerdict:
    summary: str
    flags: list[Flag] = field(default_factory=list)
    recommendations: str = DEFAULT_RECOMMENDATIONS
    confidence: int = DEFAULT_CONFIDENCE
    provider: str = "unknown"


class AnalysisInvoker(Protocol):
    name: str

    def analyze(self, parsed: ParsedData, category: str) -> AnalysisVerdict:
        ...


def _coerce_confidence(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(value, str):
        try:
            value = float(value.strip().rstrip("%"))
        except ValueError:
            return DEFAULT_CONFIDENCE
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return DEFAULT_CONFIDENCE
    return max(0, min(100, int(round(value))))


def _coerce_flag_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, default=str)


def _coerce_flag(entry: Any) -> Flag | None:
    if not isinstance(entry, dict):
        return None

    level = str(entry.get("level") or "").strip().lower()
    if level not in {item.value for item in FlagLevel}:
        level = FlagLevel.INFO.value
    expected_range = entry.get("expected_range", entry.get("expectedRange"))
    return Flag(
        level=FlagLevel(level),
        parameter=str(entry.get("parameter") or ""),
        message=str(entry.get("message") or ""),
        value=_coerce_flag_value(entry.get("value")),
        expected_range=str(expected_range) if expected_range not in (None, "") else None,
    )


def _coerce_recommendations(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, list):
        items = [str(item).strip() for item in value if str(item).strip()]
        if items:
            return "\n".join(items)
    return DEFAULT_RECOMMENDATIONS


def normalize_verdict(payload: Any, provider: str = "unknown") -> AnalysisVerdict:
    """Coerce an untrusted provider reply into a verdict with every field defaulted."""

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise AnalysisError(f"Analysis reply was not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise AnalysisError("Analysis reply was not a JSON object.")

    summary = payload.get("summary")
    raw_flags = payload.get("flags")
    flags = [flag for flag in map(_coerce_flag, raw_flags) if flag is not None] if isinstance(raw_flags, list) else []
    return AnalysisVerdict(
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY,
        flags=flags,
        recommendations=_coerce_recommendations(payload.get("recommendations")),
        confidence=_coerce_confidence(payload.get("confidence")),
        provider=provider,
    )


def _downsample(values: list[Any], max_points: int) -> list[Any]:
    if len(values) <= max_points:
        return values
    step = math.ceil(len(values) / max_points)
    return values[::step]


def build_excerpt(parsed: ParsedData, max_rows: int = EXCERPT_MAX_ROWS, max_points: int = EXCERPT_MAX_POINTS) -> dict[str, Any]:
    rows = []
    for row in parsed.rows[:max_rows]:
        rows.append(
            {key: _downsample(value, max_points) if isinstance(value, list) else value for key, value in row.items()}
        )
    excerpt: dict[str, Any] = {"rows": rows, "metadata": parsed.metadata}
    if parsed.headers is not None:
        excerpt["headers"] = parsed.headers
    if len(parsed.rows) > max_rows:
        excerpt["truncated_rows"] = len(parsed.rows) - max_rows
    return excerpt


def build_prompt(parsed: ParsedData, category: str) -> str:
    excerpt = build_excerpt(parsed)
    return (
        f"As a chemistry expert, analyze the following {category} data and provide a comprehensive evaluation.\n\n"
        f"Data: {json.dumps(excerpt['rows'], default=str)}\n"
        f"Metadata: {json.dumps({k: v for k, v in excerpt.items() if k != 'rows'}, default=str)}\n\n"
        "Please analyze for:\n"
        "1. Data quality and integrity\n"
        "2. Chemical parameters and their values\n"
        "3. Any anomalies or out-of-specification results\n"
        "4. Safety concerns or critical flags\n"
        "5. Recommendations for next steps\n\n"
        f"Respond with JSON in this exact format:\n{RESPONSE_SCHEMA}"
    )


@dataclass
class LlmAnalysisInvoker:
    provider: str
    api_key: str
    model: str
    timeout_seconds: float = 60.0

    @property
    def name(self) -> str:
        return self.provider

    def analyze(self, parsed: ParsedData, category: str) -> AnalysisVerdict:
        prompt = build_prompt(parsed, category)
        generate = generate_json_with_gemini if self.provider == "gemini" else generate_json_with_openai
        result: LlmJsonResult = generate(
            api_key=self.api_key,
            model=self.model,
            prompt=prompt,
            instructions=SYSTEM_INSTRUCTIONS,
            timeout=self.timeout_seconds,
        )
        if result.status != "success" or not result.raw_response:
            detail = "; ".join(result.warnings) or "no response text"
            raise AnalysisError(f"Analysis provider {self.provider} failed: {detail}")

        logger.info("Received %s verdict for %s data (model %s)", self.provider, category, self.model)
        return normalize_verdict(result.raw_response, provider=self.provider)


@dataclass(frozen=True)
class ParameterRule:
    parameter: str
    pattern: re.Pattern[str]
    expected: tuple[float, float] | None
    critical: tuple[float, float]
    unit: str = ""

    def expected_range(self) -> str | None:
        if self.expected is None:
            return None
        low, high = self.expected
        return f"{low:g}-{high:g}{self.unit}"


PARAMETER_RULES = (
    ParameterRule("pH", re.compile(r"^ph$"), expected=(6.0, 8.0), critical=(2.0, 12.0)),
    ParameterRule(
        "temperature",
        re.compile(r"^(temp|temperature)(_?c|_?celsius)?$"),
        expected=(15.0, 40.0),
        critical=(-273.15, 150.0),
        unit=" C",
    ),
    ParameterRule(
        "concentration",
        re.compile(r"^(conc|concentration)(_.+)?$"),
        expected=None,
        critical=(0.0, math.inf),
    ),
)


def _column_key(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def _rule_for(column: str) -> ParameterRule | None:
    key = _column_key(column)
    for rule in PARAMETER_RULES:
        if rule.pattern.fullmatch(key):
            return rule
    return None


def _check_value(rule: ParameterRule, column: str, value: float, row_index: int) -> Flag | None:
    low, high = rule.critical
    if value < low or value > high:
        return Flag(
            level=FlagLevel.CRITICAL,
            parameter=column,
            message=f"{rule.parameter} value {value:g} in row {row_index} is outside the safe range.",
            value=value,
            expected_range=rule.expected_range(),
        )
    if rule.expected is not None and not rule.expected[0] <= value <= rule.expected[1]:
        return Flag(
            level=FlagLevel.WARNING,
            parameter=column,
            message=f"{rule.parameter} value {value:g} in row {row_index} is outside the expected range.",
            value=value,
            expected_range=rule.expected_range(),
        )
    return None


class RuleBasedAnalysisInvoker:
    """Offline provider: range checks on known parameters plus a peak summary."""

    name = "local"

    def analyze(self, parsed: ParsedData, category: str) -> AnalysisVerdict:
        flags: list[Flag] = []
        checked: set[str] = set()

        for column in parsed.headers or []:
            rule = _rule_for(column)
            if rule is None:
                continue
            checked.add(rule.parameter)
            for row_index, row in enumerate(parsed.rows, start=1):
                value = row.get(column)
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                flag = _check_value(rule, column, float(value), row_index)
                if flag is not None:
                    flags.append(flag)

        peak_count = sum(len(row.get("peaks") or []) for row in parsed.rows if isinstance(row.get("peaks"), list))
        if category in {"chromatography", "spectroscopy"}:
            if peak_count:
                flags.append(
                    Flag(
                        level=FlagLevel.INFO,
                        parameter="peaks",
                        message=f"Detected {peak_count} peaks above the detection threshold.",
                        value=peak_count,
                    )
                )
            else:
                flags.append(
                    Flag(
                        level=FlagLevel.WARNING,
                        parameter="peaks",
                        message="No peaks above the detection threshold were found.",
                        value=0,
                    )
                )

        flags.sort(key=lambda flag: [FlagLevel.CRITICAL, FlagLevel.WARNING, FlagLevel.INFO].index(flag.level))
        critical = sum(1 for flag in flags if flag.level is FlagLevel.CRITICAL)
        warning = sum(1 for flag in flags if flag.level is FlagLevel.WARNING)
        row_count = parsed.metadata.get("row_count", len(parsed.rows))
        summary = (
            f"Rule-based review of {row_count} {category} record(s): "
            f"{critical} critical and {warning} warning flag(s)."
        )
        if critical:
            recommendations = "Re-measure or quarantine the samples with critical flags before further use."
        elif warning:
            recommendations = "Review the flagged values against the method specification."
        else:
            recommendations = DEFAULT_RECOMMENDATIONS

        return AnalysisVerdict(
            summary=summary,
            flags=flags,
            recommendations=recommendations,
            confidence=70 if checked or peak_count else DEFAULT_CONFIDENCE,
            provider=self.name,
        )


def build_invoker(settings: Settings) -> AnalysisInvoker:
    provider = settings.analysis_provider
    if provider == "local":
        return RuleBasedAnalysisInvoker()

    api_key = (settings.analysis_api_key or "").strip()
    if not api_key:
        logger.warning("No %s API key configured; falling back to the rule-based analysis provider.", provider)
        return RuleBasedAnalysisInvoker()

    return LlmAnalysisInvoker(
        provider=provider,
        api_key=api_key,
        model=settings.resolved_model,
        timeout_seconds=settings.analysis_timeout_seconds,
    )
