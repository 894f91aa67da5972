"""
Content security for prompts, file content and model output.

Path confinement lives in path_security.py. This module covers what flows
through those paths and back out of the model:

- PromptInjectionGuard: weighted pattern and heuristic scoring of text for
  prompt-injection attempts, with a risk level and a suggested mitigation
- OutputEncoder: removes dangerous markup from model output and encodes it
  for the context it will be shown in
- redact_secrets: strips credentials and addresses from error messages
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Where a piece of text came from. File content is often legitimate code, so it
# scores lower; model output should never contain injection attempts.
SOURCE_MULTIPLIERS = {
    "user-input": 1.0,
    "parameter": 1.0,
    "file-content": 0.8,
    "llm-response": 1.2,
}

RISK_LEVELS = ("low", "medium", "high", "critical")

# Confidence above which text counts as an injection attempt at all
DETECTION_THRESHOLD = 0.3

_MITIGATIONS = {
    "critical": "BLOCK: Critical injection attempt detected. Deny request completely.",
    "high": "SANITISE: High risk detected. Remove suspicious patterns and log incident.",
    "medium": "MONITOR: Medium risk. Apply sanitisation and increase logging.",
    "low": "PROCEED: Low risk. Continue with standard sanitisation.",
}

# (pattern, weight, type); higher weight = more dangerous
INJECTION_PATTERNS = [
    # Instruction manipulation
    (re.compile(r"ignore\s+(all\s+)?(previous|your)\s+(instructions?|rules?|guidelines?)", re.I), 0.9, "instruction-override"),
    (re.compile(r"forget\s+(everything|all|previous)\s+(and|then|now)?", re.I), 0.9, "memory-wipe"),
    (re.compile(r"new\s+(instructions?|rules?|guidelines?)[\s:]", re.I), 0.85, "instruction-replacement"),
    (re.compile(r"system\s*[:;]\s*you\s+are", re.I), 0.9, "system-override"),
    # Role manipulation
    (re.compile(r"you\s+are\s+now\s+(a|an)\s+\w+", re.I), 0.8, "role-change"),
    (re.compile(r"(act|behave|respond)\s+as\s+(if\s+you\s+are\s+)?(a|an)\s+\w+", re.I), 0.75, "role-play"),
    (re.compile(r"pretend\s+(to\s+be\s+|you\s+are\s+)(a|an)\s+\w+", re.I), 0.75, "pretend-role"),
    # Prompt extraction
    (re.compile(r"(show|tell|give)\s+me\s+(your|the)\s+(system\s+)?(prompt|instructions?)", re.I), 0.8, "prompt-extraction"),
    (re.compile(r"what\s+(is|are)\s+(your|the)\s+(original\s+)?(instructions?|prompt|system)", re.I), 0.75, "instruction-query"),
    (re.compile(r"reveal\s+(your|the)\s+(prompt|instructions?|system)", re.I), 0.8, "reveal-attempt"),
    # Jailbreaks
    (re.compile(r"dev\s*mode|developer\s*mode", re.I), 0.7, "dev-mode"),
    (re.compile(r"unrestricted\s+mode|unlimited\s+mode", re.I), 0.7, "unrestricted"),
    (re.compile(r"(break|bypass|override)\s+(safety|security|restrictions?)", re.I), 0.75, "security-bypass"),
    # Script injection
    (re.compile(r"<script[^>]*>", re.I), 0.6, "script-tag"),
    (re.compile(r"javascript\s*:", re.I), 0.5, "javascript-protocol"),
    (re.compile(r"""\bon\w+\s*=\s*["']?[^"'>]*["']?""", re.I), 0.5, "event-handler"),
    # Command injection
    (re.compile(r";\s*(rm|del|format|shutdown|reboot|kill)", re.I), 0.6, "command-injection"),
    (re.compile(r"\|\s*(curl|wget|nc|netcat|telnet)", re.I), 0.6, "network-command"),
    (re.compile(r"&&\s*(cat|ls|dir|type|echo)", re.I), 0.5, "file-command"),
    # Encoded payloads
    (re.compile(r"%[0-9a-f]{2}", re.I), 0.3, "url-encoding"),
    (re.compile(r"\\x[0-9a-f]{2}", re.I), 0.3, "hex-encoding"),
    (re.compile(r"\\u[0-9a-f]{4}", re.I), 0.3, "unicode-encoding"),
]

_INSTRUCTION_WORDS = frozenset({"ignore", "forget", "override", "bypass", "disable"})
_CONTEXT_WORDS = frozenset({"previous", "original", "system", "prompt", "instructions"})
_IMPERATIVE = re.compile(r"^(you\s+(must|should|need to|have to)|please\s+|now\s+)", re.I | re.M)
_SYSTEM_QUESTION = re.compile(r"what\s+(is|are|do|does)\s+(you|your)", re.I)
_HIDDEN_HEADER = re.compile(r"\n\s*\n[A-Z\s]+:")
_ENCODED_BLOB = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")


@dataclass
class InjectionAnalysis:
    """Result of scoring one piece of text."""

    detected: bool
    confidence: float
    risk_level: str
    patterns: list[str] = field(default_factory=list)
    mitigation: str = _MITIGATIONS["low"]

    @property
    def blocked(self) -> bool:
        return self.detected and self.risk_level == "critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "confidence": round(self.confidence, 3),
            "riskLevel": self.risk_level,
            "patterns": list(self.patterns),
            "mitigation": self.mitigation,
        }


def _risk_level(max_weight: float) -> str:
    if max_weight >= 0.8:
        return "critical"
    if max_weight >= 0.6:
        return "high"
    if max_weight >= 0.3:
        return "medium"
    return "low"


def higher_risk(a: str, b: str) -> str:
    return a if RISK_LEVELS.index(a) >= RISK_LEVELS.index(b) else b


class PromptInjectionGuard:
    """
    Scores text for prompt-injection attempts.

    Each matching pattern adds its weight (scaled by the source multiplier);
    heuristics add more. Confidence is the capped sum, risk level comes from
    the single heaviest signal.
    """

    def __init__(self, threshold: float = 0.5):
        self.threshold = threshold
        self._detections = 0

    @staticmethod
    def _heuristics(text: str, source: str) -> float:
        weight = 0.0

        words = text.lower().split()
        instruction_count = sum(1 for w in words if w in _INSTRUCTION_WORDS)
        context_count = sum(1 for w in words if w in _CONTEXT_WORDS)
        if instruction_count >= 2 and context_count >= 1:
            weight += 0.4

        if len(_IMPERATIVE.findall(text)) >= 3:
            weight += 0.3
        if len(_SYSTEM_QUESTION.findall(text)) >= 2:
            weight += 0.2
        if _HIDDEN_HEADER.search(text):
            weight += 0.3
        if source == "user-input" and _ENCODED_BLOB.search(text):
            weight += 0.2

        return weight

    def analyze(self, text: str, source: str = "parameter") -> InjectionAnalysis:
        multiplier = SOURCE_MULTIPLIERS.get(source, 1.0)
        patterns: list[str] = []
        total = 0.0
        max_weight = 0.0

        for pattern, weight, kind in INJECTION_PATTERNS:
            if pattern.search(text):
                patterns.append(kind)
                adjusted = weight * multiplier
                total += adjusted
                max_weight = max(max_weight, adjusted)

        heuristic = self._heuristics(text, source)
        total += heuristic
        max_weight = max(max_weight, heuristic)

        confidence = min(total, 1.0)
        risk = _risk_level(max_weight)
        analysis = InjectionAnalysis(
            detected=confidence > DETECTION_THRESHOLD,
            confidence=confidence,
            risk_level=risk,
            patterns=patterns,
            mitigation=_MITIGATIONS[risk],
        )
        if analysis.detected:
            self._detections += 1
            logger.warning(
                f"[SECURITY] Possible prompt injection in {source}: "
                f"risk={risk} confidence={confidence:.2f} patterns={patterns}"
            )
        return analysis

    def should_block(self, analysis: InjectionAnalysis) -> bool:
        return analysis.blocked and analysis.confidence >= self.threshold

    def is_safe_for_processing(self, text: str, source: str = "parameter") -> bool:
        analysis = self.analyze(text, source)
        return not analysis.detected or analysis.confidence < self.threshold

    @staticmethod
    def sanitize(text: str, analysis: InjectionAnalysis) -> str:
        """Neutralize matched patterns according to the analysis risk level."""
        if not analysis.detected:
            return text

        level = analysis.risk_level

        def replace(match: re.Match) -> str:
            if level == "critical":
                return "[CONTENT REMOVED FOR SECURITY]"
            if level == "high":
                return f"[SANITISED: {match.group(0)[:10]}...]"
            return f"/* {match.group(0)} */"

        for pattern, _, _ in INJECTION_PATTERNS:
            text = pattern.sub(replace, text)
        return text

    def get_stats(self) -> dict[str, Any]:
        return {"threshold": self.threshold, "detections": self._detections}


# -----------------------------------------------------------------------------
# Output encoding
# -----------------------------------------------------------------------------

OUTPUT_CONTEXTS = ("html", "json", "markdown", "code", "xml", "plain-text")

# Removed whatever the output context; only clearly malicious constructs
DANGEROUS_PATTERNS = [
    re.compile(
        r"<script[^>]*>[^<]*(?:document\.cookie|window\.location|eval\(|setTimeout\(|setInterval\()[^<]*</script>",
        re.I,
    ),
    re.compile(r"""href\s*=\s*["']javascript:[^"']*["']""", re.I),
    re.compile(r"""src\s*=\s*["']javascript:[^"']*["']""", re.I),
    re.compile(r"data:text/html[^\"'>]*<script", re.I),
    re.compile(r"""style\s*=\s*["'][^"']*expression\s*\([^"']*["']""", re.I),
]

REMOVED_MARKER = "[REMOVED FOR SECURITY]"

_MD_JS_LINK = re.compile(r"(!?)\[([^\]]*)\]\([^)]*javascript:[^)]*\)", re.I)
_MD_JS_AUTOLINK = re.compile(r"<([^>]*javascript:[^>]*)>", re.I)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class EncodingResult:
    encoded: str
    removed: list[str] = field(default_factory=list)


class OutputEncoder:
    """
    Makes model output safe for the context it is displayed in.

    "json" only strips dangerous markup: string escaping is left to the JSON
    serializer of the result envelope.
    """

    def encode(self, text: str, context: str = "code") -> EncodingResult:
        if context not in OUTPUT_CONTEXTS:
            raise ValueError(f"Unknown output context: {context!r}")

        removed: list[str] = []
        for pattern in DANGEROUS_PATTERNS:
            matches = [m.group(0) for m in pattern.finditer(text)]
            if matches:
                removed.extend(matches)
                text = pattern.sub(REMOVED_MARKER, text)

        if context == "html":
            text = html.escape(text, quote=True).replace("/", "&#x2F;")
        elif context == "xml":
            text = html.escape(text, quote=False).replace('"', "&quot;").replace("'", "&apos;")
        elif context == "markdown":
            text = _MD_JS_LINK.sub(r"\1[\2](javascript-link-removed)", text)
            text = _MD_JS_AUTOLINK.sub("&lt;javascript-link-removed&gt;", text)
        elif context == "code":
            text = re.sub(r"\beval\s*\(", "/* eval */ (", text, flags=re.I)
            text = re.sub(r"\bnew\s+Function\s*\(", "/* new Function */ (", text, flags=re.I)
        elif context == "plain-text":
            text = re.sub(r"\s+", " ", _CONTROL_CHARS.sub("", text)).strip()

        if removed:
            logger.warning(f"[SECURITY] Removed {len(removed)} dangerous element(s) from output")
        return EncodingResult(text, removed)

    def encode_data(self, data: Any, context: str = "code") -> Any:
        """Encode every string inside a JSON-like value; keys are left as-is."""
        if isinstance(data, str):
            return self.encode(data, context).encoded
        if isinstance(data, list):
            return [self.encode_data(item, context) for item in data]
        if isinstance(data, dict):
            return {key: self.encode_data(value, context) for key, value in data.items()}
        return data


# -----------------------------------------------------------------------------
# Error message redaction
# -----------------------------------------------------------------------------

_SECRET_PATTERNS = [
    (re.compile(r"API[_\s]?KEY[_\s]?[=:]\s*\S+", re.I), "API_KEY=[REDACTED]"),
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]+=*", re.I), "Bearer [REDACTED]"),
    (re.compile(r"\bfile://\S*"), "[FILE_URL_REMOVED]"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[IP_REMOVED]"),
]


def redact_secrets(message: str) -> str:
    """Remove credentials, file URLs and IP addresses from an error message."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message
