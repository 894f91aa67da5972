"""
Result envelopes for task responses.

Every task, successful or not, returns the same external shape:

    {"success": true,  "timestamp": ..., "modelUsed": ..., "executionTimeMs": ..., "data": ...}
    {"success": false, "timestamp": ..., "modelUsed": ..., "executionTimeMs": ...,
     "error": {"code": ..., "message": ..., "details": ...}}

Model output that parses as JSON (optionally wrapped in a ``` fence) becomes
data as-is. Anything else is wrapped as {"content", "summary", "metadata"};
free text is a valid answer, not an error.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .content_security import redact_secrets
from .exceptions import EXECUTION_ERROR, PARSING_ERROR, LocalLLMError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[\w+.-]*[ \t]*\r?\n")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ErrorInfo:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


@dataclass
class ResultEnvelope:
    """Uniform task result."""

    success: bool
    model_used: str
    execution_time_ms: float
    data: Any = None
    error: ErrorInfo | None = None
    timestamp: str = field(default_factory=_utc_timestamp)
    # Flagged (not blocked) content-security findings for this request
    security_warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "timestamp": self.timestamp,
            "modelUsed": self.model_used,
            "executionTimeMs": round(self.execution_time_ms, 1),
        }
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error.to_dict() if self.error else None
        if self.security_warnings:
            result["securityWarnings"] = self.security_warnings
        return result

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str, ensure_ascii=False)


class ResponseAssembler:
    """Normalizes raw model text into ResultEnvelopes."""

    @staticmethod
    def strip_code_fences(text: str) -> str:
        """Remove one surrounding ``` fence (language-tagged or bare)."""
        text = text.strip()
        if not text.startswith("```"):
            return text
        opened = _FENCE_OPEN.match(text)
        if not opened or not text.endswith("```") or len(text) < opened.end() + 3:
            return text
        return text[opened.end():-3].strip()

    @staticmethod
    def _summarize(text: str) -> str:
        first = text.strip().split("\n\n", 1)[0].strip()
        return first if len(first) <= 500 else first[:497] + "..."

    def _text_data(self, task_name: str, text: str) -> dict[str, Any]:
        return {
            "content": text,
            "summary": self._summarize(text),
            "metadata": {
                "taskName": task_name,
                "format": "text",
                "responseLength": len(text),
                "sectionCount": len(re.findall(r"^#{1,6}\s", text, re.MULTILINE)),
            },
        }

    def parse_and_create_response(
        self,
        task_name: str,
        raw_text: str,
        model_used: str,
        execution_time_ms: float = 0.0,
    ) -> ResultEnvelope:
        try:
            text = (raw_text or "").strip()
            candidate = self.strip_code_fences(text)
            try:
                data = json.loads(candidate)
            except ValueError:
                data = self._text_data(task_name, text)
            return ResultEnvelope(
                success=True,
                model_used=model_used,
                execution_time_ms=execution_time_ms,
                data=data,
            )
        except Exception as e:
            logger.exception(f"[ASSEMBLE] Failed to build response for {task_name}")
            return self.create_error_response(
                task_name, PARSING_ERROR, f"Failed to parse model response: {e}",
                {"responseLength": len(raw_text or "")}, model_used, execution_time_ms,
            )

    def create_error_response(
        self,
        task_name: str,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        model_used: str = "none",
        execution_time_ms: float = 0.0,
    ) -> ResultEnvelope:
        return ResultEnvelope(
            success=False,
            model_used=model_used,
            execution_time_ms=execution_time_ms,
            error=ErrorInfo(code, message, {"taskName": task_name, **(details or {})}),
        )

    def from_exception(
        self,
        task_name: str,
        error: BaseException,
        model_used: str = "none",
        execution_time_ms: float = 0.0,
    ) -> ResultEnvelope:
        """
        Map an exception to an error envelope, using its taxonomy code when it has one.

        Messages are passed through redact_secrets before leaving the server.
        """
        if isinstance(error, LocalLLMError):
            return self.create_error_response(
                task_name, error.code, redact_secrets(error.message), error.details,
                model_used, execution_time_ms,
            )
        return self.create_error_response(
            task_name, EXECUTION_ERROR, redact_secrets(f"{type(error).__name__}: {error}"),
            None, model_used, execution_time_ms,
        )

    def create_system_response(
        self,
        data: Any,
        model_used: str = "none",
        execution_time_ms: float = 0.0,
    ) -> ResultEnvelope:
        """Envelope for tools that don't call the model (health, cache)."""
        return ResultEnvelope(
            success=True,
            model_used=model_used,
            execution_time_ms=execution_time_ms,
            data=data,
        )
