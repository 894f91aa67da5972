"""Error taxonomy for the Local LLM MCP Server.

Every error carries a stable ``code`` that ends up in the ``error.code`` field
of a result envelope.
"""

from typing import Any


# Codes that only ever appear in envelopes
PARSING_ERROR = "PARSING_ERROR"
EXECUTION_ERROR = "EXECUTION_ERROR"
CANCELLED = "CANCELLED"


class LocalLLMError(Exception):
    """Base exception for local model orchestration errors"""

    code = EXECUTION_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PathSecurityError(LocalLLMError):
    """Raised when a path fails the allowed-roots check"""

    code = "PATH_SECURITY_ERROR"

    OUTSIDE_ALLOWED_ROOTS = "OUTSIDE_ALLOWED_ROOTS"
    TRAVERSAL_DETECTED = "TRAVERSAL_DETECTED"
    NOT_ABSOLUTE = "NOT_ABSOLUTE"
    INVALID_CHARACTERS = "INVALID_CHARACTERS"

    def __init__(self, reason: str, path: str, message: str | None = None):
        super().__init__(
            message or f"Path rejected ({reason}): {path!r}",
            {"reason": reason, "path": path},
        )
        self.reason = reason
        self.path = path


class SourceFileNotFoundError(LocalLLMError, FileNotFoundError):
    """Raised when a validated path does not exist"""

    code = "FILE_NOT_FOUND"


class FileAccessError(LocalLLMError):
    """Raised when a file exists but cannot be read"""

    code = "FILE_ACCESS_DENIED"


class FileTooLargeError(LocalLLMError):
    """Raised when a file exceeds the configured size limit"""

    code = "FILE_TOO_LARGE"


class UnsupportedFileTypeError(LocalLLMError):
    """Raised when a file extension is not in the allow-list"""

    code = "UNSUPPORTED_FILE_TYPE"


class ChunkingImpossibleError(LocalLLMError):
    """Raised when the fixed prompt overhead leaves no room for data"""

    code = "CHUNKING_IMPOSSIBLE"


class ModelUnavailableError(LocalLLMError):
    """Raised when no model is loaded in the backend"""

    code = "MODEL_UNAVAILABLE"


class ModelCallError(LocalLLMError):
    """Raised when the backend fails while producing a response"""

    code = "MODEL_ERROR"


class ModelTimeoutError(ModelCallError):
    """Raised when a backend call exceeds its timeout"""

    code = "MODEL_TIMEOUT"


class ParameterValidationError(LocalLLMError):
    """Raised when tool parameters fail validation"""

    code = "VALIDATION_ERROR"


class ConfigurationError(LocalLLMError):
    """Raised when configuration is invalid"""

    code = "CONFIGURATION_ERROR"


class PromptInjectionError(LocalLLMError):
    """Raised when a parameter carries a critical prompt-injection attempt"""

    code = "PROMPT_INJECTION_DETECTED"


class ResponseParsingError(LocalLLMError):
    """Raised when a model response cannot be turned into result data"""

    code = PARSING_ERROR
