"""
Local LLM MCP Server

Offloads code analysis and generation tasks to a model running locally in
LM Studio, with allow-listed file access, context-window chunking, result
caching and bounded multi-file analysis.
"""

__version__ = "1.0.0"

from .analysis_cache import AnalysisCache, CacheEntry
from .batch_analyzer import BatchAnalyzer, BatchResult, FileOutcome
from .chunking import ChunkPlan, ContextWindowChunker, ConversationPlan, PromptStages
from .config import LLMConfig, ServerConfig, get_config
from .content_security import InjectionAnalysis, OutputEncoder, PromptInjectionGuard, redact_secrets
from .executor import TaskExecutor
from .file_collector import DiscoveredFileSet, FileCollector, MultiFileDiscovery, SourceFile
from .llm_client import LMStudioBackend, ModelBackend, ModelHandle, ResponseOptions
from .path_security import AllowedRootSet, PathSecurityGuard, ValidatedPath
from .plugins import CustomPromptPlugin, TaskPlugin
from .response_assembler import ErrorInfo, ResponseAssembler, ResultEnvelope
from .token_estimator import TokenEstimator, estimate_tokens

__all__ = [
    "__version__",
    "AllowedRootSet",
    "AnalysisCache",
    "BatchAnalyzer",
    "BatchResult",
    "CacheEntry",
    "ChunkPlan",
    "ContextWindowChunker",
    "ConversationPlan",
    "CustomPromptPlugin",
    "DiscoveredFileSet",
    "ErrorInfo",
    "FileCollector",
    "FileOutcome",
    "InjectionAnalysis",
    "LLMConfig",
    "LMStudioBackend",
    "ModelBackend",
    "ModelHandle",
    "MultiFileDiscovery",
    "OutputEncoder",
    "PathSecurityGuard",
    "PromptInjectionGuard",
    "PromptStages",
    "ResponseAssembler",
    "ResponseOptions",
    "ResultEnvelope",
    "ServerConfig",
    "SourceFile",
    "TaskExecutor",
    "TaskPlugin",
    "TokenEstimator",
    "ValidatedPath",
    "estimate_tokens",
    "get_config",
    "redact_secrets",
]
