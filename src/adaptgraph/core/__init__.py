"""AdaptGraph · Core-Infrastruktur (Fehler, Completion-Client)."""

from adaptgraph.core.errors import (
    AdaptGraphError,
    ConfigError,
    GraphSynthesisParseError,
    LLMError,
    MissingRequiredInputError,
    NodeExecutionError,
    UnknownNodeReferenceError,
)
from adaptgraph.core.llm import CompletionClient, OllamaCompletionClient, extract_json

__all__ = [
    "AdaptGraphError",
    "ConfigError",
    "GraphSynthesisParseError",
    "LLMError",
    "MissingRequiredInputError",
    "NodeExecutionError",
    "UnknownNodeReferenceError",
    "CompletionClient",
    "OllamaCompletionClient",
    "extract_json",
]
