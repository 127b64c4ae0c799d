"""
AdaptGraph · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. A YAML file (overrides defaults)
  3. Environment variables ADAPTGRAPH_* (overrides everything)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from adaptgraph.core.errors import ConfigError

log = logging.getLogger(__name__)

ENV_PREFIX = "ADAPTGRAPH_"

# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class RouterConfig(BaseModel):
    """Uncertainty-Router Einstellungen."""

    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_injection_attempts: int = Field(default=2, ge=0, le=20)
    cost_awareness: bool = False
    # Abstand zum Threshold, ab dem teure Re-Fetches durch eine Rückfrage ersetzt werden
    cost_margin: float = Field(default=0.05, ge=0.0, le=1.0)
    # Node-Kosten oberhalb dieses Werts gelten als "teuer"
    high_cost_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class ReflectionConfig(BaseModel):
    """Reflection-Einstellungen."""

    default_max_retries: int = Field(default=3, ge=0, le=20)


class ExecutorConfig(BaseModel):
    """Adaptive-Executor Einstellungen."""

    # Obergrenze für Scheduling-Runden (Schutz gegen fehlerhafte Mutation-Decider)
    max_iterations: int = Field(default=100, ge=1, le=10_000)


class LLMConfig(BaseModel):
    """Completion-Service (Ollama) Konfiguration."""

    base_url: str = "http://localhost:11434"
    model: str = "qwen3:8b"
    timeout_seconds: int = Field(default=120, ge=1, le=600)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)


class MemoryConfig(BaseModel):
    """Execution-Memory Einstellungen."""

    similar_limit: int = Field(default=3, ge=1, le=50)


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True
    log_dir: str = ""


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class AdaptGraphConfig(BaseModel):
    """Complete AdaptGraph configuration.

    Loaded once at startup and handed to the router, executor and LLM client.
    """

    router: RouterConfig = Field(default_factory=RouterConfig)
    reflection: ReflectionConfig = Field(default_factory=ReflectionConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ============================================================================
# Config-Laden
# ============================================================================


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Wendet ADAPTGRAPH_* Umgebungsvariablen an.

    Konvention: ADAPTGRAPH_SECTION_KEY → data["section"]["key"]
    Beispiel: ADAPTGRAPH_ROUTER_CONFIDENCE_THRESHOLD → data["router"]["confidence_threshold"]
    """
    sections = set(AdaptGraphConfig.model_fields)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split("_", 1)
        if len(parts) != 2 or parts[0] not in sections or not parts[1]:
            continue
        section, leaf = parts
        node = data.setdefault(section, {})
        if isinstance(node, dict):
            node[leaf] = value
    return data


def load_config(config_path: Path | None = None) -> AdaptGraphConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. YAML-Datei (wenn vorhanden)
      3. ADAPTGRAPH_* Umgebungsvariablen

    Args:
        config_path: Pfad zur YAML-Datei. None = nur Defaults + Env.

    Returns:
        Vollständig validierte AdaptGraphConfig.
    """
    data: dict[str, Any] = {}

    if config_path is not None and config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = file_data
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte Konfigurationsdatei wird ignoriert: %s", exc)

    data = _apply_env_overrides(data)

    try:
        return AdaptGraphConfig(**data)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
