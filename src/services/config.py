"""
Loads and handles config from config.yml
Connection overrides (DATABASE_PATH, OLLAMA_*) may also come from .env / the environment
"""
import logging
import os
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from core.prompts import DEFAULT_PROMPT, SynthesisPrompt

logger = logging.getLogger(__name__)


class EmbeddingConfig(BaseModel):
    """Configuration for the embedding store and backfill."""
    dimension: int = 768
    max_content_chars: int = 2000
    min_text_chars: int = 10
    batch_size: int = 50
    max_batches: int = 0  # 0 = until nothing is left
    inter_item_delay: float = 0.05


class SynthesisConfig(BaseModel):
    """
    Defaults for a synthesis run.
    Callers may narrow the first four per run via PipelineOptions.
    """
    max_items_to_process: int = 20
    max_candidates_per_item: int = 5
    min_similarity: float = 0.65
    max_age_days: int = 90
    scoring_concurrency: int = 5
    scoring_batch_delay: float = 0.2
    scoring_max_tokens: int = 256
    scoring_timeout: float = 30.0
    min_total_score: int = 12
    development_timeout_ms: int = 20000
    development_max_tokens: int = 1024
    development_delay: float = 1.0
    run_budget_seconds: float = 280.0
    heartbeat_seconds: float = 10.0


class QueueConfig(BaseModel):
    """Configuration for the selection queue."""
    ttl_hours: int = 48
    per_source_cap_fraction: float = Field(0.35, gt=0.0, le=1.0)
    default_max_items: int = 10
    stats_window_days: int = 2
    default_uniqueness_score: float = 5.0
    premium_tiers: Dict[str, int] = {}  # source identifier -> tier 1..3


class PromptConfig(BaseModel):
    name: str = DEFAULT_PROMPT.name
    scoring_prompt: str = DEFAULT_PROMPT.scoring_prompt
    development_prompt: str = DEFAULT_PROMPT.development_prompt
    core_thesis: str = DEFAULT_PROMPT.core_thesis

    def to_prompt(self) -> SynthesisPrompt:
        return SynthesisPrompt(
            name=self.name,
            scoring_prompt=self.scoring_prompt,
            development_prompt=self.development_prompt,
            core_thesis=self.core_thesis,
        )


class Config(BaseModel):
    # Core
    DATABASE_PATH: str
    LOG_LEVEL: str = "INFO"

    # Ollama
    OLLAMA_BASE_URL: str
    OLLAMA_MODEL: str
    OLLAMA_EMBEDDING_MODEL: str
    OLLAMA_MAX_RETRIES: int = 1

    embedding: EmbeddingConfig = EmbeddingConfig()
    synthesis: SynthesisConfig = SynthesisConfig()
    queue: QueueConfig = QueueConfig()
    prompts: PromptConfig = PromptConfig()


def _get_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """Get the path to config.yml, handling different working directories."""
    if explicit:
        if not os.path.exists(explicit):
            raise FileNotFoundError(f"Cannot find config file {explicit}")
        return explicit

    env_path = os.getenv("SYNTHESIS_CONFIG")
    if env_path:
        if not os.path.exists(env_path):
            raise FileNotFoundError(f"SYNTHESIS_CONFIG points to missing file {env_path}")
        return env_path

    # Try relative path first
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    # Try from project root
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    return None


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml, with environment overrides from .env."""
    load_dotenv()

    config_path = _get_config_path(path)
    config: dict = {}
    if config_path:
        with open(config_path, 'r') as file:
            config = yaml.safe_load(file) or {}
    else:
        logger.warning("No resources/config.yml found, using built-in defaults")

    def setting(key: str, default):
        return os.getenv(key) or config.get(key, default)

    return Config(
        DATABASE_PATH=setting("DATABASE_PATH", "data/synthesis.db"),
        LOG_LEVEL=str(setting("LOG_LEVEL", "INFO")).upper(),

        OLLAMA_BASE_URL=setting("OLLAMA_BASE_URL", "http://localhost:11434"),
        OLLAMA_MODEL=setting("OLLAMA_MODEL", "llama3.1:8b"),
        OLLAMA_EMBEDDING_MODEL=setting("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
        OLLAMA_MAX_RETRIES=int(setting("OLLAMA_MAX_RETRIES", 1)),

        embedding=EmbeddingConfig(**(config.get("embedding") or {})),
        synthesis=SynthesisConfig(**(config.get("synthesis") or {})),
        queue=QueueConfig(**(config.get("queue") or {})),
        prompts=PromptConfig(**(config.get("prompts") or {})),
    )
