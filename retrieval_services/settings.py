"""Central configuration for the retrieval services.

All tuned thresholds live here so that chunking, fusion, filtering and the
embedding worker can be adjusted without touching algorithm code.
"""
import logging
import os
from typing import Dict, Optional

from pydantic import BaseModel, Field

from retrieval_services.models import Intent, IntentParams

# Configure logging
logger = logging.getLogger(__name__)


class FusionProfile(BaseModel):
    """RRF smoothing constant and per-list weights."""
    k: float = 60.0
    keyword_weight: float = 1.0
    vector_weight: float = 1.0


def _default_intent_params() -> Dict[str, IntentParams]:
    """Get default retrieval parameters for each intent."""
    return {
        Intent.COMMAND.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.25),
        Intent.TROUBLESHOOT.value: IntentParams(limit=25, rerank_candidates=60, min_score=0.2),
        Intent.CONFIGURATION.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.28),
        Intent.EXPLANATION.value: IntentParams(limit=15, rerank_candidates=60, min_score=0.35),
        Intent.COMPARISON.value: IntentParams(limit=25, rerank_candidates=60, min_score=0.3),
        Intent.PERFORMANCE.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.3),
        Intent.BEST_PRACTICE.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.32),
        Intent.VERIFICATION.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.25),
        Intent.QUESTION.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.35),
        Intent.GENERAL.value: IntentParams(limit=20, rerank_candidates=60, min_score=0.35),
    }


def _default_fusion_profiles() -> Dict[str, FusionProfile]:
    return {
        "keyword": FusionProfile(k=40.0, keyword_weight=1.2, vector_weight=1.0),
        "semantic": FusionProfile(k=80.0, keyword_weight=1.0, vector_weight=1.2),
        "balanced": FusionProfile(k=60.0, keyword_weight=1.0, vector_weight=1.0),
    }


def _default_intent_fusion_profile() -> Dict[str, str]:
    return {
        Intent.COMMAND.value: "keyword",
        Intent.CONFIGURATION.value: "keyword",
        Intent.VERIFICATION.value: "keyword",
        Intent.EXPLANATION.value: "semantic",
        Intent.COMPARISON.value: "semantic",
        Intent.QUESTION.value: "semantic",
        Intent.BEST_PRACTICE.value: "semantic",
        Intent.TROUBLESHOOT.value: "balanced",
        Intent.PERFORMANCE.value: "balanced",
        Intent.GENERAL.value: "balanced",
    }


class RetrievalSettings(BaseModel):
    """Tunable constants for every stage of ingestion and retrieval."""

    # Chunking
    parent_size: int = 4000
    child_size: int = 500
    child_overlap: int = 150
    section_heading_level: int = 2

    # Fusion
    fusion_prefix: int = 60
    fusion_profiles: Dict[str, FusionProfile] = Field(default_factory=_default_fusion_profiles)
    intent_fusion_profile: Dict[str, str] = Field(default_factory=_default_intent_fusion_profile)
    exact_match_score: float = 10.0
    exact_match_bonus: float = 0.05
    vector_bonus_similarity: float = 0.85
    vector_bonus: float = 0.05

    # Intent classification
    intent_params: Dict[str, IntentParams] = Field(default_factory=_default_intent_params)
    history_turns: int = 6
    followup_confidence_factor: float = 0.7
    default_confidence: float = 0.5

    # Document relevance filter
    relevance_ratio: float = 0.25
    strong_keyword_score: float = 3.0
    title_match_score: float = 1.0

    # Reranking
    rerank_documents: int = 3
    rerank_per_document: int = 15

    # Query cache
    cache_ttl: float = 900.0
    cache_sweep_interval: float = 60.0

    # Embedding task queue
    embedding_batch_size: int = 10
    embedding_max_retries: int = 3
    retry_backoff: float = 1.0
    retry_backoff_max: float = 4.0
    batch_delay: float = 0.2
    embed_max_chars: int = 2000
    min_embed_chars: int = 10
    max_tasks_kept: int = 100

    # Providers
    api_base: str = "https://api.siliconflow.cn/v1"
    api_key: Optional[str] = None
    embedding_model: str = "BAAI/bge-m3"
    rerank_model: str = "BAAI/bge-reranker-v2-m3"
    request_timeout: float = 30.0

    # Storage
    data_dir: Optional[str] = None

    def params_for(self, intent: Intent) -> IntentParams:
        """Return the parameter tuple for an intent, falling back to general."""
        params = self.intent_params.get(Intent(intent).value)
        if params is None:
            params = self.intent_params[Intent.GENERAL.value]
        return params

    def fusion_profile_for(self, intent: Intent) -> FusionProfile:
        name = self.intent_fusion_profile.get(Intent(intent).value, "balanced")
        return self.fusion_profiles.get(name) or FusionProfile()

    @classmethod
    def from_env(cls, **overrides) -> "RetrievalSettings":
        """Build settings from environment variables.

        Explicit keyword overrides win over the environment.
        """
        values = {
            "data_dir": os.getenv("KB_DATA_DIR"),
            "api_key": os.getenv("EMBEDDING_API_KEY") or os.getenv("SILICONFLOW_API_KEY"),
            "api_base": os.getenv("EMBEDDING_API_BASE", cls.model_fields["api_base"].default),
            "embedding_model": os.getenv("EMBEDDING_MODEL", cls.model_fields["embedding_model"].default),
            "rerank_model": os.getenv("RERANK_MODEL", cls.model_fields["rerank_model"].default),
            "cache_ttl": float(os.getenv("CACHE_TTL", "900")),
            "embedding_batch_size": int(os.getenv("EMBEDDING_BATCH_SIZE", "10")),
            "relevance_ratio": float(os.getenv("RELEVANCE_RATIO", "0.25")),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        settings = cls(**values)
        logger.debug(f"Loaded settings from environment (data_dir={settings.data_dir})")
        return settings
