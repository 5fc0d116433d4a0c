"""Tunable retrieval settings, resolved once from the environment at startup."""

import os
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from shared.clients.rag.models.VectorPoint import parse_sent_date
from shared.helper.HelperConfig import HelperConfig


class TemporalWeights(BaseModel):
    """Multipliers applied to the combined score depending on the age of an email."""

    recent: float = 1.0     # 0-3 months
    medium: float = 0.85    # 3-6 months
    old: float = 0.7        # 6-12 months
    very_old: float = 0.5   # 12+ months

    def weight_for(self, sent_date: str | None, now: datetime) -> float:
        """Age weight of an email; 30-day months.

        Emails without a date, or with one that cannot be parsed, are treated as recent.
        """
        sent = parse_sent_date(sent_date)
        if sent is None:
            return self.recent
        age_months = (now - sent).total_seconds() / (60 * 60 * 24 * 30)
        if age_months <= 3:
            return self.recent
        if age_months <= 6:
            return self.medium
        if age_months <= 12:
            return self.old
        return self.very_old


class RetrievalSettings(BaseModel):
    """Every knob of the hybrid query service and the sparse migration.

    Attributes:
        vector_dimension:        Dense vector length of this deployment.
        vector_distance:         Distance metric used when creating collections.
        overfetch_multiplier:    Candidates fetched per signal = multiplier x limit.
        semantic_weight:         Weight of the normalised semantic score.
        lexical_weight:          Weight of the normalised lexical score.
        score_threshold:         Default minimum combined score.
        default_limit:           Default number of results.
        missing_score_floor:     Normalised score used for a signal that did not retrieve a candidate.
        search_timeout:          Total time budget of one search, in seconds.
        temporal_ranking:        Order results by the temporal score instead of the combined score.
        temporal_weights:        Age buckets for the temporal score.
        migration_batch_size:    Points per sparse upsert request.
        scan_page_size:          Points per scan page.
        bm25_k1:                 Term-frequency saturation.
        bm25_b:                  Document-length normalisation strength.
        lexical_state_dir:       Directory holding published lexical encoder states.
        semantic_cache_size:     Number of query embeddings kept in memory.
    """

    vector_dimension: int = Field(default=384, gt=0)
    vector_distance: str = "Cosine"
    overfetch_multiplier: int = Field(default=10, ge=1)
    semantic_weight: float = 0.7
    lexical_weight: float = 0.3
    score_threshold: float = 0.5
    default_limit: int = Field(default=5, gt=0)
    missing_score_floor: float = Field(default=0.0, ge=0.0, le=1.0)
    search_timeout: float = Field(default=5.0, gt=0)
    temporal_ranking: bool = False
    temporal_weights: TemporalWeights = Field(default_factory=TemporalWeights)
    migration_batch_size: int = Field(default=100, gt=0)
    scan_page_size: int = Field(default=1000, gt=0)
    bm25_k1: float = Field(default=1.5, ge=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    lexical_state_dir: str = "data/lexical_state"
    semantic_cache_size: int = Field(default=1024, ge=0)

    @field_validator("semantic_weight", "lexical_weight")
    @classmethod
    def _non_negative_weight(cls, value: float) -> float:
        if value < 0:
            raise ValueError(f"Signal weights must be non-negative, got {value}.")
        return value

    @classmethod
    def from_helper_config(cls, helper_config: HelperConfig) -> "RetrievalSettings":
        """Build the settings from environment variables, falling back to the defaults above."""
        defaults = cls()
        root_dir = os.environ.get("ROOT_DIR", os.getcwd())
        return cls(
            vector_dimension=helper_config.get_number_val("VECTOR_DIMENSION", default=defaults.vector_dimension),
            vector_distance=helper_config.get_string_val("VECTOR_DISTANCE", default=defaults.vector_distance),
            overfetch_multiplier=helper_config.get_number_val("SEARCH_OVERFETCH_MULTIPLIER", default=defaults.overfetch_multiplier),
            semantic_weight=helper_config.get_float_val("SEARCH_SEMANTIC_WEIGHT", default=defaults.semantic_weight),
            lexical_weight=helper_config.get_float_val("SEARCH_LEXICAL_WEIGHT", default=defaults.lexical_weight),
            score_threshold=helper_config.get_float_val("SEARCH_SCORE_THRESHOLD", default=defaults.score_threshold),
            default_limit=helper_config.get_number_val("SEARCH_DEFAULT_LIMIT", default=defaults.default_limit),
            missing_score_floor=helper_config.get_float_val("SEARCH_MISSING_SCORE_FLOOR", default=defaults.missing_score_floor),
            search_timeout=helper_config.get_float_val("SEARCH_TIMEOUT", default=defaults.search_timeout),
            temporal_ranking=helper_config.get_bool_val("SEARCH_TEMPORAL_RANKING", default=defaults.temporal_ranking),
            temporal_weights=TemporalWeights(
                recent=helper_config.get_float_val("TEMPORAL_WEIGHT_0_3M", default=1.0),
                medium=helper_config.get_float_val("TEMPORAL_WEIGHT_3_6M", default=0.85),
                old=helper_config.get_float_val("TEMPORAL_WEIGHT_6_12M", default=0.7),
                very_old=helper_config.get_float_val("TEMPORAL_WEIGHT_12M_PLUS", default=0.5),
            ),
            migration_batch_size=helper_config.get_number_val("MIGRATION_BATCH_SIZE", default=defaults.migration_batch_size),
            scan_page_size=helper_config.get_number_val("MIGRATION_SCAN_PAGE_SIZE", default=defaults.scan_page_size),
            bm25_k1=helper_config.get_float_val("BM25_K1", default=defaults.bm25_k1),
            bm25_b=helper_config.get_float_val("BM25_B", default=defaults.bm25_b),
            lexical_state_dir=helper_config.get_string_val(
                "LEXICAL_STATE_DIR", default=os.path.join(root_dir, defaults.lexical_state_dir)
            ),
            semantic_cache_size=helper_config.get_number_val("SEMANTIC_CACHE_SIZE", default=defaults.semantic_cache_size),
        )
