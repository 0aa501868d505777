"""Pydantic models for per-call retrieval options and health reports"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator

from context_rag.config import settings


class SearchFilters(BaseModel):
    content_types: Optional[List[str]] = Field(None, description="Restrict to these content types")
    start_date: Optional[datetime] = Field(None, description="Only items created at or after this time")
    end_date: Optional[datetime] = Field(None, description="Only items created at or before this time")
    topics: Optional[List[str]] = Field(None, description="Items tagged with at least one of these topics")

    @model_validator(mode="after")
    def check_date_range(self) -> "SearchFilters":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class HybridSearchConfig(BaseModel):
    semantic_weight: float = Field(settings.hybrid_semantic_weight, ge=0.0, description="Weight of cosine similarity")
    keyword_weight: float = Field(settings.hybrid_keyword_weight, ge=0.0, description="Weight of full-text rank")
    top_k: int = Field(settings.hybrid_candidate_pool, ge=1, le=200, description="Max results per leg and overall")
    min_similarity: float = Field(settings.hybrid_min_similarity, ge=0.0, le=1.0, description="Fused-score floor")
    filters: Optional[SearchFilters] = None


class RAGConfig(BaseModel):
    use_cache: bool = Field(True, description="Consult and populate the semantic cache")
    top_k: int = Field(5, ge=1, le=50, description="Documents returned to the caller")
    min_relevance: float = Field(0.6, ge=0.0, le=1.0, description="Fused-score floor for candidates")
    enable_reranking: bool = Field(True, description="Rerank candidates before truncation")
    semantic_weight: float = Field(0.7, ge=0.0)
    keyword_weight: float = Field(0.3, ge=0.0)
    candidate_pool: int = Field(settings.hybrid_candidate_pool, ge=1, le=200, description="Candidates fetched before reranking")
    filters: Optional[SearchFilters] = None

    def to_search_config(self) -> HybridSearchConfig:
        return HybridSearchConfig(
            semantic_weight=self.semantic_weight,
            keyword_weight=self.keyword_weight,
            top_k=self.candidate_pool,
            min_similarity=self.min_relevance,
            filters=self.filters,
        )


class HealthReport(BaseModel):
    status: str = Field(..., description="healthy, degraded or unhealthy")
    issues: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    checks: Dict[str, bool] = Field(default_factory=dict)
