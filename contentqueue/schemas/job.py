"""Job schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models.job import (
    ALLOWED_MODELS, DEFAULT_MODEL, MAX_CATEGORIES, MAX_TAGS,
    PROMPT_TEMPLATE_MAX_LENGTH, TOPIC_MAX_LENGTH,
)


def _clean_labels(values: Optional[List[str]]) -> List[str]:
    """Strip, drop blanks, and dedupe while keeping order."""
    seen: list[str] = []
    for value in values or []:
        item = value.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


class JobCreate(BaseModel):
    """Enqueue request. Rejected before any row is written."""
    topic: str
    prompt_template: Optional[str] = None
    model: str = DEFAULT_MODEL
    tags: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)

    @field_validator('topic')
    @classmethod
    def validate_topic(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Topic cannot be empty")
        if len(v) > TOPIC_MAX_LENGTH:
            raise ValueError(f"Topic exceeds {TOPIC_MAX_LENGTH} characters")
        return v

    @field_validator('prompt_template')
    @classmethod
    def validate_prompt_template(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        if not v.strip():
            return None
        if len(v) > PROMPT_TEMPLATE_MAX_LENGTH:
            raise ValueError(f"Prompt template exceeds {PROMPT_TEMPLATE_MAX_LENGTH} characters")
        return v

    @field_validator('model')
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in ALLOWED_MODELS:
            raise ValueError(f"Unsupported model '{v}'. Must be one of: {list(ALLOWED_MODELS)}")
        return v

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        v = _clean_labels(v)
        if len(v) > MAX_TAGS:
            raise ValueError(f"At most {MAX_TAGS} tags allowed")
        return v

    @field_validator('categories')
    @classmethod
    def validate_categories(cls, v: List[str]) -> List[str]:
        v = _clean_labels(v)
        if len(v) > MAX_CATEGORIES:
            raise ValueError(f"At most {MAX_CATEGORIES} categories allowed")
        return v


class JobResponse(BaseModel):
    """Read model for inspection surfaces."""
    id: str
    topic: str
    prompt_template: Optional[str] = None
    model: str
    tags: List[str] = []
    categories: List[str] = []
    status: str
    retry_count: int
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    generated_title: Optional[str] = None
    published_ref: Optional[str] = None
    duplicate_of_job_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobRunResponse(BaseModel):
    """One processing attempt."""
    id: int
    job_id: str
    attempt: int
    outcome: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    generation_ms: Optional[int] = None
    publish_ms: Optional[int] = None
    total_ms: Optional[int] = None
    error_details: Optional[dict] = None
    created_at: datetime

    class Config:
        from_attributes = True


class JobPage(BaseModel):
    """A page of jobs, newest first."""
    items: List[JobResponse]
    page: int
    page_size: int
    status: Optional[str] = None


class IntegrityReport(BaseModel):
    """Invariant check result for a stored job."""
    job_id: str
    is_valid: bool
    violations: List[str] = []
