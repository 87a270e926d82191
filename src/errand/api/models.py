"""
Pydantic models for errand API requests and responses.
This module defines the request and response schemas used by the errand API.
"""

from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from errand.core.schema import TranscriptEntry


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class AgentRequest(BaseModel):
    """Incoming user request."""

    query: str = Field(..., min_length=1, description="Natural-language request")
    specialization: Optional[str] = Field(
        None, description="Name of the specialization to start with"
    )


class AgentResponse(BaseModel):
    """API response returned to the caller."""

    answer: str
    transcript: List[TranscriptEntry]
    specialization: Optional[str] = None
    iterations: int


class SpecializationInfo(BaseModel):
    """One selectable specialization."""

    name: str
    instructions: str
