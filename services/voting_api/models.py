"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, List, Literal
from pydantic import BaseModel, Field, validator


class CreateVoteRequest(BaseModel):
    """Vote creation request model."""

    voter_id: str = Field(..., description="Caller supplied vote identifier")
    options: List[str] = Field(..., description="Options users can choose from")
    user_list: List[str] = Field(..., description="Email addresses of eligible users")

    @validator("voter_id")
    def validate_voter_id(cls, v):
        """Validate voter_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Vote ID cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "voter_id": "lunch2024",
                "options": ["pizza", "sushi"],
                "user_list": ["a@example.com", "b@example.com"]
            }
        }


class CastVoteRequest(BaseModel):
    """Ballot submission request model."""

    vote_id: str = Field(..., description="Vote identifier")
    email: str = Field(..., description="Email address of the voter")
    option: str = Field(..., description="Chosen option")

    class Config:
        json_schema_extra = {
            "example": {
                "vote_id": "lunch2024",
                "email": "a@example.com",
                "option": "pizza"
            }
        }


class MessageResponse(BaseModel):
    """Plain message response, also used for errors."""

    message: str = Field(..., description="Response message")


class ResultsResponse(BaseModel):
    """Vote results response model."""

    results: Dict[str, int] = Field(..., description="Ballot count per option; options without votes are omitted")

    class Config:
        json_schema_extra = {
            "example": {
                "results": {"pizza": 2, "sushi": 1}
            }
        }


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")
