"""Question answering request/result models."""

from pydantic import BaseModel, Field


class SourceReference(BaseModel):
    """A retrieved fragment's origin, as shown next to an answer."""

    title: str
    description: str
    score: float


class QueryResult(BaseModel):
    """Answer plus the fragments it was built from."""

    answer: str
    sources: list[SourceReference] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(default_factory=list)
