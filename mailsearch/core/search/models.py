"""
Search data model.

Pydantic models shared by the indexing and query paths. Field names are
snake_case in Python; collaborators receive camelCase keys via aliases.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SNIPPET_MAX_CHARS = 200
BODY_MAX_CHARS = 5000


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SortMode(str, Enum):
    """Lexical result ordering."""
    RELEVANCE = "relevance"
    DATE_DESC = "date_desc"
    DATE_ASC = "date_asc"


class SearchDocument(_CamelModel):
    """Indexable view of a message. Identity is (owner, id)."""
    id: str
    subject: str = ""
    sender_name: str = ""
    sender_email: str = ""
    snippet: str = ""
    body_text: str = ""
    received_at: Optional[datetime] = None
    status: str = "inbox"

    @field_validator("subject", "sender_name", "sender_email", "snippet", "body_text", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("snippet")
    @classmethod
    def _cap_snippet(cls, value: str) -> str:
        return value[:SNIPPET_MAX_CHARS]

    @field_validator("body_text")
    @classmethod
    def _cap_body(cls, value: str) -> str:
        return value[:BODY_MAX_CHARS]

    def embedding_text(self) -> str:
        """Text fed to the embedding provider."""
        return f"{self.subject} {self.body_text}".strip()


class RawMessage(_CamelModel):
    """Message as supplied by the message store collaborator."""
    subject: Optional[str] = None
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    body_html_or_text: Optional[str] = None
    snippet: Optional[str] = None
    received_at: Optional[datetime] = None
    status: Optional[str] = None


class SearchFilters(_CamelModel):
    """Required (AND) predicates, independent of ranking."""
    unread_only: bool = False
    sender: Optional[str] = None
    status: Optional[str] = None


class SearchResultItem(_CamelModel):
    id: str
    subject: str = ""
    sender_name: str = ""
    sender_email: str = ""
    snippet: str = ""
    received_at: Optional[datetime] = None
    status: str = "inbox"
    # Unit-less; lexical and semantic scores are not comparable
    score: float = 0.0


class SearchResult(_CamelModel):
    total: int = 0
    items: List[SearchResultItem] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "SearchResult":
        return cls(total=0, items=[])

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
