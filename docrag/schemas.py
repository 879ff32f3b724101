"""Request models for the HTTP API.

Field names are snake_case; the camelCase names used by browser clients
(`chunkSize`, `conversationHistory`, `method`) are accepted as aliases.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docrag import config


class APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConversationTurn(APIModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChunkRequest(APIModel):
    text: str
    strategy: str = Field(default="fixed_size", alias="method")
    chunk_size: int = Field(default=config.API_CHUNK_SIZE, alias="chunkSize", gt=0)
    overlap: int = Field(default=config.API_CHUNK_OVERLAP, ge=0)
    delimiter: Optional[str] = None

    @field_validator("delimiter")
    @classmethod
    def delimiter_not_empty(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value == "":
            raise ValueError("delimiter cannot be empty")
        return value


class IngestDocument(APIModel):
    name: str = Field(min_length=1)
    content: str
    source: str = "upload"
    type: Optional[str] = None
    url: Optional[str] = None


class IngestRequest(APIModel):
    documents: List[IngestDocument] = Field(min_length=1)
    strategy: Optional[str] = Field(default=None, alias="method")
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0)
    overlap: Optional[int] = Field(default=None, ge=0)
    force: bool = False


class QueryRequest(APIModel):
    query: str = Field(min_length=1, max_length=config.MAX_QUERY_LENGTH)
    history: List[ConversationTurn] = Field(default_factory=list, alias="conversationHistory")
    stream: bool = False

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query cannot be empty")
        return value
