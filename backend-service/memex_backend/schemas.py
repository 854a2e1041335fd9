from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

SortOrder = Literal["relevance", "last_occurrence_desc", "occurrence_count_desc", "title_az", "title_za"]


class MessageInput(BaseModel):
    id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    sender: Literal["human", "assistant"]
    content: str = Field(min_length=1)
    created_at: int = 0


class ConversationInput(BaseModel):
    id: str = Field(min_length=1)
    external_id: str | None = None
    source: str = Field(min_length=1)
    title: str | None = None
    created_at: int = 0
    updated_at: int = 0
    message_count: int | None = None
    messages: list[MessageInput] = Field(default_factory=list)


class ConversationBatchRequest(BaseModel):
    conversations: list[ConversationInput]


class ImportResponse(BaseModel):
    source: str | None = None
    conversation_count: int
    message_count: int


class SearchResultRow(BaseModel):
    conversation_id: str
    title: str
    source: str
    created_at: int
    last_occurrence: int
    occurrence_count: int
    message_match_count: int
    rank: int
    first_match_message_id: str | None = None
    snippet: str = ""
    snippets: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    rows: list[SearchResultRow]
    total_matches: int
    total_occurrences: int | None = None


class BrowseResponse(BaseModel):
    rows: list[SearchResultRow]
    total_matches: int


class ConversationResponse(BaseModel):
    id: str
    source: str
    title: str
    created_at: int
    updated_at: int
    message_count: int


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender: Literal["human", "assistant"]
    content: str
    created_at: int


class StatsResponse(BaseModel):
    conversation_count: int
    message_count: int
    indexed_message_count: int
    latest_message_timestamp: int | None = None


class SourceStatsResponse(BaseModel):
    source: str
    label: str
    conversation_count: int
    message_count: int
    last_activity_timestamp: int | None = None


class ActivityResponse(BaseModel):
    days: int
    counts: list[int]


class ReindexResponse(BaseModel):
    indexed_message_count: int


class ImportSourceResponse(BaseModel):
    id: str
    label: str
    available: bool
