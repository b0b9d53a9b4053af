from typing import Optional, List
from sqlmodel import SQLModel, Field, Column, JSON
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Article(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    source_feed_id: str = ""
    url: str = ""
    title: str
    body: str = ""
    published_at: Optional[datetime] = None
    content_hash: str = Field(index=True, unique=True)


class ArticleMetadata(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    article_id: int = Field(index=True)
    summary: str
    sentiment_label: str = "neutral"  # positive | negative | neutral
    sentiment_score: float = 0.0      # -1.0 .. 1.0
    keywords: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    topics: List[str] = Field(default_factory=list, sa_column=Column(JSON))  # set semantics, kept sorted
    generated_at: datetime = Field(default_factory=utcnow)
    model_version: str = ""
    degraded: bool = False

    @property
    def sentiment(self) -> dict:
        return {"label": self.sentiment_label, "score": self.sentiment_score}


class AdjustmentLogEntry(SQLModel, table=True):
    # Append-only; one row per applied chat adjustment
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    persona_name: str
    base_persona_version: str
    result_persona_version: str
    requested_delta: dict = Field(default_factory=dict, sa_column=Column(JSON))
    applied_delta: dict = Field(default_factory=dict, sa_column=Column(JSON))
    rejected_fields: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    parser: str = "model"
    ts: datetime = Field(default_factory=utcnow)
