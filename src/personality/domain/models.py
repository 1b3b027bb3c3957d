from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class TweetAuthor(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_name: Optional[str] = Field(default=None, alias="userName")


class Tweet(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    is_retweet: bool = Field(default=False, alias="isRetweet")
    author: Optional[TweetAuthor] = None
    retweet_count: Optional[int] = Field(default=None, alias="retweetCount")
    reply_count: Optional[int] = Field(default=None, alias="replyCount")
    like_count: Optional[int] = Field(default=None, alias="likeCount")
    quote_count: Optional[int] = Field(default=None, alias="quoteCount")
    view_count: Optional[int] = Field(default=None, alias="viewCount")


class UserRecord(BaseModel):
    username: str
    created_at: datetime
    profile_picture: Optional[str] = None
    full_profile: Optional[Any] = None
    tweets: List[Tweet] = Field(default_factory=list)
    analysis: Dict[str, Any] = Field(default_factory=dict)

    wordware_started: bool = False
    wordware_started_time: Optional[datetime] = None
    wordware_completed: bool = False
    paid_wordware_started: bool = False
    paid_wordware_started_time: Optional[datetime] = None
    paid_wordware_completed: bool = False


class AnalysisRequest(BaseModel):
    username: str
    full: bool = Field(default=False, description="Run the paid (full) analysis instead of the free roast")


class AnalysisStatus(BaseModel):
    username: str
    wordware_started: bool
    wordware_completed: bool
    paid_wordware_started: bool
    paid_wordware_completed: bool
    analysis: Dict[str, Any] = Field(default_factory=dict)
