from __future__ import annotations

import json
from typing import Any, Dict, Iterable

from ..domain.models import Tweet, UserRecord

PROMPT_VERSION = "^1.0"


def format_tweet(tweet: Tweet, username: str) -> str:
    prefix = "RT " if tweet.is_retweet else ""
    author = (tweet.author.user_name if tweet.author else None) or username
    quoted = "\n> ".join((tweet.text or "").split("\n"))
    stats = (
        f"*retweets: {tweet.retweet_count or 0}, replies: {tweet.reply_count or 0}, "
        f"likes: {tweet.like_count or 0}, quotes: {tweet.quote_count or 0}, views: {tweet.view_count or 0}*"
    )
    return f"**{prefix}@{author} - {tweet.created_at or ''}**\n\n> {quoted}\n\n{stats}"


def tweets_markdown(tweets: Iterable[Tweet], username: str) -> str:
    return "\n---\n\n".join(format_tweet(t, username) for t in tweets)


def build_inputs(user: UserRecord) -> Dict[str, Any]:
    """Inputs payload for one analysis run of ``user``."""
    profile = user.full_profile
    if profile is not None and not isinstance(profile, str):
        profile = json.dumps(profile, default=str)
    return {
        "tweets": f"Tweets: {tweets_markdown(user.tweets, user.username)}",
        "profilePicture": user.profile_picture or "",
        "profileInfo": profile or "",
        "version": PROMPT_VERSION,
    }
