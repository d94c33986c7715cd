"""Aggregation of day shards into a stats report.

Every function here is pure over already-loaded shards so it can run
concurrently with ledger writes.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from kripa.ledger.models import DailyShard, ShardArchive, detail_entries

POWER_USER_QUESTIONS = 3


@dataclass
class DayContent:
    """Everything persisted for one day."""

    day: str
    shard: DailyShard | None = None
    archive: ShardArchive | None = None


class Totals(BaseModel):
    users: int = 0
    questions: int = 0
    sessions: int = 0
    page_views: int = 0
    feedback: int = 0
    rate_limit_hits: int = 0


class FeatureReport(BaseModel):
    count: int = 0
    unique_users: int = 0
    adoption: float = 0.0


class Engagement(BaseModel):
    mean_session_duration_seconds: float = 0.0
    mean_questions_per_user: float = 0.0
    bounce_rate: float = 0.0
    return_user_rate: float = 0.0
    power_users: int = 0
    power_user_rate: float = 0.0


class StatsReport(BaseModel):
    """Aggregate view over a day range."""

    start: str
    end: str
    days: list[str] = Field(default_factory=list)
    corrupt_days: list[str] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)
    topic_distribution: dict[str, int] = Field(default_factory=dict)
    language_distribution: dict[str, int] = Field(default_factory=dict)
    feature_usage: dict[str, FeatureReport] = Field(default_factory=dict)
    helpful_rate: float = 0.0
    engagement: Engagement = Field(default_factory=Engagement)


def ratio(numerator: float, denominator: float) -> float:
    """Division that reports 0.0 for an empty denominator."""
    return numerator / denominator if denominator else 0.0


@dataclass
class _UserTally:
    questions: int = 0
    rate_limit_hits: int = 0
    sessions: set[str] = field(default_factory=set)


def aggregate(
    contents: list[DayContent],
    start: str,
    end: str,
    corrupt_days: list[str] | None = None,
) -> StatsReport:
    """Merge day contents into one report.

    Users are counted once across the range (by fingerprint); sessions are
    counted once by id.

    Args:
        contents: Loaded days (missing days may be omitted)
        start: First day of the range
        end: Last day of the range
        corrupt_days: Days skipped because their files could not be parsed

    Returns:
        StatsReport
    """
    users: dict[str, _UserTally] = {}
    session_durations: dict[str, float] = {}
    session_page_views: dict[str, int] = {}
    topics: Counter[str] = Counter()
    languages: Counter[str] = Counter()
    feature_counts: Counter[str] = Counter()
    feature_users: dict[str, set[str]] = {}
    totals = Totals()
    helpful = 0
    days: list[str] = []

    for content in contents:
        shard, archive = content.shard, content.archive
        if shard is None and archive is None:
            continue
        days.append(content.day)

        questions = detail_entries(shard, archive, "questions")
        feedback = detail_entries(shard, archive, "feedback")
        totals.questions += len(questions)
        totals.page_views += len(detail_entries(shard, archive, "page_views"))
        totals.feedback += len(feedback)
        totals.rate_limit_hits += len(detail_entries(shard, archive, "rate_limit_hits"))
        helpful += sum(1 for entry in feedback if entry.helpful)

        for entry in questions:
            topics[entry.topic or "unknown"] += 1
            languages[entry.language or "unknown"] += 1

        if shard is None:
            continue

        for fingerprint, activity in shard.users.items():
            tally = users.setdefault(fingerprint, _UserTally())
            tally.questions += activity.questions
            tally.rate_limit_hits += activity.rate_limit_hits
            tally.sessions.update(activity.sessions)

        for session_id, session in shard.sessions.items():
            session_durations[session_id] = max(
                session_durations.get(session_id, 0.0), session.duration_seconds
            )
            session_page_views[session_id] = session_page_views.get(session_id, 0) + session.page_views

        for name, usage in shard.feature_usage.items():
            feature_counts[name] += usage.count
            feature_users.setdefault(name, set()).update(usage.users)

    totals.users = len(users)
    totals.sessions = len(session_durations)

    bounces = sum(1 for views in session_page_views.values() if views <= 1)
    returning = sum(1 for tally in users.values() if len(tally.sessions) > 1)
    power = sum(
        1
        for tally in users.values()
        if tally.questions >= POWER_USER_QUESTIONS or tally.rate_limit_hits > 0
    )
    user_questions = sum(tally.questions for tally in users.values())

    return StatsReport(
        start=start,
        end=end,
        days=days,
        corrupt_days=corrupt_days or [],
        totals=totals,
        topic_distribution=dict(topics.most_common()),
        language_distribution=dict(languages.most_common()),
        feature_usage={
            name: FeatureReport(
                count=count,
                unique_users=len(feature_users[name]),
                adoption=ratio(len(feature_users[name]), totals.users),
            )
            for name, count in feature_counts.most_common()
        },
        helpful_rate=ratio(helpful, totals.feedback),
        engagement=Engagement(
            mean_session_duration_seconds=ratio(sum(session_durations.values()), totals.sessions),
            mean_questions_per_user=ratio(user_questions, totals.users),
            bounce_rate=ratio(bounces, totals.sessions),
            return_user_rate=ratio(returning, totals.users),
            power_users=power,
            power_user_rate=ratio(power, totals.users),
        ),
    )
