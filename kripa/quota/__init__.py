"""Daily quota enforcement."""

from kripa.quota.guard import QuotaDecision, QuotaGuard, quota_day

__all__ = ["QuotaDecision", "QuotaGuard", "quota_day"]
