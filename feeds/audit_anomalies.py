"""LiveGuard register of ledger anomalies flagged by the audit triggers."""

from __future__ import annotations

from feed_registry import FeedSpec
from models.rows import AuditAnomaly

ALERT_RISK_SCORE = 80.0


def _summary(a: AuditAnomaly) -> str:
    return f"risk {a.risk_score:.0f}: {a.description or 'unlabelled anomaly'}"


FEED = FeedSpec(
    name="audit_anomalies",
    table="audit_anomalies",
    channel="liveguard_anomalies",
    source="view_admin_critical_anomalies",
    order_by="detected_at",
    model=AuditAnomaly,
    capacity=100,
    alert=lambda a: a.risk_score >= ALERT_RISK_SCORE,
    summary=_summary,
    description="Anomalies detected by the ledger defense triggers.",
)
