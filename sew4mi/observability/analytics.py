from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from sew4mi.models import (
    MilestoneApprovalAction,
    MilestoneApprovalStatus,
    MilestoneStage,
    Order,
    OrderMilestone,
    User,
    as_utc,
    utcnow,
)

TIME_RANGES = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "all": None,
}

ALERT_MIN_MILESTONES = 5
CRITICAL_REJECTION_RATE = 30.0
WARNING_REJECTION_RATE = 15.0


@dataclass
class _Tally:
    total: int = 0
    approved: int = 0
    rejected: int = 0
    pending: int = 0
    auto_approved: int = 0
    review_hours_total: float = 0.0
    reviewed: int = 0

    def add(self, milestone: OrderMilestone) -> None:
        self.total += 1
        status = MilestoneApprovalStatus(milestone.approval_status)
        if status == MilestoneApprovalStatus.PENDING:
            self.pending += 1
            return
        if status == MilestoneApprovalStatus.REJECTED:
            self.rejected += 1
        else:
            self.approved += 1
            if _was_auto_approved(milestone):
                self.auto_approved += 1
        if milestone.verified_at and milestone.customer_reviewed_at:
            delta = as_utc(milestone.customer_reviewed_at) - as_utc(milestone.verified_at)
            self.review_hours_total += delta.total_seconds() / 3600
            self.reviewed += 1

    @property
    def decided(self) -> int:
        return self.approved + self.rejected

    @property
    def rejection_rate(self) -> float:
        return round(self.rejected / self.decided * 100, 2) if self.decided else 0.0

    @property
    def approval_rate(self) -> float:
        return round(self.approved / self.decided * 100, 2) if self.decided else 0.0

    @property
    def average_review_hours(self) -> float:
        return round(self.review_hours_total / self.reviewed, 2) if self.reviewed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "approved": self.approved,
            "rejected": self.rejected,
            "pending": self.pending,
            "auto_approved": self.auto_approved,
            "average_review_hours": self.average_review_hours,
            "rejection_rate": self.rejection_rate,
        }


def _was_auto_approved(milestone: OrderMilestone) -> bool:
    return any(a.action == MilestoneApprovalAction.AUTO_APPROVED for a in milestone.approvals)


def resolve_time_range(time_range: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the window named by ``time_range``; None means unbounded."""
    key = time_range or "30d"
    if key not in TIME_RANGES:
        raise ValueError(f"Unknown time range: {time_range}")
    span = TIME_RANGES[key]
    return None if span is None else (now or utcnow()) - span


def rejection_alerts(tailor_rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    alerts = []
    for row in tailor_rows:
        if row["decided"] < ALERT_MIN_MILESTONES:
            continue
        rate = row["rejection_rate"]
        if rate > CRITICAL_REJECTION_RATE:
            severity = "CRITICAL"
        elif rate > WARNING_REJECTION_RATE:
            severity = "WARNING"
        else:
            continue
        alerts.append({
            "type": "HIGH_REJECTION_RATE",
            "severity": severity,
            "tailor_id": row["tailor_id"],
            "rejection_rate": rate,
            "message": f"Tailor {row['tailor_name']} has a {rate:.1f}% rejection rate",
        })
    alerts.sort(key=lambda alert: alert["rejection_rate"], reverse=True)
    return alerts


def compute_milestone_analytics(
    session: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    tailor_id: Optional[int] = None,
) -> Dict[str, Any]:
    query = session.query(OrderMilestone).join(Order, OrderMilestone.orderID == Order.orderID)
    if date_from:
        query = query.filter(OrderMilestone.verified_at >= date_from)
    if date_to:
        query = query.filter(OrderMilestone.verified_at <= date_to)
    if tailor_id:
        query = query.filter(Order.tailorID == tailor_id)
    milestones = query.all()

    overview = _Tally()
    by_stage: Dict[str, _Tally] = {stage.value: _Tally() for stage in MilestoneStage}
    by_tailor: Dict[int, _Tally] = defaultdict(_Tally)
    rejection_reasons: Dict[str, Counter] = defaultdict(Counter)
    for milestone in milestones:
        stage = MilestoneStage(milestone.milestone).value
        overview.add(milestone)
        by_stage[stage].add(milestone)
        by_tailor[milestone.order.tailorID].add(milestone)
        if milestone.rejection_reason:
            rejection_reasons[stage][milestone.rejection_reason.strip().lower()[:100]] += 1

    names = {
        user.userID: user.display_name
        for user in session.query(User).filter(User.userID.in_(list(by_tailor))).all()
    } if by_tailor else {}
    tailor_rows = [
        {
            "tailor_id": tid,
            "tailor_name": names.get(tid, str(tid)),
            "total": tally.total,
            "decided": tally.decided,
            "approval_rate": tally.approval_rate,
            "rejection_rate": tally.rejection_rate,
            "average_review_hours": tally.average_review_hours,
        }
        for tid, tally in by_tailor.items()
    ]
    tailor_rows.sort(key=lambda row: row["rejection_rate"], reverse=True)

    return {
        "overview": overview.to_dict(),
        "milestone_breakdown": [{"milestone": stage, **tally.to_dict()} for stage, tally in by_stage.items()],
        "tailor_performance": tailor_rows,
        "rejection_patterns": {
            stage: [{"reason": reason, "count": count} for reason, count in counter.most_common(5)]
            for stage, counter in rejection_reasons.items()
        },
        "alerts": rejection_alerts(tailor_rows),
    }


__all__ = [
    "TIME_RANGES",
    "resolve_time_range",
    "rejection_alerts",
    "compute_milestone_analytics",
]
