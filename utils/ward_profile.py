"""Per-ward aggregation of pollution readings and complaints for the public profile."""
from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import func

from extensions import db
from models import COMPLAINT_CATEGORIES, COMPLAINT_STATUSES, Complaint, WardMetric
from utils.wards import aqi_category, status_from_score, status_label, ward_label, zone_for

POLLUTION_COMPONENTS: tuple[tuple[str, str], ...] = (
    ("air_quality", "Air Quality"),
    ("water_quality", "Water Quality"),
    ("waste_management", "Waste Management"),
    ("noise_level", "Noise Level"),
)


def metric_payload(metric: Optional[WardMetric]) -> Optional[Dict]:
    if metric is None:
        return None
    status = status_from_score(metric.pollution_score)
    return {
        "pollution_score": metric.pollution_score,
        "status": status,
        "status_label": status_label(status),
        "aqi": metric.aqi,
        "aqi_category": aqi_category(metric.aqi),
        "pm25": metric.pm25,
        "trend_7_days": metric.trend_7_days,
        "trend_30_days": metric.trend_30_days,
        "breakdown": [
            {"type": key, "label": label, "value": getattr(metric, key)}
            for key, label in POLLUTION_COMPONENTS
        ],
        "source": metric.source,
        "recorded_at": metric.recorded_at.isoformat() if metric.recorded_at else None,
    }


def _counts(column, ward_id: int) -> Dict[str, int]:
    rows = (
        db.session.query(column, func.count(Complaint.id))
        .filter(Complaint.ward_number == ward_id)
        .group_by(column)
        .all()
    )
    return {key: count for key, count in rows}


def build_ward_profile(ward_id: int, complaint_limit: int = 20) -> Dict:
    complaints = (
        Complaint.query.filter_by(ward_number=ward_id)
        .order_by(Complaint.created_at.desc())
        .limit(complaint_limit)
        .all()
    )
    by_category = _counts(Complaint.category, ward_id)
    by_status = _counts(Complaint.status, ward_id)
    return {
        "ward": {"id": ward_id, "name": ward_label(ward_id), "zone": zone_for(ward_id)},
        "metrics": metric_payload(WardMetric.latest_for(ward_id)),
        "complaint_summary": {
            "total": sum(by_category.values()),
            "by_category": {name: by_category.get(name, 0) for name in COMPLAINT_CATEGORIES},
            "by_status": {name: by_status.get(name, 0) for name in COMPLAINT_STATUSES},
        },
        "complaints": [complaint.public_payload() for complaint in complaints],
    }
