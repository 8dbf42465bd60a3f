"""
KPI metric catalog and role applicability.

Every KPI target must reference a metric listed here and the metric must
be declared applicable to the target's role.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from kpi_coach.models.enums import Role


@dataclass(frozen=True)
class MetricDef:
    key: str
    label: str
    description: str
    roles: Tuple[Role, ...]
    unit: str = "%"


KPI_METRICS_CATALOG: List[MetricDef] = [
    MetricDef(
        key="has_phone_rate_pct",
        label="Phone capture rate",
        description="Share of message leads without a phone number that page staff turned into a phone contact.",
        roles=(Role.DIRECT_PAGE,),
    ),
    MetricDef(
        key="appointed_rate_pct",
        label="Appointment rate",
        description="Appointments booked over leads with a phone number, per consultant.",
        roles=(Role.TELESALES,),
    ),
    MetricDef(
        key="arrived_rate_pct",
        label="Arrival rate",
        description="Leads who showed up over leads with an appointment, per consultant.",
        roles=(Role.TELESALES,),
    ),
    MetricDef(
        key="signed_rate_pct",
        label="Signing rate",
        description="Leads who signed up over leads who arrived, per consultant.",
        roles=(Role.TELESALES,),
    ),
]

_METRIC_MAP: Dict[str, MetricDef] = {m.key: m for m in KPI_METRICS_CATALOG}

ROLE_LABELS = {
    Role.DIRECT_PAGE: "Page staff",
    Role.TELESALES: "Consultant",
    Role.MANAGER: "Manager",
    Role.ADMIN: "Administrator",
    Role.VIEWER: "Viewer",
}

DAY_OF_WEEK_LABELS = {
    0: "Sunday",
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
}


def get_metric(key: str) -> Optional[MetricDef]:
    return _METRIC_MAP.get(key)


def metric_keys() -> List[str]:
    return list(_METRIC_MAP)


def is_metric_allowed_for_role(key: str, role: Role) -> bool:
    metric = get_metric(key)
    return metric is not None and role in metric.roles


def role_label(role) -> str:
    try:
        return ROLE_LABELS[Role(role)]
    except ValueError:
        return str(role)


def day_of_week_label(day_of_week: Optional[int]) -> str:
    if day_of_week is None or day_of_week < 0:
        return "Every day"
    return DAY_OF_WEEK_LABELS.get(day_of_week, "Every day")
