"""
Closed enumerations shared by models, services and the API.

Values are stored as plain strings so the database stays readable.
"""
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    VIEWER = "viewer"
    MANAGER = "manager"
    TELESALES = "telesales"
    DIRECT_PAGE = "direct_page"


# Roles that see every branch
SYSTEM_ROLES = frozenset({Role.ADMIN, Role.VIEWER})
# Roles limited to their branch memberships
BRANCH_ROLES = frozenset({Role.MANAGER})
# Roles limited to their own records
OWNER_ROLES = frozenset({Role.TELESALES, Role.DIRECT_PAGE})
# Roles that KPI targets can be set for
TARGET_ROLES = frozenset({Role.TELESALES, Role.DIRECT_PAGE})


class ScopeMode(str, Enum):
    SYSTEM = "SYSTEM"
    BRANCH = "BRANCH"
    OWNER = "OWNER"


class SuggestionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class Severity(str, Enum):
    RED = "RED"
    YELLOW = "YELLOW"
    GREEN = "GREEN"


class FeedbackType(str, Enum):
    HELPFUL = "HELPFUL"
    NOT_HELPFUL = "NOT_HELPFUL"
    DONE = "DONE"


class FeedbackReason(str, Enum):
    DUNG_TRONG_LUC_CAN = "dung_trong_luc_can"  # timely, easy to apply
    DE_LAM_THEO = "de_lam_theo"                # clear, easy to follow
    CHUA_SAT_THUC_TE = "chua_sat_thuc_te"      # not realistic
    THIEU_DU_LIEU = "thieu_du_lieu"            # missing data to act on
    UU_TIEN_KHAC = "uu_tien_khac"              # busy with other priorities
    KHAC = "khac"                              # other, needs reason_detail


class GoalPeriodType(str, Enum):
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


class OutboundChannel(str, Enum):
    ZALO = "ZALO"
    FB = "FB"
    SMS = "SMS"
    CALL_NOTE = "CALL_NOTE"


# Channels that deliver to a phone number
PHONE_CHANNELS = frozenset({OutboundChannel.ZALO, OutboundChannel.SMS})


class OutboundPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class OutboundStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class LeadStatus(str, Enum):
    NEW = "NEW"
    HAS_PHONE = "HAS_PHONE"
    APPOINTED = "APPOINTED"
    ARRIVED = "ARRIVED"
    SIGNED = "SIGNED"
    STUDYING = "STUDYING"
    EXAMED = "EXAMED"
    RESULT = "RESULT"
    LOST = "LOST"
