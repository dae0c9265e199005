"""
CRM enumerations shared by the validation schemas and the secure services.

Only the values the access-control layer needs to gate and audit are modeled
here; records themselves travel as plain dictionaries between the services
and the document store.
"""

from enum import Enum


class ClientStatus(str, Enum):
    LEAD = 'lead'
    CONTACTED = 'contacted'
    QUALIFIED = 'qualified'
    PROPOSAL_SENT = 'proposal_sent'
    NEGOTIATING = 'negotiating'
    WON = 'won'
    LOST = 'lost'
    ON_HOLD = 'on_hold'


class AcquisitionSource(str, Enum):
    GOOGLE_SEARCH = 'google_search'
    INSTAGRAM_SEARCH = 'instagram_search'
    FACEBOOK = 'facebook'
    LINKEDIN = 'linkedin'
    REFERRAL = 'referral'
    WEBSITE = 'website'
    COLD_OUTREACH = 'cold_outreach'
    NETWORKING = 'networking'
    ADVERTISING = 'advertising'
    OTHER = 'other'


class LeadStatus(str, Enum):
    NEW = 'new'
    CONTACTED = 'contacted'
    QUALIFIED = 'qualified'
    UNQUALIFIED = 'unqualified'
    NURTURING = 'nurturing'
    HOT = 'hot'
    CONVERTED = 'converted'
    LOST = 'lost'
    INVALID = 'invalid'


class TaskPriority(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    URGENT = 'urgent'


class TaskStatus(str, Enum):
    TODO = 'todo'
    IN_PROGRESS = 'in_progress'
    IN_REVIEW = 'in_review'
    BLOCKED = 'blocked'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class InteractionType(str, Enum):
    CALL = 'call'
    EMAIL = 'email'
    MEETING = 'meeting'
    PROPOSAL = 'proposal'
    FOLLOW_UP = 'follow_up'
    NOTE = 'note'
    TASK_COMPLETED = 'task_completed'
    OTHER = 'other'


class InquiryStatus(str, Enum):
    NEW = 'new'
    CONTACTED = 'contacted'
    CONVERTED = 'converted'
    CLOSED = 'closed'


class UserStatus(str, Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'


def enum_values(enum_cls) -> list:
    return [member.value for member in enum_cls]
