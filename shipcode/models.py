"""Data models for the ShipCode client data layer."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

TEMPORARY_ID_PREFIX = "tmp-"


def new_temporary_id(kind: str) -> str:
    """Generate a locally unique identifier for an entity not yet confirmed remotely."""
    return f"{TEMPORARY_ID_PREFIX}{kind}-{uuid4().hex[:12]}"


def is_temporary_id(entity_id: str | None) -> bool:
    """Return True when the identifier was generated locally."""
    return bool(entity_id) and entity_id.startswith(TEMPORARY_ID_PREFIX)


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CONTRIBUTOR = "CONTRIBUTOR"
    CLIENT = "CLIENT"


class ProjectStatus(str, Enum):
    """Project phases, declared in delivery order."""

    LEAD = "LEAD"
    DISCOVERY = "DISCOVERY"
    CONTRACTING = "CONTRACTING"
    BUILD = "BUILD"
    QA = "QA"
    DEPLOYED = "DEPLOYED"

    @property
    def ordinal(self) -> int:
        return list(ProjectStatus).index(self)


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    SIGNED = "SIGNED"

    @property
    def ordinal(self) -> int:
        return list(ContractStatus).index(self)


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    CONVERTED = "CONVERTED"
    LOST = "LOST"


class FinancialType(str, Enum):
    REVENUE = "REVENUE"
    COST = "COST"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Identity:
    """A signed-in user profile."""

    id: str
    display_name: str
    role: Role
    avatar_ref: str | None = None
    email: str | None = None
    github_url: str | None = None
    linkedin_url: str | None = None


@dataclass
class OrganizationSettings:
    tax_rate: float = 0.15
    currency: str = "BRL"


@dataclass
class Organization:
    """The single organization loaded per session."""

    id: str
    name: str
    brand_color: str = "#dc2626"
    settings: OrganizationSettings = field(default_factory=OrganizationSettings)
    logo_ref: str | None = None


@dataclass
class Task:
    id: str
    title: str
    status: TaskStatus = TaskStatus.TODO
    assignee_id: str | None = None
    priority: str | None = None
    due_date: str | None = None
    description: str | None = None


@dataclass
class FinancialItem:
    id: str
    description: str
    amount: Decimal
    type: FinancialType
    category: str = "FIXED_FEE"


@dataclass
class Contract:
    id: str
    status: ContractStatus = ContractStatus.DRAFT
    content: str = ""
    total_value: Decimal = Decimal("0")
    signed_at: str | None = None


@dataclass
class Project:
    """A client project with its owned tasks, financial items and contract."""

    id: str
    name: str
    client_name: str
    status: ProjectStatus = ProjectStatus.DISCOVERY
    description: str = ""
    team_ids: list[str] = field(default_factory=list)
    contract: Contract | None = None
    financial_items: list[FinancialItem] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    lead_id: str | None = None
    start_date: str | None = None
    target_date: str | None = None


@dataclass
class Lead:
    """A sales opportunity in the pipeline."""

    id: str
    client_name: str
    project_name: str = ""
    budget: Decimal = Decimal("0")
    probability: int = 50
    status: LeadStatus = LeadStatus.CONTACTED
    source: str = "MANUAL"
    created_at: str = ""
    notes: str | None = None


@dataclass
class NotificationAction:
    label: str
    href: str


@dataclass
class Notification:
    id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    created_at: str = ""
    action: NotificationAction | None = None


@dataclass
class Session:
    """A backend session handle."""

    access_token: str
    user_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
