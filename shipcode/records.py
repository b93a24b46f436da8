"""Mapping between backend rows and model dataclasses."""

from collections import defaultdict
from decimal import Decimal
from typing import Any

import structlog

from shipcode.models import (
    Contract,
    ContractStatus,
    FinancialItem,
    FinancialType,
    Identity,
    Lead,
    LeadStatus,
    Notification,
    NotificationAction,
    NotificationType,
    Organization,
    OrganizationSettings,
    Project,
    ProjectStatus,
    Role,
    Task,
    TaskStatus,
)

logger = structlog.get_logger()

Row = dict[str, Any]


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def _money(value: Decimal) -> float:
    return float(value)


def identity_from_row(row: Row) -> Identity:
    return Identity(
        id=str(row["id"]),
        display_name=row.get("name") or "",
        role=Role(row.get("role") or Role.CLIENT.value),
        avatar_ref=row.get("avatar_url"),
        email=row.get("email"),
        github_url=row.get("github_url"),
        linkedin_url=row.get("linkedin_url"),
    )


def organization_from_row(row: Row) -> Organization:
    settings = row.get("settings") or {}
    return Organization(
        id=str(row["id"]),
        name=row.get("name") or "",
        brand_color=row.get("primary_color") or "#dc2626",
        settings=OrganizationSettings(
            tax_rate=float(settings.get("taxRate", settings.get("tax_rate", 0.15))),
            currency=settings.get("currency", "BRL"),
        ),
        logo_ref=row.get("logo_url"),
    )


def organization_patch_to_row(patch: dict[str, Any]) -> Row:
    """Translate a model-level merge patch into backend columns.

    Only keys present in the patch are written.
    """
    row: Row = {}
    if "name" in patch:
        row["name"] = patch["name"]
    if "brand_color" in patch:
        row["primary_color"] = patch["brand_color"]
    if "logo_ref" in patch:
        row["logo_url"] = patch["logo_ref"]
    if "settings" in patch:
        settings = patch["settings"]
        row["settings"] = {"taxRate": settings.tax_rate, "currency": settings.currency}
    return row


def lead_from_row(row: Row) -> Lead:
    return Lead(
        id=str(row["id"]),
        client_name=row.get("client_name") or "",
        project_name=row.get("project_name") or "",
        budget=_decimal(row.get("budget")),
        probability=int(row.get("probability") or 0),
        status=LeadStatus(row.get("status") or LeadStatus.NEW.value),
        source=row.get("source") or "MANUAL",
        created_at=row.get("created_at") or "",
        notes=row.get("notes"),
    )


def lead_to_row(lead: Lead) -> Row:
    return {
        "client_name": lead.client_name,
        "project_name": lead.project_name,
        "budget": _money(lead.budget),
        "probability": lead.probability,
        "status": lead.status.value,
        "source": lead.source,
        "notes": lead.notes,
    }


def task_from_row(row: Row) -> Task:
    return Task(
        id=str(row["id"]),
        title=row.get("title") or "",
        status=TaskStatus(row.get("status") or TaskStatus.TODO.value),
        assignee_id=row.get("assignee_id"),
        priority=row.get("priority"),
        due_date=row.get("due_date"),
        description=row.get("description"),
    )


def task_to_row(task: Task) -> Row:
    return {
        "title": task.title,
        "status": task.status.value,
        "assignee_id": task.assignee_id,
        "priority": task.priority,
        "due_date": task.due_date,
        "description": task.description,
    }


def financial_item_from_row(row: Row) -> FinancialItem:
    return FinancialItem(
        id=str(row["id"]),
        description=row.get("description") or "",
        amount=_decimal(row.get("amount")),
        type=FinancialType(row.get("type") or FinancialType.COST.value),
        category=row.get("category") or "FIXED_FEE",
    )


def financial_item_to_row(item: FinancialItem) -> Row:
    return {
        "description": item.description,
        "amount": _money(item.amount),
        "type": item.type.value,
        "category": item.category,
    }


def contract_from_row(row: Row) -> Contract:
    return Contract(
        id=str(row["id"]),
        status=ContractStatus(row.get("status") or ContractStatus.DRAFT.value),
        content=row.get("content") or "",
        total_value=_decimal(row.get("total_value")),
        signed_at=row.get("signed_at"),
    )


def contract_to_row(contract: Contract) -> Row:
    return {
        "status": contract.status.value,
        "content": contract.content,
        "total_value": _money(contract.total_value),
        "signed_at": contract.signed_at,
    }


def project_to_row(project: Project) -> Row:
    return {
        "name": project.name,
        "client_name": project.client_name,
        "status": project.status.value,
        "description": project.description,
        "lead_id": project.lead_id,
        "start_date": project.start_date,
        "target_date": project.target_date,
    }


def _group_by_project(rows: list[Row]) -> dict[str, list[Row]]:
    grouped: dict[str, list[Row]] = defaultdict(list)
    for row in rows:
        grouped[str(row.get("project_id"))].append(row)
    return grouped


def assemble_projects(
    project_rows: list[Row],
    task_rows: list[Row],
    financial_rows: list[Row],
    contract_rows: list[Row],
    member_rows: list[Row],
) -> list[Project]:
    """Build Project values from their table rows, newest first."""
    tasks = _group_by_project(task_rows)
    financials = _group_by_project(financial_rows)
    contracts = _group_by_project(contract_rows)
    members = _group_by_project(member_rows)

    projects = []
    for row in sorted(project_rows, key=lambda r: r.get("created_at") or "", reverse=True):
        project_id = str(row["id"])
        project_contracts = contracts.get(project_id, [])
        projects.append(
            Project(
                id=project_id,
                name=row.get("name") or "",
                client_name=row.get("client_name") or "",
                status=ProjectStatus(row.get("status") or ProjectStatus.DISCOVERY.value),
                description=row.get("description") or "",
                team_ids=[str(m["user_id"]) for m in members.get(project_id, [])],
                contract=contract_from_row(project_contracts[0]) if project_contracts else None,
                financial_items=[financial_item_from_row(f) for f in financials.get(project_id, [])],
                tasks=[task_from_row(t) for t in tasks.get(project_id, [])],
                lead_id=row.get("lead_id"),
                start_date=row.get("start_date"),
                target_date=row.get("target_date"),
            )
        )
    logger.debug("Assembled projects", count=len(projects))
    return projects


def notification_from_row(row: Row) -> Notification:
    action = (row.get("data") or {}).get("action")
    return Notification(
        id=str(row["id"]),
        type=NotificationType(row.get("type") or NotificationType.INFO.value),
        title=row.get("title") or "",
        message=row.get("message") or "",
        read=bool(row.get("is_read")),
        created_at=row.get("created_at") or "",
        action=NotificationAction(label=action["label"], href=action["href"]) if action else None,
    )


def notification_to_row(notification: Notification, user_id: str) -> Row:
    action = None
    if notification.action:
        action = {"label": notification.action.label, "href": notification.action.href}
    return {
        "user_id": user_id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.read,
        "data": {"action": action},
    }
