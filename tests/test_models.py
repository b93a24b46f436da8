"""Tests for data models."""

from decimal import Decimal

from shipcode.models import (
    ContractStatus,
    Lead,
    LeadStatus,
    Organization,
    Project,
    ProjectStatus,
    is_temporary_id,
    new_temporary_id,
)


def test_temporary_ids() -> None:
    """Test locally generated ids are recognizable and unique."""
    first = new_temporary_id("lead")
    second = new_temporary_id("lead")

    assert first.startswith("tmp-lead-")
    assert first != second
    assert is_temporary_id(first)
    assert not is_temporary_id("l-1")
    assert not is_temporary_id("")
    assert not is_temporary_id(None)


def test_project_defaults() -> None:
    """Test project creation with defaults."""
    project = Project(id="p-1", name="Site", client_name="Acme")
    assert project.status == ProjectStatus.DISCOVERY
    assert project.team_ids == []
    assert project.tasks == []
    assert project.financial_items == []
    assert project.contract is None


def test_lead_defaults() -> None:
    """Test lead creation with defaults."""
    lead = Lead(id="l-1", client_name="Acme")
    assert lead.status == LeadStatus.CONTACTED
    assert lead.probability == 50
    assert lead.budget == Decimal("0")
    assert lead.source == "MANUAL"


def test_organization_defaults() -> None:
    """Test organization settings default to the agency's tax and currency."""
    organization = Organization(id="org-1", name="ShipCode")
    assert organization.settings.tax_rate == 0.15
    assert organization.settings.currency == "BRL"


def test_phase_ordering() -> None:
    """Test phases and contract statuses are ordered by delivery sequence."""
    assert ProjectStatus.LEAD.ordinal < ProjectStatus.DISCOVERY.ordinal < ProjectStatus.DEPLOYED.ordinal
    assert ProjectStatus.BUILD.ordinal < ProjectStatus.QA.ordinal
    assert ContractStatus.DRAFT.ordinal < ContractStatus.SENT.ordinal < ContractStatus.SIGNED.ordinal
