"""Tests for financial summaries."""

from decimal import Decimal

from shipcode.finance import pipeline_value, portfolio, summarize
from shipcode.models import (
    FinancialItem,
    FinancialType,
    Lead,
    LeadStatus,
    Organization,
    OrganizationSettings,
    Project,
)

ORG = Organization(id="org-1", name="ShipCode", settings=OrganizationSettings(tax_rate=0.15))


def project(*items: tuple[str, FinancialType]) -> Project:
    return Project(
        id="p-1",
        name="Site",
        client_name="Acme",
        financial_items=[
            FinancialItem(id=f"f-{i}", description="", amount=Decimal(amount), type=kind)
            for i, (amount, kind) in enumerate(items)
        ],
    )


def test_summarize() -> None:
    """Test revenue, cost, tax and margin of one project."""
    summary = summarize(
        project(("10000", FinancialType.REVENUE), ("2000", FinancialType.REVENUE), ("3000", FinancialType.COST)),
        ORG,
    )
    assert summary.revenue == Decimal("12000")
    assert summary.cost == Decimal("3000")
    assert summary.profit == Decimal("9000")
    assert summary.tax == Decimal("1800.00")
    assert summary.net == Decimal("7200.00")
    assert summary.margin_percent == Decimal("75.0")


def test_summarize_without_revenue() -> None:
    """Test an all-cost project has zero margin instead of dividing by zero."""
    summary = summarize(project(("500", FinancialType.COST)))
    assert summary.margin_percent == Decimal("0")
    assert summary.tax == Decimal("0")
    assert summary.profit == Decimal("-500")


def test_portfolio() -> None:
    """Test totals add up across projects."""
    total = portfolio(
        [project(("1000", FinancialType.REVENUE)), project(("3000", FinancialType.REVENUE), ("1000", FinancialType.COST))],
        ORG,
    )
    assert total.revenue == Decimal("4000")
    assert total.cost == Decimal("1000")
    assert total.tax == Decimal("600.00")


def test_pipeline_value_weights_open_leads() -> None:
    """Test only open leads count, weighted by probability."""
    leads = [
        Lead(id="l-1", client_name="A", budget=Decimal("1000"), probability=50, status=LeadStatus.NEW),
        Lead(id="l-2", client_name="B", budget=Decimal("2000"), probability=25, status=LeadStatus.QUALIFIED),
        Lead(id="l-3", client_name="C", budget=Decimal("9000"), probability=90, status=LeadStatus.LOST),
        Lead(id="l-4", client_name="D", budget=Decimal("9000"), probability=100, status=LeadStatus.CONVERTED),
    ]
    assert pipeline_value(leads) == Decimal("1000.00")
