"""Revenue, cost and margin derived from financial items."""

from dataclasses import dataclass
from decimal import Decimal

from shipcode.models import FinancialType, Lead, LeadStatus, Organization, Project

CENTS = Decimal("0.01")


@dataclass
class FinancialSummary:
    revenue: Decimal
    cost: Decimal
    tax: Decimal

    @property
    def profit(self) -> Decimal:
        return self.revenue - self.cost

    @property
    def net(self) -> Decimal:
        return self.profit - self.tax

    @property
    def margin_percent(self) -> Decimal:
        if self.revenue <= 0:
            return Decimal("0")
        return (self.profit / self.revenue * 100).quantize(Decimal("0.1"))


def _tax_rate(organization: Organization | None) -> Decimal:
    if organization is None:
        return Decimal("0")
    return Decimal(str(organization.settings.tax_rate))


def summarize(project: Project, organization: Organization | None = None) -> FinancialSummary:
    revenue = sum((f.amount for f in project.financial_items if f.type == FinancialType.REVENUE), Decimal("0"))
    cost = sum((f.amount for f in project.financial_items if f.type == FinancialType.COST), Decimal("0"))
    tax = (revenue * _tax_rate(organization)).quantize(CENTS)
    return FinancialSummary(revenue=revenue, cost=cost, tax=tax)


def portfolio(projects: list[Project], organization: Organization | None = None) -> FinancialSummary:
    """Totals across projects."""
    summaries = [summarize(project, organization) for project in projects]
    return FinancialSummary(
        revenue=sum((s.revenue for s in summaries), Decimal("0")),
        cost=sum((s.cost for s in summaries), Decimal("0")),
        tax=sum((s.tax for s in summaries), Decimal("0")),
    )


def pipeline_value(leads: list[Lead]) -> Decimal:
    """Probability-weighted budget of leads still open."""
    open_statuses = {LeadStatus.NEW, LeadStatus.CONTACTED, LeadStatus.QUALIFIED}
    total = sum(
        (lead.budget * lead.probability / 100 for lead in leads if lead.status in open_statuses),
        Decimal("0"),
    )
    return total.quantize(CENTS)
