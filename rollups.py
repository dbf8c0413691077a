import math
from calendar import monthrange
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

INCOME_TAX_RATE = Decimal("0.15")
UIF_RATE = Decimal("0.01")
UIF_CAP_CENTS = 17712

FINANCIAL_FIELDS = {
    "total_budget_allocated": "budget_allocated_cents",
    "total_actual_cost": "actual_cost_cents",
    "total_labour_cost": "labour_cost_cents",
    "total_material_cost": "material_cost_cents",
    "total_expected_profit": "expected_profit_cents",
    "total_diesel_cost": "diesel_cost_cents",
    "total_rent_cost": "rent_cost_cents",
    "total_admin_cost": "admin_cost_cents",
    "total_other_operational_cost": "other_operational_cost_cents",
}

RISK_CATEGORIES = ["TECHNICAL", "FINANCIAL", "SCHEDULE", "RESOURCE", "EXTERNAL"]


def cents_to_amount(cents: int | None) -> float:
    if not cents:
        return 0.0
    return float(Decimal(int(cents)) / Decimal(100))


def _percent(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return part / whole * 100


def _as_aware(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _days_between(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / 86400)


def weekly_total_cents(labour_cents: int, material_cents: int, other_cents: int) -> int:
    return int(labour_cents or 0) + int(material_cents or 0) + int(other_cents or 0)


def summarize_financials(milestones: Iterable[object]) -> dict[str, float]:
    milestones = list(milestones)
    totals = {
        key: sum(int(getattr(m, attr) or 0) for m in milestones)
        for key, attr in FINANCIAL_FIELDS.items()
    }
    budget = totals["total_budget_allocated"]
    actual = totals["total_actual_cost"]
    operational = (
        totals["total_diesel_cost"]
        + totals["total_rent_cost"]
        + totals["total_admin_cost"]
        + totals["total_other_operational_cost"]
    )
    actual_profit = budget - actual

    summary: dict[str, float] = {key: cents_to_amount(value) for key, value in totals.items()}
    summary["total_operational_cost"] = cents_to_amount(operational)
    summary["budget_variance"] = cents_to_amount(budget - actual)
    summary["budget_utilization"] = _percent(actual, budget)
    summary["actual_profit"] = cents_to_amount(actual_profit)
    summary["profit_margin"] = _percent(actual_profit, budget)
    return summary


def summarize_timeline(
    milestones: Iterable[object], now: datetime | None = None
) -> dict[str, object]:
    now = _as_aware(now) or datetime.now(UTC)
    milestones = list(milestones)

    dated = [
        (_as_aware(m.start_date), _as_aware(m.end_date))
        for m in milestones
        if m.start_date and m.end_date
    ]
    earliest = min((start for start, _ in dated), default=None)
    latest = max((end for _, end in dated), default=None)
    duration = _days_between(earliest, latest) if earliest and latest else 0

    delayed = [
        m
        for m in milestones
        if m.end_date
        and m.status not in {"COMPLETED", "CANCELLED"}
        and _as_aware(m.end_date) < now
    ]
    delay_days = sum(max(0, _days_between(_as_aware(m.end_date), now)) for m in delayed)

    return {
        "earliest_start": earliest.isoformat() if earliest else None,
        "latest_end": latest.isoformat() if latest else None,
        "total_duration_days": duration,
        "delayed_milestones_count": len(delayed),
        "total_delay_days": delay_days,
    }


def summarize_progress(milestones: Iterable[object]) -> dict[str, object]:
    milestones = list(milestones)
    total = len(milestones)
    by_status = {
        "PLANNING": sum(1 for m in milestones if m.status in {"PLANNING", "NOT_STARTED"}),
        "IN_PROGRESS": sum(1 for m in milestones if m.status == "IN_PROGRESS"),
        "ON_HOLD": sum(1 for m in milestones if m.status == "ON_HOLD"),
        "COMPLETED": sum(1 for m in milestones if m.status == "COMPLETED"),
        "CANCELLED": sum(1 for m in milestones if m.status == "CANCELLED"),
    }
    overall = (
        sum(float(m.progress_percentage or 0) for m in milestones) / total if total else 0.0
    )
    return {
        "overall_progress": overall,
        "completion_rate": _percent(by_status["COMPLETED"], total),
        "total_milestones": total,
        "milestones_by_status": by_status,
    }


def summarize_payments(payment_requests: Iterable[object]) -> dict[str, object]:
    requests = list(payment_requests)

    def _amount(statuses: set[str]) -> int:
        return sum(
            int(pr.calculated_amount_cents or 0) for pr in requests if pr.status in statuses
        )

    return {
        "total": len(requests),
        "pending": sum(1 for pr in requests if pr.status == "PENDING"),
        "approved": sum(1 for pr in requests if pr.status == "APPROVED"),
        "rejected": sum(1 for pr in requests if pr.status == "REJECTED"),
        "paid": sum(1 for pr in requests if pr.status == "PAID"),
        "total_pending_amount": cents_to_amount(_amount({"PENDING", "APPROVED"})),
        "total_paid_amount": cents_to_amount(_amount({"PAID"})),
        "total_amount": cents_to_amount(
            sum(int(pr.calculated_amount_cents or 0) for pr in requests)
        ),
    }


def summarize_risks(risks: Iterable[object]) -> dict[str, object]:
    risks = list(risks)
    open_risks = [r for r in risks if r.status == "OPEN"]
    return {
        "total": len(risks),
        "open": len(open_risks),
        "mitigated": sum(1 for r in risks if r.status == "MITIGATED"),
        "closed": sum(1 for r in risks if r.status == "CLOSED"),
        "high_probability": sum(1 for r in open_risks if r.probability == "HIGH"),
        "high_impact": sum(1 for r in open_risks if r.impact == "HIGH"),
        "critical": sum(
            1 for r in open_risks if r.probability == "HIGH" or r.impact == "HIGH"
        ),
        "by_category": {
            category: sum(1 for r in risks if r.category == category)
            for category in RISK_CATEGORIES
        },
    }


def summarize_change_orders(change_orders: Iterable[object]) -> dict[str, object]:
    orders = list(change_orders)
    effective = [co for co in orders if co.status in {"APPROVED", "IMPLEMENTED"}]
    return {
        "total": len(orders),
        "pending": sum(1 for co in orders if co.status == "PENDING"),
        "approved": sum(1 for co in orders if co.status == "APPROVED"),
        "rejected": sum(1 for co in orders if co.status == "REJECTED"),
        "implemented": sum(1 for co in orders if co.status == "IMPLEMENTED"),
        "total_cost_impact": cents_to_amount(
            sum(int(co.cost_impact_cents or 0) for co in effective)
        ),
        "total_time_impact": sum(int(co.time_impact_days or 0) for co in effective),
    }


def summarize_resources(milestones: Iterable[object]) -> dict[str, int]:
    milestones = list(milestones)
    assignees = {m.assigned_to_id for m in milestones if m.assigned_to_id}
    assigned = sum(1 for m in milestones if m.assigned_to_id)
    return {
        "unique_assignees": len(assignees),
        "milestones_with_assignment": assigned,
        "milestones_without_assignment": len(milestones) - assigned,
    }


def summarize_quality(checkpoints: Iterable[object]) -> dict[str, object]:
    checkpoints = list(checkpoints)
    passed = sum(1 for c in checkpoints if c.status == "PASSED")
    return {
        "total": len(checkpoints),
        "pending": sum(1 for c in checkpoints if c.status == "PENDING"),
        "passed": passed,
        "failed": sum(1 for c in checkpoints if c.status == "FAILED"),
        "waived": sum(1 for c in checkpoints if c.status == "WAIVED"),
        "pass_rate": _percent(passed, len(checkpoints)),
    }


def summarize_invoices(invoices: Iterable[object]) -> dict[str, object]:
    invoices = list(invoices)

    def _total(statuses: set[str] | None = None) -> int:
        return sum(
            int(inv.total_cents or 0)
            for inv in invoices
            if statuses is None or inv.status in statuses
        )

    return {
        "total": len(invoices),
        "draft": sum(1 for inv in invoices if inv.status == "DRAFT"),
        "sent": sum(1 for inv in invoices if inv.status == "SENT"),
        "paid": sum(1 for inv in invoices if inv.status == "PAID"),
        "overdue": sum(1 for inv in invoices if inv.status == "OVERDUE"),
        "total_amount": cents_to_amount(_total()),
        "total_paid": cents_to_amount(_total({"PAID"})),
        "total_outstanding": cents_to_amount(_total({"SENT", "OVERDUE"})),
    }


def summarize_weekly_updates(updates: Iterable[object]) -> dict[str, object]:
    updates = list(updates)
    total_cents = sum(int(u.total_expenditure_cents or 0) for u in updates)
    last = max((_as_aware(u.created_at) for u in updates if u.created_at), default=None)
    return {
        "total_updates": len(updates),
        "total_expenditure_reported": cents_to_amount(total_cents),
        "average_weekly_expenditure": (
            cents_to_amount(total_cents) / len(updates) if updates else 0.0
        ),
        "last_update_date": last.isoformat() if last else None,
    }


def compute_health_score(
    *,
    budget_utilization: float,
    delayed_milestones: int,
    critical_risks: int,
    quality_total: int,
    quality_failed: int,
    pending_change_orders: int,
) -> float:
    score = 100.0
    if budget_utilization > 100:
        score -= min(20.0, budget_utilization - 100)
    score -= min(20, delayed_milestones * 5)
    score -= min(20, critical_risks * 5)
    if quality_total > 0:
        score -= min(20.0, quality_failed / quality_total * 100)
    score -= min(10, pending_change_orders * 2)
    return max(0.0, min(100.0, score))


def build_project_rollup(
    *,
    milestones: list,
    change_orders: list,
    invoices: list,
    now: datetime | None = None,
) -> dict[str, object]:
    """Aggregate a project's milestones and related rows into report metrics.

    ``change_orders`` must already include both project-level and
    milestone-level change orders; payment requests, risks, checkpoints and
    weekly updates are read from each milestone's relationships.
    """

    payment_requests = [pr for m in milestones for pr in m.payment_requests]
    risks = [r for m in milestones for r in m.risks]
    checkpoints = [c for m in milestones for c in m.quality_checkpoints]
    updates = [u for m in milestones for u in m.weekly_updates]

    financial = summarize_financials(milestones)
    timeline = summarize_timeline(milestones, now)
    risk_summary = summarize_risks(risks)
    quality = summarize_quality(checkpoints)
    change_order_summary = summarize_change_orders(change_orders)

    health_score = compute_health_score(
        budget_utilization=financial["budget_utilization"],
        delayed_milestones=timeline["delayed_milestones_count"],
        critical_risks=risk_summary["critical"],
        quality_total=quality["total"],
        quality_failed=quality["failed"],
        pending_change_orders=change_order_summary["pending"],
    )

    return {
        "financial_summary": financial,
        "timeline_summary": timeline,
        "progress_summary": summarize_progress(milestones),
        "payment_summary": summarize_payments(payment_requests),
        "risk_summary": risk_summary,
        "change_order_summary": change_order_summary,
        "resource_summary": summarize_resources(milestones),
        "quality_summary": quality,
        "invoice_summary": summarize_invoices(invoices),
        "weekly_update_summary": summarize_weekly_updates(updates),
        "health_score": health_score,
    }


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_payslip_amounts(gross_cents: int) -> dict[str, int]:
    gross = Decimal(int(gross_cents or 0))
    income_tax = _round_cents(gross * INCOME_TAX_RATE)
    uif = min(_round_cents(gross * UIF_RATE), UIF_CAP_CENTS)
    deductions = income_tax + uif
    return {
        "gross_pay_cents": int(gross),
        "income_tax_cents": income_tax,
        "uif_cents": uif,
        "total_deductions_cents": deductions,
        "net_pay_cents": int(gross) - deductions,
    }


def pay_period_bounds(moment: date | datetime) -> tuple[date, date]:
    last_day = monthrange(moment.year, moment.month)[1]
    return date(moment.year, moment.month, 1), date(moment.year, moment.month, last_day)


def calculate_subscription_cost(
    package: object,
    *,
    additional_users: int = 0,
    additional_tenants: int = 0,
    additional_contractors: int = 0,
) -> int:
    user_price = int(package.additional_user_price_cents or 0)
    return (
        int(package.base_price_cents or 0)
        + max(0, additional_users) * user_price
        + max(0, additional_tenants) * int(package.additional_tenant_price_cents or 0)
        + max(0, additional_contractors) * user_price
    )


def compute_risk_metrics(
    project: object, milestones: list, now: datetime | None = None
) -> dict[str, object]:
    now = _as_aware(now) or datetime.now(UTC)
    budget = sum(int(m.budget_allocated_cents or 0) for m in milestones)
    actual = sum(int(m.actual_cost_cents or 0) for m in milestones)

    timeline_progress = 0.0
    start = _as_aware(project.start_date)
    end = _as_aware(project.end_date)
    if start and end and end > start:
        elapsed = (now - start).total_seconds() / (end - start).total_seconds() * 100
        timeline_progress = max(0.0, min(100.0, elapsed))

    overdue = [
        m.name
        for m in milestones
        if m.end_date
        and m.status not in {"COMPLETED", "CANCELLED"}
        and _as_aware(m.end_date) < now
    ]
    over_budget = [
        m.name
        for m in milestones
        if m.budget_allocated_cents and (m.actual_cost_cents or 0) > m.budget_allocated_cents
    ]
    return {
        "budget_utilization": _percent(actual, budget),
        "overall_progress": summarize_progress(milestones)["overall_progress"],
        "timeline_progress": timeline_progress,
        "overdue_milestones": overdue,
        "over_budget_milestones": over_budget,
    }
