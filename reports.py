import io
from datetime import date, datetime

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from rollups import cents_to_amount

LEFT_MARGIN = 50
TOP_MARGIN = 50
LINE_WIDTH_CHARS = 100


def format_money(cents: int | None) -> str:
    return f"R {cents_to_amount(cents):,.2f}"


def _format_date(value: date | datetime | None) -> str:
    if not value:
        return "-"
    return value.strftime("%Y-%m-%d")


class _PageWriter:
    """Top-down text cursor over a reportlab canvas with automatic page breaks."""

    def __init__(self, title: str, subtitle: str | None = None):
        self.buffer = io.BytesIO()
        self.canvas = canvas.Canvas(self.buffer, pagesize=letter)
        self.canvas.setTitle(title)
        _, self.height = letter
        self.y = self.height - TOP_MARGIN

        self.canvas.setFont("Helvetica-Bold", 16)
        self.canvas.drawString(LEFT_MARGIN, self.y, title)
        self.y -= 22
        if subtitle:
            self.canvas.setFont("Helvetica", 10)
            self.canvas.drawString(LEFT_MARGIN, self.y, subtitle)
            self.y -= 18
        self.y -= 8

    def _ensure_space(self, needed: float) -> None:
        if self.y < needed:
            self.canvas.showPage()
            self.y = self.height - TOP_MARGIN

    def heading(self, text: str) -> None:
        self._ensure_space(100)
        self.canvas.setFont("Helvetica-Bold", 12)
        self.canvas.drawString(LEFT_MARGIN, self.y, text)
        self.y -= 18

    def line(self, text: str, indent: int = 0) -> None:
        for chunk in str(text).splitlines() or [""]:
            while True:
                self._ensure_space(60)
                self.canvas.setFont("Helvetica", 10)
                self.canvas.drawString(LEFT_MARGIN + indent, self.y, chunk[:LINE_WIDTH_CHARS])
                self.y -= 12
                chunk = chunk[LINE_WIDTH_CHARS:]
                if not chunk:
                    break

    def pairs(self, rows: list[tuple[str, object]]) -> None:
        for label, value in rows:
            self.line(f"{label}: {value}")
        self.gap()

    def gap(self, size: int = 10) -> None:
        self.y -= size

    def finish(self) -> bytes:
        self.canvas.save()
        return self.buffer.getvalue()


def render_project_report_pdf(
    project: object, report: dict, milestones: list, company_name: str
) -> bytes:
    writer = _PageWriter(
        f"Project Report - {project.project_number}",
        f"{company_name} | {project.name} | Generated {_format_date(datetime.now())}",
    )

    writer.heading("Project")
    writer.pairs(
        [
            ("Customer", f"{project.customer_name} <{project.customer_email}>"),
            ("Address", project.address or "-"),
            ("Status", project.status),
            ("Start", _format_date(project.start_date)),
            ("End", _format_date(project.end_date)),
            ("Health score", f"{report['health_score']:.0f} / 100"),
        ]
    )

    financial = report["financial_summary"]
    writer.heading("Financial Summary")
    writer.pairs(
        [
            ("Budget allocated", f"R {financial['total_budget_allocated']:,.2f}"),
            ("Actual cost", f"R {financial['total_actual_cost']:,.2f}"),
            ("Budget variance", f"R {financial['budget_variance']:,.2f}"),
            ("Budget utilization", f"{financial['budget_utilization']:.1f}%"),
            ("Operational cost", f"R {financial['total_operational_cost']:,.2f}"),
            ("Actual profit", f"R {financial['actual_profit']:,.2f}"),
            ("Profit margin", f"{financial['profit_margin']:.1f}%"),
        ]
    )

    timeline = report["timeline_summary"]
    progress = report["progress_summary"]
    writer.heading("Timeline & Progress")
    writer.pairs(
        [
            ("Duration (days)", timeline["total_duration_days"]),
            ("Delayed milestones", timeline["delayed_milestones_count"]),
            ("Total delay (days)", timeline["total_delay_days"]),
            ("Overall progress", f"{progress['overall_progress']:.1f}%"),
            ("Completion rate", f"{progress['completion_rate']:.1f}%"),
        ]
    )

    risks = report["risk_summary"]
    quality = report["quality_summary"]
    change_orders = report["change_order_summary"]
    writer.heading("Risk, Quality & Change Control")
    writer.pairs(
        [
            ("Open risks", risks["open"]),
            ("Critical risks", risks["critical"]),
            ("Quality pass rate", f"{quality['pass_rate']:.1f}%"),
            ("Pending change orders", change_orders["pending"]),
            ("Approved cost impact", f"R {change_orders['total_cost_impact']:,.2f}"),
        ]
    )

    writer.heading("Milestones")
    for milestone in milestones:
        writer.line(
            f"{milestone.sequence_order}. {milestone.name} [{milestone.status}] "
            f"{float(milestone.progress_percentage or 0):.0f}% | "
            f"budget {format_money(milestone.budget_allocated_cents)} | "
            f"actual {format_money(milestone.actual_cost_cents)}"
        )
    return writer.finish()


def render_weekly_update_pdf(
    project: object, milestone: object, update: object, company_name: str
) -> bytes:
    writer = _PageWriter(
        f"Weekly Progress Report - {milestone.name}",
        f"{company_name} | {project.project_number} {project.name}",
    )

    writer.heading("Reporting Period")
    writer.pairs(
        [
            ("Week", f"{_format_date(update.week_start_date)} to {_format_date(update.week_end_date)}"),
            ("Progress", f"{float(update.progress_percentage or 0):.0f}%"),
        ]
    )

    writer.heading("Expenditure")
    writer.pairs(
        [
            ("Labour", format_money(update.labour_expenditure_cents)),
            ("Material", format_money(update.material_expenditure_cents)),
            ("Other", format_money(update.other_expenditure_cents)),
            ("Total this week", format_money(update.total_expenditure_cents)),
            ("Milestone budget", format_money(milestone.budget_allocated_cents)),
            ("Milestone spend to date", format_money(milestone.actual_cost_cents)),
        ]
    )

    expenses = update.itemized_expenses or []
    if expenses:
        writer.heading("Itemized Expenses")
        for item in expenses:
            writer.line(
                f"- {item.get('item_description', '')}: quoted R {float(item.get('quoted_amount') or 0):,.2f}, "
                f"spent R {float(item.get('actual_spent') or 0):,.2f}"
            )
            if item.get("reason_for_overspend"):
                writer.line(f"Overspend reason: {item['reason_for_overspend']}", indent=12)
        writer.gap()

    for title, value in (
        ("Work Done", update.work_done),
        ("Successes", update.successes),
        ("Challenges", update.challenges),
        ("Next Week", update.next_week_plan),
        ("Notes", update.notes),
    ):
        if value:
            writer.heading(title)
            writer.line(value)
            writer.gap()
    return writer.finish()


def render_invoice_pdf(invoice: object, company: object) -> bytes:
    writer = _PageWriter(
        f"Invoice {invoice.invoice_number}",
        f"{company.company_name} | {company.company_email or ''} | {company.company_phone or ''}",
    )
    writer.heading("Bill To")
    writer.pairs(
        [
            ("Customer", invoice.customer_name),
            ("Email", invoice.customer_email),
            ("Address", invoice.address or "-"),
            ("Due", _format_date(invoice.due_date)),
            ("Status", invoice.status),
        ]
    )

    writer.heading("Items")
    for item in invoice.items or []:
        quantity = float(item.get("quantity") or 0)
        unit_price = float(item.get("unit_price") or 0)
        writer.line(
            f"{item.get('description', '')} x{quantity:g} @ R {unit_price:,.2f} = R {quantity * unit_price:,.2f}"
        )
    writer.gap()
    writer.pairs(
        [
            ("Subtotal", format_money(invoice.subtotal_cents)),
            ("Tax", format_money(invoice.tax_cents)),
            ("Total", format_money(invoice.total_cents)),
        ]
    )
    return writer.finish()


def render_rfq_pdf(rfq: object, property_manager_name: str, company_name: str) -> bytes:
    writer = _PageWriter(f"Request for Quotation {rfq.rfq_number}", company_name)
    writer.pairs(
        [
            ("Title", rfq.title),
            ("Property manager", property_manager_name),
            ("Building", rfq.building_name or "-"),
            ("Address", rfq.building_address or "-"),
            ("Urgency", rfq.urgency),
            ("Estimated budget", format_money(rfq.estimated_budget_cents)),
            ("Status", rfq.status),
        ]
    )
    writer.heading("Description")
    writer.line(rfq.description)
    writer.gap()
    writer.heading("Scope of Work")
    writer.line(rfq.scope_of_work)
    return writer.finish()
