import json
import os
import secrets
import smtplib
import ssl
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, make_msgid
from functools import wraps
from pathlib import Path

import stripe
from dotenv import load_dotenv
from flask import Flask, Response, current_app, g, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server
from werkzeug.security import check_password_hash, generate_password_hash

import ai_assistant
import reports
import storage
from rollups import (
    build_project_rollup,
    calculate_payslip_amounts,
    calculate_subscription_cost,
    cents_to_amount,
    compute_risk_metrics,
    pay_period_bounds,
    weekly_total_cents,
)

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

load_dotenv()

db = SQLAlchemy()

STRIPE_DEFAULT_CURRENCY = "zar"
TOKEN_SALT = "api-token"
TOKEN_MAX_AGE_SECONDS_DEFAULT = 7 * 24 * 60 * 60

ADMIN_ROLES = {"ADMIN", "SENIOR_ADMIN", "JUNIOR_ADMIN"}
CONTRACTOR_ROLES = {"CONTRACTOR", "CONTRACTOR_SENIOR_MANAGER", "CONTRACTOR_JUNIOR_MANAGER"}
CONTRACTOR_STAFF_ROLES = {"CONTRACTOR_SENIOR_MANAGER", "CONTRACTOR_JUNIOR_MANAGER", "ARTISAN"}
USER_ROLES = [
    "ADMIN",
    "SENIOR_ADMIN",
    "JUNIOR_ADMIN",
    "PROPERTY_MANAGER",
    "CONTRACTOR",
    "CONTRACTOR_SENIOR_MANAGER",
    "CONTRACTOR_JUNIOR_MANAGER",
    "ARTISAN",
    "CUSTOMER",
]

LEAD_STATUS_OPTIONS = [
    "NEW",
    "CONTACTED",
    "QUALIFIED",
    "PROPOSAL_SENT",
    "NEGOTIATION",
    "WON",
    "LOST",
]
QUOTATION_STATUS_OPTIONS = [
    "DRAFT",
    "PENDING_ARTISAN_REVIEW",
    "IN_PROGRESS",
    "READY_FOR_REVIEW",
    "SENT_TO_CUSTOMER",
    "APPROVED",
    "REJECTED",
]
ORDER_STATUS_OPTIONS = ["PENDING", "ASSIGNED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
INVOICE_STATUS_OPTIONS = [
    "DRAFT",
    "PENDING_REVIEW",
    "PENDING_APPROVAL",
    "SENT",
    "PAID",
    "OVERDUE",
    "CANCELLED",
    "REJECTED",
]
PM_INVOICE_STATUS_OPTIONS = [
    "DRAFT",
    "ADMIN_APPROVED",
    "SENT_TO_PM",
    "PM_APPROVED",
    "PM_REJECTED",
    "PAID",
    "CANCELLED",
    "REJECTED",
]
PM_INVOICE_CONTRACTOR_TARGETS = ["DRAFT", "ADMIN_APPROVED", "SENT_TO_PM", "CANCELLED", "REJECTED"]
PM_INVOICE_ACTIONS = ["APPROVE", "REJECT", "MARK_PAID"]
RFQ_STATUS_OPTIONS = [
    "SUBMITTED",
    "UNDER_REVIEW",
    "QUOTED",
    "APPROVED",
    "REJECTED",
    "CONVERTED_TO_ORDER",
]
RFQ_URGENCY_OPTIONS = ["LOW", "NORMAL", "HIGH", "URGENT"]
PM_ORDER_STATUS_OPTIONS = ["DRAFT", "SUBMITTED", "ACCEPTED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
PROJECT_STATUS_OPTIONS = ["PLANNING", "IN_PROGRESS", "ON_HOLD", "COMPLETED", "CANCELLED"]
MILESTONE_STATUS_OPTIONS = [
    "NOT_STARTED",
    "PLANNING",
    "IN_PROGRESS",
    "ON_HOLD",
    "COMPLETED",
    "CANCELLED",
]
EXPENSE_SLIP_CATEGORIES = ["MATERIALS", "TOOLS", "TRANSPORTATION", "OTHER"]
PAYMENT_REQUEST_STATUS_OPTIONS = ["PENDING", "APPROVED", "REJECTED", "PAID"]
PAYMENT_REQUEST_TRANSITIONS = {
    "PENDING": {"APPROVED", "REJECTED"},
    "APPROVED": {"PAID"},
    "REJECTED": set(),
    "PAID": set(),
}
CHANGE_ORDER_STATUS_OPTIONS = ["PENDING", "APPROVED", "REJECTED", "IMPLEMENTED"]
RISK_CATEGORY_OPTIONS = ["TECHNICAL", "FINANCIAL", "SCHEDULE", "RESOURCE", "EXTERNAL"]
RISK_LEVEL_OPTIONS = ["LOW", "MEDIUM", "HIGH"]
RISK_STATUS_OPTIONS = ["OPEN", "MITIGATED", "CLOSED"]
QUALITY_STATUS_OPTIONS = ["PENDING", "PASSED", "FAILED", "WAIVED"]
PACKAGE_TYPE_OPTIONS = ["CONTRACTOR", "PROPERTY_MANAGER"]
SUBSCRIPTION_STATUS_OPTIONS = ["TRIAL", "ACTIVE", "SUSPENDED", "CANCELLED", "EXPIRED"]
SUBSCRIPTION_PAYMENT_STATUS_OPTIONS = ["PENDING", "COMPLETED", "FAILED", "REFUNDED"]
PACKAGE_FEATURES = [
    "quotations",
    "invoices",
    "statements",
    "financial_reports",
    "kpis",
    "payslips",
    "crm",
    "project_management",
    "ai_agent",
    "tenant_management",
]

ORDER_STATUS_MESSAGES = {
    "PENDING": "has been received and is awaiting assignment",
    "ASSIGNED": "has been assigned to a technician",
    "IN_PROGRESS": "is now in progress",
    "COMPLETED": "has been completed",
    "CANCELLED": "has been cancelled",
}

DEFAULT_PACKAGES = [
    {
        "name": "contractor-starter",
        "display_name": "Contractor Starter",
        "description": "Quotations, invoices and work orders for small teams.",
        "type": "CONTRACTOR",
        "base_price_cents": 49900,
        "additional_user_price_cents": 9900,
        "additional_tenant_price_cents": 0,
        "max_users": 3,
        "features": ["quotations", "invoices", "statements", "crm"],
    },
    {
        "name": "contractor-pro",
        "display_name": "Contractor Pro",
        "description": "Everything in Starter plus projects, payslips and AI assistance.",
        "type": "CONTRACTOR",
        "base_price_cents": 129900,
        "additional_user_price_cents": 9900,
        "additional_tenant_price_cents": 0,
        "max_users": 10,
        "features": [
            "quotations",
            "invoices",
            "statements",
            "financial_reports",
            "kpis",
            "payslips",
            "crm",
            "project_management",
            "ai_agent",
        ],
    },
    {
        "name": "property-manager",
        "display_name": "Property Manager",
        "description": "RFQs, building budgets and tenant management.",
        "type": "PROPERTY_MANAGER",
        "base_price_cents": 89900,
        "additional_user_price_cents": 9900,
        "additional_tenant_price_cents": 1500,
        "max_users": 5,
        "features": [
            "financial_reports",
            "kpis",
            "project_management",
            "ai_agent",
            "tenant_management",
        ],
    },
]


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


class ApiError(Exception):
    """Raised for failures the caller should see, tagged with a coarse category."""

    STATUS_CODES = {
        "BAD_REQUEST": 400,
        "UNAUTHORIZED": 401,
        "FORBIDDEN": 403,
        "NOT_FOUND": 404,
        "CONFLICT": 409,
        "TOO_MANY_REQUESTS": 429,
        "INTERNAL_SERVER_ERROR": 500,
    }

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code if code in self.STATUS_CODES else "INTERNAL_SERVER_ERROR"
        self.message = message

    @property
    def status_code(self) -> int:
        return self.STATUS_CODES[self.code]

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {"error": {"code": self.code, "message": self.message}}


def _coerce_int(value: object | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            return None
    return None


def get_json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {}
    return payload


def require_text(payload: dict, key: str, label: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise ApiError("BAD_REQUEST", f"{label} is required.")
    return value


def optional_text(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def parse_amount_cents(value: object, label: str, *, required: bool = False) -> int:
    if value is None or value == "":
        if required:
            raise ApiError("BAD_REQUEST", f"{label} is required.")
        return 0
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise ApiError("BAD_REQUEST", f"Please provide a valid amount for {label}.") from None
    if amount < 0:
        raise ApiError("BAD_REQUEST", f"{label} must not be negative.")
    return int(amount * 100)


def parse_int_field(value: object, label: str, *, required: bool = False) -> int | None:
    parsed = _coerce_int(value)
    if parsed is None and required:
        raise ApiError("BAD_REQUEST", f"{label} is required.")
    return parsed


def parse_float_field(
    value: object, label: str, *, minimum: float | None = None, maximum: float | None = None
) -> float | None:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", f"{label} must be a number.") from None
    if (minimum is not None and parsed < minimum) or (maximum is not None and parsed > maximum):
        raise ApiError("BAD_REQUEST", f"{label} must be between {minimum:g} and {maximum:g}.")
    return parsed


def parse_date_field(value: object, label: str, *, required: bool = False) -> date | None:
    if value is None or value == "":
        if required:
            raise ApiError("BAD_REQUEST", f"{label} is required.")
        return None
    raw = str(value).strip()
    try:
        return datetime.strptime(raw[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ApiError("BAD_REQUEST", f"Please use the YYYY-MM-DD format for {label}.") from None


def parse_datetime_field(value: object, label: str) -> datetime | None:
    if value is None or value == "":
        return None
    cleaned = str(value).strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        raise ApiError("BAD_REQUEST", f"{label} must be an ISO 8601 date or timestamp.") from None
    return _as_utc(parsed)


def parse_choice(value: object, options: list[str], label: str, default: str | None = None) -> str:
    cleaned = str(value or "").strip().upper()
    if not cleaned and default is not None:
        return default
    if cleaned not in options:
        raise ApiError("BAD_REQUEST", f"{label} must be one of: {', '.join(options)}.")
    return cleaned


def parse_line_items(raw_items: object) -> tuple[list[dict], int]:
    if raw_items is None:
        return [], 0
    if not isinstance(raw_items, list):
        raise ApiError("BAD_REQUEST", "Items must be a list.")

    items: list[dict] = []
    subtotal_cents = 0
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ApiError("BAD_REQUEST", f"Item {index} is invalid.")
        description = require_text(raw, "description", f"Item {index} description")
        quantity = parse_float_field(raw.get("quantity", 1), f"Item {index} quantity", minimum=0)
        unit_price_cents = parse_amount_cents(raw.get("unit_price"), f"item {index} unit price")
        line_total = int(
            (Decimal(str(quantity or 0)) * Decimal(unit_price_cents)).quantize(Decimal("1"))
        )
        items.append(
            {
                "description": description,
                "quantity": quantity or 0,
                "unit_price": cents_to_amount(unit_price_cents),
                "total": cents_to_amount(line_total),
                "unit_of_measure": optional_text(raw, "unit_of_measure"),
            }
        )
        subtotal_cents += line_total
    return items, subtotal_cents


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


def init_stripe(app: Flask) -> None:
    secret_key = app.config.get("STRIPE_SECRET_KEY")
    if secret_key:
        stripe.api_key = secret_key
        stripe.default_http_client = stripe.RequestsClient()
    else:
        stripe.api_key = None


def describe_stripe_error(error: Exception) -> str:
    message = getattr(error, "user_message", None) or getattr(error, "message", None)
    if message:
        return message
    return "An unexpected payment processor error occurred."


def _metadata_dict(stripe_object: object) -> dict[str, str]:
    metadata = getattr(stripe_object, "metadata", None) or {}
    try:
        return dict(metadata)
    except TypeError:
        try:
            return dict(metadata.to_dict())  # type: ignore[attr-defined]
        except AttributeError:
            return {}


conversation_participants = db.Table(
    "conversation_participants",
    db.Column("conversation_id", db.Integer, db.ForeignKey("conversations.id"), primary_key=True),
    db.Column("user_id", db.Integer, db.ForeignKey("users.id"), primary_key=True),
)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(40), nullable=False, default="CUSTOMER")
    phone = db.Column(db.String(40))
    hourly_rate_cents = db.Column(db.Integer)
    daily_rate_cents = db.Column(db.Integer)
    contractor_company_name = db.Column(db.String(255))
    disabled_notification_types = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_login_at = db.Column(db.DateTime(timezone=True))

    subscription = db.relationship("Subscription", back_populates="user", uselist=False)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def notifications_disabled_for(self, notification_type: str) -> bool:
        return notification_type in (self.disabled_notification_types or [])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "phone": self.phone,
            "hourly_rate": cents_to_amount(self.hourly_rate_cents),
            "daily_rate": cents_to_amount(self.daily_rate_cents),
            "contractor_company_name": self.contractor_company_name,
            "disabled_notification_types": list(self.disabled_notification_types or []),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email} ({self.role})>"


class CompanyDetails(db.Model):
    __tablename__ = "company_details"

    id = db.Column(db.Integer, primary_key=True)
    company_name = db.Column(db.String(255), nullable=False, default="Facility Services")
    company_email = db.Column(db.String(255))
    company_phone = db.Column(db.String(40))
    company_address = db.Column(db.String(500))
    vat_number = db.Column(db.String(60))
    invoice_prefix = db.Column(db.String(20), nullable=False, default="INV")
    order_prefix = db.Column(db.String(20), nullable=False, default="ORD")
    quotation_prefix = db.Column(db.String(20), nullable=False, default="QUO")
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "company_name": self.company_name,
            "company_email": self.company_email,
            "company_phone": self.company_phone,
            "company_address": self.company_address,
            "vat_number": self.vat_number,
            "invoice_prefix": self.invoice_prefix,
            "order_prefix": self.order_prefix,
            "quotation_prefix": self.quotation_prefix,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<CompanyDetails>"


class NotificationConfig(db.Model):
    __tablename__ = "notification_config"

    id = db.Column(db.Integer, primary_key=True)
    smtp_host = db.Column(db.String(255), nullable=False, default="smtp.office365.com")
    smtp_port = db.Column(db.Integer, nullable=False, default=587)
    use_tls = db.Column(db.Boolean, nullable=False, default=True)
    from_email = db.Column(db.String(255))
    from_name = db.Column(db.String(255))
    reply_to_email = db.Column(db.String(255))
    smtp_username = db.Column(db.String(255))
    smtp_password = db.Column(db.String(255))
    notify_order_activity = db.Column(db.Boolean, nullable=False, default=True)
    notify_project_activity = db.Column(db.Boolean, nullable=False, default=True)
    notify_billing_activity = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def smtp_ready(self) -> bool:
        username = (self.smtp_username or "").strip()
        password = (self.smtp_password or "").strip()
        sender = (self.from_email or username or "").strip()
        return bool(username and password and sender)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<NotificationConfig>"


class PropertyManagerCustomer(db.Model):
    __tablename__ = "property_manager_customers"

    id = db.Column(db.Integer, primary_key=True)
    property_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(40))
    building_name = db.Column(db.String(255))
    unit_number = db.Column(db.String(60))
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "property_manager_id": self.property_manager_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "building_name": self.building_name,
            "unit_number": self.unit_number,
            "status": self.status,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PropertyManagerCustomer {self.email}>"


class Lead(db.Model):
    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40))
    address = db.Column(db.String(500))
    service_type = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    estimated_value_cents = db.Column(db.Integer)
    status = db.Column(db.String(30), nullable=False, default="NEW")
    notes = db.Column(db.Text)
    next_follow_up_date = db.Column(db.Date)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    follow_up_assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "service_type": self.service_type,
            "description": self.description,
            "estimated_value": cents_to_amount(self.estimated_value_cents),
            "status": self.status,
            "notes": self.notes,
            "next_follow_up_date": _iso(self.next_follow_up_date),
            "created_by_id": self.created_by_id,
            "follow_up_assigned_to_id": self.follow_up_assigned_to_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Lead {self.id} {self.status}>"


class Quotation(db.Model):
    __tablename__ = "quotations"

    id = db.Column(db.Integer, primary_key=True)
    quote_number = db.Column(db.String(60), nullable=False, unique=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40))
    address = db.Column(db.String(500))
    items = db.Column(db.JSON, nullable=False, default=list)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    client_reference_quote_number = db.Column(db.String(60), index=True)
    rejection_reason = db.Column(db.Text)
    notes = db.Column(db.Text)
    valid_until = db.Column(db.Date)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"))
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    created_by = db.relationship("User", foreign_keys=[created_by_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "quote_number": self.quote_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "items": list(self.items or []),
            "subtotal": cents_to_amount(self.subtotal_cents),
            "tax": cents_to_amount(self.tax_cents),
            "total": cents_to_amount(self.total_cents),
            "status": self.status,
            "client_reference_quote_number": self.client_reference_quote_number,
            "rejection_reason": self.rejection_reason,
            "notes": self.notes,
            "valid_until": _iso(self.valid_until),
            "created_by_id": self.created_by_id,
            "project_id": self.project_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Quotation {self.quote_number}>"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(60), nullable=False, unique=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40))
    address = db.Column(db.String(500), nullable=False)
    service_type = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(30), nullable=False, default="PENDING")
    call_out_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"))
    quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"))
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "service_type": self.service_type,
            "description": self.description,
            "status": self.status,
            "call_out_fee": cents_to_amount(self.call_out_fee_cents),
            "total_cost": cents_to_amount(self.total_cost_cents),
            "notes": self.notes,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Order {self.order_number}>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(60), nullable=False, unique=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40))
    address = db.Column(db.String(500))
    items = db.Column(db.JSON, nullable=False, default=list)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    company_material_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    company_labour_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    estimated_profit_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    due_date = db.Column(db.Date)
    paid_date = db.Column(db.DateTime(timezone=True))
    notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"))
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    project = db.relationship("Project", back_populates="invoices")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "items": list(self.items or []),
            "subtotal": cents_to_amount(self.subtotal_cents),
            "tax": cents_to_amount(self.tax_cents),
            "total": cents_to_amount(self.total_cents),
            "company_material_cost": cents_to_amount(self.company_material_cost_cents),
            "company_labour_cost": cents_to_amount(self.company_labour_cost_cents),
            "estimated_profit": cents_to_amount(self.estimated_profit_cents),
            "status": self.status,
            "due_date": _iso(self.due_date),
            "paid_date": _iso(self.paid_date),
            "notes": self.notes,
            "order_id": self.order_id,
            "project_id": self.project_id,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.invoice_number}>"


class PropertyManagerRFQ(db.Model):
    __tablename__ = "property_manager_rfqs"

    id = db.Column(db.Integer, primary_key=True)
    rfq_number = db.Column(db.String(60), nullable=False, unique=True)
    property_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    scope_of_work = db.Column(db.Text, nullable=False)
    building_name = db.Column(db.String(255))
    building_address = db.Column(db.String(500), nullable=False)
    urgency = db.Column(db.String(20), nullable=False, default="NORMAL")
    estimated_budget_cents = db.Column(db.Integer)
    status = db.Column(db.String(30), nullable=False, default="SUBMITTED")
    selected_contractor_ids = db.Column(db.JSON, nullable=False, default=list)
    attachments = db.Column(db.JSON, nullable=False, default=list)
    notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    submitted_date = db.Column(db.DateTime(timezone=True))
    approved_date = db.Column(db.DateTime(timezone=True))
    rejected_date = db.Column(db.DateTime(timezone=True))
    approved_quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"))
    generated_order_id = db.Column(db.Integer, db.ForeignKey("property_manager_orders.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    property_manager = db.relationship("User", foreign_keys=[property_manager_id])
    approved_quotation = db.relationship("Quotation", foreign_keys=[approved_quotation_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "rfq_number": self.rfq_number,
            "property_manager_id": self.property_manager_id,
            "title": self.title,
            "description": self.description,
            "scope_of_work": self.scope_of_work,
            "building_name": self.building_name,
            "building_address": self.building_address,
            "urgency": self.urgency,
            "estimated_budget": cents_to_amount(self.estimated_budget_cents),
            "status": self.status,
            "selected_contractor_ids": list(self.selected_contractor_ids or []),
            "attachments": list(self.attachments or []),
            "notes": self.notes,
            "rejection_reason": self.rejection_reason,
            "submitted_date": _iso(self.submitted_date),
            "approved_date": _iso(self.approved_date),
            "approved_quotation_id": self.approved_quotation_id,
            "generated_order_id": self.generated_order_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PropertyManagerRFQ {self.rfq_number} {self.status}>"


class PropertyManagerOrder(db.Model):
    __tablename__ = "property_manager_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(60), nullable=False, unique=True)
    property_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    contractor_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    scope_of_work = db.Column(db.Text, nullable=False)
    building_name = db.Column(db.String(255))
    building_address = db.Column(db.String(500), nullable=False)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    generated_from_rfq_id = db.Column(db.Integer, unique=True, index=True)
    notes = db.Column(db.Text)
    start_date = db.Column(db.Date)
    due_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "property_manager_id": self.property_manager_id,
            "contractor_id": self.contractor_id,
            "title": self.title,
            "description": self.description,
            "scope_of_work": self.scope_of_work,
            "building_name": self.building_name,
            "building_address": self.building_address,
            "total_amount": cents_to_amount(self.total_amount_cents),
            "status": self.status,
            "generated_from_rfq_id": self.generated_from_rfq_id,
            "notes": self.notes,
            "start_date": _iso(self.start_date),
            "due_date": _iso(self.due_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PropertyManagerOrder {self.order_number}>"


class PropertyManagerInvoice(db.Model):
    __tablename__ = "property_manager_invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(60), nullable=False, unique=True)
    property_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    contractor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("property_manager_orders.id"))
    items = db.Column(db.JSON, nullable=False, default=list)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    due_date = db.Column(db.Date)
    notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    admin_approved_date = db.Column(db.DateTime(timezone=True))
    sent_to_pm_date = db.Column(db.DateTime(timezone=True))
    pm_approved_date = db.Column(db.DateTime(timezone=True))
    pm_rejected_date = db.Column(db.DateTime(timezone=True))
    pm_rejection_reason = db.Column(db.Text)
    paid_date = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    property_manager = db.relationship("User", foreign_keys=[property_manager_id])
    contractor = db.relationship("User", foreign_keys=[contractor_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "property_manager_id": self.property_manager_id,
            "contractor_id": self.contractor_id,
            "order_id": self.order_id,
            "items": list(self.items or []),
            "subtotal": cents_to_amount(self.subtotal_cents),
            "tax": cents_to_amount(self.tax_cents),
            "total": cents_to_amount(self.total_cents),
            "status": self.status,
            "due_date": _iso(self.due_date),
            "notes": self.notes,
            "rejection_reason": self.rejection_reason,
            "admin_approved_date": _iso(self.admin_approved_date),
            "sent_to_pm_date": _iso(self.sent_to_pm_date),
            "pm_approved_date": _iso(self.pm_approved_date),
            "pm_rejected_date": _iso(self.pm_rejected_date),
            "pm_rejection_reason": self.pm_rejection_reason,
            "paid_date": _iso(self.paid_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PropertyManagerInvoice {self.invoice_number} {self.status}>"


class BuildingBudget(db.Model):
    __tablename__ = "building_budgets"

    id = db.Column(db.Integer, primary_key=True)
    property_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    building_name = db.Column(db.String(255), nullable=False)
    fiscal_year = db.Column(db.Integer, nullable=False)
    total_budget_cents = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    total_remaining_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    expenses = db.relationship(
        "BudgetExpense", back_populates="budget", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "property_manager_id": self.property_manager_id,
            "building_name": self.building_name,
            "fiscal_year": self.fiscal_year,
            "total_budget": cents_to_amount(self.total_budget_cents),
            "total_spent": cents_to_amount(self.total_spent_cents),
            "total_remaining": cents_to_amount(self.total_remaining_cents),
            "notes": self.notes,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<BuildingBudget {self.building_name} {self.fiscal_year}>"


class BudgetExpense(db.Model):
    __tablename__ = "budget_expenses"

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("building_budgets.id"), nullable=False)
    category = db.Column(db.String(60), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    expense_date = db.Column(db.Date, nullable=False)
    vendor = db.Column(db.String(255))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    budget = db.relationship("BuildingBudget", back_populates="expenses")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "category": self.category,
            "description": self.description,
            "amount": cents_to_amount(self.amount_cents),
            "expense_date": _iso(self.expense_date),
            "vendor": self.vendor,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<BudgetExpense {self.id} for budget {self.budget_id}>"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    project_number = db.Column(db.String(60), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(40))
    address = db.Column(db.String(500), nullable=False)
    project_type = db.Column(db.String(120), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="PLANNING")
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    estimated_budget_cents = db.Column(db.Integer)
    actual_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    milestones = db.relationship(
        "Milestone",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Milestone.sequence_order",
    )
    change_orders = db.relationship(
        "ChangeOrder", back_populates="project", cascade="all, delete-orphan"
    )
    invoices = db.relationship("Invoice", back_populates="project")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "project_number": self.project_number,
            "name": self.name,
            "description": self.description,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "address": self.address,
            "project_type": self.project_type,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "estimated_budget": cents_to_amount(self.estimated_budget_cents),
            "actual_cost": cents_to_amount(self.actual_cost_cents),
            "notes": self.notes,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Project {self.project_number}>"


class Milestone(db.Model):
    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    sequence_order = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(30), nullable=False, default="PLANNING")
    labour_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    material_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    diesel_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    rent_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    admin_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    other_operational_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    expected_profit_cents = db.Column(db.Integer, nullable=False, default=0)
    budget_allocated_cents = db.Column(db.Integer, nullable=False, default=0)
    actual_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    progress_percentage = db.Column(db.Float, nullable=False, default=0)
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    actual_start_date = db.Column(db.DateTime(timezone=True))
    actual_end_date = db.Column(db.DateTime(timezone=True))
    notes = db.Column(db.Text)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    project = db.relationship("Project", back_populates="milestones")
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    materials = db.relationship(
        "MilestoneMaterial", back_populates="milestone", cascade="all, delete-orphan"
    )
    weekly_updates = db.relationship(
        "WeeklyBudgetUpdate", back_populates="milestone", cascade="all, delete-orphan"
    )
    expense_slips = db.relationship(
        "MilestoneExpenseSlip", back_populates="milestone", cascade="all, delete-orphan"
    )
    payment_requests = db.relationship("PaymentRequest", back_populates="milestone")
    change_orders = db.relationship("ChangeOrder", back_populates="milestone")
    risks = db.relationship(
        "MilestoneRisk", back_populates="milestone", cascade="all, delete-orphan"
    )
    quality_checkpoints = db.relationship(
        "QualityCheckpoint", back_populates="milestone", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "sequence_order": self.sequence_order,
            "status": self.status,
            "labour_cost": cents_to_amount(self.labour_cost_cents),
            "material_cost": cents_to_amount(self.material_cost_cents),
            "diesel_cost": cents_to_amount(self.diesel_cost_cents),
            "rent_cost": cents_to_amount(self.rent_cost_cents),
            "admin_cost": cents_to_amount(self.admin_cost_cents),
            "other_operational_cost": cents_to_amount(self.other_operational_cost_cents),
            "expected_profit": cents_to_amount(self.expected_profit_cents),
            "budget_allocated": cents_to_amount(self.budget_allocated_cents),
            "actual_cost": cents_to_amount(self.actual_cost_cents),
            "progress_percentage": self.progress_percentage,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "assigned_to_id": self.assigned_to_id,
            "materials": [material.to_dict() for material in self.materials],
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Milestone {self.id} {self.name}>"


class MilestoneMaterial(db.Model):
    __tablename__ = "milestone_materials"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    supplier = db.Column(db.String(255))

    milestone = db.relationship("Milestone", back_populates="materials")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": cents_to_amount(self.unit_price_cents),
            "total_cost": cents_to_amount(self.total_cost_cents),
            "supplier": self.supplier,
        }


class WeeklyBudgetUpdate(db.Model):
    __tablename__ = "weekly_budget_updates"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False)
    week_start_date = db.Column(db.Date, nullable=False)
    week_end_date = db.Column(db.Date, nullable=False)
    labour_expenditure_cents = db.Column(db.Integer, nullable=False, default=0)
    material_expenditure_cents = db.Column(db.Integer, nullable=False, default=0)
    other_expenditure_cents = db.Column(db.Integer, nullable=False, default=0)
    total_expenditure_cents = db.Column(db.Integer, nullable=False, default=0)
    progress_percentage = db.Column(db.Float, nullable=False, default=0)
    notes = db.Column(db.Text)
    work_done = db.Column(db.Text)
    challenges = db.Column(db.Text)
    successes = db.Column(db.Text)
    next_week_plan = db.Column(db.Text)
    images_done = db.Column(db.JSON, nullable=False, default=list)
    itemized_expenses = db.Column(db.JSON, nullable=False, default=list)
    pdf_url = db.Column(db.String(1000))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    milestone = db.relationship("Milestone", back_populates="weekly_updates")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "week_start_date": _iso(self.week_start_date),
            "week_end_date": _iso(self.week_end_date),
            "labour_expenditure": cents_to_amount(self.labour_expenditure_cents),
            "material_expenditure": cents_to_amount(self.material_expenditure_cents),
            "other_expenditure": cents_to_amount(self.other_expenditure_cents),
            "total_expenditure": cents_to_amount(self.total_expenditure_cents),
            "progress_percentage": self.progress_percentage,
            "notes": self.notes,
            "work_done": self.work_done,
            "challenges": self.challenges,
            "successes": self.successes,
            "next_week_plan": self.next_week_plan,
            "images_done": list(self.images_done or []),
            "itemized_expenses": list(self.itemized_expenses or []),
            "pdf_url": self.pdf_url,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<WeeklyBudgetUpdate {self.id} for milestone {self.milestone_id}>"


class MilestoneExpenseSlip(db.Model):
    __tablename__ = "milestone_expense_slips"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False)
    category = db.Column(db.String(30), nullable=False, default="OTHER")
    description = db.Column(db.String(500))
    amount_cents = db.Column(db.Integer)
    slip_url = db.Column(db.String(1000), nullable=False)
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    milestone = db.relationship("Milestone", back_populates="expense_slips")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "amount": cents_to_amount(self.amount_cents),
            "slip_url": self.slip_url,
        }


class PaymentRequest(db.Model):
    __tablename__ = "payment_requests"

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(db.String(60), nullable=False, unique=True)
    artisan_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"))
    hours_worked = db.Column(db.Float)
    days_worked = db.Column(db.Float)
    hourly_rate_cents = db.Column(db.Integer)
    daily_rate_cents = db.Column(db.Integer)
    calculated_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    approved_date = db.Column(db.DateTime(timezone=True))
    paid_date = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    artisan = db.relationship("User", foreign_keys=[artisan_id])
    milestone = db.relationship("Milestone", back_populates="payment_requests")
    payslip = db.relationship("Payslip", back_populates="payment_request", uselist=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "request_number": self.request_number,
            "artisan_id": self.artisan_id,
            "milestone_id": self.milestone_id,
            "hours_worked": self.hours_worked,
            "days_worked": self.days_worked,
            "hourly_rate": cents_to_amount(self.hourly_rate_cents),
            "daily_rate": cents_to_amount(self.daily_rate_cents),
            "calculated_amount": cents_to_amount(self.calculated_amount_cents),
            "status": self.status,
            "notes": self.notes,
            "rejection_reason": self.rejection_reason,
            "approved_date": _iso(self.approved_date),
            "paid_date": _iso(self.paid_date),
            "payslip": self.payslip.to_dict() if self.payslip else None,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PaymentRequest {self.request_number} {self.status}>"


class Payslip(db.Model):
    __tablename__ = "payslips"

    id = db.Column(db.Integer, primary_key=True)
    payslip_number = db.Column(db.String(60), nullable=False, unique=True)
    payment_request_id = db.Column(
        db.Integer, db.ForeignKey("payment_requests.id"), nullable=False, unique=True
    )
    artisan_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    pay_period_start = db.Column(db.Date, nullable=False)
    pay_period_end = db.Column(db.Date, nullable=False)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    basic_salary_cents = db.Column(db.Integer, nullable=False, default=0)
    gross_pay_cents = db.Column(db.Integer, nullable=False, default=0)
    income_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    uif_cents = db.Column(db.Integer, nullable=False, default=0)
    total_deductions_cents = db.Column(db.Integer, nullable=False, default=0)
    net_pay_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="GENERATED")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    payment_request = db.relationship("PaymentRequest", back_populates="payslip")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "payslip_number": self.payslip_number,
            "payment_request_id": self.payment_request_id,
            "artisan_id": self.artisan_id,
            "pay_period_start": _iso(self.pay_period_start),
            "pay_period_end": _iso(self.pay_period_end),
            "payment_date": _iso(self.payment_date),
            "basic_salary": cents_to_amount(self.basic_salary_cents),
            "gross_pay": cents_to_amount(self.gross_pay_cents),
            "income_tax": cents_to_amount(self.income_tax_cents),
            "uif": cents_to_amount(self.uif_cents),
            "total_deductions": cents_to_amount(self.total_deductions_cents),
            "net_pay": cents_to_amount(self.net_pay_cents),
            "status": self.status,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Payslip {self.payslip_number}>"


class ChangeOrder(db.Model):
    __tablename__ = "change_orders"

    id = db.Column(db.Integer, primary_key=True)
    change_order_number = db.Column(db.String(60), nullable=False, unique=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    reason = db.Column(db.Text)
    cost_impact_cents = db.Column(db.Integer, nullable=False, default=0)
    time_impact_days = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approved_date = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    project = db.relationship("Project", back_populates="change_orders")
    milestone = db.relationship("Milestone", back_populates="change_orders")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "change_order_number": self.change_order_number,
            "project_id": self.project_id,
            "milestone_id": self.milestone_id,
            "title": self.title,
            "description": self.description,
            "reason": self.reason,
            "cost_impact": cents_to_amount(self.cost_impact_cents),
            "time_impact_days": self.time_impact_days,
            "status": self.status,
            "approved_date": _iso(self.approved_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ChangeOrder {self.change_order_number}>"


class MilestoneRisk(db.Model):
    __tablename__ = "milestone_risks"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(20), nullable=False, default="TECHNICAL")
    probability = db.Column(db.String(10), nullable=False, default="MEDIUM")
    impact = db.Column(db.String(10), nullable=False, default="MEDIUM")
    status = db.Column(db.String(20), nullable=False, default="OPEN")
    mitigation_strategy = db.Column(db.Text)
    identified_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    milestone = db.relationship("Milestone", back_populates="risks")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "description": self.description,
            "category": self.category,
            "probability": self.probability,
            "impact": self.impact,
            "status": self.status,
            "mitigation_strategy": self.mitigation_strategy,
            "created_at": _iso(self.created_at),
        }


class QualityCheckpoint(db.Model):
    __tablename__ = "quality_checkpoints"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    inspected_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    inspection_date = db.Column(db.DateTime(timezone=True))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    milestone = db.relationship("Milestone", back_populates="quality_checkpoints")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "inspected_by_id": self.inspected_by_id,
            "inspection_date": _iso(self.inspection_date),
            "notes": self.notes,
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    recipient_role = db.Column(db.String(40), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(60), nullable=False)
    related_entity_id = db.Column(db.Integer)
    related_entity_type = db.Column(db.String(60))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "message": self.message,
            "type": self.type,
            "related_entity_id": self.related_entity_id,
            "related_entity_type": self.related_entity_type,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Notification {self.type} for {self.recipient_id}>"


class Conversation(db.Model):
    __tablename__ = "conversations"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    participants = db.relationship("User", secondary=conversation_participants)
    messages = db.relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    def participant_ids(self) -> set[int]:
        return {participant.id for participant in self.participants}

    def to_dict(self) -> dict[str, object]:
        last_message = self.messages[-1] if self.messages else None
        return {
            "id": self.id,
            "participants": [
                {"id": user.id, "name": user.full_name, "role": user.role}
                for user in self.participants
            ],
            "last_message": last_message.to_dict() if last_message else None,
            "updated_at": _iso(self.updated_at),
        }


class Message(db.Model):
    __tablename__ = "messages"

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey("conversations.id"), nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    attachments = db.Column(db.JSON, nullable=False, default=list)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = db.relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "attachments": list(self.attachments or []),
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


class Package(db.Model):
    __tablename__ = "packages"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    display_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    type = db.Column(db.String(30), nullable=False)
    base_price_cents = db.Column(db.Integer, nullable=False, default=0)
    additional_user_price_cents = db.Column(db.Integer, nullable=False, default=0)
    additional_tenant_price_cents = db.Column(db.Integer, nullable=False, default=0)
    max_users = db.Column(db.Integer, nullable=False, default=1)
    trial_days = db.Column(db.Integer, nullable=False, default=14)
    has_quotations = db.Column(db.Boolean, nullable=False, default=False)
    has_invoices = db.Column(db.Boolean, nullable=False, default=False)
    has_statements = db.Column(db.Boolean, nullable=False, default=False)
    has_financial_reports = db.Column(db.Boolean, nullable=False, default=False)
    has_kpis = db.Column(db.Boolean, nullable=False, default=False)
    has_payslips = db.Column(db.Boolean, nullable=False, default=False)
    has_crm = db.Column(db.Boolean, nullable=False, default=False)
    has_project_management = db.Column(db.Boolean, nullable=False, default=False)
    has_ai_agent = db.Column(db.Boolean, nullable=False, default=False)
    has_tenant_management = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def feature_list(self) -> list[str]:
        return [feature for feature in PACKAGE_FEATURES if getattr(self, f"has_{feature}")]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "type": self.type,
            "base_price": cents_to_amount(self.base_price_cents),
            "additional_user_price": cents_to_amount(self.additional_user_price_cents),
            "additional_tenant_price": cents_to_amount(self.additional_tenant_price_cents),
            "max_users": self.max_users,
            "trial_days": self.trial_days,
            "features": self.feature_list(),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Package {self.name}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="TRIAL")
    trial_ends_at = db.Column(db.DateTime(timezone=True))
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True))
    next_billing_date = db.Column(db.DateTime(timezone=True))
    max_users = db.Column(db.Integer, nullable=False, default=1)
    current_users = db.Column(db.Integer, nullable=False, default=1)
    additional_users = db.Column(db.Integer, nullable=False, default=0)
    additional_tenants = db.Column(db.Integer, nullable=False, default=0)
    is_payment_overdue = db.Column(db.Boolean, nullable=False, default=False)
    stripe_customer_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user = db.relationship("User", back_populates="subscription")
    package = db.relationship("Package")
    payments = db.relationship(
        "SubscriptionPayment", back_populates="subscription", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "package": self.package.to_dict() if self.package else None,
            "status": self.status,
            "trial_ends_at": _iso(self.trial_ends_at),
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "next_billing_date": _iso(self.next_billing_date),
            "max_users": self.max_users,
            "current_users": self.current_users,
            "additional_users": self.additional_users,
            "additional_tenants": self.additional_tenants,
            "is_payment_overdue": self.is_payment_overdue,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Subscription user={self.user_id} {self.status}>"


class SubscriptionPayment(db.Model):
    __tablename__ = "subscription_payments"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    stripe_payment_intent_id = db.Column(db.String(64), index=True)
    failure_reason = db.Column(db.String(500))
    paid_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    subscription = db.relationship("Subscription", back_populates="payments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "amount": cents_to_amount(self.amount_cents),
            "status": self.status,
            "failure_reason": self.failure_reason,
            "paid_at": _iso(self.paid_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SubscriptionPayment {self.id} {self.status}>"


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "facility.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    token_max_age_env = os.environ.get("TOKEN_MAX_AGE_SECONDS")
    try:
        token_max_age = int(token_max_age_env) if token_max_age_env else TOKEN_MAX_AGE_SECONDS_DEFAULT
    except ValueError:
        token_max_age = TOKEN_MAX_AGE_SECONDS_DEFAULT

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or f"sqlite:///{db_path}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "TOKEN_MAX_AGE_SECONDS": token_max_age,
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "COMPANY_NAME": os.environ.get("COMPANY_NAME", "Facility Services"),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "STRIPE_CURRENCY": os.environ.get("STRIPE_CURRENCY", STRIPE_DEFAULT_CURRENCY),
        "STORAGE_ENDPOINT_URL": os.environ.get("STORAGE_ENDPOINT_URL"),
        "STORAGE_PUBLIC_URL": os.environ.get("STORAGE_PUBLIC_URL"),
        "STORAGE_BUCKET": os.environ.get("STORAGE_BUCKET", storage.DEFAULT_BUCKET),
        "STORAGE_REGION": os.environ.get("STORAGE_REGION"),
        "STORAGE_ACCESS_KEY": os.environ.get("STORAGE_ACCESS_KEY"),
        "STORAGE_SECRET_KEY": os.environ.get("STORAGE_SECRET_KEY"),
        "ANTHROPIC_API_KEY": os.environ.get("ANTHROPIC_API_KEY"),
        "ANTHROPIC_MODEL": os.environ.get("ANTHROPIC_MODEL", ai_assistant.DEFAULT_MODEL),
        "EMAIL_SENDER": None,
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    init_stripe(app)

    register_error_handlers(app)
    register_routes(app)

    with app.app_context():
        db.create_all()
        ensure_default_admin_user()
        ensure_company_details()
        ensure_notification_configuration()
        ensure_packages_seeded()

    return app


def ensure_default_admin_user() -> None:
    if User.query.filter(User.role.in_(ADMIN_ROLES)).count() > 0:
        return

    email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("ADMIN_PASSWORD")

    if not email or not password:
        current_app.logger.warning(
            "No admin users exist and ADMIN_EMAIL/ADMIN_PASSWORD were not provided."
        )
        return

    admin = User(email=email, first_name="System", last_name="Administrator", role="SENIOR_ADMIN")
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def ensure_company_details() -> CompanyDetails:
    details = CompanyDetails.query.first()
    if details:
        return details

    details = CompanyDetails(company_name=current_app.config.get("COMPANY_NAME") or "Facility Services")
    db.session.add(details)
    db.session.commit()
    return details


def ensure_notification_configuration() -> NotificationConfig:
    config = NotificationConfig.query.first()
    if config:
        return config

    config = NotificationConfig()
    db.session.add(config)
    db.session.commit()
    return config


def ensure_packages_seeded() -> None:
    existing = {package.name for package in Package.query.all()}
    created = False
    for definition in DEFAULT_PACKAGES:
        if definition["name"] in existing:
            continue
        package = Package(
            name=definition["name"],
            display_name=definition["display_name"],
            description=definition["description"],
            type=definition["type"],
            base_price_cents=definition["base_price_cents"],
            additional_user_price_cents=definition["additional_user_price_cents"],
            additional_tenant_price_cents=definition["additional_tenant_price_cents"],
            max_users=definition["max_users"],
        )
        for feature in definition["features"]:
            setattr(package, f"has_{feature}", True)
        db.session.add(package)
        created = True
    if created:
        db.session.commit()


def get_company_details() -> CompanyDetails:
    return CompanyDetails.query.first() or ensure_company_details()


def send_email_via_smtp(
    app: Flask,
    recipient: str,
    subject: str,
    body: str,
    attachments: list[tuple[str, bytes]] | None = None,
) -> bool:
    config = NotificationConfig.query.first()
    if not config or not recipient:
        return False

    if not config.smtp_ready():
        return False

    host = (config.smtp_host or "smtp.office365.com").strip()
    try:
        port = int(config.smtp_port or 587)
    except (TypeError, ValueError):
        port = 587

    from_email = (config.from_email or config.smtp_username or "").strip()
    from_name = (config.from_name or app.config.get("COMPANY_NAME") or "").strip()
    username = (config.smtp_username or "").strip()
    password = config.smtp_password or ""

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((from_name, from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(datetime.now(UTC))
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])

    reply_to_email = (config.reply_to_email or "").strip()
    if reply_to_email:
        message["Reply-To"] = reply_to_email

    message.set_content(body)
    for filename, content in attachments or []:
        message.add_attachment(
            content, maintype="application", subtype="pdf", filename=filename
        )

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if config.use_tls:
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            smtp.login(username, password)
            smtp.send_message(message)
        return True
    except Exception as exc:  # pragma: no cover - external service dependency
        app.logger.warning("SMTP email delivery failed: %s", exc)
        return False


def should_send_notification(category: str) -> bool:
    config = NotificationConfig.query.first()
    if config is None:
        return True

    normalized = category.lower()
    if normalized == "order":
        return config.notify_order_activity
    if normalized == "project":
        return config.notify_project_activity
    if normalized == "billing":
        return config.notify_billing_activity
    return True


def dispatch_email(
    recipient: str | None,
    subject: str,
    body: str,
    category: str = "general",
    attachments: list[tuple[str, bytes]] | None = None,
) -> bool:
    if not recipient or not should_send_notification(category):
        return False

    app = current_app._get_current_object()
    sender = app.config.get("EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body, attachments or []))
        except Exception as exc:  # pragma: no cover - external service dependency
            app.logger.warning("Custom email sender failed: %s", exc)
            return False

    return send_email_via_smtp(app, recipient, subject, body, attachments)


def admin_users() -> list[User]:
    return User.query.filter(User.role.in_(ADMIN_ROLES)).order_by(User.id.asc()).all()


def create_notification(
    recipient: User | None,
    message: str,
    notification_type: str,
    related_entity_id: int | None = None,
    related_entity_type: str | None = None,
) -> Notification | None:
    if recipient is None or recipient.notifications_disabled_for(notification_type):
        return None

    notification = Notification(
        recipient_id=recipient.id,
        recipient_role=recipient.role,
        message=message,
        type=notification_type,
        related_entity_id=related_entity_id,
        related_entity_type=related_entity_type,
    )
    try:
        db.session.add(notification)
        db.session.commit()
    except Exception as exc:  # pragma: no cover - best-effort side effect
        db.session.rollback()
        current_app.logger.warning(
            "Failed to create %s notification for user %s: %s",
            notification_type,
            recipient.id,
            exc,
        )
        return None
    return notification


def notify_admins(
    message: str,
    notification_type: str,
    related_entity_id: int | None = None,
    related_entity_type: str | None = None,
) -> int:
    delivered = 0
    for admin in admin_users():
        if create_notification(
            admin, message, notification_type, related_entity_id, related_entity_type
        ):
            delivered += 1
    return delivered


def _token_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_token(user: User) -> str:
    return _token_serializer().dumps({"user_id": user.id})


def verify_token(token: str | None) -> User | None:
    if not token:
        return None
    try:
        data = _token_serializer().loads(
            token, max_age=current_app.config.get("TOKEN_MAX_AGE_SECONDS")
        )
    except BadSignature:
        return None
    user_id = _coerce_int(data.get("user_id")) if isinstance(data, dict) else None
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def token_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        user = verify_token(token.strip()) if scheme.lower() == "bearer" else None
        if user is None:
            raise ApiError("UNAUTHORIZED", "Invalid or expired token")
        g.current_user = user
        return func(*args, **kwargs)

    return wrapper


def is_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES


def is_contractor(user: User) -> bool:
    return user.role in CONTRACTOR_ROLES


def require_role(user: User, roles: set[str], message: str) -> None:
    if user.role not in roles:
        raise ApiError("FORBIDDEN", message)


def get_or_404(model, object_id: int, message: str):
    instance = db.session.get(model, object_id)
    if instance is None:
        raise ApiError("NOT_FOUND", message)
    return instance


def company_user_ids(user: User) -> set[int]:
    ids = {user.id}
    company = (user.contractor_company_name or "").strip()
    if company:
        ids.update(
            row.id
            for row in User.query.filter(User.contractor_company_name == company).all()
        )
    return ids


def can_access_project(user: User, project: Project) -> bool:
    if is_admin(user):
        return True
    if user.role == "CUSTOMER":
        return (project.customer_email or "").lower() == user.email.lower()
    if user.role == "PROPERTY_MANAGER":
        if project.created_by_id == user.id:
            return True
        managed = PropertyManagerCustomer.query.filter(
            PropertyManagerCustomer.property_manager_id == user.id,
            func.lower(PropertyManagerCustomer.email) == (project.customer_email or "").lower(),
        ).first()
        return managed is not None
    if is_contractor(user):
        if project.created_by_id == user.id:
            return True
        return project.assigned_to_id is not None and project.assigned_to_id in company_user_ids(user)
    if user.role == "ARTISAN":
        if project.assigned_to_id == user.id:
            return True
        return any(milestone.assigned_to_id == user.id for milestone in project.milestones)
    return False


def assert_can_access_project(user: User, project: Project) -> None:
    if not can_access_project(user, project):
        raise ApiError("FORBIDDEN", "You do not have access to this project.")


def generate_document_number(model, column, prefix: str) -> str:
    sequence = model.query.filter(column.like(f"{prefix}-%")).count() + 1
    while model.query.filter(column == f"{prefix}-{sequence:05d}").first() is not None:
        sequence += 1
    return f"{prefix}-{sequence:05d}"


def invoice_number_in_use(invoice_number: str) -> bool:
    return (
        Invoice.query.filter_by(invoice_number=invoice_number).first() is not None
        or PropertyManagerInvoice.query.filter_by(invoice_number=invoice_number).first()
        is not None
    )


def generate_invoice_number() -> str:
    prefix = get_company_details().invoice_prefix
    sequence = Invoice.query.count() + PropertyManagerInvoice.query.count() + 1
    while invoice_number_in_use(f"{prefix}-{sequence:05d}"):
        sequence += 1
    return f"{prefix}-{sequence:05d}"


def generate_payslip_number(moment: datetime) -> str:
    prefix = f"PS-{moment.year}-{moment.month:02d}-"
    last = (
        Payslip.query.filter(Payslip.payslip_number.like(f"{prefix}%"))
        .order_by(Payslip.payslip_number.desc())
        .first()
    )
    sequence = 1
    if last is not None:
        sequence = (_coerce_int(last.payslip_number.rsplit("-", 1)[-1]) or 0) + 1
    return f"{prefix}{sequence:05d}"


def recalculate_milestone_actual_cost(milestone: Milestone) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(WeeklyBudgetUpdate.total_expenditure_cents), 0))
        .filter(WeeklyBudgetUpdate.milestone_id == milestone.id)
        .scalar()
    )
    milestone.actual_cost_cents = int(total or 0)
    return milestone.actual_cost_cents


def create_payslip_for_request(payment_request: PaymentRequest, paid_at: datetime) -> Payslip:
    period_start, period_end = pay_period_bounds(paid_at)
    amounts = calculate_payslip_amounts(payment_request.calculated_amount_cents)
    payslip = Payslip(
        payslip_number=generate_payslip_number(paid_at),
        payment_request_id=payment_request.id,
        artisan_id=payment_request.artisan_id,
        pay_period_start=period_start,
        pay_period_end=period_end,
        payment_date=paid_at,
        basic_salary_cents=amounts["gross_pay_cents"],
        status="GENERATED",
        **amounts,
    )
    db.session.add(payslip)
    return payslip


def refresh_subscription_status(subscription: Subscription) -> bool:
    changed = False
    now = utcnow()
    trial_ends_at = _as_utc(subscription.trial_ends_at)
    if subscription.status == "TRIAL" and trial_ends_at and trial_ends_at < now:
        subscription.status = "EXPIRED"
        changed = True
    elif subscription.status == "ACTIVE" and subscription.is_payment_overdue:
        subscription.status = "SUSPENDED"
        changed = True
    return changed


def get_user_subscription(user: User) -> Subscription | None:
    subscription = Subscription.query.filter_by(user_id=user.id).first()
    if subscription is None:
        return None
    if refresh_subscription_status(subscription):
        db.session.commit()
    return subscription


def has_feature_access(user: User, feature: str) -> bool:
    if is_admin(user):
        return True
    if feature not in PACKAGE_FEATURES:
        return False
    subscription = get_user_subscription(user)
    if subscription is None or subscription.status not in {"TRIAL", "ACTIVE"}:
        return False
    return bool(getattr(subscription.package, f"has_{feature}", False))


def can_add_user(subscription: Subscription) -> bool:
    return subscription.current_users < subscription.max_users


def increment_user_count(subscription: Subscription) -> None:
    if not can_add_user(subscription):
        raise ApiError(
            "BAD_REQUEST",
            f"User limit reached ({subscription.max_users}). Upgrade your package to add more users.",
        )
    subscription.current_users += 1


def create_subscription_payment_intent(payment: SubscriptionPayment, user: User):
    if not stripe_active():
        return None

    metadata = {
        "subscription_payment_id": str(payment.id),
        "subscription_id": str(payment.subscription_id),
        "user_id": str(user.id),
    }
    payment_intent = stripe.PaymentIntent.create(
        amount=payment.amount_cents,
        currency=current_app.config.get("STRIPE_CURRENCY") or STRIPE_DEFAULT_CURRENCY,
        description=f"Subscription payment {payment.id} - {user.email}"[:220],
        metadata=metadata,
        receipt_email=user.email,
        automatic_payment_methods={"enabled": True},
    )
    payment.stripe_payment_intent_id = payment_intent.id
    return payment_intent


def _find_subscription_payment_for_intent(intent: object) -> SubscriptionPayment | None:
    metadata = _metadata_dict(intent)
    payment_id = _coerce_int(metadata.get("subscription_payment_id"))
    if payment_id is not None:
        payment = db.session.get(SubscriptionPayment, payment_id)
        if payment is not None:
            return payment
    payment_intent_id = getattr(intent, "id", None)
    if payment_intent_id:
        return SubscriptionPayment.query.filter_by(
            stripe_payment_intent_id=payment_intent_id
        ).first()
    return None


def handle_stripe_event(event: object) -> bool:
    event_type = getattr(event, "type", "")
    data_object = getattr(getattr(event, "data", None), "object", None)
    if not data_object:
        return False

    if event_type == "payment_intent.succeeded":
        return _handle_payment_intent_succeeded(data_object)
    if event_type == "payment_intent.payment_failed":
        return _handle_payment_intent_failed(data_object)
    return False


def _handle_payment_intent_succeeded(intent: object) -> bool:
    payment = _find_subscription_payment_for_intent(intent)
    if payment is None:
        return False

    now = utcnow()
    payment.status = "COMPLETED"
    payment.paid_at = now
    payment.failure_reason = None
    payment.stripe_payment_intent_id = getattr(intent, "id", payment.stripe_payment_intent_id)

    subscription = payment.subscription
    subscription.status = "ACTIVE"
    subscription.is_payment_overdue = False
    subscription.current_period_start = now
    subscription.current_period_end = now + timedelta(days=30)
    subscription.next_billing_date = subscription.current_period_end
    return True


def _handle_payment_intent_failed(intent: object) -> bool:
    payment = _find_subscription_payment_for_intent(intent)
    if payment is None:
        return False

    last_error = getattr(intent, "last_payment_error", None)
    payment.status = "FAILED"
    payment.failure_reason = getattr(last_error, "message", None) or "Payment failed"
    payment.subscription.is_payment_overdue = True
    refresh_subscription_status(payment.subscription)
    return True


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        code = {
            400: "BAD_REQUEST",
            401: "UNAUTHORIZED",
            403: "FORBIDDEN",
            404: "NOT_FOUND",
            409: "CONFLICT",
            429: "TOO_MANY_REQUESTS",
        }.get(error.code or 500, "INTERNAL_SERVER_ERROR")
        payload = {"error": {"code": code, "message": error.description or error.name}}
        return jsonify(payload), error.code or 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s: %s", request.method, request.path, error)
        return jsonify(ApiError("INTERNAL_SERVER_ERROR", "An unexpected error occurred.").to_dict()), 500


def _dedupe_emails(addresses: list[str | None]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for address in addresses:
        cleaned = (address or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        ordered.append(cleaned)
    return ordered


def find_user_by_email(email: str | None) -> User | None:
    cleaned = (email or "").strip().lower()
    if not cleaned:
        return None
    return User.query.filter(func.lower(User.email) == cleaned).first()


def _build_order_scope(rfq: PropertyManagerRFQ, quotation: Quotation) -> str:
    lines = [rfq.scope_of_work.strip(), "", f"ITEMISED SCOPE (quotation {quotation.quote_number}):"]
    for item in quotation.items or []:
        quantity = float(item.get("quantity") or 0)
        unit_price = float(item.get("unit_price") or 0)
        line_total = float(item.get("total") or quantity * unit_price)
        lines.append(
            f"- {item.get('description', '')} x{quantity:g} @ R {unit_price:,.2f} = R {line_total:,.2f}"
        )
    lines.extend(
        [
            "",
            "BILLING SUMMARY",
            f"Subtotal: R {cents_to_amount(quotation.subtotal_cents):,.2f}",
            f"Tax: R {cents_to_amount(quotation.tax_cents):,.2f}",
            f"Total: R {cents_to_amount(quotation.total_cents):,.2f}",
        ]
    )
    return "\n".join(lines)


def _parse_itemized_expenses(raw_items: object) -> list[dict]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ApiError("BAD_REQUEST", "Itemized expenses must be a list.")

    expenses: list[dict] = []
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ApiError("BAD_REQUEST", f"Expense {index} is invalid.")
        quoted = parse_amount_cents(raw.get("quoted_amount"), f"expense {index} quoted amount")
        spent = parse_amount_cents(raw.get("actual_spent"), f"expense {index} actual spent")
        expenses.append(
            {
                "item_description": require_text(raw, "item_description", f"Expense {index} description"),
                "quoted_amount": cents_to_amount(quoted),
                "actual_spent": cents_to_amount(spent),
                "difference": cents_to_amount(spent - quoted),
                "reason_for_overspend": optional_text(raw, "reason_for_overspend"),
            }
        )
    return expenses


def _parse_string_list(value: object, label: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ApiError("BAD_REQUEST", f"{label} must be a list.")
    return [str(entry).strip() for entry in value if str(entry or "").strip()]


def build_project_report(project: Project) -> dict[str, object]:
    milestones = list(project.milestones)
    milestone_ids = [milestone.id for milestone in milestones]
    change_orders = ChangeOrder.query.filter(
        or_(ChangeOrder.project_id == project.id, ChangeOrder.milestone_id.in_(milestone_ids))
    ).all()
    invoices = list(project.invoices)

    rollup = build_project_rollup(
        milestones=milestones, change_orders=change_orders, invoices=invoices
    )

    def newest(rows: list, limit: int) -> list[dict]:
        ordered = sorted(rows, key=lambda row: _as_utc(row.created_at), reverse=True)
        return [row.to_dict() for row in ordered[:limit]]

    updates = [update for milestone in milestones for update in milestone.weekly_updates]
    requests = [entry for milestone in milestones for entry in milestone.payment_requests]
    open_risks = [
        risk for milestone in milestones for risk in milestone.risks if risk.status == "OPEN"
    ]

    return {
        "project": project.to_dict(),
        **rollup,
        "milestones": [milestone.to_dict() for milestone in milestones],
        "recent_activity": {
            "weekly_updates": newest(updates, 5),
            "payment_requests": newest(requests, 5),
            "change_orders": newest(change_orders, 5),
            "open_risks": newest(open_risks, 10),
        },
    }


def register_routes(app: Flask) -> None:
    def _ai_error(error: ai_assistant.AiServiceError) -> ApiError:
        if error.category == "rate_limited":
            return ApiError("TOO_MANY_REQUESTS", error.message)
        return ApiError("INTERNAL_SERVER_ERROR", error.message)

    def _require_feature(user: User, feature: str) -> None:
        if not has_feature_access(user, feature):
            raise ApiError(
                "FORBIDDEN", "Your subscription package does not include this feature."
            )

    def _notify_user(
        recipient: User | None,
        message: str,
        notification_type: str,
        related_entity_id: int | None,
        related_entity_type: str,
        *,
        subject: str | None = None,
        category: str = "general",
    ) -> None:
        if recipient is None:
            return
        create_notification(
            recipient, message, notification_type, related_entity_id, related_entity_type
        )
        if subject:
            dispatch_email(recipient.email, subject, message, category=category)

    @app.get("/api/health")
    def api_health():
        return jsonify({"status": "ok"})

    @app.post("/api/auth/login")
    def api_login():
        payload = get_json_payload()
        email = require_text(payload, "email", "Email").lower()
        password = str(payload.get("password") or "")

        user = find_user_by_email(email)
        if user is None or not password or not user.check_password(password):
            raise ApiError("UNAUTHORIZED", "Invalid email or password.")

        user.last_login_at = utcnow()
        db.session.commit()
        return jsonify({"token": issue_token(user), "user": user.to_dict()})

    @app.get("/api/auth/me")
    @token_required
    def api_me():
        user = g.current_user
        subscription = get_user_subscription(user)
        return jsonify(
            {
                "user": user.to_dict(),
                "subscription": subscription.to_dict() if subscription else None,
            }
        )

    @app.post("/api/users")
    @token_required
    def create_user():
        actor = g.current_user
        payload = get_json_payload()
        role = parse_choice(payload.get("role"), USER_ROLES, "Role")

        subscription = None
        if is_admin(actor):
            company_name = optional_text(payload, "contractor_company_name")
        elif actor.role in {"CONTRACTOR", "CONTRACTOR_SENIOR_MANAGER"}:
            if role not in CONTRACTOR_STAFF_ROLES:
                raise ApiError("FORBIDDEN", "Contractors can only add managers and artisans.")
            owner = actor
            if actor.role != "CONTRACTOR":
                owner = (
                    User.query.filter_by(
                        role="CONTRACTOR", contractor_company_name=actor.contractor_company_name
                    ).first()
                    or actor
                )
            subscription = get_user_subscription(owner)
            if subscription is None or subscription.status not in {"TRIAL", "ACTIVE"}:
                raise ApiError("BAD_REQUEST", "An active subscription is required to add users.")
            company_name = actor.contractor_company_name
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to create users.")

        email = require_text(payload, "email", "Email").lower()
        if find_user_by_email(email) is not None:
            raise ApiError("BAD_REQUEST", "A user with this email already exists.")
        password = str(payload.get("password") or "")
        if len(password) < 8:
            raise ApiError("BAD_REQUEST", "Password must be at least 8 characters long.")

        if subscription is not None:
            increment_user_count(subscription)

        user = User(
            email=email,
            first_name=require_text(payload, "first_name", "First name"),
            last_name=require_text(payload, "last_name", "Last name"),
            role=role,
            phone=optional_text(payload, "phone"),
            contractor_company_name=company_name,
        )
        if "hourly_rate" in payload:
            user.hourly_rate_cents = parse_amount_cents(payload.get("hourly_rate"), "hourly rate")
        if "daily_rate" in payload:
            user.daily_rate_cents = parse_amount_cents(payload.get("daily_rate"), "daily rate")
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return jsonify({"user": user.to_dict()}), 201

    @app.get("/api/users")
    @token_required
    def list_users():
        actor = g.current_user
        query = User.query.order_by(User.last_name.asc(), User.first_name.asc())
        role_filter = (request.args.get("role") or "").strip().upper()
        if role_filter:
            query = query.filter(User.role == role_filter)
        if is_admin(actor):
            users = query.all()
        elif is_contractor(actor):
            users = query.filter(User.id.in_(company_user_ids(actor))).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to list users.")
        return jsonify({"users": [user.to_dict() for user in users]})

    @app.post("/api/users/me/notification-preferences")
    @token_required
    def update_notification_preferences():
        user = g.current_user
        payload = get_json_payload()
        user.disabled_notification_types = sorted(
            set(_parse_string_list(payload.get("disabled_types"), "Disabled types"))
        )
        db.session.commit()
        return jsonify({"user": user.to_dict()})

    @app.get("/api/company-details")
    @token_required
    def company_details():
        return jsonify({"company": get_company_details().to_dict()})

    @app.put("/api/admin/company-details")
    @token_required
    def update_company_details():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can update company details.")
        payload = get_json_payload()
        details = get_company_details()

        if "company_name" in payload:
            details.company_name = require_text(payload, "company_name", "Company name")
        for field in ("company_email", "company_phone", "company_address", "vat_number"):
            if field in payload:
                setattr(details, field, optional_text(payload, field))
        for field in ("invoice_prefix", "order_prefix", "quotation_prefix"):
            if field in payload:
                setattr(details, field, require_text(payload, field, "Prefix").upper())

        db.session.commit()
        return jsonify({"company": details.to_dict()})

    @app.post("/api/admin/notification-settings")
    @token_required
    def update_notification_settings():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can update notification settings.")
        payload = get_json_payload()
        config = ensure_notification_configuration()

        for field in ("smtp_host", "from_email", "from_name", "reply_to_email", "smtp_username"):
            if field in payload:
                setattr(config, field, optional_text(payload, field))
        if "smtp_port" in payload:
            config.smtp_port = parse_int_field(payload.get("smtp_port"), "SMTP port") or 587
        password = payload.get("smtp_password")
        if password:
            config.smtp_password = str(password)
        for field in (
            "use_tls",
            "notify_order_activity",
            "notify_project_activity",
            "notify_billing_activity",
        ):
            if field in payload:
                setattr(config, field, is_truthy(payload.get(field)))

        db.session.commit()
        return jsonify(
            {
                "smtp_ready": config.smtp_ready(),
                "notify_order_activity": config.notify_order_activity,
                "notify_project_activity": config.notify_project_activity,
                "notify_billing_activity": config.notify_billing_activity,
            }
        )

    @app.post("/api/admin/test-email")
    @token_required
    def send_test_email():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can send test emails.")
        payload = get_json_payload()
        recipient = optional_text(payload, "recipient") or actor.email
        company_name = get_company_details().company_name
        sent = dispatch_email(
            recipient,
            f"{company_name} test email",
            "This is a test email confirming that outgoing notifications are configured.",
        )
        if not sent:
            raise ApiError("BAD_REQUEST", "The test email could not be sent. Check the SMTP settings.")
        return jsonify({"sent": True, "recipient": recipient})

    @app.post("/api/leads")
    @token_required
    def create_lead():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES | CONTRACTOR_ROLES, "You do not have permission to create leads.")
        payload = get_json_payload()

        assignee_id = parse_int_field(payload.get("follow_up_assigned_to_id"), "Follow-up assignee")
        if assignee_id is not None:
            get_or_404(User, assignee_id, "Follow-up assignee not found.")

        lead = Lead(
            customer_name=require_text(payload, "customer_name", "Customer name"),
            customer_email=require_text(payload, "customer_email", "Customer email"),
            customer_phone=optional_text(payload, "customer_phone"),
            address=optional_text(payload, "address"),
            service_type=require_text(payload, "service_type", "Service type"),
            description=optional_text(payload, "description"),
            estimated_value_cents=parse_amount_cents(payload.get("estimated_value"), "estimated value"),
            status="NEW",
            notes=optional_text(payload, "notes"),
            next_follow_up_date=parse_date_field(payload.get("next_follow_up_date"), "next follow-up date"),
            created_by_id=actor.id,
            follow_up_assigned_to_id=assignee_id or actor.id,
        )
        db.session.add(lead)
        db.session.commit()
        return jsonify({"lead": lead.to_dict()}), 201

    @app.get("/api/leads")
    @token_required
    def list_leads():
        actor = g.current_user
        query = Lead.query.order_by(Lead.created_at.desc())
        if is_admin(actor):
            leads = query.all()
        elif is_contractor(actor):
            ids = company_user_ids(actor)
            leads = query.filter(
                or_(Lead.created_by_id.in_(ids), Lead.follow_up_assigned_to_id.in_(ids))
            ).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view leads.")
        return jsonify({"leads": [lead.to_dict() for lead in leads]})

    @app.post("/api/leads/<int:lead_id>/status")
    @token_required
    def update_lead_status(lead_id: int):
        actor = g.current_user
        lead = get_or_404(Lead, lead_id, "Lead not found.")
        if not is_admin(actor) and actor.id not in {lead.created_by_id, lead.follow_up_assigned_to_id}:
            raise ApiError("FORBIDDEN", "You can only update leads you own.")

        payload = get_json_payload()
        lead.status = parse_choice(payload.get("status"), LEAD_STATUS_OPTIONS, "Status")
        if "notes" in payload:
            lead.notes = optional_text(payload, "notes")
        if "next_follow_up_date" in payload:
            lead.next_follow_up_date = parse_date_field(
                payload.get("next_follow_up_date"), "next follow-up date"
            )
        db.session.commit()
        return jsonify({"lead": lead.to_dict()})

    @app.post("/api/quotations")
    @token_required
    def create_quotation():
        actor = g.current_user
        require_role(
            actor, ADMIN_ROLES | CONTRACTOR_ROLES, "You do not have permission to create quotations."
        )
        payload = get_json_payload()

        quote_number = optional_text(payload, "quote_number")
        if quote_number:
            if Quotation.query.filter_by(quote_number=quote_number).first() is not None:
                raise ApiError(
                    "BAD_REQUEST",
                    f'Quote number "{quote_number}" is already in use. Please choose a different number.',
                )
        else:
            quote_number = generate_document_number(
                Quotation, Quotation.quote_number, get_company_details().quotation_prefix
            )

        project_id = parse_int_field(payload.get("project_id"), "Project")
        if project_id is not None:
            assert_can_access_project(actor, get_or_404(Project, project_id, "Project not found."))
        lead_id = parse_int_field(payload.get("lead_id"), "Lead")
        if lead_id is not None:
            get_or_404(Lead, lead_id, "Lead not found.")

        items, subtotal_cents = parse_line_items(payload.get("items"))
        tax_cents = parse_amount_cents(payload.get("tax"), "tax")
        quotation = Quotation(
            quote_number=quote_number,
            customer_name=require_text(payload, "customer_name", "Customer name"),
            customer_email=require_text(payload, "customer_email", "Customer email"),
            customer_phone=optional_text(payload, "customer_phone"),
            address=optional_text(payload, "address"),
            items=items,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + tax_cents,
            status="DRAFT",
            notes=optional_text(payload, "notes"),
            valid_until=parse_date_field(payload.get("valid_until"), "valid until"),
            created_by_id=actor.id,
            project_id=project_id,
            lead_id=lead_id,
        )
        db.session.add(quotation)
        db.session.commit()
        return jsonify({"quotation": quotation.to_dict()}), 201

    @app.get("/api/quotations")
    @token_required
    def list_quotations():
        actor = g.current_user
        query = Quotation.query.order_by(Quotation.created_at.desc())
        if is_admin(actor):
            quotations = query.all()
        elif is_contractor(actor):
            quotations = query.filter(Quotation.created_by_id.in_(company_user_ids(actor))).all()
        elif actor.role == "PROPERTY_MANAGER":
            rfq_numbers = [
                rfq.rfq_number
                for rfq in PropertyManagerRFQ.query.filter_by(property_manager_id=actor.id).all()
            ]
            quotations = query.filter(
                Quotation.client_reference_quote_number.in_(rfq_numbers)
            ).all()
        elif actor.role == "CUSTOMER":
            quotations = query.filter(
                func.lower(Quotation.customer_email) == actor.email.lower()
            ).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view quotations.")
        return jsonify({"quotations": [quotation.to_dict() for quotation in quotations]})

    @app.post("/api/quotations/<int:quotation_id>/status")
    @token_required
    def update_quotation_status(quotation_id: int):
        actor = g.current_user
        quotation = get_or_404(Quotation, quotation_id, "Quotation not found.")
        if not is_admin(actor) and quotation.created_by_id not in company_user_ids(actor):
            raise ApiError("FORBIDDEN", "You can only update your own quotations.")

        payload = get_json_payload()
        status = parse_choice(payload.get("status"), QUOTATION_STATUS_OPTIONS, "Status")
        quotation.status = status
        if status == "REJECTED":
            quotation.rejection_reason = optional_text(payload, "rejection_reason")
        db.session.commit()

        if status == "SENT_TO_CUSTOMER":
            dispatch_email(
                quotation.customer_email,
                f"Quotation {quotation.quote_number}",
                f"Hello {quotation.customer_name},\n\nYour quotation {quotation.quote_number} "
                f"for R {cents_to_amount(quotation.total_cents):,.2f} is ready for review.",
                category="billing",
            )
        return jsonify({"quotation": quotation.to_dict()})

    @app.post("/api/orders")
    @token_required
    def create_order():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES | CONTRACTOR_ROLES, "You do not have permission to create orders.")
        payload = get_json_payload()

        assignee = None
        assignee_id = parse_int_field(payload.get("assigned_to_id"), "Assigned user")
        if assignee_id is not None:
            assignee = get_or_404(User, assignee_id, "Assigned user not found.")

        now = utcnow()
        started_at = None
        if is_contractor(actor):
            if assignee is None:
                assignee = actor
                status = "IN_PROGRESS"
                started_at = now
            else:
                status = "ASSIGNED"
        else:
            status = "ASSIGNED" if assignee else "PENDING"

        order = Order(
            order_number=generate_document_number(
                Order, Order.order_number, get_company_details().order_prefix
            ),
            customer_name=require_text(payload, "customer_name", "Customer name"),
            customer_email=require_text(payload, "customer_email", "Customer email"),
            customer_phone=optional_text(payload, "customer_phone"),
            address=require_text(payload, "address", "Address"),
            service_type=require_text(payload, "service_type", "Service type"),
            description=require_text(payload, "description", "Description"),
            status=status,
            call_out_fee_cents=parse_amount_cents(payload.get("call_out_fee"), "call-out fee"),
            total_cost_cents=parse_amount_cents(payload.get("total_cost"), "total cost"),
            notes=optional_text(payload, "notes"),
            assigned_to_id=assignee.id if assignee else None,
            created_by_id=actor.id,
            lead_id=parse_int_field(payload.get("lead_id"), "Lead"),
            quotation_id=parse_int_field(payload.get("quotation_id"), "Quotation"),
            started_at=started_at,
        )
        db.session.add(order)
        db.session.commit()

        if assignee is not None and assignee.id != actor.id:
            _notify_user(
                assignee,
                f"Order {order.order_number} has been assigned to you.",
                "ORDER_ASSIGNED",
                order.id,
                "ORDER",
                subject=f"New order assigned: {order.order_number}",
                category="order",
            )
        dispatch_email(
            order.customer_email,
            f"Order {order.order_number} received",
            f"Hello {order.customer_name},\n\nYour order {order.order_number} "
            f"{ORDER_STATUS_MESSAGES[order.status]}.",
            category="order",
        )
        return jsonify({"order": order.to_dict()}), 201

    @app.get("/api/orders")
    @token_required
    def list_orders():
        actor = g.current_user
        query = Order.query.order_by(Order.created_at.desc())
        if is_admin(actor):
            orders = query.all()
        elif is_contractor(actor):
            ids = company_user_ids(actor)
            orders = query.filter(
                or_(Order.created_by_id.in_(ids), Order.assigned_to_id.in_(ids))
            ).all()
        elif actor.role == "ARTISAN":
            orders = query.filter(Order.assigned_to_id == actor.id).all()
        elif actor.role == "CUSTOMER":
            orders = query.filter(func.lower(Order.customer_email) == actor.email.lower()).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view orders.")
        return jsonify({"orders": [order.to_dict() for order in orders]})

    @app.post("/api/orders/<int:order_id>/status")
    @token_required
    def update_order_status(order_id: int):
        actor = g.current_user
        order = get_or_404(Order, order_id, "Order not found.")
        if is_admin(actor):
            pass
        elif is_contractor(actor):
            ids = company_user_ids(actor)
            if order.created_by_id not in ids and order.assigned_to_id not in ids:
                raise ApiError("FORBIDDEN", "You can only update orders for your company.")
        elif actor.role == "ARTISAN":
            if order.assigned_to_id != actor.id:
                raise ApiError("FORBIDDEN", "You can only update orders assigned to you.")
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to update orders.")

        payload = get_json_payload()
        status = parse_choice(payload.get("status"), ORDER_STATUS_OPTIONS, "Status")
        now = utcnow()
        order.status = status
        if status == "IN_PROGRESS" and order.started_at is None:
            order.started_at = now
        if status == "COMPLETED":
            order.completed_at = now
        if "notes" in payload:
            order.notes = optional_text(payload, "notes")
        db.session.commit()

        message = f"Your order {order.order_number} {ORDER_STATUS_MESSAGES[status]}."
        _notify_user(
            find_user_by_email(order.customer_email),
            message,
            "ORDER_STATUS_UPDATE",
            order.id,
            "ORDER",
        )
        dispatch_email(
            order.customer_email,
            f"Order {order.order_number} update",
            f"Hello {order.customer_name},\n\n{message}",
            category="order",
        )
        return jsonify({"order": order.to_dict()})

    def _can_view_invoice(actor: User, invoice: Invoice) -> bool:
        if is_admin(actor):
            return True
        if is_contractor(actor):
            return invoice.created_by_id in company_user_ids(actor)
        if actor.role == "CUSTOMER":
            return (invoice.customer_email or "").lower() == actor.email.lower()
        return False

    def _commit_new_invoice(invoice_number: str) -> None:
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ApiError(
                "BAD_REQUEST",
                f'Invoice number "{invoice_number}" is already in use. Please choose a different number.',
            ) from None

    @app.post("/api/invoices")
    @token_required
    def create_invoice():
        actor = g.current_user
        require_role(
            actor, ADMIN_ROLES | CONTRACTOR_ROLES, "You do not have permission to create invoices."
        )
        payload = get_json_payload()

        invoice_number = optional_text(payload, "invoice_number")
        if invoice_number:
            if invoice_number_in_use(invoice_number):
                raise ApiError(
                    "BAD_REQUEST",
                    f'Invoice number "{invoice_number}" is already in use. Please choose a different number.',
                )
        else:
            invoice_number = generate_invoice_number()

        items, subtotal_cents = parse_line_items(payload.get("items"))
        tax_cents = parse_amount_cents(payload.get("tax"), "tax")
        due_date = parse_date_field(payload.get("due_date"), "due date")

        if is_truthy(payload.get("is_pm_order")):
            pm_order_id = parse_int_field(payload.get("pm_order_id"), "Property manager order", required=True)
            pm_order = get_or_404(PropertyManagerOrder, pm_order_id, "Property manager order not found.")
            if not is_admin(actor) and pm_order.contractor_id not in company_user_ids(actor):
                raise ApiError("FORBIDDEN", "You can only invoice orders assigned to your company.")

            pm_invoice = PropertyManagerInvoice(
                invoice_number=invoice_number,
                property_manager_id=pm_order.property_manager_id,
                contractor_id=pm_order.contractor_id or actor.id,
                order_id=pm_order.id,
                items=items,
                subtotal_cents=subtotal_cents,
                tax_cents=tax_cents,
                total_cents=subtotal_cents + tax_cents,
                status="DRAFT",
                due_date=due_date,
                notes=optional_text(payload, "notes"),
            )
            db.session.add(pm_invoice)
            _commit_new_invoice(invoice_number)
            return jsonify({"invoice": pm_invoice.to_dict(), "kind": "property_manager"}), 201

        project_id = parse_int_field(payload.get("project_id"), "Project")
        if project_id is not None:
            assert_can_access_project(actor, get_or_404(Project, project_id, "Project not found."))

        invoice = Invoice(
            invoice_number=invoice_number,
            customer_name=require_text(payload, "customer_name", "Customer name"),
            customer_email=require_text(payload, "customer_email", "Customer email"),
            customer_phone=optional_text(payload, "customer_phone"),
            address=optional_text(payload, "address"),
            items=items,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + tax_cents,
            company_material_cost_cents=parse_amount_cents(
                payload.get("company_material_cost"), "company material cost"
            ),
            company_labour_cost_cents=parse_amount_cents(
                payload.get("company_labour_cost"), "company labour cost"
            ),
            estimated_profit_cents=parse_amount_cents(payload.get("estimated_profit"), "estimated profit"),
            status="DRAFT" if is_contractor(actor) else "PENDING_REVIEW",
            due_date=due_date,
            notes=optional_text(payload, "notes"),
            order_id=parse_int_field(payload.get("order_id"), "Order"),
            project_id=project_id,
            created_by_id=actor.id,
        )
        db.session.add(invoice)
        _commit_new_invoice(invoice_number)
        return jsonify({"invoice": invoice.to_dict(), "kind": "standard"}), 201

    @app.get("/api/invoices")
    @token_required
    def list_invoices():
        actor = g.current_user
        query = Invoice.query.order_by(Invoice.created_at.desc())
        if is_admin(actor):
            invoices = query.all()
        elif is_contractor(actor):
            invoices = query.filter(Invoice.created_by_id.in_(company_user_ids(actor))).all()
        elif actor.role == "CUSTOMER":
            invoices = query.filter(func.lower(Invoice.customer_email) == actor.email.lower()).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view invoices.")
        return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]})

    @app.post("/api/invoices/<int:invoice_id>/status")
    @token_required
    def update_invoice_status(invoice_id: int):
        actor = g.current_user
        invoice = get_or_404(Invoice, invoice_id, "Invoice not found.")
        if not is_admin(actor) and not (
            is_contractor(actor) and invoice.created_by_id in company_user_ids(actor)
        ):
            raise ApiError("FORBIDDEN", "You do not have permission to update this invoice.")

        payload = get_json_payload()
        status = parse_choice(payload.get("status"), INVOICE_STATUS_OPTIONS, "Status")
        invoice.status = status
        if status == "PAID":
            invoice.paid_date = utcnow()
        if status == "REJECTED":
            invoice.rejection_reason = optional_text(payload, "rejection_reason")
        db.session.commit()

        if status == "SENT":
            company = get_company_details()
            attachments = []
            try:
                attachments.append(
                    (f"{invoice.invoice_number}.pdf", reports.render_invoice_pdf(invoice, company))
                )
            except Exception as exc:  # pragma: no cover - best-effort side effect
                app.logger.warning("Invoice PDF generation failed for %s: %s", invoice.invoice_number, exc)
            dispatch_email(
                invoice.customer_email,
                f"Invoice {invoice.invoice_number} from {company.company_name}",
                f"Hello {invoice.customer_name},\n\nPlease find invoice {invoice.invoice_number} "
                f"for R {cents_to_amount(invoice.total_cents):,.2f} attached.",
                category="billing",
                attachments=attachments,
            )
        return jsonify({"invoice": invoice.to_dict()})

    @app.get("/api/invoices/<int:invoice_id>/pdf")
    @token_required
    def invoice_pdf(invoice_id: int):
        actor = g.current_user
        invoice = get_or_404(Invoice, invoice_id, "Invoice not found.")
        if not _can_view_invoice(actor, invoice):
            raise ApiError("FORBIDDEN", "You do not have permission to view this invoice.")
        pdf_bytes = reports.render_invoice_pdf(invoice, get_company_details())
        return Response(
            pdf_bytes,
            mimetype="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{invoice.invoice_number}.pdf"'},
        )

    @app.get("/api/pm/invoices")
    @token_required
    def list_pm_invoices():
        actor = g.current_user
        query = PropertyManagerInvoice.query.order_by(PropertyManagerInvoice.created_at.desc())
        if is_admin(actor):
            invoices = query.all()
        elif actor.role == "PROPERTY_MANAGER":
            invoices = query.filter(
                PropertyManagerInvoice.property_manager_id == actor.id,
                PropertyManagerInvoice.status.in_(["SENT_TO_PM", "PM_APPROVED", "PM_REJECTED", "PAID"]),
            ).all()
        elif is_contractor(actor):
            invoices = query.filter(
                PropertyManagerInvoice.contractor_id.in_(company_user_ids(actor))
            ).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view these invoices.")
        return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]})

    @app.post("/api/pm/invoices/<int:invoice_id>/contractor-status")
    @token_required
    def update_pm_invoice_contractor_status(invoice_id: int):
        actor = g.current_user
        require_role(actor, CONTRACTOR_ROLES, "Only contractors can manage these invoices.")
        invoice = get_or_404(PropertyManagerInvoice, invoice_id, "Invoice not found.")
        if invoice.contractor_id not in company_user_ids(actor):
            raise ApiError("FORBIDDEN", "You can only manage invoices for your company.")
        if invoice.status in {"PM_APPROVED", "PAID"}:
            raise ApiError("BAD_REQUEST", "This invoice has already been approved by the property manager.")

        payload = get_json_payload()
        status = parse_choice(payload.get("status"), PM_INVOICE_CONTRACTOR_TARGETS, "Status")
        if actor.role == "CONTRACTOR_JUNIOR_MANAGER":
            allowed = status in {"DRAFT", "REJECTED"} or (
                status == "ADMIN_APPROVED" and invoice.status == "DRAFT"
            )
            if not allowed:
                raise ApiError(
                    "FORBIDDEN",
                    "Junior managers can only approve draft invoices or send them back to draft.",
                )

        now = utcnow()
        invoice.status = status
        if status == "ADMIN_APPROVED":
            invoice.admin_approved_date = now
        elif status == "SENT_TO_PM":
            invoice.sent_to_pm_date = now
        elif status == "REJECTED":
            invoice.rejection_reason = optional_text(payload, "rejection_reason")
        db.session.commit()

        if status == "SENT_TO_PM":
            _notify_user(
                invoice.property_manager,
                f"Invoice {invoice.invoice_number} for R {cents_to_amount(invoice.total_cents):,.2f} "
                "is awaiting your approval.",
                "PM_INVOICE_RECEIVED",
                invoice.id,
                "PM_INVOICE",
                subject=f"Invoice {invoice.invoice_number} awaiting approval",
                category="billing",
            )
        return jsonify({"invoice": invoice.to_dict()})

    @app.post("/api/pm/invoices/<int:invoice_id>/pm-status")
    @token_required
    def update_pm_invoice_pm_status(invoice_id: int):
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can review these invoices.")
        invoice = get_or_404(PropertyManagerInvoice, invoice_id, "Invoice not found.")
        if invoice.property_manager_id != actor.id:
            raise ApiError("FORBIDDEN", "You can only review your own invoices.")

        payload = get_json_payload()
        action = parse_choice(payload.get("action"), PM_INVOICE_ACTIONS, "Action")
        now = utcnow()
        if action in {"APPROVE", "REJECT"}:
            if invoice.status != "SENT_TO_PM":
                raise ApiError("BAD_REQUEST", "Only invoices sent to you can be approved or rejected.")
            if action == "APPROVE":
                invoice.status = "PM_APPROVED"
                invoice.pm_approved_date = now
            else:
                invoice.status = "PM_REJECTED"
                invoice.pm_rejected_date = now
                invoice.pm_rejection_reason = require_text(payload, "reason", "Rejection reason")
        else:
            if invoice.status != "PM_APPROVED":
                raise ApiError("BAD_REQUEST", "Only approved invoices can be marked as paid.")
            invoice.status = "PAID"
            invoice.paid_date = now
        db.session.commit()

        verb = {"APPROVE": "approved", "REJECT": "rejected", "MARK_PAID": "marked as paid"}[action]
        message = f"Invoice {invoice.invoice_number} was {verb} by {actor.full_name}."
        if invoice.pm_rejection_reason and action == "REJECT":
            message += f" Reason: {invoice.pm_rejection_reason}"
        notify_admins(message, f"PM_INVOICE_{invoice.status}", invoice.id, "PM_INVOICE")
        _notify_user(
            invoice.contractor,
            message,
            f"PM_INVOICE_{invoice.status}",
            invoice.id,
            "PM_INVOICE",
            subject=f"Invoice {invoice.invoice_number} {verb}",
            category="billing",
        )
        return jsonify({"invoice": invoice.to_dict()})

    @app.post("/api/pm/customers")
    @token_required
    def create_pm_customer():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can add customers.")
        payload = get_json_payload()
        email = require_text(payload, "email", "Email").lower()
        existing = PropertyManagerCustomer.query.filter_by(
            property_manager_id=actor.id, email=email
        ).first()
        if existing is not None:
            raise ApiError("BAD_REQUEST", "You already manage a customer with this email.")

        customer = PropertyManagerCustomer(
            property_manager_id=actor.id,
            first_name=require_text(payload, "first_name", "First name"),
            last_name=require_text(payload, "last_name", "Last name"),
            email=email,
            phone=optional_text(payload, "phone"),
            building_name=optional_text(payload, "building_name"),
            unit_number=optional_text(payload, "unit_number"),
        )
        db.session.add(customer)
        db.session.commit()
        return jsonify({"customer": customer.to_dict()}), 201

    @app.get("/api/pm/customers")
    @token_required
    def list_pm_customers():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can view their customers.")
        customers = (
            PropertyManagerCustomer.query.filter_by(property_manager_id=actor.id)
            .order_by(PropertyManagerCustomer.last_name.asc())
            .all()
        )
        return jsonify({"customers": [customer.to_dict() for customer in customers]})

    def _rfq_contractor_match(actor: User, rfq: PropertyManagerRFQ) -> bool:
        selected = {_coerce_int(value) for value in rfq.selected_contractor_ids or []}
        return bool(selected & company_user_ids(actor))

    def _assert_can_view_rfq(actor: User, rfq: PropertyManagerRFQ) -> None:
        if is_admin(actor) or rfq.property_manager_id == actor.id:
            return
        if is_contractor(actor) and _rfq_contractor_match(actor, rfq):
            return
        raise ApiError("FORBIDDEN", "You do not have access to this RFQ.")

    @app.post("/api/pm/rfqs")
    @token_required
    def create_rfq():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can submit RFQs.")
        payload = get_json_payload()

        raw_ids = payload.get("selected_contractor_ids") or []
        if not isinstance(raw_ids, list):
            raise ApiError("BAD_REQUEST", "Selected contractors must be a list.")
        contractor_ids = []
        for raw_id in raw_ids:
            contractor_id = _coerce_int(raw_id)
            contractor = db.session.get(User, contractor_id) if contractor_id is not None else None
            if contractor is None or not is_contractor(contractor):
                raise ApiError("BAD_REQUEST", f"Contractor {raw_id} was not found.")
            if contractor_id not in contractor_ids:
                contractor_ids.append(contractor_id)

        company = get_company_details()
        rfq = PropertyManagerRFQ(
            rfq_number=generate_document_number(
                PropertyManagerRFQ,
                PropertyManagerRFQ.rfq_number,
                f"{company.quotation_prefix}-PM-RFQ",
            ),
            property_manager_id=actor.id,
            title=require_text(payload, "title", "Title"),
            description=require_text(payload, "description", "Description"),
            scope_of_work=require_text(payload, "scope_of_work", "Scope of work"),
            building_name=optional_text(payload, "building_name"),
            building_address=require_text(payload, "building_address", "Building address"),
            urgency=parse_choice(payload.get("urgency"), RFQ_URGENCY_OPTIONS, "Urgency", default="NORMAL"),
            estimated_budget_cents=parse_amount_cents(payload.get("estimated_budget"), "estimated budget"),
            status="SUBMITTED",
            selected_contractor_ids=contractor_ids,
            attachments=_parse_string_list(payload.get("attachments"), "Attachments"),
            notes=optional_text(payload, "notes"),
            submitted_date=utcnow(),
        )
        db.session.add(rfq)
        db.session.commit()

        message = f"New RFQ {rfq.rfq_number}: {rfq.title} ({rfq.urgency.lower()} urgency)."
        for contractor_id in contractor_ids:
            _notify_user(
                db.session.get(User, contractor_id),
                message,
                "RFQ_RECEIVED",
                rfq.id,
                "RFQ",
                subject=f"Request for quotation {rfq.rfq_number}",
                category="order",
            )
        notify_admins(message, "RFQ_SUBMITTED", rfq.id, "RFQ")
        return jsonify({"rfq": rfq.to_dict()}), 201

    @app.get("/api/pm/rfqs")
    @token_required
    def list_rfqs():
        actor = g.current_user
        query = PropertyManagerRFQ.query.order_by(PropertyManagerRFQ.created_at.desc())
        if is_admin(actor):
            rfqs = query.all()
        elif actor.role == "PROPERTY_MANAGER":
            rfqs = query.filter_by(property_manager_id=actor.id).all()
        elif is_contractor(actor):
            rfqs = [rfq for rfq in query.all() if _rfq_contractor_match(actor, rfq)]
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view RFQs.")
        return jsonify({"rfqs": [rfq.to_dict() for rfq in rfqs]})

    @app.get("/api/pm/rfqs/<int:rfq_id>")
    @token_required
    def get_rfq(rfq_id: int):
        actor = g.current_user
        rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
        _assert_can_view_rfq(actor, rfq)
        quotations = []
        if is_admin(actor) or rfq.property_manager_id == actor.id:
            quotations = (
                Quotation.query.filter_by(client_reference_quote_number=rfq.rfq_number)
                .order_by(Quotation.total_cents.asc())
                .all()
            )
        return jsonify(
            {"rfq": rfq.to_dict(), "quotations": [quotation.to_dict() for quotation in quotations]}
        )

    @app.post("/api/pm/rfqs/<int:rfq_id>/status")
    @token_required
    def update_rfq_status(rfq_id: int):
        actor = g.current_user
        rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
        if rfq.property_manager_id != actor.id:
            raise ApiError("FORBIDDEN", "You can only update your own RFQs.")

        payload = get_json_payload()
        action = parse_choice(payload.get("action"), ["START_REVIEW", "REJECT"], "Action")
        if action == "START_REVIEW":
            if rfq.status not in {"SUBMITTED", "QUOTED"}:
                raise ApiError("BAD_REQUEST", f"An RFQ in status {rfq.status} cannot be reviewed.")
            rfq.status = "UNDER_REVIEW"
        else:
            if rfq.status not in {"QUOTED", "UNDER_REVIEW"}:
                raise ApiError("BAD_REQUEST", f"An RFQ in status {rfq.status} cannot be rejected.")
            rfq.status = "REJECTED"
            rfq.rejected_date = utcnow()
            rfq.rejection_reason = optional_text(payload, "reason")
        db.session.commit()
        return jsonify({"rfq": rfq.to_dict()})

    @app.post("/api/pm/rfqs/<int:rfq_id>/quotations")
    @token_required
    def submit_rfq_quotation(rfq_id: int):
        actor = g.current_user
        require_role(actor, CONTRACTOR_ROLES, "Only contractors can quote on RFQs.")
        rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
        if not _rfq_contractor_match(actor, rfq):
            raise ApiError("FORBIDDEN", "Your company was not invited to quote on this RFQ.")
        if rfq.status not in {"SUBMITTED", "QUOTED", "UNDER_REVIEW"}:
            raise ApiError("BAD_REQUEST", "This RFQ is no longer accepting quotations.")

        payload = get_json_payload()
        items, subtotal_cents = parse_line_items(payload.get("items"))
        if not items:
            raise ApiError("BAD_REQUEST", "A quotation needs at least one item.")
        tax_cents = parse_amount_cents(payload.get("tax"), "tax")
        manager = rfq.property_manager
        quotation = Quotation(
            quote_number=generate_document_number(
                Quotation, Quotation.quote_number, get_company_details().quotation_prefix
            ),
            customer_name=manager.full_name,
            customer_email=manager.email,
            customer_phone=manager.phone,
            address=rfq.building_address,
            items=items,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + tax_cents,
            status="SENT_TO_CUSTOMER",
            client_reference_quote_number=rfq.rfq_number,
            notes=optional_text(payload, "notes"),
            valid_until=parse_date_field(payload.get("valid_until"), "valid until"),
            created_by_id=actor.id,
        )
        db.session.add(quotation)
        if rfq.status == "SUBMITTED":
            rfq.status = "QUOTED"
        db.session.commit()

        _notify_user(
            manager,
            f"{actor.contractor_company_name or actor.full_name} quoted "
            f"R {cents_to_amount(quotation.total_cents):,.2f} on RFQ {rfq.rfq_number}.",
            "RFQ_QUOTED",
            rfq.id,
            "RFQ",
            subject=f"New quotation for {rfq.rfq_number}",
            category="order",
        )
        return jsonify({"quotation": quotation.to_dict(), "rfq": rfq.to_dict()}), 201

    @app.post("/api/pm/rfqs/<int:rfq_id>/select-quotation")
    @token_required
    def select_rfq_quotation(rfq_id: int):
        actor = g.current_user
        rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
        if rfq.property_manager_id != actor.id:
            raise ApiError("FORBIDDEN", "You can only select quotations for your own RFQs.")
        if rfq.status != "UNDER_REVIEW":
            raise ApiError("BAD_REQUEST", "Start the review before selecting a quotation.")

        payload = get_json_payload()
        quotation_id = parse_int_field(payload.get("quotation_id"), "Quotation", required=True)
        selected = get_or_404(Quotation, quotation_id, "Quotation not found.")
        if selected.client_reference_quote_number != rfq.rfq_number:
            raise ApiError("BAD_REQUEST", "That quotation was not submitted for this RFQ.")

        now = utcnow()
        try:
            competing = Quotation.query.filter(
                Quotation.client_reference_quote_number == rfq.rfq_number,
                Quotation.id != selected.id,
            ).all()
            for quotation in competing:
                quotation.status = "REJECTED"
                quotation.rejection_reason = "Not selected"
            selected.status = "APPROVED"
            rfq.status = "APPROVED"
            rfq.approved_date = now
            rfq.approved_quotation_id = selected.id
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        _notify_user(
            selected.created_by,
            f"Your quotation {selected.quote_number} for RFQ {rfq.rfq_number} was accepted.",
            "RFQ_QUOTATION_ACCEPTED",
            rfq.id,
            "RFQ",
            subject=f"Quotation {selected.quote_number} accepted",
            category="order",
        )
        return jsonify({"rfq": rfq.to_dict(), "quotation": selected.to_dict()})

    @app.get("/api/pm/rfqs/<int:rfq_id>/pdf")
    @token_required
    def rfq_pdf(rfq_id: int):
        actor = g.current_user
        rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
        _assert_can_view_rfq(actor, rfq)
        pdf_bytes = reports.render_rfq_pdf(
            rfq, rfq.property_manager.full_name, get_company_details().company_name
        )
        return Response(
            pdf_bytes,
            mimetype="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{rfq.rfq_number}.pdf"'},
        )

    @app.post("/api/pm/orders")
    @token_required
    def create_pm_order():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can create these orders.")
        payload = get_json_payload()

        rfq = None
        rfq_id = parse_int_field(payload.get("generated_from_rfq_id"), "RFQ")
        if rfq_id is not None:
            rfq = get_or_404(PropertyManagerRFQ, rfq_id, "RFQ not found.")
            if rfq.property_manager_id != actor.id:
                raise ApiError("FORBIDDEN", "You can only convert your own RFQs.")
            if rfq.generated_order_id is not None:
                raise ApiError("CONFLICT", "An order has already been generated from this RFQ.")
            if rfq.status != "APPROVED" or rfq.approved_quotation is None:
                raise ApiError("BAD_REQUEST", "Only approved RFQs can be converted to an order.")
            quotation = rfq.approved_quotation
            contractor_id = quotation.created_by_id
            title = optional_text(payload, "title") or rfq.title
            description = optional_text(payload, "description") or rfq.description
            scope_of_work = _build_order_scope(rfq, quotation)
            building_name = rfq.building_name
            building_address = rfq.building_address
            total_amount_cents = quotation.total_cents
        else:
            contractor_id = parse_int_field(payload.get("contractor_id"), "Contractor")
            if contractor_id is not None:
                contractor = get_or_404(User, contractor_id, "Contractor not found.")
                if not is_contractor(contractor):
                    raise ApiError("BAD_REQUEST", "The selected user is not a contractor.")
            title = require_text(payload, "title", "Title")
            description = require_text(payload, "description", "Description")
            scope_of_work = require_text(payload, "scope_of_work", "Scope of work")
            building_name = optional_text(payload, "building_name")
            building_address = require_text(payload, "building_address", "Building address")
            total_amount_cents = parse_amount_cents(payload.get("total_amount"), "total amount")

        order = PropertyManagerOrder(
            order_number=generate_document_number(
                PropertyManagerOrder,
                PropertyManagerOrder.order_number,
                f"{get_company_details().order_prefix}-PM",
            ),
            property_manager_id=actor.id,
            contractor_id=contractor_id,
            title=title,
            description=description,
            scope_of_work=scope_of_work,
            building_name=building_name,
            building_address=building_address,
            total_amount_cents=total_amount_cents,
            status="DRAFT",
            generated_from_rfq_id=rfq.id if rfq else None,
            notes=optional_text(payload, "notes"),
            start_date=parse_date_field(payload.get("start_date"), "start date"),
            due_date=parse_date_field(payload.get("due_date"), "due date"),
        )
        try:
            db.session.add(order)
            db.session.flush()
            if rfq is not None:
                rfq.generated_order_id = order.id
                rfq.status = "CONVERTED_TO_ORDER"
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if (
                rfq_id is not None
                and PropertyManagerOrder.query.filter_by(generated_from_rfq_id=rfq_id).first()
            ):
                raise ApiError(
                    "CONFLICT", "An order has already been generated from this RFQ."
                ) from None
            raise
        except SQLAlchemyError:
            db.session.rollback()
            raise

        message = f"Order {order.order_number} ({order.title}) was created by {actor.full_name}."
        if contractor_id is not None:
            _notify_user(
                db.session.get(User, contractor_id),
                message,
                "PM_ORDER_CREATED",
                order.id,
                "PM_ORDER",
                subject=f"New order {order.order_number}",
                category="order",
            )
        else:
            notify_admins(message, "PM_ORDER_CREATED", order.id, "PM_ORDER")
        return jsonify({"order": order.to_dict()}), 201

    @app.get("/api/pm/orders")
    @token_required
    def list_pm_orders():
        actor = g.current_user
        query = PropertyManagerOrder.query.order_by(PropertyManagerOrder.created_at.desc())
        if is_admin(actor):
            orders = query.all()
        elif actor.role == "PROPERTY_MANAGER":
            orders = query.filter_by(property_manager_id=actor.id).all()
        elif is_contractor(actor):
            orders = query.filter(
                PropertyManagerOrder.contractor_id.in_(company_user_ids(actor))
            ).all()
        else:
            raise ApiError("FORBIDDEN", "You do not have permission to view these orders.")
        return jsonify({"orders": [order.to_dict() for order in orders]})

    @app.post("/api/pm/budgets")
    @token_required
    def create_budget():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can create budgets.")
        payload = get_json_payload()
        total_cents = parse_amount_cents(payload.get("total_budget"), "total budget", required=True)
        budget = BuildingBudget(
            property_manager_id=actor.id,
            building_name=require_text(payload, "building_name", "Building name"),
            fiscal_year=parse_int_field(payload.get("fiscal_year"), "Fiscal year", required=True),
            total_budget_cents=total_cents,
            total_spent_cents=0,
            total_remaining_cents=total_cents,
            notes=optional_text(payload, "notes"),
        )
        db.session.add(budget)
        db.session.commit()
        return jsonify({"budget": budget.to_dict()}), 201

    @app.get("/api/pm/budgets")
    @token_required
    def list_budgets():
        actor = g.current_user
        require_role(actor, {"PROPERTY_MANAGER"}, "Only property managers can view budgets.")
        budgets = (
            BuildingBudget.query.filter_by(property_manager_id=actor.id)
            .order_by(BuildingBudget.fiscal_year.desc(), BuildingBudget.building_name.asc())
            .all()
        )
        return jsonify({"budgets": [budget.to_dict() for budget in budgets]})

    @app.post("/api/pm/budgets/<int:budget_id>/expenses")
    @token_required
    def add_budget_expense(budget_id: int):
        actor = g.current_user
        budget = get_or_404(BuildingBudget, budget_id, "Budget not found.")
        if budget.property_manager_id != actor.id:
            raise ApiError("FORBIDDEN", "You can only record expenses against your own budgets.")

        payload = get_json_payload()
        amount_cents = parse_amount_cents(payload.get("amount"), "amount", required=True)
        if amount_cents <= 0:
            raise ApiError("BAD_REQUEST", "Amount must be greater than zero.")

        expense = BudgetExpense(
            budget_id=budget.id,
            category=require_text(payload, "category", "Category"),
            description=require_text(payload, "description", "Description"),
            amount_cents=amount_cents,
            expense_date=parse_date_field(payload.get("expense_date"), "expense date")
            or utcnow().date(),
            vendor=optional_text(payload, "vendor"),
            created_by_id=actor.id,
        )
        try:
            db.session.add(expense)
            budget.total_spent_cents = (budget.total_spent_cents or 0) + amount_cents
            budget.total_remaining_cents = budget.total_budget_cents - budget.total_spent_cents
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return jsonify({"expense": expense.to_dict(), "budget": budget.to_dict()}), 201

    def _assert_can_work_on_milestone(actor: User, milestone: Milestone) -> None:
        if is_admin(actor):
            return
        if actor.role == "ARTISAN":
            if milestone.assigned_to_id != actor.id:
                raise ApiError("FORBIDDEN", "You can only update milestones assigned to you.")
            return
        if is_contractor(actor) and can_access_project(actor, milestone.project):
            return
        raise ApiError("FORBIDDEN", "You do not have permission to update this milestone.")

    def _assert_can_view_report(actor: User, project: Project) -> None:
        if is_admin(actor):
            return
        if actor.role == "PROPERTY_MANAGER" and can_access_project(actor, project):
            return
        raise ApiError("FORBIDDEN", "You do not have permission to view this project report.")

    def _publish_weekly_update(update: WeeklyBudgetUpdate) -> None:
        milestone = update.milestone
        project = milestone.project
        company_name = get_company_details().company_name
        try:
            pdf_bytes = reports.render_weekly_update_pdf(project, milestone, update, company_name)
        except Exception as exc:  # pragma: no cover - best-effort side effect
            app.logger.warning("Weekly update PDF generation failed for update %s: %s", update.id, exc)
            return

        filename = f"weekly-update-{project.project_number}-{update.week_start_date:%Y%m%d}.pdf"
        if storage.is_configured():
            try:
                update.pdf_url = storage.upload_bytes(
                    key=f"private/reports/weekly-updates/{update.id}-{filename}", body=pdf_bytes
                )
                db.session.commit()
            except Exception as exc:  # pragma: no cover - external service dependency
                db.session.rollback()
                app.logger.warning("Weekly update PDF upload failed for update %s: %s", update.id, exc)

        body = (
            f"Weekly progress report for {project.name} ({project.project_number}).\n\n"
            f"Milestone: {milestone.name}\n"
            f"Week: {update.week_start_date:%Y-%m-%d} to {update.week_end_date:%Y-%m-%d}\n"
            f"Progress: {update.progress_percentage:.0f}%\n"
            f"Spent this week: R {cents_to_amount(update.total_expenditure_cents):,.2f}\n"
            f"Milestone spend to date: R {cents_to_amount(milestone.actual_cost_cents):,.2f}"
        )
        recipients = _dedupe_emails([project.customer_email, *[admin.email for admin in admin_users()]])
        for recipient in recipients:
            dispatch_email(
                recipient,
                f"Weekly progress report: {project.name} - {milestone.name}",
                body,
                category="project",
                attachments=[(filename, pdf_bytes)],
            )

    def _send_milestone_completion_report(milestone: Milestone) -> None:
        project = milestone.project
        company_name = get_company_details().company_name
        try:
            report = build_project_report(project)
            pdf_bytes = reports.render_project_report_pdf(
                project, report, list(project.milestones), company_name
            )
        except Exception as exc:  # pragma: no cover - best-effort side effect
            app.logger.warning("Completion report failed for milestone %s: %s", milestone.id, exc)
            return

        recipients = _dedupe_emails([project.customer_email, *[admin.email for admin in admin_users()]])
        for recipient in recipients:
            dispatch_email(
                recipient,
                f"Milestone completed: {project.name} - {milestone.name}",
                f"Milestone {milestone.name} of project {project.project_number} has been completed. "
                "The latest project report is attached.",
                category="project",
                attachments=[(f"project-report-{project.project_number}.pdf", pdf_bytes)],
            )

    def _build_weekly_update(milestone: Milestone, actor: User, payload: dict) -> WeeklyBudgetUpdate:
        week_start = parse_date_field(payload.get("week_start_date"), "week start date", required=True)
        week_end = parse_date_field(payload.get("week_end_date"), "week end date", required=True)
        if week_end < week_start:
            raise ApiError("BAD_REQUEST", "The week end date must not be before the week start date.")
        progress = parse_float_field(
            payload.get("progress_percentage"), "Progress percentage", minimum=0, maximum=100
        )
        if progress is None:
            progress = float(milestone.progress_percentage or 0)

        itemized = _parse_itemized_expenses(payload.get("itemized_expenses"))
        labour = parse_amount_cents(payload.get("labour_expenditure"), "labour expenditure")
        other = parse_amount_cents(payload.get("other_expenditure"), "other expenditure")
        if "material_expenditure" in payload:
            material = parse_amount_cents(payload.get("material_expenditure"), "material expenditure")
        else:
            material = sum(int(round(item["actual_spent"] * 100)) for item in itemized)

        return WeeklyBudgetUpdate(
            milestone_id=milestone.id,
            week_start_date=week_start,
            week_end_date=week_end,
            labour_expenditure_cents=labour,
            material_expenditure_cents=material,
            other_expenditure_cents=other,
            total_expenditure_cents=weekly_total_cents(labour, material, other),
            progress_percentage=progress,
            notes=optional_text(payload, "notes"),
            work_done=optional_text(payload, "work_done"),
            challenges=optional_text(payload, "challenges"),
            successes=optional_text(payload, "successes"),
            next_week_plan=optional_text(payload, "next_week_plan"),
            images_done=_parse_string_list(payload.get("images_done"), "Images"),
            itemized_expenses=itemized,
            created_by_id=actor.id,
        )

    @app.post("/api/projects")
    @token_required
    def create_project():
        actor = g.current_user
        require_role(
            actor,
            ADMIN_ROLES | CONTRACTOR_ROLES | {"PROPERTY_MANAGER"},
            "You do not have permission to create projects.",
        )
        payload = get_json_payload()
        customer_email = require_text(payload, "customer_email", "Customer email")

        if actor.role == "PROPERTY_MANAGER":
            managed = PropertyManagerCustomer.query.filter(
                PropertyManagerCustomer.property_manager_id == actor.id,
                func.lower(PropertyManagerCustomer.email) == customer_email.lower(),
            ).first()
            if managed is None:
                raise ApiError("FORBIDDEN", "You can only create projects for your own customers.")

        assigned_to_id = parse_int_field(payload.get("assigned_to_id"), "Assigned user")
        if assigned_to_id is not None:
            get_or_404(User, assigned_to_id, "Assigned user not found.")
        start_date = parse_date_field(payload.get("start_date"), "start date")
        end_date = parse_date_field(payload.get("end_date"), "end date")
        if start_date and end_date and end_date < start_date:
            raise ApiError("BAD_REQUEST", "The end date must not be before the start date.")

        project = Project(
            project_number=generate_document_number(Project, Project.project_number, "PRJ"),
            name=require_text(payload, "name", "Project name"),
            description=require_text(payload, "description", "Description"),
            customer_name=require_text(payload, "customer_name", "Customer name"),
            customer_email=customer_email,
            customer_phone=optional_text(payload, "customer_phone"),
            address=require_text(payload, "address", "Address"),
            project_type=require_text(payload, "project_type", "Project type"),
            status="PLANNING",
            start_date=start_date,
            end_date=end_date,
            estimated_budget_cents=parse_amount_cents(payload.get("estimated_budget"), "estimated budget"),
            notes=optional_text(payload, "notes"),
            assigned_to_id=assigned_to_id,
            created_by_id=actor.id,
        )
        db.session.add(project)
        db.session.commit()
        notify_admins(
            f"Project {project.project_number} ({project.name}) was created by {actor.full_name}.",
            "PROJECT_CREATED",
            project.id,
            "PROJECT",
        )
        return jsonify({"project": project.to_dict()}), 201

    @app.get("/api/projects")
    @token_required
    def list_projects():
        actor = g.current_user
        projects = [
            project
            for project in Project.query.order_by(Project.created_at.desc()).all()
            if can_access_project(actor, project)
        ]
        return jsonify({"projects": [project.to_dict() for project in projects]})

    @app.get("/api/projects/<int:project_id>")
    @token_required
    def get_project(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        assert_can_access_project(actor, project)
        payload = project.to_dict()
        payload["milestones"] = [milestone.to_dict() for milestone in project.milestones]
        return jsonify({"project": payload})

    @app.post("/api/projects/<int:project_id>/status")
    @token_required
    def update_project_status(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        assert_can_access_project(actor, project)
        if not (is_admin(actor) or is_contractor(actor) or actor.role == "PROPERTY_MANAGER"):
            raise ApiError("FORBIDDEN", "You do not have permission to update this project.")
        payload = get_json_payload()
        project.status = parse_choice(payload.get("status"), PROJECT_STATUS_OPTIONS, "Status")
        db.session.commit()
        return jsonify({"project": project.to_dict()})

    @app.get("/api/projects/<int:project_id>/report")
    @token_required
    def project_report(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        _assert_can_view_report(actor, project)
        return jsonify(build_project_report(project))

    @app.get("/api/projects/<int:project_id>/report.pdf")
    @token_required
    def project_report_pdf(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        _assert_can_view_report(actor, project)
        report = build_project_report(project)
        pdf_bytes = reports.render_project_report_pdf(
            project, report, list(project.milestones), get_company_details().company_name
        )
        return Response(
            pdf_bytes,
            mimetype="application/pdf",
            headers={
                "Content-Disposition": f'inline; filename="project-report-{project.project_number}.pdf"'
            },
        )

    @app.post("/api/projects/<int:project_id>/actual-cost")
    @token_required
    def recalculate_project_cost(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        _assert_can_view_report(actor, project)

        quotation_cents = int(
            db.session.query(func.coalesce(func.sum(Quotation.total_cents), 0))
            .filter(Quotation.project_id == project.id, Quotation.status == "APPROVED")
            .scalar()
            or 0
        )
        invoice_cents = int(
            db.session.query(func.coalesce(func.sum(Invoice.total_cents), 0))
            .filter(Invoice.project_id == project.id, Invoice.status == "PAID")
            .scalar()
            or 0
        )
        milestone_cents = sum(milestone.actual_cost_cents or 0 for milestone in project.milestones)
        total_cents = quotation_cents + invoice_cents + milestone_cents

        project.actual_cost_cents = total_cents
        db.session.commit()

        variance_cents = None
        variance_percentage = None
        if project.estimated_budget_cents:
            variance_cents = total_cents - project.estimated_budget_cents
            variance_percentage = round(variance_cents / project.estimated_budget_cents * 100, 2)
        return jsonify(
            {
                "project_id": project.id,
                "approved_quotations": cents_to_amount(quotation_cents),
                "paid_invoices": cents_to_amount(invoice_cents),
                "milestone_costs": cents_to_amount(milestone_cents),
                "actual_cost": cents_to_amount(total_cents),
                "estimated_budget": cents_to_amount(project.estimated_budget_cents),
                "variance": cents_to_amount(variance_cents) if variance_cents is not None else None,
                "variance_percentage": variance_percentage,
            }
        )

    @app.post("/api/projects/<int:project_id>/milestones")
    @token_required
    def create_milestone(project_id: int):
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can create milestones.")
        project = get_or_404(Project, project_id, "Project not found.")
        payload = get_json_payload()

        costs = {
            field: parse_amount_cents(payload.get(field), field.replace("_", " "))
            for field in (
                "labour_cost",
                "material_cost",
                "diesel_cost",
                "rent_cost",
                "admin_cost",
                "other_operational_cost",
                "expected_profit",
            )
        }
        if payload.get("budget_allocated") not in (None, ""):
            budget_cents = parse_amount_cents(payload.get("budget_allocated"), "budget allocated")
        else:
            budget_cents = sum(costs.values())

        assigned_to_id = parse_int_field(payload.get("assigned_to_id"), "Assigned user")
        if assigned_to_id is not None:
            get_or_404(User, assigned_to_id, "Assigned user not found.")
        start_date = parse_date_field(payload.get("start_date"), "start date")
        end_date = parse_date_field(payload.get("end_date"), "end date")
        if start_date and end_date and end_date < start_date:
            raise ApiError("BAD_REQUEST", "The end date must not be before the start date.")

        milestone = Milestone(
            project_id=project.id,
            name=require_text(payload, "name", "Milestone name"),
            description=optional_text(payload, "description"),
            sequence_order=parse_int_field(payload.get("sequence_order"), "Sequence order")
            or len(project.milestones) + 1,
            status="NOT_STARTED" if project.status == "IN_PROGRESS" else "PLANNING",
            labour_cost_cents=costs["labour_cost"],
            material_cost_cents=costs["material_cost"],
            diesel_cost_cents=costs["diesel_cost"],
            rent_cost_cents=costs["rent_cost"],
            admin_cost_cents=costs["admin_cost"],
            other_operational_cost_cents=costs["other_operational_cost"],
            expected_profit_cents=costs["expected_profit"],
            budget_allocated_cents=budget_cents,
            start_date=start_date,
            end_date=end_date,
            notes=optional_text(payload, "notes"),
            assigned_to_id=assigned_to_id,
        )

        raw_materials = payload.get("materials") or []
        if not isinstance(raw_materials, list):
            raise ApiError("BAD_REQUEST", "Materials must be a list.")
        for index, raw in enumerate(raw_materials, start=1):
            if not isinstance(raw, dict):
                raise ApiError("BAD_REQUEST", f"Material {index} is invalid.")
            quantity = parse_float_field(raw.get("quantity", 1), f"Material {index} quantity", minimum=0) or 0
            unit_price_cents = parse_amount_cents(raw.get("unit_price"), f"material {index} unit price")
            milestone.materials.append(
                MilestoneMaterial(
                    name=require_text(raw, "name", f"Material {index} name"),
                    description=optional_text(raw, "description"),
                    quantity=quantity,
                    unit_price_cents=unit_price_cents,
                    total_cost_cents=int(round(quantity * unit_price_cents)),
                    supplier=optional_text(raw, "supplier"),
                )
            )

        db.session.add(milestone)
        db.session.commit()

        if milestone.assigned_to_id:
            _notify_user(
                milestone.assigned_to,
                f"You have been assigned milestone {milestone.name} on project {project.project_number}.",
                "MILESTONE_ASSIGNED",
                milestone.id,
                "MILESTONE",
                subject=f"Milestone assigned: {milestone.name}",
                category="project",
            )
        return jsonify({"milestone": milestone.to_dict()}), 201

    @app.post("/api/milestones/<int:milestone_id>/status")
    @token_required
    def update_milestone_status(milestone_id: int):
        actor = g.current_user
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        _assert_can_work_on_milestone(actor, milestone)

        payload = get_json_payload()
        status = parse_choice(payload.get("status"), MILESTONE_STATUS_OPTIONS, "Status")
        now = utcnow()

        raw_slips = payload.get("expense_slips") or []
        if not isinstance(raw_slips, list):
            raise ApiError("BAD_REQUEST", "Expense slips must be a list.")
        for index, raw in enumerate(raw_slips, start=1):
            if not isinstance(raw, dict):
                raise ApiError("BAD_REQUEST", f"Expense slip {index} is invalid.")
            milestone.expense_slips.append(
                MilestoneExpenseSlip(
                    category=parse_choice(
                        raw.get("category"), EXPENSE_SLIP_CATEGORIES, "Expense category", default="OTHER"
                    ),
                    description=optional_text(raw, "description"),
                    amount_cents=parse_amount_cents(raw.get("amount"), f"expense slip {index} amount"),
                    slip_url=require_text(raw, "slip_url", f"Expense slip {index} URL"),
                    uploaded_by_id=actor.id,
                )
            )

        update = None
        report = payload.get("report")
        if isinstance(report, dict):
            update = _build_weekly_update(milestone, actor, report)
            db.session.add(update)
            db.session.flush()
            recalculate_milestone_actual_cost(milestone)
            milestone.progress_percentage = update.progress_percentage

        progress = parse_float_field(
            payload.get("progress_percentage"), "Progress percentage", minimum=0, maximum=100
        )
        if progress is not None:
            milestone.progress_percentage = progress

        previous_status = milestone.status
        milestone.status = status
        if status == "IN_PROGRESS" and milestone.actual_start_date is None:
            milestone.actual_start_date = now
        if status == "COMPLETED":
            milestone.progress_percentage = 100
            milestone.actual_end_date = now
        if "notes" in payload:
            milestone.notes = optional_text(payload, "notes")
        db.session.commit()

        if update is not None:
            _publish_weekly_update(update)
        if status == "COMPLETED" and previous_status != "COMPLETED":
            _send_milestone_completion_report(milestone)
        return jsonify(
            {"milestone": milestone.to_dict(), "weekly_update": update.to_dict() if update else None}
        )

    @app.post("/api/milestones/<int:milestone_id>/weekly-updates")
    @token_required
    def create_weekly_update(milestone_id: int):
        actor = g.current_user
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        _assert_can_work_on_milestone(actor, milestone)

        update = _build_weekly_update(milestone, actor, get_json_payload())
        db.session.add(update)
        db.session.flush()
        recalculate_milestone_actual_cost(milestone)
        milestone.progress_percentage = update.progress_percentage
        db.session.commit()

        _publish_weekly_update(update)
        return jsonify({"update": update.to_dict(), "milestone": milestone.to_dict()}), 201

    @app.get("/api/milestones/<int:milestone_id>/weekly-updates")
    @token_required
    def list_weekly_updates(milestone_id: int):
        actor = g.current_user
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        assert_can_access_project(actor, milestone.project)
        updates = (
            WeeklyBudgetUpdate.query.filter_by(milestone_id=milestone.id)
            .order_by(WeeklyBudgetUpdate.week_start_date.desc())
            .all()
        )
        return jsonify({"updates": [update.to_dict() for update in updates]})

    @app.post("/api/milestones/<int:milestone_id>/risks")
    @token_required
    def create_risk(milestone_id: int):
        actor = g.current_user
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        assert_can_access_project(actor, milestone.project)
        payload = get_json_payload()
        risk = MilestoneRisk(
            milestone_id=milestone.id,
            description=require_text(payload, "description", "Description"),
            category=parse_choice(payload.get("category"), RISK_CATEGORY_OPTIONS, "Category", default="TECHNICAL"),
            probability=parse_choice(payload.get("probability"), RISK_LEVEL_OPTIONS, "Probability", default="MEDIUM"),
            impact=parse_choice(payload.get("impact"), RISK_LEVEL_OPTIONS, "Impact", default="MEDIUM"),
            status="OPEN",
            mitigation_strategy=optional_text(payload, "mitigation_strategy"),
            identified_by_id=actor.id,
        )
        db.session.add(risk)
        db.session.commit()
        if "HIGH" in {risk.probability, risk.impact}:
            notify_admins(
                f"High risk identified on milestone {milestone.name}: {risk.description}",
                "RISK_IDENTIFIED",
                risk.id,
                "RISK",
            )
        return jsonify({"risk": risk.to_dict()}), 201

    @app.post("/api/risks/<int:risk_id>/status")
    @token_required
    def update_risk_status(risk_id: int):
        actor = g.current_user
        risk = get_or_404(MilestoneRisk, risk_id, "Risk not found.")
        assert_can_access_project(actor, risk.milestone.project)
        payload = get_json_payload()
        risk.status = parse_choice(payload.get("status"), RISK_STATUS_OPTIONS, "Status")
        if "mitigation_strategy" in payload:
            risk.mitigation_strategy = optional_text(payload, "mitigation_strategy")
        db.session.commit()
        return jsonify({"risk": risk.to_dict()})

    @app.post("/api/milestones/<int:milestone_id>/quality-checkpoints")
    @token_required
    def create_quality_checkpoint(milestone_id: int):
        actor = g.current_user
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        assert_can_access_project(actor, milestone.project)
        payload = get_json_payload()
        checkpoint = QualityCheckpoint(
            milestone_id=milestone.id,
            name=require_text(payload, "name", "Checkpoint name"),
            description=optional_text(payload, "description"),
            status="PENDING",
        )
        db.session.add(checkpoint)
        db.session.commit()
        return jsonify({"checkpoint": checkpoint.to_dict()}), 201

    @app.post("/api/quality-checkpoints/<int:checkpoint_id>/status")
    @token_required
    def update_quality_checkpoint(checkpoint_id: int):
        actor = g.current_user
        checkpoint = get_or_404(QualityCheckpoint, checkpoint_id, "Quality checkpoint not found.")
        assert_can_access_project(actor, checkpoint.milestone.project)
        payload = get_json_payload()
        checkpoint.status = parse_choice(payload.get("status"), QUALITY_STATUS_OPTIONS, "Status")
        if checkpoint.status != "PENDING":
            checkpoint.inspected_by_id = actor.id
            checkpoint.inspection_date = (
                parse_datetime_field(payload.get("inspection_date"), "inspection date") or utcnow()
            )
        if "notes" in payload:
            checkpoint.notes = optional_text(payload, "notes")
        db.session.commit()
        return jsonify({"checkpoint": checkpoint.to_dict()})

    @app.post("/api/projects/<int:project_id>/change-orders")
    @token_required
    def create_change_order(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        assert_can_access_project(actor, project)
        if not (is_admin(actor) or is_contractor(actor) or actor.role == "PROPERTY_MANAGER"):
            raise ApiError("FORBIDDEN", "You do not have permission to request change orders.")
        payload = get_json_payload()

        milestone_id = parse_int_field(payload.get("milestone_id"), "Milestone")
        if milestone_id is not None:
            milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
            if milestone.project_id != project.id:
                raise ApiError("BAD_REQUEST", "That milestone belongs to a different project.")

        raw_cost = payload.get("cost_impact")
        try:
            cost_impact_cents = int(
                (Decimal(str(raw_cost or 0)) * 100).quantize(Decimal("1"))
            )
        except (InvalidOperation, ValueError):
            raise ApiError("BAD_REQUEST", "Please provide a valid amount for cost impact.") from None

        change_order = ChangeOrder(
            change_order_number=generate_document_number(
                ChangeOrder, ChangeOrder.change_order_number, "CO"
            ),
            project_id=project.id,
            milestone_id=milestone_id,
            title=require_text(payload, "title", "Title"),
            description=require_text(payload, "description", "Description"),
            reason=optional_text(payload, "reason"),
            cost_impact_cents=cost_impact_cents,
            time_impact_days=parse_int_field(payload.get("time_impact_days"), "Time impact") or 0,
            status="PENDING",
            requested_by_id=actor.id,
        )
        db.session.add(change_order)
        db.session.commit()
        notify_admins(
            f"Change order {change_order.change_order_number} requested on {project.project_number}.",
            "CHANGE_ORDER_REQUESTED",
            change_order.id,
            "CHANGE_ORDER",
        )
        return jsonify({"change_order": change_order.to_dict()}), 201

    @app.post("/api/change-orders/<int:change_order_id>/status")
    @token_required
    def update_change_order_status(change_order_id: int):
        actor = g.current_user
        change_order = get_or_404(ChangeOrder, change_order_id, "Change order not found.")
        if not (
            is_admin(actor)
            or (actor.role == "PROPERTY_MANAGER" and can_access_project(actor, change_order.project))
        ):
            raise ApiError("FORBIDDEN", "Only administrators and property managers can decide change orders.")
        payload = get_json_payload()
        status = parse_choice(payload.get("status"), CHANGE_ORDER_STATUS_OPTIONS, "Status")
        change_order.status = status
        if status == "APPROVED" and change_order.approved_date is None:
            change_order.approved_date = utcnow()
        db.session.commit()
        return jsonify({"change_order": change_order.to_dict()})

    @app.post("/api/milestones/<int:milestone_id>/payment-requests")
    @token_required
    def create_milestone_payment_request(milestone_id: int):
        actor = g.current_user
        require_role(
            actor,
            ADMIN_ROLES | CONTRACTOR_ROLES,
            "Only contractors or admins can submit milestone payment requests.",
        )
        milestone = get_or_404(Milestone, milestone_id, "Milestone not found.")
        assert_can_access_project(actor, milestone.project)
        payload = get_json_payload()

        artisan_id = parse_int_field(payload.get("artisan_id"), "Artisan") or actor.id
        if not is_admin(actor) and artisan_id != actor.id:
            raise ApiError("FORBIDDEN", "You can only submit payment requests for yourself.")
        artisan = get_or_404(User, artisan_id, "User not found.")

        amount_cents = parse_amount_cents(
            payload.get("calculated_amount"), "calculated amount", required=True
        )
        if amount_cents <= 0:
            raise ApiError("BAD_REQUEST", "The calculated amount must be greater than zero.")

        is_partial = is_truthy(payload.get("is_partial_payment"))
        notes = optional_text(payload, "notes")
        if notes:
            notes = f"PARTIAL PAYMENT - {notes}" if is_partial else notes
        elif is_partial:
            notes = "PARTIAL PAYMENT for milestone completion"
        else:
            notes = "Payment for milestone completion"
        payment_request = PaymentRequest(
            request_number=generate_document_number(
                PaymentRequest, PaymentRequest.request_number, "PAY-MS"
            ),
            artisan_id=artisan.id,
            milestone_id=milestone.id,
            hours_worked=parse_float_field(payload.get("hours_worked"), "Hours worked", minimum=0),
            days_worked=parse_float_field(payload.get("days_worked"), "Days worked", minimum=0),
            hourly_rate_cents=parse_amount_cents(payload.get("hourly_rate"), "hourly rate")
            or artisan.hourly_rate_cents,
            daily_rate_cents=parse_amount_cents(payload.get("daily_rate"), "daily rate")
            or artisan.daily_rate_cents,
            calculated_amount_cents=amount_cents,
            status="PENDING",
            notes=notes,
        )
        db.session.add(payment_request)
        db.session.commit()

        notify_admins(
            f"{artisan.full_name} requested R {cents_to_amount(amount_cents):,.2f} "
            f"for milestone {milestone.name} ({payment_request.request_number}).",
            "PAYMENT_REQUEST_SUBMITTED",
            payment_request.id,
            "PAYMENT_REQUEST",
        )
        return jsonify({"payment_request": payment_request.to_dict()}), 201

    @app.get("/api/payment-requests")
    @token_required
    def list_payment_requests():
        actor = g.current_user
        query = PaymentRequest.query.order_by(PaymentRequest.created_at.desc())
        if not is_admin(actor):
            query = query.filter(PaymentRequest.artisan_id == actor.id)
        status_filter = (request.args.get("status") or "").strip().upper()
        if status_filter:
            query = query.filter(PaymentRequest.status == status_filter)
        return jsonify({"payment_requests": [entry.to_dict() for entry in query.all()]})

    @app.post("/api/payment-requests/<int:request_id>/status")
    @token_required
    def update_payment_request_status(request_id: int):
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can review payment requests.")
        payment_request = get_or_404(PaymentRequest, request_id, "Payment request not found.")
        payload = get_json_payload()
        status = parse_choice(payload.get("status"), PAYMENT_REQUEST_STATUS_OPTIONS, "Status")

        if status not in PAYMENT_REQUEST_TRANSITIONS[payment_request.status]:
            raise ApiError(
                "BAD_REQUEST",
                f"A payment request cannot move from {payment_request.status} to {status}.",
            )

        now = utcnow()
        payment_request.status = status
        if status == "APPROVED":
            payment_request.approved_date = now
        elif status == "REJECTED":
            payment_request.rejection_reason = optional_text(payload, "rejection_reason")
        elif status == "PAID":
            payment_request.paid_date = now
            if payment_request.payslip is None:
                create_payslip_for_request(payment_request, now)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ApiError("CONFLICT", "A payslip already exists for this payment request.") from None

        message = {
            "APPROVED": f"Your payment request {payment_request.request_number} was approved.",
            "REJECTED": f"Your payment request {payment_request.request_number} was rejected.",
            "PAID": f"Your payment request {payment_request.request_number} was paid. "
            "A payslip is available.",
        }[status]
        _notify_user(
            payment_request.artisan,
            message,
            f"PAYMENT_REQUEST_{status}",
            payment_request.id,
            "PAYMENT_REQUEST",
            subject=f"Payment request {payment_request.request_number} {status.lower()}",
            category="billing",
        )
        return jsonify({"payment_request": payment_request.to_dict()})

    @app.get("/api/payslips")
    @token_required
    def list_payslips():
        actor = g.current_user
        query = Payslip.query.order_by(Payslip.payment_date.desc())
        if not is_admin(actor):
            query = query.filter(Payslip.artisan_id == actor.id)
        return jsonify({"payslips": [payslip.to_dict() for payslip in query.all()]})

    @app.get("/api/notifications")
    @token_required
    def list_notifications():
        actor = g.current_user
        query = Notification.query.filter_by(recipient_id=actor.id)
        if is_truthy(request.args.get("unread")):
            query = query.filter_by(is_read=False)
        notifications = query.order_by(Notification.created_at.desc()).limit(100).all()
        unread = Notification.query.filter_by(recipient_id=actor.id, is_read=False).count()
        return jsonify(
            {
                "notifications": [notification.to_dict() for notification in notifications],
                "unread_count": unread,
            }
        )

    @app.post("/api/notifications/<int:notification_id>/read")
    @token_required
    def mark_notification_read(notification_id: int):
        actor = g.current_user
        notification = get_or_404(Notification, notification_id, "Notification not found.")
        if notification.recipient_id != actor.id:
            raise ApiError("NOT_FOUND", "Notification not found.")
        notification.is_read = True
        db.session.commit()
        return jsonify({"notification": notification.to_dict()})

    @app.post("/api/notifications/read-all")
    @token_required
    def mark_all_notifications_read():
        actor = g.current_user
        updated = Notification.query.filter_by(recipient_id=actor.id, is_read=False).update(
            {"is_read": True}
        )
        db.session.commit()
        return jsonify({"updated": updated})

    def _conversation_for(actor: User, conversation_id: int) -> Conversation:
        conversation = get_or_404(Conversation, conversation_id, "Conversation not found.")
        if actor.id not in conversation.participant_ids():
            raise ApiError("FORBIDDEN", "You are not a participant in this conversation.")
        return conversation

    @app.post("/api/conversations")
    @token_required
    def create_conversation():
        actor = g.current_user
        payload = get_json_payload()
        raw_ids = payload.get("participant_ids")
        if not isinstance(raw_ids, list):
            raise ApiError("BAD_REQUEST", "Participant ids must be a list.")

        participant_ids = {actor.id}
        for raw_id in raw_ids:
            participant_id = _coerce_int(raw_id)
            if participant_id is None:
                raise ApiError("BAD_REQUEST", f"Participant {raw_id} is invalid.")
            participant_ids.add(participant_id)
        if len(participant_ids) < 2:
            raise ApiError("BAD_REQUEST", "A conversation needs at least one other participant.")

        participants = User.query.filter(User.id.in_(participant_ids)).all()
        if len(participants) != len(participant_ids):
            raise ApiError("BAD_REQUEST", "One or more participants do not exist.")

        existing = (
            Conversation.query.join(
                conversation_participants,
                conversation_participants.c.conversation_id == Conversation.id,
            )
            .filter(conversation_participants.c.user_id == actor.id)
            .all()
        )
        for conversation in existing:
            if conversation.participant_ids() == participant_ids:
                return jsonify({"conversation": conversation.to_dict(), "created": False})

        conversation = Conversation(participants=participants)
        db.session.add(conversation)
        db.session.commit()
        return jsonify({"conversation": conversation.to_dict(), "created": True}), 201

    @app.get("/api/conversations")
    @token_required
    def list_conversations():
        actor = g.current_user
        conversations = (
            Conversation.query.join(
                conversation_participants,
                conversation_participants.c.conversation_id == Conversation.id,
            )
            .filter(conversation_participants.c.user_id == actor.id)
            .order_by(Conversation.updated_at.desc())
            .all()
        )
        return jsonify({"conversations": [conversation.to_dict() for conversation in conversations]})

    @app.post("/api/conversations/<int:conversation_id>/messages")
    @token_required
    def send_message(conversation_id: int):
        actor = g.current_user
        conversation = _conversation_for(actor, conversation_id)
        payload = get_json_payload()
        message = Message(
            conversation_id=conversation.id,
            sender_id=actor.id,
            content=require_text(payload, "content", "Message"),
            attachments=_parse_string_list(payload.get("attachments"), "Attachments"),
        )
        db.session.add(message)
        conversation.updated_at = utcnow()
        db.session.commit()

        preview = message.content if len(message.content) <= 80 else f"{message.content[:77]}..."
        for participant in conversation.participants:
            if participant.id != actor.id:
                create_notification(
                    participant,
                    f"New message from {actor.full_name}: {preview}",
                    "NEW_MESSAGE",
                    conversation.id,
                    "CONVERSATION",
                )
        return jsonify({"message": message.to_dict()}), 201

    @app.get("/api/conversations/<int:conversation_id>/messages")
    @token_required
    def list_messages(conversation_id: int):
        actor = g.current_user
        conversation = _conversation_for(actor, conversation_id)
        Message.query.filter(
            Message.conversation_id == conversation.id,
            Message.sender_id != actor.id,
            Message.is_read.is_(False),
        ).update({"is_read": True}, synchronize_session=False)
        db.session.commit()
        messages = (
            Message.query.filter_by(conversation_id=conversation.id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )
        return jsonify({"messages": [message.to_dict() for message in messages]})

    @app.get("/api/packages")
    @token_required
    def list_packages():
        query = Package.query.filter_by(is_active=True)
        package_type = (request.args.get("type") or "").strip().upper()
        if package_type:
            query = query.filter_by(type=package_type)
        packages = query.order_by(Package.base_price_cents.asc()).all()
        return jsonify({"packages": [package.to_dict() for package in packages]})

    @app.post("/api/subscriptions")
    @token_required
    def create_subscription():
        actor = g.current_user
        require_role(actor, ADMIN_ROLES, "Only administrators can assign subscriptions.")
        payload = get_json_payload()
        user = get_or_404(
            User, parse_int_field(payload.get("user_id"), "User", required=True), "User not found."
        )
        package = get_or_404(
            Package,
            parse_int_field(payload.get("package_id"), "Package", required=True),
            "Package not found.",
        )
        if Subscription.query.filter_by(user_id=user.id).first() is not None:
            raise ApiError("CONFLICT", "This user already has a subscription.")

        expected_type = "PROPERTY_MANAGER" if user.role == "PROPERTY_MANAGER" else "CONTRACTOR"
        if user.role != "PROPERTY_MANAGER" and user.role != "CONTRACTOR":
            raise ApiError("BAD_REQUEST", "Only contractors and property managers can subscribe.")
        if package.type != expected_type:
            raise ApiError("BAD_REQUEST", f"The {package.display_name} package is not available for this user.")

        additional_users = parse_int_field(payload.get("additional_users"), "Additional users") or 0
        additional_tenants = parse_int_field(payload.get("additional_tenants"), "Additional tenants") or 0
        if additional_users < 0 or additional_tenants < 0:
            raise ApiError("BAD_REQUEST", "Additional users and tenants must not be negative.")

        now = utcnow()
        subscription = Subscription(
            user_id=user.id,
            package_id=package.id,
            max_users=package.max_users + additional_users,
            current_users=1,
            additional_users=additional_users,
            additional_tenants=additional_tenants,
        )
        if package.trial_days > 0 and not is_truthy(payload.get("skip_trial")):
            subscription.status = "TRIAL"
            subscription.trial_ends_at = now + timedelta(days=package.trial_days)
            subscription.next_billing_date = subscription.trial_ends_at
        else:
            subscription.status = "ACTIVE"
            subscription.current_period_start = now
            subscription.current_period_end = now + timedelta(days=30)
            subscription.next_billing_date = subscription.current_period_end
        db.session.add(subscription)
        db.session.commit()

        _notify_user(
            user,
            f"Your {package.display_name} subscription is now {subscription.status.lower()}.",
            "SUBSCRIPTION_CREATED",
            subscription.id,
            "SUBSCRIPTION",
            subject=f"{package.display_name} subscription",
            category="billing",
        )
        return jsonify({"subscription": subscription.to_dict()}), 201

    @app.get("/api/subscriptions/me")
    @token_required
    def my_subscription():
        actor = g.current_user
        subscription = get_user_subscription(actor)
        features = [feature for feature in PACKAGE_FEATURES if has_feature_access(actor, feature)]
        return jsonify(
            {
                "subscription": subscription.to_dict() if subscription else None,
                "features": features,
                "can_add_user": can_add_user(subscription) if subscription else False,
            }
        )

    @app.get("/api/subscriptions/me/features/<feature>")
    @token_required
    def check_feature(feature: str):
        actor = g.current_user
        return jsonify({"feature": feature, "has_access": has_feature_access(actor, feature)})

    @app.post("/api/subscriptions/cost")
    @token_required
    def subscription_cost():
        payload = get_json_payload()
        package = get_or_404(
            Package,
            parse_int_field(payload.get("package_id"), "Package", required=True),
            "Package not found.",
        )
        counts = {
            key: parse_int_field(payload.get(key), key.replace("_", " ")) or 0
            for key in ("additional_users", "additional_tenants", "additional_contractors")
        }
        if any(value < 0 for value in counts.values()):
            raise ApiError("BAD_REQUEST", "Additional counts must not be negative.")
        total_cents = calculate_subscription_cost(package, **counts)
        return jsonify({"package_id": package.id, **counts, "total": cents_to_amount(total_cents)})

    @app.post("/api/subscriptions/<int:subscription_id>/payments")
    @token_required
    def create_subscription_payment(subscription_id: int):
        actor = g.current_user
        subscription = get_or_404(Subscription, subscription_id, "Subscription not found.")
        if subscription.user_id != actor.id and not is_admin(actor):
            raise ApiError("FORBIDDEN", "You can only pay for your own subscription.")
        if not stripe_active():
            raise ApiError("BAD_REQUEST", "Online payments are not configured.")

        payment = SubscriptionPayment(
            subscription_id=subscription.id,
            amount_cents=calculate_subscription_cost(
                subscription.package,
                additional_users=subscription.additional_users,
                additional_tenants=subscription.additional_tenants,
            ),
            status="PENDING",
        )
        db.session.add(payment)
        db.session.flush()
        try:
            intent = create_subscription_payment_intent(payment, subscription.user)
        except StripeError as error:
            db.session.rollback()
            app.logger.warning("Stripe payment intent creation failed: %s", error)
            raise ApiError("BAD_REQUEST", describe_stripe_error(error)) from None
        db.session.commit()
        return (
            jsonify(
                {
                    "payment": payment.to_dict(),
                    "client_secret": getattr(intent, "client_secret", None),
                }
            ),
            201,
        )

    @app.post("/stripe/webhook")
    def stripe_webhook():
        if not stripe_active():
            return jsonify({"status": "disabled"}), 200

        payload = request.data
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            else:
                json_payload = json.loads(payload.decode("utf-8"))
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
        except (ValueError, SignatureVerificationError, StripeError) as error:
            return jsonify({"error": str(error)}), 400

        handled = handle_stripe_event(event)
        if handled:
            db.session.commit()
            return jsonify({"status": "ok"}), 200

        db.session.rollback()
        return jsonify({"status": "ignored"}), 200

    @app.post("/api/uploads/presign")
    @token_required
    def presign_upload():
        payload = get_json_payload()
        filename = require_text(payload, "filename", "Filename")
        is_public = is_truthy(payload.get("is_public"))
        key = storage.make_attachment_key(filename, is_public=is_public)
        try:
            presigned = storage.presign_put_object(
                key=key, content_type=optional_text(payload, "content_type")
            )
            file_url = storage.public_object_url(key)
        except Exception as exc:  # pragma: no cover - external service dependency
            app.logger.warning("Failed to presign upload for %s: %s", key, exc)
            raise ApiError("INTERNAL_SERVER_ERROR", "Failed to generate an upload URL.") from exc
        return jsonify(
            {"presigned_url": presigned["url"], "object_name": key, "file_url": file_url}
        )

    @app.post("/api/uploads/download-url")
    @token_required
    def presign_download():
        payload = get_json_payload()
        key = require_text(payload, "object_name", "Object name")
        if not key.startswith(("public/", "private/")) or ".." in key:
            raise ApiError("BAD_REQUEST", "Unknown object.")
        try:
            presigned = storage.presign_get_object(key=key)
        except Exception as exc:  # pragma: no cover - external service dependency
            app.logger.warning("Failed to presign download for %s: %s", key, exc)
            raise ApiError("INTERNAL_SERVER_ERROR", "Failed to generate a download URL.") from exc
        return jsonify({"url": presigned["url"], "object_name": key})

    @app.post("/api/ai/email-content")
    @token_required
    def ai_email_content():
        actor = g.current_user
        _require_feature(actor, "ai_agent")
        payload = get_json_payload()
        email_type = parse_choice(payload.get("email_type"), ai_assistant.EMAIL_TYPES, "Email type", default="GENERAL")
        tone = parse_choice(payload.get("tone"), ai_assistant.EMAIL_TONES, "Tone", default="PROFESSIONAL")
        try:
            content = ai_assistant.generate_email_content(
                email_type=email_type,
                tone=tone,
                recipient_name=require_text(payload, "recipient_name", "Recipient name"),
                context=require_text(payload, "context", "Context"),
                sender_name=actor.full_name,
                company_name=actor.contractor_company_name or get_company_details().company_name,
            )
        except ai_assistant.AiServiceError as error:
            raise _ai_error(error) from error
        return jsonify({"email": content})

    @app.post("/api/projects/<int:project_id>/ai/risk-analysis")
    @token_required
    def ai_risk_analysis(project_id: int):
        actor = g.current_user
        project = get_or_404(Project, project_id, "Project not found.")
        assert_can_access_project(actor, project)
        _require_feature(actor, "ai_agent")

        milestones = list(project.milestones)
        metrics = compute_risk_metrics(project, milestones)
        try:
            analysis = ai_assistant.analyze_project_risks(
                project.to_dict(), metrics, [milestone.to_dict() for milestone in milestones]
            )
        except ai_assistant.AiServiceError as error:
            raise _ai_error(error) from error
        return jsonify({"metrics": metrics, **analysis})

    @app.post("/api/ai/suggest-artisan")
    @token_required
    def ai_suggest_artisan():
        actor = g.current_user
        require_role(
            actor, ADMIN_ROLES | CONTRACTOR_ROLES, "You do not have permission to assign artisans."
        )
        _require_feature(actor, "ai_agent")
        payload = get_json_payload()
        job = {
            "service_type": require_text(payload, "service_type", "Service type"),
            "description": require_text(payload, "description", "Description"),
            "address": optional_text(payload, "address"),
        }

        artisans = User.query.filter_by(role="ARTISAN")
        if not is_admin(actor):
            artisans = artisans.filter(User.id.in_(company_user_ids(actor)))
        candidates = []
        for artisan in artisans.order_by(User.id.asc()).all():
            orders = Order.query.filter_by(assigned_to_id=artisan.id).all()
            completed = [order for order in orders if order.status == "COMPLETED"]
            matching = [
                order
                for order in completed
                if order.service_type.strip().lower() == job["service_type"].lower()
            ]
            average_cents = (
                sum(order.total_cost_cents for order in completed) // len(completed) if completed else 0
            )
            candidates.append(
                {
                    "artisan_id": artisan.id,
                    "name": artisan.full_name,
                    "completed_orders": len(completed),
                    "active_orders": sum(
                        1 for order in orders if order.status in {"ASSIGNED", "IN_PROGRESS"}
                    ),
                    "matching_service_orders": len(matching),
                    "average_job_value": cents_to_amount(average_cents),
                }
            )
        if not candidates:
            raise ApiError("BAD_REQUEST", "No artisans are available for this job.")

        try:
            ranking = ai_assistant.rank_artisans(job, candidates)
        except ai_assistant.AiServiceError as error:
            raise _ai_error(error) from error
        return jsonify({"candidates": candidates, **ranking})


app = create_app()


if __name__ == "__main__":
    port = 8000
    port_env = os.environ.get("PORT")
    if port_env:
        try:
            port = int(port_env)
        except ValueError:
            app.logger.warning("Ignoring invalid PORT value: %s", port_env)

    server = make_server(host="0.0.0.0", port=port, app=app, threaded=True)
    app.logger.info("Serving on port %s", port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:  # pragma: no cover - exercised in deployment
        app.logger.info("Shutting down web server...")
    finally:
        server.server_close()
