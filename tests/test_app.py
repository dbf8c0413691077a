from datetime import timedelta
from types import SimpleNamespace

import pytest

import ai_assistant
import app as app_module
import storage
from app import (
    ChangeOrder,
    Milestone,
    Notification,
    Package,
    PaymentRequest,
    Payslip,
    PropertyManagerOrder,
    PropertyManagerRFQ,
    Quotation,
    Subscription,
    SubscriptionPayment,
    User,
    create_app,
    db,
    utcnow,
)


class StripeStub:
    class PaymentIntent:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            intent_id = f"pi_{len(cls.created)}"
            return SimpleNamespace(
                id=intent_id,
                client_secret=f"{intent_id}_secret",
                status="requires_payment_method",
                metadata=kwargs.get("metadata", {}),
            )

    class Event:
        next_event = None

        @classmethod
        def construct_from(cls, payload, api_key):
            return cls.next_event

    class Webhook:
        @staticmethod
        def construct_event(payload, sig_header, secret):
            raise NotImplementedError

    RequestsClient = staticmethod(lambda: None)
    api_key = None
    default_http_client = None

    @staticmethod
    def reset():
        StripeStub.PaymentIntent.created = []
        StripeStub.Event.next_event = None


def install_stripe_stub(flask_app, monkeypatch, stub=None):
    stub = stub or StripeStub()
    stub.reset()
    monkeypatch.setattr(app_module, "stripe", stub, raising=False)
    monkeypatch.setattr(app_module, "StripeError", Exception, raising=False)
    monkeypatch.setattr(app_module, "SignatureVerificationError", Exception, raising=False)
    flask_app.config["STRIPE_SECRET_KEY"] = "sk_test"
    return stub


class FakeAnthropic:
    def __init__(self, text: str = "{}", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[dict] = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(text=self.text)])


TEST_ADMIN_EMAIL = "ops@example.com"
TEST_ADMIN_PASSWORD = "SecurePass123!"
DEFAULT_PASSWORD = "Password123!"
CUSTOMER_EMAIL = "client@example.com"


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def app(tmp_path, outbox):
    test_db_path = tmp_path / "test.db"

    def capture_email(recipient, subject, body, attachments):
        outbox.append(
            {
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "attachments": list(attachments),
            }
        )
        return True

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "ADMIN_EMAIL": TEST_ADMIN_EMAIL,
            "ADMIN_PASSWORD": TEST_ADMIN_PASSWORD,
            "STRIPE_SECRET_KEY": None,
            "STORAGE_ENDPOINT_URL": None,
            "STORAGE_ACCESS_KEY": None,
            "ANTHROPIC_API_KEY": None,
            "EMAIL_SENDER": capture_email,
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def create_user(app, email: str, role: str, password: str = DEFAULT_PASSWORD, **fields) -> int:
    with app.app_context():
        user = User(
            email=email,
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", role.title()),
            role=role,
            **fields,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


def auth_headers(client, email: str, password: str = DEFAULT_PASSWORD) -> dict[str, str]:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


def admin_headers(client) -> dict[str, str]:
    return auth_headers(client, TEST_ADMIN_EMAIL, TEST_ADMIN_PASSWORD)


def create_project(client, headers, **overrides) -> dict:
    payload = {
        "name": "Lobby refurbishment",
        "description": "Repaint and retile the main lobby.",
        "customer_name": "Dana Client",
        "customer_email": CUSTOMER_EMAIL,
        "address": "1 Main Road",
        "project_type": "Renovation",
        "estimated_budget": "5000",
    }
    payload.update(overrides)
    response = client.post("/api/projects", json=payload, headers=headers)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["project"]


def create_milestone(client, headers, project_id: int, **overrides) -> dict:
    payload = {"name": "Tiling", "budget_allocated": "1000"}
    payload.update(overrides)
    response = client.post(
        f"/api/projects/{project_id}/milestones", json=payload, headers=headers
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["milestone"]


def package_id(app, name: str) -> int:
    with app.app_context():
        return Package.query.filter_by(name=name).one().id


def subscribe(client, app, user_id: int, package_name: str) -> dict:
    response = client.post(
        "/api/subscriptions",
        json={"user_id": user_id, "package_id": package_id(app, package_name)},
        headers=admin_headers(client),
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["subscription"]


def test_login_returns_token_and_profile(client):
    headers = admin_headers(client)

    response = client.get("/api/auth/me", headers=headers)

    assert response.status_code == 200
    data = response.get_json()
    assert data["user"]["email"] == TEST_ADMIN_EMAIL
    assert data["user"]["role"] == "SENIOR_ADMIN"


def test_login_rejects_wrong_password(client):
    response = client.post(
        "/api/auth/login", json={"email": TEST_ADMIN_EMAIL, "password": "wrong-password"}
    )

    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "UNAUTHORIZED"


def test_requests_without_valid_token_are_unauthorized(client):
    missing = client.get("/api/projects")
    forged = client.get("/api/projects", headers={"Authorization": "Bearer not-a-token"})

    for response in (missing, forged):
        assert response.status_code == 401
        assert response.get_json() == {
            "error": {"code": "UNAUTHORIZED", "message": "Invalid or expired token"}
        }


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/does-not-exist")

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "NOT_FOUND"


def test_weekly_updates_accumulate_milestone_actual_cost(app, client, outbox):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"], assigned_to_id=artisan_id)
    artisan = auth_headers(client, "artisan@example.com")

    first = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={
            "week_start_date": "2024-03-04",
            "week_end_date": "2024-03-10",
            "labour_expenditure": "100",
            "material_expenditure": "50",
            "other_expenditure": "0",
            "progress_percentage": 25,
            "work_done": "Stripped old tiles.",
        },
        headers=artisan,
    )
    assert first.status_code == 201, first.get_json()
    assert first.get_json()["update"]["total_expenditure"] == 150.0
    assert first.get_json()["milestone"]["actual_cost"] == 150.0
    assert first.get_json()["milestone"]["progress_percentage"] == 25

    second = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={
            "week_start_date": "2024-03-11",
            "week_end_date": "2024-03-17",
            "labour_expenditure": "25.50",
            "progress_percentage": 40,
        },
        headers=artisan,
    )
    assert second.status_code == 201
    assert second.get_json()["milestone"]["actual_cost"] == 175.5

    with app.app_context():
        stored = db.session.get(Milestone, milestone["id"])
        assert stored.actual_cost_cents == 17550
        assert stored.progress_percentage == 40

    reports_sent = [mail for mail in outbox if mail["subject"].startswith("Weekly progress report")]
    assert {mail["recipient"] for mail in reports_sent} == {CUSTOMER_EMAIL, TEST_ADMIN_EMAIL}
    filename, content = reports_sent[0]["attachments"][0]
    assert filename.endswith(".pdf")
    assert content.startswith(b"%PDF")


def test_weekly_update_material_total_comes_from_itemized_expenses(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={
            "week_start_date": "2024-03-04",
            "week_end_date": "2024-03-10",
            "labour_expenditure": "10",
            "itemized_expenses": [
                {"item_description": "Tile adhesive", "quoted_amount": "25", "actual_spent": "30",
                 "reason_for_overspend": "Supplier price increase"},
                {"item_description": "Grout", "quoted_amount": "20", "actual_spent": "20"},
            ],
        },
        headers=admin,
    )

    assert response.status_code == 201
    update = response.get_json()["update"]
    assert update["material_expenditure"] == 50.0
    assert update["total_expenditure"] == 60.0
    assert update["itemized_expenses"][0]["difference"] == 5.0


def test_weekly_update_rejects_inverted_week(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={"week_start_date": "2024-03-10", "week_end_date": "2024-03-04"},
        headers=admin,
    )

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "BAD_REQUEST"


def test_weekly_update_pdf_is_uploaded_when_storage_configured(app, client, monkeypatch):
    uploads = []

    def fake_upload(*, key, body, content_type="application/pdf"):
        uploads.append((key, body, content_type))
        return f"https://files.example.com/{key}"

    monkeypatch.setattr(storage, "upload_bytes", fake_upload)
    app.config["STORAGE_ENDPOINT_URL"] = "https://files.example.com"

    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={"week_start_date": "2024-03-04", "week_end_date": "2024-03-10", "labour_expenditure": "5"},
        headers=admin,
    )

    assert response.status_code == 201
    assert len(uploads) == 1
    key, body, _ = uploads[0]
    assert key.startswith("private/reports/weekly-updates/")
    assert body.startswith(b"%PDF")
    listing = client.get(f"/api/milestones/{milestone['id']}/weekly-updates", headers=admin)
    assert listing.get_json()["updates"][0]["pdf_url"] == f"https://files.example.com/{key}"


def test_artisan_cannot_report_on_unassigned_milestone(app, client):
    create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={"week_start_date": "2024-03-04", "week_end_date": "2024-03-10"},
        headers=auth_headers(client, "artisan@example.com"),
    )

    assert response.status_code == 403


def test_milestone_completion_emails_project_report(app, client, outbox):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"], assigned_to_id=artisan_id)
    artisan = auth_headers(client, "artisan@example.com")

    response = client.post(
        f"/api/milestones/{milestone['id']}/status",
        json={
            "status": "COMPLETED",
            "expense_slips": [
                {"category": "materials", "slip_url": "https://files.example.com/slip.jpg", "amount": "12"}
            ],
        },
        headers=artisan,
    )

    assert response.status_code == 200, response.get_json()
    data = response.get_json()["milestone"]
    assert data["status"] == "COMPLETED"
    assert data["progress_percentage"] == 100
    assert data["actual_end_date"] is not None

    completion = [mail for mail in outbox if mail["subject"].startswith("Milestone completed")]
    assert {mail["recipient"] for mail in completion} == {CUSTOMER_EMAIL, TEST_ADMIN_EMAIL}
    filename, content = completion[0]["attachments"][0]
    assert filename == f"project-report-{project['project_number']}.pdf"
    assert content.startswith(b"%PDF")


def test_milestone_status_report_creates_weekly_update(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/status",
        json={
            "status": "IN_PROGRESS",
            "report": {
                "week_start_date": "2024-03-04",
                "week_end_date": "2024-03-10",
                "labour_expenditure": "40",
                "progress_percentage": 30,
            },
        },
        headers=admin,
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["weekly_update"]["total_expenditure"] == 40.0
    assert data["milestone"]["actual_cost"] == 40.0
    assert data["milestone"]["progress_percentage"] == 30
    assert data["milestone"]["actual_start_date"] is not None


def test_only_admins_create_milestones(app, client):
    create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    project = create_project(client, admin_headers(client))

    response = client.post(
        f"/api/projects/{project['id']}/milestones",
        json={"name": "Roof"},
        headers=auth_headers(client, "builder@example.com"),
    )

    assert response.status_code == 403


def test_milestone_budget_defaults_to_cost_breakdown(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)

    milestone = create_milestone(
        client,
        admin,
        project["id"],
        budget_allocated=None,
        labour_cost="300",
        material_cost="200",
        expected_profit="100",
        materials=[{"name": "Tiles", "quantity": 4, "unit_price": "12.50"}],
    )

    assert milestone["budget_allocated"] == 600.0
    assert milestone["status"] == "PLANNING"
    assert milestone["sequence_order"] == 1
    assert milestone["materials"][0]["total_cost"] == 50.0


def test_payment_request_lifecycle_creates_single_payslip(app, client):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"], assigned_to_id=artisan_id)
    artisan = auth_headers(client, "artisan@example.com")

    created = client.post(
        f"/api/milestones/{milestone['id']}/payment-requests",
        json={
            "artisan_id": artisan_id,
            "calculated_amount": "10000",
            "days_worked": 10,
            "notes": "Tiling phase one",
        },
        headers=admin,
    )
    assert created.status_code == 201, created.get_json()
    request_data = created.get_json()["payment_request"]
    assert request_data["request_number"] == "PAY-MS-00001"
    assert request_data["artisan_id"] == artisan_id
    assert request_data["notes"] == "Tiling phase one"
    assert request_data["status"] == "PENDING"
    request_id = request_data["id"]

    skipped = client.post(
        f"/api/payment-requests/{request_id}/status", json={"status": "PAID"}, headers=admin
    )
    assert skipped.status_code == 400

    forbidden = client.post(
        f"/api/payment-requests/{request_id}/status", json={"status": "APPROVED"}, headers=artisan
    )
    assert forbidden.status_code == 403

    approved = client.post(
        f"/api/payment-requests/{request_id}/status", json={"status": "APPROVED"}, headers=admin
    )
    assert approved.status_code == 200
    assert approved.get_json()["payment_request"]["approved_date"] is not None

    paid = client.post(
        f"/api/payment-requests/{request_id}/status", json={"status": "PAID"}, headers=admin
    )
    assert paid.status_code == 200
    payslip = paid.get_json()["payment_request"]["payslip"]
    now = utcnow()
    assert payslip["payslip_number"] == f"PS-{now.year}-{now.month:02d}-00001"
    assert payslip["gross_pay"] == 10000.0
    assert payslip["income_tax"] == 1500.0
    assert payslip["uif"] == 100.0
    assert payslip["net_pay"] == 8400.0

    repeated = client.post(
        f"/api/payment-requests/{request_id}/status", json={"status": "PAID"}, headers=admin
    )
    assert repeated.status_code == 400

    with app.app_context():
        assert Payslip.query.count() == 1
        assert db.session.get(PaymentRequest, request_id).status == "PAID"
        notifications = Notification.query.filter_by(recipient_id=artisan_id).all()
        assert "PAYMENT_REQUEST_PAID" in {notification.type for notification in notifications}


def test_payment_request_requires_positive_amount(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])

    response = client.post(
        f"/api/milestones/{milestone['id']}/payment-requests",
        json={"calculated_amount": "0"},
        headers=admin,
    )

    assert response.status_code == 400


def test_artisan_cannot_submit_payment_request(app, client):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"], assigned_to_id=artisan_id)

    response = client.post(
        f"/api/milestones/{milestone['id']}/payment-requests",
        json={"calculated_amount": "100"},
        headers=auth_headers(client, "artisan@example.com"),
    )

    assert response.status_code == 403
    with app.app_context():
        assert PaymentRequest.query.count() == 0


def test_payment_request_notes_default_and_partial_prefix(app, client):
    contractor_id = create_user(
        app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha Builders"
    )
    admin = admin_headers(client)
    contractor = auth_headers(client, "builder@example.com")
    project = create_project(client, contractor)
    milestone = create_milestone(client, admin, project["id"])
    url = f"/api/milestones/{milestone['id']}/payment-requests"

    full = client.post(url, json={"calculated_amount": "100"}, headers=contractor)
    assert full.status_code == 201, full.get_json()
    assert full.get_json()["payment_request"]["artisan_id"] == contractor_id
    assert full.get_json()["payment_request"]["notes"] == "Payment for milestone completion"

    partial = client.post(
        url, json={"calculated_amount": "50", "is_partial_payment": True}, headers=contractor
    )
    assert partial.get_json()["payment_request"]["notes"] == "PARTIAL PAYMENT for milestone completion"

    partial_with_notes = client.post(
        url,
        json={"calculated_amount": "50", "is_partial_payment": "true", "notes": "First half"},
        headers=contractor,
    )
    assert partial_with_notes.get_json()["payment_request"]["notes"] == "PARTIAL PAYMENT - First half"

    for_someone_else = client.post(
        url, json={"calculated_amount": "50", "artisan_id": 1}, headers=contractor
    )
    assert for_someone_else.status_code == 403


def test_rejected_payment_request_is_terminal(app, client):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"], assigned_to_id=artisan_id)
    created = client.post(
        f"/api/milestones/{milestone['id']}/payment-requests",
        json={"artisan_id": artisan_id, "calculated_amount": "2500"},
        headers=admin,
    )
    request_id = created.get_json()["payment_request"]["id"]
    status_url = f"/api/payment-requests/{request_id}/status"

    rejected = client.post(
        status_url, json={"status": "REJECTED", "rejection_reason": "Work not signed off"}, headers=admin
    )
    assert rejected.status_code == 200
    assert rejected.get_json()["payment_request"]["rejection_reason"] == "Work not signed off"

    for status in ("APPROVED", "PAID"):
        response = client.post(status_url, json={"status": status}, headers=admin)
        assert response.status_code == 400

    with app.app_context():
        assert db.session.get(PaymentRequest, request_id).status == "REJECTED"
        assert Payslip.query.count() == 0


def create_rfq_parties(app):
    pm_id = create_user(app, "pm@example.com", "PROPERTY_MANAGER", first_name="Pat", last_name="Manager")
    alpha_id = create_user(app, "alpha@example.com", "CONTRACTOR", contractor_company_name="Alpha Builders")
    beta_id = create_user(app, "beta@example.com", "CONTRACTOR", contractor_company_name="Beta Works")
    return pm_id, alpha_id, beta_id


def submit_rfq(client, contractor_ids: list[int]) -> dict:
    response = client.post(
        "/api/pm/rfqs",
        json={
            "title": "Lobby repaint",
            "description": "Repaint the lobby walls.",
            "scope_of_work": "Prepare and paint 120m2 of wall.",
            "building_name": "Harbour View",
            "building_address": "12 Quay Street",
            "urgency": "high",
            "selected_contractor_ids": contractor_ids,
        },
        headers=auth_headers(client, "pm@example.com"),
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["rfq"]


def test_rfq_to_order_flow_and_duplicate_conversion(app, client):
    pm_id, alpha_id, beta_id = create_rfq_parties(app)
    rfq = submit_rfq(client, [alpha_id, beta_id])
    assert rfq["rfq_number"] == "QUO-PM-RFQ-00001"
    assert rfq["status"] == "SUBMITTED"

    alpha_quote = client.post(
        f"/api/pm/rfqs/{rfq['id']}/quotations",
        json={"items": [{"description": "Paint lobby", "quantity": 2, "unit_price": "500"}], "tax": "150"},
        headers=auth_headers(client, "alpha@example.com"),
    )
    assert alpha_quote.status_code == 201, alpha_quote.get_json()
    alpha_data = alpha_quote.get_json()
    assert alpha_data["quotation"]["status"] == "SENT_TO_CUSTOMER"
    assert alpha_data["quotation"]["client_reference_quote_number"] == rfq["rfq_number"]
    assert alpha_data["quotation"]["total"] == 1150.0
    assert alpha_data["rfq"]["status"] == "QUOTED"

    beta_quote = client.post(
        f"/api/pm/rfqs/{rfq['id']}/quotations",
        json={"items": [{"description": "Paint lobby", "quantity": 1, "unit_price": "2000"}]},
        headers=auth_headers(client, "beta@example.com"),
    )
    assert beta_quote.status_code == 201

    pm = auth_headers(client, "pm@example.com")
    early = client.post(
        f"/api/pm/rfqs/{rfq['id']}/select-quotation",
        json={"quotation_id": alpha_data["quotation"]["id"]},
        headers=pm,
    )
    assert early.status_code == 400

    review = client.post(f"/api/pm/rfqs/{rfq['id']}/status", json={"action": "START_REVIEW"}, headers=pm)
    assert review.get_json()["rfq"]["status"] == "UNDER_REVIEW"

    selected = client.post(
        f"/api/pm/rfqs/{rfq['id']}/select-quotation",
        json={"quotation_id": alpha_data["quotation"]["id"]},
        headers=pm,
    )
    assert selected.status_code == 200
    assert selected.get_json()["rfq"]["status"] == "APPROVED"
    assert selected.get_json()["quotation"]["status"] == "APPROVED"

    with app.app_context():
        losing = db.session.get(Quotation, beta_quote.get_json()["quotation"]["id"])
        assert losing.status == "REJECTED"
        assert losing.rejection_reason == "Not selected"

    order = client.post("/api/pm/orders", json={"generated_from_rfq_id": rfq["id"]}, headers=pm)
    assert order.status_code == 201, order.get_json()
    order_data = order.get_json()["order"]
    assert order_data["order_number"] == "ORD-PM-00001"
    assert order_data["contractor_id"] == alpha_id
    assert order_data["total_amount"] == 1150.0
    assert order_data["generated_from_rfq_id"] == rfq["id"]
    assert "Paint lobby x2 @ R 500.00 = R 1,000.00" in order_data["scope_of_work"]
    assert "BILLING SUMMARY" in order_data["scope_of_work"]

    duplicate = client.post("/api/pm/orders", json={"generated_from_rfq_id": rfq["id"]}, headers=pm)
    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"]["code"] == "CONFLICT"

    with app.app_context():
        stored = db.session.get(PropertyManagerRFQ, rfq["id"])
        assert stored.status == "CONVERTED_TO_ORDER"
        assert stored.generated_order_id == order_data["id"]
        received = Notification.query.filter_by(recipient_id=alpha_id, type="RFQ_RECEIVED").count()
        assert received == 1


def test_rfq_conversion_conflicts_with_existing_order_row(app, client):
    pm_id, alpha_id, _ = create_rfq_parties(app)
    rfq = submit_rfq(client, [alpha_id])
    quote = client.post(
        f"/api/pm/rfqs/{rfq['id']}/quotations",
        json={"items": [{"description": "Paint lobby", "quantity": 1, "unit_price": "800"}]},
        headers=auth_headers(client, "alpha@example.com"),
    ).get_json()["quotation"]
    pm = auth_headers(client, "pm@example.com")
    client.post(f"/api/pm/rfqs/{rfq['id']}/status", json={"action": "START_REVIEW"}, headers=pm)
    selected = client.post(
        f"/api/pm/rfqs/{rfq['id']}/select-quotation", json={"quotation_id": quote["id"]}, headers=pm
    )
    assert selected.status_code == 200

    # An order for this RFQ committed by a concurrent request before the RFQ row was updated.
    with app.app_context():
        db.session.add(
            PropertyManagerOrder(
                order_number="ORD-PM-90000",
                property_manager_id=pm_id,
                title="Lobby repaint",
                description="Repaint the lobby walls.",
                scope_of_work="Prepare and paint.",
                building_address="12 Quay Street",
                generated_from_rfq_id=rfq["id"],
            )
        )
        db.session.commit()

    response = client.post("/api/pm/orders", json={"generated_from_rfq_id": rfq["id"]}, headers=pm)

    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "CONFLICT"
    with app.app_context():
        assert PropertyManagerOrder.query.filter_by(generated_from_rfq_id=rfq["id"]).count() == 1
        stored = db.session.get(PropertyManagerRFQ, rfq["id"])
        assert stored.status == "APPROVED"
        assert stored.generated_order_id is None


def test_uninvited_contractor_cannot_quote(app, client):
    create_rfq_parties(app)
    create_user(app, "gamma@example.com", "CONTRACTOR", contractor_company_name="Gamma")
    with app.app_context():
        alpha_id = User.query.filter_by(email="alpha@example.com").one().id
    rfq = submit_rfq(client, [alpha_id])

    response = client.post(
        f"/api/pm/rfqs/{rfq['id']}/quotations",
        json={"items": [{"description": "Paint", "quantity": 1, "unit_price": "10"}]},
        headers=auth_headers(client, "gamma@example.com"),
    )

    assert response.status_code == 403


def test_rfq_pdf_download(app, client):
    _, alpha_id, _ = create_rfq_parties(app)
    rfq = submit_rfq(client, [alpha_id])

    response = client.get(f"/api/pm/rfqs/{rfq['id']}/pdf", headers=auth_headers(client, "alpha@example.com"))

    assert response.status_code == 200
    assert response.mimetype == "application/pdf"
    assert response.data.startswith(b"%PDF")


def create_pm_order(client, contractor_id: int) -> dict:
    response = client.post(
        "/api/pm/orders",
        json={
            "title": "Gutter cleaning",
            "description": "Clean all gutters.",
            "scope_of_work": "Clear and flush gutters on blocks A-C.",
            "building_address": "12 Quay Street",
            "contractor_id": contractor_id,
            "total_amount": "900",
        },
        headers=auth_headers(client, "pm@example.com"),
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["order"]


def test_invoice_numbers_are_unique_across_both_invoice_tables(app, client):
    _, alpha_id, _ = create_rfq_parties(app)
    order = create_pm_order(client, alpha_id)

    standard = client.post(
        "/api/invoices",
        json={
            "invoice_number": "INV-CUSTOM-1",
            "customer_name": "Dana Client",
            "customer_email": CUSTOMER_EMAIL,
            "items": [{"description": "Call-out", "quantity": 1, "unit_price": "450"}],
        },
        headers=admin_headers(client),
    )
    assert standard.status_code == 201
    assert standard.get_json()["invoice"]["status"] == "PENDING_REVIEW"

    alpha = auth_headers(client, "alpha@example.com")
    clash = client.post(
        "/api/invoices",
        json={
            "is_pm_order": True,
            "pm_order_id": order["id"],
            "invoice_number": "INV-CUSTOM-1",
            "items": [{"description": "Gutters", "quantity": 1, "unit_price": "900"}],
        },
        headers=alpha,
    )
    assert clash.status_code == 400
    assert 'Invoice number "INV-CUSTOM-1" is already in use' in clash.get_json()["error"]["message"]

    generated = client.post(
        "/api/invoices",
        json={
            "is_pm_order": True,
            "pm_order_id": order["id"],
            "items": [{"description": "Gutters", "quantity": 1, "unit_price": "900"}],
        },
        headers=alpha,
    )
    assert generated.status_code == 201
    data = generated.get_json()
    assert data["kind"] == "property_manager"
    assert data["invoice"]["invoice_number"] == "INV-00002"
    assert data["invoice"]["status"] == "DRAFT"


def test_pm_invoice_review_workflow(app, client):
    pm_id, alpha_id, _ = create_rfq_parties(app)
    create_user(
        app, "junior@example.com", "CONTRACTOR_JUNIOR_MANAGER", contractor_company_name="Alpha Builders"
    )
    create_user(app, "other-pm@example.com", "PROPERTY_MANAGER")
    order = create_pm_order(client, alpha_id)
    alpha = auth_headers(client, "alpha@example.com")
    junior = auth_headers(client, "junior@example.com")
    pm = auth_headers(client, "pm@example.com")

    invoice = client.post(
        "/api/invoices",
        json={
            "is_pm_order": True,
            "pm_order_id": order["id"],
            "items": [{"description": "Gutters", "quantity": 1, "unit_price": "900"}],
        },
        headers=alpha,
    ).get_json()["invoice"]
    invoice_url = f"/api/pm/invoices/{invoice['id']}"

    too_early = client.post(f"{invoice_url}/pm-status", json={"action": "APPROVE"}, headers=pm)
    assert too_early.status_code == 400

    junior_send = client.post(f"{invoice_url}/contractor-status", json={"status": "SENT_TO_PM"}, headers=junior)
    assert junior_send.status_code == 403

    junior_approve = client.post(
        f"{invoice_url}/contractor-status", json={"status": "ADMIN_APPROVED"}, headers=junior
    )
    assert junior_approve.status_code == 200
    assert junior_approve.get_json()["invoice"]["admin_approved_date"] is not None

    sent = client.post(f"{invoice_url}/contractor-status", json={"status": "SENT_TO_PM"}, headers=alpha)
    assert sent.status_code == 200
    assert sent.get_json()["invoice"]["sent_to_pm_date"] is not None

    premature_paid = client.post(f"{invoice_url}/pm-status", json={"action": "MARK_PAID"}, headers=pm)
    assert premature_paid.status_code == 400

    stranger = client.post(
        f"{invoice_url}/pm-status",
        json={"action": "APPROVE"},
        headers=auth_headers(client, "other-pm@example.com"),
    )
    assert stranger.status_code == 403

    approved = client.post(f"{invoice_url}/pm-status", json={"action": "APPROVE"}, headers=pm)
    assert approved.get_json()["invoice"]["status"] == "PM_APPROVED"

    paid = client.post(f"{invoice_url}/pm-status", json={"action": "MARK_PAID"}, headers=pm)
    assert paid.get_json()["invoice"]["status"] == "PAID"
    assert paid.get_json()["invoice"]["paid_date"] is not None

    with app.app_context():
        assert Notification.query.filter_by(recipient_id=pm_id, type="PM_INVOICE_RECEIVED").count() == 1
        assert Notification.query.filter_by(recipient_id=alpha_id, type="PM_INVOICE_PAID").count() == 1
        admin = User.query.filter_by(email=TEST_ADMIN_EMAIL).one()
        assert Notification.query.filter_by(recipient_id=admin.id, type="PM_INVOICE_PM_APPROVED").count() == 1


def test_pm_invoice_rejection_requires_reason(app, client):
    _, alpha_id, _ = create_rfq_parties(app)
    order = create_pm_order(client, alpha_id)
    alpha = auth_headers(client, "alpha@example.com")
    invoice = client.post(
        "/api/invoices",
        json={"is_pm_order": True, "pm_order_id": order["id"], "items": []},
        headers=alpha,
    ).get_json()["invoice"]
    client.post(f"/api/pm/invoices/{invoice['id']}/contractor-status", json={"status": "SENT_TO_PM"}, headers=alpha)
    pm = auth_headers(client, "pm@example.com")

    missing = client.post(f"/api/pm/invoices/{invoice['id']}/pm-status", json={"action": "REJECT"}, headers=pm)
    assert missing.status_code == 400

    rejected = client.post(
        f"/api/pm/invoices/{invoice['id']}/pm-status",
        json={"action": "REJECT", "reason": "Wrong building"},
        headers=pm,
    )
    assert rejected.status_code == 200
    assert rejected.get_json()["invoice"]["status"] == "PM_REJECTED"
    assert rejected.get_json()["invoice"]["pm_rejection_reason"] == "Wrong building"


def test_quotation_numbers_must_be_unique(client):
    admin = admin_headers(client)
    payload = {
        "quote_number": "Q-100",
        "customer_name": "Dana Client",
        "customer_email": CUSTOMER_EMAIL,
        "items": [{"description": "Survey", "quantity": 1, "unit_price": "250"}],
    }

    first = client.post("/api/quotations", json=payload, headers=admin)
    second = client.post("/api/quotations", json=payload, headers=admin)

    assert first.status_code == 201
    assert first.get_json()["quotation"]["total"] == 250.0
    assert second.status_code == 400
    assert "Q-100" in second.get_json()["error"]["message"]


def test_project_report_access_and_health_score(app, client):
    create_user(app, "artisan@example.com", "ARTISAN")
    create_user(app, "pm@example.com", "PROPERTY_MANAGER")
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(
        client, admin, project["id"], start_date="2020-01-01", end_date="2020-01-31"
    )

    client.post(
        f"/api/milestones/{milestone['id']}/risks",
        json={"description": "Supplier delay", "probability": "HIGH", "impact": "LOW"},
        headers=admin,
    )
    client.post(
        f"/api/projects/{project['id']}/change-orders",
        json={"title": "Extra wall", "description": "Tile an extra wall", "cost_impact": "300",
              "milestone_id": milestone["id"]},
        headers=admin,
    )
    checkpoint = client.post(
        f"/api/milestones/{milestone['id']}/quality-checkpoints",
        json={"name": "Grout inspection"},
        headers=admin,
    ).get_json()["checkpoint"]
    inspected = client.post(
        f"/api/quality-checkpoints/{checkpoint['id']}/status",
        json={"status": "FAILED", "inspection_date": "2024-05-02T08:00:00Z"},
        headers=admin,
    ).get_json()["checkpoint"]
    assert inspected["inspection_date"].startswith("2024-05-02T08:00")

    response = client.get(f"/api/projects/{project['id']}/report", headers=admin)
    assert response.status_code == 200
    report = response.get_json()
    assert report["timeline_summary"]["delayed_milestones_count"] == 1
    assert report["risk_summary"]["critical"] == 1
    assert report["change_order_summary"]["pending"] == 1
    assert report["change_order_summary"]["total_cost_impact"] == 0.0
    assert report["quality_summary"]["pass_rate"] == 0.0
    assert report["health_score"] == 68.0
    assert report["progress_summary"]["milestones_by_status"]["PLANNING"] == 1
    assert len(report["recent_activity"]["open_risks"]) == 1

    denied = client.get(
        f"/api/projects/{project['id']}/report", headers=auth_headers(client, "artisan@example.com")
    )
    assert denied.status_code == 403

    pm = auth_headers(client, "pm@example.com")
    assert client.get(f"/api/projects/{project['id']}/report", headers=pm).status_code == 403
    client.post(
        "/api/pm/customers",
        json={"first_name": "Dana", "last_name": "Client", "email": CUSTOMER_EMAIL},
        headers=pm,
    )
    allowed = client.get(f"/api/projects/{project['id']}/report", headers=pm)
    assert allowed.status_code == 200

    pdf = client.get(f"/api/projects/{project['id']}/report.pdf", headers=pm)
    assert pdf.status_code == 200
    assert pdf.data.startswith(b"%PDF")


def test_approved_change_orders_count_towards_impact(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    change_order = client.post(
        f"/api/projects/{project['id']}/change-orders",
        json={"title": "Extra wall", "description": "Tile an extra wall", "cost_impact": "300",
              "time_impact_days": 2},
        headers=admin,
    ).get_json()["change_order"]
    assert change_order["change_order_number"] == "CO-00001"

    client.post(f"/api/change-orders/{change_order['id']}/status", json={"status": "APPROVED"}, headers=admin)

    report = client.get(f"/api/projects/{project['id']}/report", headers=admin).get_json()
    assert report["change_order_summary"]["total_cost_impact"] == 300.0
    assert report["change_order_summary"]["total_time_impact"] == 2
    with app.app_context():
        assert db.session.get(ChangeOrder, change_order["id"]).approved_date is not None


def test_project_actual_cost_combines_sources(app, client):
    admin = admin_headers(client)
    project = create_project(client, admin)
    milestone = create_milestone(client, admin, project["id"])
    client.post(
        f"/api/milestones/{milestone['id']}/weekly-updates",
        json={"week_start_date": "2024-03-04", "week_end_date": "2024-03-10", "labour_expenditure": "150"},
        headers=admin,
    )
    quotation = client.post(
        "/api/quotations",
        json={"customer_name": "Dana Client", "customer_email": CUSTOMER_EMAIL, "project_id": project["id"],
              "items": [{"description": "Tiles", "quantity": 1, "unit_price": "1000"}]},
        headers=admin,
    ).get_json()["quotation"]
    client.post(f"/api/quotations/{quotation['id']}/status", json={"status": "APPROVED"}, headers=admin)
    invoice = client.post(
        "/api/invoices",
        json={"customer_name": "Dana Client", "customer_email": CUSTOMER_EMAIL, "project_id": project["id"],
              "items": [{"description": "Deposit", "quantity": 1, "unit_price": "500"}]},
        headers=admin,
    ).get_json()["invoice"]
    client.post(f"/api/invoices/{invoice['id']}/status", json={"status": "PAID"}, headers=admin)

    response = client.post(f"/api/projects/{project['id']}/actual-cost", headers=admin)

    assert response.status_code == 200
    data = response.get_json()
    assert data["approved_quotations"] == 1000.0
    assert data["paid_invoices"] == 500.0
    assert data["milestone_costs"] == 150.0
    assert data["actual_cost"] == 1650.0
    assert data["variance"] == -3350.0
    assert data["variance_percentage"] == -67.0


def test_building_budget_expenses_update_totals(app, client):
    create_user(app, "pm@example.com", "PROPERTY_MANAGER")
    create_user(app, "other-pm@example.com", "PROPERTY_MANAGER")
    pm = auth_headers(client, "pm@example.com")
    budget = client.post(
        "/api/pm/budgets",
        json={"building_name": "Harbour View", "fiscal_year": 2024, "total_budget": "5000"},
        headers=pm,
    ).get_json()["budget"]

    for amount in ("1200.50", "300"):
        response = client.post(
            f"/api/pm/budgets/{budget['id']}/expenses",
            json={"category": "Maintenance", "description": "Pump repair", "amount": amount},
            headers=pm,
        )
        assert response.status_code == 201

    totals = response.get_json()["budget"]
    assert totals["total_spent"] == 1500.5
    assert totals["total_remaining"] == 3499.5

    negative = client.post(
        f"/api/pm/budgets/{budget['id']}/expenses",
        json={"category": "Maintenance", "description": "Refund", "amount": "-5"},
        headers=pm,
    )
    assert negative.status_code == 400

    stranger = client.post(
        f"/api/pm/budgets/{budget['id']}/expenses",
        json={"category": "Maintenance", "description": "Pump", "amount": "10"},
        headers=auth_headers(client, "other-pm@example.com"),
    )
    assert stranger.status_code == 403


def test_orders_follow_assignment_rules_and_notify_customer(app, client, outbox):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    create_user(app, "other-artisan@example.com", "ARTISAN")
    payload = {
        "customer_name": "Dana Client",
        "customer_email": CUSTOMER_EMAIL,
        "address": "1 Main Road",
        "service_type": "Plumbing",
        "description": "Leaking geyser",
    }

    unassigned = client.post("/api/orders", json=payload, headers=admin_headers(client))
    assert unassigned.get_json()["order"]["status"] == "PENDING"

    self_assigned = client.post("/api/orders", json=payload, headers=auth_headers(client, "builder@example.com"))
    self_data = self_assigned.get_json()["order"]
    assert self_data["status"] == "IN_PROGRESS"
    assert self_data["assigned_to_id"] == contractor_id
    assert self_data["started_at"] is not None

    assigned = client.post(
        "/api/orders", json={**payload, "assigned_to_id": artisan_id}, headers=admin_headers(client)
    )
    order = assigned.get_json()["order"]
    assert order["status"] == "ASSIGNED"
    assert any(mail["recipient"] == "artisan@example.com" for mail in outbox)

    outsider = client.post(
        f"/api/orders/{order['id']}/status",
        json={"status": "IN_PROGRESS"},
        headers=auth_headers(client, "other-artisan@example.com"),
    )
    assert outsider.status_code == 403

    artisan = auth_headers(client, "artisan@example.com")
    started = client.post(f"/api/orders/{order['id']}/status", json={"status": "IN_PROGRESS"}, headers=artisan)
    assert started.get_json()["order"]["started_at"] is not None
    completed = client.post(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"}, headers=artisan)
    assert completed.get_json()["order"]["completed_at"] is not None

    customer_mail = [mail for mail in outbox if mail["recipient"] == CUSTOMER_EMAIL]
    assert any("has been completed" in mail["body"] for mail in customer_mail)


def test_disabled_notification_types_are_skipped(app, client):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    artisan = auth_headers(client, "artisan@example.com")
    client.post(
        "/api/users/me/notification-preferences",
        json={"disabled_types": ["ORDER_ASSIGNED"]},
        headers=artisan,
    )

    client.post(
        "/api/orders",
        json={"customer_name": "Dana", "customer_email": CUSTOMER_EMAIL, "address": "1 Main Road",
              "service_type": "Plumbing", "description": "Leak", "assigned_to_id": artisan_id},
        headers=admin_headers(client),
    )

    with app.app_context():
        assert Notification.query.filter_by(recipient_id=artisan_id).count() == 0


def test_notifications_can_be_marked_read(app, client):
    create_user(app, "pm@example.com", "PROPERTY_MANAGER")
    admin = admin_headers(client)
    create_project(client, admin)

    listing = client.get("/api/notifications?unread=1", headers=admin).get_json()
    assert listing["unread_count"] == 1
    notification_id = listing["notifications"][0]["id"]

    other = client.post(
        f"/api/notifications/{notification_id}/read", headers=auth_headers(client, "pm@example.com")
    )
    assert other.status_code == 404

    marked = client.post(f"/api/notifications/{notification_id}/read", headers=admin)
    assert marked.get_json()["notification"]["is_read"] is True

    create_project(client, admin, name="Second project")
    cleared = client.post("/api/notifications/read-all", headers=admin)
    assert cleared.get_json()["updated"] == 1
    assert client.get("/api/notifications", headers=admin).get_json()["unread_count"] == 0


def test_conversations_are_reused_for_same_participants(app, client):
    customer_id = create_user(app, "customer@example.com", "CUSTOMER")
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN")
    create_user(app, "outsider@example.com", "ARTISAN")
    customer = auth_headers(client, "customer@example.com")
    artisan = auth_headers(client, "artisan@example.com")

    first = client.post("/api/conversations", json={"participant_ids": [artisan_id]}, headers=customer)
    assert first.status_code == 201
    conversation_id = first.get_json()["conversation"]["id"]

    again = client.post("/api/conversations", json={"participant_ids": [customer_id]}, headers=artisan)
    assert again.status_code == 200
    assert again.get_json()["created"] is False
    assert again.get_json()["conversation"]["id"] == conversation_id

    alone = client.post("/api/conversations", json={"participant_ids": []}, headers=customer)
    assert alone.status_code == 400

    sent = client.post(
        f"/api/conversations/{conversation_id}/messages", json={"content": "When can you come?"}, headers=customer
    )
    assert sent.status_code == 201

    messages = client.get(f"/api/conversations/{conversation_id}/messages", headers=artisan).get_json()
    assert [message["content"] for message in messages["messages"]] == ["When can you come?"]
    assert messages["messages"][0]["is_read"] is True

    outsider = client.get(
        f"/api/conversations/{conversation_id}/messages", headers=auth_headers(client, "outsider@example.com")
    )
    assert outsider.status_code == 403

    with app.app_context():
        assert Notification.query.filter_by(recipient_id=artisan_id, type="NEW_MESSAGE").count() == 1


def test_subscription_trial_expires_and_overdue_suspends(app, client):
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    subscription = subscribe(client, app, contractor_id, "contractor-pro")
    assert subscription["status"] == "TRIAL"
    builder = auth_headers(client, "builder@example.com")

    feature = client.get("/api/subscriptions/me/features/ai_agent", headers=builder)
    assert feature.get_json()["has_access"] is True

    with app.app_context():
        stored = db.session.get(Subscription, subscription["id"])
        stored.trial_ends_at = utcnow() - timedelta(days=1)
        db.session.commit()

    expired = client.get("/api/subscriptions/me", headers=builder).get_json()
    assert expired["subscription"]["status"] == "EXPIRED"
    assert expired["features"] == []

    with app.app_context():
        stored = db.session.get(Subscription, subscription["id"])
        stored.status = "ACTIVE"
        stored.is_payment_overdue = True
        db.session.commit()

    suspended = client.get("/api/subscriptions/me", headers=builder).get_json()
    assert suspended["subscription"]["status"] == "SUSPENDED"


def test_subscription_package_must_match_role(app, client):
    pm_id = create_user(app, "pm@example.com", "PROPERTY_MANAGER")

    response = client.post(
        "/api/subscriptions",
        json={"user_id": pm_id, "package_id": package_id(app, "contractor-pro")},
        headers=admin_headers(client),
    )

    assert response.status_code == 400


def test_contractor_user_limit_is_enforced(app, client):
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    builder = auth_headers(client, "builder@example.com")

    def add_staff(email: str, role: str = "ARTISAN"):
        return client.post(
            "/api/users",
            json={"email": email, "password": DEFAULT_PASSWORD, "first_name": "Sam", "last_name": "Staff",
                  "role": role},
            headers=builder,
        )

    unsubscribed = add_staff("first@example.com")
    assert unsubscribed.status_code == 400

    subscribe(client, app, contractor_id, "contractor-starter")
    assert add_staff("wrong-role@example.com", role="CUSTOMER").status_code == 403
    assert add_staff("first@example.com").status_code == 201
    second = add_staff("second@example.com")
    assert second.status_code == 201
    assert second.get_json()["user"]["contractor_company_name"] == "Alpha"

    third = add_staff("third@example.com")
    assert third.status_code == 400
    assert "User limit reached (3)" in third.get_json()["error"]["message"]


def test_subscription_cost_includes_extras(app, client):
    response = client.post(
        "/api/subscriptions/cost",
        json={"package_id": package_id(app, "property-manager"), "additional_users": 2, "additional_tenants": 10},
        headers=admin_headers(client),
    )

    assert response.status_code == 200
    assert response.get_json()["total"] == 1247.0


def test_subscription_payment_and_stripe_webhook(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    subscription = subscribe(client, app, contractor_id, "contractor-pro")
    builder = auth_headers(client, "builder@example.com")

    created = client.post(f"/api/subscriptions/{subscription['id']}/payments", headers=builder)
    assert created.status_code == 201, created.get_json()
    payment = created.get_json()["payment"]
    assert payment["amount"] == 1299.0
    assert created.get_json()["client_secret"] == "pi_1_secret"
    assert stub.PaymentIntent.created[0]["currency"] == "zar"
    assert stub.PaymentIntent.created[0]["amount"] == 129900

    stub.Event.next_event = SimpleNamespace(
        type="payment_intent.succeeded",
        data=SimpleNamespace(
            object=SimpleNamespace(id="pi_1", metadata={"subscription_payment_id": str(payment["id"])})
        ),
    )
    succeeded = client.post("/stripe/webhook", data="{}", headers={"Content-Type": "application/json"})
    assert succeeded.get_json() == {"status": "ok"}

    with app.app_context():
        stored_payment = db.session.get(SubscriptionPayment, payment["id"])
        assert stored_payment.status == "COMPLETED"
        assert stored_payment.paid_at is not None
        stored = db.session.get(Subscription, subscription["id"])
        assert stored.status == "ACTIVE"
        assert stored.current_period_end is not None

    second = client.post(f"/api/subscriptions/{subscription['id']}/payments", headers=builder)
    second_id = second.get_json()["payment"]["id"]
    stub.Event.next_event = SimpleNamespace(
        type="payment_intent.payment_failed",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="pi_2", metadata={}, last_payment_error=SimpleNamespace(message="Card declined")
            )
        ),
    )
    failed = client.post("/stripe/webhook", data="{}", headers={"Content-Type": "application/json"})
    assert failed.get_json() == {"status": "ok"}

    with app.app_context():
        stored_payment = db.session.get(SubscriptionPayment, second_id)
        assert stored_payment.status == "FAILED"
        assert stored_payment.failure_reason == "Card declined"
        stored = db.session.get(Subscription, subscription["id"])
        assert stored.is_payment_overdue is True
        assert stored.status == "SUSPENDED"


def test_stripe_webhook_ignores_unknown_events(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    stub.Event.next_event = SimpleNamespace(
        type="customer.created", data=SimpleNamespace(object=SimpleNamespace(id="cus_1"))
    )

    response = client.post("/stripe/webhook", data="{}", headers={"Content-Type": "application/json"})

    assert response.get_json() == {"status": "ignored"}


def test_subscription_payment_requires_stripe(app, client):
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    subscription = subscribe(client, app, contractor_id, "contractor-pro")

    response = client.post(
        f"/api/subscriptions/{subscription['id']}/payments", headers=auth_headers(client, "builder@example.com")
    )

    assert response.status_code == 400


def test_presigned_upload_url(app, client, monkeypatch):
    calls = []

    class FakeS3:
        def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
            calls.append((ClientMethod, Params, ExpiresIn))
            return "https://signed.example.com/upload"

    monkeypatch.setattr(storage, "get_client", lambda: FakeS3())
    app.config["STORAGE_PUBLIC_URL"] = "https://cdn.example.com"

    response = client.post(
        "/api/uploads/presign",
        json={"filename": "my slip!.pdf", "content_type": "application/pdf"},
        headers=admin_headers(client),
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["presigned_url"] == "https://signed.example.com/upload"
    assert data["object_name"].startswith("private/attachments/")
    assert data["object_name"].endswith("-my_slip_.pdf")
    assert data["file_url"] == f"https://cdn.example.com/property-management/{data['object_name']}"
    method, params, expires = calls[0]
    assert method == "put_object"
    assert params["ContentType"] == "application/pdf"
    assert expires == 600


def test_ai_email_content_with_stubbed_client(app, client, monkeypatch):
    fake = FakeAnthropic(
        '```json\n{"subject": "Your quotation", "greeting": "Hi Dana,", "body": "Your quote is ready.", '
        '"call_to_action": "Reply to accept.", "closing": "Regards,"}\n```'
    )
    monkeypatch.setattr(ai_assistant, "get_client", lambda: fake)

    response = client.post(
        "/api/ai/email-content",
        json={"email_type": "quotation_follow_up", "recipient_name": "Dana", "context": "Quote Q-1 sent last week"},
        headers=admin_headers(client),
    )

    assert response.status_code == 200, response.get_json()
    email = response.get_json()["email"]
    assert email["subject"] == "Your quotation"
    assert email["full_email"].startswith("Hi Dana,\n\nYour quote is ready.")
    assert "Facility Services" in email["signature"]
    assert "QUOTATION_FOLLOW_UP" in fake.calls[0]["messages"][0]["content"]


def test_ai_errors_are_classified(app, client, monkeypatch):
    admin = admin_headers(client)
    payload = {"recipient_name": "Dana", "context": "Follow up"}

    unconfigured = client.post("/api/ai/email-content", json=payload, headers=admin)
    assert unconfigured.status_code == 500
    assert "not configured" in unconfigured.get_json()["error"]["message"]

    monkeypatch.setattr(ai_assistant, "get_client", lambda: FakeAnthropic(error=Exception("429 rate limit exceeded")))
    limited = client.post("/api/ai/email-content", json=payload, headers=admin)
    assert limited.status_code == 429
    assert limited.get_json()["error"]["code"] == "TOO_MANY_REQUESTS"

    monkeypatch.setattr(ai_assistant, "get_client", lambda: FakeAnthropic(text="no json here"))
    garbled = client.post("/api/ai/email-content", json=payload, headers=admin)
    assert garbled.status_code == 500
    assert garbled.get_json()["error"]["message"] == "Failed to complete AI email generation. Please try again."


def test_ai_features_require_package_access(app, client, monkeypatch):
    contractor_id = create_user(app, "builder@example.com", "CONTRACTOR", contractor_company_name="Alpha")
    subscribe(client, app, contractor_id, "contractor-starter")
    monkeypatch.setattr(ai_assistant, "get_client", lambda: FakeAnthropic('{"subject": "x"}'))

    response = client.post(
        "/api/ai/email-content",
        json={"recipient_name": "Dana", "context": "Follow up"},
        headers=auth_headers(client, "builder@example.com"),
    )

    assert response.status_code == 403


def test_ai_artisan_suggestions_only_return_known_candidates(app, client, monkeypatch):
    artisan_id = create_user(app, "artisan@example.com", "ARTISAN", first_name="Ari")
    fake = FakeAnthropic(
        '{"recommendations": [{"artisan_id": %d, "score": 90, "reasoning": "Local plumber"}, '
        '{"artisan_id": 999, "score": 80, "reasoning": "Unknown"}], "summary": "Ari fits best."}' % artisan_id
    )
    monkeypatch.setattr(ai_assistant, "get_client", lambda: fake)

    response = client.post(
        "/api/ai/suggest-artisan",
        json={"service_type": "Plumbing", "description": "Burst pipe"},
        headers=admin_headers(client),
    )

    assert response.status_code == 200
    data = response.get_json()
    assert [entry["artisan_id"] for entry in data["recommendations"]] == [artisan_id]
    assert data["candidates"][0]["completed_orders"] == 0
    assert data["summary"] == "Ari fits best."


def test_ai_risk_analysis_includes_metrics(app, client, monkeypatch):
    fake = FakeAnthropic('{"risks": [{"title": "Overrun", "severity": "HIGH"}], "summary": "Watch costs."}')
    monkeypatch.setattr(ai_assistant, "get_client", lambda: fake)
    admin = admin_headers(client)
    project = create_project(client, admin)
    create_milestone(client, admin, project["id"], end_date="2020-01-31")

    response = client.post(f"/api/projects/{project['id']}/ai/risk-analysis", headers=admin)

    assert response.status_code == 200
    data = response.get_json()
    assert data["metrics"]["overdue_milestones"] == ["Tiling"]
    assert data["risks"][0]["title"] == "Overrun"
    assert data["summary"] == "Watch costs."
