from decimal import Decimal

import pytest

from billing.app import BillingApp
from billing.config import Settings
from billing.models.common import Address
from billing.models.company import Company
from billing.models.customer import Customer
from billing.storage.repo import JsonStore


@pytest.fixture
def store(tmp_path):
    return JsonStore(tmp_path / "data", backup_enabled=False)


@pytest.fixture
def app(tmp_path):
    return BillingApp(Settings(data_dir=tmp_path / "data", backup_enabled=False))


@pytest.fixture
def company(app):
    return app.companies.register_company(Company(name="Acme SARL", currency="EUR", email="billing@acme.fr"))


@pytest.fixture
def customer(app, company):
    return app.customers.add_customer(Customer(
        company_id=company.id,
        name="Globex",
        email="ap@globex.com",
        currency="USD",
        address=Address(street="1 Main St", city="Springfield", country="US"),
    ))


@pytest.fixture
def items():
    return [{"name": "Consulting", "quantity": 2, "unit_price": Decimal("100"), "tax_rate": 10}]


@pytest.fixture
def make_invoice(app, company, customer, items):
    def _make(**kwargs):
        kwargs.setdefault("items", items)
        kwargs.setdefault("customer_id", customer.id)
        return app.documents.create_document("invoice", company.id, **kwargs)
    return _make


@pytest.fixture
def sent_invoice(app, company, make_invoice):
    inv = make_invoice()
    return app.documents.transition_status("invoice", company.id, inv.id, "sent", inv.version)
