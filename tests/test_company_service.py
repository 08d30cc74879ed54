import pytest

from billing.errors import Conflict, NotFound, ValidationError
from billing.models.company import Company


def test_register_normalizes_currency(app):
    co = app.companies.register_company(Company(name="Tokyo KK", currency="jpy"))
    assert co.currency == "JPY"
    assert app.companies.get_company(co.id).name == "Tokyo KK"


def test_register_rejects_unknown_currency(app):
    with pytest.raises(ValidationError):
        app.companies.register_company(Company(name="X", currency="ABC"))
    assert app.companies.list_companies() == []


def test_update_company_with_version(app, company):
    updated = app.companies.update_company(company.id, {"phone": "+33 1 23"}, expected_version=company.version)
    assert updated.phone == "+33 1 23"
    with pytest.raises(Conflict):
        app.companies.update_company(company.id, {"phone": "x"}, expected_version=company.version)
    with pytest.raises(ValidationError):
        app.companies.update_company(company.id, {"id": "other"})


def test_update_settings(app, company):
    co = app.companies.update_settings(company.id, default_due_days=15)
    assert co.settings.default_due_days == 15
    assert co.settings.payment_terms == "Net 30"
    with pytest.raises(ValidationError):
        app.companies.update_settings(company.id, default_due_days=-1)


def test_due_date_follows_company_setting(app, company, make_invoice):
    app.companies.update_settings(company.id, default_due_days=15)
    inv = make_invoice()
    assert (inv.due_date - inv.date).days == 15


def test_unknown_company(app):
    with pytest.raises(NotFound):
        app.companies.get_company("missing")
