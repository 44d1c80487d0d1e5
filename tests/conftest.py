import os
from datetime import date, datetime, timedelta

import pytest

from voting_api import create_app
from voting_api.extensions import db
from voting_api.models.employee import Employee
from voting_api.services.engine import current_engine

# fixed clock for service-level tests
NOW = datetime(2026, 3, 10, 10, 0, 0)


def _mk_app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    os.environ.pop("VOTING_SCHEDULER_ENABLED", None)
    return create_app()


@pytest.fixture
def app():
    app = _mk_app()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return current_engine()


@pytest.fixture
def make_employee(app):
    seq = {"n": 0}

    def _mk(position="staff", hired=date(2024, 1, 1), store="S1", status="active", code=None):
        seq["n"] += 1
        code = code or f"E{seq['n']:03d}"
        emp = Employee(
            code=code,
            name=f"Employee {code}",
            position=position,
            hire_date=hired,
            current_store=store,
            status=status,
        )
        db.session.add(emp)
        db.session.commit()
        return emp

    return _mk


@pytest.fixture
def voters(make_employee):
    return [make_employee() for _ in range(10)]


@pytest.fixture
def make_campaign(engine, make_employee):
    """Active manual campaign with one candidate, window NOW-1d .. NOW+2d."""
    def _mk(candidate=None, **overrides):
        candidate = candidate or make_employee(position="intern")
        data = {
            "name": "Store vote",
            "start_date": NOW - timedelta(days=1),
            "end_date": NOW + timedelta(days=2),
            "candidates": [candidate.id],
            "status": "active",
            "target_position": "staff",
            "trigger_employee_id": candidate.id,
        }
        data.update(overrides)
        return engine.campaigns.create_campaign(data, now=NOW)

    return _mk
