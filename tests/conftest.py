from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rentdesk.db import Base
from rentdesk.models.models import Customer, User, Vehicle
from rentdesk.services.money import MoneyConfig
from rentdesk.services.permissions import Actor

START = datetime(2030, 1, 10, 10, 0)


def days(n, start=START):
    return start + timedelta(days=n)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def money():
    """18% tax, USD primary with DOP at 60 for display."""
    return MoneyConfig(
        tax_rate=Decimal("18"),
        apply_tax=True,
        currency="USD",
        currency_symbol="$",
        secondary_currency="DOP",
        secondary_symbol="RD$",
        exchange_rate=Decimal("60"),
        show_dual=True,
    )


@pytest.fixture
def make_vehicle(db):
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        data = {
            "brand": "Toyota",
            "model": "Corolla",
            "year": 2022,
            "license_plate": f"A{counter['n']:06d}",
            "daily_rate": Decimal("50"),
            "deposit_amount": Decimal("200"),
            "mileage": 10000,
            "status": "AVAILABLE",
        }
        data.update(kwargs)
        vehicle = Vehicle(**data)
        db.add(vehicle)
        db.commit()
        return vehicle

    return _make


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="AGENT", commission_rate=None, **kwargs):
        counter["n"] += 1
        user = User(
            email=kwargs.pop("email", f"user{counter['n']}@rentdesk.test"),
            first_name=kwargs.pop("first_name", "Ana"),
            last_name=kwargs.pop("last_name", f"Agent{counter['n']}"),
            role=role,
            commission_rate=commission_rate,
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_customer(db):
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        data = {
            "first_name": "Maria",
            "last_name": f"Perez{counter['n']}",
            "email": f"maria{counter['n']}@example.com",
            "phone": "809-555-0101",
            "id_number": f"001-{counter['n']:07d}-1",
        }
        data.update(kwargs)
        customer = Customer(**data)
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def vehicle(make_vehicle):
    return make_vehicle()


@pytest.fixture
def agent(make_user):
    return make_user(role="AGENT", commission_rate=Decimal("10"))


@pytest.fixture
def admin(make_user):
    return make_user(role="ADMIN", first_name="Andres")


@pytest.fixture
def customer(make_customer):
    return make_customer()


@pytest.fixture
def agent_actor(agent):
    return Actor(id=agent.id, role="AGENT")


@pytest.fixture
def admin_actor(admin):
    return Actor(id=admin.id, role="ADMIN")


@pytest.fixture
def open_rental(db, money, vehicle, agent, customer, agent_actor):
    """A 3-day ACTIVE rental on the default vehicle, with a 10% agent commission."""
    from rentdesk.services import rentals

    return rentals.create_rental(
        db,
        money,
        vehicle_id=vehicle.id,
        agent_id=agent.id,
        customer_ids=[customer.id],
        start_date=START,
        expected_end_date=days(3),
        actor=agent_actor,
    )
