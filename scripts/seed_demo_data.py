"""
Seed the local database with a demo fleet, back-office users and customers.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times upserts the same records
based on unique fields (email for users, license plate for vehicles,
id number for customers). It prints a bearer token per user for local testing.
"""
from decimal import Decimal
from typing import Optional

from rentdesk.db import SessionLocal, Base, engine
from rentdesk.models.models import Customer, User, Vehicle
from rentdesk.auth.security import create_access_token


USERS = [
    ("owner@rentdesk.local", "Olga", "Owner", "SUPER_ADMIN", None),
    ("admin@rentdesk.local", "Andres", "Admin", "ADMIN", None),
    ("agent.ana@rentdesk.local", "Ana", "Agent", "AGENT", Decimal("10")),
    ("agent.luis@rentdesk.local", "Luis", "Agent", "AGENT", Decimal("7.5")),
]

VEHICLES = [
    # brand, model, year, plate, daily, deposit, flat commission per day
    ("Toyota", "Corolla", 2022, "A123456", Decimal("50"), Decimal("200"), None),
    ("Hyundai", "Tucson", 2023, "G234567", Decimal("75"), Decimal("300"), None),
    ("Kia", "Picanto", 2021, "A345678", Decimal("35"), Decimal("150"), Decimal("3")),
    ("Toyota", "Hilux", 2023, "L456789", Decimal("95"), Decimal("400"), None),
]

CUSTOMERS = [
    ("Maria", "Perez", "maria.perez@example.com", "809-555-0101", "CEDULA", "001-0000001-1"),
    ("John", "Smith", "john.smith@example.com", "+1-305-555-0199", "PASSPORT", "X1234567"),
]


def ensure_user(session, email: str, first: str, last: str, role: str, rate: Optional[Decimal]) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email)
        session.add(user)
    user.first_name = first
    user.last_name = last
    user.role = role
    user.commission_rate = rate
    user.is_active = True
    session.flush()
    return user


def ensure_vehicle(session, brand, model, year, plate, daily, deposit, flat) -> Vehicle:
    vehicle = session.query(Vehicle).filter(Vehicle.license_plate == plate).first()
    if vehicle is None:
        vehicle = Vehicle(license_plate=plate, status="AVAILABLE")
        session.add(vehicle)
    # Status is owned by the availability guard; only catalogue fields are upserted
    vehicle.brand = brand
    vehicle.model = model
    vehicle.year = year
    vehicle.daily_rate = daily
    vehicle.weekly_rate = daily * 6
    vehicle.monthly_rate = daily * 25
    vehicle.deposit_amount = deposit
    vehicle.commission_amount = flat
    session.flush()
    return vehicle


def ensure_customer(session, first, last, email, phone, id_type, id_number) -> Customer:
    customer = session.query(Customer).filter(Customer.id_number == id_number).first()
    if customer is None:
        customer = Customer(id_number=id_number)
        session.add(customer)
    customer.first_name = first
    customer.last_name = last
    customer.email = email
    customer.phone = phone
    customer.id_type = id_type
    session.flush()
    return customer


def main():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        users = [ensure_user(session, *row) for row in USERS]
        for row in VEHICLES:
            ensure_vehicle(session, *row)
        for row in CUSTOMERS:
            ensure_customer(session, *row)
        session.commit()
        print(f"Seeded {len(USERS)} users, {len(VEHICLES)} vehicles, {len(CUSTOMERS)} customers")
        for user in users:
            print(f"{user.role:<12} {user.email:<28} {create_access_token(str(user.id), user.role)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
