# tests/conftest.py
"""
Pytest fixtures: a fresh in-memory SQLite database per test, seeded with a
category, a payment method, a claim location and a couple of registrations.
"""

import pytest
from fastapi.testclient import TestClient

from racekit import db, models, services
from racekit.schemas import RegistrationCreate


@pytest.fixture()
def session():
    db.dispose_db()
    db.init_db("sqlite://")
    s = db.new_session()
    try:
        yield s
    finally:
        s.close()
        db.dispose_db()


@pytest.fixture()
def seeded(session):
    services.create_category(session, "3K", 800, ["Singlet", "Bib"])
    services.create_category(session, "10K", 1200)
    gcash = services.create_payment_method(session, "GCash", "09170000000")
    location = services.create_claim_location(session, "Main Lobby", "Church grounds")

    jane = services.create_registration(session, RegistrationCreate(
        first_name="Jane", last_name="Doe", email="jane@example.com",
        category="3K", shirt_size="M", payment_method_id=gcash.id,
    ))
    john = services.create_registration(session, RegistrationCreate(
        first_name="John", last_name="Cruz", email="john@example.com",
        category="10K", shirt_size="L",
    ))
    return {"jane": jane, "john": john, "gcash": gcash, "location": location}


def make_registration(session, registration_id: str, **overrides) -> models.Registration:
    """Insert a registration with a fixed code, bypassing id generation."""
    values = dict(
        registration_id=registration_id,
        first_name="Jane",
        last_name="Doe",
        email="jane@example.com",
        category="3K",
        price=800,
        shirt_size="M",
        payment_status="pending",
    )
    values.update(overrides)
    reg = models.Registration(**values)
    session.add(reg)
    session.commit()
    return reg


@pytest.fixture()
def client(seeded):
    from racekit.main import app

    with TestClient(app) as c:
        yield c


def login(client, username="admin", password="change-me"):
    r = client.post("/login", data={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return r
