from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import estate_chat.db.session as db_session
from estate_chat.main import app
from estate_chat.models import Listing, Profile


@pytest.fixture()
def database(tmp_path):
    database_path = tmp_path / "test.db"
    db_session.configure_engine(f"sqlite:///{database_path}")
    db_session.init_db()
    return db_session.SessionLocal


@pytest.fixture()
def client(database):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def marketplace(database) -> dict[str, str]:
    """Alice is a renter, Bob owns the listing, Carol is an unrelated user."""
    with database() as db:
        alice = Profile(full_name="Alice Renter", avatar_url="user_avatars/alice.png")
        bob = Profile(full_name="Bob Owner", avatar_url="https://cdn.example.com/bob.jpg")
        carol = Profile(full_name="Carol Other", avatar_url=None)
        db.add_all([alice, bob, carol])
        db.flush()
        listing = Listing(title="Sunny two-bedroom near the park", owner_id=bob.id)
        db.add(listing)
        db.commit()
        return {"alice": alice.id, "bob": bob.id, "carol": carol.id, "listing": listing.id}
