from __future__ import annotations

import os
import tempfile

# DB temporaneo: va impostato prima di importare bedflow (l'engine nasce all'import)
_DB_DIR = tempfile.mkdtemp(prefix="bedflow-test-")
os.environ["BEDFLOW_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.sqlite')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BEDFLOW_SEED_PASSWORD"] = "BedFlow123"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from bedflow import models  # noqa: F401
from bedflow.auth_models import Utente
from bedflow.db import Base, db_session, engine
from bedflow.models import Letto
from bedflow.seed import seed_base

PASSWORD = "BedFlow123"


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def seeded() -> dict:
    """Seed demo: ritorna gli id di utenti e letti per chiave leggibile."""
    seed_base()
    with db_session() as s:
        utenti = {u.username: u.id for u in s.scalars(select(Utente))}
        letti = {l.codice: l.id for l in s.scalars(select(Letto))}
    return {"utenti": utenti, "letti": letti}


@pytest.fixture
def admin_id(seeded) -> str:
    return seeded["utenti"]["admin1"]


@pytest.fixture
def letti(seeded) -> dict[str, str]:
    return seeded["letti"]


@pytest.fixture
def client(seeded) -> TestClient:
    from bedflow.api_main import app

    return TestClient(app)


def _login(client: TestClient, username: str) -> dict[str, str]:
    res = client.post("/auth/login", data={"username": username, "password": PASSWORD})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def admin_headers(client) -> dict[str, str]:
    return _login(client, "admin1")


@pytest.fixture
def coord_headers(client) -> dict[str, str]:
    return _login(client, "coord1")


@pytest.fixture
def nurse_headers(client) -> dict[str, str]:
    return _login(client, "enf1")
