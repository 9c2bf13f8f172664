"""
Shared fixtures: in-memory SQLite session, a seeded school, a fake clock and a
fake Conta Azul HTTP session.  Nothing here touches the network or sleeps.
"""
import os

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("API_SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from datetime import date, timedelta  # noqa: E402
from urllib.parse import urlparse  # noqa: E402

import pytest  # noqa: E402
import requests  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.database import Base  # noqa: E402
from app.models import conta_azul, school, sync, transaction, user  # noqa: E402,F401
from app.models.school import School  # noqa: E402
from app.services.contaazul import (  # noqa: E402
    INSTALLMENT_ENDPOINT,
    PAYABLES_ENDPOINT,
    RECEIVABLES_ENDPOINT,
    ContaAzulClient,
)


# ── HTTP doubles ─────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


def category_body(name: str | None) -> dict:
    rateio = [{"nome_categoria": name, "valor": 100}] if name else []
    return {"evento": {"rateio": rateio}}


class FakeContaAzulSession:
    """
    Stands in for ``requests.Session``.

    ``receivables`` / ``payables`` are served page by page; installment
    lookups follow ``detail_script[key]`` (responses or exceptions, consumed
    in order) and fall back to ``Category <key>``.
    """

    def __init__(self, receivables=None, payables=None):
        self.receivables = receivables or []
        self.payables = payables or []
        self.list_failures: dict[str, object] = {}
        self.detail_script: dict[str, list] = {}
        self.no_category: set[str] = set()
        self.token_response = FakeResponse(
            200, {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600}
        )
        self.list_calls: list[tuple[str, dict]] = []
        self.detail_calls: list[str] = []
        self.token_calls: list[dict] = []
        self.on_detail = None

    def get(self, url, params=None, headers=None, timeout=None):
        path = urlparse(url).path
        if path in (RECEIVABLES_ENDPOINT, PAYABLES_ENDPOINT):
            return self._list(path, params)
        prefix = INSTALLMENT_ENDPOINT.split("{")[0]
        if path.startswith(prefix):
            return self._detail(path[len(prefix):])
        raise AssertionError(f"Unexpected GET {url}")

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.token_calls.append(data)
        if isinstance(self.token_response, Exception):
            raise self.token_response
        return self.token_response

    def _list(self, path, params):
        self.list_calls.append((path, dict(params)))
        failure = self.list_failures.get(path)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return failure
        items = self.receivables if path == RECEIVABLES_ENDPOINT else self.payables
        page, size = int(params["pagina"]), int(params["tamanho_pagina"])
        return FakeResponse(200, {"itens": items[(page - 1) * size:page * size]})

    def _detail(self, key):
        self.detail_calls.append(key)
        if self.on_detail is not None:
            self.on_detail(key)
        script = self.detail_script.get(key)
        if script:
            item = script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if key in self.no_category:
            return FakeResponse(200, category_body(None))
        return FakeResponse(200, category_body(f"Category {key}"))


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_item(item_id: str, due: date, status: str = "EM_ABERTO", total=120, pago=0, **extra) -> dict:
    return {
        "id": item_id,
        "descricao": f"Item {item_id}",
        "data_vencimento": due.isoformat(),
        "status_traduzido": status,
        "total": total,
        "pago": pago,
        **extra,
    }


def make_items(prefix: str, count: int, start: date) -> list[dict]:
    return [make_item(f"{prefix}-{i:03d}", start + timedelta(days=i)) for i in range(count)]


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    with factory() as session:
        yield session


@pytest.fixture
def school_row(db):
    row = School(name="Escola Bloom", slug="escola-bloom", code="EB01")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_session():
    return FakeContaAzulSession()


@pytest.fixture
def client(fake_session, clock):
    return ContaAzulClient(
        base_url="https://api.test",
        auth_url="https://auth.test/oauth2/token",
        timeout=5,
        session=fake_session,
        sleep=clock.sleep,
    )


@pytest.fixture
def transport_error():
    return requests.ConnectionError("connection reset")


@pytest.fixture
def response():
    """Build a fake HTTP response: ``response(429)``, ``response(200, {...})``."""
    return FakeResponse


@pytest.fixture
def category():
    return category_body


@pytest.fixture
def items():
    """``items("r", 120, date(2025, 4, 1))`` → 120 open items with distinct due dates."""
    return make_items


@pytest.fixture
def item():
    return make_item
