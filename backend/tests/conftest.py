"""
Fixtures compartilhadas: banco SQLite em memória, cliente HTTP da API e
um Google falso (httpx.MockTransport) para OAuth e Calendar.
"""
import json
import os
from datetime import datetime, timedelta
from urllib.parse import parse_qs

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "imobcrm-test-encryption-key")
os.environ.setdefault("GOOGLE_CALENDAR_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CALENDAR_CLIENT_SECRET", "test-client-secret")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from imobcrm.database import get_session, seed_funil_etapas
from imobcrm.main import app
from imobcrm.models import FunilEtapa, GoogleCalendarToken, Lead, Usuario
from imobcrm.services.authorization_flow import AuthorizationRegistry
from imobcrm.services.encryption_service import encrypt_token
from imobcrm.services.google_calendar_client import GoogleCalendarClient
from imobcrm.services.query_cache import QueryCache


class FakeGoogle:
    """Responde como os endpoints OAuth2/Calendar do Google e registra as chamadas"""

    def __init__(self):
        self.requests = []
        self.events = []
        self.fail_list = False
        self.fail_watch = False
        self.next_event_id = 1
        self.token_response = {
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 3600,
        }

    def calls(self, method, suffix=""):
        return [r for r in self.requests if r["method"] == method and r["path"].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = request.content.decode() if request.content else ""
        entry = {"method": request.method, "path": request.url.path, "params": dict(request.url.params)}
        if request.url.host == "oauth2.googleapis.com":
            entry["form"] = {k: v[0] for k, v in parse_qs(body).items()}
        elif body:
            entry["json"] = json.loads(body)
        self.requests.append(entry)

        path = request.url.path
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json=self.token_response)

        if path.endswith("/events/watch"):
            if self.fail_watch:
                return httpx.Response(400, json={"error": {"message": "watch not allowed"}})
            return httpx.Response(200, json={
                "id": entry["json"]["id"],
                "resourceId": "resource-1",
                "expiration": "1900000000000",
            })

        if path.endswith("/calendars/primary/events"):
            if request.method == "POST":
                event_id = f"evt-{self.next_event_id}"
                self.next_event_id += 1
                return httpx.Response(200, json={"id": event_id, **entry["json"]})
            if self.fail_list:
                return httpx.Response(500, json={"error": {"message": "backend error"}})
            return httpx.Response(200, json={"items": self.events})

        if request.method == "PUT":
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], **entry["json"]})
        if request.method == "DELETE":
            return httpx.Response(204)

        return httpx.Response(404, json={"error": {"message": "not found"}})


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        seed_funil_etapas(session)
        yield session


@pytest.fixture
def etapas(session):
    return session.exec(select(FunilEtapa).order_by(FunilEtapa.ordem)).all()


@pytest.fixture
def cache():
    return QueryCache()


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def calendar_client(google):
    return GoogleCalendarClient(
        transport=httpx.MockTransport(google.handler),
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://localhost:8000/api/google-calendar/callback",
    )


@pytest.fixture
def client(session, cache, calendar_client):
    app.dependency_overrides[get_session] = lambda: session
    app.state.query_cache = cache
    app.state.calendar_client = calendar_client
    app.state.authorization_registry = AuthorizationRegistry()
    yield TestClient(app)
    app.dependency_overrides.clear()


def register_and_login(client, email="admin@imob.com", nome="Admin", password="secret123"):
    response = client.post("/api/auth/register", json={"email": email, "password": password, "nome": nome})
    assert response.status_code == 200, response.text
    login = client.post("/api/auth/login", json={"email": email, "password": password})
    assert login.status_code == 200, login.text
    return response.json(), {"Authorization": f"Bearer {login.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    _, headers = register_and_login(client)
    return headers


@pytest.fixture
def usuario(session):
    usuario = Usuario(email="corretor@imob.com", nome="Corretor", hashed_password="x")
    session.add(usuario)
    session.commit()
    session.refresh(usuario)
    return usuario


@pytest.fixture
def make_lead(session):
    def _make(nome="Maria Silva", **kwargs):
        lead = Lead(nome=nome, telefone=kwargs.pop("telefone", "11999990000"), **kwargs)
        session.add(lead)
        session.commit()
        session.refresh(lead)
        return lead
    return _make


@pytest.fixture
def connected_token(session, usuario):
    """Tokens válidos por mais 1h para o usuário"""
    row = GoogleCalendarToken(
        user_id=usuario.id,
        access_token=encrypt_token("access-1"),
        refresh_token=encrypt_token("refresh-1"),
        token_expiry=datetime.utcnow() + timedelta(hours=1),
        webhook_channel_id="channel-1",
        webhook_resource_id="resource-1",
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row
