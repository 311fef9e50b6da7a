from datetime import datetime

from sqlmodel import select

from conftest import register_and_login
from imobcrm.models import LeadFunil, LeadInteracao, Proposta, PropostaStatus, Visita, VisitaStatus
from imobcrm.services import dashboard_service
from imobcrm.services import query_cache as qc


def create_lead(client, headers, **overrides):
    payload = {"nome": "Carlos Souza", "telefone": "11988887777", "origem": "portal", **overrides}
    response = client.post("/api/leads", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_first_user_is_admin_and_next_is_corretor(client):
    admin, _ = register_and_login(client)
    corretor, headers = register_and_login(client, email="corretor@imob.com", nome="Corretor")

    assert admin["role"] == "admin"
    assert corretor["role"] == "corretor"
    assert client.get("/api/auth/me", headers=headers).json()["email"] == "corretor@imob.com"


def test_duplicate_registration_and_bad_login(client):
    register_and_login(client)

    duplicate = client.post(
        "/api/auth/register", json={"email": "admin@imob.com", "password": "secret123", "nome": "X"}
    )
    assert duplicate.status_code == 400
    bad = client.post("/api/auth/login", json={"email": "admin@imob.com", "password": "errada"})
    assert bad.status_code == 401


def test_protected_routes_require_token(client):
    assert client.get("/api/leads").status_code == 401


def test_create_lead_logs_interaction_and_enters_first_stage(client, auth_headers, session, etapas):
    lead = create_lead(client, auth_headers)

    interacoes = session.exec(select(LeadInteracao).where(LeadInteracao.lead_id == lead["id"])).all()
    assert [i.descricao for i in interacoes] == ["Lead criado no sistema"]
    membership = session.exec(select(LeadFunil).where(LeadFunil.lead_id == lead["id"])).one()
    assert membership.etapa_id == etapas[0].id


def test_create_lead_validation(client, auth_headers):
    response = client.post(
        "/api/leads", json={"nome": "  ", "telefone": "123", "origem": "site"}, headers=auth_headers
    )

    assert response.status_code == 422


def test_lead_list_is_served_from_cache_until_invalidated(client, auth_headers, cache):
    create_lead(client, auth_headers, nome="Primeiro")
    assert len(client.get("/api/leads", headers=auth_headers).json()) == 1
    assert cache.get_query_data(qc.LEADS) is not None

    create_lead(client, auth_headers, nome="Segundo")

    assert cache.get_query_data(qc.LEADS) is None
    nomes = [lead["nome"] for lead in client.get("/api/leads", headers=auth_headers).json()]
    assert sorted(nomes) == ["Primeiro", "Segundo"]


def test_move_lead_through_api(client, auth_headers, etapas):
    lead = create_lead(client, auth_headers)

    moved = client.post(
        "/api/funil/move", json={"lead_id": lead["id"], "etapa_id": etapas[2].id}, headers=auth_headers
    )
    assert moved.status_code == 200, moved.text
    assert moved.json()["moved"] is True

    again = client.post(
        "/api/funil/move", json={"lead_id": lead["id"], "etapa_id": etapas[2].id}, headers=auth_headers
    )
    assert again.json()["moved"] is False

    board = client.get("/api/funil/board", headers=auth_headers).json()
    column = next(c for c in board if c["etapa"]["id"] == etapas[2].id)
    assert [card["lead_id"] for card in column["leads"]] == [lead["id"]]


def test_move_with_missing_ids_is_bad_request(client, auth_headers):
    response = client.post("/api/funil/move", json={"lead_id": "abc"}, headers=auth_headers)

    assert response.status_code == 400
    assert "obrigatórios" in response.json()["detail"]


def test_funnel_sync_endpoint(client, auth_headers, make_lead):
    make_lead(nome="Fora do funil")

    first = client.post("/api/funil/sync", headers=auth_headers).json()
    second = client.post("/api/funil/sync", headers=auth_headers).json()

    assert first["synced"] == 1
    assert second == {"synced": 0, "message": "Todos os leads já estão no funil"}


def test_etapa_in_use_cannot_be_deleted(client, auth_headers, etapas):
    create_lead(client, auth_headers)

    response = client.delete(f"/api/funil/etapas/{etapas[0].id}", headers=auth_headers)

    assert response.status_code == 400


def test_create_visita_logs_interaction(client, auth_headers, session):
    lead = create_lead(client, auth_headers)

    response = client.post(
        "/api/visitas",
        json={"lead_id": lead["id"], "data_hora": "2024-06-01T10:00:00", "duracao": 60},
        headers=auth_headers,
    )

    assert response.status_code == 201, response.text
    assert response.json()["lead_nome"] == "Carlos Souza"
    descricoes = [
        i.descricao for i in session.exec(
            select(LeadInteracao).where(LeadInteracao.lead_id == lead["id"])
        ).all()
    ]
    assert "Visita agendada para 01/06/2024, 10:00:00" in descricoes


def test_create_visita_pushes_event_when_calendar_connected(client, session, google, auth_headers):
    connect = client.post("/api/google-calendar/exchange", json={"code": "abc"}, headers=auth_headers)
    assert connect.json()["connected"] is True
    lead = create_lead(client, auth_headers)

    visita = client.post(
        "/api/visitas",
        json={"lead_id": lead["id"], "data_hora": "2024-06-01T10:00:00"},
        headers=auth_headers,
    ).json()

    [created] = google.calls("POST", "/calendars/primary/events")
    assert created["json"]["summary"] == "Visita: Carlos Souza - Imóvel"

    deleted = client.delete(f"/api/visitas/{visita['id']}", headers=auth_headers)
    assert deleted.status_code == 200
    assert len(google.calls("DELETE", "/events/evt-1")) == 1
    assert session.get(Visita, visita["id"]) is None


def test_create_proposta_formats_value(client, auth_headers, session):
    lead = create_lead(client, auth_headers)

    response = client.post(
        "/api/propostas", json={"lead_id": lead["id"], "valor": 1234.56}, headers=auth_headers
    )

    assert response.status_code == 201, response.text
    proposta = response.json()
    assert proposta["codigo"].startswith("PROP-")
    assert proposta["status"] == "enviada"
    descricoes = [i.descricao for i in session.exec(select(LeadInteracao)).all()]
    assert f"Proposta {proposta['codigo']} criada no valor de R$ 1.234,56" in descricoes


def test_lead_with_proposta_cannot_be_deleted(client, auth_headers):
    lead = create_lead(client, auth_headers)
    client.post("/api/propostas", json={"lead_id": lead["id"], "valor": 500000}, headers=auth_headers)

    response = client.delete(f"/api/leads/{lead['id']}", headers=auth_headers)

    assert response.status_code == 400


def test_delete_lead_removes_membership(client, auth_headers, session):
    lead = create_lead(client, auth_headers)

    response = client.delete(f"/api/leads/{lead['id']}", headers=auth_headers)

    assert response.status_code == 200
    assert session.exec(select(LeadFunil)).all() == []
    assert client.get(f"/api/leads/{lead['id']}", headers=auth_headers).status_code == 404


def test_dashboard_metrics(session, make_lead):
    now = datetime(2024, 6, 1, 9, 0, 0)
    lead = make_lead(origem="portal")
    make_lead(nome="Outro", origem="site")
    session.add(Visita(lead_id=lead.id, data_hora=datetime(2024, 6, 1, 15, 0, 0)))
    session.add(Visita(lead_id=lead.id, data_hora=datetime(2024, 6, 1, 16, 0, 0), status=VisitaStatus.CANCELADA))
    session.add(Visita(lead_id=lead.id, data_hora=datetime(2024, 6, 2, 10, 0, 0)))
    session.add(Proposta(codigo="PROP-1", lead_id=lead.id, valor=1000, status=PropostaStatus.EM_ANALISE))
    session.add(Proposta(codigo="PROP-2", lead_id=lead.id, valor=2000, status=PropostaStatus.APROVADA))
    session.commit()

    metrics = dashboard_service.get_metrics(session, now=now)

    assert metrics["totalLeads"] == 2
    assert metrics["visitasHoje"] == 1
    assert metrics["propostasAnalise"] == 1
    assert metrics["taxaConversao"] == 50.0
    assert sorted(metrics["leadsPorOrigem"], key=lambda o: o["origem"]) == [
        {"origem": "portal", "total": 1},
        {"origem": "site", "total": 1},
    ]


def test_dashboard_metrics_without_leads(session):
    assert dashboard_service.get_metrics(session, now=datetime(2024, 6, 1))["taxaConversao"] == 0.0


def test_invite_is_admin_only(client, auth_headers):
    _, corretor_headers = register_and_login(client, email="corretor@imob.com", nome="Corretor")
    invite = {"email": "novo@imob.com", "nome": "Novo", "role": "assistente"}

    assert client.post("/api/usuarios/invite", json=invite, headers=corretor_headers).status_code == 403
    response = client.post("/api/usuarios/invite", json=invite, headers=auth_headers)
    assert response.status_code == 201
    assert response.json()["role"] == "assistente"


def test_admin_changes_role(client, auth_headers):
    corretor, _ = register_and_login(client, email="corretor@imob.com", nome="Corretor")

    response = client.put(
        f"/api/usuarios/{corretor['id']}/role", json={"role": "admin"}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["role"] == "admin"


def test_cep_lookup_rejects_invalid_cep(client, auth_headers):
    response = client.get("/api/imoveis/cep/123", headers=auth_headers)

    assert response.status_code == 400


def test_webhook_sync_state_is_acknowledged(client):
    response = client.post(
        "/api/google-calendar/webhook",
        headers={"X-Goog-Channel-ID": "channel-1", "X-Goog-Resource-State": "sync"},
    )

    assert response.status_code == 200


def test_oauth_callback_completes_pending_flow(client, auth_headers, google):
    started = client.post("/api/google-calendar/connect", headers=auth_headers)
    assert started.status_code == 200, started.text
    state = started.json()["state"]
    assert "access_type=offline" in started.json()["authUrl"]

    page = client.get("/api/google-calendar/callback", params={"code": "code-xyz", "state": state})
    assert page.status_code == 200
    assert "google-calendar-code" in page.text

    connected = client.post(f"/api/google-calendar/connect/{state}/wait", headers=auth_headers)
    assert connected.status_code == 200, connected.text
    assert connected.json()["connected"] is True
    [token_call] = google.calls("POST", "/token")
    assert token_call["form"]["code"] == "code-xyz"

    status = client.get("/api/google-calendar/status", headers=auth_headers).json()
    assert status["connected"] is True


def test_oauth_cancelled_flow(client, auth_headers):
    state = client.post("/api/google-calendar/connect", headers=auth_headers).json()["state"]

    assert client.post(f"/api/google-calendar/connect/{state}/cancel", headers=auth_headers).json() == {
        "cancelled": True, "state": "cancelled"
    }
    response = client.post(f"/api/google-calendar/connect/{state}/wait", headers=auth_headers)
    assert response.status_code == 404


def test_cancelled_flows_are_removed_from_registry(client, auth_headers):
    registry = client.app.state.authorization_registry

    for _ in range(3):
        state = client.post("/api/google-calendar/connect", headers=auth_headers).json()["state"]
        client.post(f"/api/google-calendar/connect/{state}/cancel", headers=auth_headers)

    assert len(registry) == 0


def test_wait_after_callback_error_reports_provider_error(client, auth_headers):
    registry = client.app.state.authorization_registry
    state = client.post("/api/google-calendar/connect", headers=auth_headers).json()["state"]
    client.get("/api/google-calendar/callback", params={"error": "access_denied", "state": state})

    response = client.post(f"/api/google-calendar/connect/{state}/wait", headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "access_denied"
    assert len(registry) == 0


def test_visita_with_utc_offset_is_stored_in_calendar_time(client, auth_headers, session, google):
    client.post("/api/google-calendar/exchange", json={"code": "abc"}, headers=auth_headers)
    lead = create_lead(client, auth_headers)

    response = client.post(
        "/api/visitas",
        json={"lead_id": lead["id"], "data_hora": "2024-06-01T13:00:00Z", "duracao": 60},
        headers=auth_headers,
    )

    assert response.status_code == 201, response.text
    assert session.get(Visita, response.json()["id"]).data_hora == datetime(2024, 6, 1, 10, 0, 0)
    [created] = google.calls("POST", "/calendars/primary/events")
    assert created["json"]["start"]["dateTime"] == "2024-06-01T10:00:00"
    assert created["json"]["end"]["dateTime"] == "2024-06-01T11:00:00"

    moved = client.put(
        f"/api/visitas/{response.json()['id']}",
        json={"data_hora": "2024-06-01T17:30:00+00:00"},
        headers=auth_headers,
    )
    assert moved.json()["data_hora"] == "2024-06-01T14:30:00"


def test_visita_date_filters_accept_utc_offsets(client, auth_headers):
    lead = create_lead(client, auth_headers)
    client.post(
        "/api/visitas", json={"lead_id": lead["id"], "data_hora": "2024-06-01T22:30:00"}, headers=auth_headers
    )

    # 2024-06-02T00:00Z é 21:00 de 01/06 em São Paulo
    inside = client.get(
        "/api/visitas", params={"data_inicio": "2024-06-02T00:00:00Z"}, headers=auth_headers
    ).json()
    outside = client.get(
        "/api/visitas", params={"data_inicio": "2024-06-02T03:00:00Z"}, headers=auth_headers
    ).json()

    assert len(inside) == 1
    assert outside == []


def test_manual_sync_requires_connection(client, auth_headers):
    response = client.post(
        "/api/google-calendar/sync", json={"action": "create", "visita_id": "x"}, headers=auth_headers
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Google Calendar not connected"
