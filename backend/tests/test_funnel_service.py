import asyncio
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from imobcrm.models import AtividadeSistema, LeadFunil, LeadInteracao
from imobcrm.services import funnel_service
from imobcrm.services import query_cache as qc
from imobcrm.services.funnel_service import (
    FunnelError, build_board, load_leads_funil, move_lead_to_stage, sync_leads_to_funnel
)


def memberships(session, lead_id):
    return session.exec(select(LeadFunil).where(LeadFunil.lead_id == lead_id)).all()


def place(session, lead, etapa, when=None):
    membership = LeadFunil(lead_id=lead.id, etapa_id=etapa.id, data_entrada=when or datetime.utcnow())
    session.add(membership)
    session.commit()
    return membership


def warm_cache(session, cache):
    asyncio.run(cache.fetch_query(qc.LEADS_FUNIL, lambda: load_leads_funil(session)))


def test_move_to_current_stage_is_a_noop(session, cache, etapas, make_lead):
    lead = make_lead()
    original = place(session, lead, etapas[0])
    warm_cache(session, cache)

    result = asyncio.run(move_lead_to_stage(session, cache, lead.id, etapas[0].id))

    assert result is None
    rows = memberships(session, lead.id)
    assert [r.id for r in rows] == [original.id]
    assert session.exec(select(LeadInteracao)).all() == []
    assert cache.get_query_data(qc.LEADS_FUNIL) is not None


def test_move_a_to_c_replaces_membership_and_logs_side_effects(session, cache, etapas, make_lead, usuario):
    lead = make_lead(nome="João")
    place(session, lead, etapas[0])
    warm_cache(session, cache)
    now = datetime(2024, 6, 1, 12, 0, 0)

    membership = asyncio.run(
        move_lead_to_stage(session, cache, lead.id, etapas[2].id, usuario_id=usuario.id, now=now)
    )

    rows = memberships(session, lead.id)
    assert len(rows) == 1
    assert rows[0].id == membership.id
    assert rows[0].etapa_id == etapas[2].id
    assert rows[0].data_entrada == now

    interacoes = session.exec(select(LeadInteracao).where(LeadInteracao.lead_id == lead.id)).all()
    assert [i.descricao for i in interacoes] == ["Lead movido no funil"]

    atividades = session.exec(select(AtividadeSistema)).all()
    assert len(atividades) == 1
    assert atividades[0].tipo == "etapa_alterada"
    assert atividades[0].titulo == f"João movido para {etapas[2].nome}"
    assert etapas[2].nome in atividades[0].metadata_json

    session.refresh(lead)
    assert lead.ultimo_contato == now

    # caches afetados foram invalidados
    assert cache.get_query_data(qc.LEADS_FUNIL) is None


def test_failed_replace_restores_cache_snapshot(session, cache, etapas, make_lead, monkeypatch):
    lead = make_lead()
    place(session, lead, etapas[0])
    warm_cache(session, cache)
    snapshot = cache.get_query_data(qc.LEADS_FUNIL)

    seen_during_write = []

    def boom(*args, **kwargs):
        seen_during_write.append(cache.get_query_data(qc.LEADS_FUNIL))
        raise FunnelError("Erro ao adicionar lead ao funil: conexão perdida")

    monkeypatch.setattr(funnel_service, "replace_membership", boom)

    with pytest.raises(FunnelError, match="conexão perdida"):
        asyncio.run(move_lead_to_stage(session, cache, lead.id, etapas[3].id))

    # durante a escrita o cache já mostrava a etapa de destino
    [optimistic] = seen_during_write
    assert [row["etapa_id"] for row in optimistic if row["lead_id"] == lead.id] == [etapas[3].id]
    assert cache.get_query_data(qc.LEADS_FUNIL) == snapshot
    assert memberships(session, lead.id)[0].etapa_id == etapas[0].id


def test_unknown_stage_fails_and_rolls_back(session, cache, etapas, make_lead):
    lead = make_lead()
    place(session, lead, etapas[0])
    warm_cache(session, cache)
    snapshot = cache.get_query_data(qc.LEADS_FUNIL)

    with pytest.raises(FunnelError, match="Etapa não encontrada"):
        asyncio.run(move_lead_to_stage(session, cache, lead.id, "etapa-inexistente"))

    assert cache.get_query_data(qc.LEADS_FUNIL) == snapshot


@pytest.mark.parametrize("lead_id, etapa_id", [("", "x"), ("x", None), (None, None), (123, "x")])
def test_move_rejects_invalid_ids(session, cache, lead_id, etapa_id):
    with pytest.raises(ValueError):
        asyncio.run(move_lead_to_stage(session, cache, lead_id, etapa_id))


def test_sync_leads_to_funnel_is_idempotent(session, etapas, make_lead):
    in_funnel = make_lead(nome="Já no funil")
    place(session, in_funnel, etapas[4])
    make_lead(nome="Novo 1")
    make_lead(nome="Novo 2")

    assert sync_leads_to_funnel(session) == {"synced": 2}
    assert sync_leads_to_funnel(session) == {"synced": 0}

    rows = session.exec(select(LeadFunil)).all()
    assert len(rows) == 3
    assert memberships(session, in_funnel.id)[0].etapa_id == etapas[4].id
    assert {r.etapa_id for r in rows if r.lead_id != in_funnel.id} == {etapas[0].id}


def test_sync_without_stages_fails(session, make_lead):
    for etapa in session.exec(select(funnel_service.FunilEtapa)).all():
        session.delete(etapa)
    session.commit()
    make_lead()

    with pytest.raises(FunnelError, match="Nenhuma etapa de funil cadastrada"):
        sync_leads_to_funnel(session)


def test_build_board_groups_by_stage_with_idle_days(session, etapas, make_lead):
    now = datetime(2024, 6, 10, 12, 0, 0)
    place(session, make_lead(nome="A"), etapas[0], when=now - timedelta(days=4))
    place(session, make_lead(nome="B"), etapas[0], when=now - timedelta(days=2))
    place(session, make_lead(nome="C", finalizado=True), etapas[1], when=now)

    board = build_board(etapas, load_leads_funil(session), now=now)

    assert [c["etapa"]["nome"] for c in board] == [e.nome for e in etapas]
    first = board[0]
    assert first["total"] == 2
    assert sorted(card["dias_parado"] for card in first["leads"]) == [2, 4]
    assert first["tempo_medio_dias"] == 3
    # lead finalizado não aparece no kanban
    assert board[1]["total"] == 0
