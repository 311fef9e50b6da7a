"""
Fluxo de movimentação de leads no funil (kanban).

A movimentação segue o padrão de atualização otimista:

1. cancela leituras em andamento de ``leads_funil`` e tira um snapshot;
2. reescreve no cache a etapa do lead arrastado;
3. troca a linha de ``lead_funil`` no banco (delete + insert na mesma transação);
4. registra interação, atividade e último contato (best-effort);
5. em caso de falha no passo 3 restaura o snapshot, senão invalida os caches.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlmodel import Session, select
from imobcrm.models import (
    Lead, LeadFunil, FunilEtapa, LeadResponse, InteracaoTipo
)
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.activity_service import safe_log_interaction, safe_log_activity

logger = logging.getLogger(__name__)

MOVE_INVALIDATES = (qc.LEADS_FUNIL, qc.LEADS, qc.DASHBOARD_METRICS, qc.ATIVIDADES_SISTEMA)


class FunnelError(Exception):
    """Falha no caminho principal de uma operação do funil"""


def get_first_etapa(session: Session) -> Optional[FunilEtapa]:
    return session.exec(
        select(FunilEtapa).order_by(FunilEtapa.ordem).limit(1)
    ).first()


def get_membership(session: Session, lead_id: str) -> Optional[LeadFunil]:
    return session.exec(
        select(LeadFunil).where(LeadFunil.lead_id == lead_id)
    ).first()


def add_lead_to_first_stage(session: Session, lead_id: str) -> Optional[LeadFunil]:
    """Coloca um lead recém-criado na primeira etapa (best-effort)"""
    try:
        etapa = get_first_etapa(session)
        if not etapa:
            logger.warning("⚠️ Nenhuma etapa de funil cadastrada; lead criado fora do funil")
            return None
        membership = LeadFunil(lead_id=lead_id, etapa_id=etapa.id, data_entrada=datetime.utcnow())
        session.add(membership)
        session.commit()
        session.refresh(membership)
        return membership
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Erro ao adicionar lead {lead_id} ao funil: {e}")
        return None


def membership_to_row(membership: LeadFunil, lead: Lead) -> Dict[str, Any]:
    """Linha do board no formato guardado no cache ``leads_funil``"""
    return {
        "id": membership.id,
        "lead_id": membership.lead_id,
        "etapa_id": membership.etapa_id,
        "data_entrada": membership.data_entrada.isoformat(),
        "lead": LeadResponse.model_validate(lead).model_dump(mode="json"),
    }


def load_leads_funil(session: Session) -> List[Dict[str, Any]]:
    """Memberships de leads não finalizados, mais recentes primeiro"""
    rows = session.exec(
        select(LeadFunil, Lead)
        .join(Lead, Lead.id == LeadFunil.lead_id)
        .where(Lead.finalizado == False)  # noqa: E712
        .order_by(LeadFunil.data_entrada.desc())
    ).all()
    return [membership_to_row(membership, lead) for membership, lead in rows]


def _days_since(iso_value: str, now: datetime) -> int:
    return (now - datetime.fromisoformat(iso_value)).days


def build_board(
    etapas: List[FunilEtapa],
    rows: List[Dict[str, Any]],
    now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """Agrupa as linhas por etapa, com tempo médio (dias) na etapa"""
    now = now or datetime.utcnow()
    columns = []
    for etapa in etapas:
        cards = []
        for row in rows:
            if row["etapa_id"] != etapa.id:
                continue
            cards.append({**row, "dias_parado": _days_since(row["data_entrada"], now)})

        tempo_medio = round(sum(c["dias_parado"] for c in cards) / len(cards)) if cards else 0
        columns.append({
            "etapa": {"id": etapa.id, "nome": etapa.nome, "ordem": etapa.ordem, "cor": etapa.cor},
            "leads": cards,
            "total": len(cards),
            "tempo_medio_dias": tempo_medio,
        })
    return columns


def validate_move_input(lead_id: Any, etapa_id: Any) -> None:
    if not lead_id or not etapa_id:
        raise ValueError("Lead ID e Etapa ID são obrigatórios")
    if not isinstance(lead_id, str) or not isinstance(etapa_id, str):
        raise ValueError("Lead ID e Etapa ID devem ser strings válidas")


def current_etapa_id(session: Session, cache: QueryCache, lead_id: str) -> Optional[str]:
    cached = cache.get_query_data(qc.LEADS_FUNIL)
    if cached is not None:
        for row in cached:
            if row["lead_id"] == lead_id:
                return row["etapa_id"]
    membership = get_membership(session, lead_id)
    return membership.etapa_id if membership else None


def replace_membership(session: Session, lead_id: str, etapa_id: str, now: datetime) -> LeadFunil:
    """Passos 1 e 2: remove a etapa atual e insere a nova, numa única transação"""
    try:
        for existing in session.exec(select(LeadFunil).where(LeadFunil.lead_id == lead_id)).all():
            session.delete(existing)
        session.flush()
    except Exception as e:
        session.rollback()
        logger.error(f"Erro ao deletar lead_funil do lead {lead_id}: {e}")
        raise FunnelError(f"Erro ao remover lead do funil: {e}") from e

    membership = LeadFunil(lead_id=lead_id, etapa_id=etapa_id, data_entrada=now)
    try:
        session.add(membership)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(
            f"Erro ao inserir lead_funil: {e} "
            f"(payload: lead_id={lead_id}, etapa_id={etapa_id}, data_entrada={now.isoformat()})"
        )
        raise FunnelError(f"Erro ao adicionar lead ao funil: {e}") from e

    session.refresh(membership)
    return membership


def apply_move_side_effects(
    session: Session,
    lead: Lead,
    etapa: FunilEtapa,
    now: datetime,
    usuario_id: Optional[str] = None
) -> None:
    """Passos 3 a 5: nenhuma falha aqui desfaz a movimentação"""
    interacao = safe_log_interaction(
        session, lead.id, "Lead movido no funil",
        tipo=InteracaoTipo.OBSERVACAO, usuario_id=usuario_id
    )
    if interacao is None:
        logger.warning("Falha ao registrar interação, mas lead foi movido com sucesso")

    atividade = safe_log_activity(
        session,
        "etapa_alterada",
        f"{lead.nome or 'Lead'} movido para {etapa.nome}",
        descricao="Lead avançou no funil de vendas",
        lead_id=lead.id,
        usuario_id=usuario_id,
        metadata={"etapa_nova": etapa.nome},
    )
    if atividade is None:
        logger.warning("Falha ao registrar atividade, mas lead foi movido com sucesso")

    try:
        lead.ultimo_contato = now
        lead.updated_at = now
        session.add(lead)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Erro ao atualizar último contato do lead {lead.id}: {e}")
        logger.warning("Falha ao atualizar último contato, mas lead foi movido com sucesso")


def move_lead_backend(
    session: Session,
    lead_id: str,
    etapa_id: str,
    now: datetime,
    usuario_id: Optional[str] = None
) -> LeadFunil:
    lead = session.get(Lead, lead_id)
    if not lead:
        raise FunnelError("Lead não encontrado")
    etapa = session.get(FunilEtapa, etapa_id)
    if not etapa:
        raise FunnelError("Etapa não encontrada")

    membership = replace_membership(session, lead_id, etapa_id, now)
    apply_move_side_effects(session, lead, etapa, now, usuario_id=usuario_id)
    return membership


async def move_lead_to_stage(
    session: Session,
    cache: QueryCache,
    lead_id: str,
    etapa_id: str,
    usuario_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[LeadFunil]:
    """
    Move o lead para outra etapa com atualização otimista do cache.

    Returns:
        A nova linha de lead_funil, ou None quando o lead já está na etapa.

    Raises:
        ValueError: ids ausentes ou inválidos.
        FunnelError: a troca de etapa falhou (o cache foi restaurado).
    """
    validate_move_input(lead_id, etapa_id)

    if current_etapa_id(session, cache, lead_id) == etapa_id:
        logger.info(f"Lead {lead_id} já está na etapa {etapa_id}; nada a fazer")
        return None

    now = now or datetime.utcnow()

    # Cancelar leituras em andamento para não sobrescrever a atualização otimista
    await cache.cancel_queries(qc.LEADS_FUNIL)
    previous = cache.get_query_data(qc.LEADS_FUNIL)

    def _optimistic(old):
        if old is None:
            return old
        return [
            {**row, "etapa_id": etapa_id, "data_entrada": now.isoformat()}
            if row["lead_id"] == lead_id else row
            for row in old
        ]

    cache.set_query_data(qc.LEADS_FUNIL, _optimistic)

    try:
        membership = move_lead_backend(session, lead_id, etapa_id, now, usuario_id=usuario_id)
    except Exception as e:
        if previous is not None:
            cache.set_query_data(qc.LEADS_FUNIL, previous)
        logger.error(f"Erro completo ao mover lead: {e} (lead_id={lead_id}, etapa_id={etapa_id})")
        if isinstance(e, FunnelError):
            raise
        raise FunnelError(str(e) or "Erro ao mover lead") from e

    cache.invalidate_queries(*MOVE_INVALIDATES)
    return membership


def sync_leads_to_funnel(session: Session) -> Dict[str, int]:
    """Insere na primeira etapa todos os leads que ainda não estão no funil"""
    lead_ids = session.exec(select(Lead.id)).all()
    in_funnel = set(session.exec(select(LeadFunil.lead_id)).all())
    to_add = [lead_id for lead_id in lead_ids if lead_id not in in_funnel]

    if not to_add:
        return {"synced": 0}

    etapa = get_first_etapa(session)
    if not etapa:
        raise FunnelError("Nenhuma etapa de funil cadastrada")

    now = datetime.utcnow()
    session.add_all([
        LeadFunil(lead_id=lead_id, etapa_id=etapa.id, data_entrada=now)
        for lead_id in to_add
    ])
    session.commit()
    logger.info(f"✅ {len(to_add)} lead(s) sincronizado(s) com o funil")
    return {"synced": len(to_add)}
