"""Consultas agregadas dos painéis (dashboard e métricas)"""
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo
from sqlmodel import Session, select, func
from imobcrm.config import settings
from imobcrm.models import (
    Lead, Visita, VisitaStatus, Proposta, PropostaStatus,
    FunilEtapa, LeadFunil, LeadInteracao, Usuario, Imovel, Temperatura
)

DASHBOARD_STALE_SECONDS = 60


def local_now() -> datetime:
    """Agora no fuso do calendário, sem tzinfo (mesma base de visitas.data_hora)"""
    return datetime.now(ZoneInfo(settings.calendar_timezone)).replace(tzinfo=None)


def _count(session: Session, statement) -> int:
    return session.exec(statement).one() or 0


def get_metrics(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or local_now()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)

    total_leads = _count(session, select(func.count(Lead.id)))
    visitas_hoje = _count(
        session,
        select(func.count(Visita.id)).where(
            Visita.data_hora >= today,
            Visita.data_hora < tomorrow,
            Visita.status == VisitaStatus.AGENDADA,
        )
    )
    propostas_analise = _count(
        session, select(func.count(Proposta.id)).where(Proposta.status == PropostaStatus.EM_ANALISE)
    )
    propostas_aprovadas = _count(
        session, select(func.count(Proposta.id)).where(Proposta.status == PropostaStatus.APROVADA)
    )
    taxa_conversao = round(propostas_aprovadas / total_leads * 100, 1) if total_leads > 0 else 0.0

    por_origem = session.exec(
        select(Lead.origem, func.count(Lead.id)).group_by(Lead.origem)
    ).all()

    return {
        "totalLeads": total_leads,
        "visitasHoje": visitas_hoje,
        "propostasAnalise": propostas_analise,
        "taxaConversao": taxa_conversao,
        "leadsPorOrigem": [{"origem": origem, "total": total} for origem, total in por_origem],
    }


def get_funnel_data(session: Session) -> List[Dict[str, Any]]:
    counts = dict(session.exec(
        select(LeadFunil.etapa_id, func.count(LeadFunil.id)).group_by(LeadFunil.etapa_id)
    ).all())
    etapas = session.exec(select(FunilEtapa).order_by(FunilEtapa.ordem)).all()
    return [
        {"name": etapa.nome, "value": counts.get(etapa.id, 0), "color": etapa.cor}
        for etapa in etapas
    ]


def get_recent_interactions(session: Session, limit: int = 10) -> List[Dict[str, Any]]:
    rows = session.exec(
        select(LeadInteracao, Lead.nome, Usuario.nome)
        .join(Lead, Lead.id == LeadInteracao.lead_id)
        .outerjoin(Usuario, Usuario.id == LeadInteracao.usuario_id)
        .order_by(LeadInteracao.created_at.desc())
        .limit(limit)
    ).all()
    return [
        {
            "id": interacao.id,
            "lead_id": interacao.lead_id,
            "tipo": interacao.tipo.value,
            "descricao": interacao.descricao,
            "created_at": interacao.created_at.isoformat(),
            "lead": {"nome": lead_nome},
            "usuario": {"nome": usuario_nome} if usuario_nome else None,
        }
        for interacao, lead_nome, usuario_nome in rows
    ]


def get_leads_evolution(session: Session, now: Optional[datetime] = None, days: int = 30) -> List[Dict[str, Any]]:
    """Leads criados por dia e temperatura (rótulo dd/mm)"""
    now = now or datetime.utcnow()
    leads = session.exec(
        select(Lead.created_at, Lead.temperatura)
        .where(Lead.created_at >= now - timedelta(days=days))
        .order_by(Lead.created_at)
    ).all()

    grouped: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for created_at, temperatura in leads:
        day = created_at.strftime("%d/%m")
        counts = grouped.setdefault(day, {"hot": 0, "warm": 0, "cold": 0, "total": 0})
        counts[Temperatura(temperatura).value] += 1
        counts["total"] += 1

    return [
        {"name": day, "Quentes": c["hot"], "Mornos": c["warm"], "Frios": c["cold"], "Total": c["total"]}
        for day, c in grouped.items()
    ]


def get_visits_chart(session: Session, now: Optional[datetime] = None, days: int = 7) -> List[Dict[str, Any]]:
    now = now or local_now()
    visitas = session.exec(
        select(Visita.data_hora, Visita.status)
        .where(Visita.data_hora >= now - timedelta(days=days))
        .order_by(Visita.data_hora)
    ).all()

    grouped: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for data_hora, visita_status in visitas:
        counts = grouped.setdefault(
            data_hora.strftime("%d/%m"), {s.value: 0 for s in VisitaStatus}
        )
        counts[VisitaStatus(visita_status).value] += 1

    return [{"name": day, **counts} for day, counts in grouped.items()]


PROPOSTA_STATUS_LABELS = {
    PropostaStatus.ENVIADA: "Enviada",
    PropostaStatus.EM_ANALISE: "Em Análise",
    PropostaStatus.APROVADA: "Aprovada",
    PropostaStatus.RECUSADA: "Recusada",
}


def get_propostas_por_status(session: Session) -> List[Dict[str, Any]]:
    rows = session.exec(
        select(Proposta.status, func.count(Proposta.id)).group_by(Proposta.status)
    ).all()
    return [
        {"name": PROPOSTA_STATUS_LABELS[PropostaStatus(s)], "valor": total}
        for s, total in rows
    ]


def get_imoveis_por_tipo(session: Session) -> List[Dict[str, Any]]:
    rows = session.exec(
        select(Imovel.tipo, func.count(Imovel.id)).group_by(Imovel.tipo)
    ).all()
    return [{"name": tipo, "value": total} for tipo, total in rows]
