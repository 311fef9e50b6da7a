from typing import Dict, List
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session, select
from imobcrm.database import get_session
from imobcrm.models import AtividadeSistema, AtividadeSistemaResponse, Usuario
from imobcrm.dependencies import get_current_active_user, get_query_cache
from imobcrm.services import dashboard_service
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.activity_service import parse_metadata
from imobcrm.services.dashboard_service import DASHBOARD_STALE_SECONDS

router = APIRouter()


@router.get("/metrics", response_model=Dict)
async def get_dashboard_metrics(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Cartões do dashboard (atualizados a cada 60s)"""
    return await cache.fetch_query(
        qc.DASHBOARD_METRICS,
        lambda: dashboard_service.get_metrics(session),
        stale_time=DASHBOARD_STALE_SECONDS
    )


@router.get("/funnel")
async def get_funnel_data(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Quantidade de leads por etapa do funil"""
    return await cache.fetch_query(
        qc.FUNNEL_DATA,
        lambda: dashboard_service.get_funnel_data(session),
        stale_time=DASHBOARD_STALE_SECONDS
    )


@router.get("/recent-activities")
async def get_recent_activities(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Últimas 10 interações com nome do lead e do usuário"""
    return await cache.fetch_query(
        qc.RECENT_ACTIVITIES,
        lambda: dashboard_service.get_recent_interactions(session),
        stale_time=DASHBOARD_STALE_SECONDS
    )


@router.get("/atividades", response_model=List[AtividadeSistemaResponse])
async def get_atividades_sistema(
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Feed de atividades do sistema, mais recentes primeiro"""
    def load():
        atividades = session.exec(
            select(AtividadeSistema).order_by(AtividadeSistema.created_at.desc()).limit(200)
        ).all()
        return [
            AtividadeSistemaResponse(
                id=a.id,
                tipo=a.tipo,
                titulo=a.titulo,
                descricao=a.descricao,
                lead_id=a.lead_id,
                usuario_id=a.usuario_id,
                metadata=parse_metadata(a),
                created_at=a.created_at
            ).model_dump(mode="json")
            for a in atividades
        ]

    atividades = await cache.fetch_query(qc.ATIVIDADES_SISTEMA, load)
    return atividades[:limit]


@router.get("/leads-evolution")
async def get_leads_evolution(
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Leads dos últimos 30 dias por dia e temperatura"""
    return dashboard_service.get_leads_evolution(session)


@router.get("/visitas-chart")
async def get_visitas_chart(
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Visitas dos últimos 7 dias por status"""
    return dashboard_service.get_visits_chart(session)


@router.get("/propostas-por-status")
async def get_propostas_por_status(
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return dashboard_service.get_propostas_por_status(session)


@router.get("/imoveis-por-tipo")
async def get_imoveis_por_tipo(
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return dashboard_service.get_imoveis_por_tipo(session)
