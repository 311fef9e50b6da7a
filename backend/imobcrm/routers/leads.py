import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlmodel import Session, select, or_, and_, func
from imobcrm.database import get_session
from imobcrm.models import (
    Lead, LeadCreate, LeadUpdate, LeadResponse, Temperatura, Usuario,
    LeadFunil, LeadInteracao, LeadInteracaoCreate, LeadInteracaoResponse,
    AtividadeSistema, Visita, Proposta
)
from imobcrm.dependencies import get_current_active_user, get_query_cache
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.activity_service import log_interaction, safe_log_interaction
from imobcrm.services.funnel_service import add_lead_to_first_stage

logger = logging.getLogger(__name__)

router = APIRouter()

LEAD_MUTATION_INVALIDATES = (qc.LEADS, qc.LEADS_FUNIL, qc.DASHBOARD_METRICS, qc.FUNNEL_DATA)


def get_lead_or_404(session: Session, lead_id: str) -> Lead:
    lead = session.get(Lead, lead_id)
    if not lead:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Lead não encontrado"
        )
    return lead


@router.post("", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
async def create_lead(
    lead_data: LeadCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Cria o lead, registra a interação inicial e coloca o lead na primeira etapa do funil"""
    lead_dict = lead_data.model_dump()
    if not lead_dict.get("corretor_id"):
        lead_dict["corretor_id"] = current_user.id

    lead = Lead(**lead_dict)
    session.add(lead)
    session.commit()
    session.refresh(lead)
    logger.info(f"✅ Lead criado: {lead.id} ({lead.nome})")

    # Não falhar a operação principal se os efeitos colaterais falharem
    safe_log_interaction(session, lead.id, "Lead criado no sistema", usuario_id=current_user.id)
    add_lead_to_first_stage(session, lead.id)

    cache.invalidate_queries(*LEAD_MUTATION_INVALIDATES)
    session.refresh(lead)
    return lead


@router.get("", response_model=List[LeadResponse])
async def get_leads(
    temperatura: Optional[Temperatura] = Query(None, description="Filter by temperatura"),
    origem: Optional[str] = Query(None, description="Filter by origem"),
    busca: Optional[str] = Query(None, description="Search in nome, email, telefone"),
    finalizado: Optional[bool] = Query(None),
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Leads mais recentes primeiro. Sem filtros a lista é servida pelo cache."""
    filters = []
    if temperatura:
        filters.append(Lead.temperatura == temperatura)
    if origem:
        filters.append(Lead.origem == origem)
    if finalizado is not None:
        filters.append(Lead.finalizado == finalizado)
    if busca:
        filters.append(or_(
            Lead.nome.ilike(f"%{busca}%"),
            Lead.email.ilike(f"%{busca}%"),
            Lead.telefone.ilike(f"%{busca}%")
        ))

    def load():
        query = select(Lead)
        if filters:
            query = query.where(and_(*filters))
        leads = session.exec(query.order_by(Lead.created_at.desc())).all()
        return [LeadResponse.model_validate(lead).model_dump(mode="json") for lead in leads]

    if filters:
        return load()
    return await cache.fetch_query(qc.LEADS, load)


@router.get("/customers", response_model=List[LeadResponse])
async def get_customers(
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Clientes = leads finalizados"""
    return session.exec(
        select(Lead).where(Lead.finalizado == True).order_by(Lead.created_at.desc())  # noqa: E712
    ).all()


@router.get("/{lead_id}", response_model=LeadResponse)
async def get_lead(
    lead_id: str,
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return get_lead_or_404(session, lead_id)


@router.put("/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: str,
    lead_data: LeadUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    lead = get_lead_or_404(session, lead_id)
    for key, value in lead_data.model_dump(exclude_unset=True).items():
        setattr(lead, key, value)
    lead.updated_at = datetime.utcnow()
    session.add(lead)
    session.commit()
    session.refresh(lead)

    cache.invalidate_queries(*LEAD_MUTATION_INVALIDATES)
    return lead


@router.post("/{lead_id}/finalizar", response_model=LeadResponse)
async def finalizar_lead(
    lead_id: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Fecha o lead: ele sai do kanban e passa a constar como cliente"""
    lead = get_lead_or_404(session, lead_id)
    lead.finalizado = True
    lead.updated_at = datetime.utcnow()
    session.add(lead)
    session.commit()
    session.refresh(lead)

    safe_log_interaction(session, lead.id, "Lead finalizado", usuario_id=current_user.id)
    cache.invalidate_queries(*LEAD_MUTATION_INVALIDATES)
    return lead


@router.delete("/{lead_id}")
async def delete_lead(
    lead_id: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Remove o lead, sua etapa no funil e seu histórico de interações"""
    lead = get_lead_or_404(session, lead_id)

    vinculos = session.exec(select(func.count(Visita.id)).where(Visita.lead_id == lead_id)).one()
    vinculos += session.exec(select(func.count(Proposta.id)).where(Proposta.lead_id == lead_id)).one()
    if vinculos:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Lead possui visitas ou propostas vinculadas"
        )

    for membership in session.exec(select(LeadFunil).where(LeadFunil.lead_id == lead_id)).all():
        session.delete(membership)
    for interacao in session.exec(select(LeadInteracao).where(LeadInteracao.lead_id == lead_id)).all():
        session.delete(interacao)
    # O feed de atividades é append-only: só desvincula
    for atividade in session.exec(select(AtividadeSistema).where(AtividadeSistema.lead_id == lead_id)).all():
        atividade.lead_id = None
        session.add(atividade)
    session.flush()
    session.delete(lead)
    session.commit()

    cache.invalidate_queries(*LEAD_MUTATION_INVALIDATES, qc.ATIVIDADES_SISTEMA, qc.RECENT_ACTIVITIES)
    return {"message": "Lead excluído com sucesso"}


@router.get("/{lead_id}/interacoes", response_model=List[LeadInteracaoResponse])
async def get_lead_interacoes(
    lead_id: str,
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Histórico do lead, mais recente primeiro"""
    get_lead_or_404(session, lead_id)
    return session.exec(
        select(LeadInteracao)
        .where(LeadInteracao.lead_id == lead_id)
        .order_by(LeadInteracao.created_at.desc())
    ).all()


@router.post("/{lead_id}/interacoes", response_model=LeadInteracaoResponse, status_code=status.HTTP_201_CREATED)
async def create_lead_interacao(
    lead_id: str,
    interacao_data: LeadInteracaoCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    lead = get_lead_or_404(session, lead_id)
    interacao = log_interaction(
        session, lead_id, interacao_data.descricao,
        tipo=interacao_data.tipo, usuario_id=current_user.id
    )

    lead.ultimo_contato = interacao.created_at
    lead.updated_at = datetime.utcnow()
    session.add(lead)
    session.commit()

    cache.invalidate_queries(qc.LEADS, qc.RECENT_ACTIVITIES)
    return interacao
