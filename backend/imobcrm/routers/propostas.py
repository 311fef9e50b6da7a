import logging
import time
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlmodel import Session, select, and_, or_
from imobcrm.database import get_session
from imobcrm.models import (
    Proposta, PropostaCreate, PropostaUpdate, PropostaResponse, PropostaStatus,
    Lead, Imovel, Usuario, InteracaoTipo
)
from imobcrm.dependencies import get_current_active_user, get_query_cache
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.activity_service import safe_log_interaction

logger = logging.getLogger(__name__)

router = APIRouter()

PROPOSTA_INVALIDATES = (qc.PROPOSTAS, qc.DASHBOARD_METRICS)


def format_currency(value: float) -> str:
    """Valor em BRL (R$ 1.234,56)"""
    return f"R$ {value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


def generate_codigo() -> str:
    return f"PROP-{int(time.time() * 1000)}"


def proposta_to_response(proposta: Proposta) -> PropostaResponse:
    response = PropostaResponse.model_validate(proposta)
    response.lead_nome = proposta.lead.nome if proposta.lead else None
    response.imovel_endereco = proposta.imovel.endereco if proposta.imovel else None
    return response


def get_proposta_or_404(session: Session, proposta_id: str) -> Proposta:
    proposta = session.get(Proposta, proposta_id)
    if not proposta:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Proposta não encontrada"
        )
    return proposta


@router.get("", response_model=List[PropostaResponse])
async def get_propostas(
    status_filter: Optional[PropostaStatus] = Query(None, alias="status"),
    busca: Optional[str] = Query(None, description="Search in codigo and lead nome"),
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Propostas mais recentes primeiro"""
    filters = []
    if status_filter:
        filters.append(Proposta.status == status_filter)
    if busca:
        filters.append(or_(
            Proposta.codigo.ilike(f"%{busca}%"),
            Lead.nome.ilike(f"%{busca}%")
        ))

    def load():
        query = select(Proposta).join(Lead, Lead.id == Proposta.lead_id)
        if filters:
            query = query.where(and_(*filters))
        propostas = session.exec(query.order_by(Proposta.created_at.desc())).all()
        return [proposta_to_response(p).model_dump(mode="json") for p in propostas]

    if filters:
        return load()
    return await cache.fetch_query(qc.PROPOSTAS, load)


@router.post("", response_model=PropostaResponse, status_code=status.HTTP_201_CREATED)
async def create_proposta(
    proposta_data: PropostaCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Cria a proposta com código PROP-<epoch ms> e registra a interação no lead"""
    if not session.get(Lead, proposta_data.lead_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead não encontrado")
    if proposta_data.imovel_id and not session.get(Imovel, proposta_data.imovel_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Imóvel não encontrado")

    proposta = Proposta(**proposta_data.model_dump(), codigo=generate_codigo())
    session.add(proposta)
    session.commit()
    session.refresh(proposta)
    logger.info(f"✅ Proposta {proposta.codigo} criada para o lead {proposta.lead_id}")

    safe_log_interaction(
        session, proposta.lead_id,
        f"Proposta {proposta.codigo} criada no valor de {format_currency(proposta.valor)}",
        tipo=InteracaoTipo.PROPOSTA, usuario_id=current_user.id
    )

    cache.invalidate_queries(*PROPOSTA_INVALIDATES, qc.RECENT_ACTIVITIES)
    session.refresh(proposta)
    return proposta_to_response(proposta)


@router.get("/{proposta_id}", response_model=PropostaResponse)
async def get_proposta(
    proposta_id: str,
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return proposta_to_response(get_proposta_or_404(session, proposta_id))


@router.put("/{proposta_id}", response_model=PropostaResponse)
async def update_proposta(
    proposta_id: str,
    proposta_data: PropostaUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    proposta = get_proposta_or_404(session, proposta_id)
    for key, value in proposta_data.model_dump(exclude_unset=True).items():
        setattr(proposta, key, value)
    proposta.updated_at = datetime.utcnow()
    session.add(proposta)
    session.commit()
    session.refresh(proposta)

    cache.invalidate_queries(*PROPOSTA_INVALIDATES)
    return proposta_to_response(proposta)
