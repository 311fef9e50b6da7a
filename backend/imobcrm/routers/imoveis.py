import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlmodel import Session, select, and_, func
from imobcrm.database import get_session
from imobcrm.models import (
    Imovel, ImovelCreate, ImovelUpdate, ImovelResponse, ImovelStatus, Usuario, Visita, Proposta
)
from imobcrm.dependencies import get_current_active_user, get_query_cache
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.cep_service import CepInvalido, lookup_cep

logger = logging.getLogger(__name__)

router = APIRouter()


def get_imovel_or_404(session: Session, imovel_id: str) -> Imovel:
    imovel = session.get(Imovel, imovel_id)
    if not imovel:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Imóvel não encontrado"
        )
    return imovel


@router.get("/cep/{cep}")
async def buscar_cep(
    cep: str,
    current_user: Usuario = Depends(get_current_active_user)
):
    """Preenche endereço, bairro, cidade e estado a partir do CEP"""
    try:
        endereco = await lookup_cep(cep)
    except CepInvalido as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    # null quando o CEP não existe
    return endereco


@router.get("", response_model=List[ImovelResponse])
async def get_imoveis(
    status_filter: Optional[ImovelStatus] = Query(None, alias="status"),
    tipo: Optional[str] = Query(None),
    cidade: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    filters = []
    if status_filter:
        filters.append(Imovel.status == status_filter)
    if tipo:
        filters.append(Imovel.tipo == tipo)
    if cidade:
        filters.append(Imovel.cidade.ilike(f"%{cidade}%"))

    def load():
        query = select(Imovel)
        if filters:
            query = query.where(and_(*filters))
        imoveis = session.exec(query.order_by(Imovel.created_at.desc())).all()
        return [ImovelResponse.model_validate(i).model_dump(mode="json") for i in imoveis]

    if filters:
        return load()
    return await cache.fetch_query(qc.IMOVEIS, load)


@router.post("", response_model=ImovelResponse, status_code=status.HTTP_201_CREATED)
async def create_imovel(
    imovel_data: ImovelCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    imovel = Imovel(**imovel_data.model_dump())
    session.add(imovel)
    session.commit()
    session.refresh(imovel)

    cache.invalidate_queries(qc.IMOVEIS)
    return imovel


@router.get("/{imovel_id}", response_model=ImovelResponse)
async def get_imovel(
    imovel_id: str,
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return get_imovel_or_404(session, imovel_id)


@router.put("/{imovel_id}", response_model=ImovelResponse)
async def update_imovel(
    imovel_id: str,
    imovel_data: ImovelUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    imovel = get_imovel_or_404(session, imovel_id)
    for key, value in imovel_data.model_dump(exclude_unset=True).items():
        setattr(imovel, key, value)
    imovel.updated_at = datetime.utcnow()
    session.add(imovel)
    session.commit()
    session.refresh(imovel)

    cache.invalidate_queries(qc.IMOVEIS, qc.VISITAS, qc.PROPOSTAS)
    return imovel


@router.delete("/{imovel_id}")
async def delete_imovel(
    imovel_id: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    imovel = get_imovel_or_404(session, imovel_id)

    vinculos = session.exec(select(func.count(Visita.id)).where(Visita.imovel_id == imovel_id)).one()
    vinculos += session.exec(select(func.count(Proposta.id)).where(Proposta.imovel_id == imovel_id)).one()
    if vinculos:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Imóvel possui visitas ou propostas vinculadas"
        )

    session.delete(imovel)
    session.commit()
    cache.invalidate_queries(qc.IMOVEIS)
    return {"message": "Imóvel excluído com sucesso"}
