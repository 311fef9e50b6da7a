import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select, func
from imobcrm.database import get_session
from imobcrm.models import (
    FunilEtapa, FunilEtapaCreate, FunilEtapaResponse, LeadFunil, LeadFunilMove, Usuario
)
from imobcrm.dependencies import get_current_active_user, get_query_cache
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.funnel_service import (
    FunnelError, build_board, load_leads_funil, move_lead_to_stage, sync_leads_to_funnel
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_etapas(session: Session) -> List[FunilEtapa]:
    return session.exec(select(FunilEtapa).order_by(FunilEtapa.ordem)).all()


@router.get("/etapas", response_model=List[FunilEtapaResponse])
async def get_etapas(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Etapas do funil ordenadas por ``ordem``"""
    return await cache.fetch_query(
        qc.FUNIL_ETAPAS,
        lambda: [FunilEtapaResponse.model_validate(e).model_dump() for e in _load_etapas(session)]
    )


@router.post("/etapas", response_model=FunilEtapaResponse, status_code=status.HTTP_201_CREATED)
async def create_etapa(
    etapa_data: FunilEtapaCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    existing = session.exec(select(FunilEtapa).where(FunilEtapa.ordem == etapa_data.ordem)).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Já existe uma etapa na ordem {etapa_data.ordem}"
        )

    etapa = FunilEtapa(**etapa_data.model_dump())
    session.add(etapa)
    session.commit()
    session.refresh(etapa)

    cache.invalidate_queries(qc.FUNIL_ETAPAS, qc.FUNNEL_DATA)
    return etapa


@router.put("/etapas/{etapa_id}", response_model=FunilEtapaResponse)
async def update_etapa(
    etapa_id: str,
    etapa_data: FunilEtapaCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    etapa = session.get(FunilEtapa, etapa_id)
    if not etapa:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Etapa não encontrada")

    clash = session.exec(
        select(FunilEtapa).where(FunilEtapa.ordem == etapa_data.ordem, FunilEtapa.id != etapa_id)
    ).first()
    if clash:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Já existe uma etapa na ordem {etapa_data.ordem}"
        )

    etapa.nome = etapa_data.nome
    etapa.ordem = etapa_data.ordem
    etapa.cor = etapa_data.cor
    session.add(etapa)
    session.commit()
    session.refresh(etapa)

    cache.invalidate_queries(qc.FUNIL_ETAPAS, qc.FUNNEL_DATA)
    return etapa


@router.delete("/etapas/{etapa_id}")
async def delete_etapa(
    etapa_id: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    etapa = session.get(FunilEtapa, etapa_id)
    if not etapa:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Etapa não encontrada")

    in_use = session.exec(select(func.count(LeadFunil.id)).where(LeadFunil.etapa_id == etapa_id)).one()
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Etapa possui {in_use} lead(s). Mova-os antes de excluir."
        )

    session.delete(etapa)
    session.commit()
    cache.invalidate_queries(qc.FUNIL_ETAPAS, qc.FUNNEL_DATA)
    return {"message": "Etapa excluída com sucesso"}


@router.get("/leads")
async def get_leads_funil(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Linhas de lead_funil (lead + etapa) dos leads em aberto"""
    return await cache.fetch_query(qc.LEADS_FUNIL, lambda: load_leads_funil(session))


@router.get("/board")
async def get_board(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Kanban: uma coluna por etapa, com dias parados por card e média por coluna"""
    rows = await cache.fetch_query(qc.LEADS_FUNIL, lambda: load_leads_funil(session))
    return build_board(_load_etapas(session), rows)


@router.post("/move")
async def move_lead(
    move: LeadFunilMove,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Move o lead de etapa (atualização otimista + rollback em caso de erro)"""
    try:
        membership = await move_lead_to_stage(
            session, cache, move.lead_id, move.etapa_id, usuario_id=current_user.id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except FunnelError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e) or "Erro ao mover lead"
        )

    if membership is None:
        return {"moved": False, "lead_id": move.lead_id, "etapa_id": move.etapa_id}

    return {
        "moved": True,
        "message": "Lead movido com sucesso!",
        "id": membership.id,
        "lead_id": membership.lead_id,
        "etapa_id": membership.etapa_id,
        "data_entrada": membership.data_entrada.isoformat(),
    }


@router.post("/sync")
async def sync_funnel(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Coloca na primeira etapa todos os leads que ainda não estão no funil"""
    try:
        result = sync_leads_to_funnel(session)
    except FunnelError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result["synced"] == 0:
        return {**result, "message": "Todos os leads já estão no funil"}

    cache.invalidate_queries(qc.LEADS_FUNIL, qc.FUNNEL_DATA, qc.DASHBOARD_METRICS)
    return {**result, "message": f"{result['synced']} lead(s) sincronizado(s) com o funil"}
