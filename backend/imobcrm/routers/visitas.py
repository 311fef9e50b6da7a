import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlmodel import Session, select, and_
from imobcrm.database import get_session
from imobcrm.models import (
    Visita, VisitaCreate, VisitaUpdate, VisitaResponse, VisitaStatus, VisitaGoogleSync,
    Lead, Imovel, Usuario, InteracaoTipo, to_calendar_local
)
from imobcrm.dependencies import get_current_active_user, get_query_cache, get_calendar_client
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.activity_service import safe_log_interaction, safe_log_activity
from imobcrm.services.calendar_sync_service import CalendarNotConnected, sync_visita
from imobcrm.services.google_calendar_client import GoogleCalendarClient

logger = logging.getLogger(__name__)

router = APIRouter()

VISITA_INVALIDATES = (qc.VISITAS, qc.DASHBOARD_METRICS)


def visita_to_response(visita: Visita) -> VisitaResponse:
    response = VisitaResponse.model_validate(visita)
    response.lead_nome = visita.lead.nome if visita.lead else None
    response.imovel_endereco = visita.imovel.endereco if visita.imovel else None
    return response


def get_visita_or_404(session: Session, visita_id: str) -> Visita:
    visita = session.get(Visita, visita_id)
    if not visita:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Visita não encontrada"
        )
    return visita


async def push_to_calendar(
    session: Session,
    client: GoogleCalendarClient,
    user_id: str,
    action: str,
    visita_id: str
) -> None:
    """Sincroniza com o Google Calendar sem afetar a operação principal"""
    try:
        await sync_visita(session, client, user_id, action, visita_id)
    except CalendarNotConnected:
        logger.debug(f"Usuário {user_id} sem Google Calendar conectado; sync '{action}' ignorado")
    except Exception as e:
        session.rollback()
        logger.error(f"⚠️ Erro ao sincronizar visita {visita_id} com Google Calendar ({action}): {e}")


def _validate_refs(session: Session, lead_id: Optional[str], imovel_id: Optional[str]) -> None:
    if lead_id and not session.get(Lead, lead_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead não encontrado")
    if imovel_id and not session.get(Imovel, imovel_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Imóvel não encontrado")


@router.get("", response_model=List[VisitaResponse])
async def get_visitas(
    data_inicio: Optional[datetime] = Query(None, description="data_hora >= data_inicio"),
    data_fim: Optional[datetime] = Query(None, description="data_hora < data_fim"),
    status_filter: Optional[VisitaStatus] = Query(None, alias="status"),
    lead_id: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Visitas por data_hora crescente"""
    filters = []
    if data_inicio:
        filters.append(Visita.data_hora >= to_calendar_local(data_inicio))
    if data_fim:
        filters.append(Visita.data_hora < to_calendar_local(data_fim))
    if status_filter:
        filters.append(Visita.status == status_filter)
    if lead_id:
        filters.append(Visita.lead_id == lead_id)

    def load():
        query = select(Visita)
        if filters:
            query = query.where(and_(*filters))
        visitas = session.exec(query.order_by(Visita.data_hora)).all()
        return [visita_to_response(v).model_dump(mode="json") for v in visitas]

    if filters:
        return load()
    return await cache.fetch_query(qc.VISITAS, load)


@router.post("", response_model=VisitaResponse, status_code=status.HTTP_201_CREATED)
async def create_visita(
    visita_data: VisitaCreate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    calendar: GoogleCalendarClient = Depends(get_calendar_client),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Agenda a visita, registra a interação e envia ao Google Calendar"""
    _validate_refs(session, visita_data.lead_id, visita_data.imovel_id)

    visita_dict = visita_data.model_dump()
    if not visita_dict.get("corretor_id"):
        visita_dict["corretor_id"] = current_user.id
    visita = Visita(**visita_dict)
    session.add(visita)
    session.commit()
    session.refresh(visita)
    logger.info(f"✅ Visita {visita.id} agendada para {visita.data_hora.isoformat()}")

    safe_log_interaction(
        session, visita.lead_id,
        f"Visita agendada para {visita.data_hora.strftime('%d/%m/%Y, %H:%M:%S')}",
        tipo=InteracaoTipo.VISITA, usuario_id=current_user.id
    )
    safe_log_activity(
        session, "visita_agendada",
        f"Visita agendada para {visita.lead.nome if visita.lead else 'Lead'}",
        lead_id=visita.lead_id, usuario_id=current_user.id,
        metadata={"visita_id": visita.id, "data_hora": visita.data_hora.isoformat()}
    )
    await push_to_calendar(session, calendar, current_user.id, "create", visita.id)

    cache.invalidate_queries(*VISITA_INVALIDATES, qc.RECENT_ACTIVITIES, qc.ATIVIDADES_SISTEMA)
    session.refresh(visita)
    return visita_to_response(visita)


@router.get("/{visita_id}", response_model=VisitaResponse)
async def get_visita(
    visita_id: str,
    session: Session = Depends(get_session),
    current_user: Usuario = Depends(get_current_active_user)
):
    return visita_to_response(get_visita_or_404(session, visita_id))


@router.put("/{visita_id}", response_model=VisitaResponse)
async def update_visita(
    visita_id: str,
    visita_data: VisitaUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    calendar: GoogleCalendarClient = Depends(get_calendar_client),
    current_user: Usuario = Depends(get_current_active_user)
):
    visita = get_visita_or_404(session, visita_id)
    data = visita_data.model_dump(exclude_unset=True)
    _validate_refs(session, None, data.get("imovel_id"))

    for key, value in data.items():
        setattr(visita, key, value)
    visita.updated_at = datetime.utcnow()
    session.add(visita)
    session.commit()
    session.refresh(visita)

    await push_to_calendar(session, calendar, current_user.id, "update", visita.id)

    cache.invalidate_queries(*VISITA_INVALIDATES)
    session.refresh(visita)
    return visita_to_response(visita)


@router.delete("/{visita_id}")
async def delete_visita(
    visita_id: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    calendar: GoogleCalendarClient = Depends(get_calendar_client),
    current_user: Usuario = Depends(get_current_active_user)
):
    visita = get_visita_or_404(session, visita_id)

    # Remove o evento antes: o mapeamento aponta para a visita
    await push_to_calendar(session, calendar, current_user.id, "delete", visita.id)

    for mapping in session.exec(select(VisitaGoogleSync).where(VisitaGoogleSync.visita_id == visita_id)).all():
        session.delete(mapping)
    session.flush()
    session.delete(visita)
    session.commit()

    cache.invalidate_queries(*VISITA_INVALIDATES)
    return {"message": "Visita excluída com sucesso"}
