"""
Router da integração com o Google Calendar (OAuth2, sync e webhook)
"""
import json
import logging
import secrets
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status, Query
from fastapi.responses import HTMLResponse
from typing import Optional
from sqlmodel import Session
from imobcrm.config import settings
from imobcrm.database import get_session
from imobcrm.models import (
    Usuario, GoogleCalendarStatus, GoogleCalendarCodeExchange, GoogleCalendarSyncRequest
)
from imobcrm.dependencies import (
    get_current_active_user, get_query_cache, get_calendar_client, get_authorization_registry
)
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.authorization_flow import (
    AuthorizationError, AuthorizationFlow, AuthorizationRegistry, PendingWindow
)
from imobcrm.services.calendar_sync_service import (
    CalendarNotConnected, VisitaNotFound, connect_calendar, disconnect_calendar,
    get_status, handle_webhook_notification, sync_visita
)
from imobcrm.services.google_calendar_client import (
    CalendarError, CalendarNotConfigured, GoogleCalendarClient, build_auth_url
)

logger = logging.getLogger(__name__)

router = APIRouter()


def status_key(user_id: str) -> str:
    return f"{qc.GOOGLE_CALENDAR_STATUS}:{user_id}"


CALLBACK_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Google Calendar</title></head>
<body>
<p>Processando autenticação...</p>
<script>
  var message = {message};
  if (window.opener) {{
    window.opener.postMessage(message, {origin});
  }}
  window.close();
</script>
</body>
</html>
"""


def render_callback_page(message: dict) -> str:
    # json.dumps escapa aspas; "</" é quebrado para não fechar o <script>
    payload = json.dumps(message).replace("</", "<\\/")
    return CALLBACK_PAGE.format(message=payload, origin=json.dumps(settings.frontend_url))


async def _exchange_and_connect(
    session: Session,
    client: GoogleCalendarClient,
    cache: QueryCache,
    user_id: str,
    code: str
) -> GoogleCalendarStatus:
    try:
        await connect_calendar(session, client, user_id, code)
    except CalendarNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except CalendarError as e:
        logger.error(f"❌ Erro ao trocar code por tokens do Google: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Falha na autorização: {e}")

    cache.invalidate_queries(status_key(user_id))
    return get_status(session, user_id)


@router.post("/connect")
async def start_connect(
    registry: AuthorizationRegistry = Depends(get_authorization_registry),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Gera a URL de consentimento e abre um fluxo de autorização pendente"""
    state = secrets.token_urlsafe(24)
    try:
        auth_url = build_auth_url(state)
    except CalendarNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    flow = AuthorizationFlow()
    try:
        flow.start(auth_url, PendingWindow)
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    registry.register(state, flow, current_user.id)
    logger.info(f"Fluxo de autorização do Google Calendar iniciado para {current_user.id}")
    return {"authUrl": auth_url, "state": state}


@router.get("/callback", response_class=HTMLResponse)
async def oauth_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    registry: AuthorizationRegistry = Depends(get_authorization_registry)
):
    """Página de retorno do Google: repassa o resultado para quem abriu a janela"""
    if error:
        logger.error(f"OAuth error: {error}")
        message = {"type": "google-calendar-error", "error": error}
    elif code:
        message = {"type": "google-calendar-code", "code": code}
    else:
        message = {"type": "google-calendar-error", "error": "Código de autorização ausente"}

    flow = registry.get(state) if state else None
    if flow is not None:
        flow.post_message(message)
    else:
        logger.warning(f"Callback sem fluxo pendente (state={state})")

    return HTMLResponse(content=render_callback_page(message))


def _get_owned_flow(registry: AuthorizationRegistry, state: str, user_id: str) -> AuthorizationFlow:
    flow = registry.get(state)
    if flow is None or registry.owner(state) != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Fluxo de autorização não encontrado"
        )
    return flow


@router.post("/connect/{state}/wait", response_model=GoogleCalendarStatus)
async def wait_connect(
    state: str,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    client: GoogleCalendarClient = Depends(get_calendar_client),
    registry: AuthorizationRegistry = Depends(get_authorization_registry),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Aguarda o usuário concluir o consentimento e conecta a conta"""
    flow = _get_owned_flow(registry, state, current_user.id)
    try:
        code = await flow.wait()
    except AuthorizationError as e:
        registry.pop(state)
        logger.warning(f"Autorização do Google Calendar não concluída ({e.state.value}): {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    registry.pop(state)
    return await _exchange_and_connect(session, client, cache, current_user.id, code)


@router.post("/connect/{state}/cancel")
async def cancel_connect(
    state: str,
    registry: AuthorizationRegistry = Depends(get_authorization_registry),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Janela de consentimento fechada pelo usuário"""
    flow = _get_owned_flow(registry, state, current_user.id)
    cancelled = flow.cancel()
    # Um wait em andamento já tem a referência do fluxo e termina como cancelado
    registry.pop(state)
    return {"cancelled": cancelled, "state": flow.state.value}


@router.post("/exchange", response_model=GoogleCalendarStatus)
async def exchange_code(
    payload: GoogleCalendarCodeExchange,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    client: GoogleCalendarClient = Depends(get_calendar_client),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Troca direta do authorization code (quando o frontend recebe o code)"""
    return await _exchange_and_connect(session, client, cache, current_user.id, payload.code)


@router.get("/status", response_model=GoogleCalendarStatus)
async def calendar_status(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    return await cache.fetch_query(
        status_key(current_user.id),
        lambda: get_status(session, current_user.id).model_dump(mode="json")
    )


@router.delete("")
async def disconnect(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Desconecta o Google Calendar (apaga os tokens locais, sem revogar no Google)"""
    removed = disconnect_calendar(session, current_user.id)
    cache.invalidate_queries(status_key(current_user.id))
    return {"disconnected": removed}


@router.post("/webhook")
async def calendar_webhook(
    request: Request,
    session: Session = Depends(get_session),
    client: GoogleCalendarClient = Depends(get_calendar_client),
    cache: QueryCache = Depends(get_query_cache)
):
    """Notificações push do Google (X-Goog-* headers)"""
    channel_id = request.headers.get("x-goog-channel-id")
    resource_id = request.headers.get("x-goog-resource-id")
    resource_state = request.headers.get("x-goog-resource-state")
    logger.info(f"Webhook received: channel={channel_id} resource={resource_id} state={resource_state}")

    try:
        updated = await handle_webhook_notification(session, client, channel_id, resource_state)
    except Exception as e:
        session.rollback()
        logger.error(f"Error in google-calendar-webhook: {e}", exc_info=True)
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if updated:
        cache.invalidate_queries(qc.VISITAS, qc.DASHBOARD_METRICS)
    return Response(status_code=status.HTTP_200_OK)


@router.post("/sync")
async def sync(
    payload: GoogleCalendarSyncRequest,
    session: Session = Depends(get_session),
    client: GoogleCalendarClient = Depends(get_calendar_client),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Sincroniza manualmente uma visita (create, update ou delete)"""
    try:
        return await sync_visita(session, client, current_user.id, payload.action, payload.visita_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CalendarNotConnected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except VisitaNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CalendarError as e:
        logger.error(f"❌ Erro no sync com Google Calendar: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
