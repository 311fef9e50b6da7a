"""
Sincronização entre visitas do CRM e o Google Calendar.

- conexão: troca do code por tokens (criptografados) + registro do webhook
- saída: create/update/delete do evento correspondente a uma visita
- entrada: notificações push do Google sobrescrevem a visita mapeada
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional
from sqlmodel import Session, select
from imobcrm.config import settings
from imobcrm.models import (
    GoogleCalendarToken, GoogleCalendarStatus, Visita, VisitaGoogleSync, VisitaStatus,
    to_calendar_local
)
from imobcrm.services.encryption_service import encrypt_token, decrypt_token
from imobcrm.services.google_calendar_client import (
    GoogleCalendarClient, CalendarError, CalendarRequestError, expiry_from
)

logger = logging.getLogger(__name__)

REFRESH_THRESHOLD = timedelta(minutes=5)
INBOUND_WINDOW = timedelta(hours=24)
SYNC_ACTIONS = ("create", "update", "delete")


class CalendarNotConnected(Exception):
    def __init__(self, message: str = "Google Calendar not connected"):
        super().__init__(message)


class VisitaNotFound(Exception):
    def __init__(self, message: str = "Visita not found"):
        super().__init__(message)


def get_token_row(session: Session, user_id: str) -> Optional[GoogleCalendarToken]:
    return session.exec(
        select(GoogleCalendarToken).where(GoogleCalendarToken.user_id == user_id)
    ).first()


def get_status(session: Session, user_id: str) -> GoogleCalendarStatus:
    row = get_token_row(session, user_id)
    if not row:
        return GoogleCalendarStatus(connected=False)
    return GoogleCalendarStatus(
        connected=True,
        connected_at=row.created_at,
        webhook_expiry=row.webhook_expiry,
    )


def needs_refresh(token_expiry: datetime, now: Optional[datetime] = None) -> bool:
    """True quando faltam menos de 5 minutos para o token expirar"""
    now = now or datetime.utcnow()
    return token_expiry - now < REFRESH_THRESHOLD


async def refresh_token_if_needed(
    session: Session,
    client: GoogleCalendarClient,
    row: GoogleCalendarToken,
    now: Optional[datetime] = None
) -> str:
    """Retorna um access token válido, renovando e persistindo antes se preciso"""
    now = now or datetime.utcnow()
    if not needs_refresh(row.token_expiry, now):
        return decrypt_token(row.access_token)

    if not row.refresh_token:
        raise CalendarNotConnected("Google Calendar sem refresh token. Conecte novamente.")

    logger.info(f"Refreshing access token for user {row.user_id}")
    payload = await client.refresh_access_token(decrypt_token(row.refresh_token))

    row.access_token = encrypt_token(payload["access_token"])
    row.token_expiry = expiry_from(payload, now)
    if payload.get("refresh_token"):
        row.refresh_token = encrypt_token(payload["refresh_token"])
    row.updated_at = now
    session.add(row)
    session.commit()
    session.refresh(row)
    return payload["access_token"]


async def connect_calendar(
    session: Session,
    client: GoogleCalendarClient,
    user_id: str,
    code: str,
    now: Optional[datetime] = None
) -> GoogleCalendarToken:
    """Troca o code por tokens, grava (upsert por usuário) e registra o webhook"""
    now = now or datetime.utcnow()
    payload = await client.exchange_code(code)

    row = get_token_row(session, user_id)
    if row is None:
        row = GoogleCalendarToken(
            user_id=user_id,
            access_token=encrypt_token(payload["access_token"]),
            token_expiry=expiry_from(payload, now),
            created_at=now,
        )
    else:
        row.access_token = encrypt_token(payload["access_token"])
        row.token_expiry = expiry_from(payload, now)
    if payload.get("refresh_token"):
        row.refresh_token = encrypt_token(payload["refresh_token"])
    row.updated_at = now
    session.add(row)
    session.commit()
    session.refresh(row)
    logger.info(f"✅ Google Calendar conectado para o usuário {user_id}")

    # Webhook é best-effort: sem ele a conexão continua válida
    try:
        channel = await client.watch_events(payload["access_token"])
        row.webhook_channel_id = channel.get("id")
        row.webhook_resource_id = channel.get("resourceId")
        expiration = channel.get("expiration")
        if expiration:
            row.webhook_expiry = datetime.utcfromtimestamp(int(expiration) / 1000)
        session.add(row)
        session.commit()
        session.refresh(row)
    except Exception as e:
        session.rollback()
        logger.error(f"⚠️ Erro ao registrar webhook do Google Calendar: {e}")

    return row


def disconnect_calendar(session: Session, user_id: str) -> bool:
    """Remove os tokens do usuário (sem revogar no Google)"""
    row = get_token_row(session, user_id)
    if not row:
        return False
    session.delete(row)
    session.commit()
    return True


def build_event_payload(visita: Visita) -> Dict[str, Any]:
    lead = visita.lead
    imovel = visita.imovel
    start = visita.data_hora.replace(microsecond=0)
    end = start + timedelta(minutes=visita.duracao or 60)

    description = "\n".join([
        f"Tipo: {visita.tipo.value if hasattr(visita.tipo, 'value') else visita.tipo}",
        f"Lead: {(lead.nome if lead else None) or 'N/A'}",
        f"Email: {(lead.email if lead else None) or 'N/A'}",
        f"Telefone: {(lead.telefone if lead else None) or 'N/A'}",
        f"Imóvel: {(imovel.endereco if imovel else None) or 'N/A'}",
        f"Observações: {visita.observacoes or 'Nenhuma'}",
    ])

    return {
        "summary": f"Visita: {(lead.nome if lead else None) or 'Lead'} - {(imovel.endereco if imovel else None) or 'Imóvel'}",
        "description": description,
        "start": {"dateTime": start.isoformat(), "timeZone": settings.calendar_timezone},
        "end": {"dateTime": end.isoformat(), "timeZone": settings.calendar_timezone},
        "status": "cancelled" if visita.status == VisitaStatus.CANCELADA else "confirmed",
    }


def get_mapping(session: Session, visita_id: str, user_id: str) -> Optional[VisitaGoogleSync]:
    return session.exec(
        select(VisitaGoogleSync).where(
            VisitaGoogleSync.visita_id == visita_id,
            VisitaGoogleSync.user_id == user_id
        )
    ).first()


async def sync_visita(
    session: Session,
    client: GoogleCalendarClient,
    user_id: str,
    action: str,
    visita_id: str,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Replica uma visita no calendário primário do usuário.

    create só cria quando ainda não há mapeamento; update só atualiza quando há;
    delete apaga o evento e o mapeamento. Nos demais casos nada acontece.

    Raises:
        ValueError: ação desconhecida.
        CalendarNotConnected: usuário sem tokens.
        VisitaNotFound: visita inexistente (create/update).
        CalendarError: falha na chamada ao Google.
    """
    if action not in SYNC_ACTIONS:
        raise ValueError(f"Ação de sincronização inválida: {action}")

    now = now or datetime.utcnow()
    row = get_token_row(session, user_id)
    if not row:
        raise CalendarNotConnected()

    access_token = await refresh_token_if_needed(session, client, row, now)
    mapping = get_mapping(session, visita_id, user_id)
    logger.info(f"Sync action: {action} for visita: {visita_id}")

    if action == "delete":
        if not mapping:
            return {"success": True, "action": "noop"}
        try:
            await client.delete_event(access_token, mapping.google_event_id)
        except CalendarRequestError as e:
            # Evento já removido do lado do Google
            if e.status_code not in (404, 410):
                raise
            logger.warning(f"Evento {mapping.google_event_id} já não existe no Google Calendar")
        event_id = mapping.google_event_id
        session.delete(mapping)
        session.commit()
        logger.info(f"Deleted Google Calendar event: {event_id}")
        return {"success": True, "action": "deleted", "google_event_id": event_id}

    visita = session.get(Visita, visita_id)
    if not visita:
        raise VisitaNotFound()
    payload = build_event_payload(visita)

    if action == "create":
        if mapping:
            return {"success": True, "action": "noop", "google_event_id": mapping.google_event_id}
        created = await client.create_event(access_token, payload)
        mapping = VisitaGoogleSync(
            visita_id=visita_id,
            user_id=user_id,
            google_event_id=created["id"],
            last_synced_at=now,
            created_at=now,
        )
        session.add(mapping)
        session.commit()
        logger.info(f"Created Google Calendar event: {created['id']}")
        return {"success": True, "action": "created", "google_event_id": created["id"]}

    if not mapping:
        return {"success": True, "action": "noop"}
    await client.update_event(access_token, mapping.google_event_id, payload)
    mapping.last_synced_at = now
    session.add(mapping)
    session.commit()
    logger.info(f"Updated Google Calendar event: {mapping.google_event_id}")
    return {"success": True, "action": "updated", "google_event_id": mapping.google_event_id}


def parse_event_time(value: Dict[str, Any]) -> Optional[datetime]:
    """dateTime/date do Google → horário local (fuso do calendário) sem tzinfo"""
    if not value:
        return None
    raw = value.get("dateTime")
    if raw:
        return to_calendar_local(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    raw = value.get("date")
    if raw:
        day = date.fromisoformat(raw)
        return datetime(day.year, day.month, day.day)
    return None


def apply_event_to_visita(
    session: Session,
    visita: Visita,
    event: Dict[str, Any],
    now: datetime
) -> bool:
    start = parse_event_time(event.get("start") or {})
    end = parse_event_time(event.get("end") or {})
    if not start or not end:
        return False

    visita.data_hora = start
    visita.duracao = round((end - start).total_seconds() / 60)
    visita.status = VisitaStatus.CANCELADA if event.get("status") == "cancelled" else VisitaStatus.AGENDADA
    visita.updated_at = now
    session.add(visita)
    return True


async def handle_webhook_notification(
    session: Session,
    client: GoogleCalendarClient,
    channel_id: Optional[str],
    resource_state: Optional[str],
    now: Optional[datetime] = None
) -> int:
    """
    Processa uma notificação push. Retorna o número de visitas atualizadas.
    Estados diferentes de ``exists`` e canais desconhecidos não alteram nada.
    """
    if resource_state == "sync":
        # Confirmação inicial do webhook
        return 0
    if resource_state != "exists":
        return 0

    row = session.exec(
        select(GoogleCalendarToken).where(GoogleCalendarToken.webhook_channel_id == channel_id)
    ).first() if channel_id else None
    if not row:
        logger.info("No user found for webhook channel")
        return 0

    now = now or datetime.utcnow()
    try:
        access_token = await refresh_token_if_needed(session, client, row, now)
        events = await client.list_events(access_token, now - INBOUND_WINDOW)
    except (CalendarError, CalendarNotConnected) as e:
        logger.error(f"Failed to fetch events from Google Calendar: {e}")
        return 0

    logger.info(f"Fetched {len(events)} events for user {row.user_id}")
    updated = 0
    for event in events:
        mapping = session.exec(
            select(VisitaGoogleSync).where(
                VisitaGoogleSync.google_event_id == event.get("id"),
                VisitaGoogleSync.user_id == row.user_id
            )
        ).first()
        if not mapping:
            continue

        visita = session.get(Visita, mapping.visita_id)
        if not visita or not apply_event_to_visita(session, visita, event, now):
            continue

        mapping.last_synced_at = now
        session.add(mapping)
        session.commit()
        updated += 1
        logger.info(f"Updated visita {visita.id} from Google event {event.get('id')}")

    return updated
