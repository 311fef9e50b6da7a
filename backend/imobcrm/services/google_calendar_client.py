"""
Cliente HTTP do Google (OAuth2 + Calendar API v3) sobre httpx.AsyncClient.

O transporte é injetável para que os testes usem httpx.MockTransport.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import httpx
from google_auth_oauthlib.flow import Flow
from imobcrm.config import settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]
DEFAULT_EXPIRES_IN = 3600


class CalendarError(Exception):
    """Erro base das chamadas ao Google"""


class CalendarNotConfigured(CalendarError):
    """Client id/secret não definidos"""


class CalendarTokenError(CalendarError):
    """Falha na troca do code ou no refresh do token"""


class CalendarRequestError(CalendarError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:200]
        if isinstance(error, str):
            description = payload.get("error_description")
            return f"{error}: {description}" if description else error
    return response.text.strip()[:200] or "Request failed without an error payload"


def build_auth_url(
    state: str,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    redirect_uri: Optional[str] = None
) -> str:
    """URL de consentimento (offline + consent para sempre receber refresh_token)"""
    client_id = client_id or settings.google_calendar_client_id
    client_secret = client_secret or settings.google_calendar_client_secret
    redirect_uri = redirect_uri or settings.google_calendar_redirect_uri
    if not client_id or not client_secret:
        raise CalendarNotConfigured(
            "Google OAuth2 não configurado. Defina GOOGLE_CALENDAR_CLIENT_ID e GOOGLE_CALENDAR_CLIENT_SECRET"
        )

    # Sem PKCE: a troca do code é feita direto no token endpoint, sem code_verifier
    flow = Flow.from_client_config(
        {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": GOOGLE_AUTH_URL,
                "token_uri": GOOGLE_TOKEN_URL,
                "redirect_uris": [redirect_uri],
            }
        },
        scopes=CALENDAR_SCOPES,
        redirect_uri=redirect_uri,
        autogenerate_code_verifier=False,
    )
    authorization_url, _ = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",  # Forçar consent para obter refresh_token
        state=state,
    )
    return authorization_url


def expiry_from(payload: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    """token_expiry (UTC naive) a partir do expires_in da resposta"""
    now = now or datetime.utcnow()
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
        expires_in = DEFAULT_EXPIRES_IN
    return now + timedelta(seconds=int(expires_in))


class GoogleCalendarClient:
    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ):
        self._transport = transport
        self._timeout = timeout
        self.client_id = client_id or settings.google_calendar_client_id
        self.client_secret = client_secret or settings.google_calendar_client_secret
        self.redirect_uri = redirect_uri or settings.google_calendar_redirect_uri

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise CalendarNotConfigured(
                "Google OAuth2 não configurado. Defina GOOGLE_CALENDAR_CLIENT_ID e GOOGLE_CALENDAR_CLIENT_SECRET"
            )

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        self._require_credentials()
        data = {**data, "client_id": self.client_id, "client_secret": self.client_secret}
        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            raise CalendarTokenError(f"Falha na requisição de token: {e}") from e

        if response.status_code >= 300:
            raise CalendarTokenError(_error_message(response))
        try:
            payload = response.json()
        except ValueError as e:
            raise CalendarTokenError("Resposta de token inválida") from e
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise CalendarTokenError("Resposta de token sem access_token")
        return payload

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Troca o authorization code por access/refresh token"""
        return await self._token_request({
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        })

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            async with self._client() as client:
                response = await client.request(
                    method, f"{CALENDAR_API_BASE}/{path}", headers=headers, json=json, params=params
                )
        except httpx.HTTPError as e:
            raise CalendarRequestError(0, str(e)) from e

        if response.status_code >= 300:
            raise CalendarRequestError(response.status_code, _error_message(response))
        return response

    async def create_event(self, access_token: str, event: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", "calendars/primary/events", access_token, json=event)
        return response.json()

    async def update_event(self, access_token: str, event_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PUT", f"calendars/primary/events/{event_id}", access_token, json=event
        )
        return response.json()

    async def delete_event(self, access_token: str, event_id: str) -> None:
        await self._request("DELETE", f"calendars/primary/events/{event_id}", access_token)

    async def list_events(self, access_token: str, time_min: datetime) -> List[Dict[str, Any]]:
        """Eventos a partir de time_min (UTC naive), expandindo recorrências"""
        params = {
            "timeMin": time_min.replace(microsecond=0).isoformat() + "Z",
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        response = await self._request("GET", "calendars/primary/events", access_token, params=params)
        return response.json().get("items", [])

    async def watch_events(self, access_token: str, address: Optional[str] = None) -> Dict[str, Any]:
        """Registra o canal de push notifications do calendário primário"""
        body = {
            "id": str(uuid.uuid4()),
            "type": "web_hook",
            "address": address or f"{settings.public_api_url}/api/google-calendar/webhook",
        }
        response = await self._request("POST", "calendars/primary/events/watch", access_token, json=body)
        return response.json()
