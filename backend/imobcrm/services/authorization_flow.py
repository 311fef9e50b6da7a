"""
Fluxo de autorização externa do Google Calendar.

O usuário abre a tela de consentimento numa janela separada; a página de
callback devolve o resultado como mensagem (``google-calendar-code`` ou
``google-calendar-error``). O fluxo é resolvido uma única vez: pela
mensagem, pelo fechamento da janela (verificado a cada 0,5 s) ou pelo
timeout de 5 minutos.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5
AUTHORIZATION_TIMEOUT_SECONDS = 300

POPUP_BLOCKED_MESSAGE = "Popup bloqueado. Por favor, permita popups para este site."
CANCELLED_MESSAGE = "Autorização cancelada"
TIMEOUT_MESSAGE = "Tempo de autorização esgotado"


class FlowState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_USER = "awaiting_user"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class AuthorizationError(Exception):
    def __init__(self, message: str, state: FlowState = FlowState.FAILED):
        self.state = state
        super().__init__(message)


class PopupBlocked(AuthorizationError):
    def __init__(self):
        super().__init__(POPUP_BLOCKED_MESSAGE, FlowState.FAILED)


class AuthorizationWindow(Protocol):
    closed: bool

    def close(self) -> None:
        ...


class PendingWindow:
    """Janela de consentimento acompanhada pelo servidor"""

    def __init__(self, url: str):
        self.url = url
        self.closed = False

    def close(self) -> None:
        self.closed = True


class AuthorizationFlow:
    def __init__(
        self,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = AUTHORIZATION_TIMEOUT_SECONDS,
    ):
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.state = FlowState.NOT_STARTED
        self.window: Optional[AuthorizationWindow] = None
        self.code: Optional[str] = None
        self.error: Optional[str] = None

    def start(self, auth_url: str, open_window: Callable[[str], Optional[AuthorizationWindow]]) -> None:
        if self.state != FlowState.NOT_STARTED:
            raise AuthorizationError("Fluxo de autorização já iniciado")

        window = open_window(auth_url)
        if window is None:
            self.state = FlowState.FAILED
            self.error = POPUP_BLOCKED_MESSAGE
            raise PopupBlocked()

        self.window = window
        self.state = FlowState.AWAITING_USER

    @property
    def done(self) -> bool:
        return self.state not in (FlowState.NOT_STARTED, FlowState.AWAITING_USER)

    def _resolve(self, state: FlowState, code: Optional[str] = None, error: Optional[str] = None) -> bool:
        # A primeira resolução vence; as seguintes são ignoradas
        if self.state != FlowState.AWAITING_USER:
            return False
        self.state = state
        self.code = code
        self.error = error
        return True

    def post_message(self, message: Dict[str, Any]) -> bool:
        """Entrega a mensagem da página de callback. Retorna False se ignorada."""
        kind = message.get("type")
        if kind == "google-calendar-code" and message.get("code"):
            resolved = self._resolve(FlowState.COMPLETED, code=message["code"])
        elif kind == "google-calendar-error":
            resolved = self._resolve(FlowState.FAILED, error=str(message.get("error") or "Erro na autorização"))
        else:
            logger.warning(f"Mensagem de autorização desconhecida: {kind}")
            return False

        if resolved and self.window is not None and not self.window.closed:
            self.window.close()
        return resolved

    def cancel(self) -> bool:
        if self.window is not None:
            self.window.close()
        return self._resolve(FlowState.CANCELLED, error=CANCELLED_MESSAGE)

    async def wait(self) -> str:
        """Aguarda a resolução e retorna o authorization code"""
        if self.state == FlowState.NOT_STARTED:
            raise AuthorizationError("Fluxo de autorização não iniciado")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while self.state == FlowState.AWAITING_USER:
            if self.window is not None and self.window.closed:
                self._resolve(FlowState.CANCELLED, error=CANCELLED_MESSAGE)
                break
            if loop.time() >= deadline:
                self._resolve(FlowState.TIMED_OUT, error=TIMEOUT_MESSAGE)
                if self.window is not None and not self.window.closed:
                    self.window.close()
                break
            await asyncio.sleep(self.poll_interval)

        if self.state == FlowState.COMPLETED:
            return self.code
        raise AuthorizationError(self.error or "Erro na autorização", self.state)


class AuthorizationRegistry:
    """
    Fluxos pendentes em memória, indexados pelo parâmetro ``state`` do OAuth.

    Entradas mais antigas que ``max_age`` são descartadas a cada ``register``:
    depois disso o ``wait`` do fluxo já teria expirado de qualquer forma.
    """

    def __init__(
        self,
        max_age: float = AUTHORIZATION_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age = max_age
        self._clock = clock
        self._flows: Dict[str, Dict[str, Any]] = {}

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            state for state, entry in self._flows.items()
            if now - entry["started_at"] > self.max_age
        ]
        for state in expired:
            entry = self._flows.pop(state)
            if not entry["flow"].done:
                entry["flow"].cancel()
        if expired:
            logger.info(f"{len(expired)} fluxo(s) de autorização expirado(s) removido(s)")
        return len(expired)

    def register(self, state: str, flow: AuthorizationFlow, user_id: str) -> None:
        self.evict_expired()
        self._flows[state] = {"flow": flow, "user_id": user_id, "started_at": self._clock()}

    def get(self, state: str) -> Optional[AuthorizationFlow]:
        entry = self._flows.get(state)
        return entry["flow"] if entry else None

    def owner(self, state: str) -> Optional[str]:
        entry = self._flows.get(state)
        return entry["user_id"] if entry else None

    def pop(self, state: str) -> Optional[AuthorizationFlow]:
        entry = self._flows.pop(state, None)
        return entry["flow"] if entry else None

    def __len__(self) -> int:
        return len(self._flows)
