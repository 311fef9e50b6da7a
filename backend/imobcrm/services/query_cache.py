"""
Cache de consultas da aplicação.

Cada consulta do CRM fica num bucket nomeado (``leads_funil``, ``leads``,
``dashboard-metrics``...). As mutações invalidam os buckets afetados e o
próximo leitor busca o estado novo no banco.

Leituras em andamento são identificadas por uma geração por chave:
``cancel_queries`` incrementa a geração e qualquer loader iniciado antes
disso termina sem gravar no cache. É o que impede uma leitura antiga de
sobrescrever uma escrita otimista.
"""
import copy
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Buckets usados pelos routers
LEADS_FUNIL = "leads_funil"
LEADS = "leads"
FUNIL_ETAPAS = "funil_etapas"
DASHBOARD_METRICS = "dashboard-metrics"
FUNNEL_DATA = "funnel-data"
RECENT_ACTIVITIES = "recent-activities"
ATIVIDADES_SISTEMA = "atividades-sistema"
VISITAS = "visitas"
PROPOSTAS = "propostas"
IMOVEIS = "imoveis"
USUARIOS = "usuarios"
GOOGLE_CALENDAR_STATUS = "google-calendar-status"

Loader = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class _Entry:
    data: Any
    updated_at: float


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, _Entry] = {}
        self._generations: Dict[str, int] = {}
        self._clock = clock

    def _generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    async def fetch_query(self, key: str, loader: Loader, stale_time: Optional[float] = None) -> Any:
        """Retorna o dado em cache ou executa o loader e guarda o resultado.

        Com ``stale_time`` (segundos) o dado expira sozinho, como o
        ``refetchInterval`` dos painéis.
        """
        entry = self._entries.get(key)
        if entry is not None:
            if stale_time is None or self._clock() - entry.updated_at < stale_time:
                return entry.data

        generation = self._generation(key)
        result = loader()
        if inspect.isawaitable(result):
            result = await result

        if self._generation(key) != generation:
            # Leitura cancelada no meio do caminho: não sobrescrever o cache
            logger.debug(f"Discarding stale read for '{key}'")
            return result

        self._entries[key] = _Entry(data=result, updated_at=self._clock())
        return result

    async def cancel_queries(self, key: str) -> None:
        self._generations[key] = self._generation(key) + 1

    def get_query_data(self, key: str) -> Any:
        """Snapshot (cópia profunda) do dado em cache"""
        entry = self._entries.get(key)
        return copy.deepcopy(entry.data) if entry is not None else None

    def set_query_data(self, key: str, value: Any) -> Any:
        """Grava o dado; aceita um updater que recebe o valor atual"""
        if callable(value):
            entry = self._entries.get(key)
            value = value(entry.data if entry is not None else None)
        if value is None:
            self._entries.pop(key, None)
            return None
        self._entries[key] = _Entry(data=value, updated_at=self._clock())
        return value

    def invalidate_queries(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)
            # invalidar também leituras em andamento
            self._generations[key] = self._generation(key) + 1

    def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()
