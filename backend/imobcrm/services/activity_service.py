import json
import logging
from typing import Optional, Dict, Any
from datetime import datetime
from sqlmodel import Session
from imobcrm.models import AtividadeSistema, LeadInteracao, InteracaoTipo

logger = logging.getLogger(__name__)


def log_interaction(
    session: Session,
    lead_id: str,
    descricao: str,
    tipo: InteracaoTipo = InteracaoTipo.OBSERVACAO,
    usuario_id: Optional[str] = None
) -> LeadInteracao:
    """Adiciona uma entrada no histórico de interações do lead"""
    interacao = LeadInteracao(
        lead_id=lead_id,
        usuario_id=usuario_id,
        tipo=tipo,
        descricao=descricao,
        created_at=datetime.utcnow()
    )
    session.add(interacao)
    session.commit()
    session.refresh(interacao)
    return interacao


def log_activity(
    session: Session,
    tipo: str,
    titulo: str,
    descricao: Optional[str] = None,
    lead_id: Optional[str] = None,
    usuario_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AtividadeSistema:
    """
    Registra uma atividade no feed do sistema.

    Args:
        session: Sessão do banco de dados
        tipo: Tipo da atividade (etapa_alterada, lead_criado, visita_agendada, ...)
        titulo: Texto curto exibido no feed
        descricao: Detalhe opcional
        lead_id: Lead relacionado, se houver
        usuario_id: Usuário que realizou a ação
        metadata: Dados adicionais (convertidos para JSON)

    Returns:
        AtividadeSistema criada
    """
    metadata_json = None
    if metadata:
        try:
            metadata_json = json.dumps(metadata, ensure_ascii=False)
        except (TypeError, ValueError):
            # Se não conseguir serializar, converter valores para string
            metadata_json = json.dumps({k: str(v) for k, v in metadata.items()}, ensure_ascii=False)

    atividade = AtividadeSistema(
        tipo=tipo,
        titulo=titulo,
        descricao=descricao,
        lead_id=lead_id,
        usuario_id=usuario_id,
        metadata_json=metadata_json,
        created_at=datetime.utcnow()
    )
    session.add(atividade)
    session.commit()
    session.refresh(atividade)
    return atividade


def safe_log_interaction(session: Session, lead_id: str, descricao: str, **kwargs) -> Optional[LeadInteracao]:
    """Versão best-effort: falhas são logadas e não interrompem a operação principal"""
    try:
        return log_interaction(session, lead_id, descricao, **kwargs)
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Erro ao registrar interação do lead {lead_id}: {e}")
        return None


def safe_log_activity(session: Session, tipo: str, titulo: str, **kwargs) -> Optional[AtividadeSistema]:
    """Versão best-effort de log_activity"""
    try:
        return log_activity(session, tipo, titulo, **kwargs)
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Erro ao registrar atividade '{tipo}': {e}")
        return None


def parse_metadata(atividade: AtividadeSistema) -> Optional[Dict[str, Any]]:
    if not atividade.metadata_json:
        return None
    try:
        return json.loads(atividade.metadata_json)
    except (TypeError, ValueError):
        return None
