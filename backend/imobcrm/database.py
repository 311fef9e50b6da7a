import logging
from sqlmodel import SQLModel, create_engine, Session, select
from imobcrm.config import settings
from imobcrm.models import FunilEtapa

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, echo=settings.sql_echo, connect_args=_connect_args)


DEFAULT_FUNIL_ETAPAS = [
    ("Novo Lead", "#3B82F6"),
    ("Contato Inicial", "#8B5CF6"),
    ("Qualificado", "#06B6D4"),
    ("Visita Agendada", "#F59E0B"),
    ("Proposta Enviada", "#F97316"),
    ("Negociação", "#EC4899"),
    ("Fechado", "#10B981"),
]


def get_session():
    """Dependency for getting database session"""
    with Session(engine) as session:
        yield session


def seed_funil_etapas(session: Session) -> int:
    """Cria as etapas padrão do funil se a tabela estiver vazia"""
    existing = session.exec(select(FunilEtapa)).first()
    if existing:
        return 0

    for ordem, (nome, cor) in enumerate(DEFAULT_FUNIL_ETAPAS, start=1):
        session.add(FunilEtapa(nome=nome, ordem=ordem, cor=cor))
    session.commit()
    logger.info(f"✓ {len(DEFAULT_FUNIL_ETAPAS)} etapas padrão do funil criadas")
    return len(DEFAULT_FUNIL_ETAPAS)


def init_db(bind=None):
    """Initialize database tables"""
    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    with Session(bind) as session:
        seed_funil_etapas(session)
