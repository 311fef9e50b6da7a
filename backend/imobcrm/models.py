import uuid
from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo
from pydantic import field_validator
from imobcrm.config import settings


def new_id() -> str:
    return str(uuid.uuid4())


def to_calendar_local(value: Optional[datetime]) -> Optional[datetime]:
    """Horário com offset → horário local do calendário, sem tzinfo"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(settings.calendar_timezone)).replace(tzinfo=None)


class UserRole(str, Enum):
    ADMIN = "admin"
    CORRETOR = "corretor"
    ASSISTENTE = "assistente"


class UsuarioBase(SQLModel):
    email: str = Field(unique=True, index=True)
    nome: str
    telefone: Optional[str] = None
    cargo: Optional[str] = None
    ativo: bool = True


class Usuario(UsuarioBase, table=True):
    __tablename__ = "usuarios"

    id: str = Field(default_factory=new_id, primary_key=True)
    hashed_password: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    roles: List["UserRoleAssignment"] = Relationship(back_populates="usuario")

    @property
    def role(self) -> Optional[UserRole]:
        return self.roles[0].role if self.roles else None


class UserRoleAssignment(SQLModel, table=True):
    __tablename__ = "user_roles"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="usuarios.id", index=True)
    role: UserRole = UserRole.CORRETOR
    created_at: datetime = Field(default_factory=datetime.utcnow)

    usuario: Optional[Usuario] = Relationship(back_populates="roles")


class UsuarioCreate(SQLModel):
    email: str
    password: str
    nome: str

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError('Password cannot be empty')
        # Bcrypt has a 72 byte limit
        if len(v.encode('utf-8')) > 72:
            raise ValueError('Password is too long. Maximum length is 72 characters.')
        if len(v) < 6:
            raise ValueError('Senha muito fraca. Use no mínimo 6 caracteres')
        return v


class UsuarioLogin(SQLModel):
    email: str
    password: str


class UsuarioUpdate(SQLModel):
    nome: Optional[str] = None
    telefone: Optional[str] = None
    cargo: Optional[str] = None
    ativo: Optional[bool] = None


class UsuarioInvite(SQLModel):
    email: str
    nome: str
    role: UserRole = UserRole.CORRETOR
    telefone: Optional[str] = None
    cargo: Optional[str] = None


class UsuarioRoleUpdate(SQLModel):
    role: UserRole


class UsuarioResponse(SQLModel):
    id: str
    email: str
    nome: str
    telefone: Optional[str]
    cargo: Optional[str]
    ativo: bool
    role: Optional[UserRole] = None
    created_at: datetime


class Token(SQLModel):
    access_token: str
    token_type: str = "bearer"


class Temperatura(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


class Lead(SQLModel, table=True):
    __tablename__ = "leads"

    id: str = Field(default_factory=new_id, primary_key=True)
    nome: str
    email: Optional[str] = None
    telefone: Optional[str] = None
    temperatura: Temperatura = Temperatura.WARM
    origem: str = "site"  # site, portal, indicação, facebook, etc
    interesse: Optional[str] = None  # ex: "Apartamento 3 quartos"
    observacoes: Optional[str] = None
    orcamento_min: Optional[float] = None
    orcamento_max: Optional[float] = None
    finalizado: bool = Field(default=False, index=True)
    corretor_id: Optional[str] = Field(default=None, foreign_key="usuarios.id")
    ultimo_contato: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class LeadCreate(SQLModel):
    nome: str
    telefone: str
    temperatura: Temperatura = Temperatura.WARM
    origem: str = "site"
    email: Optional[str] = None
    interesse: Optional[str] = None
    observacoes: Optional[str] = None
    orcamento_min: Optional[float] = None
    orcamento_max: Optional[float] = None
    corretor_id: Optional[str] = None

    @field_validator('nome')
    @classmethod
    def validate_nome(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Nome é obrigatório')
        if len(v) > 100:
            raise ValueError('Nome muito longo')
        return v

    @field_validator('telefone')
    @classmethod
    def validate_telefone(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError('Telefone inválido')
        if len(v) > 20:
            raise ValueError('Telefone muito longo')
        return v

    @field_validator('origem')
    @classmethod
    def validate_origem(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Origem é obrigatória')
        if len(v) > 50:
            raise ValueError('Origem muito longa')
        return v

    @field_validator('observacoes')
    @classmethod
    def validate_observacoes(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > 500:
            raise ValueError('Observações muito longas')
        return v or None


class LeadUpdate(SQLModel):
    nome: Optional[str] = None
    email: Optional[str] = None
    telefone: Optional[str] = None
    temperatura: Optional[Temperatura] = None
    origem: Optional[str] = None
    interesse: Optional[str] = None
    observacoes: Optional[str] = None
    orcamento_min: Optional[float] = None
    orcamento_max: Optional[float] = None
    corretor_id: Optional[str] = None


class LeadResponse(SQLModel):
    id: str
    nome: str
    email: Optional[str]
    telefone: Optional[str]
    temperatura: Temperatura
    origem: str
    interesse: Optional[str]
    observacoes: Optional[str]
    orcamento_min: Optional[float]
    orcamento_max: Optional[float]
    finalizado: bool
    corretor_id: Optional[str]
    ultimo_contato: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class FunilEtapa(SQLModel, table=True):
    __tablename__ = "funil_etapas"

    id: str = Field(default_factory=new_id, primary_key=True)
    nome: str
    ordem: int = Field(index=True)
    cor: str = "#3B82F6"
    created_at: datetime = Field(default_factory=datetime.utcnow)


class FunilEtapaCreate(SQLModel):
    nome: str
    ordem: int
    cor: str = "#3B82F6"


class FunilEtapaResponse(SQLModel):
    id: str
    nome: str
    ordem: int
    cor: str


class LeadFunil(SQLModel, table=True):
    """Etapa atual do lead no funil (no máximo uma linha por lead)"""
    __tablename__ = "lead_funil"

    id: str = Field(default_factory=new_id, primary_key=True)
    lead_id: str = Field(foreign_key="leads.id", unique=True, index=True)
    etapa_id: str = Field(foreign_key="funil_etapas.id", index=True)
    data_entrada: datetime = Field(default_factory=datetime.utcnow)


class LeadFunilMove(SQLModel):
    lead_id: Optional[str] = None
    etapa_id: Optional[str] = None


class InteracaoTipo(str, Enum):
    OBSERVACAO = "observacao"
    LIGACAO = "ligacao"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    VISITA = "visita"
    PROPOSTA = "proposta"


class LeadInteracao(SQLModel, table=True):
    __tablename__ = "lead_interacoes"

    id: str = Field(default_factory=new_id, primary_key=True)
    lead_id: str = Field(foreign_key="leads.id", index=True)
    usuario_id: Optional[str] = Field(default=None, foreign_key="usuarios.id")
    tipo: InteracaoTipo = InteracaoTipo.OBSERVACAO
    descricao: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LeadInteracaoCreate(SQLModel):
    tipo: InteracaoTipo = InteracaoTipo.OBSERVACAO
    descricao: str


class LeadInteracaoResponse(SQLModel):
    id: str
    lead_id: str
    usuario_id: Optional[str]
    tipo: InteracaoTipo
    descricao: str
    created_at: datetime


class AtividadeSistema(SQLModel, table=True):
    """Feed de atividades do sistema (append-only)"""
    __tablename__ = "atividades_sistema"

    id: str = Field(default_factory=new_id, primary_key=True)
    tipo: str = Field(index=True)  # etapa_alterada, lead_criado, visita_agendada, ...
    titulo: str
    descricao: Optional[str] = None
    lead_id: Optional[str] = Field(default=None, foreign_key="leads.id", index=True)
    usuario_id: Optional[str] = Field(default=None, foreign_key="usuarios.id")
    metadata_json: Optional[str] = Field(default=None, description="JSON string com dados adicionais")  # evita conflito com SQLAlchemy.metadata
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AtividadeSistemaResponse(SQLModel):
    id: str
    tipo: str
    titulo: str
    descricao: Optional[str]
    lead_id: Optional[str]
    usuario_id: Optional[str]
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class ImovelFinalidade(str, Enum):
    VENDA = "venda"
    ALUGUEL = "aluguel"


class ImovelStatus(str, Enum):
    DISPONIVEL = "disponivel"
    RESERVADO = "reservado"
    VENDIDO = "vendido"
    ALUGADO = "alugado"


class ImovelBase(SQLModel):
    tipo: str
    finalidade: ImovelFinalidade = ImovelFinalidade.VENDA
    cep: str
    endereco: str
    numero: Optional[str] = None
    complemento: Optional[str] = None
    bairro: str
    cidade: str
    estado: str
    valor_venda: Optional[float] = None
    valor_aluguel: Optional[float] = None
    valor_condominio: Optional[float] = None
    valor_iptu: Optional[float] = None
    quartos: Optional[int] = None
    banheiros: Optional[int] = None
    vagas: Optional[int] = None
    area_total: Optional[float] = None
    area_util: Optional[float] = None
    descricao: Optional[str] = None
    status: ImovelStatus = ImovelStatus.DISPONIVEL


class Imovel(ImovelBase, table=True):
    __tablename__ = "imoveis"

    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ImovelCreate(ImovelBase):
    @field_validator('tipo', 'endereco', 'bairro', 'cidade')
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Campo obrigatório')
        return v.strip()

    @field_validator('cep')
    @classmethod
    def validate_cep(cls, v: str) -> str:
        if len(''.join(c for c in v if c.isdigit())) < 8:
            raise ValueError('CEP inválido')
        return v

    @field_validator('estado')
    @classmethod
    def validate_estado(cls, v: str) -> str:
        if len(v.strip()) < 2:
            raise ValueError('Estado é obrigatório')
        return v.strip().upper()


class ImovelUpdate(SQLModel):
    tipo: Optional[str] = None
    finalidade: Optional[ImovelFinalidade] = None
    cep: Optional[str] = None
    endereco: Optional[str] = None
    numero: Optional[str] = None
    complemento: Optional[str] = None
    bairro: Optional[str] = None
    cidade: Optional[str] = None
    estado: Optional[str] = None
    valor_venda: Optional[float] = None
    valor_aluguel: Optional[float] = None
    valor_condominio: Optional[float] = None
    valor_iptu: Optional[float] = None
    quartos: Optional[int] = None
    banheiros: Optional[int] = None
    vagas: Optional[int] = None
    area_total: Optional[float] = None
    area_util: Optional[float] = None
    descricao: Optional[str] = None
    status: Optional[ImovelStatus] = None


class ImovelResponse(ImovelBase):
    id: str
    created_at: datetime
    updated_at: datetime


class VisitaTipo(str, Enum):
    PRESENCIAL = "presencial"
    VIRTUAL = "virtual"


class VisitaStatus(str, Enum):
    AGENDADA = "agendada"
    REALIZADA = "realizada"
    CANCELADA = "cancelada"


class Visita(SQLModel, table=True):
    __tablename__ = "visitas"

    id: str = Field(default_factory=new_id, primary_key=True)
    lead_id: str = Field(foreign_key="leads.id", index=True)
    imovel_id: Optional[str] = Field(default=None, foreign_key="imoveis.id", index=True)
    corretor_id: Optional[str] = Field(default=None, foreign_key="usuarios.id")
    data_hora: datetime = Field(index=True)  # horário local (calendar_timezone)
    duracao: int = 60  # minutos
    tipo: VisitaTipo = VisitaTipo.PRESENCIAL
    status: VisitaStatus = VisitaStatus.AGENDADA
    observacoes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    lead: Optional[Lead] = Relationship()
    imovel: Optional[Imovel] = Relationship()


class VisitaCreate(SQLModel):
    lead_id: str
    imovel_id: Optional[str] = None
    corretor_id: Optional[str] = None
    data_hora: datetime
    duracao: int = Field(default=60, gt=0)
    tipo: VisitaTipo = VisitaTipo.PRESENCIAL
    observacoes: Optional[str] = None

    @field_validator('data_hora')
    @classmethod
    def validate_data_hora(cls, v: datetime) -> datetime:
        # O frontend envia ISO em UTC ("...Z"); data_hora é guardada em horário local
        return to_calendar_local(v)


class VisitaUpdate(SQLModel):
    imovel_id: Optional[str] = None
    corretor_id: Optional[str] = None
    data_hora: Optional[datetime] = None
    duracao: Optional[int] = Field(default=None, gt=0)
    tipo: Optional[VisitaTipo] = None
    status: Optional[VisitaStatus] = None
    observacoes: Optional[str] = None

    @field_validator('data_hora')
    @classmethod
    def validate_data_hora(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_calendar_local(v)


class VisitaResponse(SQLModel):
    id: str
    lead_id: str
    imovel_id: Optional[str]
    corretor_id: Optional[str]
    data_hora: datetime
    duracao: int
    tipo: VisitaTipo
    status: VisitaStatus
    observacoes: Optional[str]
    created_at: datetime
    updated_at: datetime
    lead_nome: Optional[str] = None
    imovel_endereco: Optional[str] = None


class PropostaStatus(str, Enum):
    ENVIADA = "enviada"
    EM_ANALISE = "em_analise"
    APROVADA = "aprovada"
    RECUSADA = "recusada"


class Proposta(SQLModel, table=True):
    __tablename__ = "propostas"

    id: str = Field(default_factory=new_id, primary_key=True)
    codigo: str = Field(unique=True, index=True)
    lead_id: str = Field(foreign_key="leads.id", index=True)
    imovel_id: Optional[str] = Field(default=None, foreign_key="imoveis.id")
    valor: float
    valor_entrada: Optional[float] = None
    num_parcelas: Optional[int] = None
    usa_fgts: bool = False
    condicoes_especiais: Optional[str] = None
    validade: Optional[datetime] = None
    status: PropostaStatus = PropostaStatus.ENVIADA
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    lead: Optional[Lead] = Relationship()
    imovel: Optional[Imovel] = Relationship()


class PropostaCreate(SQLModel):
    lead_id: str
    imovel_id: Optional[str] = None
    valor: float = Field(gt=0)
    valor_entrada: Optional[float] = None
    num_parcelas: Optional[int] = None
    usa_fgts: bool = False
    condicoes_especiais: Optional[str] = None
    validade: Optional[datetime] = None
    status: PropostaStatus = PropostaStatus.ENVIADA


class PropostaUpdate(SQLModel):
    imovel_id: Optional[str] = None
    valor: Optional[float] = Field(default=None, gt=0)
    valor_entrada: Optional[float] = None
    num_parcelas: Optional[int] = None
    usa_fgts: Optional[bool] = None
    condicoes_especiais: Optional[str] = None
    validade: Optional[datetime] = None
    status: Optional[PropostaStatus] = None


class PropostaResponse(SQLModel):
    id: str
    codigo: str
    lead_id: str
    imovel_id: Optional[str]
    valor: float
    valor_entrada: Optional[float]
    num_parcelas: Optional[int]
    usa_fgts: bool
    condicoes_especiais: Optional[str]
    validade: Optional[datetime]
    status: PropostaStatus
    created_at: datetime
    updated_at: datetime
    lead_nome: Optional[str] = None
    imovel_endereco: Optional[str] = None


class GoogleCalendarToken(SQLModel, table=True):
    """Tokens OAuth2 do Google Calendar (um por usuário, criptografados)"""
    __tablename__ = "google_calendar_tokens"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="usuarios.id", unique=True, index=True)
    access_token: str  # Fernet
    refresh_token: Optional[str] = None  # Fernet
    token_expiry: datetime  # UTC
    webhook_channel_id: Optional[str] = Field(default=None, index=True)
    webhook_resource_id: Optional[str] = None
    webhook_expiry: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class VisitaGoogleSync(SQLModel, table=True):
    __tablename__ = "visitas_google_sync"

    id: str = Field(default_factory=new_id, primary_key=True)
    visita_id: str = Field(foreign_key="visitas.id", index=True)
    user_id: str = Field(foreign_key="usuarios.id", index=True)
    google_event_id: str = Field(index=True)
    last_synced_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class GoogleCalendarStatus(SQLModel):
    connected: bool
    connected_at: Optional[datetime] = None
    webhook_expiry: Optional[datetime] = None


class GoogleCalendarCodeExchange(SQLModel):
    code: str


class GoogleCalendarSyncRequest(SQLModel):
    action: str  # create | update | delete
    visita_id: str
