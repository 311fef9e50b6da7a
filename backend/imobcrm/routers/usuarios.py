import logging
from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select
from imobcrm.database import get_session
from imobcrm.models import (
    Usuario, UsuarioResponse, UsuarioUpdate, UsuarioInvite, UsuarioRoleUpdate,
    UserRoleAssignment
)
from imobcrm.auth import get_password_hash, generate_temporary_password
from imobcrm.dependencies import get_current_active_user, require_admin, get_query_cache
from imobcrm.routers.auth import to_usuario_response
from imobcrm.services import query_cache as qc
from imobcrm.services.query_cache import QueryCache

logger = logging.getLogger(__name__)

router = APIRouter()


def get_usuario_or_404(session: Session, usuario_id: str) -> Usuario:
    usuario = session.get(Usuario, usuario_id)
    if not usuario:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Usuário não encontrado"
        )
    return usuario


@router.get("", response_model=List[UsuarioResponse])
async def get_usuarios(
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Equipe ordenada por nome"""
    def load():
        usuarios = session.exec(select(Usuario).order_by(Usuario.nome)).all()
        return [to_usuario_response(u).model_dump(mode="json") for u in usuarios]

    return await cache.fetch_query(qc.USUARIOS, load)


@router.get("/me", response_model=UsuarioResponse)
async def get_me(current_user: Usuario = Depends(get_current_active_user)):
    return to_usuario_response(current_user)


@router.put("/me", response_model=UsuarioResponse)
async def update_me(
    update_data: UsuarioUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(get_current_active_user)
):
    """Atualiza o próprio perfil (ativo só pode ser alterado por admin)"""
    data = update_data.model_dump(exclude_unset=True)
    data.pop("ativo", None)
    for field, value in data.items():
        setattr(current_user, field, value)
    current_user.updated_at = datetime.utcnow()
    session.add(current_user)
    session.commit()
    session.refresh(current_user)

    cache.invalidate_queries(qc.USUARIOS)
    return to_usuario_response(current_user)


@router.post("/invite", response_model=UsuarioResponse, status_code=status.HTTP_201_CREATED)
async def invite_usuario(
    invite: UsuarioInvite,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(require_admin)
):
    """Convida um membro da equipe com senha temporária e papel definido"""
    existing = session.exec(select(Usuario).where(Usuario.email == invite.email)).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    usuario = Usuario(
        email=invite.email,
        nome=invite.nome,
        telefone=invite.telefone,
        cargo=invite.cargo,
        hashed_password=get_password_hash(generate_temporary_password())
    )
    session.add(usuario)
    session.flush()
    session.add(UserRoleAssignment(user_id=usuario.id, role=invite.role))
    session.commit()
    session.refresh(usuario)

    logger.info(f"✅ Usuário {usuario.email} convidado por {current_user.email} como {invite.role.value}")
    cache.invalidate_queries(qc.USUARIOS)
    return to_usuario_response(usuario)


@router.put("/{usuario_id}/role", response_model=UsuarioResponse)
async def update_usuario_role(
    usuario_id: str,
    role_data: UsuarioRoleUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(require_admin)
):
    """Troca o papel do usuário (remove os papéis atuais e insere o novo)"""
    usuario = get_usuario_or_404(session, usuario_id)

    for assignment in session.exec(
        select(UserRoleAssignment).where(UserRoleAssignment.user_id == usuario_id)
    ).all():
        session.delete(assignment)
    session.flush()
    session.add(UserRoleAssignment(user_id=usuario_id, role=role_data.role))
    session.commit()
    session.refresh(usuario)

    cache.invalidate_queries(qc.USUARIOS)
    return to_usuario_response(usuario)


@router.put("/{usuario_id}", response_model=UsuarioResponse)
async def update_usuario(
    usuario_id: str,
    update_data: UsuarioUpdate,
    session: Session = Depends(get_session),
    cache: QueryCache = Depends(get_query_cache),
    current_user: Usuario = Depends(require_admin)
):
    usuario = get_usuario_or_404(session, usuario_id)
    for field, value in update_data.model_dump(exclude_unset=True).items():
        setattr(usuario, field, value)
    usuario.updated_at = datetime.utcnow()
    session.add(usuario)
    session.commit()
    session.refresh(usuario)

    cache.invalidate_queries(qc.USUARIOS)
    return to_usuario_response(usuario)
