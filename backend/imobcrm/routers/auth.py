import logging
from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select
from imobcrm.database import get_session
from imobcrm.models import (
    Usuario, UsuarioCreate, UsuarioLogin, UsuarioResponse, UserRole, UserRoleAssignment
)
from imobcrm.auth import verify_password, get_password_hash, create_access_token
from imobcrm.config import settings
from imobcrm.dependencies import get_current_active_user

logger = logging.getLogger(__name__)

router = APIRouter()


def to_usuario_response(usuario: Usuario) -> UsuarioResponse:
    return UsuarioResponse(
        id=usuario.id,
        email=usuario.email,
        nome=usuario.nome,
        telefone=usuario.telefone,
        cargo=usuario.cargo,
        ativo=usuario.ativo,
        role=usuario.role,
        created_at=usuario.created_at
    )


@router.post("/register", response_model=UsuarioResponse)
async def register(
    user_data: UsuarioCreate,
    session: Session = Depends(get_session)
):
    """Cadastra um usuário. O primeiro usuário do sistema vira admin."""
    existing_user = session.exec(
        select(Usuario).where(Usuario.email == user_data.email)
    ).first()
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    try:
        is_first_user = session.exec(select(Usuario)).first() is None
        usuario = Usuario(
            email=user_data.email,
            nome=user_data.nome,
            hashed_password=get_password_hash(user_data.password)
        )
        session.add(usuario)
        session.flush()
        session.add(UserRoleAssignment(
            user_id=usuario.id,
            role=UserRole.ADMIN if is_first_user else UserRole.CORRETOR
        ))
        session.commit()
        session.refresh(usuario)
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Erro ao cadastrar usuário {user_data.email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Error during registration: {str(e)}"
        )

    logger.info(f"✅ Usuário cadastrado: {usuario.email} ({usuario.role.value})")
    return to_usuario_response(usuario)


@router.post("/login")
async def login(
    credentials: UsuarioLogin,
    session: Session = Depends(get_session)
):
    """Login and get access token"""
    usuario = session.exec(
        select(Usuario).where(Usuario.email == credentials.email)
    ).first()

    if not usuario or not verify_password(credentials.password, usuario.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not usuario.ativo:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is inactive"
        )

    access_token = create_access_token(
        data={"sub": usuario.id},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
    )

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": to_usuario_response(usuario)
    }


@router.get("/me", response_model=UsuarioResponse)
async def get_current_user_info(
    current_user: Usuario = Depends(get_current_active_user)
):
    """Get current user information"""
    return to_usuario_response(current_user)
