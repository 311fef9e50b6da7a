import logging
from fastapi import Depends, HTTPException, status, Request
from sqlmodel import Session
from imobcrm.database import get_session
from imobcrm.models import Usuario, UserRole
from imobcrm.auth import decode_access_token
from imobcrm.services.query_cache import QueryCache
from imobcrm.services.google_calendar_client import GoogleCalendarClient
from imobcrm.services.authorization_flow import AuthorizationRegistry

logger = logging.getLogger(__name__)


def get_current_user(
    request: Request,
    session: Session = Depends(get_session)
) -> Usuario:
    """Get current authenticated user from JWT token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Extrair o token do header "Bearer <token>"
    try:
        scheme, token = authorization.split(maxsplit=1)
    except ValueError:
        logger.error("Invalid Authorization header format")
        raise credentials_exception
    if scheme.lower() != "bearer":
        logger.error(f"Invalid authorization scheme: {scheme}")
        raise credentials_exception

    payload = decode_access_token(token)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        logger.error("No user_id in token payload")
        raise credentials_exception

    user = session.get(Usuario, user_id)
    if user is None:
        logger.error(f"User {user_id} not found in database")
        raise credentials_exception

    return user


def get_current_active_user(
    current_user: Usuario = Depends(get_current_user)
) -> Usuario:
    """Get current active user"""
    if not current_user.ativo:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is inactive"
        )
    return current_user


def require_admin(
    current_user: Usuario = Depends(get_current_active_user)
) -> Usuario:
    """Apenas administradores gerenciam a equipe"""
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Apenas administradores podem realizar esta ação"
        )
    return current_user


def get_query_cache(request: Request) -> QueryCache:
    """Cache de consultas da aplicação (app.state.query_cache)"""
    return request.app.state.query_cache


def get_calendar_client(request: Request) -> GoogleCalendarClient:
    """Cliente do Google Calendar (app.state.calendar_client)"""
    return request.app.state.calendar_client


def get_authorization_registry(request: Request) -> AuthorizationRegistry:
    return request.app.state.authorization_registry
