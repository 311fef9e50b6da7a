"""
Health check endpoint
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlmodel import Session
from imobcrm.database import get_session

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(session: Session = Depends(get_session)):
    """Verifica a conexão com o banco de dados"""
    try:
        session.exec(text("SELECT 1"))
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "healthy", "database": "connected"}
        )
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)}
        )
