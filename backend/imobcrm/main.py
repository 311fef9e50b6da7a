import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from imobcrm import health
from imobcrm.config import settings
from imobcrm.database import init_db
from imobcrm.routers import (
    auth, usuarios, leads, funil, imoveis, visitas, propostas, dashboard, google_calendar
)
from imobcrm.services.authorization_flow import AuthorizationRegistry
from imobcrm.services.google_calendar_client import GoogleCalendarClient
from imobcrm.services.query_cache import QueryCache

# Configurar logging para garantir que todos os logs apareçam
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

# Configurar nível de log para SQLAlchemy (reduzir verbosidade)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup"""
    init_db()
    yield


app = FastAPI(
    title="ImobCRM",
    description="CRM imobiliário: leads, funil de vendas, imóveis, visitas e propostas",
    version="1.0.0",
    lifespan=lifespan
)

# Estado compartilhado entre requisições
app.state.query_cache = QueryCache()
app.state.calendar_client = GoogleCalendarClient()
app.state.authorization_registry = AuthorizationRegistry()

# CORS middleware - DEVE SER ADICIONADO ANTES DE QUALQUER OUTRO MIDDLEWARE
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(dict.fromkeys([settings.frontend_url, *settings.cors_origins])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers para garantir que CORS seja aplicado mesmo em erros
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers={
            "Access-Control-Allow-Origin": request.headers.get("origin", "*"),
            "Access-Control-Allow-Credentials": "true",
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Internal server error: {str(exc)}"},
        headers={
            "Access-Control-Allow-Origin": request.headers.get("origin", "*"),
            "Access-Control-Allow-Credentials": "true",
        }
    )


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(usuarios.router, prefix="/api/usuarios", tags=["usuarios"])
app.include_router(leads.router, prefix="/api/leads", tags=["leads"])
app.include_router(funil.router, prefix="/api/funil", tags=["funil"])
app.include_router(imoveis.router, prefix="/api/imoveis", tags=["imoveis"])
app.include_router(visitas.router, prefix="/api/visitas", tags=["visitas"])
app.include_router(propostas.router, prefix="/api/propostas", tags=["propostas"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["dashboard"])
app.include_router(google_calendar.router, prefix="/api/google-calendar", tags=["google-calendar"])


@app.get("/")
async def root():
    return {"message": "ImobCRM API", "version": "1.0.0"}
