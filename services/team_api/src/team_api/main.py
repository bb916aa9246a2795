import logging
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.db.session import get_session
from team_api.errors import TeamApiError
from team_api.logging_config import configure_logging
from team_api.request_id import REQUEST_ID_HEADER, set_request_id
from team_api.routers.auth import router as auth_router
from team_api.routers.credits import router as credits_router
from team_api.routers.invitations import router as invitations_router
from team_api.routers.payments import router as payments_router
from team_api.routers.teams import router as teams_router
from team_api.settings import get_settings

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Team API")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_request_id(request_id)
    if settings.app_env.lower() == "prod":
        if request.url.path in ("/docs", "/openapi.json"):
            return Response(status_code=404)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(TeamApiError)
async def team_api_error_handler(request: Request, exc: TeamApiError):
    logger.info(
        "request rejected path=%s code=%s kind=%s",
        request.url.path,
        exc.code,
        exc.kind,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/internal/db-ping")
async def db_ping(session: AsyncSession = Depends(get_session)):
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=503, detail="db unavailable")
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(teams_router)
app.include_router(invitations_router)
app.include_router(credits_router)
app.include_router(payments_router)
