import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError

from app.auth import get_current_principal
from app.config import settings
from app.routers import checkins, tasks
from app.security.csrf import install_csrf_cookie_middleware
from app.security.headers import install_security_headers
from app.security.sessions import install_auth_session_middleware

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


configure_logging()

app = FastAPI(title='Store Task Portal')

install_security_headers(app)
install_csrf_cookie_middleware(app)
install_auth_session_middleware(app)

app.include_router(tasks.router)
app.include_router(checkins.router)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception('Database error on %s %s', request.method, request.url.path)
    return JSONResponse({'detail': 'Service temporarily unavailable'}, status_code=503)


@app.get('/')
def root(request: Request):
    principal = get_current_principal(request)
    return {
        'principal_id': principal.id,
        'username': principal.username,
        'role': principal.role.value,
        'store_id': principal.store_id,
        'capabilities': sorted(capability.value for capability in principal.capabilities),
    }


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
