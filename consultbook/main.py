import asyncio
import logging

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from consultbook.core import config
from consultbook.database import Base, engine, ensure_appointment_schema
from consultbook.models import appointment, notification, payment, user  # noqa: F401
from consultbook.routes import advisor_routes, appointment_routes, auth_routes, consultation_routes
from consultbook.scheduling.lifecycle import build_lifecycle

app = FastAPI(title='Consultbook API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


async def run_sweep_periodically(lifecycle, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(lifecycle.cleanup_expired_appointments)
        except SQLAlchemyError:
            logger.exception('Scheduled cleanup of expired appointments failed')


@app.on_event('startup')
async def initialize_application() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL.')

    app.state.lifecycle = build_lifecycle()
    app.state.sweep_task = None
    if config.SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweep_task = asyncio.create_task(
            run_sweep_periodically(app.state.lifecycle, config.SWEEP_INTERVAL_SECONDS)
        )


@app.on_event('shutdown')
async def stop_sweep() -> None:
    task = getattr(app.state, 'sweep_task', None)
    if task is not None:
        task.cancel()


@app.get('/')
def root():
    return {'status': 'Consultbook API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(advisor_routes.router, prefix='/advisors')
app.include_router(consultation_routes.router, prefix='/consultations')
