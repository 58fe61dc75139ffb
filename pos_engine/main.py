from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from .core.config import Settings, settings as default_settings
from .core.errors import PosError
from .core.log import configure_logging
from .db import Base, make_engine, make_session_factory
from .middleware.idempotency import install_idempotency
from .routers import display_sync, health, pos, shift
from .services.configuration import StaticConfigurationProvider, load_configuration
from .services.display_sync import DisplaySyncChannel, LocalBroadcast, SqlDisplayStore
from .services.recorder import ReconciliationJournal, SqlTransactionRecorder
from .services.register import Register, RegisterHub
from .services.settlement import CheckoutSettlement
from .services.shift import CashDrawerManager, SqlShiftStore
from .services.terminal import HttpPaymentTerminal, SimulatedTerminal

# IMPORTA MODELOS antes de create_all
from .models import pos as _pos_models  # noqa: F401


def create_app(s: Optional[Settings] = None) -> FastAPI:
    s = s or default_settings
    configure_logging(s.log_level)

    engine = make_engine(s.database_url)
    session_factory = make_session_factory(engine)
    # Crea tablas faltantes (desarrollo)
    Base.metadata.create_all(bind=engine)
    Path(s.reconciliation_log).parent.mkdir(parents=True, exist_ok=True)

    shift_store = SqlShiftStore(session_factory)
    display_store = SqlDisplayStore(session_factory)
    recorder = SqlTransactionRecorder(session_factory)
    journal = ReconciliationJournal(s.reconciliation_log)
    broadcast = LocalBroadcast()
    provider = StaticConfigurationProvider.from_settings(s)
    if s.terminal_url:
        terminal = HttpPaymentTerminal(s.terminal_url, timeout=s.terminal_timeout_seconds)
    else:
        logger.warning("TERMINAL_URL not set; card payments go to the simulated terminal")
        terminal = SimulatedTerminal()

    drawers: Dict[str, CashDrawerManager] = {}

    def drawer_for(register_id: str) -> CashDrawerManager:
        if register_id not in drawers:
            drawers[register_id] = CashDrawerManager(register_id, shift_store, tolerance=s.variance_tolerance)
        return drawers[register_id]

    async def build_register(register_id: str) -> Register:
        config = await load_configuration(provider, s.location_id)
        channel = DisplaySyncChannel(
            s.location_id, display_store, broadcast, debounce_seconds=s.display_debounce_seconds
        )
        settlement = CheckoutSettlement(
            terminal,
            recorder,
            location_id=s.location_id,
            register_id=register_id,
            journal=journal,
            split_tolerance=s.split_tolerance,
            recorder_max_attempts=s.recorder_max_attempts,
            recorder_retry_seconds=s.recorder_retry_seconds,
        )
        return Register(
            location_id=s.location_id,
            register_id=register_id,
            config=config,
            channel=channel,
            settlement=settlement,
            drawer=drawer_for(register_id),
            tip_interval=s.tip_poll_interval_seconds,
            tip_max_attempts=s.tip_poll_max_attempts,
        )

    hub = RegisterHub(build_register)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.bind(env=s.app_env, location_id=s.location_id).info("{} {} started", s.app_name, s.app_version)
        yield
        await hub.close_all()
        engine.dispose()

    app = FastAPI(title=s.app_name, version=s.app_version, lifespan=lifespan)
    app.state.settings = s
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.display_store = display_store
    app.state.broadcast = broadcast
    app.state.journal = journal
    app.state.terminal = terminal
    app.state.hub = hub
    app.state.drawer_for = drawer_for

    @app.exception_handler(PosError)
    async def _pos_error(request: Request, exc: PosError):
        logger.bind(path=request.url.path, code=exc.code).warning("{}", exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    install_idempotency(app)
    app.include_router(health.router)
    app.include_router(shift.router)
    app.include_router(pos.router)
    app.include_router(display_sync.router)
    return app


app = create_app()
