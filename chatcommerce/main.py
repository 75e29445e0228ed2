import logging

from fastapi import FastAPI
from motor.motor_asyncio import AsyncIOMotorDatabase

from chatcommerce.config.db import close_mongo_connection, connect_to_mongo, mongo
from chatcommerce.config.settings import Settings, get_settings
from chatcommerce.routers import admin, whatsapp
from chatcommerce.services.catalog import CatalogGateway
from chatcommerce.services.conversation import ConversationEngine
from chatcommerce.services.customers import CustomerDirectory
from chatcommerce.services.dispatcher import InboundDispatcher
from chatcommerce.services.inactivity import InactivitySupervisor
from chatcommerce.services.messenger import TwilioMessenger
from chatcommerce.services.orders import OrderLedger
from chatcommerce.services.sessions import SessionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # Twilio's HTTP client logs every request at INFO
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)


def wire_services(app: FastAPI, db: AsyncIOMotorDatabase, settings: Settings):
    """Build the engine and its collaborators and hang them on app.state."""
    sessions = SessionStore(db)
    messenger = TwilioMessenger(db, settings)
    engine = ConversationEngine(
        catalog=CatalogGateway(db),
        customers=CustomerDirectory(db),
        orders=OrderLedger(db),
        sessions=sessions,
        messenger=messenger,
        numbered_list_limit=settings.numbered_list_limit,
        currency=settings.currency_symbol,
    )
    engine.supervisor = InactivitySupervisor(
        settings.session_warning_timeout,
        settings.session_termination_timeout,
        on_warning=engine.warn_inactive,
        on_expire=engine.expire_session,
    )
    app.state.sessions = sessions
    app.state.messenger = messenger
    app.state.engine = engine
    app.state.dispatcher = InboundDispatcher(engine.handle_message)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(title="ChatCommerce WhatsApp Ordering Bot", version="0.1.0")
    app.state.settings = settings

    @app.on_event("startup")
    async def startup_event():
        await connect_to_mongo(app, settings)
        wire_services(app, mongo.db, settings)
        app.state.dispatcher.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        dispatcher = getattr(app.state, "dispatcher", None)
        if dispatcher is not None:
            await dispatcher.stop()
        engine = getattr(app.state, "engine", None)
        if engine is not None and engine.supervisor is not None:
            await engine.supervisor.shutdown()
        await close_mongo_connection(app)

    # Routers
    app.include_router(whatsapp.router, prefix="/whatsapp", tags=["whatsapp"])
    app.include_router(admin.router)

    @app.get("/healthz")
    async def healthcheck():
        return {"status": "ok"}

    return app


app = create_app()
