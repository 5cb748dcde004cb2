from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from caseload.core.config import settings
from caseload.core.deps import get_db, get_import_queue
from caseload.core.logging import configure_logging, logger
from caseload.api.router import api_router
from caseload.db.session import engine
from caseload.db.base import Base
from caseload.db import models  # noqa: F401
from caseload.services.queue import ImportQueue
from caseload.services.status import health

def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    app = FastAPI(title="Caseload import service", version="0.1.0")

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz(db: Session = Depends(get_db), queue: ImportQueue = Depends(get_import_queue)):
        return health(db, queue)

    @app.on_event("startup")
    def _startup():
        # dev convenience only; prod runs alembic
        if settings.ENV == "dev":
            Base.metadata.create_all(bind=engine)

    app.include_router(api_router)
    logger.info("app_started", env=settings.ENV)
    return app

app = create_app()
