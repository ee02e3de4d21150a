"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.exception_handlers import skill_installation_error_handler
from app.core.limiter import limiter
from app.core.logging import logger
from app.core.skills.errors import SkillInstallationError
from app.core.skills.installer import SkillInstallationService
from app.core.skills.materializer import (
    CloneMaterializer,
    GenerateMaterializer,
    InMemoryWorkflowStore,
    ModeDispatchMaterializer,
    WorkflowMaterializer,
    WorkflowStore,
)
from app.core.skills.registry import SkillPackageRegistry
from app.core.skills.repository import InMemoryInstallationRepository
from app.core.skills.schema import MaterializationMode


def build_materializer(mode: MaterializationMode, store: WorkflowStore) -> WorkflowMaterializer:
    """Build the materializer for the configured mode."""
    clone = CloneMaterializer(store)
    if mode != MaterializationMode.GENERATE:
        return ModeDispatchMaterializer(mode, clone)

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=settings.DEFAULT_LLM_MODEL,
        temperature=0,
        **({"api_key": settings.OPENAI_API_KEY} if settings.OPENAI_API_KEY else {}),
    )
    return ModeDispatchMaterializer(mode, clone, GenerateMaterializer(store, llm))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the registry and installation service for the app's lifetime."""
    logger.info("application_startup", environment=settings.ENVIRONMENT.value)

    registry = SkillPackageRegistry(settings.SKILL_PACKAGES_DIR)
    store = InMemoryWorkflowStore()
    for canvas_id in registry.source_canvas_ids():
        store.seed(canvas_id, {})

    mode = MaterializationMode(settings.SKILL_MATERIALIZE_MODE)
    app.state.skill_registry = registry
    app.state.workflow_store = store
    app.state.installation_service = SkillInstallationService(
        packages=registry,
        installations=InMemoryInstallationRepository(),
        materializer=build_materializer(mode, store),
        workflow_store=store,
        materialize_timeout=settings.SKILL_MATERIALIZE_TIMEOUT_SECONDS,
        default_page_size=settings.INSTALLATION_PAGE_SIZE_DEFAULT,
        max_page_size=settings.INSTALLATION_PAGE_SIZE_MAX,
    )
    logger.info("skill_installation_service_ready", packages=len(registry), mode=mode.value)

    yield

    logger.info("application_shutdown")


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(SkillInstallationError, skill_installation_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


app = create_app()
