"""
Identity Registry FastAPI Main Application
Entry point for the decentralized identity registry API.
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from identity_registry import __version__
from identity_registry.config import config
from identity_registry.database import (
    init_database,
    load_events,
    make_journal_listener,
    save_deployment,
)
from identity_registry.routes import identities, verifications, admin
from identity_registry.services.auth import NonceTracker
from identity_registry.services.deployment import deploy_registry
from identity_registry.services.encryption import get_encryption_service
from identity_registry.services.registry import IdentityRegistry

logger = logging.getLogger(__name__)

LOCAL_NETWORK = "hardhat"


def load_registry(db_path: Optional[str] = None) -> IdentityRegistry:
    """
    Rebuild the registry from the event journal, deploying a fresh one on
    the in-process network when the journal is empty.

    Raises:
        DeploymentError: the journal is empty and neither PRIVATE_KEY nor
            REGISTRY_OWNER names an owner
    """
    init_database(db_path)
    encryption = get_encryption_service()
    listener = make_journal_listener(db_path, encryption)

    events = load_events(db_path, encryption)
    if events:
        return IdentityRegistry.from_events(events, listeners=[listener])

    registry, result = deploy_registry(config.get_network(LOCAL_NETWORK), listeners=[listener])
    save_deployment(result.to_dict(), db_path)
    logger.info("Deployed new registry owned by %s", registry.contract_owner)
    return registry


def create_app(
    registry: Optional[IdentityRegistry] = None,
    require_signatures: Optional[bool] = None,
    db_path: Optional[str] = None
) -> FastAPI:
    """
    Build the API application.

    Args:
        registry: Registry to serve; loaded from the journal on startup when omitted
        require_signatures: Require signed requests (defaults to REQUIRE_SIGNATURES)
        db_path: SQLite database for the journal (defaults to DB_PATH)
    """
    app = FastAPI(
        title="Decentralized Identity Registry",
        description="Identity, credential and verification registry with owner-managed verifiers",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc"
    )

    app.state.registry = registry
    app.state.require_signatures = (
        config.REQUIRE_SIGNATURES if require_signatures is None else require_signatures
    )
    app.state.nonces = NonceTracker(config.SIGNATURE_MAX_AGE)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(identities.router, prefix="/api", tags=["Identities"])
    app.include_router(verifications.router, prefix="/api", tags=["Verifications"])
    app.include_router(admin.router, prefix="/api", tags=["Admin"])

    @app.on_event("startup")
    async def startup_event():
        """Load the registry from the journal on startup."""
        if app.state.registry is None:
            app.state.registry = load_registry(db_path)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        registry = app.state.registry
        return {
            "status": "healthy" if registry is not None else "starting",
            "service": "Decentralized Identity Registry",
            "version": __version__,
            "contract_owner": registry.contract_owner if registry is not None else None
        }

    return app


app = create_app()


def run(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Serve the API with uvicorn."""
    logging.basicConfig(
        level=config.API_LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(
        "identity_registry.main:app",
        host=host or config.API_HOST,
        port=port or config.API_PORT,
        log_level=config.API_LOG_LEVEL,
        reload=reload
    )


if __name__ == "__main__":
    run(reload=True)
