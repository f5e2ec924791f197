import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from resigner.app.api.routes import router as jobs_router
from resigner.app.core.config import Settings, get_settings
from resigner.app.services.signing_service import SigningService
from resigner.app.services.tool_invoker import ToolInvoker

logger = logging.getLogger("resigner.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source-tree version when the package is not installed.
    """
    try:
        return version("resigner")
    except PackageNotFoundError:
        return "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    invoker: Optional[ToolInvoker] = None,
) -> FastAPI:
    """
    Application factory for the APK signing service.

    ``settings`` and ``invoker`` may be injected for tests; by default both
    are built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Guarantees:
        - Fail-fast startup if configuration is invalid
        - One tool worker pool per process
        - In-flight jobs run to completion before shutdown
        """
        logger.info(
            "resigner_startup_begin",
            extra={"service": "resigner", "version": get_app_version()},
        )

        # ------------------------------------------------------------------
        # Load and validate configuration (FAIL FAST)
        # ------------------------------------------------------------------
        try:
            resolved = settings or get_settings()
        except Exception:
            logger.exception("invalid_resigner_configuration")
            raise

        resolved.work_dir.mkdir(parents=True, exist_ok=True)

        if not resolved.keystore_path.exists():
            logger.warning(
                "keystore_not_found",
                extra={"keystore_path": str(resolved.keystore_path)},
            )

        tool_invoker = invoker or ToolInvoker(resolved)

        app.state.settings = resolved
        app.state.service = SigningService(
            settings=resolved,
            invoker=tool_invoker,
        )

        eviction_task = None
        if resolved.job_ttl_seconds is not None:
            eviction_task = asyncio.create_task(
                app.state.service.run_eviction_loop(),
                name="job-eviction",
            )

        try:
            yield
        finally:
            logger.info("resigner_shutdown_begin")

            if eviction_task is not None:
                eviction_task.cancel()
                with suppress(asyncio.CancelledError):
                    await eviction_task

            await app.state.service.drain()

            if invoker is None:
                tool_invoker.close()

    app = FastAPI(
        title="resigner",
        description=(
            "Validates, repairs, aligns, signs and verifies uploaded "
            "APK archives as asynchronous jobs."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    app.include_router(jobs_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness check",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT invoke external tools
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "resigner",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
            }
        )

    return app


app = create_app()
