import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.config import ServerConfig
from backend.routes import router
from chronicles.manager import ConfigurationError
from chronicles.ratelimit import AuxiliaryLimiters

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)


def create_app(config: ServerConfig | None = None) -> FastAPI:
    resolved = config or ServerConfig.from_env()

    app = FastAPI(title="Azeroth Chronicles")
    app.state.config = resolved
    app.state.limiters = AuxiliaryLimiters.build(
        min_interval=resolved.aux_min_interval, cooldown=resolved.aux_cooldown
    )

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        # Raised while resolving the provider, before any stream is opened
        logger.warning("provider not configured for %s: %s", request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=500)

    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn
app = create_app()
