from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.logging import configure_logging
from .api.routes_jobs import router as jobs_router
from .api.routes_ai import router as ai_router
from .api.routes_credits import router as credits_router

configure_logging()
settings = get_settings()

app = FastAPI(title="Writing Desk API")


def _split_origins(raw: str) -> list[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


# CORS:
# - In prod, FRONTEND_ORIGIN is required and we never fall back to "*".
# - Elsewhere, an explicit origin list wins; otherwise anything goes.
if settings.ENV.lower() == "prod":
    if not settings.FRONTEND_ORIGIN:
        raise RuntimeError(
            "FRONTEND_ORIGIN must be set in production – refusing to start with wide-open CORS."
        )
    origins = _split_origins(settings.FRONTEND_ORIGIN)
elif settings.FRONTEND_ORIGIN and not settings.CORS_ALLOW_ALL_ORIGINS:
    origins = _split_origins(settings.FRONTEND_ORIGIN)
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(jobs_router, prefix=settings.API_PREFIX)
app.include_router(ai_router, prefix=settings.API_PREFIX)
app.include_router(credits_router, prefix=settings.API_PREFIX)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}
