from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .api.v1.api import router as v1_router
from .core.config import settings, configure_logging

configure_logging()

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Layered linguistic annotation with resumable background jobs",
    version="0.1.0",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_origin_regex=settings.ALLOWED_ORIGIN_REGEX,
)

app.include_router(v1_router, prefix=settings.API_V1_STR)

@app.get("/")
def read_root():
    return {"message": settings.PROJECT_NAME, "status": "running"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}
