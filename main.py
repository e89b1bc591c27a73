from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from torstream.core.config import settings
from torstream.api.resolve import router as resolve_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
)

# Players fetch resolve URLs cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.VERSION}")

@app.get("/")
async def root():
    return {"message": f"{settings.PROJECT_NAME} is running"}

app.include_router(resolve_router)
