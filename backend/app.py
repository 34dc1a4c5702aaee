from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from backend import config
from backend.jobs import generation_manager
from backend.routers import generate


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    yield
    # Nothing may keep fetching tiles once the server stops
    generation_manager.shutdown()


app = FastAPI(
    title="terramesh API",
    description="Generate printable terrain + building meshes from map tiles",
    version="0.1.0",
    lifespan=lifespan,
)

# Map front-end origins, see TERRAMESH_CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(generate.router)

# Exported meshes are written here by the generation jobs
config.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/output", StaticFiles(directory=str(config.OUTPUT_DIR)), name="output")


@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": "terramesh API",
        "generations": len(generation_manager.registry),
    }
