import os
import pathlib

from terramesh import constants

BASE_DIR = pathlib.Path(__file__).parent.parent.absolute()
OUTPUT_DIR = pathlib.Path(os.environ.get("TERRAMESH_OUTPUT_DIR", constants.OUTPUT_DIR))

# Quiet period before a burst of parameter changes triggers a regeneration
DEBOUNCE_SECONDS = float(os.environ.get("TERRAMESH_DEBOUNCE_SECONDS", "1.0"))

# Generations kept in memory before the oldest are evicted
MAX_GENERATIONS = int(os.environ.get("TERRAMESH_MAX_GENERATIONS", "16"))

# Comma-separated list of allowed CORS origins
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "TERRAMESH_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    if origin.strip()
]
