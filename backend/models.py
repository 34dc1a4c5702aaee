from typing import Optional

from pydantic import BaseModel, Field

from terramesh import constants


class GenerateRequest(BaseModel):
    geometry: dict                  # GeoJSON Polygon or Feature
    channel: str = "default"        # one active generation per channel
    vertical_exaggeration: float = 1.0
    building_scale_factor: float = 1.0
    terrain_base_height: float = constants.TERRAIN_BASE_HEIGHT
    grid_size: int = constants.GRID_SIZE
    layers: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_LAYERS))
    containment: str = "any_vertex"
    output_format: str = "glb"      # "obj", "stl", "ply", "glb" or "3mf"
    debounce: bool = True

    def signature_params(self) -> dict:
        """Fields that change the generated geometry."""
        return self.model_dump(exclude={"channel", "debounce", "output_format"})


class GenerationResponse(BaseModel):
    generation_id: str
    channel: str
    status: str
    progress: float
    message: str
    result: Optional[dict] = None
    error: Optional[str] = None
