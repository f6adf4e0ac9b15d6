import os
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field

CHARACTER_SHOTS: Dict[str, str] = {
    "full": "Full-body, dynamic, neutral standing pose.",
    "closeup_happy": "Close-up portrait from the chest up, happy expression.",
    "action": "Medium shot, in a dynamic action pose.",
    "profile": "Side profile view from the shoulders up, neutral expression.",
}

SCENE_PERSPECTIVES: Dict[str, str] = {
    "wide": "Establishing Wide Shot",
    "medium": "Medium Shot from a neutral angle",
    "low": "Dramatic Low Angle",
    "high": "Observational High Angle",
}

COVER_PAGE_NUMBER = 0
CENTERFOLD_PAGE_NUMBER = "3-4"
DEFAULT_PERSPECTIVE = "medium"


class PipelineConfig(BaseModel):
    """
    Tuned knobs of the generation pipeline.
    The defaults encode the behaviour the pipeline was tuned with; change them deliberately.
    """
    max_attempts: int = Field(3, ge=1, description="Panel image attempts, including the human-reviewed one")
    cast_size: int = Field(5, description="Protagonist + 2 allies + antagonist + 1 minion")
    character_shots: Dict[str, str] = Field(default_factory=lambda: dict(CHARACTER_SHOTS))
    scene_perspectives: Literal["single", "full"] = Field(
        "single", description="'single' renders only the wide establishing shot, 'full' renders all four angles"
    )
    polish_dialogue: bool = True
    polish_workers: int = 4
    sample_max_page: int = 3
    asset_attempts: int = Field(2, ge=1, description="Tries per portrait/scene image on transient failures")
    retry_delay: float = 1.0
    intervention_timeout: Optional[float] = Field(
        None, gt=0, description="Seconds a panel waits for a human decision before the run fails; None waits indefinitely"
    )

    reasoning_model: str = "gemini/gemini-2.5-flash"
    fast_model: str = "gemini/gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image-preview"

    @property
    def perspectives(self) -> Dict[str, str]:
        if self.scene_perspectives == "full":
            return dict(SCENE_PERSPECTIVES)
        return {"wide": SCENE_PERSPECTIVES["wide"]}

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Builds a config from COMIC_* environment variables; explicit overrides win."""
        env_map = {
            "max_attempts": "COMIC_MAX_ATTEMPTS",
            "scene_perspectives": "COMIC_SCENE_PERSPECTIVES",
            "polish_dialogue": "COMIC_POLISH_DIALOGUE",
            "intervention_timeout": "COMIC_INTERVENTION_TIMEOUT",
            "reasoning_model": "COMIC_REASONING_MODEL",
            "fast_model": "COMIC_FAST_MODEL",
            "image_model": "COMIC_IMAGE_MODEL",
        }
        values = {}
        for field_name, var in env_map.items():
            raw = os.getenv(var)
            if raw is None:
                continue
            if field_name == "polish_dialogue":
                values[field_name] = raw.strip().lower() not in ("0", "false", "no")
            else:
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
