from enum import Enum
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, Field
from comic_crafter.core.models import (
    CharacterProfile,
    CharacterConcept,
    StoryDevelopmentPackage,
    StoryOutline,
    GeneratedCharacter,
    GeneratedPanel,
    ImageAsset,
)


class PipelineStage(str, Enum):
    CHARACTER_SETUP = "character_setup"
    ANALYZE = "analyze"
    CAST_CONCEPTS = "cast_concepts"
    BLUEPRINT = "blueprint"
    SCRIPT = "script"
    PORTRAIT_GENERATION = "portrait_generation"
    SCENE_GENERATION = "scene_generation"
    PANEL_GENERATION = "panel_generation"
    AWAITING_INTERVENTION = "awaiting_intervention"
    FINALIZE = "finalize"


class ResumeHint(str, Enum):
    VIEW_ONLY = "view_only"
    RESUME_PANELS = "resume_panels"
    RESUME_ASSETS = "resume_assets"
    INITIAL = "initial"


class InterventionChoice(str, Enum):
    ACCEPT = "accept"
    RETRY = "retry"

    @classmethod
    def parse(cls, value: Union[str, "InterventionChoice"]) -> "InterventionChoice":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "reject":
            return cls.RETRY
        return cls(normalized)


class InterventionRequest(BaseModel):
    """Everything a human needs to judge a panel that failed automatic verification."""
    page_number: Union[int, str]
    panel_number: int
    attempt: int
    character_name: str
    reason: str
    generated_image: ImageAsset
    reference_image: Optional[ImageAsset] = None

    @property
    def panel_key(self) -> str:
        return f"{self.page_number}-{self.panel_number}"


class InterventionDecision(BaseModel):
    choice: InterventionChoice
    reason: Optional[str] = None


class PipelineState(BaseModel):
    """
    Aggregate state of one comic generation run.
    Grows monotonically during a forward run; only an explicit reset clears it.
    This is the unit that gets checkpointed and restored.
    """
    stage: PipelineStage = Field(PipelineStage.CHARACTER_SETUP, description="Current pipeline stage")
    progress: int = Field(0, ge=0, le=100, description="Panel generation progress in percent")
    status: str = Field("", description="Human-readable status of the panel stage")
    cast_status: str = Field("", description="Human-readable status of the planning and asset stages")
    error: Optional[str] = Field(None, description="Last stage-level failure, if any")

    source_image: Optional[ImageAsset] = Field(None, description="Last uploaded seed image")
    is_sample: bool = Field(False, description="True when the run started from the bundled sample story")

    character_profile: Optional[CharacterProfile] = None
    character_concepts: List[CharacterConcept] = Field(default_factory=list)
    story_package: Optional[StoryDevelopmentPackage] = None
    story: Optional[StoryOutline] = None
    character_roster: List[GeneratedCharacter] = Field(default_factory=list)
    scene_images: Dict[str, Dict[str, ImageAsset]] = Field(default_factory=dict, description="location key -> perspective -> image")
    generated_panels: List[GeneratedPanel] = Field(default_factory=list)

    pending_intervention: Optional[InterventionRequest] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def generated_keys(self) -> set:
        return {p.key for p in self.generated_panels}

    @property
    def is_complete(self) -> bool:
        if not self.story or not self.story.panels:
            return False
        return {p.key for p in self.story.panels} <= self.generated_keys

    @property
    def resume_hint(self) -> ResumeHint:
        """Where forward execution continues for this state."""
        if not self.story:
            return ResumeHint.INITIAL
        if self.is_complete:
            return ResumeHint.VIEW_ONLY
        if self.character_roster:
            return ResumeHint.RESUME_PANELS
        return ResumeHint.RESUME_ASSETS

    def find_character(self, name: str) -> Optional[GeneratedCharacter]:
        wanted = name.strip().lower()
        for character in self.character_roster:
            if character.name.strip().lower() == wanted:
                return character
        return None

    @property
    def protagonist(self) -> Optional[GeneratedCharacter]:
        for character in self.character_roster:
            if character.role.strip().lower() == "protagonist":
                return character
        return self.character_roster[0] if self.character_roster else None


def progress_percent(done: int, total: int) -> int:
    """Whole percent of `done` out of `total`, halves rounded up (1 of 8 is 13)."""
    if total <= 0:
        return 0
    return min(100, int(100 * done / total + 0.5))
