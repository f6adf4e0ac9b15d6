from typing import List, Optional, Dict, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Character analysis & cast ---

class CharacterProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    physical_traits: List[str] = Field(default_factory=list, description="Key physical traits of the seed character")
    clothing_style: str = Field(..., description="Overall clothing / costume style")
    color_palette: List[str] = Field(default_factory=list, description="Dominant colors")
    distinctive_features: List[str] = Field(default_factory=list, description="Scars, props, markings, etc.")
    consistency_tags: str = Field(..., description="Concise keyword string injected into every later prompt, e.g. 'man with red hair, green jacket, cybernetic arm'")
    art_style: str = Field(..., description="Concise art style label, e.g. '90s anime style', 'noir ink'")


class CharacterConcept(BaseModel):
    role: str = Field(..., description="Role in the story, e.g. 'Protagonist', 'Mentor', 'Antagonist', 'Sidekick'")
    name: str = Field(..., description="Unique, catchy name")
    description: str = Field(..., description="Visual description used for image generation")


class CastList(BaseModel):
    characters: List[CharacterConcept]

# --- Story blueprint ---

class CharacterArc(BaseModel):
    character_name: str
    internal_conflict: str
    arc_summary: str


class CharacterVoice(BaseModel):
    character_name: str
    speech_patterns: str
    vocabulary: str


class KeyScene(BaseModel):
    scene_title: str
    description: str
    page_estimation: str = ""


class Act(BaseModel):
    act_number: int = Field(..., ge=1, le=3)
    act_title: str
    summary: str
    key_scenes: List[KeyScene] = Field(default_factory=list)


class StoryDevelopmentPackage(BaseModel):
    title: str
    logline: str = Field(..., description="One-sentence summary of the core personal conflict")
    themes: List[str] = Field(default_factory=list, description="1-2 central themes")
    character_arcs: List[CharacterArc] = Field(default_factory=list)
    character_voices: List[CharacterVoice] = Field(default_factory=list)
    three_act_outline: List[Act] = Field(default_factory=list)

# --- Panel script ---

class Point(BaseModel):
    x: float = Field(..., ge=0, le=100)
    y: float = Field(..., ge=0, le=100)


class PanelSetting(BaseModel):
    location: str
    time_of_day: str = ""
    description: str = ""


class PanelCharacter(BaseModel):
    name: str
    position: str = ""
    expression: str = ""
    description: str = ""


class PanelAction(BaseModel):
    description: str
    key_moment: Optional[str] = None


class PanelComposition(BaseModel):
    shot_type: str = Field("Medium Shot", description="'Splash Page', 'Wide Shot', 'Close-Up', ...")
    angle: str = Field("Eye-Level", description="'Eye-Level', 'High Angle', 'Low Angle', ...")
    focus: str = ""


class PanelMoodAndLighting(BaseModel):
    atmosphere: str = ""
    lighting_source: str = ""
    coloring_notes: Optional[str] = None


class PanelVisuals(BaseModel):
    setting: PanelSetting
    characters: List[PanelCharacter] = Field(default_factory=list)
    action: PanelAction
    composition: PanelComposition = Field(default_factory=PanelComposition)
    mood_and_lighting: PanelMoodAndLighting = Field(default_factory=PanelMoodAndLighting)


class PanelDialogue(BaseModel):
    character: str = Field(..., description="Speaker name")
    content: str
    type: str = Field("Speech_Bubble", description="Bubble type, e.g. 'Thought_Bubble', 'Whisper_Bubble'")
    position: Optional[Point] = None


class PanelCaption(BaseModel):
    content: str
    position: Optional[str] = None
    coordinates: Optional[Point] = None


class PanelInSceneText(BaseModel):
    text: str


class PanelTextual(BaseModel):
    dialogue: List[PanelDialogue] = Field(default_factory=list)
    caption: Optional[PanelCaption] = None
    in_scene_text: List[PanelInSceneText] = Field(default_factory=list)


class PanelSoundEffect(BaseModel):
    sfx_text: str
    style: str = ""
    position: Optional[Point] = None
    rotation: Optional[float] = None
    scale: Optional[float] = None


class PanelAuditory(BaseModel):
    sound_effects: List[PanelSoundEffect] = Field(default_factory=list)


class PanelLayout(BaseModel):
    description: str = ""
    border_style: str = "Standard"


class PanelTransition(BaseModel):
    to_next_panel: str = ""


class Panel(BaseModel):
    page_number: Union[int, str] = Field(..., description="0 is the cover; strings like '3-4' mark the centerfold spread")
    panel_number: int
    visuals: PanelVisuals
    textual: PanelTextual = Field(default_factory=PanelTextual)
    auditory: PanelAuditory = Field(default_factory=PanelAuditory)
    layout: PanelLayout = Field(default_factory=PanelLayout)
    transition: Optional[PanelTransition] = None

    @property
    def key(self) -> str:
        return f"{self.page_number}-{self.panel_number}"

    @property
    def character_names(self) -> List[str]:
        return [c.name for c in self.visuals.characters]


class StoryOutline(BaseModel):
    title: str
    prologue: str = ""
    panels: List[Panel] = Field(default_factory=list)
    full_text: Optional[str] = Field(None, description="Prose narration of the finished script")

    @model_validator(mode="after")
    def _unique_panel_keys(self):
        seen = set()
        for panel in self.panels:
            if panel.key in seen:
                raise ValueError(f"Duplicate panel key {panel.key} in outline")
            seen.add(panel.key)
        return self

# --- Generated assets ---

class ImageAsset(BaseModel):
    name: str = ""
    data: bytes = b""
    mime_type: str = "image/jpeg"

    @property
    def is_placeholder(self) -> bool:
        return not self.data


class GeneratedCharacter(CharacterConcept):
    images: Dict[str, ImageAsset] = Field(default_factory=dict, description="shot key -> rendered portrait")

    def to_concept(self) -> CharacterConcept:
        return CharacterConcept(role=self.role, name=self.name, description=self.description)

    @property
    def canonical_image(self) -> Optional[ImageAsset]:
        """The 'full' portrait when usable, else the first usable shot."""
        full = self.images.get("full")
        if full and not full.is_placeholder:
            return full
        for image in self.images.values():
            if not image.is_placeholder:
                return image
        return None


class GeneratedPanel(Panel):
    image: ImageAsset


class ConsistencyVerdict(BaseModel):
    match: bool = Field(..., description="True when the character in the image matches the reference")
    reason: str = Field("", description="Short explanation, naming the mismatch if any")


def location_key(location: str) -> str:
    """Case/whitespace-normalized key used to deduplicate scene locations."""
    return " ".join(location.split()).lower()
