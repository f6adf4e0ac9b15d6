import os
import json
import logging
from typing import Dict, List, Optional, Union
from pydantic import ValidationError
from comic_crafter.core.errors import ComicGenerationError
from comic_crafter.core.models import (
    CharacterConcept,
    CharacterProfile,
    GeneratedCharacter,
    ImageAsset,
    StoryDevelopmentPackage,
    StoryOutline,
    location_key,
)
from comic_crafter.utils.image_utils import mime_for_path, underscored

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "sample")


class SampleBundle:
    """Pre-made early-stage outputs that stand in for live generation."""
    def __init__(self, profile: CharacterProfile, story_package: StoryDevelopmentPackage,
                 concepts: List[CharacterConcept], story: StoryOutline,
                 roster: List[GeneratedCharacter], scene_images: Dict[str, Dict[str, ImageAsset]]):
        self.profile = profile
        self.story_package = story_package
        self.concepts = concepts
        self.story = story
        self.roster = roster
        self.scene_images = scene_images


def _page_value(page_number: Union[int, str]) -> Optional[int]:
    if isinstance(page_number, int):
        return page_number
    try:
        return int(page_number)
    except ValueError:
        return None


class SampleLoader:
    """
    Loads the bundled sample story.

    Layout of the sample directory:
        comic_metadata.json
        portraits/<Name_With_Underscores>/full.(jpg|png)
        scenes/<location_underscored>/wide.(jpg|png)
    Image files are optional. A found file is reused for every shot or perspective key,
    and anything without a file is left for the pipeline to generate.
    """
    def __init__(self, sample_dir: str = DEFAULT_SAMPLE_DIR, max_page: int = 3):
        self.sample_dir = sample_dir
        self.max_page = max_page

    def load(self, character_shots: List[str], perspectives: List[str]) -> SampleBundle:
        path = os.path.join(self.sample_dir, "comic_metadata.json")
        logger.info(f"📂 Loading sample story from {path}...")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            profile = CharacterProfile.model_validate(data["characterProfile"])
            story_package = StoryDevelopmentPackage.model_validate(data["storyDevelopmentPackage"])
            concepts = [CharacterConcept.model_validate(c) for c in data["characterConcepts"]]
            full_story = StoryOutline.model_validate(data["story"])
        except (OSError, KeyError, json.JSONDecodeError, ValidationError) as e:
            raise ComicGenerationError(f"Could not load the sample story: {e}") from e

        story = full_story.model_copy(update={"panels": [p for p in full_story.panels if self._in_range(p.page_number)]})
        logger.info(f"Sample story '{story.title}': keeping {len(story.panels)} of {len(full_story.panels)} panels (pages <= {self.max_page}).")

        roster = self._load_portraits(concepts, character_shots)
        scene_images = self._load_scenes(story, perspectives)
        return SampleBundle(profile, story_package, concepts, story, roster, scene_images)

    def _in_range(self, page_number: Union[int, str]) -> bool:
        value = _page_value(page_number)
        return value is not None and value <= self.max_page

    def _find_image(self, folder: str, stem: str) -> Optional[str]:
        for ext in (".jpg", ".jpeg", ".png", ".webp"):
            candidate = os.path.join(self.sample_dir, folder, stem + ext)
            if os.path.exists(candidate):
                return candidate
        return None

    def _read(self, path: str, name: str) -> ImageAsset:
        with open(path, "rb") as f:
            return ImageAsset(name=name, data=f.read(), mime_type=mime_for_path(path))

    def _load_portraits(self, concepts: List[CharacterConcept], character_shots: List[str]) -> List[GeneratedCharacter]:
        roster = []
        for concept in concepts:
            path = self._find_image(os.path.join("portraits", underscored(concept.name)), "full")
            if path is None:
                logger.info(f"No bundled portrait for {concept.name}; it will be generated.")
                continue
            image = self._read(path, f"{concept.name} (full)")
            roster.append(GeneratedCharacter(**concept.model_dump(), images={shot: image for shot in character_shots}))
        return roster

    def _load_scenes(self, story: StoryOutline, perspectives: List[str]) -> Dict[str, Dict[str, ImageAsset]]:
        scenes: Dict[str, Dict[str, ImageAsset]] = {}
        seen = set()
        for panel in story.panels:
            setting = panel.visuals.setting
            key = location_key(setting.location)
            if key in seen:
                continue
            seen.add(key)
            path = self._find_image(os.path.join("scenes", underscored(key)), "wide")
            if path is None:
                logger.warning(f"Could not find sample scene asset for '{setting.location}'. This may fall back to generation.")
                continue
            image = self._read(path, f"{setting.location} (wide)")
            scenes[key] = {perspective: image for perspective in perspectives}
        return scenes
