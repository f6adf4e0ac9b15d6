import json
from typing import List, Dict, Any, Optional, Tuple
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.config import DEFAULT_PERSPECTIVE
from comic_crafter.core.models import GeneratedCharacter, ImageAsset, Panel, location_key
from comic_crafter.core import prompts


class PanelBrief:
    """Everything the illustrator sends to the image model for one panel."""
    def __init__(self, prompt: str, references: List[ImageAsset], characters: List[GeneratedCharacter], aspect_ratio: str):
        self.prompt = prompt
        self.references = references
        self.characters = characters
        self.aspect_ratio = aspect_ratio


class ConsistencyManager(BaseAgent):
    """
    Assembles panel prompts and reference images so every panel reuses the same
    character portraits and background plates.
    """
    def __init__(self, agent_name: str = "ConsistencyManager", config: Dict[str, Any] = None):
        super().__init__(agent_name, config)

    def process(self, panel: Panel, roster: List[GeneratedCharacter],
                scene_images: Dict[str, Dict[str, ImageAsset]], art_style: str) -> PanelBrief:
        self.logger.info(f"Assembling references for Panel {panel.key}...")
        characters = self.resolve_characters(panel, roster)

        references: List[ImageAsset] = []
        for character in characters:
            references.extend(img for img in character.images.values() if not img.is_placeholder)

        scene = self.select_scene_image(panel, scene_images)
        if scene is not None and not scene.is_placeholder:
            references.append(scene)

        prompt = self.build_panel_prompt(panel, characters, art_style)
        return PanelBrief(prompt, references, characters, self.aspect_ratio_for(panel))

    def resolve_characters(self, panel: Panel, roster: List[GeneratedCharacter]) -> List[GeneratedCharacter]:
        """Roster entries named on the panel, in panel order. Unknown names are skipped."""
        resolved: List[GeneratedCharacter] = []
        for char_name in panel.character_names:
            wanted = char_name.strip().lower()
            for c in roster:
                if c.name.strip().lower() == wanted and c not in resolved:
                    resolved.append(c)
                    break
            else:
                self.logger.debug(f"Character '{char_name}' on panel {panel.key} has no portrait; skipping.")
        return resolved

    def select_scene_image(self, panel: Panel, scene_images: Dict[str, Dict[str, ImageAsset]]) -> Optional[ImageAsset]:
        """
        Picks one background plate for the panel's location.
        A single plate is used as-is; with several, camera angle and shot type pick the
        perspective, and a missing pick falls back to the first perspective present.
        """
        plates = scene_images.get(location_key(panel.visuals.setting.location))
        if not plates:
            return None
        if len(plates) == 1:
            return next(iter(plates.values()))

        angle = panel.visuals.composition.angle.lower()
        shot_type = panel.visuals.composition.shot_type.lower()
        if "low" in angle:
            wanted = "low"
        elif "high" in angle:
            wanted = "high"
        elif "wide" in shot_type or "splash" in shot_type:
            wanted = "wide"
        else:
            wanted = DEFAULT_PERSPECTIVE

        if wanted in plates:
            return plates[wanted]
        return next(iter(plates.values()))

    def aspect_ratio_for(self, panel: Panel) -> str:
        description = panel.layout.description.lower()
        shot_type = panel.visuals.composition.shot_type.lower()
        is_landscape = any(word in text for word in ("splash", "wide") for text in (description, shot_type))
        return "16:9" if is_landscape else "3:4"

    def build_panel_prompt(self, panel: Panel, characters: List[GeneratedCharacter], art_style: str) -> str:
        references = "\n".join(f"- {c.name} ({c.role}): {c.description}" for c in characters) or "- None"
        character_list = ", ".join(f"{name}(1)" for name in panel.character_names) or "No characters in this scene."
        return prompts.render(
            prompts.PANEL_IMAGE_PROMPT,
            art_style=art_style,
            character_references=references,
            character_list=character_list,
            panel_visuals=json.dumps(panel.visuals.model_dump(exclude_none=True), indent=2),
            panel_textual=json.dumps(panel.textual.model_dump(exclude_none=True), indent=2),
            panel_auditory=json.dumps(panel.auditory.model_dump(exclude_none=True), indent=2),
        )

    def with_correction(self, prompt: str, reason: Optional[str], safety_reframe: bool = False) -> str:
        """Appends the reason the previous attempt failed, plus a safer framing after a safety block."""
        if not reason and not safety_reframe:
            return prompt
        parts = [prompt]
        if reason:
            parts.append(prompts.render(prompts.CORRECTION_NOTE, reason=reason))
        if safety_reframe:
            parts.append(prompts.SAFETY_REFRAME)
        return "\n\n".join(parts)

    def cover_brief(self, protagonist: Optional[GeneratedCharacter], title: str, logline: str, art_style: str) -> Tuple[str, List[ImageAsset]]:
        if protagonist is None:
            description, references = "the protagonist", []
        else:
            description = f"{protagonist.name} ({protagonist.role}): {protagonist.description}"
            references = [img for img in protagonist.images.values() if not img.is_placeholder]
        prompt = prompts.render(
            prompts.COVER_IMAGE_PROMPT,
            title=title,
            logline=logline,
            art_style=art_style,
            character_description=description,
        )
        return prompt, references
