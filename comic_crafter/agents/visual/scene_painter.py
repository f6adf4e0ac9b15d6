from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.image_interface import ImageGeneratorInterface
from comic_crafter.core.models import ImageAsset, PanelSetting
from comic_crafter.core import prompts
from comic_crafter.utils.image_utils import sniff_mime_type
from comic_crafter.utils.timing import log_execution_time

class ScenePainterAgent(BaseAgent):
    """Renders empty background plates for each location of the script."""
    def __init__(self, agent_name: str = "ScenePainter", image_generator: ImageGeneratorInterface = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.image_generator = image_generator

    def process(self, setting: PanelSetting, art_style: str, perspective_key: str, perspective_description: str) -> ImageAsset:
        setting_description = f"Location: {setting.location}. Time: {setting.time_of_day}. Description: {setting.description}"
        prompt = prompts.render(
            prompts.SCENE_IMAGE_PROMPT,
            art_style=art_style,
            setting_description=setting_description,
            perspective=perspective_description,
        )
        # Landscape for establishing shots
        data = self.image_generator.generate(prompt, [], "16:9")
        return ImageAsset(name=f"{setting.location} ({perspective_key})", data=data, mime_type=sniff_mime_type(data))

    def paint_location(self, setting: PanelSetting, art_style: str, perspectives: Dict[str, str],
                       existing: Optional[Dict[str, ImageAsset]] = None) -> Dict[str, ImageAsset]:
        """Returns the location's perspective set, generating only the perspectives not present yet."""
        plates: Dict[str, ImageAsset] = dict(existing or {})
        for key, description in perspectives.items():
            if key in plates and not plates[key].is_placeholder:
                continue
            self.logger.info(f"🏙️ Generating scene: {setting.location} ({key} view)...")
            with log_execution_time(f"Generate Scene: {setting.location} ({key})"):
                plates[key] = self.run(setting, art_style, key, description)
        return plates
