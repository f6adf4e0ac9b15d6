from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.config import COVER_PAGE_NUMBER, CENTERFOLD_PAGE_NUMBER
from comic_crafter.core.models import StoryDevelopmentPackage, StoryOutline
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface

class ScriptWriterAgent(BaseAgent):
    def __init__(self, agent_name: str = "ScriptWriter", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))

    def process(self, blueprint: StoryDevelopmentPackage, cast_description: str) -> StoryOutline:
        """
        Converts the blueprint into a panel-by-panel StoryOutline.
        """
        self.logger.info("Generating detailed comic script from blueprint...")
        user_prompt = prompts.render(
            prompts.SCRIPT_PROMPT,
            blueprint=blueprint.model_dump_json(indent=2),
            cast_description=cast_description,
            cover_page=COVER_PAGE_NUMBER,
            centerfold_page=CENTERFOLD_PAGE_NUMBER,
        )
        script = self.llm.generate_structured_output(
            prompt=user_prompt,
            system_prompt=prompts.SCRIPT_SYSTEM_PROMPT,
            schema=StoryOutline,
            context="generateStory",
        )
        pages = {str(p.page_number) for p in script.panels}
        self.logger.info(f"✅ Generated script '{script.title}' with {len(script.panels)} panels over {len(pages)} pages.")
        return script
