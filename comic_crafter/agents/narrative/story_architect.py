from typing import Any, Dict, List, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import CharacterConcept, StoryDevelopmentPackage
from comic_crafter.core import prompts
from comic_crafter.agents.narrative.cast_designer import describe_cast
from comic_crafter.utils.llm_interface import LLMInterface

class StoryArchitectAgent(BaseAgent):
    def __init__(self, agent_name: str = "StoryArchitect", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))

    def process(self, concepts: List[CharacterConcept]) -> StoryDevelopmentPackage:
        """
        Develops the narrative blueprint: title, logline, themes, arcs, voices and the three-act outline.
        """
        self.logger.info("Developing story blueprint...")
        blueprint = self.llm.generate_structured_output(
            prompt=prompts.render(prompts.BLUEPRINT_PROMPT, cast_description=describe_cast(concepts)),
            system_prompt=prompts.BLUEPRINT_SYSTEM_PROMPT,
            schema=StoryDevelopmentPackage,
            context="developStory",
        )
        acts = len(blueprint.three_act_outline)
        if acts != 3:
            self.logger.warning(f"Blueprint has {acts} acts instead of 3.")
        self.logger.info(f"📘 Blueprint ready: '{blueprint.title}' - {blueprint.logline}")
        return blueprint
