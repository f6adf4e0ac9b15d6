from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import StoryOutline
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface

class NarratorAgent(BaseAgent):
    def __init__(self, agent_name: str = "Narrator", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))

    def process(self, outline: StoryOutline) -> str:
        """
        Turns the finished script into flowing prose.
        """
        self.logger.info(f"📖 Narrating '{outline.title}' as prose...")
        script_json = outline.model_dump_json(indent=2, exclude={"full_text"})
        return self.llm.generate_text(
            prompt=prompts.render(prompts.NARRATE_PROMPT, outline=script_json),
            system_prompt=prompts.NARRATE_SYSTEM_PROMPT,
            context="generateFullStoryText",
        )
