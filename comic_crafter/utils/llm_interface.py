import os
import re
import json
import logging
from typing import Type, TypeVar, Optional, List, Sequence
from pydantic import BaseModel, ValidationError
from litellm import completion

from comic_crafter.core.errors import EmptyResponse, MalformedResponse
from comic_crafter.core.models import ImageAsset
from comic_crafter.utils.image_utils import to_data_url

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SAFETY_FINISH_REASONS = {"content_filter", "safety", "prohibited_content", "blocklist", "spii"}

class LLMInterface:
    """
    One request/response cycle against a text (or vision) model through LiteLLM.
    No retry happens here: retry policy belongs to the pipeline.
    """
    def __init__(self, model_name: str = "gemini/gemini-2.5-flash", api_key: Optional[str] = None, timeout: int = 600):
        self.model_name = model_name
        self.api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("OPENAI_API_KEY")
        self.timeout = timeout

    @property
    def is_local(self) -> bool:
        return "ollama" in self.model_name or "local" in self.model_name

    def _extract_json(self, text: str) -> str:
        """
        Finds the broadest possible {...} or [...] block.
        """
        if not text:
            return "{}"

        # 1. Markdown block first
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
        if json_match:
            candidate = json_match.group(1).strip()
            if candidate: return candidate

        # 2. Outermost curly braces / square brackets
        start_curly = text.find('{')
        end_curly = text.rfind('}')
        start_bracket = text.find('[')
        end_bracket = text.rfind(']')

        if start_curly != -1 and start_bracket != -1:
            if start_curly < start_bracket:
                if end_curly > start_curly:
                    return text[start_curly:end_curly+1].strip()
            else:
                if end_bracket > start_bracket:
                    return text[start_bracket:end_bracket+1].strip()

        if start_curly != -1 and end_curly > start_curly:
            return text[start_curly:end_curly+1].strip()

        if start_bracket != -1 and end_bracket > start_bracket:
            return text[start_bracket:end_bracket+1].strip()

        cleaned = text.strip()
        return cleaned if cleaned else "{}"

    def is_healthy(self) -> bool:
        """
        Checks if the LLM backend is reachable.
        Only local (Ollama) backends are probed; hosted models are assumed reachable.
        """
        if self.is_local:
            import requests
            for host in ["localhost", "127.0.0.1"]:
                try:
                    resp = requests.get(f"http://{host}:11434/api/tags", timeout=2)
                    if resp.status_code == 200:
                        return True
                except requests.RequestException:
                    continue
            return False
        return True

    def _build_messages(self, prompt: str, system_prompt: str, images: Sequence[ImageAsset] = ()) -> List[dict]:
        usable = [img for img in images or () if not img.is_placeholder]
        if usable:
            user_content = [
                {"type": "image_url", "image_url": {"url": to_data_url(img.data, img.mime_type)}}
                for img in usable
            ]
            user_content.append({"type": "text", "text": prompt})
        else:
            user_content = prompt
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    def _empty_reason(self, finish_reason: Optional[str], context: str) -> str:
        reason = "The model returned an empty response."
        normalized = (finish_reason or "").lower()
        if normalized and normalized != "stop":
            reason = f"Generation stopped unexpectedly. Reason: {finish_reason}."
            if normalized in SAFETY_FINISH_REASONS:
                reason += " This may be due to the prompt or the image provided containing sensitive content."
        return f"Failed to get a valid response from the model in {context}. {reason}"

    def _complete(self, prompt: str, system_prompt: str, images: Sequence[ImageAsset], context: str) -> str:
        logger.info(f"LLM Request ({context}) using {self.model_name}...")
        completion_kwargs = {
            "model": self.model_name,
            "messages": self._build_messages(prompt, system_prompt, images),
            "api_key": self.api_key,
            "timeout": self.timeout,
        }
        if self.is_local:
            completion_kwargs["keep_alive"] = "20m"

        response = completion(**completion_kwargs)

        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice is not None and choice.message is not None else None
        if not content or not content.strip():
            finish_reason = getattr(choice, "finish_reason", None) if choice is not None else None
            logger.error(f"{context} returned no text (finish_reason={finish_reason}).")
            raise EmptyResponse(self._empty_reason(finish_reason, context), finish_reason=finish_reason)
        return content

    def generate_structured_output(self, prompt: str, schema: Type[T],
                                   system_prompt: str = "You are a helpful assistant. Respond ONLY with valid JSON.",
                                   images: Sequence[ImageAsset] = (), context: Optional[str] = None) -> T:
        """
        Generates a response and parses it into `schema`.
        Raises EmptyResponse when no text comes back, MalformedResponse when it does not parse.
        """
        context = context or schema.__name__
        enhanced_system = f"{system_prompt}\n\nSchema: {json.dumps(schema.model_json_schema(), indent=2)}"
        content = self._complete(prompt, enhanced_system, images, context)

        json_content = self._extract_json(content)
        try:
            data = json.loads(json_content)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing JSON from model in {context}. Raw text: {content[:500]}")
            raise MalformedResponse(f"The model returned malformed JSON in {context}. Please try again.", raw_text=content) from e

        try:
            return schema.model_validate(data)
        except ValidationError as e:
            logger.error(f"JSON from {context} does not match {schema.__name__}: {e}")
            raise MalformedResponse(f"The model returned JSON that does not match the expected structure in {context}.", raw_text=content) from e

    def generate_text(self, prompt: str, system_prompt: str = "You are a helpful assistant.",
                      images: Sequence[ImageAsset] = (), context: str = "generate_text") -> str:
        """
        Standard text generation.
        """
        return self._complete(prompt, system_prompt, images, context).strip()
