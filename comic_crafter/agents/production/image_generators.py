import io
import os
import hashlib
import logging
from typing import Optional, Sequence
from PIL import Image, ImageDraw
from google import genai
from google.genai import types

from comic_crafter.core.errors import ImageGenerationBlocked, ImageGenerationFailed
from comic_crafter.core.image_interface import ImageGeneratorInterface
from comic_crafter.core.models import ImageAsset
from comic_crafter.core.prompts import ASPECT_RATIO_SUFFIX
from comic_crafter.utils.image_utils import aspect_size, decode_base64_image

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


def _reason_name(reason) -> Optional[str]:
    if reason is None:
        return None
    return getattr(reason, "name", None) or str(reason).split(".")[-1]


class MockImageGenerator(ImageGeneratorInterface):
    """
    Offline generator: a flat placeholder PNG with the head of the prompt drawn on it.
    The color is derived from the prompt, so identical prompts give identical images.
    """
    def __init__(self, long_side: int = 512):
        self.long_side = long_side

    def generate(self, prompt: str, reference_images: Sequence[ImageAsset] = (), aspect_ratio: str = "1:1") -> bytes:
        logger.info(f"Mock Generating Image ({aspect_ratio}, {len(reference_images)} refs) with prompt: {prompt.strip()[:50]}...")
        digest = hashlib.md5(prompt.encode()).digest()
        width, height = aspect_size(aspect_ratio, self.long_side)
        img = Image.new('RGB', (width, height), color=(digest[0], digest[1], digest[2]))
        d = ImageDraw.Draw(img)
        d.text((10, 10), "Mock Image", fill=(255, 255, 0))
        for i, line in enumerate(prompt.strip().splitlines()[:6]):
            d.text((10, 30 + 14 * i), line[:80], fill=(255, 255, 255))
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()


class GeminiImageGenerator(ImageGeneratorInterface):
    """
    Image generation through the Gemini image model, which accepts reference images inline.
    """
    def __init__(self, model_id: str = "gemini-2.5-flash-image-preview", api_key: Optional[str] = None, client: Optional[genai.Client] = None):
        self.model_id = model_id
        self.client = client or genai.Client(api_key=api_key or os.getenv("GEMINI_API_KEY"))

    def generate(self, prompt: str, reference_images: Sequence[ImageAsset] = (), aspect_ratio: str = "1:1") -> bytes:
        full_prompt = f"{prompt}{ASPECT_RATIO_SUFFIX.format(aspect_ratio=aspect_ratio)}"
        parts = [
            types.Part.from_bytes(data=img.data, mime_type=img.mime_type)
            for img in reference_images if not img.is_placeholder
        ]
        parts.append(types.Part.from_text(text=full_prompt))

        logger.info(f"Generating Image with {self.model_id} ({aspect_ratio}, {len(parts) - 1} refs): {prompt.strip()[:100]}...")
        response = self.client.models.generate_content(
            model=self.model_id,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )
        return self._extract_image(response)

    def _extract_image(self, response) -> bytes:
        candidates = getattr(response, "candidates", None) or []
        first = candidates[0] if candidates else None
        content = getattr(first, "content", None)
        parts = getattr(content, "parts", None) or []

        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                return decode_base64_image(inline.data)

        finish_reason = _reason_name(getattr(first, "finish_reason", None))
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _reason_name(getattr(feedback, "block_reason", None))

        if finish_reason in SAFETY_FINISH_REASONS or block_reason:
            message = "Image generation was blocked for safety reasons. Please revise your prompt or image input."
            logger.error(f"{message} (finish_reason={finish_reason}, block_reason={block_reason})")
            raise ImageGenerationBlocked(message)

        texts = [part.text for part in parts if getattr(part, "text", None)]
        if texts:
            message = f"The model returned the following message: {' '.join(texts)}"
        elif finish_reason:
            message = f"Generation failed with reason: {finish_reason}."
        else:
            message = ("The model did not return an image or a specific error message. "
                       "This could be due to a blocked response or an internal issue.")
        logger.error(f"Image generation failed: {message}")
        raise ImageGenerationFailed(message)
