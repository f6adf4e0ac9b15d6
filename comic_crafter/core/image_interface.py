from abc import ABC, abstractmethod
from typing import Sequence
from comic_crafter.core.models import ImageAsset

class ImageGeneratorInterface(ABC):
    @abstractmethod
    def generate(self, prompt: str, reference_images: Sequence[ImageAsset] = (), aspect_ratio: str = "1:1") -> bytes:
        """
        Generates one image from a prompt, conditioned on zero or more reference images.
        Returns the encoded image bytes.
        Raises ImageGenerationBlocked on safety refusals and ImageGenerationFailed otherwise.
        """
        pass
