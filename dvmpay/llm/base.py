"""Language-model contract shared by networked (DVM) and local providers."""

from abc import ABC, abstractmethod
from typing import Optional

from dvmpay.llm.prompt import Prompt
from dvmpay.llm.stream import ChunkStream, collect_text
from dvmpay.schema import StreamTextOptions


class LanguageModel(ABC):
    """
    Subclasses implement stream_text; the returned ChunkStream must be lazy
    (no I/O before the first pull), ordered, and cancellable.
    """

    provider_name = "base"

    @abstractmethod
    def stream_text(self, prompt: Prompt, options: Optional[StreamTextOptions] = None) -> ChunkStream:
        raise NotImplementedError

    async def generate_text(self, prompt: Prompt, options: Optional[StreamTextOptions] = None) -> str:
        return await collect_text(self.stream_text(prompt, options))
