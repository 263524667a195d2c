"""
Local language model via an Ollama server (POST /api/generate, stream=true).

Satisfies the same ChunkStream contract as the DVM model, so callers can swap
a paid remote job for a local run without changing how they consume text.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from dvmpay.errors import DVMError, NetworkError, ProtocolError
from dvmpay.llm.base import LanguageModel
from dvmpay.llm.prompt import Prompt, format_prompt
from dvmpay.llm.stream import DEFAULT_MAX_BUFFER, ChunkStream
from dvmpay.schema import StreamTextOptions, TextChunk

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama3.2"


class OllamaLanguageModel(LanguageModel):
    provider_name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 120.0,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.model = model or os.getenv("OLLAMA_MODEL") or DEFAULT_MODEL
        self.timeout_seconds = timeout_seconds
        self.max_buffer = max_buffer
        self._transport = transport

    def _payload(self, prompt: Prompt, options: Optional[StreamTextOptions]) -> Dict[str, Any]:
        options = options or StreamTextOptions()
        model_options: Dict[str, Any] = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        payload: Dict[str, Any] = {
            "model": options.model or self.model,
            "prompt": format_prompt(prompt),
            "stream": True,
        }
        if model_options:
            payload["options"] = model_options
        return payload

    def stream_text(self, prompt: Prompt, options: Optional[StreamTextOptions] = None) -> ChunkStream:
        async def start(stream: ChunkStream) -> None:
            payload = self._payload(prompt, options)
            task = asyncio.create_task(self._pump(stream, payload), name="ollama-stream")

            def stop() -> None:
                if task is not asyncio.current_task():
                    task.cancel()

            stream.add_close_callback(stop)

        return ChunkStream(start=start, max_buffer=self.max_buffer)

    async def _pump(self, stream: ChunkStream, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout_seconds, transport=self._transport
            ) as http:
                async with http.stream("POST", "/api/generate", json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ProtocolError(f"Ollama returned {response.status_code}: {body[:200]}")
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if data.get("error"):
                            raise ProtocolError(f"Ollama error: {data['error']}")
                        piece = data.get("response")
                        if piece and not stream.emit(TextChunk(text=piece)):
                            return
                        if data.get("done"):
                            break
            stream.finish()
        except DVMError as e:
            stream.fail(e)
        except httpx.HTTPError as e:
            stream.fail(NetworkError(f"Ollama request to {self.base_url} failed: {e}", cause=e))
        except ValueError as e:
            stream.fail(ProtocolError(f"Ollama sent a malformed stream line: {e}", cause=e))
