from __future__ import annotations

import re


_CHUNK_RE = re.compile(r"<chunk>\s*(.*?)\s*</chunk>", re.DOTALL)


class FakeLLMProvider:
    def __init__(self, response: str | None = None) -> None:
        # Fixed response keeps tests stable without external calls; None echoes the chunk.
        self._response = response
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self._response is not None:
            return self._response
        # The prompt names the <chunk></chunk> tags before the real chunk; take the last block.
        matches = _CHUNK_RE.findall(prompt)
        chunk = matches[-1] if matches else ""
        first_line = chunk.splitlines()[0] if chunk else "document"
        return f"This chunk covers: {first_line[:80]}"
