from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.pop("VOYAGE_API_KEY", None)
os.environ.pop("OPENAI_API_KEY", None)
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "64"
os.environ["RAG_INDEX_BACKEND"] = "memory"
os.environ["RAG_LLM_PROVIDER"] = "ollama"
os.environ.setdefault("RAG_DISABLE_TIKTOKEN", "true")
os.environ.pop("RAG_USAGE_DB_URI", None)
os.environ.pop("RAG_METADATA_DB_URI", None)
os.environ.pop("RAG_REQUEST_TIMEOUT", None)

from docrag.rag.llm import LLMResult  # noqa: E402


@dataclass
class FakeLLM:
    """Records prompts and returns a fixed answer."""
    answer: str = "Use fetch() to make requests."
    model: str = "fake-model"
    total_tokens: int | None = 42
    prompts: list[str] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> LLMResult:
        self.prompts.append(prompt)
        return LLMResult(text=self.answer, model=model or self.model, total_tokens=self.total_tokens)

    async def stream(
        self, prompt: str, model: str | None = None, temperature: float = 0.1
    ) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for word in self.answer.split(" "):
            yield word + " "


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
