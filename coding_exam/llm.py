"""
Language model clients.

Every provider is reached through an OpenAI-compatible chat endpoint
(OpenAI, Gemini, LM Studio, Perplexity) and exposes the same capability:
`await model.invoke(messages) -> str`.
"""

import asyncio
import logging
import os
import random
import re
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI


logger = logging.getLogger(__name__)

# Configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").lower()
USE_LOCAL_MODELS = os.getenv("USE_LOCAL_MODELS", "false").lower() in {"1", "true", "yes", "on"}
LM_STUDIO_URL = os.getenv("LM_STUDIO_URL", "http://localhost:1234/v1")
LOCAL_MODEL = os.getenv("LOCAL_MODEL", "Gemma 3 12b")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta/openai/",
)
ANSWER_MODEL = os.getenv("ANSWER_MODEL")
VERIFY_MODEL = os.getenv("VERIFY_MODEL")
FALLBACK_MODEL = os.getenv("FALLBACK_MODEL")
PERPLEXITY_API_KEY = os.getenv("PERPLEXITY_API_KEY")
PERPLEXITY_BASE_URL = os.getenv("PERPLEXITY_BASE_URL", "https://api.perplexity.ai")
MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
RETRY_BASE_SECONDS = float(os.getenv("LLM_RETRY_BASE_SECONDS", "1"))
RETRY_MAX_SECONDS = float(os.getenv("LLM_RETRY_MAX_SECONDS", "8"))

_DEFAULT_MODELS = {
    "openai": {"answer": "o3-mini", "verify": "o3", "fallback": "gpt-4o"},
    "gemini": {"answer": "gemini-1.5-flash", "verify": "gemini-1.5-pro", "fallback": "gemini-1.5-flash"},
}

_PERPLEXITY_MODELS = {
    "search": ("sonar-pro", "sonar", 8000, 4000),
    "reasoning": ("sonar-reasoning-pro", "sonar-reasoning", 4000, 4000),
    "research": ("sonar-deep-research", "sonar-deep-research", 6000, 6000),
}

PERPLEXITY_SEARCH_DOMAINS = [
    "pubmed.ncbi.nlm.nih.gov",
    "cms.gov",
    "aapc.com",
    "ahima.org",
    "cdc.gov",
    "who.int",
    "icd10data.com",
    "codingclinic.com",
]

_RETRY_DELAY_RE = re.compile(r"retryDelay[^0-9]*([0-9.]+)s", re.IGNORECASE)
_RETRY_IN_RE = re.compile(r"retry in ([0-9.]+)s", re.IGNORECASE)
_NON_RETRYABLE_STATUS = {400, 401, 402, 403, 404}


class LanguageModel(Protocol):
    """Chat capability used by the answerer and every verification strategy."""

    name: str

    async def invoke(self, messages: list[dict]) -> str:
        ...


def _extract_retry_delay(exc: Exception) -> Optional[float]:
    """Extract retry delay seconds from error message if present."""
    text = str(exc)
    match = _RETRY_DELAY_RE.search(text) or _RETRY_IN_RE.search(text)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code not in _NON_RETRYABLE_STATUS
    return True


class ChatModel:
    """OpenAI-compatible chat completion model with retry/backoff."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None and not api_key:
            raise ValueError(f"An API key is required for model {model}.")
        self.name = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Lazily initialize the OpenAI-compatible client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def _request_kwargs(self, model: str) -> dict:
        kwargs: dict = {"model": model}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    async def _complete(self, messages: list[dict], model: str) -> str:
        delay = RETRY_BASE_SECONDS
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._get_client().chat.completions.create(
                    messages=messages,
                    **self._request_kwargs(model),
                )
                return response.choices[0].message.content or ""
            except Exception as exc:
                if attempt >= MAX_RETRIES or not _is_retryable(exc):
                    raise
                retry_delay = _extract_retry_delay(exc)
                sleep_for = min(RETRY_MAX_SECONDS, delay) + random.uniform(0, 0.25)
                if retry_delay is not None:
                    sleep_for = max(sleep_for, retry_delay)
                logger.debug("%s call failed (%s); retrying in %.1fs", model, exc, sleep_for)
                await asyncio.sleep(sleep_for)
                delay *= 2
        raise RuntimeError("unreachable")

    async def invoke(self, messages: list[dict]) -> str:
        return await self._complete(messages, self.name)


class PerplexityModel(ChatModel):
    """Search-grounded Perplexity model; falls back from pro to standard tier."""

    def __init__(
        self,
        mode: str = "search",
        api_key: Optional[str] = None,
        use_pro: bool = True,
        client: Optional[AsyncOpenAI] = None,
    ):
        if mode not in _PERPLEXITY_MODELS:
            raise ValueError(f"Unknown Perplexity mode: {mode}")
        pro_model, standard_model, pro_tokens, standard_tokens = _PERPLEXITY_MODELS[mode]
        super().__init__(
            model=pro_model if use_pro else standard_model,
            api_key=api_key if api_key is not None else PERPLEXITY_API_KEY,
            base_url=PERPLEXITY_BASE_URL,
            temperature=0.1,
            max_tokens=pro_tokens if use_pro else standard_tokens,
            client=client,
        )
        self.mode = mode
        self.use_pro = use_pro
        self.standard_model = standard_model
        self.standard_max_tokens = standard_tokens

    def _request_kwargs(self, model: str) -> dict:
        kwargs = super()._request_kwargs(model)
        if model == self.standard_model and model != self.name:
            kwargs["max_tokens"] = self.standard_max_tokens
        kwargs["top_p"] = 0.9
        kwargs["frequency_penalty"] = 1
        kwargs["extra_body"] = {
            "return_citations": True,
            "search_domain_filter": PERPLEXITY_SEARCH_DOMAINS,
            "return_images": False,
            "return_related_questions": False,
            "search_recency_filter": "month",
        }
        return kwargs

    async def invoke(self, messages: list[dict]) -> str:
        try:
            content = await self._complete(messages, self.name)
        except openai.APIStatusError as exc:
            if not self.use_pro or exc.status_code not in {400, 402}:
                raise
            logger.info("%s not available, falling back to %s", self.name, self.standard_model)
            content = await self._complete(messages, self.standard_model)
            logger.info("Used Perplexity model: %s (%s)", self.standard_model, self.mode)
            return content
        logger.info("Used Perplexity model: %s (%s)", self.name, self.mode)
        return content


def _provider() -> str:
    return "local" if USE_LOCAL_MODELS else LLM_PROVIDER


def _build_model(role: str, override: Optional[str], temperature: Optional[float] = None) -> ChatModel:
    provider = _provider()
    if provider == "local":
        return ChatModel(
            model=override or LOCAL_MODEL,
            api_key="lm-studio",
            base_url=LM_STUDIO_URL,
            temperature=0.1 if temperature is None else temperature,
        )
    if provider == "gemini":
        return ChatModel(
            model=override or _DEFAULT_MODELS["gemini"][role],
            api_key=GEMINI_API_KEY,
            base_url=GEMINI_BASE_URL,
            temperature=temperature,
        )
    if provider == "openai":
        return ChatModel(
            model=override or _DEFAULT_MODELS["openai"][role],
            api_key=OPENAI_API_KEY,
            base_url=OPENAI_BASE_URL,
            temperature=temperature,
        )
    raise ValueError(f"Unknown LLM_PROVIDER: {provider}")


def get_answer_model() -> ChatModel:
    """Model that produces the first answer for every question."""
    return _build_model("answer", ANSWER_MODEL)


def get_verify_model() -> ChatModel:
    """Reasoning-capable model for the first escalation strategy."""
    return _build_model("verify", VERIFY_MODEL)


def get_fallback_model() -> ChatModel:
    """Last-resort escalation model."""
    return _build_model("fallback", FALLBACK_MODEL)


def get_perplexity_model(mode: str = "search") -> PerplexityModel:
    """Search-capable Perplexity model."""
    return PerplexityModel(mode=mode)
