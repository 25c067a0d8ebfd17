import logging
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from ..config import Settings
from ..services.cache_service import CacheStore
from ..services.error_handler import ErrorHandler
from .exceptions import CacheError, LLMRequestError, MatchingEngineError, RateLimitError
from .rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]

_MESSAGE_TYPES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "human": HumanMessage,
    "assistant": AIMessage,
    "ai": AIMessage,
}

_RATE_LIMIT_MARKERS = ("429", "rate limit", "ratelimit", "quota", "resource exhausted", "resourceexhausted")


def build_chat_model(settings: Settings) -> ChatGoogleGenerativeAI:
    """Creates the Gemini chat model described by `settings`."""
    api_key = settings.llm_api_key
    if not api_key:
        raise ValueError("API key not found. Please set GOOGLE_API_KEY or GEMINI_API_KEY.")
    llm = ChatGoogleGenerativeAI(
        model=settings.GEMINI_MODEL,
        google_api_key=api_key,
        temperature=settings.LLM_TEMPERATURE,
    )
    logger.info(f"LangChain Gemini client initialized with model: {settings.GEMINI_MODEL}.")
    return llm


def to_langchain_messages(messages: Sequence[ChatMessage]) -> List[BaseMessage]:
    converted = []
    for message in messages:
        role = message.get("role", "").lower()
        message_type = _MESSAGE_TYPES.get(role)
        if message_type is None:
            raise ValueError(f"Unsupported message role: '{role}'")
        converted.append(message_type(content=message.get("content", "")))
    return converted


def _content_to_text(content: Any) -> str:
    # Gemini may return a list of content parts instead of a plain string
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def classify_provider_error(error: Exception) -> LLMRequestError:
    """Maps a provider exception onto the engine's retryable error types."""
    text = f"{type(error).__name__} {error}".lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimitError(f"LLM rate limit exceeded: {error}")
    return LLMRequestError(f"LLM request failed: {error}")


class LLMGateway:
    """The single egress point to the completion service.

    Every call is answered from the response cache when possible; otherwise
    it waits for a rate-limit slot and is retried with backoff on transient
    failures. The reply is returned as raw text: parsing it is the caller's job.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        rate_limiter: SlidingWindowRateLimiter,
        error_handler: ErrorHandler,
        cache: Optional[CacheStore[str]] = None,
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.7,
    ):
        self.llm = llm
        self.rate_limiter = rate_limiter
        self.error_handler = error_handler
        self.cache = cache
        self.model_name = model_name
        self.temperature = temperature

    def cache_key_parts(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        return {
            "messages": [{"role": m.get("role"), "content": m.get("content")} for m in messages],
            "model": self.model_name,
            "temperature": self.temperature,
        }

    async def complete(self, messages: Sequence[ChatMessage], user_id: Optional[str] = None, operation: str = "llm_completion") -> str:
        if not messages:
            raise ValueError("At least one message is required")
        key_parts = self.cache_key_parts(messages)

        cached = await self._cache_get(key_parts)
        if cached is not None:
            logger.debug(f"Cache hit for '{operation}' (model {self.model_name}).")
            return cached

        lc_messages = to_langchain_messages(messages)

        async def call() -> str:
            await self.rate_limiter.acquire()
            return await self._invoke(lc_messages)

        text = await self.error_handler.with_retry(
            call,
            {"user_id": user_id, "operation": operation},
            retry_on=(LLMRequestError,),
        )
        await self._cache_set(key_parts, text)
        return text

    async def invalidate(self, messages: Sequence[ChatMessage]) -> bool:
        """Drops the cached reply for `messages`, e.g. once it turned out to be unusable."""
        if self.cache is None:
            return False
        try:
            return await self.cache.invalidate(self.cache_key_parts(messages))
        except CacheError as e:
            logger.warning(f"Failed to invalidate cached LLM response: {e}")
            return False

    async def _invoke(self, lc_messages: List[BaseMessage]) -> str:
        logger.debug(f"Sending {len(lc_messages)} messages to {self.model_name}.")
        try:
            response = await self.llm.ainvoke(lc_messages)
        except MatchingEngineError:
            raise
        except Exception as e:
            raise classify_provider_error(e) from e
        text = _content_to_text(getattr(response, "content", response))
        if not text.strip():
            raise LLMRequestError("LLM returned an empty completion")
        return text

    async def _cache_get(self, key_parts: Dict[str, Any]) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key_parts)
        except CacheError as e:
            logger.warning(f"Response cache read failed, calling the LLM instead: {e}")
            return None

    async def _cache_set(self, key_parts: Dict[str, Any], text: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key_parts, text)
        except CacheError as e:
            logger.warning(f"Failed to cache LLM response: {e}")
