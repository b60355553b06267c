import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from langchain_ollama import ChatOllama, OllamaEmbeddings
from langchain_core.messages import HumanMessage
import httpx

from core.errors import ExternalServiceError, ModelTimeoutError

logger = logging.getLogger(__name__)


class TextModelService(Protocol):
    """
    The two calls the synthesis engine makes to a model provider.
    """

    async def embed(self, text: str) -> List[float]:
        ...

    async def complete(self, prompt: str, max_tokens: int = 512, timeout: Optional[float] = None) -> str:
        ...


class OllamaClient:
    """
    LangChain-based Ollama client for completions and embeddings.
    Every call has a hard timeout; failures surface as ExternalServiceError.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        embedding_model: str,
        embedding_dimension: int = 768,
        temperature: float = 0.3,
        max_retries: int = 1,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
    ):
        # ChatOllama uses Ollama's native API, not OpenAI-compatible /v1 endpoint
        # Strip /v1 suffix if present
        if base_url.endswith("/v1"):
            base_url = base_url[:-3]
        elif base_url.endswith("/v1/"):
            base_url = base_url[:-4]

        self.base_url = base_url.rstrip('/')
        self.model = model
        self.embedding_model = embedding_model
        self.embedding_dimension = embedding_dimension
        self.temperature = temperature
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout

        self._chat_models: Dict[int, ChatOllama] = {}
        self.embedder = OllamaEmbeddings(
            base_url=self.base_url,
            model=embedding_model,
        )

    def _chat(self, max_tokens: int) -> ChatOllama:
        chat = self._chat_models.get(max_tokens)
        if chat is None:
            chat = ChatOllama(
                base_url=self.base_url,
                model=self.model,
                temperature=self.temperature,
                num_ctx=8192,
                num_predict=max_tokens,
            )
            self._chat_models[max_tokens] = chat
        return chat

    async def _invoke_with_retry(
        self,
        call: Callable[[], Awaitable[Any]],
        timeout: float,
        label: str,
    ) -> Any:
        """
        Invoke a model call, retrying connection failures only.
        With max_retries=1 there is no in-line retry at all.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(call(), timeout=timeout)

            except asyncio.TimeoutError:
                last_exception = ModelTimeoutError(
                    f"{label} timed out after {timeout}s",
                    model=self.model,
                )
                logger.warning(
                    f"Attempt {attempt}/{self.max_retries}: {label} timeout"
                )

            except Exception as e:
                error_msg = str(e)

                # Check for connection errors
                if "connection" in error_msg.lower() or "connect" in error_msg.lower():
                    last_exception = ExternalServiceError(
                        f"{label} connection error: {error_msg}",
                        base_url=self.base_url,
                    )
                    logger.warning(
                        f"Attempt {attempt}/{self.max_retries}: Connection error - {error_msg} (base_url={self.base_url}, model={self.model})"
                    )
                else:
                    # For non-connection errors, don't retry
                    raise ExternalServiceError(f"{label} failed: {error_msg}") from e

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        raise last_exception or ExternalServiceError(f"{label}: all attempts failed")

    async def complete(
        self,
        prompt: str,
        max_tokens: int = 512,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run a single completion and return its text.
        """
        start = time.time()
        chat = self._chat(max_tokens)

        response = await self._invoke_with_retry(
            lambda: chat.ainvoke([HumanMessage(content=prompt)]),
            timeout=timeout or self.timeout,
            label="completion",
        )

        latency_ms = int((time.time() - start) * 1000)
        logger.debug(f"Completion received (latency: {latency_ms}ms)")
        content = response.content
        if not isinstance(content, str):
            raise ExternalServiceError("completion returned non-text content")
        return content

    async def embed(self, text: str) -> List[float]:
        """
        Embed one text; the vector must have the configured dimension.
        """
        vector = await self._invoke_with_retry(
            lambda: self.embedder.aembed_query(text),
            timeout=self.timeout,
            label="embedding",
        )
        if len(vector) != self.embedding_dimension:
            raise ExternalServiceError(
                f"embedding has {len(vector)} dimensions, expected {self.embedding_dimension}",
                model=self.embedding_model,
            )
        return [float(v) for v in vector]

    async def health_check(self) -> bool:
        """
        Check if the Ollama server is reachable by calling /api/tags.
        """
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(url)
                if resp.status_code == 200:
                    return True
                logger.error(f"Ollama health check failed: {resp.status_code} {resp.text}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check error: {e} (url={url})")
            return False
