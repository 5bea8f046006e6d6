import asyncio
import logging
import threading
import random
import time
from typing import Callable, TypeVar, Any, Dict, List, Optional, Type

import anthropic
import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError
from langchain_core.exceptions import OutputParserException
from langchain_core.messages import BaseMessage, HumanMessage, AIMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI

from hld_bench.entities import ModelConfig

T = TypeVar("T")

logger = logging.getLogger("hld_bench")

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
VERTEX_PROVIDERS = ("gemini", "vertex", "google")


class CompletionError(Exception):
    pass


class CompletionValidationError(CompletionError):
    """
    The provider rejected the output against the requested schema,
    or rejected the request itself as invalid input.
    """


class CompletionTransportError(CompletionError):
    """
    Anything else: unreachable provider, auth, quota, refusals.
    """


class CompletionCancelledError(CompletionError):
    pass


class MaxRetryErrorsException(CompletionTransportError):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError, anthropic.APITimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_resource_exhausted_error(e: Exception) -> bool:
    if isinstance(e, (openai.RateLimitError, anthropic.RateLimitError)):
        return True
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
            or "rate limit" in msg.lower()
        )
    )


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.

    Only 429 and timeouts are retried here; every other error is raised
    on the spot so the caller can classify it.
    """
    last_exception: Exception | None = None

    def _check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CompletionCancelledError("Completion cancelled")

    def _respect_global_backoff() -> None:
        while True:
            _check_cancelled()
            with _global_backoff_lock:
                now = time.monotonic()
                wait = _global_wait_until - now
            if wait <= 0:
                return
            sleep(min(wait, 1.0))

    def _register_429_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        with _global_backoff_lock:
            _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            if not (_is_resource_exhausted_error(e) or _is_timeout_error(e)):
                raise
            elapsed = time.time() - start_time
            last_exception = e
            delay = _register_429_and_get_delay()
            if log:
                log(f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s. (elapsed={elapsed:.2f}s): {e}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


def classify_completion_error(e: Exception) -> CompletionError:
    """
    Maps an SDK exception onto the validation / transport split.
    """
    if isinstance(e, CompletionError):
        return e
    if isinstance(e, (ValidationError, OutputParserException, openai.LengthFinishReasonError)):
        return CompletionValidationError(f"Validation failed: {e}")
    if isinstance(e, (openai.BadRequestError, anthropic.BadRequestError)):
        return CompletionValidationError(f"Invalid input: {e}")
    msg = str(e)
    if "Validation failed" in msg or "Invalid input" in msg:
        return CompletionValidationError(msg)
    return CompletionTransportError(f"{type(e).__name__}: {msg}")


class BaseLlmClient:
    """
    Common usage accounting for every provider.
    """

    last_usage: Optional[Dict[str, int]]

    def _merge_usage(self, prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None) -> None:
        inc = {
            "prompt_token_count": int(prompt_tokens or 0),
            "candidates_token_count": int(completion_tokens or 0),
        }
        inc["total_token_count"] = int(total_tokens or 0) or inc["prompt_token_count"] + inc["candidates_token_count"]
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        # Responses API names first, Chat Completions names second
        self._merge_usage(
            getattr(usage, "input_tokens", None) or getattr(usage, "prompt_tokens", 0),
            getattr(usage, "output_tokens", None) or getattr(usage, "completion_tokens", 0),
            getattr(usage, "total_tokens", 0),
        )

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_md = rm.get("usage_metadata")
        if not usage_md:
            return

        def get(*keys: str) -> int:
            for k in keys:
                v = usage_md.get(k) if isinstance(usage_md, dict) else getattr(usage_md, k, None)
                if v:
                    return int(v)
            return 0

        self._merge_usage(
            get("input_tokens", "prompt_token_count"),
            get("output_tokens", "candidates_token_count"),
            get("total_tokens", "total_token_count"),
        )

    def get_accrued_usage(self) -> Dict[str, int]:
        return dict(self.last_usage or {})


class ChatLlmClient(BaseLlmClient):
    """
    The completion service used by the recovery loop:

        out = client.complete(system_prompt=..., messages=[HumanMessage(...), AIMessage(...)],
                              schema=HLDOutput | None, max_output_tokens=16384)

    Under the hood:
    - openai:            Responses API; schema -> responses.parse(text_format=schema)
    - gemini / vertex:   ChatVertexAI; schema -> with_structured_output(schema)
    - anthropic:         Messages API, no native schema support
    - anything else:     OpenAI-compatible Chat Completions (OpenRouter by default),
                         no native schema support

    Returns plain text, or a schema instance when `schema` is given.
    Raises CompletionValidationError / CompletionTransportError / CompletionCancelledError.
    """

    def __init__(
        self,
        model_config: ModelConfig,
        *,
        api_key: str | None = None,
        timeout: float | None = None,
        retries: int = 3,
        vertex_project: str | None = None,
        vertex_region: str | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.model_config = model_config
        self.model_name = model_config.model
        self.retries = retries
        self.cancel_event = cancel_event
        self.last_usage: Optional[Dict[str, int]] = None
        self._timeout = timeout
        self._vertex_project = vertex_project
        self._vertex_region = vertex_region
        self._vertex_by_max_tokens: Dict[int, ChatVertexAI] = {}
        self._client = None

        provider = (model_config.provider or "").lower()
        if provider == "openai":
            self.provider = "openai"
        elif provider in VERTEX_PROVIDERS:
            self.provider = "vertex"
        elif provider == "anthropic":
            self.provider = "anthropic"
        else:
            self.provider = "openai_compatible"

        client_kwargs: Dict[str, Any] = {"max_retries": 0}
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        if api_key is not None:
            client_kwargs["api_key"] = api_key

        if self.provider == "openai":
            if model_config.api_base:
                client_kwargs["base_url"] = model_config.api_base
            self._client = OpenAI(**client_kwargs)
        elif self.provider == "openai_compatible":
            client_kwargs["base_url"] = model_config.api_base or OPENROUTER_API_BASE
            self._client = OpenAI(**client_kwargs)
        elif self.provider == "anthropic":
            self._client = anthropic.Anthropic(**client_kwargs)

    @property
    def supports_structured_output(self) -> bool:
        return self.provider in ("openai", "vertex")

    # -----------------------
    # Message translation
    # -----------------------

    def _role_for(self, m: BaseMessage) -> str:
        if isinstance(m, SystemMessage):
            return "developer"
        if isinstance(m, AIMessage):
            return "assistant"
        return "user"

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        return [{"role": self._role_for(m), "content": str(m.content)} for m in messages]

    def _to_anthropic_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        # system turns travel in the dedicated `system` field
        return [
            {"role": self._role_for(m), "content": str(m.content)}
            for m in messages
            if not isinstance(m, SystemMessage)
        ]

    def _vertex_for(self, max_output_tokens: int) -> ChatVertexAI:
        llm = self._vertex_by_max_tokens.get(max_output_tokens)
        if llm is None:
            llm = ChatVertexAI(
                project=self._vertex_project,
                location=self._vertex_region,
                model_name=self.model_name,
                timeout=self._timeout,
                max_output_tokens=max_output_tokens,
                max_retries=0,
            )
            self._vertex_by_max_tokens[max_output_tokens] = llm
        return llm

    # -----------------------
    # Single provider calls
    # -----------------------

    def _complete_once(
        self,
        system_prompt: str,
        messages: List[BaseMessage],
        schema: Optional[Type[BaseModel]],
        max_output_tokens: int,
        stream: bool,
    ):
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "openai":
            return self._openai_once(system_prompt, messages, schema, max_output_tokens, stream)
        if self.provider == "vertex":
            return self._vertex_once(system_prompt, messages, schema, max_output_tokens, stream)
        if self.provider == "anthropic":
            return self._anthropic_once(system_prompt, messages, max_output_tokens, stream)
        return self._compatible_once(system_prompt, messages, max_output_tokens, stream)

    def _openai_once(self, system_prompt, messages, schema, max_output_tokens, stream):
        oai_messages = self._to_openai_messages(messages)
        if schema is not None:
            resp = self._client.responses.parse(
                model=self.model_name,
                instructions=system_prompt,
                input=oai_messages,
                text_format=schema,
                max_output_tokens=max_output_tokens,
            )
            self._merge_openai_usage(resp)
            parsed = getattr(resp, "output_parsed", None)
            if parsed is None:
                raise CompletionValidationError("Validation failed: no structured output in response")
            return parsed

        if stream:
            chunks = []
            for event in self._client.responses.create(
                model=self.model_name,
                instructions=system_prompt,
                input=oai_messages,
                max_output_tokens=max_output_tokens,
                stream=True,
            ):
                if event.type == "response.output_text.delta":
                    chunks.append(event.delta)
                elif event.type == "response.completed":
                    self._merge_openai_usage(event.response)
            return "".join(chunks).strip()

        resp = self._client.responses.create(
            model=self.model_name,
            instructions=system_prompt,
            input=oai_messages,
            max_output_tokens=max_output_tokens,
        )
        self._merge_openai_usage(resp)
        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def _vertex_once(self, system_prompt, messages, schema, max_output_tokens, stream):
        llm = self._vertex_for(max_output_tokens)
        lc_messages = [SystemMessage(content=system_prompt)] + list(messages)
        if schema is not None:
            result = llm.with_structured_output(schema, include_raw=True).invoke(lc_messages)
            self._merge_vertex_usage(result.get("raw"))
            if result.get("parsing_error") is not None:
                raise CompletionValidationError(f"Validation failed: {result['parsing_error']}")
            if result.get("parsed") is None:
                raise CompletionValidationError("Validation failed: no structured output in response")
            return result["parsed"]

        if stream:
            chunks = []
            for chunk in llm.stream(lc_messages):
                chunks.append(str(getattr(chunk, "content", "") or ""))
                self._merge_vertex_usage(chunk)
            return "".join(chunks).strip()

        resp = llm.invoke(lc_messages)
        self._merge_vertex_usage(resp)
        if isinstance(resp, str):
            return resp
        return str(getattr(resp, "content", resp)).strip()

    def _anthropic_once(self, system_prompt, messages, max_output_tokens, stream):
        kwargs = {
            "model": self.model_name,
            "system": system_prompt,
            "messages": self._to_anthropic_messages(messages),
            "max_tokens": max_output_tokens,
        }
        if stream:
            with self._client.messages.stream(**kwargs) as s:
                text = "".join(s.text_stream)
                final = s.get_final_message()
            self._merge_usage(final.usage.input_tokens, final.usage.output_tokens)
            return text.strip()

        resp = self._client.messages.create(**kwargs)
        self._merge_usage(resp.usage.input_tokens, resp.usage.output_tokens)
        text = "".join(getattr(block, "text", "") for block in resp.content)
        return text.strip()

    def _compatible_once(self, system_prompt, messages, max_output_tokens, stream):
        chat_messages = [{"role": "system", "content": system_prompt}]
        for m in self._to_openai_messages(messages):
            chat_messages.append({"role": "system" if m["role"] == "developer" else m["role"], "content": m["content"]})

        if stream:
            chunks = []
            for chunk in self._client.chat.completions.create(
                model=self.model_name,
                messages=chat_messages,
                max_tokens=max_output_tokens,
                stream=True,
            ):
                if chunk.choices and chunk.choices[0].delta.content:
                    chunks.append(chunk.choices[0].delta.content)
            return "".join(chunks).strip()

        resp = self._client.chat.completions.create(
            model=self.model_name,
            messages=chat_messages,
            max_tokens=max_output_tokens,
        )
        self._merge_openai_usage(resp)
        return (resp.choices[0].message.content or "").strip()

    # -----------------------
    # Public API
    # -----------------------

    def complete(
        self,
        *,
        system_prompt: str,
        messages: List[BaseMessage],
        schema: Optional[Type[BaseModel]] = None,
        max_output_tokens: int = 16384,
        stream: bool = False,
    ):
        """
        Synchronous completion with global 429/timeout backoff + retries,
        every failure mapped onto the CompletionError taxonomy.
        """
        if schema is not None and not self.supports_structured_output:
            raise CompletionValidationError(
                f"Invalid input: provider '{self.model_config.provider}' does not support schema-constrained output"
            )
        try:
            return call_with_retries_sync(
                lambda: self._complete_once(system_prompt, messages, schema, max_output_tokens, stream),
                retries=self.retries,
                log=lambda msg: logger.warning(f"[LLM-RETRY] {self.model_config.id}: {msg}"),
                cancel_event=self.cancel_event,
            )
        except Exception as e:
            mapped = classify_completion_error(e)
            if mapped is e:
                raise
            raise mapped from e
