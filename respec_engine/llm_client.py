# respec_engine/llm_client.py

import asyncio
import time
import traceback
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI, VertexAI
from openai import OpenAI

from respec_engine.errors import InterpretationServiceError

T = TypeVar("T")


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any(model_name.startswith(p) for p in prefixes)


def _accepts_temperature(model_name: str) -> bool:
    # reasoning models reject sampling parameters on the Responses API
    return not model_name.startswith(("gpt-5", "o1", "o3", "o4"))


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-5.1_fast'
        - 'gpt-5.1_low_none'
        - 'gpt-4.1-mini'
    into (base_model, openai_params). Interpretation calls are short, so the
    presets only trade verbosity/reasoning for latency.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed.")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None

    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high"}
    wildcards: Dict[str, Tuple[str, str]] = {
        "fast": ("low", "none"),
        "standard": ("low", "low"),
        "std": ("low", "low"),
    }

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue
        if t in wildcards:
            w_verb, w_reason = wildcards[t]
            verbosity = verbosity or w_verb
            reasoning_effort = reasoning_effort or w_reason
            continue
        if verbosity is None and t in verbosity_tokens:
            verbosity = t
            continue
        if reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
            continue
        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'.")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    return base, params


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    backoff_seconds: float = 0.5,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with a short, bounded retry loop.

    The interpretation path has a deterministic fallback, so the default is a
    single attempt; any final failure surfaces as InterpretationServiceError.
    """
    last_exception: Exception | None = None

    def _is_timeout_error(e: Exception) -> bool:
        if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
            return True
        msg = repr(e)
        return "TimeoutError" in msg or "timed out" in msg.lower()

    def _is_resource_exhausted_error(e: Exception) -> bool:
        msg = str(e)
        return "429" in msg and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
        )

    for attempt in range(max(1, retries)):
        start_time = time.time()
        try:
            return fn()
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_timeout_error(e):
                msg = f"Attempt {attempt+1} timed out."
            elif _is_resource_exhausted_error(e):
                msg = f"Attempt {attempt+1} got 429."
            else:
                msg = f"Attempt {attempt+1} failed."
            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

            if attempt + 1 < retries:
                time.sleep(backoff_seconds * (2 ** attempt))

    raise InterpretationServiceError(f"All {max(1, retries)} LLM attempt(s) failed: {last_exception}") from last_exception


class BaseLlmClient:
    """
    Provider selection + token usage accounting shared by both clients.
    """

    last_usage: Optional[Dict[str, int]]

    def _setup_provider(self, model_name: str, vertex_cls, vertex_project, vertex_region, timeout, temperature):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self.last_usage = None
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            self._vertex = vertex_cls(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
                temperature=temperature,
                max_retries=0,
            )
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            if temperature is not None and _accepts_temperature(self.model_name):
                self._openai_params["temperature"] = temperature
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _merge_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        self._merge_usage({
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        })

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_md = rm.get("usage_metadata")
        if not usage_md:
            return

        def get(k: str) -> int:
            if isinstance(usage_md, dict):
                return int(usage_md.get(k, 0) or 0)
            return int(getattr(usage_md, k, 0) or 0)

        self._merge_usage({
            "prompt_token_count": get("prompt_token_count") or get("input_tokens"),
            "candidates_token_count": get("candidates_token_count") or get("output_tokens"),
            "total_token_count": get("total_token_count") or get("total_tokens"),
        })


class LlmClient(BaseLlmClient):
    """
    Minimal wrapper for "completion-style" use:

        text = llm.invoke("some prompt")

    Under the hood:
    - Vertex: VertexAI.invoke(prompt)
    - OpenAI: Responses API (client.responses.create)
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str | None,
        vertex_region: str | None,
        timeout: float | None = None,
        temperature: float | None = 0.0,
    ):
        self._setup_provider(model_name, VertexAI, vertex_project, vertex_region, timeout, temperature)

    def _invoke_once(self, prompt: str) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(prompt)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        return (getattr(resp, "output_text", "") or "").strip()

    def invoke(self, prompt: str, *, retries: int = 1) -> str:
        return call_with_retries_sync(
            lambda: self._invoke_once(prompt),
            retries=retries,
            log=lambda msg: print(f"[LLM-RETRY] {msg}"),
        )


class ChatLlmClient(BaseLlmClient):
    """
    Minimal wrapper for chat-style use:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...), ...])

    Under the hood:
    - Vertex: ChatVertexAI.invoke(messages)
    - OpenAI: Responses API with input=[{role, content}, ...]
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str | None,
        vertex_region: str | None,
        timeout: float | None = None,
        temperature: float | None = 0.3,
    ):
        self._setup_provider(model_name, ChatVertexAI, vertex_project, vertex_region, timeout, temperature)

    def _to_openai_messages(self, messages: List[HumanMessage | AIMessage | SystemMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def _invoke_once(self, messages: List[HumanMessage | AIMessage | SystemMessage]) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(messages)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        return (getattr(resp, "output_text", "") or "").strip()

    def invoke(self, messages: List[HumanMessage | AIMessage | SystemMessage], *, retries: int = 1) -> str:
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=retries,
            log=lambda msg: print(f"[CHAT-LLM-RETRY] {msg}"),
        )
