from __future__ import annotations

from functools import lru_cache
from contextlib import contextmanager
from threading import BoundedSemaphore

from openai import OpenAI

from ..core.config import get_settings

# Deep research runs in background mode, but creating and retrieving a
# response can still take a while under load
OPENAI_TIMEOUT_SECONDS = 900.0

_llm_semaphore: BoundedSemaphore | None = None


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent OpenAI calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Bound concurrent calls to OpenAI from this process.

        with limit_llm_concurrency():
            client.responses.retrieve(response_id)
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


def llm_configured() -> bool:
    return bool((get_settings().OPENAI_API_KEY or "").strip())


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """
    Shared OpenAI client for follow-up generation and deep research.

    Retries are left to our own callers, which know whether a call is safe
    to repeat.
    """
    settings = get_settings()
    if not llm_configured():
        raise RuntimeError("No LLM API key configured. Set OPENAI_API_KEY.")
    return OpenAI(
        api_key=settings.OPENAI_API_KEY.strip(),
        timeout=OPENAI_TIMEOUT_SECONDS,
        max_retries=0,
    )
