"""Content generation backends.

A generator turns one work item payload (a URL) into an outreach opener.
Failures are raised as ``GenerationError`` tagged transient or permanent;
any other exception is treated as transient by the worker retry loop.
"""

import logging
import os
import time
import zlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from .errors import ErrorKind, GenerationError
from .models import GeneratorConfig
from .queue.models import ChunkConfig

logger = logging.getLogger(__name__)

_REQUIREMENTS = """Requirements:
- Maximum 40 words
- Show genuine interest without being salesy
- Be specific to the URL context
- Ask a question or invite conversation
- Professional, respectful tone{extra}

URL: {{url}}

Generate only the opener text, no additional commentary."""

PROMPT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "company": {
        "system": (
            "You are a professional outreach assistant. Generate tasteful, "
            "non-salesy openers for business outreach."
        ),
        "user": (
            "Given this URL, write a professional 1-2 sentence opener for business outreach. "
            + _REQUIREMENTS.format(extra="")
        ),
    },
    "person": {
        "system": (
            "You are a professional networking assistant. Generate respectful, "
            "personalized LinkedIn message openers."
        ),
        "user": (
            "Given this URL, write a professional 1-2 sentence opener for LinkedIn networking. "
            + _REQUIREMENTS.format(extra="\n- Don't invent personal information")
        ),
    },
    "news": {
        "system": "You are writing short summaries and openers for community/news content.",
        "user": (
            "Given this URL, write a professional 1-2 sentence opener for news/community content. "
            + _REQUIREMENTS.format(extra="\n- Keep it factual")
        ),
    },
}

# Substrings in a backend error body that no retry can fix
PERMANENT_MARKERS = ("invalid api key", "invalid_api_key", "insufficient_quota", "billing")


def format_prompt(content_type: str, url: str) -> Dict[str, str]:
    """Return the system and user messages for a content type.

    Raises:
        GenerationError: Permanent, if the content type is unknown
    """
    template = PROMPT_TEMPLATES.get(content_type)
    if template is None:
        raise GenerationError(f"Unknown content type: {content_type}", ErrorKind.PERMANENT)
    return {"system": template["system"], "user": template["user"].replace("{url}", url)}


class ContentGenerator(ABC):
    """External, fallible generation operation."""

    name = "base"

    @abstractmethod
    def generate(self, payload: str, config: ChunkConfig) -> str:
        """Produce content for one item.

        Raises:
            GenerationError: Tagged transient or permanent
        """
        pass

    def close(self) -> None:
        pass


class StubGenerator(ContentGenerator):
    """Offline generator producing deterministic openers.

    The opener is picked by a checksum of the payload, so the same URL always
    gets the same text.
    """

    name = "stub"

    OPENERS = {
        "company": [
            "Hi {name} team! I've been following your recent growth. What's driving your success in this market?",
            "Hello! I noticed {name}'s recent developments and would love to learn more. How are you adapting to current industry challenges?",
            "Hi there! {name}'s work caught my attention. What's been most effective for your growth?",
        ],
        "person": [
            "Hi! I came across your profile and was impressed by your expertise. How did you get started in this area?",
            "Hello! Your background is quite interesting. What's been the most rewarding part of your career?",
        ],
        "news": [
            "Hi! I read about the recent developments on {name}. What's your perspective on the current trends?",
            "Hello! Your recent coverage was very informative. How do you see things evolving in this space?",
        ],
    }

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s

    def generate(self, payload: str, config: ChunkConfig) -> str:
        openers = self.OPENERS.get(config.content_type)
        if openers is None:
            raise GenerationError(
                f"Unknown content type: {config.content_type}", ErrorKind.PERMANENT
            )
        if self.latency_s:
            time.sleep(self.latency_s)
        opener = openers[zlib.crc32(payload.encode("utf-8")) % len(openers)]
        return opener.format(name=_display_name(payload))


def _display_name(url: str) -> str:
    """Company-ish name from a URL host: https://www.acme-labs.com -> Acme Labs."""
    host = urlparse(url if "://" in url else f"https://{url}").hostname or url
    if host.startswith("www."):
        host = host[4:]
    label = host.split(".")[0] if host else url
    return " ".join(part.capitalize() for part in label.replace("_", "-").split("-") if part) or url


def _post(
    client: httpx.Client, path: str, headers: Dict[str, str], body: Dict[str, Any]
) -> httpx.Response:
    """POST and map transport failures and HTTP errors to GenerationError."""
    try:
        r = client.post(path, headers=headers, json=body)
    except httpx.TimeoutException as e:
        raise GenerationError(f"Request timed out: {e}", ErrorKind.TRANSIENT) from e
    except httpx.TransportError as e:
        raise GenerationError(f"Transport error: {e}", ErrorKind.TRANSIENT) from e

    if r.status_code >= 400:
        raise _classify_response(r)
    return r


def _classify_response(r: httpx.Response) -> GenerationError:
    snippet = r.text[:300]
    message = f"HTTP {r.status_code}: {snippet}"
    lowered = snippet.lower()

    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return GenerationError(message, ErrorKind.PERMANENT, r.status_code)
    if r.status_code == 429 or r.status_code >= 500:
        return GenerationError(message, ErrorKind.TRANSIENT, r.status_code)
    # 401/402/403 and other client errors will not succeed on retry
    return GenerationError(message, ErrorKind.PERMANENT, r.status_code)


class ChatCompletionGenerator(ContentGenerator):
    """OpenAI-compatible ``/chat/completions`` backend over httpx.

    Args:
        api_key: Bearer token
        config: Backend settings (base URL, model, sampling, timeout)
        client: Optional pre-built httpx.Client (tests pass a MockTransport)
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        config: Optional[GeneratorConfig] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.config = config or GeneratorConfig()
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.timeout_s,
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def generate(self, payload: str, config: ChunkConfig) -> str:
        prompt = format_prompt(config.content_type, payload)
        body = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": prompt["system"]},
                {"role": "user", "content": prompt["user"]},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

        r = _post(self._client, "/chat/completions", self._headers, body)

        try:
            data = r.json()
            text = (data["choices"][0]["message"]["content"] or "").strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Unexpected response body: {e}", ErrorKind.TRANSIENT) from e

        if not text:
            raise GenerationError("Empty completion", ErrorKind.TRANSIENT)

        usage = data.get("usage") or {}
        logger.debug("Generated opener (%s tokens)", usage.get("total_tokens", "?"))
        return text

    def close(self) -> None:
        self._client.close()


class InferenceApiGenerator(ContentGenerator):
    """Hugging Face Inference API text-generation backend over httpx.

    Plain causal models take a single prompt, so the system and user
    messages are joined. Output is flattened to one line of at most
    ``MAX_CHARS`` characters.
    """

    name = "huggingface"

    MAX_CHARS = 200

    def __init__(
        self,
        api_key: str,
        config: Optional[GeneratorConfig] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.config = config or GeneratorConfig()
        self._client = client or httpx.Client(
            base_url=self.config.huggingface_base_url,
            timeout=self.config.timeout_s,
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def generate(self, payload: str, config: ChunkConfig) -> str:
        prompt = format_prompt(config.content_type, payload)
        body = {
            "inputs": f"{prompt['system']}\n\n{prompt['user']}",
            "parameters": {
                "max_new_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "top_p": self.config.top_p,
                "do_sample": True,
                "return_full_text": False,
            },
        }

        # A 503 while the model loads is retried like any other 5xx
        r = _post(self._client, f"/{self.config.huggingface_model}", self._headers, body)

        try:
            data = r.json()
            text = clean_generated_text(data[0]["generated_text"] or "", self.MAX_CHARS)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Unexpected response body: {e}", ErrorKind.TRANSIENT) from e

        if not text:
            raise GenerationError("Empty generation", ErrorKind.TRANSIENT)
        return text

    def close(self) -> None:
        self._client.close()


def clean_generated_text(text: str, max_chars: int = 200) -> str:
    """Strip wrapping quotes, collapse whitespace and truncate."""
    text = text.strip().strip("\"'")
    return " ".join(text.split())[:max_chars].strip()


def build_generator(
    config: Optional[GeneratorConfig] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ContentGenerator:
    """Pick the generation backend.

    ``auto`` prefers the OpenAI-compatible backend when its API key variable
    is set, then the Hugging Face backend, otherwise the stub.

    Raises:
        ValueError: If an HTTP backend is requested without its API key
    """
    config = config or GeneratorConfig()
    environ = os.environ if environ is None else environ
    openai_key = environ.get(config.api_key_env)
    hf_key = environ.get(config.huggingface_api_key_env)

    backend = config.backend
    if backend == "auto":
        backend = "openai" if openai_key else "huggingface" if hf_key else "stub"

    if backend == "stub":
        logger.info("Using stub generator (offline openers)")
        return StubGenerator(latency_s=config.stub_latency_s)

    if backend == "huggingface":
        if not hf_key:
            raise ValueError(
                f"{config.huggingface_api_key_env} is not set; cannot use the huggingface backend"
            )
        logger.info("Using inference API generator: %s", config.huggingface_model)
        return InferenceApiGenerator(hf_key, config)

    if not openai_key:
        raise ValueError(f"{config.api_key_env} is not set; cannot use the openai backend")

    logger.info("Using chat-completion generator: %s (%s)", config.base_url, config.model)
    return ChatCompletionGenerator(openai_key, config)
