"""
Incident Ledger
Text generator collaborator.

The enrichment engine depends only on the narrow TextGenerator contract:

    generate(model_id, prompt, system_prompt) -> str
    health() -> bool

Implementations:
    - OllamaGenerator:     local Ollama server over HTTP (requests)
    - LocalStubGenerator:  deterministic text for dev/testing, no network

Availability is never cached in shared mutable state. probe_availability()
returns an immutable GeneratorAvailability snapshot that callers pass
explicitly into run_incident_enrichment().

Testability: pass a mock ``session`` to OllamaGenerator() in tests instead of
letting it create a real requests.Session internally.

Usage:
    from app.ai.generator import build_generator, probe_availability
    generator = build_generator(app.config)
    availability = probe_availability(generator)
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import requests

from app.utils.helpers import iso_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_PRIMARY_MODEL = "qwen3:30b-a3b"
DEFAULT_FAST_MODEL = "qwen3:4b"

_GENERATE_TIMEOUT = 120
_HEALTH_TIMEOUT = 3
_TEMPERATURE = 0.7
_NUM_PREDICT = 2048


# ── Errors ───────────────────────────────────────────────────────────────────

class GeneratorError(Exception):
    """Base class for every generator failure."""


class GeneratorUnavailable(GeneratorError):
    """The generator endpoint could not be reached."""


class GeneratorRequestFailed(GeneratorError):
    """The generator answered with a non-success HTTP status."""


class GeneratorParseFailed(GeneratorError):
    """The generator answered but the body was not the expected shape."""


# ── Availability snapshot ────────────────────────────────────────────────────

@dataclass(frozen=True)
class GeneratorAvailability:
    available: bool
    checked_at: datetime
    base_url: str

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "checked_at": iso_utc(self.checked_at),
            "base_url": self.base_url,
        }


# ── Contract ─────────────────────────────────────────────────────────────────

class TextGenerator(ABC):
    """Abstract interface for text generators."""

    base_url: str = ""
    primary_model: str = DEFAULT_PRIMARY_MODEL
    fast_model: str = DEFAULT_FAST_MODEL

    @abstractmethod
    def generate(self, model_id: str, prompt: str, system_prompt: str) -> str:
        """
        Produce a completion for ``prompt``.

        Raises:
            GeneratorUnavailable, GeneratorRequestFailed, GeneratorParseFailed
        """
        ...

    @abstractmethod
    def health(self) -> bool:
        """Return True when the generator can serve requests right now."""
        ...


# ── Ollama ───────────────────────────────────────────────────────────────────

class OllamaGenerator(TextGenerator):
    """Ollama HTTP API generator (``/api/generate`` with streaming off)."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        primary_model: str = DEFAULT_PRIMARY_MODEL,
        fast_model: str = DEFAULT_FAST_MODEL,
        timeout: float = _GENERATE_TIMEOUT,
        health_timeout: float = _HEALTH_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.primary_model = primary_model
        self.fast_model = fast_model
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def health(self) -> bool:
        try:
            resp = self.session.get(f"{self.base_url}/api/tags", timeout=self.health_timeout)
        except requests.RequestException as exc:
            logger.info("Generator health probe failed", extra={"base_url": self.base_url, "error": str(exc)})
            return False
        return 200 <= resp.status_code < 300

    def generate(self, model_id: str, prompt: str, system_prompt: str) -> str:
        payload = {
            "model": model_id,
            "prompt": prompt,
            "system": system_prompt,
            "stream": False,
            "options": {"temperature": _TEMPERATURE, "num_predict": _NUM_PREDICT},
        }
        start = time.monotonic()
        try:
            resp = self.session.post(
                f"{self.base_url}/api/generate", json=payload, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GeneratorUnavailable(f"Generator unreachable: {exc}") from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        if not 200 <= resp.status_code < 300:
            logger.warning(
                "Generator request failed",
                extra={"model_id": model_id, "status": resp.status_code, "duration_ms": duration_ms},
            )
            raise GeneratorRequestFailed(f"Generator returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise GeneratorParseFailed("Generator response is not JSON") from exc
        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise GeneratorParseFailed("Generator response has no 'response' text")

        logger.info(
            "Generator call completed",
            extra={"model_id": model_id, "duration_ms": duration_ms, "chars": len(text)},
        )
        return text


# ── Local stub ───────────────────────────────────────────────────────────────

class LocalStubGenerator(TextGenerator):
    """
    Deterministic generator for dev/testing.
    No server required. ``available=False`` simulates an offline endpoint.
    """

    base_url = "stub://local"

    def __init__(self, available: bool = True) -> None:
        self.available = available

    def health(self) -> bool:
        return self.available

    def generate(self, model_id: str, prompt: str, system_prompt: str) -> str:
        if not self.available:
            raise GeneratorUnavailable("Stub generator is offline")
        first_line = next((line for line in prompt.splitlines() if line.strip()), "")
        if "post-mortem" in system_prompt.lower():
            return f"# Post-Mortem\n\n## Executive Summary\n{first_line}\n"
        if "stakeholder" in system_prompt.lower():
            return f"Stakeholder update. {first_line}"
        return f"Executive summary. {first_line}"


# ── Factory & probe ──────────────────────────────────────────────────────────

def build_generator(app_config) -> TextGenerator:
    """Build the configured generator from a Flask config mapping."""
    provider = (app_config.get("GENERATOR_PROVIDER") or "ollama").lower()
    if provider == "stub":
        return LocalStubGenerator()
    if provider != "ollama":
        raise ValueError(f"Unknown GENERATOR_PROVIDER {provider!r}")
    return OllamaGenerator(
        base_url=app_config.get("GENERATOR_BASE_URL", DEFAULT_BASE_URL),
        primary_model=app_config.get("GENERATOR_PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL),
        fast_model=app_config.get("GENERATOR_FAST_MODEL", DEFAULT_FAST_MODEL),
        timeout=app_config.get("GENERATOR_TIMEOUT", _GENERATE_TIMEOUT),
        health_timeout=app_config.get("GENERATOR_HEALTH_TIMEOUT", _HEALTH_TIMEOUT),
    )


def probe_availability(generator: TextGenerator) -> GeneratorAvailability:
    """Run one health check and freeze the answer."""
    return GeneratorAvailability(
        available=bool(generator.health()),
        checked_at=utcnow(),
        base_url=generator.base_url,
    )
