"""LLM scoring client for federal contracting opportunities.

The model is asked for a two-line reply::

    SCORE: 85
    RATIONALE: Strong alignment with our cloud migration work ...

Transport failures are retried with exponential backoff when they are
transient (rate limits, server errors, timeouts); everything that finally
fails surfaces as :class:`ScoringAPIError`. A reply that cannot be parsed is
not an error: it degrades to a zero score with the raw text as rationale.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from govscout.config import ScoringSettings

log = logging.getLogger(__name__)


class ScoringAPIError(Exception):
    """Scoring API call failed."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class ScoreResult:
    score: int
    rationale: str


SYSTEM_PROMPT = (
    "You are an expert federal contract analyst. Your role is to evaluate "
    "government contracting opportunities and score them based on fit, win "
    "probability, and strategic value."
)

USER_PROMPT = """\
Analyze this federal contracting opportunity and provide a score (0-100) with rationale.

Opportunity Title: {title}

Description: {description}

Our Capabilities: {capabilities}

Provide your response in this exact format:
SCORE: [0-100]
RATIONALE: [Your analysis]"""

_SCORE_RE = re.compile(r"^\s*SCORE:\s*(-?\d+)\s*$", re.IGNORECASE)
_RATIONALE_RE = re.compile(r"^\s*RATIONALE:\s*(.*)$", re.IGNORECASE | re.DOTALL)


def parse_score_response(text: str) -> ScoreResult:
    """Parse a ``SCORE:``/``RATIONALE:`` reply.

    Missing or non-numeric ``SCORE:`` lines yield ``ScoreResult(0, text)``.
    The rationale runs from the ``RATIONALE:`` marker to the end of the reply.
    """
    lines = text.splitlines()
    score: int | None = None
    rationale = text
    for i, line in enumerate(lines):
        m = _SCORE_RE.match(line)
        if m and score is None:
            score = int(m.group(1))
            continue
        m = _RATIONALE_RE.match(line)
        if m:
            rationale = "\n".join([m.group(1), *lines[i + 1:]]).strip()
            break
    if score is None:
        log.warning("Failed to parse score response, using defaults: %.200s", text)
        return ScoreResult(score=0, rationale=text)
    return ScoreResult(score=max(0, min(100, score)), rationale=rationale)


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


class ScoringClient:
    """Synchronous scoring client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        settings: ScoringSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or ScoringSettings()
        self.provider = self.settings.provider
        self.model = self.settings.model
        self._sleep = sleep
        self._client: Any = None
        self._transient: tuple[type[BaseException], ...] = ()
        self._init_client()

    def _init_client(self) -> None:
        # SDK-level retries are disabled; retry policy lives in _call_with_retry.
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-3-5-sonnet-20241022"
            kwargs: dict[str, Any] = {"timeout": self.settings.timeout_seconds, "max_retries": 0}
            if self.settings.api_key:
                kwargs["api_key"] = self.settings.api_key
            self._client = anthropic.Anthropic(**kwargs)
            self._transient = (anthropic.APIConnectionError,)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs = {"timeout": self.settings.timeout_seconds, "max_retries": 0}
            if self.settings.api_key:
                kwargs["api_key"] = self.settings.api_key
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._client = openai.OpenAI(**kwargs)
            self._transient = (openai.APIConnectionError,)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    def _send(self, system: str, user: str) -> str:
        """One request to the provider. Returns the reply text."""
        if self.provider == "anthropic":
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.settings.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            blocks = [b.text for b in response.content if getattr(b, "type", "text") == "text"]
            return "".join(blocks).strip()
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.settings.max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return (response.choices[0].message.content or "").strip()

    def _classify(self, exc: Exception) -> ScoringAPIError:
        status = _status_code(exc)
        if status is not None:
            retryable = status == 429 or status >= 500
            kind = "Rate limited" if status == 429 else ("Server error" if status >= 500 else "Client error")
            return ScoringAPIError(f"{kind}: {status}", retryable=retryable)
        if isinstance(exc, self._transient):
            return ScoringAPIError(f"Connection failed: {exc}", retryable=True)
        return ScoringAPIError(f"Failed to call scoring API: {exc}", retryable=False)

    def _call_with_retry(self, system: str, user: str) -> str:
        attempts = max(1, self.settings.max_attempts)
        delay = self.settings.backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                text = self._send(system, user)
                if not text:
                    raise ScoringAPIError("Empty response from scoring API", retryable=True)
                return text
            except ScoringAPIError as exc:
                error = exc
            except Exception as exc:
                error = self._classify(exc)
            if not error.retryable:
                log.error("Scoring API call failed: %s", error)
                raise error
            if attempt == attempts:
                break
            log.warning("Scoring API call failed (%s/%s): %s, retrying in %.0fs",
                        attempt, attempts, error, delay)
            self._sleep(delay)
            delay *= 2
        raise ScoringAPIError(f"Max retries exceeded: {error}", retryable=True)

    def score(self, title: str, description: str | None, capabilities: str) -> ScoreResult:
        """Score one opportunity against a capabilities profile."""
        user = USER_PROMPT.format(
            title=title,
            description=description or "No description available",
            capabilities=capabilities,
        )
        log.debug("Sending scoring request (model: %s, max_tokens: %s)", self.model, self.settings.max_tokens)
        return parse_score_response(self._call_with_retry(SYSTEM_PROMPT, user))
