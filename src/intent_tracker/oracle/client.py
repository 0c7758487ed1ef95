"""
Oracle client - session-based access to an Ollama-compatible text service.

A session is bound to one ``OracleConfig`` (temperature, top-k, system
preamble). The client keeps one live session per calling thread and reuses it
while that thread asks for the same configuration; a different configuration
or an unrecoverable error destroys it so the next call starts fresh.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Set

import requests

DEFAULT_SYSTEM_PROMPT = (
    "You analyze a person's web browsing to understand what they are trying "
    "to accomplish. Be specific, concise and always answer with valid JSON "
    "when JSON is requested."
)


class OracleError(Exception):
    """Raised when the oracle call fails."""


class OracleUnavailableError(OracleError):
    """Raised when the oracle service cannot be reached or is disabled."""


class OracleResponseError(OracleError):
    """Raised when the oracle answered with something unusable."""


@dataclass(frozen=True)
class OracleConfig:
    temperature: float = 0.7
    top_k: int = 3
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT


class OracleSession:
    """One HTTP session pinned to a configuration."""

    def __init__(self, url: str, model: str, config: OracleConfig, timeout: int = 120):
        self.url = url
        self.model = model
        self.config = config
        self.timeout = timeout
        self.destroyed = False
        self._http = requests.Session()

    def prompt(self, text: str, json_mode: bool = False) -> str:
        """Send a prompt and return the raw response text.

        Raises:
            OracleError: On transport failure or an unusable HTTP status.
        """
        if self.destroyed:
            raise OracleError("Session already destroyed")

        payload = {
            "model": self.model,
            "prompt": text,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "top_k": self.config.top_k,
            },
        }
        if self.config.system_prompt:
            payload["system"] = self.config.system_prompt
        if json_mode:
            payload["format"] = "json"

        try:
            resp = self._http.post(self.url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise OracleError(f"Network timeout: {e}") from e
        except requests.ConnectionError as e:
            raise OracleUnavailableError(f"Service unavailable: {e}") from e

        if resp.status_code == 429:
            raise OracleError("API rate limit exceeded")
        if resp.status_code >= 500:
            raise OracleUnavailableError(f"Service unavailable (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise OracleError(f"Oracle request rejected (HTTP {resp.status_code})")

        try:
            return (resp.json().get("response") or "").strip()
        except ValueError as e:
            raise OracleResponseError(f"Invalid JSON response envelope: {e}") from e

    def destroy(self):
        if not self.destroyed:
            self._http.close()
            self.destroyed = True


class OracleClient:
    """Hands out ``OracleSession`` objects by config, one live session per thread.

    A thread's session is reused while it asks for the same configuration.
    Sessions are never shared between threads, so one caller switching
    configuration cannot close the connection another caller is using.
    """

    HEALTH_CACHE_SECONDS = 60

    def __init__(
        self,
        url: str = "http://localhost:11434/api/generate",
        model: str = "granite3.1-dense:8b",
        timeout: int = 120,
        enabled: bool = True,
    ):
        self.url = url
        self.model = model
        self.timeout = timeout
        self.enabled = enabled
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._local = threading.local()
        self._live: Set[OracleSession] = set()
        self._available: Optional[bool] = None
        self._available_checked_at = 0.0
        self.sessions_created = 0

    def create_session(self, config: Optional[OracleConfig] = None) -> OracleSession:
        """Return this thread's session for ``config``, replacing it if the config differs."""
        if not self.enabled:
            raise OracleUnavailableError("Service unavailable: oracle disabled")
        config = config or OracleConfig()
        current = getattr(self._local, "session", None)
        if current and not current.destroyed and current.config == config:
            return current
        if current:
            self.logger.debug("Oracle config changed, destroying previous session")
            self._discard(current)
        session = OracleSession(self.url, self.model, config, self.timeout)
        self._local.session = session
        with self._lock:
            self._live.add(session)
            self.sessions_created += 1
        return session

    def _discard(self, session: OracleSession):
        session.destroy()
        with self._lock:
            self._live.discard(session)

    def reset_session(self):
        """Destroy the calling thread's session."""
        current = getattr(self._local, "session", None)
        if current:
            self._discard(current)
        self._local.session = None

    def prompt(self, text: str, config: Optional[OracleConfig] = None,
               json_mode: bool = False) -> str:
        session = self.create_session(config)
        try:
            return session.prompt(text, json_mode=json_mode)
        except OracleError as e:
            self.logger.warning(f"Oracle call failed, resetting session: {e}")
            self.reset_session()
            if isinstance(e, OracleUnavailableError):
                self._mark_available(False)
            raise

    def is_available(self) -> bool:
        """Cached health check against the Ollama tags endpoint."""
        if not self.enabled:
            return False
        now = time.time()
        if self._available is not None and now - self._available_checked_at < self.HEALTH_CACHE_SECONDS:
            return self._available
        tags_url = self.url.rsplit("/api/", 1)[0] + "/api/tags"
        try:
            resp = requests.get(tags_url, timeout=5)
            self._mark_available(resp.status_code == 200)
        except requests.RequestException as e:
            self.logger.info(f"Oracle health check failed: {e}")
            self._mark_available(False)
        return bool(self._available)

    def _mark_available(self, value: bool):
        self._available = value
        self._available_checked_at = time.time()

    def close(self):
        """Destroy every live session, whichever thread opened it."""
        with self._lock:
            live = list(self._live)
            self._live.clear()
        for session in live:
            session.destroy()
        self._local = threading.local()
