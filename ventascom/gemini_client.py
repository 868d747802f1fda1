# Gemini Client - text generation collaborator for order refinement
# Returns None instead of raising; connection status is tracked for callers

import logging
import threading
from typing import Callable, List, Optional

from google.generativeai import configure, GenerativeModel

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"


class ConnectionStatus:
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    ERROR = 'error'


def _response_text(resp) -> Optional[str]:
    """Pull text out of a Gemini response, None when blocked or empty"""
    feedback = getattr(resp, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback else None
    if block_reason:
        raise ValueError(f"Content blocked: {block_reason}")

    candidates = getattr(resp, "candidates", None)
    if not candidates:
        return None
    parts = getattr(candidates[0].content, "parts", None)
    if not parts:
        return None
    return "".join(getattr(p, "text", "") for p in parts) or None


class GeminiClient:
    """Wrapper around google-generativeai with a connection status channel"""

    def __init__(self, api_key: Optional[str], model_name: str = DEFAULT_MODEL,
                 timeout: float = 30, temperature: float = 0.8,
                 top_p: float = 1.0, max_output_tokens: int = 8192):
        self.api_key = api_key
        self.model_name = model_name
        self.timeout = timeout
        self.defaults = {
            'temperature': temperature,
            'top_p': top_p,
            'max_output_tokens': max_output_tokens,
        }
        self.last_error: Optional[str] = None
        self._status = ConnectionStatus.DISCONNECTED
        self._listeners: List[Callable[[str], None]] = []
        self._lock = threading.Lock()
        self._model = None

        if api_key:
            configure(api_key=api_key)
            self._model = GenerativeModel(model_name)
        else:
            logger.info("Gemini API key not configured, refinement disabled")

    def on_connection_status_change(self, listener: Callable[[str], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def get_connection_status(self) -> str:
        return self._status

    def _set_status(self, status: str):
        self._status = status
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Error in Gemini status listener: {e}")

    def _call(self, prompt: str, generation_config: dict) -> Optional[str]:
        resp = self._model.generate_content(
            prompt,
            generation_config=generation_config,
            request_options={"timeout": self.timeout},
        )
        return _response_text(resp)

    def check_connection(self) -> bool:
        """Send a one-token ping to see whether the API answers"""
        if self._model is None:
            self._set_status(ConnectionStatus.DISCONNECTED)
            return False
        try:
            self._set_status(ConnectionStatus.CONNECTING)
            self._call("Hola", {"max_output_tokens": 1})
            self._set_status(ConnectionStatus.CONNECTED)
            return True
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Gemini connection check failed: {e}")
            self._set_status(ConnectionStatus.ERROR)
            return False

    def generate_content(self, prompt: str, temperature: Optional[float] = None,
                         top_p: Optional[float] = None,
                         max_output_tokens: Optional[int] = None) -> Optional[str]:
        """Generate text for prompt; None on missing key, block, empty reply or error"""
        if self._model is None:
            self.last_error = "Gemini API key not configured"
            return None

        generation_config = {
            "temperature": self.defaults['temperature'] if temperature is None else temperature,
            "top_p": self.defaults['top_p'] if top_p is None else top_p,
            "max_output_tokens": (
                self.defaults['max_output_tokens'] if max_output_tokens is None else max_output_tokens
            ),
        }

        try:
            self._set_status(ConnectionStatus.CONNECTING)
            text = self._call(prompt, generation_config)
        except ValueError as e:
            # Blocked content: the service is reachable
            self.last_error = str(e)
            logger.warning(f"Gemini refused prompt: {e}")
            self._set_status(ConnectionStatus.CONNECTED)
            return None
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Gemini request failed: {e}")
            self._set_status(ConnectionStatus.ERROR)
            return None

        self._set_status(ConnectionStatus.CONNECTED)
        if not text:
            self.last_error = "No response from Gemini"
            logger.warning("Gemini returned an empty response")
            return None
        self.last_error = None
        return text


class StubTextClient:
    """Stub text client for tests and offline use"""

    def __init__(self, responses=None, error: Optional[Exception] = None,
                 status: str = ConnectionStatus.CONNECTED, reachable: Optional[bool] = None):
        self.responses = list(responses or [])
        self.error = error
        self.status = status
        self.reachable = status == ConnectionStatus.CONNECTED if reachable is None else reachable
        self.connection_checks = 0
        self.prompts: List[str] = []
        self.last_error: Optional[str] = None

    def get_connection_status(self) -> str:
        return self.status

    def check_connection(self) -> bool:
        self.connection_checks += 1
        self.status = ConnectionStatus.CONNECTED if self.reachable else ConnectionStatus.ERROR
        return self.reachable

    def on_connection_status_change(self, listener):
        return lambda: None

    def generate_content(self, prompt: str, **options) -> Optional[str]:
        self.prompts.append(prompt)
        if self.error is not None:
            self.last_error = str(self.error)
            raise self.error
        if not self.responses:
            return None
        return self.responses.pop(0)
