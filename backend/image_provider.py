import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from errors import InvalidInput, ProviderError, ProviderTimedOut

logger = logging.getLogger("artmint")

MAX_PROMPT_LENGTH = 500
REQUEST_TIMEOUT_SECONDS = 20

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class TaskStatus:
    task_id: str
    status: str
    image_url: Optional[str] = None


def build_prompt(prompt: str, style: Optional[str] = None) -> str:
    if not prompt or not prompt.strip() or len(prompt) > MAX_PROMPT_LENGTH:
        raise InvalidInput(f"Prompt must be 1-{MAX_PROMPT_LENGTH} characters")
    if style:
        return f"{prompt} in {style} style"
    return prompt


class FreepikClient:
    """Freepik Mystic text-to-image: submit a task, then poll it until it settles."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.freepik.com/v1/ai/mystic",
        session: Optional[requests.Session] = None,
        poll_interval: float = 2.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "FreepikClient":
        return cls(
            api_key=settings.freepik_api_key,
            base_url=settings.freepik_base_url,
            poll_interval=settings.image_poll_interval_seconds,
            max_attempts=settings.image_poll_max_attempts,
        )

    @property
    def headers(self) -> dict:
        return {"x-freepik-api-key": self.api_key, "Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self.session.request(method, url, headers=self.headers, timeout=REQUEST_TIMEOUT_SECONDS, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            logger.warning("image_provider_request_failed method=%s url=%s error=%s", method, url, exc)
            raise ProviderError(f"Freepik API error: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"Freepik API returned invalid JSON: {exc}") from exc

    @staticmethod
    def _parse_status(body: dict) -> TaskStatus:
        data = body.get("data") or {}
        task_id = data.get("task_id")
        if not task_id:
            raise ProviderError(f"Freepik response has no task id: {body}")
        raw = (data.get("status") or "").upper()
        generated = data.get("generated") or []
        if raw == "COMPLETED":
            return TaskStatus(task_id, STATUS_COMPLETED, generated[0] if generated else None)
        if raw == "FAILED":
            return TaskStatus(task_id, STATUS_FAILED)
        return TaskStatus(task_id, STATUS_PENDING)

    def submit(self, prompt: str, style: Optional[str] = None) -> TaskStatus:
        body = self._request("POST", self.base_url, json={"prompt": build_prompt(prompt, style)})
        status = self._parse_status(body)
        logger.info("image_task_submitted task=%s status=%s", status.task_id, status.status)
        return status

    def poll(self, task_id: str) -> TaskStatus:
        return self._parse_status(self._request("GET", f"{self.base_url}/{task_id}"))

    def generate_image(self, prompt: str, style: Optional[str] = None) -> str:
        status = self.submit(prompt, style)
        attempts = 0
        while True:
            if status.status == STATUS_COMPLETED:
                if not status.image_url:
                    raise ProviderError(f"Task {status.task_id} completed without an image")
                return status.image_url
            if status.status == STATUS_FAILED:
                raise ProviderError(f"Image generation failed for task {status.task_id}")
            if attempts >= self.max_attempts:
                logger.warning("image_task_timed_out task=%s attempts=%s", status.task_id, attempts)
                raise ProviderTimedOut(
                    f"Task {status.task_id} still pending after {attempts} polls"
                )
            self._sleep(self.poll_interval)
            attempts += 1
            status = self.poll(status.task_id)
