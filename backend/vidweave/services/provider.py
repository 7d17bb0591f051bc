"""Transport layer for the external generative-media provider.

Defines the async interface the generation client talks to, plus an httpx
implementation for a Replicate-style predictions API:

- POST {base_url}/models/{owner}/{name}/predictions  (Prefer: wait)
- GET  {urls.get} until the prediction reaches a terminal state
- GET  {base_url}/predictions/{id}              (status of an earlier prediction)
- GET  {base_url}/models/{owner}/{name}            (model metadata)

HTTP failures are mapped onto the provider error taxonomy in
vidweave.errors so retry decisions never look at raw status codes.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from vidweave.config import settings
from vidweave.errors import (
    InvalidInputError,
    ModelUnavailableError,
    ProviderAuthError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)
from vidweave.schemas.generation import ModelProfile

logger = logging.getLogger(__name__)

_TERMINAL_PREDICTION_STATES = {"succeeded", "failed", "canceled"}


class ProviderTransport(ABC):
    """Abstract base class for provider transports.

    Implementations raise ProviderError subclasses; they never retry
    on their own. Retry and fallback belong to the generation client.
    """

    @abstractmethod
    async def run(self, model_id: str, model_input: dict) -> tuple[Any, Optional[str]]:
        """Run a model to completion.

        Args:
            model_id: "owner/name" model identifier
            model_input: JSON input object for the model

        Returns:
            (raw_output, prediction_id). raw_output is whatever the provider
            returned and is normalized by the caller.
        """
        ...

    @abstractmethod
    async def get_prediction(self, prediction_id: str) -> dict:
        """Current state of a prediction started earlier.

        Returns:
            The prediction object: at least ``status``, plus ``output`` once
            succeeded or ``error`` once failed.
        """
        ...

    @abstractmethod
    async def fetch_model(self, model_id: str) -> Optional[ModelProfile]:
        """Look up a model the static catalogue does not know.

        Returns:
            A ModelProfile, or None if the provider does not know the model.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


def error_for_status(
    status_code: int, model_id: Optional[str], detail: str = "", subject: Optional[str] = None,
) -> ProviderError:
    """Map an HTTP status to a provider error with a human-readable message.

    ``subject`` names what was requested in the message (default "Model <id>").
    """
    subject = subject or f"Model {model_id}"
    suffix = f": {detail[:300]}" if detail else ""
    if status_code == 429:
        return RateLimitedError(
            f"{subject} rate limit exceeded (429){suffix}",
            status_code=status_code, model_id=model_id,
        )
    if status_code >= 500:
        return TransientProviderError(
            f"{subject} is experiencing temporary issues ({status_code}){suffix}",
            status_code=status_code, model_id=model_id,
        )
    if status_code in (401, 403):
        return ProviderAuthError(
            f"Provider rejected credentials for {subject[0].lower()}{subject[1:]} ({status_code}). "
            "Check VIDWEAVE_PROVIDER__API_TOKEN in your environment or config.yaml.",
            status_code=status_code, model_id=model_id,
        )
    if status_code == 404:
        return ModelUnavailableError(
            f"{subject} is not available or not accessible ({status_code}){suffix}",
            status_code=status_code, model_id=model_id,
        )
    return InvalidInputError(
        f"{subject} rejected the request ({status_code}){suffix}",
        status_code=status_code, model_id=model_id,
    )


class HttpProviderTransport(ProviderTransport):
    """httpx transport for a Replicate-style predictions API."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: Optional[float] = None,
        poll_max: Optional[int] = None,
    ) -> None:
        cfg = settings.provider
        self.api_token = api_token if api_token is not None else cfg.api_token
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.poll_interval = cfg.poll_interval if poll_interval is None else poll_interval
        self.poll_max = cfg.poll_max if poll_max is None else poll_max
        self._client = client or httpx.AsyncClient(timeout=cfg.request_timeout)

    def _headers(self, model_id: Optional[str]) -> dict:
        if not self.api_token:
            raise ProviderAuthError(
                "Provider API token is not configured. "
                "Set VIDWEAVE_PROVIDER__API_TOKEN in your environment or config.yaml.",
                model_id=model_id,
            )
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self, method: str, url: str, model_id: Optional[str], subject: Optional[str] = None, **kwargs,
    ) -> httpx.Response:
        subject = subject or f"Model {model_id}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"{subject} request timed out: {e}", model_id=model_id
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{subject} network error: {type(e).__name__}: {e}", model_id=model_id
            ) from e
        return response

    async def run(self, model_id: str, model_input: dict) -> tuple[Any, Optional[str]]:
        headers = self._headers(model_id)
        headers["Prefer"] = "wait"
        response = await self._request(
            "POST",
            f"{self.base_url}/models/{model_id}/predictions",
            model_id,
            headers=headers,
            json={"input": model_input},
        )
        if response.status_code >= 400:
            raise error_for_status(response.status_code, model_id, response.text)

        prediction = response.json()
        polls = 0
        while prediction.get("status") not in _TERMINAL_PREDICTION_STATES:
            if polls >= self.poll_max:
                raise TransientProviderError(
                    f"Model {model_id} prediction {prediction.get('id')} timed out "
                    f"after {polls} polls",
                    model_id=model_id,
                )
            polls += 1
            await asyncio.sleep(self.poll_interval)
            poll_url = (prediction.get("urls") or {}).get("get") or (
                f"{self.base_url}/predictions/{prediction.get('id')}"
            )
            poll = await self._request("GET", poll_url, model_id, headers=self._headers(model_id))
            if poll.status_code >= 400:
                raise error_for_status(poll.status_code, model_id, poll.text)
            prediction = poll.json()

        if prediction["status"] != "succeeded":
            raise TransientProviderError(
                f"Model {model_id} prediction {prediction['status']}: "
                f"{prediction.get('error') or 'no error detail'}",
                model_id=model_id,
            )

        logger.info(f"Model {model_id} prediction {prediction.get('id')} succeeded")
        return prediction.get("output"), prediction.get("id")

    async def get_prediction(self, prediction_id: str) -> dict:
        subject = f"Prediction {prediction_id}"
        response = await self._request(
            "GET",
            f"{self.base_url}/predictions/{prediction_id}",
            None,
            subject=subject,
            headers=self._headers(None),
        )
        if response.status_code >= 400:
            raise error_for_status(response.status_code, None, response.text, subject=subject)
        return response.json()

    async def fetch_model(self, model_id: str) -> Optional[ModelProfile]:
        if "/" not in model_id:
            return None
        response = await self._request(
            "GET",
            f"{self.base_url}/models/{model_id}",
            model_id,
            headers=self._headers(model_id),
        )
        if response.status_code in (404, 422):
            logger.debug(f"Model {model_id} not found at provider ({response.status_code})")
            return None
        if response.status_code >= 400:
            raise error_for_status(response.status_code, model_id, response.text)

        data = response.json()
        return ModelProfile(
            id=model_id,
            name=data.get("name") or model_id,
            description=data.get("description") or "Video generation model",
        )

    async def close(self) -> None:
        await self._client.aclose()
