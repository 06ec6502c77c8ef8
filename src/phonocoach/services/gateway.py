"""Client for the external speech recognition and word generation backend."""
import asyncio
import logging
import ssl
import time
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from phonocoach import monitoring
from phonocoach.config import GatewaySettings, settings
from phonocoach.errors import Cancelled, InvalidInput, Timeout, UpstreamError
from phonocoach.models.gateway_models import (
    GenerationRequest,
    GenerationResponse,
    RecognitionRequest,
    RecognitionResponse,
)
from phonocoach.services.secret_store import SecretStore

logger = logging.getLogger(__name__)


class SpeechGateway:
    """Recognition and generation calls with secret lookup, timeout and bounded retries.

    Only transport failures (connection errors, timeouts) are retried. An HTTP
    error status is the backend's answer and is raised as UpstreamError at once.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        gateway_settings: Optional[GatewaySettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_store = secret_store
        self.settings = gateway_settings or settings.gateway
        self._client = client
        self._owns_client = client is None

    def _verify(self) -> Union[ssl.SSLContext, bool]:
        if self.settings.ca_cert_path:
            return ssl.create_default_context(cafile=self.settings.ca_cert_path)
        return True

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout, verify=self._verify())
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _endpoint(self, key_template: str, language: str) -> str:
        return self.secret_store.get(key_template.format(lang=language.upper()))

    def _headers(self) -> Dict[str, str]:
        api_key = self.secret_store.get(self.settings.api_key_name)
        return {"Authorization": f"Bearer {api_key}"}

    async def _post(self, operation: str, url: str, **kwargs) -> Dict[str, Any]:
        """POST with retries on transport failures; returns the decoded JSON body."""
        headers = self._headers()
        attempts = self.settings.max_retries + 1
        started = time.monotonic()
        try:
            for attempt in range(attempts):
                try:
                    response = await self.client.post(
                        url, headers=headers, timeout=self.settings.timeout, **kwargs
                    )
                except httpx.TransportError as e:
                    if attempt + 1 < attempts:
                        delay = self.settings.retry_backoff * 2 ** attempt
                        logger.warning(
                            f"{operation} attempt {attempt + 1}/{attempts} failed: {e!r}, retrying in {delay:.2f}s"
                        )
                        monitoring.upstream_retries.labels(operation=operation).inc()
                        await asyncio.sleep(delay)
                        continue
                    if isinstance(e, httpx.TimeoutException):
                        logger.error(f"{operation} timed out after {attempts} attempts")
                        monitoring.upstream_requests.labels(operation=operation, outcome="timeout").inc()
                        raise Timeout(f"{operation} timed out after {attempts} attempts") from e
                    logger.error(f"{operation} failed after {attempts} attempts: {e!r}")
                    monitoring.upstream_requests.labels(operation=operation, outcome="transport_error").inc()
                    raise UpstreamError(None, str(e)) from e

                if not response.is_success:
                    logger.error(f"{operation} returned {response.status_code}")
                    monitoring.upstream_requests.labels(operation=operation, outcome="http_error").inc()
                    raise UpstreamError(response.status_code, response.text)

                try:
                    data = response.json()
                except ValueError as e:
                    monitoring.upstream_requests.labels(operation=operation, outcome="bad_body").inc()
                    raise UpstreamError(response.status_code, response.text) from e
                monitoring.upstream_requests.labels(operation=operation, outcome="ok").inc()
                return data
        except asyncio.CancelledError as e:
            logger.info(f"{operation} cancelled")
            monitoring.upstream_requests.labels(operation=operation, outcome="cancelled").inc()
            raise Cancelled(f"{operation} was cancelled") from e
        finally:
            monitoring.upstream_duration.labels(operation=operation).observe(time.monotonic() - started)

    async def analyze_raw(self, audio: bytes, target_word: str, language: str) -> Dict[str, Any]:
        """Recognition call; returns the backend JSON unchanged."""
        try:
            request = RecognitionRequest(audio=audio, target_word=target_word, language=language)
        except ValidationError as e:
            raise InvalidInput(f"Invalid recognition request: {e.errors()}") from e
        url = self._endpoint(self.settings.recognition_url_key, request.language)
        logger.info(f"Recognizing attempt at '{request.target_word}' ({request.language})")
        return await self._post(
            "recognize",
            url,
            files={"file": ("audio.wav", request.audio, "audio/wav")},
            data={"target_word": request.target_word},
        )

    async def recognize(self, audio: bytes, target_word: str, language: str) -> str:
        """Recognized IPA transcription of the learner's audio."""
        data = await self.analyze_raw(audio, target_word, language)
        try:
            return RecognitionResponse.model_validate(data).transcription
        except ValidationError as e:
            raise UpstreamError(200, str(data)) from e

    async def generate_raw(self, request: GenerationRequest) -> Dict[str, Any]:
        """Generation call; returns the backend JSON unchanged."""
        url = self._endpoint(self.settings.generation_url_key, request.language)
        logger.info(
            f"Generating {request.difficulty_level} word for phoneme '{request.phoneme}' ({request.language})"
        )
        return await self._post("generate", url, data=request.to_form())

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """New practice word focused on a phoneme."""
        data = await self.generate_raw(request)
        try:
            response = GenerationResponse.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(200, str(data)) from e
        monitoring.generated_words.labels(language=request.language).inc()
        return response
