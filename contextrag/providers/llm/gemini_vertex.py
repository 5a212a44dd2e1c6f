from __future__ import annotations

import asyncio
import logging
from typing import Any

from contextrag.core.config import Settings
from contextrag.core.errors import ProviderConfigError, ProviderError

logger = logging.getLogger(__name__)


def validate_vertex_config(settings: Settings, model_setting: str) -> tuple[str, str, str]:
    # Fail fast to avoid confusing downstream SDK errors.
    project = settings.google_cloud_project
    location = settings.google_cloud_location
    model = getattr(settings, model_setting)
    missing = []
    if not project:
        missing.append("GOOGLE_CLOUD_PROJECT")
    if not location:
        missing.append("GOOGLE_CLOUD_LOCATION")
    if not model:
        missing.append(model_setting.upper())
    if missing:
        raise ProviderConfigError(
            f"Vertex config missing: set {', '.join(missing)} in .env."
        )
    return project, location, model


class GeminiVertexProvider:
    def __init__(self, settings: Settings, model: Any | None = None) -> None:
        self._settings = settings
        self._model = model

    def _get_model(self) -> Any:
        if self._model is not None:
            return self._model
        project, location, model_name = validate_vertex_config(self._settings, "gemini_model")
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        init(project=project, location=location)
        self._model = GenerativeModel(model_name)
        return self._model

    async def generate(self, prompt: str) -> str:
        model = self._get_model()
        try:
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import GoogleAPICallError, PermissionDenied, Unauthenticated
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Google API core not available. Install google-cloud-aiplatform."
            ) from exc

        try:
            response = await asyncio.to_thread(model.generate_content, prompt)
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_generate_auth_error model=%s", self._settings.gemini_model)
            raise ProviderConfigError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except GoogleAPICallError as exc:
            # Quota and availability errors are transient; the workflow engine retries them.
            logger.warning("vertex_generate_error model=%s code=%s", self._settings.gemini_model, exc.code)
            raise ProviderError("Vertex AI generate request failed.") from exc

        try:
            text = response.text
        except ValueError:
            # Blocked or empty candidates raise on .text access.
            text = ""
        return (text or "").strip()
