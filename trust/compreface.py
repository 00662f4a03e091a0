"""HTTP client for a CompreFace-compatible face recognition service."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

import requests
from django.conf import settings
from django.core.cache import cache

from . import monitoring
from .exceptions import BackendUnavailable

logger = logging.getLogger(__name__)

RECOGNITION_PATH = "/api/v1/recognition"


class CompreFaceClient:
    """Talk to the recognition API.

    Transport errors, timeouts and 5xx responses raise
    :class:`BackendUnavailable`; the biometric adapter turns those into a
    fallback result.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        health_timeout: float = 5.0,
        health_cache_seconds: float = 10.0,
        det_prob_threshold: float = 0.8,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.health_cache_seconds = health_cache_seconds
        self.det_prob_threshold = det_prob_threshold
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> Optional["CompreFaceClient"]:
        """Build a client from Django settings, or ``None`` when unconfigured."""

        base_url = getattr(settings, "COMPREFACE_URL", "") or ""
        api_key = getattr(settings, "COMPREFACE_API_KEY", "") or ""
        if not base_url or not api_key:
            return None
        return cls(
            base_url,
            api_key,
            timeout=float(getattr(settings, "COMPREFACE_TIMEOUT_SECONDS", 30)),
            health_timeout=float(getattr(settings, "COMPREFACE_HEALTH_TIMEOUT_SECONDS", 5)),
            health_cache_seconds=float(getattr(settings, "COMPREFACE_HEALTH_CACHE_SECONDS", 10)),
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key}

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            with monitoring.observe_backend_call(operation):
                response = self.session.request(method, url, headers=self._headers, **kwargs)
        except requests.Timeout as exc:
            raise BackendUnavailable(f"{operation} timed out") from exc
        except requests.RequestException as exc:
            raise BackendUnavailable(f"{operation} failed: {exc}") from exc
        if response.status_code >= 500:
            raise BackendUnavailable(f"{operation} returned HTTP {response.status_code}")
        return response

    @staticmethod
    def _file(image: bytes) -> dict[str, Tuple[str, bytes, str]]:
        return {"file": ("face.jpg", image, "image/jpeg")}

    def add_face(self, subject_id: str, image: bytes) -> Optional[str]:
        """Enroll one image for ``subject_id`` and return the backend image id."""

        response = self._request(
            "add_face",
            "POST",
            f"{RECOGNITION_PATH}/faces",
            params={"subject": subject_id},
            files=self._file(image),
        )
        if not response.ok:
            raise BackendUnavailable(f"add_face rejected with HTTP {response.status_code}")
        return response.json().get("image_id")

    def recognize(self, image: bytes, *, limit: int = 5) -> List[Tuple[str, float]]:
        """Return ``(subject, similarity)`` pairs for the first detected face.

        A 400 response means no face was found and yields an empty list.
        """

        response = self._request(
            "recognize",
            "POST",
            f"{RECOGNITION_PATH}/recognize",
            params={
                "limit": 1,
                "prediction_count": limit,
                "det_prob_threshold": self.det_prob_threshold,
            },
            files=self._file(image),
        )
        if response.status_code == 400:
            logger.info("Recognition backend found no face", extra={"event": "no_face_detected"})
            return []
        if not response.ok:
            raise BackendUnavailable(f"recognize rejected with HTTP {response.status_code}")

        result = response.json().get("result") or []
        if not result:
            return []
        subjects = result[0].get("subjects") or []
        matches = [(str(item["subject"]), float(item["similarity"])) for item in subjects]
        return sorted(matches, key=lambda match: match[1], reverse=True)

    def delete_faces(self, subject_id: str) -> None:
        response = self._request(
            "delete_faces",
            "DELETE",
            f"{RECOGNITION_PATH}/faces",
            params={"subject": subject_id},
        )
        if response.status_code == 404:
            return
        if not response.ok:
            raise BackendUnavailable(f"delete_faces rejected with HTTP {response.status_code}")

    def _cache_key(self) -> str:
        return f"trust:compreface:health:{self.base_url}"

    def _ping(self) -> bool:
        try:
            response = self.session.get(
                f"{self.base_url}{RECOGNITION_PATH}/status",
                headers=self._headers,
                timeout=self.health_timeout,
            )
            if response.ok:
                return True
        except requests.RequestException:
            logger.debug("Status endpoint unreachable, trying healthcheck", exc_info=True)
        try:
            response = self.session.get(
                f"{self.base_url}/healthcheck", timeout=self.health_timeout
            )
        except requests.RequestException:
            return False
        return response.ok

    def health_check(self) -> bool:
        """Return True when the backend answers its status endpoint.

        Results are memoised in the Django cache so concurrent requests do
        not each pay for a health request.
        """

        cached = cache.get(self._cache_key())
        if cached is not None:
            return bool(cached)
        with monitoring.observe_backend_call("health_check"):
            healthy = self._ping()
        cache.set(self._cache_key(), healthy, self.health_cache_seconds)
        if not healthy:
            logger.warning(
                "Recognition backend is unreachable",
                extra={"event": "backend_down", "base_url": self.base_url},
            )
        return healthy


__all__ = ["CompreFaceClient", "RECOGNITION_PATH"]
