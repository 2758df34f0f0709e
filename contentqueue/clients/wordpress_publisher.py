"""Publisher that creates draft posts through the WordPress REST API.

Authenticates with an application password (HTTP basic auth). Posts are
always created as drafts; tags and categories are sent by name and
resolved to term ids, creating missing terms.
"""

import logging
import time
from typing import Dict, List, Optional

import requests

from .base import ExternalServiceError, PublishResult

logger = logging.getLogger(__name__)

POSTS_ENDPOINT = "/wp-json/wp/v2/posts"
TAGS_ENDPOINT = "/wp-json/wp/v2/tags"
CATEGORIES_ENDPOINT = "/wp-json/wp/v2/categories"


class WordPressPublisher:
    """Publisher collaborator for a single WordPress site.

    Args:
        site_url: Base URL of the site (no trailing /wp-json).
        username: WordPress user owning the application password.
        app_password: Application password (spaces are allowed).
    """

    def __init__(self, site_url: str, username: str, app_password: str,
                 timeout: int = 30, session: Optional[requests.Session] = None):
        if not site_url:
            raise ValueError("WordPress site URL is required")
        self.site_url = site_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (username, app_password)
        self.session.headers.update({"Content-Type": "application/json"})

    @classmethod
    def from_settings(cls, settings) -> "WordPressPublisher":
        return cls(
            settings.wordpress_url,
            settings.wordpress_username,
            settings.wordpress_app_password,
            timeout=settings.publish_timeout_seconds,
        )

    def publish(self, title: str, content: str, tags: List[str], categories: List[str]) -> PublishResult:
        started = time.monotonic()
        payload = {
            "title": title,
            "content": content,
            "status": "draft",
        }
        if tags:
            payload["tags"] = self._term_ids(TAGS_ENDPOINT, tags)
        if categories:
            payload["categories"] = self._term_ids(CATEGORIES_ENDPOINT, categories)

        data = self._request("POST", POSTS_ENDPOINT, json=payload)
        post_id = data.get("id")
        if post_id is None:
            raise ExternalServiceError("WordPress response did not include a post id", retryable=False)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Draft post created", extra={"post_id": post_id, "duration_ms": duration_ms})
        return PublishResult(external_ref=str(post_id), duration_ms=duration_ms)

    def _term_ids(self, endpoint: str, names: List[str]) -> List[int]:
        """Resolve term names to ids, creating terms that don't exist yet."""
        ids = []
        for name in names:
            found = self._request("GET", endpoint, params={"search": name, "per_page": 100})
            match = next(
                (t for t in found if str(t.get("name", "")).lower() == name.lower()), None
            ) if isinstance(found, list) else None
            if match is None:
                match = self._request("POST", endpoint, json={"name": name})
            ids.append(int(match["id"]))
        return ids

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.site_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"WordPress request failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"WordPress {method} {path} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
                retry_after=_retry_after(response.headers),
            )
        return response.json()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("code") or body)[:200]
    return str(body)[:200]


def _retry_after(headers: Dict[str, str]) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
