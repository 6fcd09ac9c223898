from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlparse

from app.constants import API_HOST, BEARER_HOSTS, SITE_HOST, SITE_ORIGIN, USER_AGENT
from app.schemas import AuthContext
from app.services.errors import ApiRequestError, ConfigurationError

LOGGER = logging.getLogger("flow.api")


def require_credentials(auth: AuthContext, urls: Iterable[str] = ()) -> None:
    """Fail fast when ``auth`` cannot authenticate against every host in ``urls``."""
    if not auth.session_cookie or not auth.session_cookie.strip():
        raise ConfigurationError("Session cookie is required.")
    for url in urls:
        host = urlparse(url).hostname or ""
        if host in BEARER_HOSTS and not auth.bearer_token:
            raise ConfigurationError(f"Bearer token is required for {host}.")


def build_request_headers(
    url: str,
    auth: AuthContext,
    extra: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if extra:
        headers.update(extra)
    host = urlparse(url).hostname or ""
    if host == SITE_HOST:
        headers.update(
            {
                "Accept": "*/*",
                "Cookie": auth.session_cookie,
                "Origin": SITE_ORIGIN,
                "Referer": f"{SITE_ORIGIN}/",
                "X-Same-Domain": "1",
            }
        )
    elif host == API_HOST:
        if not auth.bearer_token:
            raise ConfigurationError("Bearer token is required.")
        headers.update(
            {
                "Accept": "application/json, text/plain, */*",
                "Authorization": f"Bearer {auth.bearer_token}",
                "Cookie": auth.session_cookie,
                "Origin": SITE_ORIGIN,
                "Referer": f"{SITE_ORIGIN}/",
            }
        )
    return headers


class ApiClient:
    """JSON-over-HTTP client that shapes its headers by destination host."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def request(
        self,
        url: str,
        auth: AuthContext,
        *,
        method: str = "POST",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = build_request_headers(url, auth, headers)
        data: Optional[bytes]
        if body is None:
            data = None
        elif isinstance(body, bytes):
            data = body
        elif isinstance(body, str):
            data = body.encode("utf-8")
        else:
            data = json.dumps(body).encode("utf-8")
        req = urllib.request.Request(url, data=data, headers=request_headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as response:
                text = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            error_text = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            LOGGER.error("API error response from %s (%s): %s", url, exc.code, error_text)
            raise ApiRequestError(url, exc.code, error_text) from exc
        except urllib.error.URLError as exc:
            LOGGER.error("Failed to fetch %s: %s", url, exc.reason)
            raise ApiRequestError(url, None, str(exc.reason)) from exc
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ApiRequestError(url, None, f"invalid JSON response: {text[:200]}") from exc

    def post_json(self, url: str, auth: AuthContext, body: Any) -> Dict[str, Any]:
        return self.request(url, auth, method="POST", body=body)
