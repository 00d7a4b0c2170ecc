#!/usr/bin/env python3
"""Minimal HTTP client for the Nightscout REST API (v1).

Only the endpoints the ops scripts need are wrapped:

    NightscoutAPI.status()          GET /api/v1/status.json
    NightscoutAPI.recent_entries()  GET /api/v1/entries.json?count=N
    NightscoutAPI.status_code()     HTTP code of /api/v1/status, 0 if unreachable
    NightscoutAPI.is_up()           True iff /api/v1/status answers 200

The same class is pointed at the local container
(``http://localhost:8080``) and at the public tunnel hostname
(``https://<domain>``).

Authentication
--------------
Nightscout expects the SHA-1 hex digest of ``API_SECRET`` in an
``api-secret`` header.  The secret is optional: ``status`` and, with
``AUTH_DEFAULT_ROLES=readable``, ``entries`` are readable anonymously.

This module does not load .env itself -- callers pass the secret in.
"""

import hashlib

import requests

DEFAULT_URL = "http://localhost:8080"


def hash_api_secret(secret: str) -> str:
    """Return the SHA-1 hex digest Nightscout expects in ``api-secret``."""
    return hashlib.sha1(secret.encode("utf-8")).hexdigest()


class NightscoutAPI:
    """Nightscout API client bound to one base URL.

    Attributes:
        base_url: Site root, without trailing slash.
        timeout: Per-request timeout in seconds.

    Example::

        api = NightscoutAPI("http://localhost:8080")
        if api.is_up():
            print(api.status()["version"])
    """

    def __init__(self, base_url: str = DEFAULT_URL, api_secret: str | None = None,
                 timeout: float = 10):
        """Initialize the client.

        Args:
            base_url: Site root, e.g. ``http://localhost:8080``.
            api_secret: Plain-text ``API_SECRET``; hashed before sending.
            timeout: Per-request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if api_secret:
            self._session.headers["api-secret"] = hash_api_secret(api_secret)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def get(self, path: str, **kwargs):
        """Send a GET request.

        Args:
            path: Path appended to ``base_url`` (e.g. "/api/v1/status.json").
            **kwargs: Passed through to requests (e.g. params=...).

        Returns:
            requests.Response object.
        """
        kwargs.setdefault("timeout", self.timeout)
        return self._session.get(self._url(path), **kwargs)

    # -- High-level helpers ------------------------------------------------

    def status(self) -> dict:
        """Return the parsed ``/api/v1/status.json`` document.

        Raises:
            requests.HTTPError: If the server answers with an error code.
        """
        resp = self.get("/api/v1/status.json")
        resp.raise_for_status()
        return resp.json()

    def status_code(self) -> int:
        """HTTP status code of ``/api/v1/status``, or 0 if the site is unreachable."""
        try:
            return self.get("/api/v1/status").status_code
        except requests.RequestException:
            return 0

    def is_up(self) -> bool:
        return self.status_code() == 200

    def recent_entries(self, count: int = 1) -> list[dict]:
        """Return the newest *count* glucose entries.

        Raises:
            requests.HTTPError: If the request is rejected.
        """
        resp = self.get("/api/v1/entries.json", params={"count": count})
        resp.raise_for_status()
        data = resp.json()
        return data if isinstance(data, list) else []
