"""Firebase Realtime Database REST client with rate limiting and retries."""

import logging
from dataclasses import dataclass
from datetime import datetime
from time import sleep
from typing import Any, Dict, List, Optional

import requests

from .exceptions import RemoteStoreError

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TIMEOUT = 10
DEFAULT_RETRIES = 3

# Rate limiting and backoff settings
RATE_LIMIT_REQUESTS = 60  # Max requests per minute
RATE_LIMIT_WINDOW = 60  # Window in seconds
BACKOFF_BASE = 1.0  # Base delay for exponential backoff (seconds)
BACKOFF_MAX = 30.0  # Maximum backoff delay (seconds)

STATUS_ACTIVE = "active"

logger = logging.getLogger(__name__)


# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """Simple rate limiter using sliding window algorithm."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: List[float] = []

    def acquire(self) -> float:
        """
        Acquire permission to make a request, waiting if necessary.

        Returns:
            Time waited in seconds (0 if no wait was needed)
        """
        now = datetime.now().timestamp()
        waited = 0.0

        cutoff = now - self.window_seconds
        self.requests = [ts for ts in self.requests if ts > cutoff]

        if len(self.requests) >= self.max_requests:
            # Wait until the oldest request leaves the window
            wait_time = self.requests[0] - cutoff
            if wait_time > 0:
                logger.debug(f"Rate limit reached, waiting {wait_time:.2f}s")
                sleep(wait_time)
                waited = wait_time
                now = datetime.now().timestamp()

        self.requests.append(now)
        return waited


# =============================================================================
# REMOTE RECORDS
# =============================================================================

@dataclass
class BlockedUrl:
    """A URL blocked from the companion app."""
    id: str
    url: str
    added_by: str = ""
    added_at: int = 0
    status: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "BlockedUrl":
        added_at = data.get("addedAt", 0)
        try:
            added_at = int(added_at or 0)
        except (TypeError, ValueError):
            added_at = 0
        return cls(
            id=str(data.get("id") or key),
            url=str(data.get("url") or ""),
            added_by=str(data.get("addedBy") or ""),
            added_at=added_at,
            status=str(data.get("status") or ""),
        )


def payload_to_records(payload: Any) -> Dict[str, Dict[str, Any]]:
    """
    Flatten a remote payload into a mapping of key to record dict.

    Objects are used as-is; arrays become keys "url_<index>". Null and
    non-object entries are skipped.
    """
    if isinstance(payload, dict):
        items = payload.items()
    elif isinstance(payload, list):
        items = ((f"url_{i}", entry) for i, entry in enumerate(payload))
    else:
        return {}
    return {str(key): value for key, value in items if isinstance(value, dict)}


def parse_blocked_urls(payload: Any) -> Dict[str, BlockedUrl]:
    """Parse a blockedUrls payload (object or array) into BlockedUrl records."""
    return {
        key: BlockedUrl.from_dict(key, value)
        for key, value in payload_to_records(payload).items()
    }


# =============================================================================
# REMOTE STORE CLIENT
# =============================================================================

class RemoteStoreClient:
    """Client for the Firebase Realtime Database REST API."""

    def __init__(
        self,
        database_url: str,
        auth_token: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            database_url: Database root, e.g. https://project.firebaseio.com
            auth_token: Optional database secret or ID token sent as ?auth=
            timeout: Request timeout in seconds
            retries: Number of retry attempts for failed requests
        """
        self.database_url = database_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.retries = retries
        self.headers: Dict[str, str] = {"Content-Type": "application/json"}
        self._rate_limiter = rate_limiter or RateLimiter()

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{path.strip('/')}.json"

    def _calculate_backoff(self, attempt: int) -> float:
        delay = BACKOFF_BASE * (2 ** attempt)
        return min(delay, BACKOFF_MAX)

    def request(self, method: str, path: str, data: Any = None) -> Any:
        """
        Make a request with retry logic and exponential backoff.

        Args:
            method: HTTP method (GET, PUT, PATCH)
            path: Database path without the .json suffix
            data: Optional JSON body

        Returns:
            Decoded JSON body (None when the path holds no data)

        Raises:
            RemoteStoreError: If the request fails after all retries
        """
        url = self._url(path)
        params = {"auth": self.auth_token} if self.auth_token else None
        last_error = ""

        for attempt in range(self.retries + 1):
            self._rate_limiter.acquire()

            try:
                response = requests.request(
                    method,
                    url,
                    headers=self.headers,
                    params=params,
                    json=data,
                    timeout=self.timeout,
                )
                response.raise_for_status()

                if not response.text:
                    return None
                try:
                    return response.json()
                except ValueError as e:
                    raise RemoteStoreError(f"Invalid JSON response for {method} {path}: {e}")

            except requests.exceptions.Timeout:
                last_error = "timeout"
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if status_code != 429 and not (500 <= status_code < 600):
                    raise RemoteStoreError(f"HTTP {status_code} for {method} {path}")
                last_error = f"HTTP {status_code}"
            except requests.exceptions.RequestException as e:
                last_error = str(e)

            if attempt < self.retries:
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"Request failed for {method} {path} ({last_error}), "
                    f"retry {attempt + 1}/{self.retries} after {backoff:.1f}s"
                )
                sleep(backoff)

        raise RemoteStoreError(
            f"Request failed after {self.retries} retries: {method} {path} ({last_error})"
        )

    def get(self, path: str) -> Any:
        """Read the value stored at a path; None if empty."""
        return self.request("GET", path)

    def put(self, path: str, data: Any) -> Any:
        """Overwrite the value stored at a path."""
        return self.request("PUT", path, data)

    def test_connection(self, family_id: str) -> None:
        """
        Write a connection test record under the family.

        Raises:
            RemoteStoreError: If the write fails
        """
        self.put(
            f"kidsafe/families/{family_id}/connectionTest",
            {
                "timestamp": int(datetime.now().timestamp() * 1000),
                "message": "PC connection test",
            },
        )
        logger.info("Remote store connection test successful")
