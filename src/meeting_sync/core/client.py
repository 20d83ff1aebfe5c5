import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import requests

from ..config import Config
from ..errors import NetworkError, RemoteAPIError, is_retryable
from ..sync.models import DecodedDocument, decode_documents

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
MAX_PAGES = 100
MAX_RETRY_AFTER = 300.0


class DocumentSource(Protocol):
    """Where remote documents come from.

    Both fetch methods return decoded documents in stable creation order.
    Retries and pagination are the source's business.
    """

    def test_connection(self) -> bool: ...  # pragma: no cover

    def fetch_all(self) -> list[DecodedDocument]: ...  # pragma: no cover

    def fetch_since(
        self, since: datetime | str
    ) -> list[DecodedDocument]: ...  # pragma: no cover


class DocumentApiClient:
    def __init__(
        self,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self._thread_local = threading.local()
        self._sleep = sleep
        self.base_url = config.api_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """Session of the calling thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {self.config.api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        return session

    def _retry_delay(self, attempt: int, error: Exception) -> float:
        """Exponential backoff, or the server's Retry-After on 429."""
        delay = self.config.retry_delay * (2**attempt)
        if isinstance(error, RemoteAPIError) and error.status_code == 429:
            if error.retry_after is not None:
                delay = min(error.retry_after, MAX_RETRY_AFTER)
        return delay

    def _request_once(self, path: str, params: dict[str, Any] | None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._get_session().get(
                url, params=params, timeout=self.config.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as err:
            raise NetworkError(f"Request to {url} failed: {err}") from err

        if not response.ok:
            raise RemoteAPIError(
                response.status_code,
                (response.text or response.reason or "")[:200],
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            return response.json()
        except ValueError as err:
            raise RemoteAPIError(
                response.status_code, f"Invalid JSON response from {url}"
            ) from err

    def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET *path*, retrying retryable failures up to ``max_retries`` times.
        """
        attempt = 0
        while True:
            try:
                return self._request_once(path, params)
            except (NetworkError, RemoteAPIError) as err:
                if not is_retryable(err) or attempt >= self.config.max_retries:
                    raise
                delay = self._retry_delay(attempt, err)
                attempt += 1
                logger.warning(
                    "Request %s failed (%s), retry %d/%d in %.1fs",
                    path,
                    err,
                    attempt,
                    self.config.max_retries,
                    delay,
                )
                self._sleep(delay)

    def test_connection(self) -> bool:
        """
        Check the API is reachable and the key is accepted.
        """
        try:
            data = self._request("health")
        except (NetworkError, RemoteAPIError) as err:
            logger.error("Connection test failed: %s", err)
            return False
        return isinstance(data, dict) and data.get("status") == "ok"

    def _fetch_pages(self, params: dict[str, Any]) -> list[DecodedDocument]:
        documents: list[DecodedDocument] = []
        for page in range(1, MAX_PAGES + 1):
            body = self._request(
                "meetings", {**params, "page": page, "limit": PAGE_SIZE}
            )
            if isinstance(body, list):
                documents.extend(decode_documents(body))
                break
            if not isinstance(body, dict):
                raise RemoteAPIError(200, "Unexpected response shape for meetings")

            data = body.get("data") or []
            documents.extend(decode_documents(data))
            logger.debug("Fetched page %d (%d documents)", page, len(data))
            if not body.get("hasMore") or not data:
                break
        else:
            logger.warning(
                "Stopped after %d pages; remaining documents are not fetched",
                MAX_PAGES,
            )
        return documents

    def fetch_all(self) -> list[DecodedDocument]:
        """
        Fetch every meeting, oldest first.
        """
        documents = self._fetch_pages({})
        logger.info("Fetched %d documents", len(documents))
        return documents

    def fetch_since(self, since: datetime | str) -> list[DecodedDocument]:
        """
        Fetch meetings created or updated after *since*.
        """
        if isinstance(since, datetime):
            since = since.astimezone(timezone.utc).isoformat()
        documents = self._fetch_pages({"since": since})
        logger.info("Fetched %d documents changed since %s", len(documents), since)
        return documents


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
