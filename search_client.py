"""
Time-windowed search against an Elasticsearch log store.

The data source resolves which indices cover a [from, to] window, posts the
query to each of them and returns the raw hit records. A failure against one
index is logged and skipped so the remaining indices are still searched.

Index strategies:
    daily:       one index per UTC day, named "<index_base>-YYYY.MM.DD"
    alias:       a single wildcard or alias name, e.g. "logstash-*"
    field_stats: ask the cluster which indices hold events in the window
"""

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

from blocklist_errors import BackendQueryError, ConfigurationError

logger = logging.getLogger(__name__)

# Practical ceiling on hits returned by one query. Counts above it saturate.
MAX_RESULT_SIZE = 10000

SECONDS_PER_DAY = 24 * 3600

INDEX_STRATEGIES = ("daily", "alias", "field_stats")

BASE_URL_PATTERN = re.compile(r"^https?://.+/$")


class ElasticsearchDataSource:
    """
    A log store that signatures search through.

    Args:
        base_url: Cluster URL, e.g. "http://logs.example.com:9200/". Must end with "/".
        index_base: Index name prefix for the daily strategy, or the wildcard /
                    alias name for the alias and field_stats strategies.
        index_strategy: One of "daily", "alias" or "field_stats".
        timestamp_field: Event time field used for index discovery.
        connect_timeout: Seconds to wait for a connection.
        timeout: Seconds to wait for a response.
        http_auth: Optional (username, password) tuple for basic auth.
        max_workers: Number of indices searched concurrently. 1 searches serially.
    """

    def __init__(
        self,
        base_url: str,
        index_base: str,
        index_strategy: str = "daily",
        timestamp_field: str = "@timestamp",
        connect_timeout: float = 10,
        timeout: float = 30,
        http_auth: Optional[Tuple[str, str]] = None,
        max_workers: int = 1,
    ):
        if not isinstance(base_url, str) or not BASE_URL_PATTERN.match(base_url):
            raise ConfigurationError(
                "base_url must begin with 'http://' or 'https://' and end with a '/'."
            )
        if not index_base:
            raise ConfigurationError("index_base must be specified, for example 'logstash'")
        if index_strategy not in INDEX_STRATEGIES:
            raise ConfigurationError(
                f"Unknown index strategy '{index_strategy}'. Use one of: {', '.join(INDEX_STRATEGIES)}"
            )
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")

        self.base_url = base_url
        self.index_base = index_base
        self.index_strategy = index_strategy
        self.timestamp_field = timestamp_field
        self.timeout = (connect_timeout, timeout)
        self.max_workers = max_workers
        self.verbose = False
        self.index_cache: Dict[Tuple[int, int], List[str]] = {}

        self.session = requests.Session()
        self.session.headers.update(
            {"User-Agent": "Blocklister", "Content-Type": "application/json"}
        )
        if http_auth:
            self.session.auth = tuple(http_auth)

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = bool(verbose)

    def _trace(self, message: str) -> None:
        if self.verbose:
            logger.info(message)
        else:
            logger.debug(message)

    def get_indices(self, from_ts: int, to_ts: int) -> List[str]:
        """Returns the sorted, de-duplicated indices to search for the window."""
        if self.index_strategy == "alias":
            indices = [self.index_base]
        elif self.index_strategy == "field_stats":
            indices = self._get_indices_by_search(from_ts, to_ts)
        else:
            indices = self._get_indices_by_pattern(from_ts, to_ts)
        return sorted(set(indices))

    def _daily_index(self, ts: int) -> str:
        day = datetime.fromtimestamp(ts, tz=timezone.utc)
        return f"{self.index_base}-{day:%Y.%m.%d}"

    def _get_indices_by_pattern(self, from_ts: int, to_ts: int) -> List[str]:
        indices = [self._daily_index(to_ts), self._daily_index(from_ts)]
        t = from_ts + SECONDS_PER_DAY
        while t < to_ts:
            indices.append(self._daily_index(t))
            t += SECONDS_PER_DAY
        return indices

    def _get_indices_by_search(self, from_ts: int, to_ts: int) -> List[str]:
        """Asks the field-stats API which indices hold events in the window."""
        cache_key = (from_ts, to_ts)
        if cache_key in self.index_cache:
            return self.index_cache[cache_key]

        url = f"{self.base_url}{self.index_base}/_field_stats?level=indices"
        body = {
            "fields": [self.timestamp_field],
            "index_constraints": {
                self.timestamp_field: {
                    "max_value": {
                        "gte": datetime.fromtimestamp(from_ts, tz=timezone.utc).isoformat()
                    },
                    "min_value": {
                        "lte": datetime.fromtimestamp(to_ts, tz=timezone.utc).isoformat()
                    },
                }
            },
        }
        result = self._post(url, body)
        indices = sorted(result.get("indices", {}).keys())
        self.index_cache[cache_key] = indices
        self._trace(f"Search for indices at {url} found: {', '.join(indices)}")
        return indices

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        POSTs a JSON body and returns the decoded response.

        Raises:
            BackendQueryError: On transport failure, non-200 status, undecodable
                               JSON or an error object in the response.
        """
        try:
            response = self.session.post(url, data=json.dumps(body), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise BackendQueryError(f"HTTP POST to {url} failed. {e}") from e

        try:
            result = response.json()
        except ValueError:
            result = None

        error_message = ""
        if isinstance(result, dict) and result.get("error"):
            error = result["error"]
            if isinstance(error, dict):
                error_message = f"{error.get('type')}: {error.get('reason')}"
                if error.get("index"):
                    error_message += f" in index {error['index']}"
            else:
                error_message = str(error)

        if response.status_code != 200 or error_message:
            raise BackendQueryError(
                f"Search to {url} failed with response_code {response.status_code}. {error_message}".strip()
            )
        if not isinstance(result, dict):
            raise BackendQueryError(f"Error decoding JSON response from {url}.")
        return result

    def _search_index(self, index: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}{index}/_search"
        self._trace(f"Searching {url} for {json.dumps(body)}")
        try:
            result = self._post(url, body)
            hits = result.get("hits")
            if not isinstance(hits, dict) or not isinstance(hits.get("hits"), list):
                raise BackendQueryError("Error decoding JSON response into hits.")
            return hits["hits"]
        except BackendQueryError as e:
            # Continue other fetches even if one index fails
            logger.error(f"Error: {e}")
            return []

    def search(
        self, query_body: Dict[str, Any], from_ts: int, to: Union[int, str] = "now"
    ) -> List[Dict[str, Any]]:
        """
        Runs a query over every index covering [from_ts, to].

        Args:
            query_body: Elasticsearch request body.
            from_ts: Epoch seconds to begin searching at.
            to: Epoch seconds to end searching at, or "now".

        Returns:
            The raw hit records of all indices, in sorted index order.
        """
        if not query_body:
            raise ValueError("No query body specified.")
        if isinstance(from_ts, bool) or not isinstance(from_ts, int) or from_ts < 0:
            raise ValueError("A from timestamp must be specified.")
        if to == "now":
            to_ts = int(time.time())
        elif isinstance(to, bool) or not isinstance(to, int) or to < 0:
            raise ValueError("A to timestamp must be specified.")
        else:
            to_ts = to

        try:
            indices = self.get_indices(from_ts, to_ts)
        except BackendQueryError as e:
            logger.error(f"Error: {e}")
            return []

        if self.max_workers > 1 and len(indices) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                per_index = list(
                    executor.map(lambda index: self._search_index(index, query_body), indices)
                )
        else:
            per_index = [self._search_index(index, query_body) for index in indices]

        results = []
        for hits in per_index:
            results.extend(hits)
        return results
