"""
Detection signatures.

A signature answers one question per run: which addresses produced at least
`threshold` matching events during the trailing `window`? The engine only
relies on the Signature interface, so other log stores can be plugged in by
implementing get_matching_ips() and set_verbose().
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, Optional, Set, Union

from blocklist_errors import ConfigurationError
from durations import parse_duration
from search_client import MAX_RESULT_SIZE, ElasticsearchDataSource

logger = logging.getLogger(__name__)


class Signature(ABC):
    """Interface for activity signatures that identify addresses to block."""

    @abstractmethod
    def get_matching_ips(self) -> Set[str]:
        """
        Answers the addresses that match this signature right now.

        Raises:
            ConfigurationError: If the signature is missing a required setting.
        """
        pass

    @abstractmethod
    def set_verbose(self, verbose: bool) -> None:
        pass

    def validate(self) -> None:
        """
        Checks that every setting needed by get_matching_ips() is present.

        Raises:
            ConfigurationError: Naming the first missing setting.
        """
        pass


def get_field(source: Dict[str, Any], field: str) -> Optional[Any]:
    """Reads a field from a hit's _source, following dotted paths into nested objects."""
    if field in source:
        return source[field]
    value: Any = source
    for part in field.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


class ElasticsearchSignature(Signature):
    """
    Counts events per address in an Elasticsearch data source.

    Example:
        signature = ElasticsearchSignature(
            web_es,
            query="cluster:drupal AND verb:post AND response:403",
            window="5m",
            threshold=10,
            address_field="orig_clientip",
        )
    """

    def __init__(
        self,
        data_source: ElasticsearchDataSource,
        query: Optional[str] = None,
        window: Optional[Union[int, str]] = None,
        threshold: Optional[int] = None,
        address_field: Optional[str] = None,
        timestamp_field: str = "@timestamp",
    ):
        self.data_source = data_source
        self.timestamp_field = timestamp_field
        self.verbose = False

        if query is not None and (not isinstance(query, str) or not query.strip()):
            raise ConfigurationError("query must be a non-empty string.")
        self.query = query

        self.window = parse_duration(window) if window is not None else None
        if self.window == 0:
            raise ConfigurationError("window must be at least one second.")

        if threshold is not None and (
            isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1
        ):
            raise ConfigurationError("threshold must be a positive integer.")
        self.threshold = threshold

        if address_field is not None and (
            not isinstance(address_field, str) or not address_field
        ):
            raise ConfigurationError("address_field must be a non-empty string.")
        self.address_field = address_field

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = bool(verbose)
        self.data_source.set_verbose(verbose)

    def validate(self) -> None:
        name = type(self).__name__
        if not self.query:
            raise ConfigurationError(f"Please specify a query for {name} (missing 'query')")
        if not self.window:
            raise ConfigurationError(f"Please specify a time window for {name} (missing 'window')")
        if not self.threshold:
            raise ConfigurationError(
                f"Please specify a number-of-events threshold for {name} (missing 'threshold')"
            )
        if not self.address_field:
            raise ConfigurationError(
                f"Please specify an IP address field for {name} (missing 'address_field')"
            )

    def build_request(self, from_ts: int, to_ts: int) -> Dict[str, Any]:
        """Combines the query string with a millisecond range filter on the window."""
        return {
            "query": {
                "bool": {
                    "must": [{"query_string": {"query": self.query}}],
                    "filter": [
                        {
                            "range": {
                                self.timestamp_field: {
                                    "gte": from_ts * 1000,
                                    "lte": to_ts * 1000,
                                    "format": "epoch_millis",
                                },
                                "_name": "window",
                            }
                        }
                    ],
                }
            },
            "size": MAX_RESULT_SIZE,
        }

    def get_matching_ips(self) -> Set[str]:
        self.validate()

        to_ts = int(time.time())
        from_ts = to_ts - self.window
        request = self.build_request(from_ts, to_ts)

        results = self.data_source.search(request, from_ts, to_ts)
        if len(results) >= MAX_RESULT_SIZE:
            logger.warning(
                f"Search returned {len(results)} records, the result cap; counts may be saturated."
            )

        counts = Counter()
        for result in results:
            source = result.get("_source") or {}
            ip = get_field(source, self.address_field)
            if not ip:
                logger.info(f"Matched record with no '{self.address_field}' property.")
                continue
            counts[str(ip)] += 1

        message = f"Query '{self.query}' found {len(results)} records from {len(counts)} clients"
        if self.verbose:
            logger.info(message)
        else:
            logger.debug(message)

        return {ip for ip, count in counts.items() if count >= self.threshold}
