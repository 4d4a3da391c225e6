#!/usr/bin/env python3
"""
Test suite for search_client.py

HTTP calls are mocked at the requests session level.
"""

import json
import os
import sys
import time
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blocklist_errors import ConfigurationError
from search_client import ElasticsearchDataSource


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def hits(*addresses):
    return {"hits": {"hits": [{"_source": {"clientip": ip}} for ip in addresses]}}


class TestDataSourceValidation(unittest.TestCase):
    def test_base_url_must_end_with_slash(self):
        with self.assertRaises(ConfigurationError):
            ElasticsearchDataSource("http://logs.example.com:9200", "logstash")

    def test_base_url_must_be_http(self):
        with self.assertRaises(ConfigurationError):
            ElasticsearchDataSource("ftp://logs.example.com/", "logstash")

    def test_index_base_required(self):
        with self.assertRaises(ConfigurationError):
            ElasticsearchDataSource("http://logs.example.com:9200/", "")

    def test_unknown_strategy(self):
        with self.assertRaises(ConfigurationError):
            ElasticsearchDataSource("http://logs.example.com:9200/", "logstash", index_strategy="weekly")


class TestIndexResolution(unittest.TestCase):
    """Test daily partition naming."""

    def setUp(self):
        self.source = ElasticsearchDataSource("http://logs.example.com:9200/", "logstash")

    def test_three_day_span(self):
        indices = self.source.get_indices(ts(2024, 3, 1), ts(2024, 3, 3, 12))
        self.assertEqual(
            indices,
            ["logstash-2024.03.01", "logstash-2024.03.02", "logstash-2024.03.03"],
        )

    def test_same_day_deduplicated(self):
        indices = self.source.get_indices(ts(2024, 3, 1, 10), ts(2024, 3, 1, 10, 5))
        self.assertEqual(indices, ["logstash-2024.03.01"])

    def test_window_crossing_midnight(self):
        indices = self.source.get_indices(ts(2024, 12, 31, 23, 58), ts(2025, 1, 1, 0, 3))
        self.assertEqual(indices, ["logstash-2024.12.31", "logstash-2025.01.01"])

    def test_partial_days_at_both_ends(self):
        indices = self.source.get_indices(ts(2024, 3, 1, 18), ts(2024, 3, 3, 6))
        self.assertEqual(
            indices,
            ["logstash-2024.03.01", "logstash-2024.03.02", "logstash-2024.03.03"],
        )

    def test_alias_strategy(self):
        source = ElasticsearchDataSource(
            "http://logs.example.com:9200/", "logstash-*", index_strategy="alias"
        )
        self.assertEqual(source.get_indices(ts(2024, 3, 1), ts(2024, 3, 5)), ["logstash-*"])

    def test_field_stats_strategy_is_cached(self):
        source = ElasticsearchDataSource(
            "http://logs.example.com:9200/", "logstash-*", index_strategy="field_stats"
        )
        source.session = MagicMock()
        source.session.post.return_value = make_response(
            body={"indices": {"logstash-b": {}, "logstash-a": {}}}
        )

        first = source.get_indices(ts(2024, 3, 1), ts(2024, 3, 2))
        second = source.get_indices(ts(2024, 3, 1), ts(2024, 3, 2))

        self.assertEqual(first, ["logstash-a", "logstash-b"])
        self.assertEqual(second, first)
        source.session.post.assert_called_once()
        url = source.session.post.call_args[0][0]
        self.assertEqual(url, "http://logs.example.com:9200/logstash-*/_field_stats?level=indices")


class TestSearch(unittest.TestCase):
    """Test query execution and per-index failure isolation."""

    def setUp(self):
        self.source = ElasticsearchDataSource("http://logs.example.com:9200/", "logstash")
        self.source.session = MagicMock()
        self.from_ts = ts(2024, 3, 1, 23, 55)
        self.to_ts = ts(2024, 3, 2, 0, 5)
        self.body = {"query": {"match_all": {}}, "size": 10}

    def test_merges_results_in_index_order(self):
        responses = {
            "http://logs.example.com:9200/logstash-2024.03.01/_search": make_response(body=hits("1.1.1.1")),
            "http://logs.example.com:9200/logstash-2024.03.02/_search": make_response(
                body=hits("2.2.2.2", "3.3.3.3")
            ),
        }
        self.source.session.post.side_effect = lambda url, **kwargs: responses[url]

        results = self.source.search(self.body, self.from_ts, self.to_ts)

        self.assertEqual(
            [r["_source"]["clientip"] for r in results], ["1.1.1.1", "2.2.2.2", "3.3.3.3"]
        )
        _, kwargs = self.source.session.post.call_args
        self.assertEqual(json.loads(kwargs["data"]), self.body)
        self.assertEqual(kwargs["timeout"], (10, 30))

    def test_non_200_index_is_skipped(self):
        self.source.session.post.side_effect = [
            make_response(status_code=404, body={"error": {"type": "index_not_found_exception",
                                                           "reason": "no such index",
                                                           "index": "logstash-2024.03.01"}}),
            make_response(body=hits("2.2.2.2")),
        ]
        results = self.source.search(self.body, self.from_ts, self.to_ts)
        self.assertEqual(len(results), 1)

    def test_error_payload_with_200_is_skipped(self):
        self.source.session.post.side_effect = [
            make_response(body={"error": "SearchPhaseExecutionException"}),
            make_response(body=hits("2.2.2.2")),
        ]
        results = self.source.search(self.body, self.from_ts, self.to_ts)
        self.assertEqual(len(results), 1)

    def test_malformed_json_is_skipped(self):
        self.source.session.post.side_effect = [
            make_response(body=ValueError("No JSON object could be decoded")),
            make_response(body=hits("2.2.2.2")),
        ]
        results = self.source.search(self.body, self.from_ts, self.to_ts)
        self.assertEqual(len(results), 1)

    def test_missing_hits_is_skipped(self):
        self.source.session.post.side_effect = [
            make_response(body={"took": 3}),
            make_response(body=hits("2.2.2.2")),
        ]
        results = self.source.search(self.body, self.from_ts, self.to_ts)
        self.assertEqual(len(results), 1)

    def test_transport_failure_is_skipped(self):
        self.source.session.post.side_effect = [
            requests.exceptions.ConnectTimeout("timed out"),
            make_response(body=hits("2.2.2.2")),
        ]
        with self.assertLogs("search_client", level="ERROR") as logs:
            results = self.source.search(self.body, self.from_ts, self.to_ts)
        self.assertEqual(len(results), 1)
        self.assertIn("Error: HTTP POST to", logs.output[0])

    def test_all_indices_fail(self):
        self.source.session.post.side_effect = requests.exceptions.ConnectionError("refused")
        self.assertEqual(self.source.search(self.body, self.from_ts, self.to_ts), [])

    def test_parallel_search_keeps_index_order(self):
        source = ElasticsearchDataSource("http://logs.example.com:9200/", "logstash", max_workers=4)
        source.session = MagicMock()
        responses = {
            "http://logs.example.com:9200/logstash-2024.03.01/_search": make_response(body=hits("1.1.1.1")),
            "http://logs.example.com:9200/logstash-2024.03.02/_search": make_response(body=hits("2.2.2.2")),
            "http://logs.example.com:9200/logstash-2024.03.03/_search": make_response(body=hits("3.3.3.3")),
        }
        source.session.post.side_effect = lambda url, **kwargs: responses[url]

        results = source.search(self.body, ts(2024, 3, 1), ts(2024, 3, 3, 12))
        self.assertEqual(
            [r["_source"]["clientip"] for r in results], ["1.1.1.1", "2.2.2.2", "3.3.3.3"]
        )

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            self.source.search({}, self.from_ts, self.to_ts)
        with self.assertRaises(ValueError):
            self.source.search(self.body, -1, self.to_ts)
        with self.assertRaises(ValueError):
            self.source.search(self.body, self.from_ts, "yesterday")

    def test_to_now(self):
        self.source.session.post.return_value = make_response(body=hits())
        self.assertEqual(self.source.search(self.body, int(time.time()) - 300, "now"), [])
        self.assertTrue(self.source.session.post.called)


if __name__ == "__main__":
    unittest.main()
