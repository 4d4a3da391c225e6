#!/usr/bin/env python3
"""
Test suite for whitelist.py
"""

import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blocklist_errors import ConfigurationError, InvalidPatternError
from whitelist import Whitelist


class TestWhitelistRegistration(unittest.TestCase):
    """Invalid rules must fail at registration time."""

    def test_invalid_regex_rejected(self):
        whitelist = Whitelist()
        with self.assertRaises(InvalidPatternError):
            whitelist.add_pattern("^140\\.233\\.(")

    def test_invalid_pattern_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            Whitelist(patterns=["[unclosed"])

    def test_invalid_cidr_rejected(self):
        whitelist = Whitelist()
        for cidr in ("10.0.0.0", "10.0.0.0/33", "300.0.0.0/8", "not-a-cidr/8", "2001:db8::/129"):
            with self.assertRaises(InvalidPatternError, msg=cidr):
                whitelist.add_cidr(cidr)

    def test_valid_rules_registered(self):
        whitelist = Whitelist(patterns=["^140\\.233\\."], cidrs=["10.0.0.0/8", "2001:db8::/32"])
        self.assertEqual(len(whitelist), 3)


class TestWhitelistMatching(unittest.TestCase):
    """Test regex and CIDR matching."""

    def setUp(self):
        self.whitelist = Whitelist(
            patterns=["^140\\.233\\.", "^172\\.16\\."],
            cidrs=["192.168.0.0/16", "2001:db8::/32"],
        )

    def test_regex_match(self):
        self.assertTrue(self.whitelist.is_whitelisted("140.233.1.2"))
        self.assertTrue(self.whitelist.is_whitelisted("172.16.5.5"))

    def test_cidr_match(self):
        self.assertTrue(self.whitelist.is_whitelisted("192.168.44.1"))
        self.assertTrue(self.whitelist.is_whitelisted("2001:db8::1"))

    def test_not_whitelisted(self):
        self.assertFalse(self.whitelist.is_whitelisted("8.8.8.8"))
        self.assertFalse(self.whitelist.is_whitelisted("2001:4860::8888"))

    def test_unparsable_address_never_matches_cidr(self):
        self.assertFalse(self.whitelist.is_whitelisted("not-an-ip"))

    def test_cidr_with_host_bits(self):
        whitelist = Whitelist(cidrs=["10.1.2.3/8"])
        self.assertTrue(whitelist.is_whitelisted("10.200.0.1"))

    def test_filter_removes_whitelisted_and_keeps_order(self):
        ips = ["8.8.8.8", "140.233.0.1", "1.1.1.1", "192.168.1.1"]
        with self.assertLogs("whitelist", level="INFO") as logs:
            result = self.whitelist.filter(ips, "POST with 403")
        self.assertEqual(result, ["8.8.8.8", "1.1.1.1"])
        self.assertIn(
            "Whitelisted client [140.233.0.1] matched signature [POST with 403], ignoring.",
            logs.output[0],
        )

    def test_whitelisted_never_returned_regardless_of_input(self):
        ips = ["140.233.9.9"] * 50
        self.assertEqual(self.whitelist.filter(ips, "any"), [])


class TestWhitelistFile(unittest.TestCase):
    """Test loading the whitelist.txt format."""

    def setUp(self):
        self.temp_file = tempfile.NamedTemporaryFile(mode="w", suffix=".txt", delete=False)
        self.temp_file.write("# office\n203.0.113.7\n\n198.51.100.0/24\n2001:db8::5\n")
        self.temp_file.close()

    def tearDown(self):
        os.unlink(self.temp_file.name)

    def test_load_file(self):
        whitelist = Whitelist()
        loaded = whitelist.load_file(self.temp_file.name)
        self.assertEqual(loaded, 3)
        self.assertTrue(whitelist.is_whitelisted("203.0.113.7"))
        self.assertFalse(whitelist.is_whitelisted("203.0.113.8"))
        self.assertTrue(whitelist.is_whitelisted("198.51.100.200"))
        self.assertTrue(whitelist.is_whitelisted("2001:db8::5"))

    def test_missing_file_is_empty(self):
        whitelist = Whitelist()
        self.assertEqual(whitelist.load_file("/nonexistent/whitelist.txt"), 0)
        self.assertEqual(len(whitelist), 0)

    def test_invalid_entry_rejected(self):
        with open(self.temp_file.name, "w") as f:
            f.write("office-gateway\n")
        with self.assertRaises(InvalidPatternError):
            Whitelist().load_file(self.temp_file.name)


if __name__ == "__main__":
    unittest.main()
