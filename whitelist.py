"""
Whitelist of addresses that must never be blocked.

Two rule families are supported: regular expressions matched against the
literal address string, and CIDR ranges. Regex rules are checked first, and
the first matching rule wins.
"""

import ipaddress
import logging
import re
from typing import Iterable, List, Union

from blocklist_errors import InvalidPatternError

logger = logging.getLogger(__name__)

# Every regex must at least be able to run against a known-good address
PATTERN_PROBE_ADDRESS = "127.0.0.1"

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class Whitelist:
    """Holds the configured regex and CIDR rules for one process."""

    def __init__(self, patterns: Iterable[str] = (), cidrs: Iterable[str] = ()):
        self.patterns: List[re.Pattern] = []
        self.networks: List[IPNetwork] = []
        for pattern in patterns:
            self.add_pattern(pattern)
        for cidr in cidrs:
            self.add_cidr(cidr)

    def add_pattern(self, regex: str) -> None:
        """
        Adds a regular expression matching addresses that should never be blocked.

        Raises:
            InvalidPatternError: If the expression does not compile.
        """
        if not isinstance(regex, str) or not regex:
            raise InvalidPatternError(f"Invalid whitelist pattern: {regex!r}")
        try:
            compiled = re.compile(regex)
            compiled.search(PATTERN_PROBE_ADDRESS)
        except re.error as e:
            raise InvalidPatternError(f"Invalid whitelist pattern '{regex}': {e}") from e
        self.patterns.append(compiled)

    def add_cidr(self, cidr: str) -> None:
        """
        Adds an IPv4 or IPv6 CIDR range that should never be blocked.

        Raises:
            InvalidPatternError: If the value is not a CIDR range with a prefix length.
        """
        if not isinstance(cidr, str) or "/" not in cidr:
            raise InvalidPatternError(f"Invalid whitelist CIDR: {cidr!r}")
        try:
            network = ipaddress.ip_network(cidr.strip(), strict=False)
        except ValueError as e:
            raise InvalidPatternError(f"Invalid whitelist CIDR '{cidr}': {e}") from e
        self.networks.append(network)

    def load_file(self, file_path: str) -> int:
        """
        Loads trusted IPs and CIDR ranges from a file, one per line.

        Lines starting with '#' and blank lines are ignored. A bare address is
        added as a single-host range. Returns the number of rules loaded.
        """
        loaded = 0
        try:
            with open(file_path, "r") as f:
                for line in f:
                    entry = line.strip()
                    if not entry or entry.startswith("#"):
                        continue
                    if "/" not in entry:
                        try:
                            address = ipaddress.ip_address(entry)
                        except ValueError as e:
                            raise InvalidPatternError(
                                f"Invalid whitelist entry '{entry}' in {file_path}"
                            ) from e
                        entry = f"{address}/{address.max_prefixlen}"
                    self.add_cidr(entry)
                    loaded += 1
        except FileNotFoundError:
            logger.warning(f"Whitelist file not found: {file_path}")
            return 0

        logger.info(f"Loaded {loaded} whitelist entries from {file_path}")
        return loaded

    def is_whitelisted(self, address: str) -> bool:
        for pattern in self.patterns:
            if pattern.search(address):
                return True

        if not self.networks:
            return False
        try:
            ip = ipaddress.ip_address(address.strip())
        except ValueError:
            return False
        # Membership across IP versions is simply False
        return any(ip in network for network in self.networks)

    def filter(self, addresses: Iterable[str], context: str) -> List[str]:
        """
        Returns the addresses that are not whitelisted, preserving order.

        Args:
            addresses: Addresses matched by a signature.
            context: Display name of the signature, used for logging only.
        """
        allowed = []
        for address in addresses:
            if self.is_whitelisted(address):
                logger.info(
                    f"Whitelisted client [{address}] matched signature [{context}], ignoring."
                )
            else:
                allowed.append(address)
        return allowed

    def __len__(self) -> int:
        return len(self.patterns) + len(self.networks)
