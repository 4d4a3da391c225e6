#!/usr/bin/env python3
"""
Blocklister - Signature-based blocklist maintenance

This module runs configured detection signatures against recent log events
and maintains a time-bounded block list of offending client addresses, for
consumption by a firewall or packet filter.

Key Features:
    - Signatures: Named log-store queries with a time window and a per-address
      hit threshold, each carrying its own block duration
    - Aggregation: Addresses matching several signatures are blocked once, for
      the longest of the matched durations
    - Time-Based Persistence: Entries expire after their ttl and are removed at
      the start of the next run
    - Whitelisting: Regex and CIDR rules that are never blocked
    - Alerting: Email and Slack report when a run matches unusually many clients

Architecture:
    One update run performs these steps:
    1. Remove expired entries from the block list
    2. Evaluate every signature, in registration order
    3. Drop whitelisted addresses from each signature's matches
    4. Merge matches into one record per address
    5. Insert addresses that are not already blocked
    6. Send an alert if the number of matched clients reaches the threshold

Usage:
    Update the block list (run periodically, e.g. from cron):
        $ blocklister -c /etc/blocklister/blocklister.json update

    Print the active block list for a firewall:
        $ blocklister -c /etc/blocklister/blocklister.json get-list

Exit Codes:
    0   success
    1   invalid configuration
    3   block list storage failure
    4   configuration file not installed
"""

__version__ = "1.0.0"

import argparse
import ipaddress
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from alert_notifier import AlertNotifier
from blocklist_config import BlocklisterConfig, SignatureRegistration, load_config, open_store
from blocklist_errors import BlocklisterError
from durations import format_duration
from storage_backends import BlockEntry, DuplicateEntryError, StorageBackend

logger = logging.getLogger("blocklister")


@dataclass
class RunEntry:
    """How one address will be blocked, as decided by a single run."""

    block_ttl: int
    primary_signature: str
    all_signatures: List[str] = field(default_factory=list)


RunResult = Dict[str, RunEntry]


def setup_logging(debug: bool = False, stream=None):
    """Configures logging level and destination."""
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        stream=stream or sys.stdout,
        force=True,
    )


def merge_signature_matches(
    matches: Iterable[Tuple[SignatureRegistration, Iterable[str]]]
) -> RunResult:
    """
    Folds per-signature matches into one entry per address.

    The block ttl is the longest duration of all matched signatures. On equal
    durations the earlier registered signature stays primary.

    Args:
        matches: (registration, addresses) pairs in registration order.
    """
    result: RunResult = {}
    for registration, addresses in matches:
        for ip in addresses:
            entry = result.get(ip)
            if entry is None:
                result[ip] = RunEntry(
                    block_ttl=registration.block_duration,
                    primary_signature=registration.display_name,
                    all_signatures=[registration.display_name],
                )
                continue

            if registration.display_name not in entry.all_signatures:
                entry.all_signatures.append(registration.display_name)
            if registration.block_duration > entry.block_ttl:
                entry.block_ttl = registration.block_duration
                entry.primary_signature = registration.display_name
    return result


def _evaluate(registration: SignatureRegistration) -> Set[str]:
    return set(registration.signature.get_matching_ips())


def evaluate_signatures(config: BlocklisterConfig) -> List[Tuple[SignatureRegistration, List[str]]]:
    """
    Runs every signature and whitelist-filters its matches.

    Returns (registration, addresses) pairs in registration order, whether or
    not the signatures were evaluated concurrently.
    """
    registrations = config.signatures
    if config.parallel_signatures and len(registrations) > 1:
        with ThreadPoolExecutor(max_workers=min(10, len(registrations))) as executor:
            raw_matches = list(executor.map(_evaluate, registrations))
    else:
        raw_matches = [_evaluate(registration) for registration in registrations]

    filtered = []
    for registration, ips in zip(registrations, raw_matches):
        ips = config.whitelist.filter(sorted(ips), registration.display_name)
        for ip in ips:
            logger.info(f"Client [{ip}] matched signature [{registration.display_name}]")
        filtered.append((registration, ips))
    return filtered


def persist_new_entries(store: StorageBackend, run_result: RunResult, now: Optional[int] = None) -> List[str]:
    """
    Inserts addresses that are not already in the block list.

    Existing entries are left untouched: no ttl extension, no signature update.
    Returns the addresses that were inserted.
    """
    now = int(time.time()) if now is None else now
    added = []
    for ip, entry in run_result.items():
        if store.exists(ip):
            logger.debug(f"Client [{ip}] is already in the blocklist")
            continue
        try:
            store.insert(
                BlockEntry(
                    address=ip,
                    time_added=now,
                    ttl=entry.block_ttl,
                    signature=entry.primary_signature,
                    matched_signatures=tuple(entry.all_signatures),
                )
            )
        except DuplicateEntryError:
            # Another invocation inserted it first
            logger.debug(f"Client [{ip}] was added to the blocklist concurrently")
            continue
        added.append(ip)
        logger.info(
            f"Client [{ip}] added to blocklist for {format_duration(entry.block_ttl)} "
            f"for matching signature [{entry.primary_signature}]"
        )
    return added


def update_blocklist(
    config: BlocklisterConfig,
    store: StorageBackend,
    notifier: Optional[AlertNotifier] = None,
    now: Optional[int] = None,
) -> RunResult:
    """
    Performs one run: expire, evaluate, merge, persist, alert.

    Raises:
        ConfigurationError: If a signature is missing a required setting.
        StorageError: If the block list storage fails.
    """
    logger.info("--- Starting blocklist update ---")
    store.expire_and_report(now)

    matches = evaluate_signatures(config)
    run_result = merge_signature_matches(matches)
    added = persist_new_entries(store, run_result, now)
    logger.info(f"{len(run_result)} client(s) matched, {len(added)} newly added to the blocklist")

    threshold = config.alert.threshold
    if threshold > 0 and len(run_result) >= threshold:
        logger.warning(f"{len(run_result)} clients matched, alert threshold is {threshold}")
        if notifier is None:
            notifier = AlertNotifier(config.alert)
        notifier.notify(run_result, threshold)

    logger.info("--- Blocklist update finished ---")
    return run_result


def _host_cidr(address: str) -> str:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return f"{address}/32"
    return f"{ip}/{ip.max_prefixlen}"


def render_block_list(
    store: StorageBackend, static_members: Sequence[str] = (), now: Optional[int] = None
) -> str:
    """
    Returns the firewall feed: static members first, then one single-host CIDR
    per active address, newline-delimited.
    """
    lines = [str(member) for member in static_members]
    lines.extend(_host_cidr(ip) for ip in sorted(store.list_active(now)))
    return "".join(f"{line}\n" for line in lines)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blocklister",
        description="Block clients whose recent log activity matches abuse signatures.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""
Example update run (from cron, every few minutes):
  blocklister -c /etc/blocklister/blocklister.json update

Example firewall feed:
  blocklister -c /etc/blocklister/blocklister.json get-list > /etc/firewall/blocklist.txt
""",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to the JSON configuration file (also can use BLOCKLISTER_CONFIG env var, default: ./blocklister.json).",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose debug logging."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("update", help="Update the blocklist from signature matches.")
    subparsers.add_parser("get-list", help="Print the active blocklist, one CIDR per line.")

    args = parser.parse_args(argv)

    # Keep stdout clean for the firewall feed
    setup_logging(args.verbose, stream=sys.stderr if args.command == "get-list" else sys.stdout)

    store = None
    try:
        config = load_config(args.config, verbose=args.verbose)
        store = open_store(config)
        if args.command == "update":
            update_blocklist(config, store)
        else:
            sys.stdout.write(render_block_list(store, config.static_list))
        return 0
    except BlocklisterError as e:
        print(f"Error: {e}")
        return e.exit_code
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
