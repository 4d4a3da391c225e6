"""
Configuration loading for Blocklister.

The configuration file is JSON. Everything is validated while loading, so an
invalid signature, duration, whitelist rule or email address stops the
process before any run starts.

Example:
    {
        "database": {"backend_type": "sqlite", "db_path": "/var/lib/blocklister/blocklist.sqlite3"},
        "whitelist": {
            "patterns": ["^140\\\\.233\\\\."],
            "cidrs": ["172.16.0.0/12"],
            "file": "whitelist.txt"
        },
        "data_sources": {
            "web_es": {"base_url": "http://logs.example.com:9200/", "index_base": "logstash"}
        },
        "signatures": [
            {
                "name": "POST with 403",
                "data_source": "web_es",
                "query": "cluster:drupal AND verb:post AND response:403",
                "window": "5m",
                "threshold": 10,
                "address_field": "orig_clientip",
                "block_duration": "6h"
            }
        ],
        "alerts": {"threshold": 20, "recipients": ["security@example.com"]},
        "static_list": ["192.0.2.0/24"]
    }

Environment Variables:
    BLOCKLISTER_CONFIG: Path to the configuration file
    SLACK_BOT_TOKEN: Slack bot token for alerts
    SLACK_CHANNEL: Slack channel ID or name
    IPINFO_TOKEN: IPInfo API token for alert geolocation
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from alert_notifier import AlertConfig
from blocklist_errors import ConfigurationError, MissingConfigurationError
from durations import parse_duration
from search_client import ElasticsearchDataSource
from signatures import ElasticsearchSignature, Signature
from storage_backends import StorageBackend, create_storage_backend
from whitelist import Whitelist

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "./blocklister.json"

JSON_TYPE_NAMES = {dict: "object", list: "array"}


@dataclass
class SignatureRegistration:
    """A signature together with the name it reports under and how long it blocks for."""

    display_name: str
    signature: Signature
    block_duration: int


@dataclass
class BlocklisterConfig:
    signatures: List[SignatureRegistration] = field(default_factory=list)
    whitelist: Whitelist = field(default_factory=Whitelist)
    alert: AlertConfig = field(default_factory=AlertConfig)
    database: Dict[str, Any] = field(default_factory=dict)
    static_list: List[str] = field(default_factory=list)
    parallel_signatures: bool = False
    verbose: bool = False


def register_signature(
    config: BlocklisterConfig,
    display_name: str,
    signature: Signature,
    block_duration: Union[int, str] = "1h",
) -> SignatureRegistration:
    """
    Adds a signature to the configuration. Registration order decides which
    signature is reported when two matches block for the same length of time.
    """
    if not isinstance(display_name, str) or not display_name.strip():
        raise ConfigurationError("Signature display name must be a non-empty string.")
    if not isinstance(signature, Signature):
        raise ConfigurationError(f"Signature '{display_name}' does not implement the Signature interface.")
    try:
        signature.validate()
    except ConfigurationError as e:
        raise ConfigurationError(f"Signature '{display_name}': {e}") from e

    registration = SignatureRegistration(
        display_name=display_name,
        signature=signature,
        block_duration=parse_duration(block_duration),
    )
    if config.verbose:
        signature.set_verbose(True)
    config.signatures.append(registration)
    return registration


def _build_data_source(name: str, settings: Dict[str, Any]) -> ElasticsearchDataSource:
    if not isinstance(settings, dict):
        raise ConfigurationError(f"Data source '{name}' must be a JSON object.")
    settings = dict(settings)
    source_type = settings.pop("type", "elasticsearch")
    if source_type != "elasticsearch":
        raise ConfigurationError(f"Data source '{name}' has unsupported type '{source_type}'")
    if "http_auth" in settings and settings["http_auth"] is not None:
        settings["http_auth"] = tuple(settings["http_auth"])
    try:
        return ElasticsearchDataSource(**settings)
    except TypeError as e:
        raise ConfigurationError(f"Invalid settings for data source '{name}': {e}") from e


def _build_signature(
    config: BlocklisterConfig,
    settings: Dict[str, Any],
    data_sources: Dict[str, ElasticsearchDataSource],
) -> SignatureRegistration:
    if not isinstance(settings, dict):
        raise ConfigurationError("Every signature must be a JSON object.")
    settings = dict(settings)
    name = settings.pop("name", None)
    if not name:
        raise ConfigurationError("Every signature needs a 'name'.")

    source_name = settings.pop("data_source", None)
    if source_name not in data_sources:
        raise ConfigurationError(f"Signature '{name}' refers to unknown data source '{source_name}'")

    block_duration = settings.pop("block_duration", "1h")
    try:
        signature = ElasticsearchSignature(data_sources[source_name], **settings)
    except TypeError as e:
        raise ConfigurationError(f"Invalid settings for signature '{name}': {e}") from e
    except ConfigurationError as e:
        raise ConfigurationError(f"Signature '{name}': {e}") from e
    return register_signature(config, name, signature, block_duration)


def _build_whitelist(settings: Dict[str, Any], base_dir: str) -> Whitelist:
    whitelist = Whitelist(settings.get("patterns") or [], settings.get("cidrs") or [])
    whitelist_file = settings.get("file")
    if whitelist_file:
        whitelist.load_file(os.path.join(base_dir, whitelist_file))
    return whitelist


def _build_alert_config(settings: Dict[str, Any]) -> AlertConfig:
    settings = dict(settings)
    settings.setdefault("slack_token", os.getenv("SLACK_BOT_TOKEN"))
    settings.setdefault("slack_channel", os.getenv("SLACK_CHANNEL"))
    settings.setdefault("ipinfo_token", os.getenv("IPINFO_TOKEN"))
    try:
        return AlertConfig(**settings)
    except TypeError as e:
        raise ConfigurationError(f"Invalid alerts settings: {e}") from e


def _section(data: Dict[str, Any], key: str, kind: type) -> Any:
    """Returns a top-level section, treating null as absent."""
    value = data.get(key)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ConfigurationError(f"Configuration section '{key}' must be a JSON {JSON_TYPE_NAMES[kind]}.")
    return value


def build_config(data: Dict[str, Any], base_dir: str = ".", verbose: bool = False) -> BlocklisterConfig:
    """Builds and validates a BlocklisterConfig from decoded JSON."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object.")

    config = BlocklisterConfig(
        whitelist=_build_whitelist(_section(data, "whitelist", dict), base_dir),
        alert=_build_alert_config(_section(data, "alerts", dict)),
        database=dict(_section(data, "database", dict)),
        static_list=list(_section(data, "static_list", list)),
        parallel_signatures=bool(data.get("parallel_signatures", False)),
        verbose=verbose,
    )

    data_sources = {
        name: _build_data_source(name, settings)
        for name, settings in _section(data, "data_sources", dict).items()
    }
    for settings in _section(data, "signatures", list):
        _build_signature(config, settings, data_sources)

    if not config.signatures:
        logger.warning("No signatures configured. Runs will only expire old entries.")
    return config


def load_config(path: Optional[str] = None, verbose: bool = False) -> BlocklisterConfig:
    """
    Loads the configuration file.

    Raises:
        MissingConfigurationError: If the file does not exist.
        ConfigurationError: If the file is not valid JSON or holds invalid settings.
    """
    path = path or os.getenv("BLOCKLISTER_CONFIG") or DEFAULT_CONFIG_FILE
    if not os.path.exists(path):
        raise MissingConfigurationError(
            f"To complete installation, please create the configuration file {path}. "
            "See blocklister.json.example for a starting point."
        )
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Could not read configuration file {path}: {e}") from e

    logger.debug(f"Loaded configuration from {path}")
    return build_config(data, base_dir=os.path.dirname(os.path.abspath(path)), verbose=verbose)


def open_store(config: BlocklisterConfig) -> StorageBackend:
    """Creates the block list storage backend described by the 'database' section."""
    try:
        return create_storage_backend(**config.database)
    except TypeError as e:
        raise ConfigurationError(f"Invalid database settings: {e}") from e
