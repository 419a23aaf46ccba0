#!/usr/bin/env python3
"""unifi-dns-sync - UniFi Client DNS Synchronization

Keeps DNS A records in step with the clients of a UniFi network controller.
Every client that is connected (or was connected within the grace period)
gets a record named after its display name inside the sync zone; records for
clients that have been gone longer than the grace period are removed.

One invocation performs exactly one reconciliation pass and exits. Run it
from cron (or a systemd timer) to keep the zone current.

Supported DNS Providers:
    - technitium: Technitium DNS Server

Supported Inventory Sources:
    - UniFi Network integration API

Environment variables:

    UniFi Controller:
        UNIFI_API_URL          Controller base URL (required)
        UNIFI_API_KEY          Integration API key (required)
        UNIFI_SITE_ID          Site identifier (required)
        UNIFI_VERIFY_TLS       Verify the controller certificate (default: false,
                               controllers ship with self-signed certificates)

    DNS Provider:
        DNS_PROVIDER           DNS provider type: "technitium" (required)
        TECHNITIUM_API_URL     Technitium base URL (required for technitium)
        TECHNITIUM_API_TOKEN   Technitium API token (required for technitium)

    Sync:
        SYNC_ZONE                    Zone the client records live in (required)
        STATE_DIR                    Directory holding state.json
                                     (default: /var/lib/unifi-sync)
        CLIENT_GRACE_PERIOD_SECONDS  How long a disconnected client keeps its
                                     record (default: 3600)
        RECORD_TTL_SECONDS           TTL of created records (default: 3600)
        HTTP_TIMEOUT_SECONDS         Per-request timeout (default: 10)
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)

    Settings file:
        CONFIG_PATH            Optional YAML file with the same settings as
                               lowercase or uppercase keys
                               (default: /config/unifi-dns-sync.yaml).
                               Example:
                                 unifi_api_url: "https://unifi.lan"
                                 unifi_site_id: "default"
                                 dns_provider: "technitium"
                                 sync_zone: "home.lan"
                               Environment variables override the file.

Record naming:
    A client named "O'Brien's PC" in zone "home.lan" becomes
    "obriens-pc.home.lan". Clients whose names collapse to the same label
    share one record; the most recently seen client wins.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import sys
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import requests
import yaml

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

RECORD_TYPE_A = "A"
MAX_LABEL_LENGTH = 63
STATE_FILE_NAME = "state.json"

DEFAULT_CONFIG_PATH = "/config/unifi-dns-sync.yaml"
DEFAULT_STATE_DIR = "/var/lib/unifi-sync"
DEFAULT_GRACE_PERIOD_SECONDS = 3600
DEFAULT_RECORD_TTL_SECONDS = 3600
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0

SUPPORTED_DNS_PROVIDERS = ("technitium",)

REQUIRED_SETTINGS = (
    "UNIFI_API_URL",
    "UNIFI_API_KEY",
    "UNIFI_SITE_ID",
    "DNS_PROVIDER",
    "SYNC_ZONE",
)

SETTING_NAMES = REQUIRED_SETTINGS + (
    "UNIFI_VERIFY_TLS",
    "TECHNITIUM_API_URL",
    "TECHNITIUM_API_TOKEN",
    "STATE_DIR",
    "CLIENT_GRACE_PERIOD_SECONDS",
    "RECORD_TTL_SECONDS",
    "HTTP_TIMEOUT_SECONDS",
    "LOG_LEVEL",
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] [run=%(run_id)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# =============================================================================
# Errors
# =============================================================================


class ConfigError(Exception):
    """Raised when required settings are missing or invalid."""


class RunError(Exception):
    """Base class for errors that abort a reconciliation pass."""


class ZoneNotFoundError(RunError):
    """The sync zone does not exist on the DNS provider."""


class StateCorruptError(RunError):
    """The state file exists but cannot be parsed."""


class InventoryFetchError(RunError):
    """Listing clients from the inventory source failed."""


class RecordFetchError(RunError):
    """Reading zone or records from the DNS provider failed."""


class DNSProviderError(Exception):
    """The DNS provider API answered with an error."""


class InventoryAPIError(Exception):
    """The inventory API answered with a malformed payload."""


class StatePersistError(Exception):
    """Writing the state file failed."""


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class SyncConfig:
    """Validated settings for one reconciliation pass."""

    unifi_api_url: str
    unifi_api_key: str
    unifi_site_id: str
    dns_provider: str
    sync_zone: str
    unifi_verify_tls: bool = False
    technitium_api_url: str = ""
    technitium_api_token: str = ""
    state_dir: str = DEFAULT_STATE_DIR
    grace_period: timedelta = timedelta(seconds=DEFAULT_GRACE_PERIOD_SECONDS)
    record_ttl: int = DEFAULT_RECORD_TTL_SECONDS
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    log_level: str = "INFO"

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir) / STATE_FILE_NAME


def load_settings_file(config_path: str) -> Dict[str, str]:
    """Load settings from an optional YAML file.

    Args:
        config_path: Path to the YAML settings file

    Returns:
        Mapping of upper-cased setting names to string values. Empty when the
        file does not exist.

    Raises:
        ConfigError: The file exists but is unreadable or not a mapping.
    """
    path = Path(config_path)
    if not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load settings file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {config_path} must contain a mapping")

    settings: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        name = str(key).strip().upper()
        if name not in SETTING_NAMES:
            logger.warning(f"Ignoring unknown setting '{key}' in {config_path}")
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        settings[name] = str(value).strip()
    return settings


def load_config(environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Build the run configuration from the settings file and environment.

    Every problem is collected so a single error lists all of them.
    """
    env = os.environ if environ is None else environ

    config_path = (env.get("CONFIG_PATH") or DEFAULT_CONFIG_PATH).strip()
    settings = load_settings_file(config_path) if config_path else {}
    for name in SETTING_NAMES:
        value = env.get(name)
        if value is not None and value.strip():
            settings[name] = value.strip()

    errors: List[str] = []
    for name in REQUIRED_SETTINGS:
        if not settings.get(name):
            errors.append(f"{name} is required")

    dns_provider = settings.get("DNS_PROVIDER", "").lower()
    if dns_provider and dns_provider not in SUPPORTED_DNS_PROVIDERS:
        errors.append(
            f"Unsupported DNS_PROVIDER: {dns_provider}. "
            f"Supported: {', '.join(SUPPORTED_DNS_PROVIDERS)}"
        )
    if dns_provider == "technitium":
        for name in ("TECHNITIUM_API_URL", "TECHNITIUM_API_TOKEN"):
            if not settings.get(name):
                errors.append(f"{name} is required when DNS_PROVIDER=technitium")

    grace_seconds = _parse_number(
        settings.get("CLIENT_GRACE_PERIOD_SECONDS"),
        "CLIENT_GRACE_PERIOD_SECONDS",
        DEFAULT_GRACE_PERIOD_SECONDS,
        allow_zero=True,
        errors=errors,
    )
    record_ttl = _parse_number(
        settings.get("RECORD_TTL_SECONDS"),
        "RECORD_TTL_SECONDS",
        DEFAULT_RECORD_TTL_SECONDS,
        errors=errors,
    )
    http_timeout = _parse_number(
        settings.get("HTTP_TIMEOUT_SECONDS"),
        "HTTP_TIMEOUT_SECONDS",
        DEFAULT_HTTP_TIMEOUT_SECONDS,
        cast=float,
        errors=errors,
    )
    try:
        grace_period = timedelta(seconds=grace_seconds)
    except OverflowError:
        errors.append(f"CLIENT_GRACE_PERIOD_SECONDS is too large, got '{grace_seconds}'")
        grace_period = timedelta(seconds=DEFAULT_GRACE_PERIOD_SECONDS)

    if errors:
        raise ConfigError("; ".join(errors))

    return SyncConfig(
        unifi_api_url=settings["UNIFI_API_URL"].rstrip("/"),
        unifi_api_key=settings["UNIFI_API_KEY"],
        unifi_site_id=settings["UNIFI_SITE_ID"],
        dns_provider=dns_provider,
        sync_zone=settings["SYNC_ZONE"].strip(".").lower(),
        unifi_verify_tls=_parse_bool(settings.get("UNIFI_VERIFY_TLS"), default=False),
        technitium_api_url=settings.get("TECHNITIUM_API_URL", "").rstrip("/"),
        technitium_api_token=settings.get("TECHNITIUM_API_TOKEN", ""),
        state_dir=settings.get("STATE_DIR") or DEFAULT_STATE_DIR,
        grace_period=grace_period,
        record_ttl=record_ttl,
        http_timeout_seconds=http_timeout,
        log_level=settings.get("LOG_LEVEL", "INFO").upper(),
    )


# =============================================================================
# Logging Setup
# =============================================================================


class RunIdFilter(logging.Filter):
    """Stamps every log record with the identifier of the current run."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


def configure_logging(level: str, run_id: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RunIdFilter(run_id))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[handler],
        force=True,
    )


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class InventoryClient:
    """A client as reported by the inventory source."""

    id: str
    name: str
    mac_address: str
    ip_address: str


@dataclass(frozen=True)
class Client:
    """A client tracked across runs, identified by its MAC address."""

    name: str
    mac_address: str
    ip_address: str
    last_seen: datetime


@dataclass(frozen=True)
class DNSZone:
    """Represents a zone hosted by the DNS provider."""

    name: str


@dataclass(frozen=True)
class DNSRecord:
    """Represents a DNS record."""

    name: str
    type: str = RECORD_TYPE_A
    ttl: int = DEFAULT_RECORD_TTL_SECONDS
    comments: str = ""
    ip_address: Optional[str] = None


@dataclass
class ChangeSet:
    """Records to upsert and records to delete, in application order."""

    add: List[DNSRecord] = field(default_factory=list)
    delete: List[DNSRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.add and not self.delete


@dataclass
class SyncResult:
    """Outcome counts of one reconciliation pass."""

    add_success: int = 0
    add_failed: int = 0
    delete_success: int = 0
    delete_failed: int = 0


# =============================================================================
# Inventory Source Interface and Implementations
# =============================================================================


class InventorySource(ABC):
    """Abstract base class for network client inventories."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_clients(self) -> List[InventoryClient]:
        """Return every connected client, across all pages."""
        pass


class UniFiInventorySource(InventorySource):
    """UniFi Network integration API client listing."""

    CLIENTS_PATH = "/proxy/network/integration/v1/sites/{site_id}/clients"
    PAGE_SIZE = 50

    def __init__(
        self,
        url: str,
        api_key: str,
        site_id: str,
        *,
        verify_tls: bool = False,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._url = url.rstrip("/")
        self._site_id = site_id
        self._verify_tls = verify_tls
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"X-API-KEY": api_key, "Accept": "application/json"})

    @property
    def name(self) -> str:
        return "UniFi Network"

    def list_clients(self) -> List[InventoryClient]:
        endpoint = f"{self._url}{self.CLIENTS_PATH.format(site_id=self._site_id)}"
        clients: List[InventoryClient] = []
        offset = 0
        seen = 0

        while True:
            page = self._get_page(endpoint, offset)
            data = page.get("data") or []
            if not isinstance(data, list):
                raise InventoryAPIError(
                    f"Unexpected response format from {self.name} at offset {offset}: "
                    f"expected list, got {type(data).__name__}"
                )

            for item in data:
                client = self._parse_client(item)
                if client is not None:
                    clients.append(client)
            seen += len(data)

            total_count = page.get("totalCount")
            if not data:
                break
            if isinstance(total_count, int):
                if seen >= total_count:
                    break
            elif len(data) < self.PAGE_SIZE:
                break

            offset += len(data)

        logger.debug(f"Fetched {len(clients)} client(s) from {self.name}")
        return clients

    def _get_page(self, endpoint: str, offset: int) -> Dict[str, Any]:
        response = self._session.get(
            endpoint,
            params={"limit": self.PAGE_SIZE, "offset": offset},
            timeout=self._timeout,
            verify=self._verify_tls,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise InventoryAPIError(
                f"Invalid JSON from {self.name} at offset {offset}: {e}"
            ) from e
        if not isinstance(payload, dict):
            raise InventoryAPIError(
                f"Unexpected response format from {self.name} at offset {offset}: "
                f"expected object, got {type(payload).__name__}"
            )
        return payload

    def _parse_client(self, item: Any) -> Optional[InventoryClient]:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed client entry: {item}")
            return None
        return InventoryClient(
            id=str(item.get("id") or ""),
            name=str(item.get("name") or ""),
            mac_address=str(item.get("macAddress") or "").strip(),
            ip_address=str(item.get("ipAddress") or "").strip(),
        )


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Read methods and mutations raise ``requests`` exceptions on transport
    failures and ``DNSProviderError`` when the API reports an error.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_zone(self, name: str) -> DNSZone:
        """Return the zone, raising ZoneNotFoundError if it does not exist."""
        pass

    @abstractmethod
    def list_records(self, zone: str) -> List[DNSRecord]:
        """Get all records in the zone, of every type."""
        pass

    @abstractmethod
    def upsert_record(self, zone: str, record: DNSRecord) -> None:
        """Create the record, overwriting any record with the same name and type."""
        pass

    @abstractmethod
    def delete_record(self, zone: str, record: DNSRecord) -> None:
        """Delete a DNS record."""
        pass


class TechnitiumDNSProvider(DNSProvider):
    """Technitium DNS Server provider implementation."""

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._url = url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Technitium DNS"

    def get_zone(self, name: str) -> DNSZone:
        response = self._request("/api/zones/list")
        for zone in response.get("zones") or []:
            if isinstance(zone, dict) and zone.get("name") == name:
                return DNSZone(name=name)
        raise ZoneNotFoundError(f"Zone '{name}' not found on {self.name}")

    def list_records(self, zone: str) -> List[DNSRecord]:
        response = self._request(
            "/api/zones/records/get",
            {"zone": zone, "domain": zone, "listZone": "true"},
        )

        records = []
        for r in response.get("records") or []:
            name = r.get("name") if isinstance(r, dict) else None
            record_type = r.get("type") if isinstance(r, dict) else None
            if not isinstance(name, str) or not isinstance(record_type, str):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            rdata = r.get("rData")
            ip_address = rdata.get("ipAddress") if isinstance(rdata, dict) else None
            ttl = r.get("ttl")
            records.append(
                DNSRecord(
                    name=name,
                    type=record_type,
                    ttl=ttl if isinstance(ttl, int) else 0,
                    comments=str(r.get("comments") or ""),
                    ip_address=ip_address if isinstance(ip_address, str) and ip_address else None,
                )
            )
        return records

    def upsert_record(self, zone: str, record: DNSRecord) -> None:
        self._request(
            "/api/zones/records/add",
            {
                "zone": zone,
                "domain": record.name,
                "type": record.type,
                "ttl": str(record.ttl),
                "comments": record.comments,
                "ptr": "true",
                "createPtrZone": "true",
                "overwrite": "true",
                "ipAddress": record.ip_address or "",
            },
        )
        logger.info(f"Upserted DNS record: {record.name} -> {record.ip_address}")

    def delete_record(self, zone: str, record: DNSRecord) -> None:
        params = {"zone": zone, "domain": record.name, "type": record.type}
        if record.ip_address:
            params["ipAddress"] = record.ip_address
        self._request("/api/zones/records/delete", params)
        logger.info(f"Deleted DNS record: {record.name} -> {record.ip_address}")

    def _request(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        query = dict(params or {})
        query["token"] = self._token
        response = self._session.get(f"{self._url}{path}", params=query, timeout=self._timeout)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise DNSProviderError(f"Invalid JSON from {self.name} {path}: {e}") from e

        if not isinstance(payload, dict):
            raise DNSProviderError(f"Unexpected response format from {self.name} {path}")
        if payload.get("status") != "ok":
            message = payload.get("errorMessage") or payload.get("status")
            raise DNSProviderError(f"{self.name} API error on {path}: {message}")

        result = payload.get("response")
        return result if isinstance(result, dict) else {}


# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(config: SyncConfig) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    if config.dns_provider == "technitium":
        return TechnitiumDNSProvider(
            config.technitium_api_url,
            config.technitium_api_token,
            timeout_seconds=config.http_timeout_seconds,
        )
    raise ConfigError(
        f"Unsupported DNS provider: '{config.dns_provider}'. Supported providers: technitium"
    )


def create_inventory_source(config: SyncConfig) -> InventorySource:
    """Factory function to create the UniFi inventory source."""
    return UniFiInventorySource(
        config.unifi_api_url,
        config.unifi_api_key,
        config.unifi_site_id,
        verify_tls=config.unifi_verify_tls,
        timeout_seconds=config.http_timeout_seconds,
    )


# =============================================================================
# Utility Functions
# =============================================================================


_NON_LABEL_CHARS_RE = re.compile(r"[^a-z0-9]+")
_FRACTION_RE = re.compile(r"\.(\d+)")


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_number(
    raw: Optional[str],
    name: str,
    default: Any,
    *,
    cast: Callable[[str], Any] = int,
    allow_zero: bool = False,
    errors: List[str],
) -> Any:
    """Parse a numeric setting, appending a message to errors when invalid."""
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        errors.append(f"{name} must be a number, got '{raw}'")
        return default
    if not math.isfinite(value):
        errors.append(f"{name} must be a finite number, got '{raw}'")
        return default
    if value < 0 or (value == 0 and not allow_zero):
        errors.append(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got '{raw}'")
    return value


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Accepts a trailing "Z", explicit offsets, naive values (taken as UTC) and
    fractional seconds of any precision (truncated to microseconds).
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_dns_label(name: str) -> str:
    """Turn a free-text client name into a DNS label.

    Lower-cases the name, drops apostrophes, collapses every run of
    characters outside [a-z0-9] into one hyphen and trims hyphens from both
    ends. Labels are capped at 63 characters. The result may be empty.

    Example: "O'Brien's PC!!" -> "obriens-pc"
    """
    label = name.lower().replace("'", "")
    label = _NON_LABEL_CHARS_RE.sub("-", label).strip("-")
    if len(label) > MAX_LABEL_LENGTH:
        label = label[:MAX_LABEL_LENGTH].rstrip("-")
    return label


def filter_records_by_type(records: Iterable[DNSRecord], record_type: str) -> List[DNSRecord]:
    return [r for r in records if r.type == record_type]


# =============================================================================
# State Management
# =============================================================================


class StateStore:
    """Persists the clients retained between runs as JSON.

    File layout::

        {"clients": [{"name", "macAddress", "ipAddress", "lastSeen"}]}
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Client]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            raise StateCorruptError(f"Failed to load state file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StateCorruptError(f"State file {self.path} must contain a JSON object")
        raw_clients = data.get("clients")
        if raw_clients is None:
            return {}
        if not isinstance(raw_clients, list):
            raise StateCorruptError(f"State file {self.path}: 'clients' must be a list")

        clients: Dict[str, Client] = {}
        for entry in raw_clients:
            client = self._parse_client(entry)
            clients[client.mac_address] = client
        return clients

    def save(self, clients: Mapping[str, Client]) -> None:
        state = {
            "clients": [
                {
                    "name": c.name,
                    "macAddress": c.mac_address,
                    "ipAddress": c.ip_address,
                    "lastSeen": _format_timestamp(c.last_seen),
                }
                for c in sorted(clients.values(), key=lambda c: c.mac_address)
            ]
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StatePersistError(f"Failed to write state file {self.path}: {e}") from e

    def _parse_client(self, entry: Any) -> Client:
        if not isinstance(entry, dict):
            raise StateCorruptError(f"State file {self.path}: malformed client entry {entry!r}")

        mac_address = entry.get("macAddress")
        if not isinstance(mac_address, str) or not mac_address:
            raise StateCorruptError(f"State file {self.path}: client entry without macAddress")

        last_seen = entry.get("lastSeen")
        if not isinstance(last_seen, str):
            raise StateCorruptError(f"State file {self.path}: client {mac_address} has no lastSeen")
        try:
            parsed_last_seen = _parse_timestamp(last_seen)
        except ValueError as e:
            raise StateCorruptError(
                f"State file {self.path}: client {mac_address} has invalid lastSeen '{last_seen}'"
            ) from e

        return Client(
            name=str(entry.get("name") or ""),
            mac_address=mac_address,
            ip_address=str(entry.get("ipAddress") or ""),
            last_seen=parsed_last_seen,
        )


# =============================================================================
# Reconciliation
# =============================================================================


def update_retained_clients(
    retained: Mapping[str, Client],
    observed: Iterable[InventoryClient],
    now: datetime,
    grace_period: timedelta,
) -> Dict[str, Client]:
    """Merge freshly observed clients into the retained set.

    Observed clients are stamped with ``now`` and replace any retained entry
    with the same MAC. A retained client that was not observed survives while
    ``now - last_seen <= grace_period``.
    """
    updated: Dict[str, Client] = {}
    for c in observed:
        if not c.mac_address:
            logger.warning(
                f"Skipping client '{c.name}' ({c.ip_address or 'no IP'}) without a MAC address"
            )
            continue
        updated[c.mac_address] = Client(
            name=c.name,
            mac_address=c.mac_address,
            ip_address=c.ip_address,
            last_seen=now,
        )

    for mac_address, client in retained.items():
        if mac_address in updated:
            continue
        if now - client.last_seen > grace_period:
            logger.info(
                f"Dropping client '{client.name}' ({mac_address}), "
                f"last seen {_format_timestamp(client.last_seen)}"
            )
            continue
        updated[mac_address] = client

    return updated


def build_desired_records(
    clients: Mapping[str, Client],
    zone: str,
    ttl: int = DEFAULT_RECORD_TTL_SECONDS,
) -> Dict[str, DNSRecord]:
    """Map tracked clients to the A records that should exist in the zone.

    Clients are processed oldest first (ties by MAC) so that when two names
    sanitize to the same label, the most recently seen client owns it.
    """
    desired: Dict[str, DNSRecord] = {}
    for client in sorted(clients.values(), key=lambda c: (c.last_seen, c.mac_address)):
        label = sanitize_dns_label(client.name)
        if not label:
            logger.warning(
                f"Skipping client {client.mac_address}: "
                f"name '{client.name}' yields an empty DNS label"
            )
            continue

        name = f"{label}.{zone}"
        previous = desired.get(name)
        if previous is not None:
            logger.warning(
                f"Clients {previous.comments} and {client.mac_address} both map to '{name}'; "
                f"using {client.mac_address}"
            )
        desired[name] = DNSRecord(
            name=name,
            type=RECORD_TYPE_A,
            ttl=ttl,
            comments=client.mac_address,
            ip_address=client.ip_address,
        )
    return desired


def _needs_upsert(existing: DNSRecord, wanted: DNSRecord) -> bool:
    if not existing.ip_address or not wanted.ip_address:
        return True
    return existing.ip_address != wanted.ip_address


def _record_sort_key(record: DNSRecord) -> Tuple[str, str]:
    return (record.name, record.ip_address or "")


def calculate_changes(actual: Iterable[DNSRecord], desired: Mapping[str, DNSRecord]) -> ChangeSet:
    """Compare provider records against the desired set.

    Records whose name is not desired are deleted. A desired name is left out
    of the upserts only when every existing record for it already carries the
    desired, non-empty address. Both lists are sorted by name.
    """
    delete: List[DNSRecord] = []
    up_to_date: Set[str] = set()
    outdated: Set[str] = set()

    for record in actual:
        wanted = desired.get(record.name)
        if wanted is None:
            delete.append(record)
        elif _needs_upsert(record, wanted):
            outdated.add(record.name)
        else:
            up_to_date.add(record.name)

    add = []
    for name, record in desired.items():
        if name in up_to_date and name not in outdated:
            logger.debug(f"Record is up to date: {name}")
            continue
        add.append(record)

    return ChangeSet(
        add=sorted(add, key=_record_sort_key),
        delete=sorted(delete, key=_record_sort_key),
    )


_APPLY_ERRORS = (requests.exceptions.RequestException, DNSProviderError)


def apply_changes(provider: DNSProvider, zone: str, changes: ChangeSet) -> SyncResult:
    """Apply deletions, then upserts, counting outcomes.

    A failed call is logged and counted; it never stops the remaining calls.
    """
    result = SyncResult()

    for record in changes.delete:
        try:
            provider.delete_record(zone, record)
        except _APPLY_ERRORS as e:
            result.delete_failed += 1
            logger.error(f"Failed to delete record {record.name} -> {record.ip_address}: {e}")
        except Exception as e:
            result.delete_failed += 1
            logger.exception(f"Unexpected error deleting record {record.name}: {e}")
        else:
            result.delete_success += 1
            logger.debug(f"Deleted record {record.name}")

    for record in changes.add:
        try:
            provider.upsert_record(zone, record)
        except _APPLY_ERRORS as e:
            result.add_failed += 1
            logger.error(f"Failed to upsert record {record.name} -> {record.ip_address}: {e}")
        except Exception as e:
            result.add_failed += 1
            logger.exception(f"Unexpected error upserting record {record.name}: {e}")
        else:
            result.add_success += 1
            logger.debug(f"Upserted record {record.name}")

    return result


# =============================================================================
# Core Syncer
# =============================================================================


class UniFiDNSSyncer:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        inventory_source: InventorySource,
        state_store: StateStore,
        zone: str,
        grace_period: timedelta,
        record_ttl: int = DEFAULT_RECORD_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not zone:
            raise ValueError("zone is required")
        self.dns_provider = dns_provider
        self.inventory_source = inventory_source
        self.state_store = state_store
        self.zone = zone
        self.grace_period = grace_period
        self.record_ttl = record_ttl
        self.clock = clock

    def _validate_zone(self) -> None:
        try:
            self.dns_provider.get_zone(self.zone)
        except (requests.exceptions.RequestException, DNSProviderError) as e:
            raise ZoneNotFoundError(
                f"Failed to look up zone '{self.zone}' on {self.dns_provider.name}: {e}"
            ) from e

    def _fetch_inventory(self) -> List[InventoryClient]:
        try:
            return self.inventory_source.list_clients()
        except (requests.exceptions.RequestException, InventoryAPIError) as e:
            raise InventoryFetchError(
                f"Failed to list clients from {self.inventory_source.name}: {e}"
            ) from e

    def _fetch_records(self) -> List[DNSRecord]:
        try:
            records = self.dns_provider.list_records(self.zone)
        except (requests.exceptions.RequestException, DNSProviderError) as e:
            raise RecordFetchError(
                f"Failed to list records in zone '{self.zone}' from {self.dns_provider.name}: {e}"
            ) from e
        return filter_records_by_type(records, RECORD_TYPE_A)

    def sync_once(self) -> SyncResult:
        """Run one reconciliation pass.

        Raises:
            RunError: A read step failed. Nothing has been changed on the
                provider when this is raised.
        """
        self._validate_zone()
        retained = self.state_store.load()
        observed = self._fetch_inventory()

        clients = update_retained_clients(retained, observed, self.clock(), self.grace_period)
        logger.info(
            f"{self.inventory_source.name}: {len(observed)} connected client(s), "
            f"{len(clients)} tracked within the grace period"
        )

        existing = self._fetch_records()
        desired = build_desired_records(clients, self.zone, self.record_ttl)
        changes = calculate_changes(existing, desired)
        logger.info(
            f"Zone '{self.zone}': {len(existing)} A record(s), {len(desired)} desired, "
            f"{len(changes.add)} to upsert, {len(changes.delete)} to delete"
        )

        result = apply_changes(self.dns_provider, self.zone, changes)

        try:
            self.state_store.save(clients)
        except StatePersistError as e:
            logger.error(f"Failed to persist state: {e}")

        logger.info(
            f"Sync completed: {result.add_success} upserted, {result.add_failed} upsert(s) failed, "
            f"{result.delete_success} deleted, {result.delete_failed} deletion(s) failed"
        )
        return result


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    run_id = str(uuid.uuid4())

    try:
        config = load_config()
    except ConfigError as e:
        configure_logging(os.getenv("LOG_LEVEL", "INFO"), run_id)
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    configure_logging(config.log_level, run_id)

    dns_provider = create_dns_provider(config)
    inventory_source = create_inventory_source(config)

    logger.info(f"unifi-dns-sync: {inventory_source.name} -> {dns_provider.name}")
    logger.info(f"Sync zone: {config.sync_zone}")
    logger.info(f"Grace period: {int(config.grace_period.total_seconds())}s")
    logger.info(f"State file: {config.state_path}")
    if not config.unifi_verify_tls:
        logger.debug("TLS verification disabled for the UniFi controller")

    syncer = UniFiDNSSyncer(
        dns_provider=dns_provider,
        inventory_source=inventory_source,
        state_store=StateStore(str(config.state_path)),
        zone=config.sync_zone,
        grace_period=config.grace_period,
        record_ttl=config.record_ttl,
    )

    try:
        syncer.sync_once()
    except RunError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, aborting sync")
        sys.exit(130)


if __name__ == "__main__":
    main()
