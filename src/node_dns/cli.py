#!/usr/bin/env python3
"""node-dns - Node Address DNS Synchronization

Points DNS records at the Kubernetes nodes that run annotated pods. Each pod
that carries the hostname annotation wants that hostname to resolve to the
external IP of the node it is scheduled on; node-dns keeps the Cloudflare
A/AAAA records of that hostname converged as pods come and go.

Annotations (on pods):
    tombowdit.ch/node-dns        Hostname to publish, e.g. "api.example.com"
    tombowdit.ch/node-dns-proxy  "true" to create Cloudflare-proxied records

    Pods sharing a hostname publish one record per distinct node address.
    If any of them asks for proxying, all records of that hostname are proxied.

Environment variables:

    Cluster:
        NAMESPACE                Namespace to observe, "*" or "" for all (default: default)
        KUBE_ACCESS              "inside" (service account) or "outside" (kubeconfig)
                                 (default: inside)
        KUBECONFIG               Kubeconfig path for KUBE_ACCESS=outside
                                 (default: ~/.kube/config)
        HOSTNAME_ANNOTATION      Annotation holding the hostname
                                 (default: tombowdit.ch/node-dns)
        PROXY_ANNOTATION         Annotation holding the proxy flag
                                 (default: tombowdit.ch/node-dns-proxy)

    Cloudflare:
        CF_API_TOKEN             API token with Zone:Read and DNS:Edit (required)
        CF_API_URL               API base URL (default: https://api.cloudflare.com/client/v4)

    Runtime:
        DRY_RUN                  Log intended changes without applying them (default: true)
        SYNC_MODE                "once" or "watch" (default: watch)
        WATCH_TIMEOUT_SECONDS    Server-side pod watch timeout; every time the watch
                                 ends a full rescan runs (default: 300)
        BACKOFF_MAX_SECONDS      Upper bound for the watch reconnect backoff (default: 60)
        REQUEST_TIMEOUT_SECONDS  Timeout for every API request (default: 10)
        LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH              Optional YAML file, or directory of *.yaml files,
                                 overriding the variables above
                                 (default: /config/node-dns.yaml)
                                 Example config file:
                                   namespace: "ingress"
                                   dry_run: false
                                   hostname_annotation: "example.com/node-dns"
                                   watch_timeout_seconds: 600
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import random
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import requests
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/node-dns.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_NAMESPACE = "default"
DEFAULT_HOSTNAME_ANNOTATION = "tombowdit.ch/node-dns"
DEFAULT_PROXY_ANNOTATION = "tombowdit.ch/node-dns-proxy"
DEFAULT_CLOUDFLARE_URL = "https://api.cloudflare.com/client/v4"

# Cloudflare treats ttl=1 as "automatic".
AUTOMATIC_TTL = 1

SYNC_MODES = ("once", "watch")
KUBE_ACCESS_MODES = ("inside", "outside")

# YAML key -> (environment variable, default)
SETTINGS_SOURCES: Dict[str, Tuple[str, str]] = {
    "namespace": ("NAMESPACE", DEFAULT_NAMESPACE),
    "dry_run": ("DRY_RUN", "true"),
    "hostname_annotation": ("HOSTNAME_ANNOTATION", DEFAULT_HOSTNAME_ANNOTATION),
    "proxy_annotation": ("PROXY_ANNOTATION", DEFAULT_PROXY_ANNOTATION),
    "sync_mode": ("SYNC_MODE", "watch"),
    "watch_timeout_seconds": ("WATCH_TIMEOUT_SECONDS", "300"),
    "backoff_max_seconds": ("BACKOFF_MAX_SECONDS", "60"),
    "request_timeout_seconds": ("REQUEST_TIMEOUT_SECONDS", "10"),
    "cloudflare_url": ("CF_API_URL", DEFAULT_CLOUDFLARE_URL),
    "kube_access": ("KUBE_ACCESS", "inside"),
    "kubeconfig": ("KUBECONFIG", ""),
}

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class NodeDNSError(Exception):
    """Base class for reconciliation errors."""


class ZoneNotFound(NodeDNSError):
    """No known zone is a suffix of the hostname."""


class InvalidAddress(NodeDNSError):
    """Address is neither an IPv4 nor an IPv6 literal."""


class ProviderRequestFailed(NodeDNSError):
    """A DNS provider listing, create or delete call failed."""


class ClusterRequestFailed(NodeDNSError):
    """A node/pod listing or the pod watch failed."""


class MissingNodeAddress(NodeDNSError):
    """The node a pod runs on has no external address."""


# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """DNS record types managed by node-dns."""

    A = "A"
    AAAA = "AAAA"


MANAGED_RECORD_TYPES = frozenset(t.value for t in RecordType)


class EventType(Enum):
    """Pod watch event types, named as the Kubernetes watch API reports them."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Runtime settings merged from the environment and the YAML config."""

    namespace: str = DEFAULT_NAMESPACE
    dry_run: bool = True
    hostname_annotation: str = DEFAULT_HOSTNAME_ANNOTATION
    proxy_annotation: str = DEFAULT_PROXY_ANNOTATION
    sync_mode: str = "watch"
    watch_timeout_seconds: int = 300
    backoff_max_seconds: float = 60.0
    request_timeout_seconds: float = 10.0
    cloudflare_token: str = ""
    cloudflare_url: str = DEFAULT_CLOUDFLARE_URL
    kube_access: str = "inside"
    kubeconfig: str = ""


@dataclass(frozen=True)
class Node:
    """A cluster node and its external address, if it has one."""

    name: str
    public_address: Optional[str] = None


@dataclass(frozen=True)
class PodObservation:
    """The parts of a pod that decide which DNS records it wants."""

    name: str
    node_name: str
    annotations: Mapping[str, str]
    namespace: str = ""


@dataclass(frozen=True)
class PodEvent:
    type: EventType
    pod: PodObservation


@dataclass(frozen=True)
class DesiredHost:
    """Target state for one hostname, merged across all pods requesting it."""

    host: str
    addresses: FrozenSet[str]
    proxied: bool = False
    source_pods: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Zone:
    id: str
    name: str


@dataclass(frozen=True)
class ProviderRecord:
    """A DNS record as the provider reports it."""

    id: str
    zone_id: str
    type: str
    name: str
    content: str
    proxied: bool = False


@dataclass
class SyncResult:
    """Counters for one reconciliation pass."""

    created: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0

    def __str__(self) -> str:
        return (
            f"created={self.created} deleted={self.deleted} "
            f"skipped={self.skipped} errors={self.errors}"
        )


# =============================================================================
# Utility Functions
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_number(value: Any, default: float, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default


def _normalize_hostname(name: str) -> str:
    return name.strip().rstrip(".").lower()


def _canonical_address(address: str) -> str:
    """Return the canonical text form of an IP address, or the input unchanged.

    Providers may store IPv6 addresses in compressed form, so comparisons go
    through this function on both sides.
    """
    try:
        return str(ipaddress.ip_address(address.strip()))
    except ValueError:
        return address


def load_settings(config_path: str = "", environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment, overridden by YAML config file(s).

    The Cloudflare token is only read from the environment.
    """
    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for config_file in find_config_files(config_path) if config_path else []:
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            continue

        if not config_data:
            continue
        if not isinstance(config_data, dict):
            logger.warning(f"Config file {config_file} is not a mapping, ignoring it")
            continue

        for key, value in config_data.items():
            if key not in SETTINGS_SOURCES:
                logger.warning(f"Unknown setting '{key}' in {config_file}")
                continue
            overrides[key] = value
        logger.info(f"Loaded settings from {config_file}")

    def pick(key: str) -> Any:
        if overrides.get(key) is not None:
            return overrides[key]
        env_name, default = SETTINGS_SOURCES[key]
        return env.get(env_name, default)

    return Settings(
        namespace=str(pick("namespace")).strip(),
        dry_run=_parse_bool(pick("dry_run"), default=True),
        hostname_annotation=str(pick("hostname_annotation")).strip(),
        proxy_annotation=str(pick("proxy_annotation")).strip(),
        sync_mode=str(pick("sync_mode")).strip().lower(),
        watch_timeout_seconds=int(_parse_number(pick("watch_timeout_seconds"), 300, "watch_timeout_seconds")),
        backoff_max_seconds=_parse_number(pick("backoff_max_seconds"), 60.0, "backoff_max_seconds"),
        request_timeout_seconds=_parse_number(
            pick("request_timeout_seconds"), 10.0, "request_timeout_seconds"
        ),
        cloudflare_token=env.get("CF_API_TOKEN", "").strip(),
        cloudflare_url=str(pick("cloudflare_url")).strip(),
        kube_access=str(pick("kube_access")).strip().lower(),
        kubeconfig=str(pick("kubeconfig")).strip(),
    )


def validate_settings(settings: Settings) -> bool:
    """Log every configuration problem; return False if there was any."""
    errors = []

    if not settings.cloudflare_token:
        errors.append("CF_API_TOKEN is required")
    if not settings.cloudflare_url:
        errors.append("CF_API_URL must not be empty")
    if not settings.hostname_annotation:
        errors.append("HOSTNAME_ANNOTATION must not be empty")
    if settings.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")
    if settings.kube_access not in KUBE_ACCESS_MODES:
        errors.append(f"Invalid KUBE_ACCESS: {settings.kube_access}. Use 'inside' or 'outside'")
    if settings.watch_timeout_seconds <= 0:
        errors.append("WATCH_TIMEOUT_SECONDS must be positive")
    if settings.backoff_max_seconds <= 0:
        errors.append("BACKOFF_MAX_SECONDS must be positive")
    if settings.request_timeout_seconds <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# DNS Provider Interface and Implementation
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_zones(self) -> List[Zone]:
        """Get all zones visible to the provider credentials."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str, name: str) -> List[ProviderRecord]:
        """Get all records in a zone whose name equals ``name``."""
        pass

    @abstractmethod
    def create_record(
        self, zone_id: str, record_type: RecordType, name: str, content: str, proxied: bool
    ) -> ProviderRecord:
        """Create a record with automatic TTL."""
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record by id."""
        pass


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API DNS provider implementation."""

    ZONES_PER_PAGE = 50
    RECORDS_PER_PAGE = 100

    def __init__(self, api_token: str, url: str = DEFAULT_CLOUDFLARE_URL, timeout_seconds: float = 10.0):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/user/tokens/verify")
            logger.info(f"{self.name} connection successful")
            return True
        except ProviderRequestFailed as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send one API request and return the decoded envelope.

        Raises ProviderRequestFailed on transport errors, HTTP errors,
        undecodable bodies and envelopes with ``success: false``.
        """
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderRequestFailed(f"{method} {path} failed: {e}") from e

        if not isinstance(payload, dict):
            raise ProviderRequestFailed(f"{method} {path} returned unexpected body: {payload!r}")
        if not payload.get("success", False):
            raise ProviderRequestFailed(f"{method} {path} rejected: {payload.get('errors')}")
        return payload

    def _paginate(self, path: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        page = 1
        while True:
            payload = self._request("GET", path, params={**params, "page": page})
            result = payload.get("result") or []
            if not isinstance(result, list):
                raise ProviderRequestFailed(
                    f"GET {path}: expected list, got {type(result).__name__}"
                )
            for item in result:
                if isinstance(item, dict):
                    yield item
                else:
                    logger.debug(f"Skipping non-dict entry from {path}: {item}")

            info = payload.get("result_info") or {}
            try:
                total_pages = int(info.get("total_pages") or 1)
            except (TypeError, ValueError):
                total_pages = 1
            if page >= total_pages:
                return
            page += 1

    def list_zones(self) -> List[Zone]:
        zones = []
        for item in self._paginate("/zones", {"per_page": self.ZONES_PER_PAGE}):
            zone_id, zone_name = item.get("id"), item.get("name")
            if not isinstance(zone_id, str) or not isinstance(zone_name, str):
                logger.warning(f"Skipping malformed zone: {item}")
                continue
            zones.append(Zone(id=zone_id, name=zone_name))
        return zones

    def list_records(self, zone_id: str, name: str) -> List[ProviderRecord]:
        records = []
        params = {"name": name, "per_page": self.RECORDS_PER_PAGE}
        for item in self._paginate(f"/zones/{zone_id}/dns_records", params):
            record = self._record_from_api(zone_id, item)
            if record is None:
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(record)
        return records

    def create_record(
        self, zone_id: str, record_type: RecordType, name: str, content: str, proxied: bool
    ) -> ProviderRecord:
        data = {
            "type": record_type.value,
            "name": name,
            "content": content,
            "proxied": proxied,
            "ttl": AUTOMATIC_TTL,
        }
        payload = self._request("POST", f"/zones/{zone_id}/dns_records", json=data)
        record = self._record_from_api(zone_id, payload.get("result"))
        if record is None:
            raise ProviderRequestFailed(f"Create for {name} returned no record: {payload}")
        return record

    def delete_record(self, zone_id: str, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")

    @staticmethod
    def _record_from_api(zone_id: str, item: Any) -> Optional[ProviderRecord]:
        if not isinstance(item, dict):
            return None
        fields = [item.get(k) for k in ("id", "type", "name", "content")]
        if not all(isinstance(v, str) for v in fields):
            return None
        record_id, record_type, name, content = fields
        return ProviderRecord(
            id=record_id,
            zone_id=zone_id,
            type=record_type,
            name=name,
            content=content,
            proxied=bool(item.get("proxied", False)),
        )


# =============================================================================
# Cluster Provider Interface and Implementation
# =============================================================================


class ClusterProvider(ABC):
    """Abstract base class for the cluster nodes and pods are observed from."""

    @abstractmethod
    def list_nodes(self) -> List[Node]:
        """Get all nodes with their external address."""
        pass

    @abstractmethod
    def list_pods(self, namespace: str) -> List[PodObservation]:
        """Get all pods in a namespace."""
        pass

    @abstractmethod
    def watch_pods(self, namespace: str) -> Iterator[PodEvent]:
        """Stream pod changes since the last listing until the watch ends or fails."""
        pass


def node_from_api(obj: Any) -> Node:
    """Convert a V1Node into a Node using its first ExternalIP address."""
    metadata = getattr(obj, "metadata", None)
    status = getattr(obj, "status", None)

    public_address = None
    for address in getattr(status, "addresses", None) or []:
        if getattr(address, "type", None) == "ExternalIP" and getattr(address, "address", None):
            public_address = address.address
            break

    return Node(name=getattr(metadata, "name", "") or "", public_address=public_address)


def pod_from_api(obj: Any) -> PodObservation:
    metadata = getattr(obj, "metadata", None)
    spec = getattr(obj, "spec", None)
    return PodObservation(
        name=getattr(metadata, "name", "") or "",
        node_name=getattr(spec, "node_name", "") or "",
        annotations=dict(getattr(metadata, "annotations", None) or {}),
        namespace=getattr(metadata, "namespace", "") or "",
    )


def load_cluster_config(kube_access: str, kubeconfig: str = "") -> None:
    """Load in-cluster or kubeconfig credentials into the kubernetes client."""
    try:
        if kube_access == "outside":
            config_file = kubeconfig or str(Path.home() / ".kube" / "config")
            logger.info(f"Using kubeconfig (outside) credentials from {config_file}")
            k8s_config.load_kube_config(config_file=config_file)
        else:
            logger.info("Using in-cluster (inside) credentials")
            k8s_config.load_incluster_config()
    except (k8s_config.ConfigException, OSError) as e:
        raise ClusterRequestFailed(f"Cannot load Kubernetes credentials: {e}") from e


class KubernetesClusterProvider(ClusterProvider):
    """Kubernetes API cluster provider using the official client."""

    def __init__(
        self,
        core_api: Optional[k8s_client.CoreV1Api] = None,
        request_timeout_seconds: float = 10.0,
        watch_timeout_seconds: int = 300,
    ):
        self._core = core_api or k8s_client.CoreV1Api()
        self._request_timeout = request_timeout_seconds
        self._watch_timeout = watch_timeout_seconds
        # namespace key -> resourceVersion of the last pod listing or event
        self._resource_versions: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "KubernetesClusterProvider":
        load_cluster_config(settings.kube_access, settings.kubeconfig)
        return cls(
            request_timeout_seconds=settings.request_timeout_seconds,
            watch_timeout_seconds=settings.watch_timeout_seconds,
        )

    @staticmethod
    def _all_namespaces(namespace: str) -> bool:
        return namespace.strip() in ("", "*")

    def _version_key(self, namespace: str) -> str:
        return "*" if self._all_namespaces(namespace) else namespace.strip()

    def resource_version(self, namespace: str) -> Optional[str]:
        """resourceVersion the next watch of ``namespace`` resumes from, if known."""
        return self._resource_versions.get(self._version_key(namespace))

    def _remember_version(self, namespace: str, source: Any) -> None:
        version = getattr(getattr(source, "metadata", None), "resource_version", None)
        if version:
            self._resource_versions[self._version_key(namespace)] = str(version)

    def list_nodes(self) -> List[Node]:
        try:
            response = self._core.list_node(_request_timeout=self._request_timeout)
        except ApiException as e:
            raise ClusterRequestFailed(f"Cannot list nodes: {e.status} {e.reason}") from e

        nodes = [node_from_api(item) for item in response.items or []]
        for node in nodes:
            logger.debug(f"Node {node.name} external address is {node.public_address or '-'}")
        return nodes

    def list_pods(self, namespace: str) -> List[PodObservation]:
        try:
            if self._all_namespaces(namespace):
                response = self._core.list_pod_for_all_namespaces(
                    _request_timeout=self._request_timeout
                )
            else:
                response = self._core.list_namespaced_pod(
                    namespace=namespace, _request_timeout=self._request_timeout
                )
        except ApiException as e:
            raise ClusterRequestFailed(
                f"Cannot list pods in {namespace or '*'}: {e.status} {e.reason}"
            ) from e

        self._remember_version(namespace, response)
        return [pod_from_api(item) for item in response.items or []]

    def watch_pods(self, namespace: str) -> Iterator[PodEvent]:
        """Watch pods from the last listing's resourceVersion.

        Without a known version the API server replays every existing pod as
        ADDED. Error events surface from the client as ApiException; a 410
        Gone forgets the version so the caller's re-list starts a fresh one.
        """
        if self._all_namespaces(namespace):
            list_func = self._core.list_pod_for_all_namespaces
            kwargs: Dict[str, Any] = {}
        else:
            list_func = self._core.list_namespaced_pod
            kwargs = {"namespace": namespace}

        resource_version = self.resource_version(namespace)
        if resource_version:
            kwargs["resource_version"] = resource_version

        watcher = k8s_watch.Watch()
        try:
            for event in watcher.stream(list_func, timeout_seconds=self._watch_timeout, **kwargs):
                raw_type = str(event.get("type", ""))
                obj = event.get("object")
                if obj is not None:
                    self._remember_version(namespace, obj)
                try:
                    event_type = EventType(raw_type)
                except ValueError:
                    logger.debug(f"Ignoring pod watch event of type {raw_type!r}")
                    continue

                if obj is None:
                    continue
                yield PodEvent(type=event_type, pod=pod_from_api(obj))
        except ApiException as e:
            if e.status == 410:
                self._resource_versions.pop(self._version_key(namespace), None)
            raise ClusterRequestFailed(
                f"Pod watch in {namespace or '*'} failed: {e.status} {e.reason}"
            ) from e
        finally:
            watcher.stop()


# =============================================================================
# Zone Resolution and Record Classification
# =============================================================================


def resolve_zone(hostname: str, zones: Iterable[Zone]) -> Zone:
    """Return the zone with the longest name that is a suffix of ``hostname``.

    Matching is on label boundaries, so ``notexample.com`` is not part of zone
    ``example.com``. Raises ZoneNotFound when no zone matches.
    """
    host = _normalize_hostname(hostname)
    best: Optional[Zone] = None
    best_length = -1

    for zone in zones:
        zone_name = _normalize_hostname(zone.name)
        if not zone_name:
            continue
        if host != zone_name and not host.endswith("." + zone_name):
            continue
        if len(zone_name) > best_length:
            best, best_length = zone, len(zone_name)

    if best is None:
        raise ZoneNotFound(f"No zone found for {hostname}")
    return best


def classify_address(address: str) -> RecordType:
    """Return A for an IPv4 literal and AAAA for an IPv6 literal."""
    try:
        parsed = ipaddress.ip_address(address.strip())
    except (AttributeError, ValueError) as e:
        raise InvalidAddress(f"Not an IPv4 or IPv6 address: {address!r}") from e
    return RecordType.A if parsed.version == 4 else RecordType.AAAA


# =============================================================================
# Desired State
# =============================================================================


def build_desired_state(
    nodes: Iterable[Node],
    pods: Iterable[PodObservation],
    hostname_annotation: str = DEFAULT_HOSTNAME_ANNOTATION,
    proxy_annotation: str = DEFAULT_PROXY_ANNOTATION,
) -> List[DesiredHost]:
    """Derive the wanted records from node addresses and pod annotations.

    Pods sharing a hostname have their node addresses merged into one
    DesiredHost. The proxied flag is True if any contributing pod asks for it.
    Pods whose node has no external address contribute nothing.
    """
    node_addresses = {node.name: node.public_address for node in nodes if node.public_address}

    addresses: Dict[str, Set[str]] = {}
    proxied: Dict[str, bool] = {}
    sources: Dict[str, Set[str]] = {}

    for pod in pods:
        raw_host = (pod.annotations.get(hostname_annotation) or "").strip()
        if not raw_host:
            continue
        host = _normalize_hostname(raw_host)

        address = node_addresses.get(pod.node_name) if pod.node_name else None
        if not address:
            logger.warning(
                f"Skipping pod action=skip pod={pod.name} node={pod.node_name or '-'} "
                f"host={host} reason={MissingNodeAddress.__name__}"
            )
            continue

        wants_proxy = _parse_bool(pod.annotations.get(proxy_annotation), default=False)
        logger.debug(
            f"Pod {pod.name} on {pod.node_name} ({address}) wants {host} proxied={wants_proxy}"
        )
        addresses.setdefault(host, set()).add(address)
        proxied[host] = proxied.get(host, False) or wants_proxy
        sources.setdefault(host, set()).add(pod.name)

    desired = [
        DesiredHost(
            host=host,
            addresses=frozenset(addresses[host]),
            proxied=proxied[host],
            source_pods=frozenset(sources[host]),
        )
        for host in sorted(addresses)
    ]

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "Desired state: "
            + json.dumps(
                [
                    {"host": d.host, "addresses": sorted(d.addresses), "proxied": d.proxied}
                    for d in desired
                ]
            )
        )
    return desired


# =============================================================================
# Core Syncer
# =============================================================================


class DNSSyncer:
    """Converges provider records toward a desired state.

    Zones and per-host record listings are cached for the duration of one
    pass and dropped when the next pass starts.
    """

    def __init__(self, *, dns_provider: DNSProvider, dry_run: bool = False):
        self.dns_provider = dns_provider
        self.dry_run = dry_run
        self._zones: Optional[List[Zone]] = None
        self._records: Dict[Tuple[str, str], List[ProviderRecord]] = {}

    def _get_zones(self) -> List[Zone]:
        if self._zones is None:
            self._zones = self.dns_provider.list_zones()
        return self._zones

    def _get_records(self, zone: Zone, host: str) -> List[ProviderRecord]:
        key = (zone.id, host)
        if key not in self._records:
            self._records[key] = self.dns_provider.list_records(zone.id, host)
        return self._records[key]

    @property
    def _prefix(self) -> str:
        return "[dry-run] " if self.dry_run else ""

    def sync_once(self, desired: Iterable[DesiredHost]) -> SyncResult:
        self._zones = None
        self._records = {}
        result = SyncResult()

        hosts = list(desired)
        if not hosts:
            logger.info("No hosts requested by any pod, nothing to sync")
            return result

        try:
            zones = self._get_zones()
        except ProviderRequestFailed as e:
            result.errors += 1
            logger.error(f"Cannot list zones, aborting sync pass: {e}")
            return result

        for desired_host in hosts:
            self._sync_host(desired_host, zones, result)

        logger.info(f"{self._prefix}Sync pass finished for {len(hosts)} host(s): {result}")
        return result

    def _sync_host(self, desired: DesiredHost, zones: List[Zone], result: SyncResult) -> None:
        host = _normalize_hostname(desired.host)
        try:
            zone = resolve_zone(host, zones)
        except ZoneNotFound:
            result.skipped += 1
            logger.warning(f"Skipping host action=skip host={host} reason=zone-not-found")
            return

        try:
            existing = self._get_records(zone, host)
        except ProviderRequestFailed as e:
            result.errors += 1
            logger.error(
                f"Cannot list records action=skip host={host} zone={zone.name} reason={e}"
            )
            return

        wanted = {_canonical_address(a): a for a in desired.addresses}
        surviving: Set[str] = set()

        # Evaluated against the listing taken before this pass changed anything.
        for record in existing:
            if record.type not in MANAGED_RECORD_TYPES:
                continue
            if _normalize_hostname(record.name) != host:
                continue

            content = _canonical_address(record.content)
            if content not in wanted:
                reason = "not-desired"
            elif content in surviving:
                reason = "duplicate"
            elif record.proxied != desired.proxied:
                reason = "proxied-mismatch"
            else:
                surviving.add(content)
                continue

            if not self._delete(zone, record, reason, result):
                surviving.add(content)

        for content in sorted(set(wanted) - surviving):
            address = wanted[content]
            try:
                record_type = classify_address(address)
            except InvalidAddress:
                result.skipped += 1
                logger.warning(
                    f"Skipping address action=skip host={host} zone={zone.name} "
                    f"address={address} reason=invalid-address"
                )
                continue
            self._create(zone, host, record_type, address, desired.proxied, result)

    def _delete(
        self, zone: Zone, record: ProviderRecord, reason: str, result: Optional[SyncResult] = None
    ) -> bool:
        """Delete one record; return True if it is gone (or would be in dry-run)."""
        logger.info(
            f"{self._prefix}Deleting record action=delete host={record.name} zone={zone.name} "
            f"type={record.type} address={record.content} record={record.id} reason={reason}"
        )
        if self.dry_run:
            return True

        try:
            self.dns_provider.delete_record(zone.id, record.id)
        except ProviderRequestFailed as e:
            if result is not None:
                result.errors += 1
            logger.error(
                f"Failed to delete record action=delete host={record.name} zone={zone.name} "
                f"address={record.content} record={record.id} reason={e}"
            )
            return False

        if result is not None:
            result.deleted += 1
        return True

    def _create(
        self,
        zone: Zone,
        host: str,
        record_type: RecordType,
        address: str,
        proxied: bool,
        result: SyncResult,
    ) -> None:
        logger.info(
            f"{self._prefix}Creating record action=create host={host} zone={zone.name} "
            f"type={record_type.value} address={address} proxied={proxied} reason=missing"
        )
        if self.dry_run:
            return

        try:
            created = self.dns_provider.create_record(zone.id, record_type, host, address, proxied)
        except ProviderRequestFailed as e:
            result.errors += 1
            logger.error(
                f"Failed to create record action=create host={host} zone={zone.name} "
                f"address={address} reason={e}"
            )
            return

        result.created += 1
        logger.debug(f"Created record {created.id} for {host} -> {address}")

    def delete_record(self, host: str, address: str) -> bool:
        """Delete the first record of ``host`` that points at ``address``.

        Used when a single pod goes away. Only one record is removed even if
        several match, since other pods with the same hostname may still run on
        the same node. Returns False when no record matched or the delete
        failed. Listing errors, ZoneNotFound and InvalidAddress propagate.
        """
        host = _normalize_hostname(host)
        zone = resolve_zone(host, self.dns_provider.list_zones())
        record_type = classify_address(address)
        content = _canonical_address(address)

        for record in self.dns_provider.list_records(zone.id, host):
            if (
                record.type == record_type.value
                and _normalize_hostname(record.name) == host
                and _canonical_address(record.content) == content
            ):
                return self._delete(zone, record, "pod-deleted")

        logger.info(
            f"Nothing to delete action=skip host={host} zone={zone.name} "
            f"address={address} reason=no-matching-record"
        )
        return False


# =============================================================================
# Controller
# =============================================================================


class NodeDNSController:
    """Runs the initial reconciliation, then reacts to pod watch events.

    ADDED and MODIFIED events trigger a full rescan; DELETED events remove the
    single record the pod contributed. When the watch ends the baseline is
    rebuilt and the watch reopened, after a jittered exponential backoff if
    the watch failed.
    """

    def __init__(
        self,
        *,
        cluster: ClusterProvider,
        syncer: DNSSyncer,
        namespace: str = DEFAULT_NAMESPACE,
        hostname_annotation: str = DEFAULT_HOSTNAME_ANNOTATION,
        proxy_annotation: str = DEFAULT_PROXY_ANNOTATION,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 60.0,
        rebuild_retries: int = 5,
    ):
        self.cluster = cluster
        self.syncer = syncer
        self.namespace = namespace
        self.hostname_annotation = hostname_annotation
        self.proxy_annotation = proxy_annotation
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.rebuild_retries = rebuild_retries
        self._failures = 0

    def reconcile(self) -> SyncResult:
        """Full pass: list nodes and pods, rebuild desired state, sync.

        ClusterRequestFailed propagates; there is no baseline to work from.
        """
        nodes = self.cluster.list_nodes()
        pods = self.cluster.list_pods(self.namespace)
        desired = build_desired_state(
            nodes, pods, self.hostname_annotation, self.proxy_annotation
        )
        logger.info(
            f"Reconciling {len(desired)} host(s) from {len(pods)} pod(s) on {len(nodes)} node(s)"
        )
        return self.syncer.sync_once(desired)

    def handle_event(self, event: PodEvent) -> None:
        pod = event.pod
        if event.type in (EventType.ADDED, EventType.MODIFIED):
            logger.debug(f"Pod {pod.name} {event.type.value.lower()}, running full reconciliation")
            self.reconcile()
        elif event.type == EventType.DELETED:
            self._handle_pod_deleted(pod)

    def _handle_pod_deleted(self, pod: PodObservation) -> bool:
        raw_host = (pod.annotations.get(self.hostname_annotation) or "").strip()
        if not raw_host:
            return False

        address = None
        for node in self.cluster.list_nodes():
            if node.name == pod.node_name:
                address = node.public_address
                break
        if not address:
            raise MissingNodeAddress(
                f"No external address for node {pod.node_name or '-'} of deleted pod {pod.name} "
                f"(host={raw_host})"
            )

        logger.info(f"Pod {pod.name} deleted, removing {raw_host} -> {address}")
        return self.syncer.delete_record(raw_host, address)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reopening the watch after ``attempt`` failures."""
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** attempt))
        return delay * random.uniform(0.5, 1.0)

    def _consume(self, stop: threading.Event) -> None:
        for event in self.cluster.watch_pods(self.namespace):
            self._failures = 0
            try:
                self.handle_event(event)
            except NodeDNSError as e:
                logger.error(f"Failed to process {event.type.value} event for pod {event.pod.name}: {e}")
            except Exception as e:
                logger.error(
                    f"Unexpected error processing {event.type.value} event for pod {event.pod.name}: {e}",
                    exc_info=True,
                )
            if stop.is_set():
                return

    def _rebuild(self, stop: threading.Event) -> None:
        """Re-list the baseline before reopening the watch.

        Listing failures are retried under the watch backoff; after
        ``rebuild_retries`` retries the last ClusterRequestFailed propagates.
        """
        attempt = 0
        while not stop.is_set():
            try:
                self.reconcile()
                return
            except ClusterRequestFailed as e:
                if attempt >= self.rebuild_retries:
                    raise
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Rebuilding baseline failed: {e}; retry {attempt}/{self.rebuild_retries} in {delay:.1f}s"
                )
                stop.wait(timeout=delay)

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Reconcile, then watch pods until ``stop_event`` is set.

        A failing initial listing is fatal; the process supervisor is expected
        to restart us. Rebuilds after the watch ends retry under backoff.
        """
        stop = stop_event or threading.Event()
        self.reconcile()
        self._failures = 0

        while not stop.is_set():
            try:
                logger.info(f"Watching pods in {self.namespace or 'all namespaces'}")
                self._consume(stop)
                self._failures = 0
                logger.info("Pod watch ended, rebuilding baseline")
            except Exception as e:
                delay = self.backoff_delay(self._failures)
                self._failures += 1
                logger.warning(f"Pod watch failed: {e}; reopening in {delay:.1f}s")
                stop.wait(timeout=delay)

            if stop.is_set():
                break
            self._rebuild(stop)


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    settings = load_settings(CONFIG_PATH)
    logger.info(f"node-dns: kubernetes/{settings.namespace or '*'} -> cloudflare")

    if not validate_settings(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"Sync mode: {settings.sync_mode}")
    logger.info(
        f"Annotations: hostname={settings.hostname_annotation} proxy={settings.proxy_annotation}"
    )
    if settings.dry_run:
        logger.warning("⚠️  Dry-run enabled: changes are logged, not applied (DRY_RUN=false to apply)")

    dns_provider = CloudflareDNSProvider(
        settings.cloudflare_token,
        url=settings.cloudflare_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    try:
        cluster = KubernetesClusterProvider.from_settings(settings)
        controller = NodeDNSController(
            cluster=cluster,
            syncer=DNSSyncer(dns_provider=dns_provider, dry_run=settings.dry_run),
            namespace=settings.namespace,
            hostname_annotation=settings.hostname_annotation,
            proxy_annotation=settings.proxy_annotation,
            backoff_max_seconds=settings.backoff_max_seconds,
        )

        if settings.sync_mode == "once":
            controller.reconcile()
            return

        controller.run()

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
