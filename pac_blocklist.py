#!/usr/bin/env python3
"""
PAC Blocklist Manager v1.0

Keeps a list of hostnames that must go through an upstream proxy and renders
it into a proxy auto-config (PAC) script.

Features:
- Registry sync over HTTP with retries and conditional requests
- Local ad-hoc blocklist with automatic expiry
- Fixed exclusion set that is never proxied
- Deterministic PAC generation with an embedded binary-search matcher
- Background refresh/expiry timers
"""

import os
import sys
import json
import time
import logging
import argparse
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Any
from dataclasses import dataclass

import requests
from filelock import FileLock
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_REGISTRY_URL = "https://reestr.rublacklist.net/api/v2/domains/json"
DEFAULT_STATE_FILE = "pac_state.json"
DEFAULT_PAC_FILE = "proxy.pac"

DEFAULT_HTTPS_PROXY = "proxy-ssl.roskomsvoboda.org:33333"
DEFAULT_HTTP_PROXY = "proxy-nossl.roskomsvoboda.org:33333"

DEFAULT_TIMEOUT = 30
REFRESH_INTERVAL = 2 * 60 * 60
EXPIRY_INTERVAL = 2 * 60 * 60
RETENTION_SECONDS = 2628000
MIN_INTERVAL = 1

MAX_RETRIES = 3
RETRY_BACKOFF = 0.5
RETRY_STATUS_CODES = [429, 500, 502, 503, 504]

REGISTRY_KEY = "domains"
BLOCKED_KEY = "blockedDomains"

PROXY_SCOPE = "regular"

EXCLUDED_DOMAINS: FrozenSet[str] = frozenset({"youtube.com"})

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# ============================================================================
# EXCEPTIONS
# ============================================================================

class BlocklistError(Exception):
    """Base class for all errors raised by this module."""


class RegistryFetchError(BlocklistError):
    """The registry could not be fetched or returned a malformed body."""


class PersistenceError(BlocklistError):
    """The state file could not be read or written."""


class ConfigSubmissionError(BlocklistError):
    """The proxy backend rejected a PAC configuration."""


# ============================================================================
# DATA CLASSES
# ============================================================================

def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class RegistrySnapshot:
    """Domains last pulled from the registry."""
    domains: List[str]
    fetched_at: int
    etag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'domains': list(self.domains), 'timestamp': self.fetched_at}
        if self.etag:
            data['etag'] = self.etag
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistrySnapshot':
        return cls(
            domains=list(data.get('domains') or []),
            fetched_at=int(data.get('timestamp') or 0),
            etag=data.get('etag')
        )


@dataclass
class BlockedEntry:
    """A hostname blocked by the user."""
    domain: str
    added_at: int

    def age_seconds(self, at_ms: int) -> float:
        return (at_ms - self.added_at) / 1000

    def to_dict(self) -> Dict[str, Any]:
        return {'domain': self.domain, 'timestamp': self.added_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockedEntry':
        return cls(domain=data['domain'], added_at=int(data['timestamp']))


@dataclass
class ApplyResult:
    """Outcome of one apply cycle."""
    success: bool
    domain_count: int = 0
    error: Optional[str] = None


class CyclePhase(Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    COMPOSING = 'composing'
    GENERATING = 'generating'
    SUBMITTING = 'submitting'
    FAILED = 'failed'


@dataclass
class Config:
    """Configuration for the PAC blocklist manager."""
    registry_url: str = DEFAULT_REGISTRY_URL
    state_file: str = DEFAULT_STATE_FILE
    pac_file: str = DEFAULT_PAC_FILE
    https_proxy: str = DEFAULT_HTTPS_PROXY
    http_proxy: str = DEFAULT_HTTP_PROXY
    timeout: int = DEFAULT_TIMEOUT
    refresh_interval: int = REFRESH_INTERVAL
    expiry_interval: int = EXPIRY_INTERVAL
    retention_seconds: int = RETENTION_SECONDS
    excluded_domains: FrozenSet[str] = EXCLUDED_DOMAINS
    log_file: Optional[str] = None
    quiet: bool = False
    verbose: bool = False

    def __post_init__(self):
        if self.timeout <= 0:
            self.timeout = DEFAULT_TIMEOUT
        self.refresh_interval = max(MIN_INTERVAL, self.refresh_interval)
        self.expiry_interval = max(MIN_INTERVAL, self.expiry_interval)
        self.excluded_domains = frozenset(self.excluded_domains)


# ============================================================================
# HTTP CLIENT
# ============================================================================

class HTTPClient:
    """HTTP client with retry logic."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a session with retry logic."""
        session = requests.Session()
        retry = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF,
            status_forcelist=RETRY_STATUS_CODES,
            allowed_methods=["GET"]
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def get_json(self, url: str, etag: Optional[str] = None) -> Tuple[Any, Optional[str], bool]:
        """
        Fetch and decode a JSON document.

        Returns:
            Tuple of (payload, new_etag, was_modified). ``payload`` is None
            when the server answered 304 Not Modified.
        """
        headers = {'User-Agent': 'PAC Blocklist Manager/1.0', 'Accept': 'application/json'}
        if etag:
            headers['If-None-Match'] = etag

        response = self.session.get(url, headers=headers, timeout=self.timeout)

        if response.status_code == 304:
            return None, etag, False

        response.raise_for_status()
        return response.json(), response.headers.get('ETag'), True

    def close(self) -> None:
        self.session.close()


# ============================================================================
# PERSISTENCE
# ============================================================================

def atomic_write(path: str, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never see a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class JSONStore:
    """Key-value state persisted as a single JSON document.

    Every access holds an exclusive lock on ``<path>.lock``, so separate
    processes sharing the file (a ``serve`` daemon and a one-off ``block``)
    see each other's writes. Wrap a read-modify-write in ``transaction()``.
    """

    def __init__(self, path: str = DEFAULT_STATE_FILE):
        self.path = path
        self._lock = threading.RLock()
        self._file_lock = FileLock(f"{path}.lock")

    @contextmanager
    def transaction(self) -> Iterator['JSONStore']:
        """Hold the store exclusively, across threads and processes."""
        with self._lock:
            try:
                self._file_lock.acquire()
            except OSError as e:
                raise PersistenceError(f"Failed to lock state file {self.path}: {e}") from e
            try:
                yield self
            finally:
                self._file_lock.release()

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"State file {self.path} does not contain an object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for ``key``."""
        with self.transaction():
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, rewriting the file atomically."""
        with self.transaction():
            data = self._read()
            data[key] = value
            try:
                atomic_write(self.path, json.dumps(data, indent=2))
            except OSError as e:
                raise PersistenceError(f"Failed to write state file {self.path}: {e}") from e
            logger.debug(f"Saved '{key}' to {self.path}")


# ============================================================================
# REGISTRY SYNC
# ============================================================================

def parse_registry_payload(payload: Any) -> List[str]:
    """Extract the domain list from a registry response body."""
    if not isinstance(payload, dict):
        raise RegistryFetchError("Registry response is not a JSON object")
    domains = payload.get('domains')
    if not isinstance(domains, list):
        raise RegistryFetchError("Registry response has no 'domains' list")
    if not all(isinstance(d, str) for d in domains):
        raise RegistryFetchError("Registry 'domains' list contains non-string entries")
    return domains


class RegistrySync:
    """Mirrors the remote registry of blocked domains into the store."""

    def __init__(self, store: JSONStore, url: str, http_client: HTTPClient,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.url = url
        self.http_client = http_client
        self.clock = clock

    def snapshot(self) -> Optional[RegistrySnapshot]:
        """Return the persisted snapshot, if any."""
        data = self.store.get(REGISTRY_KEY)
        if not data:
            return None
        if not isinstance(data, dict) or not isinstance(data.get('domains', []), list):
            raise PersistenceError(f"Malformed '{REGISTRY_KEY}' entry in state")
        try:
            return RegistrySnapshot.from_dict(data)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed '{REGISTRY_KEY}' entry in state: {e}") from e

    def _fetch(self, previous: Optional[RegistrySnapshot]) -> RegistrySnapshot:
        etag = previous.etag if previous else None
        try:
            payload, new_etag, was_modified = self.http_client.get_json(self.url, etag)
        except (requests.RequestException, ValueError) as e:
            raise RegistryFetchError(f"Error fetching {self.url}: {e}") from e

        if not was_modified and previous is not None:
            logger.info("Registry not modified since last sync")
            return RegistrySnapshot(previous.domains, self.clock(), etag)

        return RegistrySnapshot(parse_registry_payload(payload), self.clock(), new_etag)

    def refresh(self) -> Optional[RegistrySnapshot]:
        """
        Pull the registry and persist it.

        On a fetch or parse failure the error is logged and the previous
        snapshot is returned untouched. Persistence errors propagate.
        """
        with self.store.transaction():
            previous = self.snapshot()
            try:
                snapshot = self._fetch(previous)
            except RegistryFetchError as e:
                logger.error(f"Registry sync failed: {e}")
                return previous

            self.store.set(REGISTRY_KEY, snapshot.to_dict())
        logger.info(f"Local database synchronized with registry: {len(snapshot.domains):,} domains")
        return snapshot

    def domains(self) -> List[str]:
        """Cached registry domains, fetching synchronously on cold start."""
        snapshot = self.snapshot()
        if snapshot is None:
            logger.warning("No cached registry data, fetching domains from registry API...")
            snapshot = self.refresh()
        if snapshot is None:
            logger.warning("Registry unavailable, continuing with local domains only")
            return []
        return list(snapshot.domains)


# ============================================================================
# LOCAL BLOCKLIST
# ============================================================================

class LocalBlocklist:
    """User-added hostnames that expire after the retention window.

    Hostnames are stored exactly as given: no case folding and no
    trailing-dot stripping, so ``Example.com`` and ``example.com`` are
    distinct entries.
    """

    def __init__(self, store: JSONStore, retention_seconds: int = RETENTION_SECONDS,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.retention_seconds = retention_seconds
        self.clock = clock

    def entries(self) -> List[BlockedEntry]:
        raw = self.store.get(BLOCKED_KEY) or []
        try:
            return [BlockedEntry.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed '{BLOCKED_KEY}' entry in state: {e}") from e

    def domains(self) -> List[str]:
        return [entry.domain for entry in self.entries()]

    def _save(self, entries: Iterable[BlockedEntry]) -> None:
        self.store.set(BLOCKED_KEY, [entry.to_dict() for entry in entries])

    def add_domain(self, host: str) -> bool:
        """Add ``host`` unless an identical entry exists. Returns True if added."""
        with self.store.transaction():
            entries = self.entries()
            if any(entry.domain == host for entry in entries):
                logger.debug(f"{host} is already in the local blocklist")
                return False

            entries.append(BlockedEntry(domain=host, added_at=self.clock()))
            self._save(entries)
        logger.info(f"Site {host} has been added to the set of blocked domains")
        return True

    def remove_domain(self, host: str) -> bool:
        """Drop ``host`` from the local blocklist. Returns True if it was present."""
        with self.store.transaction():
            entries = self.entries()
            remaining = [entry for entry in entries if entry.domain != host]
            if len(remaining) == len(entries):
                return False
            self._save(remaining)
        logger.info(f"Site {host} has been removed from the set of blocked domains")
        return True

    def expire_outdated(self) -> int:
        """Remove entries at least ``retention_seconds`` old. Returns the count removed."""
        with self.store.transaction():
            entries = self.entries()
            current = self.clock()
            kept = [entry for entry in entries
                    if entry.age_seconds(current) < self.retention_seconds]
            removed = len(entries) - len(kept)
            self._save(kept)

        if removed:
            logger.info(f"Removed {removed} outdated blocked domains")
        else:
            logger.debug("No outdated blocked domains")
        return removed


# ============================================================================
# DOMAIN SET COMPOSITION
# ============================================================================

def exclude_domains(domains: Iterable[str], exclusions: Iterable[str]) -> List[str]:
    """Drop every exact (case-sensitive) member of ``exclusions``, keeping order."""
    excluded = frozenset(exclusions)
    return [domain for domain in domains if domain not in excluded]


# ============================================================================
# PAC GENERATION
# ============================================================================

PAC_TEMPLATE = """
function FindProxyForURL(url, host) {
  // Binary search, valid only for an ascending array.
  function isHostBlocked(array, target) {
    var left = 0;
    var right = array.length - 1;

    while (left <= right) {
      var mid = left + Math.floor((right - left) / 2);

      if (array[mid] === target) {
        return true;
      }

      if (array[mid] < target) {
        left = mid + 1;
      } else {
        right = mid - 1;
      }
    }
    return false;
  }

  // Strip the trailing dot of a fully qualified name.
  if (host.charAt(host.length - 1) === '.') {
    host = host.substring(0, host.length - 1);
  }

  // Keep the last two labels only.
  var lastDot = host.lastIndexOf('.');
  if (lastDot !== -1) {
    lastDot = host.lastIndexOf('.', lastDot - 1);
    if (lastDot !== -1) {
      host = host.substring(lastDot + 1);
    }
  }

  var domains = %(domains)s;

  if (isHostBlocked(domains, host)) {
    return 'HTTPS %(https)s; PROXY %(http)s;';
  }
  return 'DIRECT';
}
"""


def generate_pac_script(domains: List[str], https_proxy: str = DEFAULT_HTTPS_PROXY,
                        http_proxy: str = DEFAULT_HTTP_PROXY) -> str:
    """
    Render the PAC script for ``domains``.

    ``domains`` is sorted in place first: the embedded matcher is a binary
    search and silently misses hosts on unsorted input. Do not remove the
    sort.
    """
    domains.sort()
    return PAC_TEMPLATE % {
        'domains': json.dumps(domains, separators=(',', ':')),
        'https': https_proxy,
        'http': http_proxy,
    }


def proxy_directive(https_proxy: str, http_proxy: str) -> str:
    return f"HTTPS {https_proxy}; PROXY {http_proxy};"


def second_level_domain(host: str) -> str:
    """Reduce ``host`` the way the PAC script does (``a.b.example.com`` -> ``example.com``).

    Multi-label public suffixes such as ``co.uk`` are not special-cased.
    """
    if host.endswith('.'):
        host = host[:-1]

    last_dot = host.rfind('.')
    if last_dot != -1:
        # lastIndexOf(".", -1) in JS still inspects index 0
        prev_dot = host.rfind('.', 0, max(last_dot, 1))
        if prev_dot != -1:
            host = host[prev_dot + 1:]
    return host


def is_host_blocked(domains: List[str], target: str) -> bool:
    """Binary search over an ascending list, identical to the PAC matcher."""
    left = 0
    right = len(domains) - 1

    while left <= right:
        mid = left + (right - left) // 2

        if domains[mid] == target:
            return True

        if domains[mid] < target:
            left = mid + 1
        else:
            right = mid - 1
    return False


def find_proxy_for_host(domains: List[str], host: str,
                        https_proxy: str = DEFAULT_HTTPS_PROXY,
                        http_proxy: str = DEFAULT_HTTP_PROXY) -> str:
    """Evaluate the routing decision the generated script would return."""
    if is_host_blocked(domains, second_level_domain(host)):
        return proxy_directive(https_proxy, http_proxy)
    return 'DIRECT'


# ============================================================================
# PROXY BACKENDS
# ============================================================================

ErrorListener = Callable[[Dict[str, Any]], None]


class ProxyBackend(ABC):
    """Host network stack that PAC configurations are submitted to.

    Subclasses implement ``apply_pac`` and ``clear_pac``; both raise
    ``ConfigSubmissionError`` when the host refuses the change, after
    broadcasting the failure through ``report_error``.
    """

    def __init__(self):
        self._error_listeners: List[ErrorListener] = []

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def report_error(self, details: Dict[str, Any]) -> None:
        """Broadcast a proxy error to every subscribed listener."""
        for listener in self._error_listeners:
            listener(details)

    @abstractmethod
    def apply_pac(self, script: str, scope: str = PROXY_SCOPE, mandatory: bool = False) -> None:
        """Install ``script`` as the active PAC configuration for ``scope``."""

    @abstractmethod
    def clear_pac(self, scope: str = PROXY_SCOPE) -> None:
        """Remove any PAC configuration for ``scope``."""


class PacFileBackend(ProxyBackend):
    """Publishes the PAC script as a file that clients are pointed at.

    A non-mandatory configuration that cannot be written leaves the
    previous file in place, so clients keep their last working setup.
    """

    def __init__(self, path: str = DEFAULT_PAC_FILE):
        super().__init__()
        self.path = path

    def apply_pac(self, script: str, scope: str = PROXY_SCOPE, mandatory: bool = False) -> None:
        try:
            atomic_write(self.path, script)
        except OSError as e:
            details = {'error': str(e), 'details': f"Cannot write {self.path}",
                       'fatal': mandatory, 'scope': scope}
            self.report_error(details)
            raise ConfigSubmissionError(f"Failed to publish PAC file {self.path}: {e}") from e

    def clear_pac(self, scope: str = PROXY_SCOPE) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.report_error({'error': str(e), 'details': f"Cannot remove {self.path}",
                               'fatal': False, 'scope': scope})
            raise ConfigSubmissionError(f"Failed to remove PAC file {self.path}: {e}") from e


# ============================================================================
# PROXY CONTROLLER
# ============================================================================

class ProxyController:
    """Main orchestrator: keeps the applied PAC in step with the blocklists."""

    def __init__(self, config: Config, backend: ProxyBackend,
                 store: Optional[JSONStore] = None,
                 http_client: Optional[HTTPClient] = None,
                 clock: Callable[[], int] = now_ms):
        self.config = config
        self.backend = backend
        self.store = store or JSONStore(config.state_file)
        self.http_client = http_client or HTTPClient(timeout=config.timeout)
        self.registry = RegistrySync(self.store, config.registry_url, self.http_client, clock)
        self.local = LocalBlocklist(self.store, config.retention_seconds, clock)

        self.phase = CyclePhase.IDLE
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

        self.stats: Dict[str, Any] = {
            'applies': 0,
            'failed_applies': 0,
            'proxy_errors': 0,
            'last_domain_count': 0,
            'last_error': None,
        }

        self.backend.add_error_listener(self._on_proxy_error)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Serialize against other threads and against other processes on the same state file."""
        with self._lock, self.store.transaction():
            yield

    def _on_proxy_error(self, details: Dict[str, Any]) -> None:
        self.stats['proxy_errors'] += 1
        logger.error(f"Proxy error: {json.dumps(details, sort_keys=True)}")

    def _compose(self, host: Optional[str]) -> List[str]:
        self.phase = CyclePhase.LOADING
        registry_domains = self.registry.domains()

        self.phase = CyclePhase.COMPOSING
        if host:
            self.local.add_domain(host)

        domains = exclude_domains(registry_domains, self.config.excluded_domains)
        domains.extend(exclude_domains(self.local.domains(), self.config.excluded_domains))
        return domains

    def compose(self, host: Optional[str] = None) -> List[str]:
        """Registry domains plus local domains, minus exclusions. Unsorted.

        ``host``, when given, is added to the local blocklist first.
        """
        with self._exclusive():
            try:
                return self._compose(host)
            finally:
                self.phase = CyclePhase.IDLE

    def generate(self) -> str:
        """Render the PAC script for the current state without applying it."""
        with self._exclusive():
            try:
                domains = self._compose(None)
                self.phase = CyclePhase.GENERATING
                return generate_pac_script(domains, self.config.https_proxy, self.config.http_proxy)
            finally:
                self.phase = CyclePhase.IDLE

    def apply(self, host: Optional[str] = None) -> ApplyResult:
        """Run one compose/generate/submit cycle, optionally blocking ``host`` first."""
        with self._exclusive():
            domains: List[str] = []
            try:
                domains = self._compose(host)

                self.phase = CyclePhase.GENERATING
                script = generate_pac_script(domains, self.config.https_proxy, self.config.http_proxy)

                self.phase = CyclePhase.SUBMITTING
                self.backend.apply_pac(script, scope=PROXY_SCOPE, mandatory=False)
            except ConfigSubmissionError as e:
                self.phase = CyclePhase.FAILED
                self.stats['failed_applies'] += 1
                self.stats['last_error'] = str(e)
                logger.warning(f"PAC configuration rejected, previous configuration stays active: {e}")
                return ApplyResult(success=False, domain_count=len(domains), error=str(e))
            except BlocklistError:
                self.phase = CyclePhase.FAILED
                self.stats['failed_applies'] += 1
                raise

            self.phase = CyclePhase.IDLE
            self.stats['applies'] += 1
            self.stats['last_domain_count'] = len(domains)
            self.stats['last_error'] = None
            logger.info(f"PAC has been set successfully ({len(domains):,} domains)")
            return ApplyResult(success=True, domain_count=len(domains))

    def block(self, host: str) -> ApplyResult:
        logger.info(f"Blocking {host}")
        return self.apply(host)

    def unblock(self, host: str) -> ApplyResult:
        with self._exclusive():
            if not self.local.remove_domain(host):
                logger.warning(f"{host} is not in the local blocklist")
            return self.apply()

    def expire_and_apply(self) -> ApplyResult:
        with self._exclusive():
            self.local.expire_outdated()
            return self.apply()

    def refresh_registry(self) -> Optional[RegistrySnapshot]:
        with self._exclusive():
            return self.registry.refresh()

    def clear(self) -> None:
        """Remove the applied configuration, reverting clients to DIRECT."""
        with self._exclusive():
            self.backend.clear_pac(scope=PROXY_SCOPE)
            logger.info("Proxy auto-config disabled")

    def status(self) -> Dict[str, Any]:
        with self._exclusive():
            snapshot = self.registry.snapshot()
            return {
                'phase': self.phase.value,
                'registry_domains': len(snapshot.domains) if snapshot else 0,
                'registry_fetched_at': snapshot.fetched_at if snapshot else None,
                'local_domains': len(self.local.entries()),
                **self.stats,
            }

    # ------------------------------------------------------------------
    # Background timers
    # ------------------------------------------------------------------

    def _run_periodically(self, name: str, interval: int, task: Callable[[], Any],
                          stop_event: threading.Event) -> None:
        # Loops watch the event they were started with; start() replaces it.
        def loop():
            while not stop_event.wait(interval):
                try:
                    task()
                except Exception as e:
                    logger.error(f"{name} failed: {e}")

        thread = threading.Thread(target=loop, daemon=True, name=name)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        """Start the registry refresh and expiry timers."""
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        if self._threads and not self._stop_event.is_set():
            logger.warning("Background tasks already running")
            return
        self._stop_event = threading.Event()
        self._run_periodically("RegistryRefresh", self.config.refresh_interval,
                               self.refresh_registry, self._stop_event)
        self._run_periodically("BlocklistExpiry", self.config.expiry_interval,
                               self.expire_and_apply, self._stop_event)
        logger.info("Background tasks started")

    def stop(self, timeout: Optional[float] = 5) -> None:
        """Signal the timers to exit and wait up to ``timeout`` seconds for each."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        if self._threads:
            logger.warning(f"{len(self._threads)} background task(s) still finishing")
        else:
            logger.info("Background tasks stopped")

    def wait(self) -> None:
        """Block until ``stop()`` is called."""
        while not self._stop_event.wait(1):
            pass


# ============================================================================
# CLI
# ============================================================================

def setup_logging(config: Config) -> None:
    """Configure root logging for command-line use."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    if config.verbose:
        level = logging.DEBUG
    elif config.quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PAC Blocklist Manager v1.0",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("-r", "--registry-url",
                        default=os.environ.get('PAC_REGISTRY_URL', DEFAULT_REGISTRY_URL),
                        help="Registry API URL (env: PAC_REGISTRY_URL)")
    parser.add_argument("-s", "--state-file", default=DEFAULT_STATE_FILE,
                        help="State file")
    parser.add_argument("-o", "--pac-file", default=DEFAULT_PAC_FILE,
                        help="PAC output file")
    parser.add_argument("--https-proxy", default=DEFAULT_HTTPS_PROXY,
                        help="Upstream endpoint for HTTPS traffic")
    parser.add_argument("--http-proxy", default=DEFAULT_HTTP_PROXY,
                        help="Upstream endpoint for plain HTTP traffic")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                        help="HTTP timeout in seconds")
    parser.add_argument("--refresh-interval", type=int, default=REFRESH_INTERVAL,
                        help="Registry refresh interval in seconds")
    parser.add_argument("--expiry-interval", type=int, default=EXPIRY_INTERVAL,
                        help="Expiry sweep interval in seconds")
    parser.add_argument("--log-file", default=None,
                        help="Also write logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Quiet mode")
    parser.add_argument("--version", action="version", version="PAC Blocklist Manager v1.0")

    commands = parser.add_subparsers(dest="command", required=True)

    block = commands.add_parser("block", help="Block a host and re-apply the PAC")
    block.add_argument("host")
    unblock = commands.add_parser("unblock", help="Remove a locally blocked host and re-apply")
    unblock.add_argument("host")
    check = commands.add_parser("check", help="Show the routing decision for a host")
    check.add_argument("host")
    commands.add_parser("sync", help="Refresh the registry snapshot")
    commands.add_parser("expire", help="Expire outdated local entries and re-apply")
    commands.add_parser("apply", help="Generate and apply the PAC")
    commands.add_parser("generate", help="Print the PAC script without applying it")
    commands.add_parser("clear", help="Remove the applied PAC")
    commands.add_parser("status", help="Print a summary of the current state")
    commands.add_parser("serve", help="Apply once, then run the background timers")

    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> Tuple[Config, argparse.Namespace]:
    """Parse command line arguments."""
    args = build_parser().parse_args(argv)

    config = Config(
        registry_url=args.registry_url,
        state_file=args.state_file,
        pac_file=args.pac_file,
        https_proxy=args.https_proxy,
        http_proxy=args.http_proxy,
        timeout=args.timeout,
        refresh_interval=args.refresh_interval,
        expiry_interval=args.expiry_interval,
        log_file=args.log_file,
        quiet=args.quiet,
        verbose=args.verbose
    )
    return config, args


def print_status(status: Dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print(" " * 25 + "STATUS")
    print("=" * 60)
    print(f"Registry domains:   {status['registry_domains']:,}")
    fetched_at = status['registry_fetched_at']
    if fetched_at:
        print(f"Registry synced:    {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(fetched_at / 1000))}")
    else:
        print("Registry synced:    never")
    print(f"Local domains:      {status['local_domains']:,}")
    print(f"Applies:            {status['applies']}")
    print(f"Failed applies:     {status['failed_applies']}")
    print("=" * 60 + "\n")


def run_command(controller: ProxyController, args: argparse.Namespace) -> int:
    """Dispatch a parsed sub-command. Returns the process exit status."""
    command = args.command

    if command == "check":
        domains = controller.compose()
        domains.sort()
        print(find_proxy_for_host(domains, args.host,
                                  controller.config.https_proxy, controller.config.http_proxy))
        return 0

    if command == "generate":
        sys.stdout.write(controller.generate())
        return 0

    if command == "sync":
        snapshot = controller.refresh_registry()
        return 0 if snapshot is not None else 1

    if command == "clear":
        controller.clear()
        return 0

    if command == "status":
        print_status(controller.status())
        return 0

    if command == "block":
        result = controller.block(args.host)
    elif command == "unblock":
        result = controller.unblock(args.host)
    elif command == "expire":
        result = controller.expire_and_apply()
    elif command == "apply":
        result = controller.apply()
    elif command == "serve":
        result = controller.apply()
        controller.start()
        try:
            controller.wait()
        finally:
            controller.stop()
    else:
        raise ValueError(f"Unknown command: {command}")

    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    config, args = parse_arguments(argv)
    setup_logging(config)

    backend = PacFileBackend(config.pac_file)
    controller = ProxyController(config, backend)

    try:
        return run_command(controller, args)
    except KeyboardInterrupt:
        logger.info("\nOperation cancelled by user.")
        return 1
    except BlocklistError as e:
        logger.error(f"An error occurred: {e}")
        if config.verbose:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        controller.http_client.close()


if __name__ == "__main__":
    sys.exit(main())
