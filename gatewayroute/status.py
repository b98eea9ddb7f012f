"""Readiness probing of gateway pods for routes that were just programmed."""

from __future__ import annotations

import heapq
import http.client
import itertools
import logging
import socket
import ssl
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlsplit

from .models import HASH_KEY, HASH_VALUE_OVERRIDE, NamespacedName

logger = logging.getLogger(__name__)

PROBE_CONCURRENCY = 15
PROBE_TIMEOUT = 1.0
INITIAL_DELAY = 0.2

HEALTH_CHECK_PATH = "/healthz"
USER_AGENT_KEY = "User-Agent"
INGRESS_READINESS_USER_AGENT = "Knative-Ingress-Probe"
PROBE_KEY = "K-Network-Probe"
PROBE_VALUE = "probe"

_BASE_RETRY_DELAY = 0.05
_MAX_RETRY_DELAY = 30.0
_GLOBAL_QPS = 50.0
_GLOBAL_BURST = 100


class ProbeError(Exception):
    """A probe response showed that the route is not ready yet."""


@dataclass
class Backends:
    """The URLs of one route version that must answer before it counts as ready."""

    callback_key: NamespacedName = field(default_factory=NamespacedName)
    key: NamespacedName = field(default_factory=NamespacedName)
    version: str = ""
    urls: dict[str, set[str]] = field(default_factory=dict)
    http_option: str = ""

    def add_url(self, visibility: str, url: str) -> None:
        """Record a URL to probe under the given visibility."""
        self.urls.setdefault(visibility, set()).add(url)


@dataclass
class ProbeTarget:
    """URLs to probe on a set of pod IPs serving from the same port."""

    pod_ips: set[str] = field(default_factory=set)
    pod_port: str = ""
    port: str = ""
    urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProbeState:
    version: str = ""
    ready: bool = False


class ProbeTargetLister(Protocol):
    """Turns backends into the concrete targets that need probing."""

    def backends_to_probe_targets(self, backends: Backends) -> list[ProbeTarget]:
        """Return the probe targets for the given backends."""


def _header_value(headers: Mapping[str, str], name: str) -> str:
    wanted = name.casefold()
    for key, value in headers.items():
        if key.casefold() == wanted:
            return value
    return ""


def verify_probe_response(status_code: int, headers: Mapping[str, str], version: str) -> bool:
    """Judge a probe response for the expected route version.

    Returns True when the route can be considered ready and raises ProbeError
    when another probe must be sent later.
    """
    if status_code == 200:
        found = _header_value(headers, HASH_KEY)
        if not found:
            logger.error(
                "Probing abandoned: the response doesn't contain the %r header", HASH_KEY
            )
            return True
        if found == version:
            return True
        raise ProbeError(f'unexpected version: want "{version}", got "{found}"')
    if status_code in (404, 503):
        raise ProbeError(f"unexpected status code: want 200, got {status_code}")
    logger.error(
        "Probing abandoned: the response status is %d, expected one of: [200 404 503]",
        status_code,
    )
    return True


class _CancelScope:
    """A cancellation flag that runs registered callbacks once when cancelled."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()


@dataclass(eq=False)
class _RouteState:
    version: str
    key: NamespacedName
    callback_key: NamespacedName
    scope: _CancelScope
    pending: int = 0
    last_accessed: float = field(default_factory=time.time)


@dataclass(eq=False)
class _PodState:
    scope: _CancelScope
    pending: int = 0


@dataclass(eq=False)
class _WorkItem:
    route_state: _RouteState
    url: str
    pod_ip: str
    pod_port: str
    pod_state: _PodState | None = None


class _TokenBucket:
    def __init__(self, rate: float, burst: int) -> None:
        self._rate = rate
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def reserve(self) -> float:
        """Take one token and return how long to wait before using it."""
        now = time.monotonic()
        self._tokens = min(self._burst, self._tokens + (now - self._last) * self._rate)
        self._last = now
        self._tokens -= 1
        return 0.0 if self._tokens >= 0 else -self._tokens / self._rate


class _RateLimitedQueue:
    """Delayed work queue with per-item exponential backoff and a global rate limit."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, _WorkItem]] = []
        self._seq = itertools.count()
        self._failures: dict[_WorkItem, int] = {}
        self._bucket = _TokenBucket(_GLOBAL_QPS, _GLOBAL_BURST)
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def add_after(self, item: _WorkItem, delay: float) -> None:
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._heap, (time.monotonic() + delay, next(self._seq), item))
            self._cond.notify()

    def add_rate_limited(self, item: _WorkItem) -> None:
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            backoff = min(_BASE_RETRY_DELAY * 2 ** min(failures, 32), _MAX_RETRY_DELAY)
            delay = max(backoff, self._bucket.reserve())
        self.add_after(item, delay)

    def forget(self, item: _WorkItem) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def get(self) -> _WorkItem | None:
        """Block until an item is due; None once the queue is shut down."""
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                if not self._heap:
                    self._cond.wait()
                    continue
                wait = self._heap[0][0] - time.monotonic()
                if wait <= 0:
                    return heapq.heappop(self._heap)[2]
                self._cond.wait(wait)

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._heap.clear()
            self._cond.notify_all()


def _insecure_tls_context() -> ssl.SSLContext:
    # Only the gateway configuration matters here, not the certificate.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


_INSECURE_TLS = _insecure_tls_context()


class _PinnedHTTPConnection(http.client.HTTPConnection):
    """HTTP connection to a fixed address, whatever the URL host is."""

    def __init__(self, host: str, address: tuple[str, int], timeout: float) -> None:
        super().__init__(host, timeout=timeout)
        self._address = address

    def connect(self) -> None:
        self.sock = socket.create_connection(self._address, self.timeout)


class _PinnedHTTPSConnection(http.client.HTTPSConnection):
    """TLS connection to a fixed address, using the URL host for SNI."""

    def __init__(self, host: str, address: tuple[str, int], timeout: float) -> None:
        super().__init__(host, timeout=timeout, context=_INSECURE_TLS)
        self._address = address

    def connect(self) -> None:
        sock = socket.create_connection(self._address, self.timeout)
        self.sock = _INSECURE_TLS.wrap_socket(sock, server_hostname=self.host or None)


_PROBE_FAILURES = (OSError, http.client.HTTPException, ValueError, ProbeError)


class Prober:
    """Probes gateway pods until every URL of a route version answers as ready."""

    def __init__(
        self,
        target_lister: ProbeTargetLister | None,
        ready_callback: Callable[[NamespacedName], None] | None,
        *,
        concurrency: int = PROBE_CONCURRENCY,
    ) -> None:
        self._target_lister = target_lister
        self._ready_callback = ready_callback
        self._concurrency = concurrency
        self._lock = threading.Lock()
        self._route_states: dict[NamespacedName, _RouteState] = {}
        self._pod_scopes: dict[str, _CancelScope] = {}
        self._count_lock = threading.Lock()
        self._queue = _RateLimitedQueue()
        self._workers: list[threading.Thread] = []

    def __enter__(self) -> Prober:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def is_probe_active(self, key: NamespacedName) -> ProbeState | None:
        """Current state of the probes for the key, or None if none are running."""
        with self._lock:
            state = self._route_states.get(key)
            if state is None:
                return None
            return ProbeState(version=state.version, ready=self._pending(state) == 0)

    def _pending(self, state: _RouteState) -> int:
        with self._count_lock:
            return state.pending

    def do_probes(self, backends: Backends) -> ProbeState:
        """Start probing the backends, or report on probing already under way."""
        outdated: _RouteState | None = None
        with self._lock:
            state = self._route_states.get(backends.key)
            if state is not None:
                if state.version == backends.version:
                    state.last_accessed = time.time()
                    return ProbeState(version=state.version, ready=self._pending(state) == 0)
                outdated = self._route_states.pop(backends.key)
        if outdated is not None:
            outdated.scope.cancel()

        if self._target_lister is None:
            raise RuntimeError("the prober has no target lister")
        targets = self._target_lister.backends_to_probe_targets(backends)
        ready = self._probe_request(
            backends.version, backends.key, backends.callback_key, targets
        )
        return ProbeState(version=backends.version, ready=ready)

    def _probe_request(
        self,
        version: str,
        key: NamespacedName,
        callback_key: NamespacedName,
        targets: Iterable[ProbeTarget],
    ) -> bool:
        route_state = _RouteState(
            version=version, key=key, callback_key=callback_key, scope=_CancelScope()
        )

        work_items: dict[str, list[_WorkItem]] = {}
        for target in targets:
            for ip in target.pod_ips:
                work_items.setdefault(ip, []).extend(
                    _WorkItem(route_state=route_state, url=url, pod_ip=ip, pod_port=target.pod_port)
                    for url in target.urls
                )
        route_state.pending = len(work_items)

        for ip, items in work_items.items():
            with self._lock:
                ip_scope = self._pod_scopes.setdefault(ip, _CancelScope())

            pod_state = _PodState(scope=_CancelScope(), pending=len(items))
            self._link_pod_scope(route_state, pod_state, ip_scope)

            for item in items:
                item.pod_state = pod_state
                self._queue.add_after(item, INITIAL_DELAY)
                logger.info(
                    "Queuing probe for %s, IP: %s:%s (version: %s)(depth: %d)",
                    item.url, item.pod_ip, item.pod_port, version, len(self._queue),
                )

        with self._lock:
            self._route_states[key] = route_state
        return not work_items

    def _link_pod_scope(
        self, route_state: _RouteState, pod_state: _PodState, ip_scope: _CancelScope
    ) -> None:
        pod_scope = pod_state.scope
        parents = (route_state.scope, ip_scope)
        for parent in parents:
            parent.on_cancel(pod_scope.cancel)

        def finished() -> None:
            for parent in parents:
                parent.discard(pod_scope.cancel)
            self._on_probing_cancellation(route_state, pod_state)

        pod_scope.on_cancel(finished)

    def start(self) -> None:
        """Start the worker threads that process queued probes."""
        with self._lock:
            if self._workers:
                raise RuntimeError("the prober is already started")
            self._workers = [
                threading.Thread(target=self._run_worker, name=f"prober-{n}", daemon=True)
                for n in range(self._concurrency)
            ]
            workers = list(self._workers)
        for worker in workers:
            worker.start()

    def stop(self) -> None:
        """Stop processing probes and wait for the workers to finish."""
        self._queue.shut_down()
        with self._lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join()

    def cancel_ingress_probing(self, obj: object) -> None:
        """Cancel probing for the ingress the object names; ignore anything else."""
        namespace = getattr(obj, "namespace", None)
        name = getattr(obj, "name", None)
        if not isinstance(namespace, str) or not isinstance(name, str):
            return
        self.cancel_ingress_probing_by_key(NamespacedName(namespace=namespace, name=name))

    def cancel_ingress_probing_by_key(self, key: NamespacedName) -> None:
        """Cancel probing of every route whose callback key is the given key."""
        cancelled: list[_RouteState] = []
        with self._lock:
            for state in list(self._route_states.values()):
                if state.callback_key == key:
                    cancelled.append(state)
                    self._route_states.pop(key, None)
        for state in cancelled:
            state.scope.cancel()

    def cancel_pod_probing(self, pod_ip: str) -> None:
        """Cancel every probe sent to the given pod IP."""
        with self._lock:
            scope = self._pod_scopes.pop(pod_ip, None)
        if scope is not None:
            scope.cancel()

    def _run_worker(self) -> None:
        while self._process_work_item():
            pass

    def _process_work_item(self) -> bool:
        item = self._queue.get()
        if item is None:
            return False
        assert item.pod_state is not None
        scope = item.pod_state.scope

        if scope.cancelled:
            self._queue.forget(item)
            return True

        logger.info(
            "Processing probe for %s, IP: %s:%s (depth: %d)",
            item.url, item.pod_ip, item.pod_port, len(self._queue),
        )
        error: Exception | None = None
        try:
            ok = self._probe(item)
        except _PROBE_FAILURES as exc:
            ok, error = False, exc

        if scope.cancelled:
            self._queue.forget(item)
            return True

        if not ok:
            self._queue.add_rate_limited(item)
            logger.error(
                "Probing of %s failed, IP: %s:%s, ready: %s, error: %s (depth: %d)",
                item.url, item.pod_ip, item.pod_port, ok, error, len(self._queue),
            )
        else:
            self._queue.forget(item)
            self._on_probing_success(item.route_state, item.pod_state)
        return True

    def _probe(self, item: _WorkItem) -> bool:
        url = urlsplit(item.url)
        path = url.path or HEALTH_CHECK_PATH
        if url.query:
            path += "?" + url.query
        host_header = url.netloc.rpartition("@")[2]
        address = (item.pod_ip, int(item.pod_port))
        connection_type = _PinnedHTTPSConnection if url.scheme == "https" else _PinnedHTTPConnection
        conn = connection_type(url.hostname or "", address, PROBE_TIMEOUT)
        try:
            conn.request(
                "GET",
                path,
                headers={
                    "Host": host_header,
                    USER_AGENT_KEY: INGRESS_READINESS_USER_AGENT,
                    PROBE_KEY: PROBE_VALUE,
                    HASH_KEY: HASH_VALUE_OVERRIDE,
                },
            )
            response = conn.getresponse()
            response.read()
            return verify_probe_response(
                response.status, response.headers, item.route_state.version
            )
        finally:
            conn.close()

    def _notify_ready(self, key: NamespacedName) -> None:
        if self._ready_callback is not None:
            self._ready_callback(key)

    def _on_probing_success(self, route_state: _RouteState, pod_state: _PodState) -> None:
        with self._count_lock:
            pod_state.pending -= 1
            pod_done = pod_state.pending == 0
            route_ready = False
            if pod_done:
                route_state.pending -= 1
                route_ready = route_state.pending == 0
        if pod_done:
            pod_state.scope.cancel()
            if route_ready:
                self._notify_ready(route_state.callback_key)

    def _on_probing_cancellation(self, route_state: _RouteState, pod_state: _PodState) -> None:
        with self._count_lock:
            if pod_state.pending <= 0:
                return
            pod_state.pending = 0
            route_state.pending -= 1
            route_ready = route_state.pending == 0
        if route_ready:
            self._notify_ready(route_state.callback_key)