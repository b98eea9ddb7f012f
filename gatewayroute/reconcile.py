"""Decisions behind reconciling an ingress into HTTPRoutes and gateway listeners."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import (
    HASH_KEY,
    LABEL_METADATA_NAME,
    GatewayConfig,
    HTTPBackendRef,
    HTTPRoute,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    IngressTLS,
    Listener,
    NamespacedName,
    SecretObjectReference,
    Visibility,
)
from .resources import (
    add_endpoint_probe,
    add_old_backend,
    http_route_key,
    longest_host,
    make_http_route,
    remove_endpoint_probes,
    update_probe_hash,
)
from .status import Backends, ProbeState

LISTENER_PREFIX = "kni-"
ENDPOINT_PREFIX = "ep-"
TRANSITION_PREFIX = "tr-"


def _url(host: str, path: str) -> str:
    if path and not path.startswith("/"):
        path = "/" + path
    return f"//{host}{path}"


def _visibility_key(visibility: Visibility | str) -> str:
    return visibility.value if isinstance(visibility, Visibility) else visibility


def probe_targets(hash: str, ing: Ingress, rule: IngressRule, route: HTTPRoute) -> Backends:
    """Collect the probe URLs of the route for the given version."""
    backends = Backends(
        version=hash,
        key=http_route_key(ing, rule),
        callback_key=NamespacedName(namespace=ing.namespace, name=ing.name),
    )
    visibility = rule.visibility or Visibility.EXTERNAL_IP
    key = _visibility_key(visibility)

    for route_rule in route.spec.rules:
        for match in route_rule.matches:
            for header in match.headers:
                if header.name != HASH_KEY:
                    continue
                if match.path is None:
                    raise ValueError("probe match has no path")
                if visibility == Visibility.CLUSTER_LOCAL:
                    host = longest_host(route.spec.hostnames)
                    backends.add_url(key, _url(host, match.path.value))
                    break
                for hostname in route.spec.hostnames:
                    backends.add_url(key, _url(hostname, match.path.value))
    return backends


def _is_probe_rule(route_rule) -> bool:
    return any(
        header.name == HASH_KEY for match in route_rule.matches for header in match.headers
    )


def compute_backends(
    route: HTTPRoute, rule: IngressRule
) -> tuple[list[IngressBackendSplit], list[HTTPBackendRef]]:
    """Split the rule's backends into those new to the route and those already in it.

    Returns the new ingress splits, sorted by service name, and the backend
    references currently served by the route's non-probe rules.
    """
    old_backends: list[HTTPBackendRef] = []
    old_names: set[NamespacedName] = set()
    for route_rule in route.spec.rules:
        if _is_probe_rule(route_rule):
            continue
        for backend in route_rule.backend_refs:
            namespace = backend.backend.namespace
            old_names.add(
                NamespacedName(
                    namespace=namespace if namespace is not None else route.namespace,
                    name=backend.name,
                )
            )
            old_backends.append(backend)

    new_backends = [
        split
        for path in rule.paths
        if HASH_KEY not in path.headers
        for split in path.splits
        if NamespacedName(namespace=split.service_namespace, name=split.service_name)
        not in old_names
    ]
    new_backends.sort(key=lambda split: split.service_name)
    return new_backends, old_backends


def _add_probes(
    route: HTTPRoute,
    version: str,
    new_backends: Iterable[IngressBackendSplit],
    old_backends: Iterable[HTTPBackendRef],
) -> None:
    for split in new_backends:
        add_endpoint_probe(route, version, split)
    for backend in old_backends:
        add_old_backend(route, version, backend)


def desired_http_route(
    route: HTTPRoute,
    hash: str,
    ing: Ingress,
    rule: IngressRule,
    probe: ProbeState | None,
    gateway: GatewayConfig,
) -> tuple[HTTPRoute, str]:
    """Work out the route to apply next and the version its probes must report.

    New backends are first rolled out behind endpoint probes ("ep-"), then
    the final rules are applied while old and new backends stay probed
    ("tr-"), and finally the plain route is applied. The given route is
    never modified.
    """
    probe = probe or ProbeState()
    was_endpoint_probe = probe.version.startswith(ENDPOINT_PREFIX)
    was_transition_probe = probe.version.startswith(TRANSITION_PREFIX)
    probe_hash = probe.version.removeprefix(ENDPOINT_PREFIX).removeprefix(TRANSITION_PREFIX)

    new_backends, old_backends = compute_backends(route, rule)

    if was_transition_probe and probe_hash == hash and probe.ready:
        return make_http_route(ing, rule, gateway), hash

    if was_endpoint_probe and probe_hash == hash and probe.ready:
        version = TRANSITION_PREFIX + hash
        desired = make_http_route(ing, rule, gateway)
        update_probe_hash(desired, version)
        _add_probes(desired, version, new_backends, old_backends)
        return desired, version

    if probe_hash == hash:
        # Same version, probes still running: leave the route as it is.
        return route.copy(), probe.version

    if new_backends:
        version = ENDPOINT_PREFIX + hash
        desired = route.copy()
        update_probe_hash(desired, version)
        remove_endpoint_probes(desired)
        _add_probes(desired, version, new_backends, old_backends)
        return desired, version

    return make_http_route(ing, rule, gateway), hash


def make_tls_listeners(tls: IngressTLS, ing: Ingress) -> list[Listener]:
    """HTTPS listeners terminating TLS for each host of the TLS entry."""
    return [
        Listener(
            name=LISTENER_PREFIX + ing.uid,
            hostname=host,
            port=443,
            protocol="HTTPS",
            tls_mode="Terminate",
            certificate_refs=[
                SecretObjectReference(
                    name=tls.secret_name,
                    namespace=tls.secret_namespace,
                    group="",
                    kind="Secret",
                )
            ],
            allowed_namespaces_from="Selector",
            allowed_namespaces_selector={LABEL_METADATA_NAME: ing.namespace},
            allowed_kinds=[],
        )
        for host in tls.hosts
    ]


def merge_gateway_listeners(
    existing: Sequence[Listener], listeners: Iterable[Listener]
) -> tuple[list[Listener], bool]:
    """Replace or append the given listeners by name.

    Returns the resulting listener list and whether it differs from the
    existing one.
    """
    wanted = {listener.name: listener for listener in listeners}
    merged: list[Listener] = []
    updated = False
    for current in existing:
        desired = wanted.pop(current.name, None)
        if desired is None or desired == current:
            merged.append(current)
            continue
        merged.append(desired)
        updated = True

    if wanted:
        merged.extend(wanted.values())
        updated = True
    return merged, updated


def remove_gateway_listeners(
    existing: Sequence[Listener], ing: Ingress
) -> tuple[list[Listener], bool]:
    """Drop the ingress's listeners, filling each gap with the current last one.

    Returns the resulting listener list and whether anything was removed.
    """
    name = LISTENER_PREFIX + ing.uid
    remaining = list(existing)
    for position in reversed(range(len(remaining))):
        if remaining[position].name == name:
            remaining[position] = remaining[-1]
            remaining.pop()
    return remaining, len(remaining) != len(existing)