"""Builders and editors for HTTPRoute and ReferenceGrant resources."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from copy import deepcopy

from .models import (
    FILTER_REQUEST_HEADER_MODIFIER,
    FILTER_URL_REWRITE,
    GATEWAY_API_GROUP,
    HASH_KEY,
    HASH_VALUE_OVERRIDE,
    LAST_APPLIED_CONFIG_ANNOTATION,
    SUPPORT_HTTP_ROUTE_REQUEST_TIMEOUT,
    VISIBILITY_LABEL_KEY,
    BackendRef,
    GatewayConfig,
    HTTPBackendRef,
    HTTPHeader,
    HTTPHeaderFilter,
    HTTPHeaderMatch,
    HTTPPathMatch,
    HTTPRoute,
    HTTPRouteFilter,
    HTTPRouteMatch,
    HTTPRouteRule,
    HTTPRouteSpec,
    HTTPRouteTimeouts,
    HTTPURLRewriteFilter,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    NamespacedName,
    ObjectMeta,
    ParentReference,
    PartialObjectMetadata,
    ReferenceGrant,
    ReferenceGrantFrom,
    ReferenceGrantTo,
    Visibility,
)

PROBE_PATH_PREFIX = "/.well-known/knative"
_REVISION_PROBE_PATH = PROBE_PATH_PREFIX + "/revision/{namespace}/{name}"
_MAX_GRANT_NAME = 62
_INT_RE = re.compile(r"[+-]?[0-9]+")


def longest_host(hosts: Iterable[str]) -> str:
    """Return the most specific host: the last one in lexical order."""
    hosts = list(hosts)
    if not hosts:
        raise ValueError("no hosts given")
    return max(hosts)


def _port_number(port: int | str) -> int:
    if isinstance(port, int):
        return port
    return int(port) if _INT_RE.fullmatch(port) else 0


def _sorted_headers(headers: Mapping[str, str]) -> list[HTTPHeader]:
    return [HTTPHeader(name, value) for name, value in sorted(headers.items())]


def _header_modifier(headers: list[HTTPHeader]) -> HTTPRouteFilter:
    return HTTPRouteFilter(
        type=FILTER_REQUEST_HEADER_MODIFIER,
        request_header_modifier=HTTPHeaderFilter(set_headers=headers),
    )


def _probe_rule(path: str, hash: str, backend: HTTPBackendRef) -> HTTPRouteRule:
    return HTTPRouteRule(
        matches=[
            HTTPRouteMatch(
                path=HTTPPathMatch(value=path),
                headers=[HTTPHeaderMatch(name=HASH_KEY, value=HASH_VALUE_OVERRIDE)],
            )
        ],
        filters=[_header_modifier([HTTPHeader(HASH_KEY, hash)])],
        backend_refs=[backend],
    )


def update_probe_hash(route: HTTPRoute, hash: str) -> None:
    """Set the hash header value in every request header modifier of the route."""
    for rule in route.spec.rules:
        for flt in rule.filters:
            if flt.type != FILTER_REQUEST_HEADER_MODIFIER or flt.request_header_modifier is None:
                continue
            for header in flt.request_header_modifier.set_headers:
                if header.name == HASH_KEY:
                    header.value = hash


def _is_probe_match(match: HTTPRouteMatch) -> bool:
    return (
        match.path is not None
        and match.path.value is not None
        and match.path.value.startswith(PROBE_PATH_PREFIX)
    )


def remove_endpoint_probes(route: HTTPRoute) -> None:
    """Drop probe rules from the route.

    A rule is kept once for every match seen before its first probe match.
    """
    kept: list[HTTPRouteRule] = []
    for rule in route.spec.rules:
        for match in rule.matches:
            if _is_probe_match(match):
                break
            kept.append(rule)
    route.spec.rules = kept


def add_endpoint_probe(route: HTTPRoute, hash: str, backend: IngressBackendSplit) -> None:
    """Append a rule probing the given ingress backend."""
    ref = HTTPBackendRef(
        backend=BackendRef(
            name=backend.service_name,
            group="",
            kind="Service",
            port=_port_number(backend.service_port),
            weight=100,
        )
    )
    if backend.append_headers:
        ref.filters.append(_header_modifier(_sorted_headers(backend.append_headers)))

    path = _REVISION_PROBE_PATH.format(
        namespace=backend.service_namespace, name=backend.service_name
    )
    route.spec.rules.append(_probe_rule(path, hash, ref))


def add_old_backend(route: HTTPRoute, hash: str, old: HTTPBackendRef) -> None:
    """Append a rule probing a backend already present in the route."""
    backend = deepcopy(old)
    backend.backend.weight = 100
    for flt in backend.filters:
        if flt.request_header_modifier is not None:
            flt.request_header_modifier.set_headers.sort(key=lambda h: h.name)

    path = _REVISION_PROBE_PATH.format(namespace=route.namespace, name=backend.name)
    route.spec.rules.append(_probe_rule(path, hash, backend))


def http_route_key(ing: Ingress, rule: IngressRule) -> NamespacedName:
    """Name under which the route for the rule is stored."""
    return NamespacedName(namespace=ing.namespace, name=longest_host(rule.hosts))


def make_http_route(ing: Ingress, rule: IngressRule, gateway: GatewayConfig) -> HTTPRoute:
    """Build the HTTPRoute for one ingress rule, attached to the given gateway."""
    visibility = "cluster-local" if rule.visibility == Visibility.CLUSTER_LOCAL else ""
    labels = {**ing.metadata.labels, VISIBILITY_LABEL_KEY: visibility}
    annotations = {
        key: value
        for key, value in ing.metadata.annotations.items()
        if key != LAST_APPLIED_CONFIG_ANNOTATION
    }
    return HTTPRoute(
        metadata=ObjectMeta(
            name=longest_host(rule.hosts),
            namespace=ing.namespace,
            labels=labels,
            annotations=annotations,
            owner_references=[ing.controller_ref()],
        ),
        spec=_make_spec(rule, gateway),
    )


def _make_spec(rule: IngressRule, gateway: GatewayConfig) -> HTTPRouteSpec:
    return HTTPRouteSpec(
        hostnames=sorted(rule.hosts),
        rules=list(_make_rules(rule, gateway)),
        parent_refs=[
            ParentReference(
                name=gateway.name,
                namespace=gateway.namespace,
                group=GATEWAY_API_GROUP,
                kind="Gateway",
            )
        ],
    )


def _make_rules(rule: IngressRule, gateway: GatewayConfig):
    for path in rule.paths:
        filters: list[HTTPRouteFilter] = []
        if path.append_headers is not None:
            filters.append(_header_modifier(_sorted_headers(path.append_headers)))
        if path.rewrite_host:
            filters.append(
                HTTPRouteFilter(
                    type=FILTER_URL_REWRITE,
                    url_rewrite=HTTPURLRewriteFilter(hostname=path.rewrite_host),
                )
            )

        backend_refs = [
            HTTPBackendRef(
                backend=BackendRef(
                    name=split.service_name,
                    group="",
                    kind="Service",
                    port=_port_number(split.service_port),
                    weight=split.percent,
                ),
                filters=[_header_modifier(_sorted_headers(split.append_headers))],
            )
            for split in path.splits
        ]

        header_matches = [
            HTTPHeaderMatch(name=name, value=value)
            for name, value in sorted(path.headers.items(), reverse=True)
        ]

        route_rule = HTTPRouteRule(
            matches=[
                HTTPRouteMatch(
                    path=HTTPPathMatch(value=path.path or "/"),
                    headers=header_matches,
                )
            ],
            filters=filters,
            backend_refs=backend_refs,
        )
        if SUPPORT_HTTP_ROUTE_REQUEST_TIMEOUT in gateway.supported_features:
            route_rule.timeouts = HTTPRouteTimeouts(request="0s")
        yield route_rule


def make_reference_grant(
    ing: Ingress, to: PartialObjectMetadata, source: PartialObjectMetadata
) -> ReferenceGrant:
    """Grant objects in the source's namespace access to the target object."""
    room = _MAX_GRANT_NAME - len(source.namespace)
    if room < 0:
        raise ValueError(f"namespace {source.namespace!r} is too long for a grant name")
    name = to.name
    if len(name) + len(source.namespace) > _MAX_GRANT_NAME:
        name = name[:room]
    name += "-" + source.namespace

    return ReferenceGrant(
        metadata=ObjectMeta(
            name=name,
            namespace=to.namespace,
            labels=dict(to.labels),
            annotations=dict(to.annotations),
            owner_references=[ing.controller_ref()],
        ),
        from_=[ReferenceGrantFrom(group=source.group, kind=source.kind, namespace=source.namespace)],
        to=[ReferenceGrantTo(group=to.group, kind=to.kind, name=to.name)],
    )