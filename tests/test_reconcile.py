from urllib.parse import urlsplit

import pytest

from gatewayroute.models import (
    HASH_KEY,
    LABEL_METADATA_NAME,
    GatewayConfig,
    HTTPIngressPath,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    IngressTLS,
    Listener,
    NamespacedName,
    ObjectMeta,
    Visibility,
)
from gatewayroute.reconcile import (
    compute_backends,
    desired_http_route,
    make_tls_listeners,
    merge_gateway_listeners,
    probe_targets,
    remove_gateway_listeners,
)
from gatewayroute.resources import add_endpoint_probe, make_http_route
from gatewayroute.status import ProbeState

NAMESPACE = "test-ns"
GATEWAY = GatewayConfig(name="foo", namespace=NAMESPACE)
EXTERNAL_HOST = "hello-example.default.example.com"
LOCAL_HOSTS = [
    "hello-example.default",
    "hello-example.default.svc",
    "hello-example.default.svc.cluster.local",
]
PROBE_PREFIX = "/.well-known/knative/revision/test-ns/"


def _split(name, percent=100):
    return IngressBackendSplit(
        service_name=name, service_namespace=NAMESPACE, service_port=123, percent=percent
    )


def _rule(*names, hosts=None, visibility=Visibility.EXTERNAL_IP):
    return IngressRule(
        hosts=list(hosts or [EXTERNAL_HOST]),
        paths=[HTTPIngressPath(splits=[_split(name) for name in names])],
        visibility=visibility,
    )


def _ingress(rule):
    return Ingress(
        metadata=ObjectMeta(name="test-ingress", namespace=NAMESPACE, uid="uid-1"),
        rules=[rule],
    )


def _probe_paths(route):
    return [
        rule.matches[0].path.value
        for rule in route.spec.rules
        if rule.matches[0].path.value.startswith(PROBE_PREFIX)
    ]


def _probe_hashes(route):
    return {
        header.value
        for rule in route.spec.rules
        for flt in rule.filters
        if flt.request_header_modifier is not None
        for header in flt.request_header_modifier.set_headers
        if header.name == HASH_KEY
    }


def test_probe_targets_external():
    rule = _rule("goo")
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    add_endpoint_probe(route, "hash", rule.paths[0].splits[0])

    backends = probe_targets("hash", ing, rule, route)

    assert backends.version == "hash"
    assert backends.key == NamespacedName(namespace=NAMESPACE, name=EXTERNAL_HOST)
    assert backends.callback_key == NamespacedName(namespace=NAMESPACE, name="test-ingress")
    assert list(backends.urls) == [Visibility.EXTERNAL_IP.value]
    [url] = backends.urls[Visibility.EXTERNAL_IP.value]
    parts = urlsplit(url)
    assert parts.netloc == EXTERNAL_HOST
    assert parts.path == PROBE_PREFIX + "goo"


def test_probe_targets_cluster_local_uses_longest_host():
    rule = _rule("goo", hosts=LOCAL_HOSTS, visibility=Visibility.CLUSTER_LOCAL)
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    add_endpoint_probe(route, "hash", rule.paths[0].splits[0])

    backends = probe_targets("hash", ing, rule, route)

    urls = backends.urls[Visibility.CLUSTER_LOCAL.value]
    assert {urlsplit(url).netloc for url in urls} == {"hello-example.default.svc.cluster.local"}
    assert backends.key.name == "hello-example.default.svc.cluster.local"


def test_probe_targets_every_hostname_and_default_visibility():
    hosts = ["a.example.com", "b.example.com"]
    rule = _rule("goo", hosts=hosts, visibility="")
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    add_endpoint_probe(route, "hash", rule.paths[0].splits[0])

    backends = probe_targets("hash", ing, rule, route)

    urls = backends.urls[Visibility.EXTERNAL_IP.value]
    assert {urlsplit(url).netloc for url in urls} == set(hosts)


def test_probe_targets_without_probes_is_empty():
    rule = _rule("goo")
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    assert probe_targets("hash", ing, rule, route).urls == {}


def test_compute_backends_finds_new_and_old():
    old_rule = _rule("goo")
    ing = _ingress(old_rule)
    route = make_http_route(ing, old_rule, GATEWAY)
    add_endpoint_probe(route, "hash", old_rule.paths[0].splits[0])

    new_rule = _rule("zoo", "goo", "bar")
    new, old = compute_backends(route, new_rule)

    assert [split.service_name for split in new] == ["bar", "zoo"]
    assert [ref.name for ref in old] == ["goo"]


def test_compute_backends_skips_probe_paths():
    route = make_http_route(_ingress(_rule("goo")), _rule("goo"), GATEWAY)
    rule = _rule("goo")
    rule.paths.append(
        HTTPIngressPath(splits=[_split("probe-only")], headers={HASH_KEY: "override"})
    )
    new, _ = compute_backends(route, rule)
    assert new == []


def test_compute_backends_respects_backend_namespace():
    rule = _rule("goo")
    route = make_http_route(_ingress(rule), rule, GATEWAY)
    route.spec.rules[0].backend_refs[0].backend.namespace = "elsewhere"

    new, old = compute_backends(route, rule)

    assert [split.service_name for split in new] == ["goo"]
    assert len(old) == 1


def test_desired_route_with_new_backends_adds_endpoint_probes():
    old_rule = _rule("goo")
    ing = _ingress(old_rule)
    route = make_http_route(ing, old_rule, GATEWAY)
    before = route.copy()
    new_rule = _rule("doo")

    desired, version = desired_http_route(route, "h", ing, new_rule, None, GATEWAY)

    assert version == "ep-h"
    assert desired.spec.rules[0] == route.spec.rules[0]
    assert _probe_paths(desired) == [PROBE_PREFIX + "doo", PROBE_PREFIX + "goo"]
    assert _probe_hashes(desired) == {"ep-h"}
    assert route == before


def test_desired_route_with_same_backends_is_plain_route():
    rule = _rule("goo")
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    changed = _rule("goo")
    changed.paths[0].path = "/other"

    desired, version = desired_http_route(route, "h", ing, changed, None, GATEWAY)

    assert version == "h"
    assert desired == make_http_route(ing, changed, GATEWAY)


def test_desired_route_after_transition_is_final():
    rule = _rule("doo")
    ing = _ingress(rule)
    route = make_http_route(ing, rule, GATEWAY)
    add_endpoint_probe(route, "tr-h", rule.paths[0].splits[0])

    desired, version = desired_http_route(
        route, "h", ing, rule, ProbeState(version="tr-h", ready=True), GATEWAY
    )

    assert version == "h"
    assert desired == make_http_route(ing, rule, GATEWAY)


def test_desired_route_waits_while_probes_pending():
    old_rule = _rule("goo")
    ing = _ingress(old_rule)
    route = make_http_route(ing, old_rule, GATEWAY)
    new_rule = _rule("doo")

    desired, version = desired_http_route(
        route, "h", ing, new_rule, ProbeState(version="ep-h", ready=False), GATEWAY
    )

    assert version == "ep-h"
    assert desired == route
    assert desired is not route


def test_make_tls_listeners():
    ing = _ingress(_rule("goo"))
    tls = IngressTLS(hosts=["a.example.com", "b.example.com"], secret_name="cert", secret_namespace="certs")

    listeners = make_tls_listeners(tls, ing)

    assert [listener.hostname for listener in listeners] == tls.hosts
    for listener in listeners:
        assert listener.name == "kni-uid-1"
        assert listener.port == 443
        assert listener.protocol == "HTTPS"
        assert listener.tls_mode == "Terminate"
        assert listener.allowed_namespaces_selector == {LABEL_METADATA_NAME: NAMESPACE}
        [ref] = listener.certificate_refs
        assert (ref.name, ref.namespace, ref.kind, ref.group) == ("cert", "certs", "Secret", "")


def test_make_tls_listeners_without_hosts():
    ing = _ingress(_rule("goo"))
    assert make_tls_listeners(IngressTLS(secret_name="cert"), ing) == []


def test_merge_gateway_listeners_replaces_and_appends():
    other = Listener(name="other")
    existing = [other, Listener(name="kni-1", hostname="a.example.com")]
    replacement = Listener(name="kni-1", hostname="b.example.com")
    added = Listener(name="kni-2")

    merged, updated = merge_gateway_listeners(existing, [replacement, added])

    assert updated is True
    assert merged == [other, replacement, added]
    assert existing[1].hostname == "a.example.com"


def test_merge_gateway_listeners_unchanged():
    existing = [Listener(name="other"), Listener(name="kni-1", hostname="a.example.com")]
    merged, updated = merge_gateway_listeners(
        existing, [Listener(name="kni-1", hostname="a.example.com")]
    )
    assert updated is False
    assert merged == existing


@pytest.mark.parametrize(
    "names, expected",
    [
        (["x", "kni-uid-1", "y"], ["x", "y"]),
        (["kni-uid-1", "x", "y"], ["y", "x"]),
        (["x", "kni-uid-1", "kni-uid-1"], ["x"]),
    ],
)
def test_remove_gateway_listeners(names, expected):
    ing = _ingress(_rule("goo"))
    remaining, changed = remove_gateway_listeners([Listener(name=n) for n in names], ing)
    assert [listener.name for listener in remaining] == expected
    assert changed is True


def test_remove_gateway_listeners_nothing_to_remove():
    ing = _ingress(_rule("goo"))
    existing = [Listener(name="x"), Listener(name="kni-other")]
    remaining, changed = remove_gateway_listeners(existing, ing)
    assert changed is False
    assert remaining == existing