# gatewayroute

`gatewayroute` turns ingress rules into Gateway API resources and tracks whether the
gateways serving them have picked up the latest configuration.

It has four modules:

- `gatewayroute.models` holds the dataclasses: `Ingress`, `IngressRule`, `HTTPIngressPath`,
  `IngressBackendSplit`, `IngressTLS`, `HTTPRoute` and its parts, `ReferenceGrant`,
  `Listener`, `GatewayConfig`, `NamespacedName` and the `Visibility` enum.
- `gatewayroute.resources` builds `HTTPRoute` and `ReferenceGrant` objects. It also adds,
  re-hashes and removes the endpoint probe rules used while traffic moves to new backends.
- `gatewayroute.status` holds the readiness prober. It sends HTTP probes to every gateway
  pod for every probe URL, retries failures with backoff and calls you back when a route
  is ready.
- `gatewayroute.reconcile` decides which `HTTPRoute` should be applied next. It also
  builds TLS listeners and merges them into, or removes them from, a gateway's listener
  list.

The package uses only the standard library.

## Installation

```
pip install gatewayroute
```

## Building an HTTPRoute

```python
from gatewayroute.models import (
    GatewayConfig, HTTPIngressPath, Ingress, IngressBackendSplit, IngressRule,
    ObjectMeta, Visibility,
)
from gatewayroute.resources import add_endpoint_probe, longest_host, make_http_route

ing = Ingress(
    metadata=ObjectMeta(name="hello", namespace="default", uid="1234"),
    rules=[
        IngressRule(
            hosts=["hello.default", "hello.default.example.com"],
            visibility=Visibility.EXTERNAL_IP,
            paths=[
                HTTPIngressPath(
                    splits=[
                        IngressBackendSplit(
                            service_name="hello-00001",
                            service_namespace="default",
                            service_port=80,
                            percent=100,
                        )
                    ]
                )
            ],
        )
    ],
)
gateway = GatewayConfig(name="external", namespace="gateways")

rule = ing.rules[0]
route = make_http_route(ing, rule, gateway)
add_endpoint_probe(route, "ep-abc123", rule.paths[0].splits[0])

print(route.name)                 # hello.default.example.com
print(longest_host(rule.hosts))   # the last host in lexical order
```

`make_http_route` names the route after `longest_host(rule.hosts)`, copies the ingress
labels and adds `networking.knative.dev/visibility` (`"cluster-local"` for
`Visibility.CLUSTER_LOCAL`, empty otherwise). It copies the annotations except
`kubectl.kubernetes.io/last-applied-configuration` and sets the ingress as the
controlling owner. If the gateway's `supported_features` contains
`"HTTPRouteRequestTimeout"`, every rule gets a `"0s"` request timeout.

Other helpers in `gatewayroute.resources`:

- `update_probe_hash(route, hash)` sets the `K-Network-Hash` header value in every request
  header modifier of the route.
- `remove_endpoint_probes(route)` drops rules whose path starts with
  `/.well-known/knative`.
- `add_old_backend(route, hash, old)` adds a probe rule for an `HTTPBackendRef` that is
  already in the route.
- `http_route_key(ing, rule)` returns the `NamespacedName` of the route for a rule.
- `make_reference_grant(ing, to, source)` takes two `PartialObjectMetadata` and grants
  objects in `source`'s namespace access to `to`. The grant is named
  `<to.name>-<source.namespace>`, with the first part cut short so that the two parts
  together fit in 62 characters. If the namespace alone is longer than 62 characters, it
  raises `ValueError`.

## Probing gateways for readiness

```python
from gatewayroute.models import NamespacedName
from gatewayroute.status import Backends, Prober, ProbeTarget


class PodLister:
    def backends_to_probe_targets(self, backends):
        urls = [u for urls in backends.urls.values() for u in urls]
        return [ProbeTarget(pod_ips={"10.0.0.5"}, pod_port="8080", port="80", urls=urls)]


key = NamespacedName(namespace="default", name="hello")
backends = Backends(key=key, callback_key=key, version="abc123")
backends.add_url("ExternalIP", "http://hello.default.example.com/")

with Prober(PodLister(), lambda ready_key: print("ready:", ready_key)) as prober:
    state = prober.do_probes(backends)       # ProbeState(version="abc123", ready=False)
    print(prober.is_probe_active(key))       # ProbeState, or None if nothing is running
```

`Prober.start()` and `Prober.stop()` do the same as the `with` block. Each probe is a
`GET` sent to the pod IP and port. The URL's host goes in the `Host` header, and the
path defaults to `/healthz`. TLS certificates are not checked. A probe whose response
does not count as ready is retried with exponential backoff, starting at 50 ms and
capped at 30 s, under a global limit of 50 per second. Connection errors are retried the
same way.

`verify_probe_response(status_code, headers, version)` judges one response:

- `200` with the expected `K-Network-Hash` header: ready.
- `200` with no hash header: ready.
- Any status other than `200`, `404` or `503`: ready.
- `200` with a different hash, `404` or `503`: raises `ProbeError`, and the probe is
  retried.

Cancelling:

- `cancel_ingress_probing(obj)` takes any object with string `namespace` and `name`
  attributes, such as an `Ingress`.
- `cancel_ingress_probing_by_key(key)` stops probing of routes with that callback key.
- `cancel_pod_probing(pod_ip)` stops every probe sent to that pod. The pod then counts as
  done, so a route can become ready without it.

## Reconciling

`gatewayroute.reconcile` works on plain model objects:

- `desired_http_route(route, hash, ing, rule, probe, gateway)` returns the route to apply
  next and the version its probes must report. New backends are first rolled out behind
  endpoint probes (version `ep-<hash>`). Then the final rules are applied while old and
  new backends stay probed (`tr-<hash>`). Last, the plain route is applied. The given
  route is never modified.
- `probe_targets(hash, ing, rule, route)` collects the probe URLs of a route into
  `Backends`. For cluster-local rules it uses only the longest host.
- `compute_backends(route, rule)` returns the splits that are new to the route, sorted by
  service name, and the backend references the route already serves.
- `make_tls_listeners(tls, ing)` builds one HTTPS listener on port 443 per TLS host,
  named `kni-<ingress uid>`.
- `merge_gateway_listeners(existing, listeners)` replaces listeners by name and appends
  the rest. It returns the new list and whether anything changed.
- `remove_gateway_listeners(existing, ing)` removes the ingress's listeners, filling each
  gap with the current last listener. It returns the new list and whether anything was
  removed.

## What it does not do

`gatewayroute` never talks to a Kubernetes cluster. It has no API client, no watch or
controller loop, no event recording and no command-line program. Listing gateway pods
for the prober, and creating or updating `HTTPRoute`, `ReferenceGrant` and `Gateway`
objects from these results, are up to the caller.

## Running the tests

```
pip install -e ".[test]"
pytest
```