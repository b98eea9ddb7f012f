"""Data types for Gateway API routes, Knative ingresses and related objects."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum

HASH_KEY = "K-Network-Hash"
HASH_VALUE_OVERRIDE = "override"
VISIBILITY_LABEL_KEY = "networking.knative.dev/visibility"
LAST_APPLIED_CONFIG_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
LABEL_METADATA_NAME = "kubernetes.io/metadata.name"

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
GATEWAY_API_VERSION = GATEWAY_API_GROUP + "/v1"
INGRESS_API_VERSION = "networking.internal.knative.dev/v1alpha1"
INGRESS_KIND = "Ingress"

FILTER_REQUEST_HEADER_MODIFIER = "RequestHeaderModifier"
FILTER_URL_REWRITE = "URLRewrite"
PATH_MATCH_PATH_PREFIX = "PathPrefix"
HEADER_MATCH_EXACT = "Exact"
SUPPORT_HTTP_ROUTE_REQUEST_TIMEOUT = "HTTPRouteRequestTimeout"


class Visibility(str, Enum):
    """Where an ingress rule is reachable from."""

    EXTERNAL_IP = "ExternalIP"
    CLUSTER_LOCAL = "ClusterLocal"


@dataclass(frozen=True, order=True)
class NamespacedName:
    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass
class HTTPHeader:
    name: str
    value: str


@dataclass
class HTTPHeaderMatch:
    name: str
    value: str
    type: str = HEADER_MATCH_EXACT


@dataclass
class HTTPPathMatch:
    value: str
    type: str = PATH_MATCH_PATH_PREFIX


@dataclass
class HTTPRouteMatch:
    path: HTTPPathMatch | None = None
    headers: list[HTTPHeaderMatch] = field(default_factory=list)


@dataclass
class HTTPHeaderFilter:
    set_headers: list[HTTPHeader] = field(default_factory=list)


@dataclass
class HTTPURLRewriteFilter:
    hostname: str | None = None


@dataclass
class HTTPRouteFilter:
    type: str
    request_header_modifier: HTTPHeaderFilter | None = None
    url_rewrite: HTTPURLRewriteFilter | None = None


@dataclass
class BackendRef:
    name: str
    namespace: str | None = None
    port: int | None = None
    group: str | None = None
    kind: str | None = None
    weight: int | None = None


@dataclass
class HTTPBackendRef:
    backend: BackendRef
    filters: list[HTTPRouteFilter] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.backend.name


@dataclass
class HTTPRouteTimeouts:
    request: str | None = None


@dataclass
class HTTPRouteRule:
    matches: list[HTTPRouteMatch] = field(default_factory=list)
    filters: list[HTTPRouteFilter] = field(default_factory=list)
    backend_refs: list[HTTPBackendRef] = field(default_factory=list)
    timeouts: HTTPRouteTimeouts | None = None


@dataclass
class ParentReference:
    name: str
    namespace: str | None = None
    group: str | None = None
    kind: str | None = None


@dataclass
class HTTPRouteSpec:
    hostnames: list[str] = field(default_factory=list)
    rules: list[HTTPRouteRule] = field(default_factory=list)
    parent_refs: list[ParentReference] = field(default_factory=list)


@dataclass
class HTTPRoute:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: HTTPRouteSpec = field(default_factory=HTTPRouteSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def copy(self) -> HTTPRoute:
        """Return an independent deep copy of this route."""
        return deepcopy(self)


@dataclass
class IngressBackendSplit:
    service_name: str
    service_namespace: str = ""
    service_port: int | str = 0
    percent: int = 0
    append_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class HTTPIngressPath:
    path: str = ""
    splits: list[IngressBackendSplit] = field(default_factory=list)
    append_headers: dict[str, str] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    rewrite_host: str = ""


@dataclass
class IngressRule:
    hosts: list[str] = field(default_factory=list)
    paths: list[HTTPIngressPath] = field(default_factory=list)
    visibility: Visibility | str = Visibility.EXTERNAL_IP


@dataclass
class IngressTLS:
    hosts: list[str] = field(default_factory=list)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class Ingress:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    rules: list[IngressRule] = field(default_factory=list)
    tls: list[IngressTLS] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def uid(self) -> str:
        return self.metadata.uid

    def controller_ref(self) -> OwnerReference:
        """Owner reference that marks this ingress as the controller of an object."""
        return OwnerReference(
            api_version=INGRESS_API_VERSION,
            kind=INGRESS_KIND,
            name=self.metadata.name,
            uid=self.metadata.uid,
        )


@dataclass
class GatewayConfig:
    name: str
    namespace: str
    class_name: str = ""
    supported_features: set[str] = field(default_factory=set)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.namespace, name=self.name)


@dataclass
class PartialObjectMetadata:
    kind: str
    api_version: str
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def group(self) -> str:
        """API group taken from api_version; the core group is empty."""
        group, sep, _ = self.api_version.rpartition("/")
        return group if sep else ""


@dataclass
class ReferenceGrantFrom:
    group: str
    kind: str
    namespace: str


@dataclass
class ReferenceGrantTo:
    group: str
    kind: str
    name: str | None = None


@dataclass
class ReferenceGrant:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    from_: list[ReferenceGrantFrom] = field(default_factory=list)
    to: list[ReferenceGrantTo] = field(default_factory=list)


@dataclass
class SecretObjectReference:
    name: str
    namespace: str | None = None
    group: str = ""
    kind: str = "Secret"


@dataclass
class Listener:
    name: str
    hostname: str | None = None
    port: int = 443
    protocol: str = "HTTPS"
    tls_mode: str = "Terminate"
    certificate_refs: list[SecretObjectReference] = field(default_factory=list)
    allowed_namespaces_from: str = "Selector"
    allowed_namespaces_selector: dict[str, str] = field(default_factory=dict)
    allowed_kinds: list[str] = field(default_factory=list)