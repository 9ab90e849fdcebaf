"""Deterministic handles for resources.

A handle is '<name>.<type>.<domain>', with the name sanitized so the result
is usable as a DNS label sequence and as a lookup key for logs and status
queries. Clustered resources additionally expand into one handle per
instance: 'server.<handle>' followed by '<n>.client.<handle>' for each
client node.
"""

import re
from typing import Iterable

from blueprint import Resource, ResourceType
from config import DEFAULT_DOMAIN

_NON_URI_CHARS = re.compile(r'[^a-zA-Z0-9\-.]+')

# Types that run a container whose output can be tailed
LOGGABLE_TYPES = frozenset({
    ResourceType.CONTAINER,
    ResourceType.SIDECAR,
    ResourceType.CONTAINER_INGRESS,
    ResourceType.K8S_CLUSTER,
    ResourceType.K8S_INGRESS,
    ResourceType.NOMAD_CLUSTER,
    ResourceType.NOMAD_INGRESS,
    ResourceType.IMAGE_CACHE,
})


def replace_non_uri_chars(value: str) -> str:
    """Replace every run of characters not valid in a URI host with '-'."""
    return _NON_URI_CHARS.sub('-', value)


def fqdn(name: str, resource_type: str, domain: str = DEFAULT_DOMAIN) -> str:
    """Build the fully qualified handle for a resource."""
    return f"{replace_non_uri_chars(name)}.{resource_type}.{domain}"


def resource_fqdn(resource: Resource, domain: str = DEFAULT_DOMAIN) -> str:
    return fqdn(resource.name, resource.type.value, domain)


def instance_addresses(resource: Resource, domain: str = DEFAULT_DOMAIN) -> list[str]:
    """Return the addressable handles of a resource.

    Disabled resources have no addresses. Clustered types return the server
    handle first, then one handle per client in index order (1-based).
    """
    if resource.disabled:
        return []

    handle = resource_fqdn(resource, domain)
    if not resource.type.is_cluster:
        return [handle]

    addresses = [f"server.{handle}"]
    for n in range(1, resource.client_nodes + 1):
        addresses.append(f"{n}.client.{handle}")
    return addresses


def list_addressable(resources: Iterable[Resource], domain: str = DEFAULT_DOMAIN) -> list[str]:
    """List handles a log collaborator can tail, in resource order.

    Skips disabled resources and types that do not run a container. Names
    that sanitize to the same handle ('a_b', 'a-b') are listed once.
    """
    handles: dict[str, None] = {}
    for resource in resources:
        if resource.type not in LOGGABLE_TYPES:
            continue
        for address in instance_addresses(resource, domain):
            handles[address] = None
    return list(handles)
