"""Resource model and blueprint loading.

A blueprint is a flat list of typed resource declarations. Each declaration
has a name, a type, an optional disabled flag, optional explicit depends_on
references ('type.name') and a free-form map of type-specific attributes:

    resources:
      - type: network
        name: onprem
        subnet: 10.6.0.0/16
      - type: container
        name: consul
        image: consul:1.15
        network: network.onprem
      - type: nomad_cluster
        name: dev
        client_nodes: 3

Turning source text into declarations is the parser's job; this module only
accepts already-structured data (YAML/JSON documents or dicts) and builds
Resource records from it. Semantic validation happens in the graph builder.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from engine.errors import (
    InvalidResourceError,
    NameContainsInvalidCharactersError,
    NameExceedsMaxLengthError,
    StatusTransitionError,
)

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 128

_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')

# Keys with structural meaning in a declaration; everything else is an attribute
_RESERVED_KEYS = {'type', 'name', 'disabled', 'depends_on'}


class BlueprintError(ConfigError):
    """Blueprint document could not be read or has the wrong shape."""


class ResourceType(str, Enum):
    """Closed set of resource types understood by the engine."""
    NETWORK = 'network'
    CONTAINER = 'container'
    SIDECAR = 'sidecar'
    CONTAINER_INGRESS = 'container_ingress'
    K8S_CLUSTER = 'k8s_cluster'
    K8S_CONFIG = 'k8s_config'
    K8S_INGRESS = 'k8s_ingress'
    HELM = 'helm'
    NOMAD_CLUSTER = 'nomad_cluster'
    NOMAD_INGRESS = 'nomad_ingress'
    NOMAD_JOB = 'nomad_job'
    EXEC_LOCAL = 'exec_local'
    EXEC_REMOTE = 'exec_remote'
    IMAGE_CACHE = 'image_cache'
    DOCS = 'docs'
    TEMPLATE = 'template'

    def __str__(self) -> str:
        return self.value

    @property
    def is_cluster(self) -> bool:
        """True for types that expand into server + client instances."""
        return self in CLUSTER_TYPES


CLUSTER_TYPES = frozenset({ResourceType.K8S_CLUSTER, ResourceType.NOMAD_CLUSTER})


class Status(str, Enum):
    """Lifecycle status of a resource."""
    PENDING_CREATION = 'PendingCreation'
    CREATED = 'Created'
    DISABLED = 'Disabled'
    FAILED = 'Failed'
    PENDING_DESTROY = 'PendingDestroy'
    DESTROYED = 'Destroyed'

    def __str__(self) -> str:
        return self.value


# Allowed moves within one apply/destroy run. Disabled and Destroyed are terminal.
_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING_CREATION: frozenset({
        Status.CREATED, Status.FAILED, Status.DISABLED, Status.PENDING_DESTROY,
    }),
    Status.CREATED: frozenset({Status.PENDING_DESTROY}),
    Status.FAILED: frozenset({Status.PENDING_DESTROY}),
    Status.PENDING_DESTROY: frozenset({Status.DESTROYED, Status.FAILED}),
    Status.DISABLED: frozenset(),
    Status.DESTROYED: frozenset(),
}


def parse_type(value: Any, name: str = '?') -> ResourceType:
    """Convert a raw type value to ResourceType.

    Raises:
        InvalidResourceError: If the value is not a known type
    """
    if isinstance(value, ResourceType):
        return value
    try:
        return ResourceType(value)
    except ValueError:
        raise InvalidResourceError(
            f"unknown resource type '{value}'", reference=f"{value}.{name}"
        ) from None


def validate_name(name: str) -> bool:
    """Ensure a resource name is 1-128 chars of [A-Za-z0-9_-].

    Returns:
        True if the name is valid

    Raises:
        NameExceedsMaxLengthError: If the name is longer than 128 chars
        NameContainsInvalidCharactersError: If the name is empty or has
            characters outside the allowed set
    """
    if not isinstance(name, str):
        raise NameContainsInvalidCharactersError(
            f"name must be a string, got {type(name).__name__}")
    if len(name) > MAX_NAME_LENGTH:
        raise NameExceedsMaxLengthError(
            f"name exceeds the max length of {MAX_NAME_LENGTH} characters")
    if not _NAME_PATTERN.match(name):
        raise NameContainsInvalidCharactersError(
            f"name '{name}' contains invalid characters, "
            "characters must be either a-z, A-Z, 0-9, -, _")
    return True


def make_reference(resource_type: Any, name: str) -> str:
    """Build the 'type.name' reference string used by depends_on."""
    return f"{resource_type}.{name}"


@dataclass
class Resource:
    """One declared infrastructure unit.

    Attributes:
        name: Resource name, unique per type
        type: Resource type
        status: Current lifecycle status
        disabled: Disabled resources are recorded but never acted on
        depends_on: Explicit 'type.name' references, in declaration order
        attributes: Type-specific attributes (raw declaration values)
        error: Message of the last failure, if any
        requires: Resolved dependency edges (explicit + implicit), set by the
            graph builder and persisted so teardown order survives between runs
    """
    name: str
    type: ResourceType
    status: Status = Status.PENDING_CREATION
    disabled: bool = False
    depends_on: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    requires: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.type, ResourceType):
            self.type = parse_type(self.type, self.name)
        if isinstance(self.status, str) and not isinstance(self.status, Status):
            self.status = Status(self.status)
        # ordered set semantics
        self.depends_on = list(dict.fromkeys(self.depends_on))
        if self.disabled and self.status == Status.PENDING_CREATION:
            self.status = Status.DISABLED

    @property
    def reference(self) -> str:
        return make_reference(self.type, self.name)

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.type.value)

    @property
    def client_nodes(self) -> int:
        """Number of client instances for clustered types (0 otherwise)."""
        if not self.type.is_cluster:
            return 0
        value = self.attributes.get('client_nodes', 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidResourceError(
                f"client_nodes must be a non-negative integer, got {value!r}",
                reference=self.reference,
            )
        return value

    def declaration(self) -> tuple:
        """Comparable view of what the user declared (ignores status)."""
        return (
            self.disabled,
            tuple(self.depends_on),
            json.dumps(self.attributes, sort_keys=True, default=str),
        )

    def transition(self, status: Status) -> None:
        """Move to a new status, enforcing the lifecycle state machine.

        Raises:
            StatusTransitionError: If the move is not allowed
        """
        if status == self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise StatusTransitionError(
                f"{self.reference}: cannot move from {self.status} to {status}")
        self.status = status

    def fail(self, error: str) -> None:
        self.transition(Status.FAILED)
        self.error = error

    def copy(self) -> 'Resource':
        return copy.deepcopy(self)

    def to_dict(self, handle: Optional[str] = None) -> dict:
        """Convert to the persisted state representation."""
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type.value,
            'status': self.status.value,
            'disabled': self.disabled,
        }
        if handle is not None:
            d['handle'] = handle
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.requires:
            d['requires'] = list(self.requires)
        if self.attributes:
            d['attributes'] = copy.deepcopy(self.attributes)
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_state(cls, data: dict) -> 'Resource':
        """Create Resource from a persisted state record.

        Unknown fields are ignored so older binaries can read newer files.
        """
        return cls(
            name=data['name'],
            type=parse_type(data['type'], data['name']),
            status=Status(data.get('status', Status.PENDING_CREATION.value)),
            disabled=bool(data.get('disabled', False)),
            depends_on=list(data.get('depends_on', [])),
            attributes=dict(data.get('attributes') or {}),
            error=data.get('error'),
            requires=list(data.get('requires', [])),
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        """Create Resource from a flat declaration.

        Every key other than type, name, disabled and depends_on becomes an
        attribute.

        Raises:
            InvalidResourceError: If type or name is missing, or type is unknown
        """
        if 'name' not in data:
            raise InvalidResourceError("declaration missing required field: name")
        if 'type' not in data:
            raise InvalidResourceError(
                f"declaration '{data['name']}' missing required field: type")

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise InvalidResourceError(
                "depends_on must be a list of references",
                reference=make_reference(data['type'], data['name']),
            )

        attributes = {k: v for k, v in data.items() if k not in _RESERVED_KEYS}
        return cls(
            name=data['name'],
            type=parse_type(data['type'], data['name']),
            disabled=bool(data.get('disabled', False)),
            depends_on=[str(d) for d in depends_on],
            attributes=attributes,
        )


def declarations_from_dicts(items: list[dict]) -> list[Resource]:
    """Convert raw declaration maps to Resource records, preserving order."""
    resources = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise BlueprintError(f"Resource {i} must be a mapping, got {type(item).__name__}")
        resources.append(Resource.from_dict(item))
    return resources


def load_blueprint(path: Path) -> list[Resource]:
    """Load resource declarations from a YAML or JSON blueprint file.

    Accepts either a top-level list of declarations or a mapping with a
    'resources' list.

    Raises:
        BlueprintError: If the file is missing or malformed
        InvalidResourceError: If a declaration has no name/type or an unknown type
    """
    path = Path(path)
    if not path.exists():
        raise BlueprintError(f"Blueprint file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise BlueprintError(f"Invalid blueprint {path}: {e}")

    if isinstance(data, dict):
        data = data.get('resources')
    if not isinstance(data, list):
        raise BlueprintError(f"Blueprint {path} must contain a list of resources")

    resources = declarations_from_dicts(data)
    logger.debug(f"Loaded {len(resources)} declarations from {path}")
    return resources
