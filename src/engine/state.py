"""Persisted reconciliation state.

The state file is a JSON snapshot of the resource graph as last reconciled.
It is the only record of what exists between runs, so it is rewritten after
every individual resource transition rather than once at the end of a run:
a crash mid-run leaves the file consistent with reality.

Format:

    {
      "version": 1,
      "updated_at": 1700000000.0,
      "resources": [
        {"name": "onprem", "type": "network", "handle": "onprem.network.shipyard.run",
         "status": "Created", "disabled": false, "attributes": {...}},
        ...
      ]
    }

Unknown fields are ignored on load.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from blueprint import Resource, Status
from config import DEFAULT_DOMAIN
from engine.errors import InvalidResourceError, StateError
from engine.graph import ResourceGraph
from naming import list_addressable, resource_fqdn

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class Plan:
    """Difference between desired declarations and persisted state.

    Attributes:
        to_create: Desired resources with no live counterpart (or a failed one)
        to_update: Desired resources whose declaration changed; destroyed then
            recreated
        to_destroy: Previous resources no longer wanted, in teardown order
        unchanged: Desired resources already in place (or disabled)
    """
    to_create: list[Resource] = field(default_factory=list)
    to_update: list[Resource] = field(default_factory=list)
    to_destroy: list[Resource] = field(default_factory=list)
    unchanged: list[Resource] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when no provider call is needed."""
        return not (self.to_create or self.to_update or self.to_destroy)

    def summary(self) -> str:
        return (f"{len(self.to_create)} to create, {len(self.to_update)} to update, "
                f"{len(self.to_destroy)} to destroy, {len(self.unchanged)} unchanged")


def diff(desired: ResourceGraph, previous: ResourceGraph) -> Plan:
    """Compare a freshly built graph with the persisted one.

    Updates cascade: a resource that is recreated forces its created
    dependents to be recreated too, since they are attached to the old object.
    """
    create: list[Resource] = []
    update: set[str] = set()
    unchanged: list[Resource] = []

    for node in desired.create_order():
        resource = node.resource
        prev = previous.get(resource.reference)

        if resource.disabled:
            unchanged.append(resource)
        elif prev is None or prev.disabled or prev.status != Status.CREATED:
            create.append(resource)
        elif prev.declaration() != resource.declaration():
            update.add(resource.reference)
        else:
            unchanged.append(resource)

    for ref in list(update):
        update.update(desired.transitive_dependents(ref))

    plan = Plan(to_create=create)
    created = {r.reference for r in create}
    for node in desired.create_order():
        resource = node.resource
        if resource.reference in update and resource.reference not in created \
                and not resource.disabled:
            plan.to_update.append(resource)
    plan.unchanged = [r for r in unchanged if r.reference not in update or r.disabled]

    for node in previous.destroy_order():
        prev = node.resource
        if prev.status == Status.DESTROYED:
            continue
        wanted = desired.get(prev.reference)
        if wanted is None or (wanted.disabled and not prev.disabled):
            plan.to_destroy.append(prev)

    return plan


class StateStore:
    """Durable snapshot of reconciled resources.

    Args:
        path: State file location
        domain: Domain suffix for the handles written into the snapshot
    """

    def __init__(self, path: Path, domain: str = DEFAULT_DOMAIN):
        self.path = Path(path)
        self.domain = domain
        self._resources: dict[str, Resource] = {}

    @property
    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    def load(self) -> ResourceGraph:
        """Load the last saved snapshot.

        Returns:
            Graph of persisted resources (empty if no state file exists)

        Raises:
            StateError: If the file is not valid JSON or not a state snapshot
        """
        self._resources = {}
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}")
            return ResourceGraph()

        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state file {self.path}: {e}")
        if not isinstance(data, dict) or not isinstance(data.get('resources', []), list):
            raise StateError(f"State file {self.path} must contain an object with a 'resources' list")

        for record in data.get('resources', []):
            try:
                resource = Resource.from_state(record)
            except (KeyError, TypeError, ValueError, InvalidResourceError) as e:
                logger.warning(f"Skipping unreadable state record {record!r}: {e}")
                continue
            self._resources[resource.reference] = resource

        logger.debug(f"Loaded {len(self._resources)} resources from {self.path}")
        return ResourceGraph.from_state(r.copy() for r in self._resources.values())

    def save(self, resources: Optional[Iterable[Resource]] = None) -> Path:
        """Atomically overwrite the state file.

        Args:
            resources: Replace the snapshot with these resources first
                (default: save the current snapshot)

        Returns:
            Path where state was saved
        """
        if resources is not None:
            self._resources = {r.reference: r.copy() for r in resources}

        data = {
            'version': STATE_VERSION,
            'updated_at': time.time(),
            'resources': [
                r.to_dict(handle=resource_fqdn(r, self.domain))
                for r in self._resources.values()
            ],
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode='w', encoding='utf-8', dir=self.path.parent,
            prefix='.state-', suffix='.tmp', delete=False,
        ) as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
            tmp_path = f.name
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved state to {self.path}")
        return self.path

    def record(self, resource: Resource) -> None:
        """Upsert one resource and save."""
        self._resources[resource.reference] = resource.copy()
        self.save()

    def forget(self, reference: str) -> None:
        """Remove one resource and save."""
        if self._resources.pop(reference, None) is not None:
            self.save()

    def get(self, reference: str) -> Optional[Resource]:
        return self._resources.get(reference)

    def diff(self, desired: ResourceGraph, previous: ResourceGraph) -> Plan:
        return diff(desired, previous)

    def list_addressable(self) -> list[str]:
        """Addressable handles of the persisted resources."""
        return list_addressable(self._resources.values(), self.domain)
