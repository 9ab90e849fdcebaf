"""Reconciliation scheduler.

Walks the resource graph level by level and dispatches provider calls.
Within a level every actionable resource runs concurrently on a thread
pool; the next level starts only after the whole level has finished.

Provider calls happen on worker threads, but every status transition and
every state write happens on the coordinating thread, as results arrive.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from blueprint import Resource, Status
from common import ProviderResult
from config import DriverConfig
from engine.errors import (
    DriverError,
    ProviderError,
    ReconciliationError,
    SkippedDueToDependencyError,
    UnsupportedTypeError,
)
from engine.graph import GraphBuilder, ResourceGraph
from engine.state import Plan, StateStore, diff
from naming import resource_fqdn
from providers import default_registry
from providers.base import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """What happened to one resource during a run.

    Attributes:
        reference: 'type.name' of the resource
        status: Status after the run
        error: ProviderError or SkippedDueToDependencyError, if any
        action: create, destroy, unchanged, disable or forget
        duration: Seconds spent in the provider call
    """
    reference: str
    status: Status
    error: Optional[DriverError] = None
    action: str = ''
    duration: float = 0.0

    def to_dict(self) -> dict:
        d = {
            'reference': self.reference,
            'status': self.status.value,
            'action': self.action,
            'duration': round(self.duration, 3),
        }
        if self.error is not None:
            d['error'] = str(self.error)
        return d


@dataclass
class RunResult:
    """Per-resource outcomes of an apply or destroy run."""
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    plan: Optional[Plan] = None
    cancelled: bool = False
    duration: float = 0.0

    def add(self, outcome: Outcome) -> None:
        self.outcomes[outcome.reference] = outcome

    @property
    def failed(self) -> list[Outcome]:
        return [o for o in self.outcomes.values() if o.status == Status.FAILED]

    @property
    def skipped(self) -> list[Outcome]:
        """Resources never sent to a provider because of another failure."""
        return [o for o in self.outcomes.values()
                if isinstance(o.error, SkippedDueToDependencyError)]

    @property
    def created(self) -> list[Outcome]:
        return [o for o in self.outcomes.values()
                if o.action == 'create' and o.status == Status.CREATED]

    @property
    def destroyed(self) -> list[Outcome]:
        return [o for o in self.outcomes.values() if o.status == Status.DESTROYED]

    @property
    def errors(self) -> list[DriverError]:
        return [o.error for o in self.outcomes.values() if o.error is not None]

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    @property
    def error(self) -> Optional[ReconciliationError]:
        """Aggregate error listing every failed or skipped resource."""
        if self.success:
            return None
        return ReconciliationError(self.errors, cancelled=self.cancelled)

    def raise_for_failures(self) -> None:
        """Raise ReconciliationError unless the run fully succeeded."""
        error = self.error
        if error is not None:
            raise error

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'cancelled': self.cancelled,
            'duration': round(self.duration, 3),
            'resources': [o.to_dict() for o in self.outcomes.values()],
        }


class Scheduler:
    """Reconciles declared resources against persisted state.

    Args:
        registry: Provider dispatch table
        store: State store for the environment
        builder: Graph builder (default: one bound to registry and store domain)
        max_workers: Upper bound on concurrent provider calls per level
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        builder: Optional[GraphBuilder] = None,
        max_workers: Optional[int] = None,
    ):
        self.registry = registry
        self.store = store
        self.builder = builder or GraphBuilder(registry, domain=store.domain)
        self.max_workers = max_workers or os.cpu_count() or 4
        self._cancel = threading.Event()

    @classmethod
    def from_config(cls, config: DriverConfig) -> 'Scheduler':
        """Wire registry, state store and builder from a driver config."""
        registry = default_registry(config)
        store = StateStore(config.state_file, domain=config.domain)
        return cls(registry, store, max_workers=config.max_workers)

    def cancel(self) -> None:
        """Request cancellation; in-flight calls finish, no new level starts."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, finishing current level...")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def plan(self, declarations: Iterable[Resource]) -> Plan:
        """Build the graph and diff it against state without side effects."""
        desired = self.builder.build(declarations)
        previous = self.store.load()
        return diff(desired, previous)

    def validate(self, declarations: Iterable[Resource]) -> ResourceGraph:
        """Build the graph only; raises on any build-time error."""
        return self.builder.build(declarations)

    def apply(self, declarations: Iterable[Resource]) -> RunResult:
        """Converge external state to the declarations.

        Build-time errors propagate before anything is touched. Provider
        failures are recorded per resource and reported in the RunResult.
        """
        self._cancel.clear()
        start = time.time()

        desired = self.builder.build(declarations)
        previous = self.store.load()
        plan = diff(desired, previous)
        result = RunResult(plan=plan)
        logger.info(f"Plan: {plan.summary()}")

        targets = {r.reference for r in plan.to_destroy}
        targets.update(r.reference for r in plan.to_update)
        self._check_supported(previous, targets)
        remaining = self._teardown(previous, targets, result)

        if not result.cancelled:
            actionable = {r.reference for r in plan.to_create}
            actionable.update(r.reference for r in plan.to_update)
            self._create(desired, previous, actionable, remaining, result)

        result.duration = time.time() - start
        self._log_summary('apply', result)
        return result

    def destroy(self) -> RunResult:
        """Tear down every resource in persisted state."""
        self._cancel.clear()
        start = time.time()

        previous = self.store.load()
        result = RunResult()
        targets = {node.reference for node in previous}
        self._check_supported(previous, targets)
        logger.info(f"Destroying {len(previous)} resources")
        self._teardown(previous, targets, result)

        result.duration = time.time() - start
        self._log_summary('destroy', result)
        return result

    def probe(self) -> dict[str, Status]:
        """Ask providers for the live status of every persisted resource.

        Returns:
            Mapping of handle to live status (disabled resources omitted)
        """
        statuses: dict[str, Status] = {}
        for node in self.store.load().create_order():
            resource = node.resource
            if resource.disabled:
                continue
            handle = resource_fqdn(resource, self.store.domain)
            if not self.registry.supports(resource.type):
                logger.warning(f"No provider for {resource.reference}, reporting recorded status")
                statuses[handle] = resource.status
                continue
            try:
                statuses[handle] = self.registry.get(resource.type).probe(resource.copy())
            except Exception as e:
                logger.warning(f"Probe failed for {resource.reference}: {e}")
                statuses[handle] = Status.FAILED
        return statuses

    def _check_supported(self, graph: ResourceGraph, targets: set[str]) -> None:
        """Fail before any provider call if a teardown target has no provider.

        Raises:
            UnsupportedTypeError: A recorded resource that would be destroyed
                has a type with no registered provider
        """
        for node in graph.destroy_order():
            resource = node.resource
            if node.reference not in targets or resource.disabled:
                continue
            if resource.status in (Status.DISABLED, Status.DESTROYED):
                continue
            if not self.registry.supports(resource.type):
                raise UnsupportedTypeError(resource.type.value, reference=resource.reference)

    def _teardown(self, graph: ResourceGraph, targets: set[str], result: RunResult) -> set[str]:
        """Destroy the targeted resources of a graph, dependents first.

        A target is skipped while a dependent of it still exists: either a
        non-targeted created resource, or a target that failed or was
        skipped itself.

        Returns:
            References of targets that were not destroyed
        """
        remaining: set[str] = set()
        if not targets:
            return remaining

        for level in reversed(graph.levels()):
            if self._cancel.is_set():
                result.cancelled = True
                remaining.update(n.reference for n in level if n.reference in targets)
                continue

            batch: list[Resource] = []
            for node in level:
                if node.reference not in targets:
                    continue
                resource = node.resource

                blocker = next((
                    d.reference for d in node.dependents
                    if d.reference in remaining
                    or (d.reference not in targets and d.resource.status == Status.CREATED)
                ), None)
                if blocker is not None:
                    error = SkippedDueToDependencyError(resource.reference, blocker)
                    logger.warning(f"[destroy] {error}")
                    remaining.add(resource.reference)
                    result.add(Outcome(resource.reference, resource.status, error, action='destroy'))
                    continue

                if resource.disabled or resource.status in (Status.DISABLED, Status.DESTROYED):
                    self.store.forget(resource.reference)
                    result.add(Outcome(resource.reference, resource.status, action='forget'))
                    continue

                resource.transition(Status.PENDING_DESTROY)
                self.store.record(resource)
                logger.info(f"[destroy] {resource.reference}")
                batch.append(resource)

            for resource, outcome in self._dispatch('destroy', batch):
                if outcome.success:
                    resource.transition(Status.DESTROYED)
                    self.store.forget(resource.reference)
                    result.add(Outcome(resource.reference, Status.DESTROYED,
                                       action='destroy', duration=outcome.duration))
                else:
                    error = ProviderError(resource.reference, outcome.message)
                    logger.error(f"[destroy] {error}")
                    resource.fail(outcome.message)
                    self.store.record(resource)
                    remaining.add(resource.reference)
                    result.add(Outcome(resource.reference, Status.FAILED, error,
                                       action='destroy', duration=outcome.duration))

        return remaining

    def _create(
        self,
        desired: ResourceGraph,
        previous: ResourceGraph,
        actionable: set[str],
        teardown_failed: set[str],
        result: RunResult,
    ) -> None:
        """Create the actionable resources of the desired graph, level by level."""
        failed: set[str] = set()

        for level in desired.levels():
            if self._cancel.is_set():
                result.cancelled = True
                break

            batch: list[Resource] = []
            for node in level:
                resource = node.resource
                ref = resource.reference
                prev = previous.get(ref)

                if resource.disabled:
                    if ref in teardown_failed:
                        continue
                    if prev is None or prev.to_dict() != resource.to_dict():
                        self.store.record(resource)
                    result.add(Outcome(ref, Status.DISABLED, action='disable'))
                    continue

                if ref not in actionable:
                    resource.transition(prev.status)
                    if prev.to_dict() != resource.to_dict():
                        self.store.record(resource)
                    result.add(Outcome(ref, resource.status, action='unchanged'))
                    continue

                failed_dep = next((d for d in desired.dependencies(ref) if d in failed), None)
                if failed_dep is not None:
                    error = SkippedDueToDependencyError(ref, failed_dep)
                    logger.warning(f"[create] {error}")
                    resource.fail(str(error))
                    self.store.record(resource)
                    failed.add(ref)
                    result.add(Outcome(ref, Status.FAILED, error, action='create'))
                    continue

                if ref in teardown_failed:
                    error = ProviderError(ref, "previous version could not be destroyed")
                    failed.add(ref)
                    result.add(Outcome(ref, Status.FAILED, error, action='create'))
                    continue

                self.store.record(resource)
                logger.info(f"[create] {ref}")
                batch.append(resource)

            for resource, outcome in self._dispatch('create', batch):
                ref = resource.reference
                if outcome.success:
                    resource.transition(Status.CREATED)
                    self.store.record(resource)
                    if outcome.already_exists:
                        logger.info(f"[create] {ref} already exists")
                    result.add(Outcome(ref, Status.CREATED, action='create',
                                       duration=outcome.duration))
                else:
                    error = ProviderError(ref, outcome.message)
                    logger.error(f"[create] {error}")
                    resource.fail(outcome.message)
                    self.store.record(resource)
                    failed.add(ref)
                    result.add(Outcome(ref, Status.FAILED, error, action='create',
                                       duration=outcome.duration))

    def _dispatch(
        self, method: str, resources: list[Resource]
    ) -> Iterator[tuple[Resource, ProviderResult]]:
        """Run one provider method for a batch concurrently.

        Yields (resource, result) on the calling thread as calls complete;
        returns only after every call of the batch has finished.
        """
        if not resources:
            return
        workers = max(1, min(self.max_workers, len(resources)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_resource = {
                executor.submit(self._invoke, method, resource): resource
                for resource in resources
            }
            for future in as_completed(future_to_resource):
                yield future_to_resource[future], future.result()

    def _invoke(self, method: str, resource: Resource) -> ProviderResult:
        """Call a provider, turning exceptions into a failed result."""
        start = time.time()
        try:
            provider = self.registry.get(resource.type)
            outcome = getattr(provider, method)(resource.copy())
        except Exception as e:
            logger.debug(f"Provider {method} raised for {resource.reference}", exc_info=True)
            return ProviderResult(
                success=False,
                message=f"{type(e).__name__}: {e}",
                duration=time.time() - start,
            )
        if not isinstance(outcome, ProviderResult):
            return ProviderResult(
                success=False,
                message=f"provider returned {type(outcome).__name__}, expected ProviderResult",
                duration=time.time() - start,
            )
        if not outcome.duration:
            outcome.duration = time.time() - start
        return outcome

    def _log_summary(self, verb: str, result: RunResult) -> None:
        if result.success:
            logger.info(f"{verb.capitalize()} completed in {result.duration:.1f}s")
            return
        logger.error(
            f"{verb.capitalize()} finished with {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped"
            + (" (cancelled)" if result.cancelled else "")
        )
