"""
Realization engine: drives the provisioning API through an ordered set of
nodes, feeds outputs of earlier resources into later ones and rolls a failed
run back.
"""
import json
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from rich.console import Console

from clusterstack.engine.diff import canonical_config
from clusterstack.errors import (
    InvalidConfigError,
    MissingAttributeError,
    ProvisioningCallError,
    ResourceNotFoundError,
    RollbackFailedError,
    RunCancelledError,
)
from clusterstack.models.realized import (
    Operation,
    OperationType,
    RealizedResource,
    ResourceStatus,
)
from clusterstack.models.resource import Ref, ResourceKind, ResourceNode, SecretField
from clusterstack.models.secret import SecretSpec
from clusterstack.providers.base import ProvisioningApi, SecretGenerator
from clusterstack.providers.secrets import LocalSecretGenerator

console = Console(stderr=True)

# how often the scheduler wakes up to look at the cancel flag while calls run
_POLL_INTERVAL = 0.05


@dataclass
class RealizationReport:
    failed_node: Optional[str] = None
    cause: Optional[BaseException] = None
    created: List[str] = field(default_factory=list)          # this run, completion order
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)       # prior resource of a Replace, deleted
    rolled_back: List[str] = field(default_factory=list)
    rollback_failed: List[str] = field(default_factory=list)
    rollback_errors: List[RollbackFailedError] = field(default_factory=list)
    not_attempted: List[str] = field(default_factory=list)
    in_doubt: List[str] = field(default_factory=list)          # timed out, may still complete
    statuses: Dict[str, ResourceStatus] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.failed_node is None and self.cause is None

    @property
    def fully_rolled_back(self) -> bool:
        return not self.rollback_failed and not self.in_doubt

    @property
    def needs_manual_cleanup(self) -> List[str]:
        return self.rollback_failed + self.in_doubt

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed_node": self.failed_node,
            "cause": repr(self.cause) if self.cause else None,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "superseded": self.superseded,
            "rolled_back": self.rolled_back,
            "rollback_failed": self.rollback_failed,
            "not_attempted": self.not_attempted,
            "in_doubt": self.in_doubt,
            "statuses": {k: v.value for k, v in self.statuses.items()},
        }


def resolve_value(val: Any, realized: Mapping[str, RealizedResource]) -> Any:
    """Replace every Ref / SecretField in ``val`` with its concrete realized value."""
    if isinstance(val, Ref):
        target = realized.get(val.node_id)
        if target is None or target.status != ResourceStatus.CREATED:
            raise MissingAttributeError(val.node_id, val.attribute, "resource is not realized")
        resolved = target.get(val.attribute)
        if resolved is None:
            raise MissingAttributeError(val.node_id, val.attribute)
        return resolved
    if isinstance(val, SecretField):
        target = realized.get(val.node_id)
        if target is None or target.status != ResourceStatus.CREATED:
            raise MissingAttributeError(val.node_id, val.field, "secret is not realized")
        if val.field not in target.attributes.get("fields", []):
            raise MissingAttributeError(val.node_id, val.field, "secret has no such field")
        # field-scoped reference: <secret arn>:<json key>:<version stage>:<version id>
        return f"{target.identity}:{val.field}::"
    if isinstance(val, timedelta):
        return int(val.total_seconds())
    if isinstance(val, Enum):
        return val.value
    if isinstance(val, dict):
        return {k: resolve_value(v, realized) for k, v in val.items()}
    if isinstance(val, (list, tuple)):
        return [resolve_value(v, realized) for v in val]
    return val


class RealizationEngine:
    def __init__(
        self,
        provider: ProvisioningApi,
        secrets: Optional[SecretGenerator] = None,
        timeout: Optional[float] = None,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
        console: Console = console,
    ):
        self.provider = provider
        self.secrets = secrets or LocalSecretGenerator()
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()
        self.console = console
        self.report = RealizationReport()

        self._lock = threading.Lock()
        self._realized: Dict[str, RealizedResource] = {}

    # ------------------------------------------------------------------ state
    def _set(self, record: RealizedResource) -> None:
        with self._lock:
            self._realized[record.node_id] = record
            self.report.statuses[record.node_id] = record.status

    def _status(self, node_id: str) -> Optional[ResourceStatus]:
        with self._lock:
            record = self._realized.get(node_id)
            return record.status if record else None

    def _snapshot(self) -> Dict[str, RealizedResource]:
        with self._lock:
            return dict(self._realized)

    def _mark(self, node: ResourceNode, status: ResourceStatus, error: Optional[str] = None) -> None:
        with self._lock:
            record = self._realized.get(node.node_id)
            if record is None:
                record = RealizedResource(node_id=node.node_id, kind=node.kind.value)
                self._realized[node.node_id] = record
            record.status = status
            if error is not None:
                record.error = error
            self.report.statuses[node.node_id] = status

    @property
    def realized(self) -> Dict[str, RealizedResource]:
        """Per-node records of the current (or last) run, whatever their status."""
        return self._snapshot()

    # ------------------------------------------------------------------ provisioning
    def _provider_config(self, node: ResourceNode, realized: Mapping[str, RealizedResource]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Concrete configuration for the provider plus any generated secret values."""
        secret_values: Dict[str, str] = {}
        config: Dict[str, Any] = {}
        for attr, val in node.config.items():
            if isinstance(val, SecretSpec):
                secret_values = self.secrets.generate(
                    val.template,
                    val.excluded_classes,
                    [val.generate_key],
                    length=val.password_length,
                    exclude_characters=val.exclude_characters,
                )
                config.update({
                    "name": val.name,
                    "description": val.description,
                    "secret_string": json.dumps(secret_values),
                })
            else:
                config[attr] = resolve_value(val, realized)
        return config, secret_values

    def _provision(self, node: ResourceNode, op: OperationType, prior: Optional[RealizedResource]) -> RealizedResource:
        """Runs on a worker thread. Dependencies are Created before this is called."""
        config, secret_values = self._provider_config(node, self._snapshot())

        if op == OperationType.UPDATE and prior is not None:
            self._mark(node, ResourceStatus.UPDATING)
            attributes = dict(prior.attributes)
            attributes.update(self.provider.update(prior.identity, config))
            identity = prior.identity
            if not secret_values:
                secret_values = dict(prior.secret_values)
        else:
            # a Replace's prior resource is already gone, see _retire_replaced
            self._mark(node, ResourceStatus.CREATING)
            identity, attributes = self.provider.create(node.kind.value, config)

        if node.kind == ResourceKind.SECRET_STORE:
            attributes["fields"] = sorted(secret_values) if secret_values else attributes.get("fields", [])

        return RealizedResource(
            node_id=node.node_id,
            kind=node.kind.value,
            identity=identity,
            attributes=attributes,
            status=ResourceStatus.CREATED,
            config=canonical_config(node),
            secret_values=secret_values,
        )

    def _realize_locally(self, node: ResourceNode, op: OperationType, prior: Optional[RealizedResource]) -> None:
        """NoOp carry-over and Output nodes need no provider call."""
        if node.kind == ResourceKind.OUTPUT:
            value = resolve_value(node.config["value"], self._snapshot())
            record = RealizedResource(
                node_id=node.node_id,
                kind=node.kind.value,
                identity=None,
                attributes={"value": value, "export_name": node.config.get("export_name")},
                status=ResourceStatus.CREATED,
                config=canonical_config(node),
            )
        else:
            record = RealizedResource(
                node_id=prior.node_id,
                kind=prior.kind,
                identity=prior.identity,
                attributes=dict(prior.attributes),
                status=ResourceStatus.CREATED,
                config=dict(prior.config),
                secret_values=dict(prior.secret_values),
            )
        self._set(record)

    def _call_bounded(self, fn: Callable, *args) -> Any:
        """Run a single provider call under the per-call timeout."""
        if self.timeout is None:
            return fn(*args)
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            return pool.submit(fn, *args).result(timeout=self.timeout)
        finally:
            pool.shutdown(wait=False)

    # ------------------------------------------------------------------ rollback
    def _rollback(self, nodes: Mapping[str, ResourceNode]) -> None:
        for node_id in reversed(self.report.created):
            node = nodes[node_id]
            record = self._snapshot()[node_id]
            self._mark(node, ResourceStatus.ROLLING_BACK)
            try:
                self._call_bounded(self.provider.delete, record.identity)
            except Exception as exc:
                self._mark(node, ResourceStatus.ROLLBACK_FAILED, error=repr(exc))
                self.report.rollback_failed.append(node_id)
                self.report.rollback_errors.append(RollbackFailedError(node_id, exc))
                self.console.print(
                    f"[yellow]Warning:[/yellow] rollback of [bold]{node_id}[/bold] "
                    f"({record.identity}) failed: {exc}"
                )
                continue
            self._mark(node, ResourceStatus.ROLLED_BACK)
            self.report.rolled_back.append(node_id)
            self.console.print(f"[dim]Rolled back {node.qualified_name}[/dim]")

    # ------------------------------------------------------------------ public
    def realize(
        self,
        ordered_nodes: Iterable[ResourceNode],
        operations: Optional[Iterable[Operation]] = None,
        prior: Optional[Mapping[str, RealizedResource]] = None,
    ) -> Dict[str, RealizedResource]:
        """
        Realize ``ordered_nodes`` (a dependency order, see resolve_order).

        Without ``operations`` every node is created. With a plan, NoOp nodes
        are carried over from ``prior``, Update/Replace act on the prior
        identity and Delete removes resources that are no longer declared.

        Returns the realized map on success. On failure everything created in
        this run is deleted again in reverse order and ProvisioningCallError is
        raised with the RealizationReport attached.
        """
        nodes = list(ordered_nodes)
        by_id = {n.node_id: n for n in nodes}
        ops = {o.node_id: o.op for o in operations or ()}
        deletes = [o.node_id for o in operations or () if o.op == OperationType.DELETE]
        prior = dict(prior or {})
        for node in nodes:
            missing = [d for d in node.depends_on if d not in by_id]
            if missing:
                raise InvalidConfigError(
                    f"Resource '{node.node_id}' depends on {', '.join(missing)}, which is not part of this run"
                )

        self.report = RealizationReport()
        with self._lock:
            self._realized = {}
        for node in nodes:
            self._mark(node, ResourceStatus.PENDING)

        failure = self._delete_orphans(deletes, prior)
        if failure is None:
            failure = self._retire_replaced(nodes, ops, prior)
        if failure is None:
            failure = self._schedule(nodes, ops, prior)

        if failure is not None:
            node_id, cause = failure
            self.report.failed_node = node_id
            self.report.cause = cause
            self.report.not_attempted = [
                n.node_id for n in nodes if self._status(n.node_id) == ResourceStatus.PENDING
            ]
            if node_id is None:
                self.console.print(f"[yellow]Stopped:[/yellow] {cause}")
            else:
                self.console.print(f"[red]Failed:[/red] {node_id}: {cause}")
            self._rollback(by_id)
            raise ProvisioningCallError(node_id, cause, report=self.report)

        return {n.node_id: self._snapshot()[n.node_id] for n in nodes}

    def survivors(self, prior: Mapping[str, RealizedResource]) -> Dict[str, RealizedResource]:
        """
        Resources that still exist after a failed run: ``prior`` without what
        the run deleted or superseded, plus in-place updates and resources
        whose rollback failed.
        """
        gone = set(self.report.deleted) | set(self.report.superseded)
        survivors = {node_id: r for node_id, r in prior.items() if node_id not in gone}
        realized = self._snapshot()
        for node_id in self.report.updated + self.report.rollback_failed:
            survivors[node_id] = replace(realized[node_id], status=ResourceStatus.CREATED)
        return survivors

    def _retire_replaced(
        self,
        nodes: List[ResourceNode],
        ops: Dict[str, OperationType],
        prior: Mapping[str, RealizedResource],
    ) -> Optional[Tuple[str, BaseException]]:
        """Delete the prior resources of replaced nodes, dependents first."""
        for node in reversed(nodes):
            record = prior.get(node.node_id)
            if ops.get(node.node_id) != OperationType.REPLACE or record is None or record.identity is None:
                continue
            try:
                self._call_bounded(self.provider.delete, record.identity)
            except ResourceNotFoundError:
                self.console.print(f"[dim]{record.kind}.{node.node_id} was already gone[/dim]")
            except Exception as exc:
                self._mark(node, ResourceStatus.FAILED, error=repr(exc))
                return node.node_id, exc
            self.report.superseded.append(node.node_id)
            self.console.print(f"[dim]Retired {record.kind}.{node.node_id} {record.identity}[/dim]")
        return None

    def _delete_orphans(self, deletes: List[str], prior: Mapping[str, RealizedResource]):
        for node_id in deletes:
            record = prior.get(node_id)
            if record is None or record.identity is None:
                continue
            try:
                self._call_bounded(self.provider.delete, record.identity)
            except Exception as exc:
                return node_id, exc
            self.report.deleted.append(node_id)
            self.report.statuses[node_id] = ResourceStatus.DELETED
            self.console.print(f"[dim]Deleted {record.kind}.{node_id}[/dim]")
        return None

    def _schedule(self, nodes: List[ResourceNode], ops: Dict[str, OperationType], prior: Mapping[str, RealizedResource]):
        pending = list(nodes)
        in_flight: Dict[Future, Tuple[ResourceNode, OperationType, Optional[float]]] = {}
        failure: Optional[Tuple[Optional[str], BaseException]] = None
        pool = ThreadPoolExecutor(max_workers=self.max_workers)
        timed_out = False

        def ready(node: ResourceNode) -> bool:
            return all(self._status(d) == ResourceStatus.CREATED for d in node.depends_on)

        def fail(node: ResourceNode, exc: BaseException) -> None:
            nonlocal failure
            self._mark(node, ResourceStatus.FAILED, error=repr(exc))
            if failure is None:
                failure = (node.node_id, exc)

        try:
            while pending or in_flight:
                if failure is None and self.cancel_event.is_set():
                    # no node failed; the run as a whole stops
                    failure = (None, RunCancelledError("Run cancelled"))
                    self.console.print("[yellow]Warning:[/yellow] cancellation requested, stopping")

                # submit everything that is ready, in realization order
                progressed = failure is None
                while progressed:
                    progressed = False
                    for node in list(pending):
                        if failure is not None or len(in_flight) >= self.max_workers:
                            break
                        if not ready(node):
                            continue
                        pending.remove(node)
                        op = ops.get(node.node_id, OperationType.CREATE)
                        prior_record = prior.get(node.node_id)
                        if node.kind == ResourceKind.OUTPUT or (op == OperationType.NOOP and prior_record):
                            try:
                                self._realize_locally(node, op, prior_record)
                            except Exception as exc:
                                fail(node, exc)
                            progressed = True
                            break
                        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
                        future = pool.submit(self._provision, node, op, prior_record)
                        in_flight[future] = (node, op, deadline)

                if not in_flight:
                    break

                deadlines = [d for (_, _, d) in in_flight.values() if d is not None]
                wait_for = _POLL_INTERVAL
                if deadlines:
                    wait_for = max(0.0, min(min(deadlines) - time.monotonic(), _POLL_INTERVAL))
                try:
                    done, _ = wait(list(in_flight), timeout=wait_for, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    # Ctrl-C is a cancellation: finish in-flight calls, then roll back
                    self.cancel_event.set()
                    continue

                for future in done:
                    node, op, _ = in_flight.pop(future)
                    try:
                        record = future.result()
                    except Exception as exc:
                        fail(node, exc)
                        continue
                    self._set(record)
                    if op == OperationType.UPDATE:
                        self.report.updated.append(node.node_id)
                    else:
                        self.report.created.append(node.node_id)
                    self.console.print(f"[green]✓[/green] {node.qualified_name} [dim]{record.identity}[/dim]")

                now = time.monotonic()
                for future, (node, _, deadline) in list(in_flight.items()):
                    if deadline is not None and now >= deadline and not future.done():
                        in_flight.pop(future)
                        timed_out = True
                        self.report.in_doubt.append(node.node_id)
                        fail(node, TimeoutError(f"{node.qualified_name} did not finish within {self.timeout}s"))
        finally:
            pool.shutdown(wait=not timed_out)

        return failure

    def destroy(
        self,
        ordered_nodes: Iterable[ResourceNode],
        realized: Mapping[str, RealizedResource],
    ) -> RealizationReport:
        """
        Delete every realized resource, dependents first. Resources that are
        no longer declared are removed before the declared ones. A resource the
        provider no longer knows counts as deleted. Best-effort: failures are
        reported, not raised. ``realized`` itself is left untouched; the
        outcome is in the report and in ``self.realized``.
        """
        self.report = RealizationReport()
        records = {node_id: replace(r, attributes=dict(r.attributes)) for node_id, r in realized.items()}
        with self._lock:
            self._realized = records
        declared = [n.node_id for n in ordered_nodes]
        order = [i for i in reversed(list(records)) if i not in declared]
        order += [i for i in reversed(declared) if i in records]

        for node_id in order:
            record = records[node_id]
            if record.identity is None or record.status != ResourceStatus.CREATED:
                continue
            try:
                self._call_bounded(self.provider.delete, record.identity)
            except ResourceNotFoundError:
                self.console.print(f"[dim]{record.kind}.{node_id} was already gone[/dim]")
            except Exception as exc:
                record.status = ResourceStatus.ROLLBACK_FAILED
                record.error = repr(exc)
                self.report.rollback_failed.append(node_id)
                self.report.rollback_errors.append(RollbackFailedError(node_id, exc))
                self.console.print(f"[yellow]Warning:[/yellow] could not delete {node_id}: {exc}")
                continue
            record.status = ResourceStatus.DELETED
            self.report.deleted.append(node_id)
            self.console.print(f"[dim]Deleted {record.kind}.{node_id}[/dim]")

        self.report.statuses = {node_id: records[node_id].status for node_id in order}
        return self.report
