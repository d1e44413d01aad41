"""
Realization engine tests: happy path, rollback, timeouts, cancellation and
concurrent realization against the in-memory provider.
"""
import dataclasses
import threading
import time

import pytest

from clusterstack.config import TopologyConfig
from clusterstack.engine.diff import plan
from clusterstack.engine.realize import RealizationEngine, resolve_value
from clusterstack.errors import (
    InvalidConfigError,
    MissingAttributeError,
    ProvisioningCallError,
    RunCancelledError,
)
from clusterstack.graph.resolver import resolve_order
from clusterstack.models.realized import RealizedResource, ResourceStatus
from clusterstack.models.resource import Ref, ResourceGraph, ResourceKind, SecretField
from clusterstack.providers.memory import InMemoryProvider, SimulatedProviderError
from clusterstack.topology import build_topology


def _contains_reference(value) -> bool:
    if isinstance(value, (Ref, SecretField)):
        return True
    if isinstance(value, dict):
        return any(_contains_reference(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_reference(v) for v in value)
    return False


class TestHappyPath:
    def setup_method(self):
        self.graph = build_topology()
        self.order = list(resolve_order(self.graph))

    def test_every_node_created(self, quiet_console):
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(self.order)
        assert list(realized) == [n.node_id for n in self.order]
        assert all(r.status == ResourceStatus.CREATED for r in realized.values())
        # the output node is resolved locally
        assert provider.call_count("create") == len(self.order) - 1

    def test_provider_sees_concrete_values(self, quiet_console):
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(self.order)
        for resource in provider.resources.values():
            assert not _contains_reference(resource["config"])
        cluster = provider.resources[realized["Cluster"].identity]
        assert cluster["config"]["vpc"] == realized["appvpc"].identity
        service = provider.resources[realized["Service"].identity]
        assert service["config"]["task_definition"] == realized["TaskDef"].identity

    def test_secret_fields_are_references(self, quiet_console):
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(self.order)
        secret_arn = realized["pgadmin-secret"].identity
        task = provider.resources[realized["TaskDef"].identity]
        assert task["config"]["secrets"] == {
            "PGADMIN_DEFAULT_EMAIL": f"{secret_arn}:email::",
            "PGADMIN_DEFAULT_PASSWORD": f"{secret_arn}:password::",
        }
        assert provider.get_secret_value(secret_arn, "email") == "hello@myorg.lab"
        password = provider.get_secret_value(secret_arn, "password")
        assert password not in str(task)

    def test_health_check_in_seconds(self, quiet_console):
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(self.order)
        listener = provider.resources[realized["pgadmin-listener"].identity]
        assert listener["config"]["health_check"] == {
            "healthy_threshold_count": 2,
            "unhealthy_threshold_count": 10,
            "timeout": 20,
            "interval": 30,
        }

    def test_output_value(self, quiet_console):
        realized = RealizationEngine(InMemoryProvider(), console=quiet_console).realize(self.order)
        output = realized["alb-url"]
        assert output.attributes["value"] == realized["alb"].attributes["dns_name"]
        assert output.attributes["export_name"] == "pgadmin-stack-loadBalancerDnsName"

    def test_missing_attribute_fails_node(self, quiet_console):
        graph = ResourceGraph()
        graph.define_resource(ResourceKind.NETWORK, "net", {"cidr": "10.0.0.0/16", "subnets": []})
        graph.define_resource(ResourceKind.COMPUTE_CLUSTER, "cluster", {"vpc": Ref("net", "no_such_attribute")})
        provider = InMemoryProvider()
        with pytest.raises(ProvisioningCallError) as info:
            RealizationEngine(provider, console=quiet_console).realize(resolve_order(graph))
        assert info.value.node_id == "cluster"
        assert isinstance(info.value.cause, MissingAttributeError)
        assert info.value.report.rolled_back == ["net"]
        assert provider.resources == {}

    def test_dependency_outside_run(self, scenario_graph, quiet_console):
        graph = scenario_graph
        partial = [graph.get("cluster")]
        with pytest.raises(InvalidConfigError, match="net"):
            RealizationEngine(InMemoryProvider(), console=quiet_console).realize(partial)


class TestResolveValue:
    def test_unrealized_reference(self):
        with pytest.raises(MissingAttributeError):
            resolve_value(Ref("net", "vpc_id"), {})

    def test_reference_to_failed_resource(self):
        record = RealizedResource(node_id="net", kind="Network", identity="vpc-1",
                                  attributes={"vpc_id": "vpc-1"}, status=ResourceStatus.FAILED)
        with pytest.raises(MissingAttributeError):
            resolve_value(Ref("net", "vpc_id"), {"net": record})

    def test_unknown_secret_field(self):
        record = RealizedResource(node_id="s", kind="SecretStore", identity="arn:s",
                                  attributes={"fields": ["email"]}, status=ResourceStatus.CREATED)
        assert resolve_value(SecretField("s", "email"), {"s": record}) == "arn:s:email::"
        with pytest.raises(MissingAttributeError):
            resolve_value(SecretField("s", "password"), {"s": record})


class TestRollback:
    def test_failing_service(self, scenario_graph, quiet_console):
        graph = scenario_graph
        provider = InMemoryProvider(fail_kinds={"Service"})
        engine = RealizationEngine(provider, console=quiet_console)
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(resolve_order(graph))

        report = info.value.report
        assert report.failed_node == "service"
        assert isinstance(report.cause, SimulatedProviderError)
        assert report.created == ["net", "secret", "cluster", "task", "lb"]
        assert report.rolled_back == ["lb", "task", "cluster", "secret", "net"]
        assert report.not_attempted == ["listener"]
        assert report.fully_rolled_back

        statuses = report.statuses
        for node_id in ("net", "secret", "cluster", "task", "lb"):
            assert statuses[node_id] == ResourceStatus.ROLLED_BACK
        assert statuses["service"] == ResourceStatus.FAILED
        assert statuses["listener"] == ResourceStatus.PENDING
        assert provider.resources == {}
        assert provider.call_count("delete") == 5

    @pytest.mark.parametrize("fail_at", range(1, 9))
    def test_nth_call_failure_leaves_nothing(self, fail_at, quiet_console):
        order = list(resolve_order(build_topology()))
        provider = InMemoryProvider(fail_at=fail_at)
        with pytest.raises(ProvisioningCallError) as info:
            RealizationEngine(provider, console=quiet_console).realize(order)
        report = info.value.report
        assert len(report.created) == fail_at - 1
        assert report.rolled_back == list(reversed(report.created))
        assert provider.resources == {}
        assert provider.secret_strings == {}

    def test_rollback_failure_is_reported(self, scenario_graph, quiet_console):
        provider = InMemoryProvider(fail_kinds={"Service"}, fail_delete_kinds={"LoadBalancer"})
        engine = RealizationEngine(provider, console=quiet_console)
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(resolve_order(scenario_graph))

        report = info.value.report
        assert report.rollback_failed == ["lb"]
        assert report.rolled_back == ["task", "cluster", "secret", "net"]
        assert report.needs_manual_cleanup == ["lb"]
        assert not report.fully_rolled_back
        assert report.statuses["lb"] == ResourceStatus.ROLLBACK_FAILED
        assert [r["kind"] for r in provider.resources.values()] == ["LoadBalancer"]
        assert "rollback of lb" in quiet_console.file.getvalue()
        assert report.rollback_errors[0].node_id == "lb"


class TestFailedReplace:
    """A cidr change replaces the network and everything configured from it."""

    def setup_method(self):
        config = TopologyConfig()
        self.order = list(resolve_order(build_topology(config)))
        moved = dataclasses.replace(config, network=dataclasses.replace(config.network, cidr="10.20.0.0/16"))
        self.moved_graph = build_topology(moved)
        self.moved = list(resolve_order(self.moved_graph))

    def _replace(self, provider, quiet_console):
        prior = RealizationEngine(provider, console=quiet_console).realize(self.order)
        operations = plan(self.moved_graph, prior)
        provider.fail_kinds = {"Service"}
        engine = RealizationEngine(provider, console=quiet_console)
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(self.moved, operations, prior)
        return engine, prior, info.value.report

    def test_prior_resources_are_superseded(self, quiet_console):
        provider = InMemoryProvider()
        _, prior, report = self._replace(provider, quiet_console)

        assert report.failed_node == "Service"
        assert report.superseded == [
            "pgadmin-listener", "Service", "DefaultAutoScalingGroupCapacity", "alb", "Cluster", "appvpc",
        ]
        for node_id in report.superseded:
            assert prior[node_id].identity not in provider.resources

    def test_replacements_are_rolled_back(self, quiet_console):
        provider = InMemoryProvider()
        _, prior, report = self._replace(provider, quiet_console)

        assert set(report.created) == {"appvpc", "Cluster", "alb", "DefaultAutoScalingGroupCapacity"}
        assert report.rolled_back == list(reversed(report.created))
        assert report.fully_rolled_back
        assert set(provider.resources) == {prior["pgadmin-secret"].identity, prior["TaskDef"].identity}

    def test_survivors_exclude_superseded(self, quiet_console):
        provider = InMemoryProvider()
        engine, prior, _ = self._replace(provider, quiet_console)

        survivors = engine.survivors(prior)
        assert set(survivors) == {"pgadmin-secret", "TaskDef", "alb-url"}
        for record in survivors.values():
            if record.identity is not None:
                assert record.identity in provider.resources

    def test_dependents_are_deleted_first(self, quiet_console):
        provider = InMemoryProvider()
        self._replace(provider, quiet_console)

        deletes = [kind for op, kind in provider.calls if op == "delete"]
        assert deletes[:6] == [
            "Listener", "Service", "CapacityPool", "LoadBalancer", "ComputeCluster", "Network",
        ]


class TestTimeout:
    def test_slow_call_is_in_doubt(self, scenario_graph, quiet_console):
        provider = InMemoryProvider(latency_by_kind={"Service": 0.5})
        engine = RealizationEngine(provider, timeout=0.1, console=quiet_console)
        started = time.monotonic()
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(resolve_order(scenario_graph))
        assert time.monotonic() - started < 0.45

        report = info.value.report
        assert report.failed_node == "service"
        assert isinstance(report.cause, TimeoutError)
        assert report.in_doubt == ["service"]
        assert report.needs_manual_cleanup == ["service"]
        assert report.rolled_back == ["lb", "task", "cluster", "secret", "net"]


class _CancellingProvider(InMemoryProvider):
    def __init__(self, event: threading.Event, **kwargs):
        super().__init__(**kwargs)
        self.event = event

    def create(self, kind, config):
        result = super().create(kind, config)
        if kind == "ComputeCluster":
            self.event.set()
        return result


class TestCancel:
    def test_cancel_rolls_back(self, scenario_graph, quiet_console):
        event = threading.Event()
        provider = _CancellingProvider(event)
        engine = RealizationEngine(provider, cancel_event=event, console=quiet_console)
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(resolve_order(scenario_graph))

        report = info.value.report
        assert isinstance(report.cause, RunCancelledError)
        assert report.failed_node is None
        assert str(info.value).startswith("Run stopped")
        assert report.rolled_back == ["cluster", "secret", "net"]
        assert set(report.not_attempted) == {"task", "service", "lb", "listener"}
        assert provider.call_count("create") == 3
        assert provider.resources == {}


class _TimedProvider(InMemoryProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.windows = {}

    def create(self, kind, config):
        start = time.monotonic()
        result = super().create(kind, config)
        self.windows[kind] = (start, time.monotonic())
        return result


class TestConcurrency:
    def test_independent_nodes_overlap(self, scenario_graph, quiet_console):
        graph = scenario_graph
        provider = _TimedProvider(latency=0.1)
        realized = RealizationEngine(provider, max_workers=4, console=quiet_console).realize(
            resolve_order(graph)
        )
        assert all(r.status == ResourceStatus.CREATED for r in realized.values())

        windows = provider.windows
        for node in graph:
            start, _ = windows[node.kind.value]
            for dep in node.depends_on:
                _, dep_end = windows[graph.get(dep).kind.value]
                assert dep_end <= start

        net_start, net_end = windows["Network"]
        secret_start, _ = windows["SecretStore"]
        assert secret_start < net_end

    def test_failure_under_concurrency_cleans_up(self, quiet_console):
        provider = InMemoryProvider(fail_kinds={"Listener"}, latency=0.02)
        engine = RealizationEngine(provider, max_workers=4, console=quiet_console)
        with pytest.raises(ProvisioningCallError) as info:
            engine.realize(resolve_order(build_topology()))
        report = info.value.report
        assert report.failed_node == "pgadmin-listener"
        assert report.rolled_back == list(reversed(report.created))
        assert provider.resources == {}


class TestDestroy:
    def test_destroy_deletes_dependents_first(self, scenario_graph, quiet_console):
        graph = scenario_graph
        order = list(resolve_order(graph))
        provider = InMemoryProvider()
        engine = RealizationEngine(provider, console=quiet_console)
        realized = engine.realize(order)

        report = engine.destroy(order, realized)
        assert report.deleted == [n.node_id for n in reversed(order)]
        assert provider.resources == {}
        assert all(s == ResourceStatus.DELETED for s in report.statuses.values())

    def test_destroy_is_best_effort(self, scenario_graph, quiet_console):
        graph = scenario_graph
        order = list(resolve_order(graph))
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(order)
        provider.fail_delete_kinds = {"ComputeCluster"}

        report = RealizationEngine(provider, console=quiet_console).destroy(order, realized)
        assert report.rollback_failed == ["cluster"]
        assert "net" in report.deleted
        assert len(provider.resources) == 1

    def test_destroy_leaves_records_untouched(self, scenario_graph, quiet_console):
        order = list(resolve_order(scenario_graph))
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(order)

        report = RealizationEngine(provider, console=quiet_console).destroy(order, realized)
        assert report.deleted
        assert all(r.status == ResourceStatus.CREATED for r in realized.values())

    def test_vanished_resource_counts_as_deleted(self, scenario_graph, quiet_console):
        order = list(resolve_order(scenario_graph))
        provider = InMemoryProvider()
        realized = RealizationEngine(provider, console=quiet_console).realize(order)
        provider.delete(realized["lb"].identity)

        report = RealizationEngine(provider, console=quiet_console).destroy(order, realized)
        assert report.rollback_failed == []
        assert "lb" in report.deleted
        assert report.statuses["lb"] == ResourceStatus.DELETED
        assert provider.resources == {}
        assert "was already gone" in quiet_console.file.getvalue()
