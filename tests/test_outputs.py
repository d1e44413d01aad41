import pytest

from clusterstack.engine.outputs import bindings_from_graph, export_outputs
from clusterstack.engine.realize import RealizationEngine
from clusterstack.errors import MissingAttributeError, ProvisioningCallError
from clusterstack.graph.resolver import resolve_order
from clusterstack.models.realized import OutputBinding, RealizedResource, ResourceStatus
from clusterstack.providers.memory import InMemoryProvider
from clusterstack.topology import build_topology


class TestExportOutputs:
    def setup_method(self):
        self.graph = build_topology()
        self.bindings = bindings_from_graph(self.graph)

    def test_binding_from_topology(self):
        assert self.bindings == [
            OutputBinding(
                name="alb-url",
                node_id="alb",
                attribute="dns_name",
                export_name="pgadmin-stack-loadBalancerDnsName",
            )
        ]

    def test_export_before_creation(self):
        with pytest.raises(MissingAttributeError, match="alb.dns_name"):
            export_outputs({}, self.bindings)

    def test_export_while_pending(self):
        pending = {"alb": RealizedResource(node_id="alb", kind="LoadBalancer", status=ResourceStatus.PENDING)}
        with pytest.raises(MissingAttributeError, match="Pending"):
            export_outputs(pending, self.bindings)

    def test_export_after_failed_run(self, quiet_console):
        provider = InMemoryProvider(fail_kinds={"LoadBalancer"})
        engine = RealizationEngine(provider, console=quiet_console)
        with pytest.raises(ProvisioningCallError):
            engine.realize(resolve_order(self.graph))
        with pytest.raises(MissingAttributeError):
            export_outputs(engine.realized, self.bindings)

    def test_export_after_success(self, quiet_console):
        realized = RealizationEngine(InMemoryProvider(), console=quiet_console).realize(
            resolve_order(self.graph)
        )
        outputs = export_outputs(realized, self.bindings)
        dns = outputs["alb-url"]
        assert dns == realized["alb"].attributes["dns_name"]
        assert dns.startswith("alb-")
        assert dns.endswith(".us-east-1.elb.amazonaws.com")

    def test_missing_attribute_on_created_resource(self):
        created = {"alb": RealizedResource(node_id="alb", kind="LoadBalancer", identity="arn:lb",
                                           attributes={}, status=ResourceStatus.CREATED)}
        with pytest.raises(MissingAttributeError):
            export_outputs(created, self.bindings)

    def test_identity_binding(self):
        created = {"alb": RealizedResource(node_id="alb", kind="LoadBalancer", identity="arn:lb",
                                           status=ResourceStatus.CREATED)}
        binding = OutputBinding(name="alb-arn", node_id="alb", attribute="identity")
        assert export_outputs(created, [binding]) == {"alb-arn": "arn:lb"}
