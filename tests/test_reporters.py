import json
import threading

import pytest

from clusterstack.engine.diff import plan
from clusterstack.engine.outputs import export_outputs
from clusterstack.engine.realize import RealizationEngine
from clusterstack.errors import ProvisioningCallError
from clusterstack.graph.resolver import resolve_order
from clusterstack.providers.memory import InMemoryProvider
from clusterstack.reporters import json_reporter, markdown
from clusterstack.topology import build_topology


class TestReports:
    def setup_method(self):
        self.graph = build_topology()
        self.operations = plan(self.graph, {})

    def _run(self, console, **provider_kwargs):
        engine = RealizationEngine(InMemoryProvider(**provider_kwargs), console=console)
        try:
            realized = engine.realize(resolve_order(self.graph), self.operations)
        except ProvisioningCallError:
            return engine.realized, {}, engine.report
        return realized, export_outputs(realized, self.graph.bindings()), engine.report

    def test_json_report_after_success(self, quiet_console):
        realized, outputs, report = self._run(quiet_console)
        document = json.loads(json_reporter.build_report(self.graph, realized, outputs, report, self.operations))
        assert document["meta"]["stack"] == "PgadminClusterStack"
        assert document["run"]["succeeded"] is True
        assert [r["node_id"] for r in document["resources"]][0] == "appvpc"
        assert all(r["status"] == "Created" for r in document["resources"])
        assert document["outputs"]["alb-url"].endswith(".elb.amazonaws.com")
        assert {op["op"] for op in document["plan"]} == {"Create"}

    def test_json_report_after_failure(self, quiet_console):
        realized, outputs, report = self._run(quiet_console, fail_kinds={"Service"})
        document = json.loads(json_reporter.build_report(self.graph, realized, outputs, report))
        assert document["run"]["succeeded"] is False
        assert document["run"]["failed_node"] == "Service"
        assert "pgadmin-listener" in document["run"]["not_attempted"]
        statuses = {r["node_id"]: r["status"] for r in document["resources"]}
        assert statuses["appvpc"] == "RolledBack"
        assert statuses["Service"] == "Failed"

    def test_markdown_report(self, quiet_console):
        realized, outputs, report = self._run(quiet_console)
        content = markdown.build_report(self.graph, realized, outputs, report, self.operations)
        assert "# Deployment Report: PgadminClusterStack" in content
        assert "All **9 resources** are realized." in content
        assert "🟢 Created" in content
        assert "```mermaid" in content
        assert "Service --> DefaultAutoScalingGroupCapacity" in content

    def test_markdown_ascii_mode(self, quiet_console):
        realized, outputs, report = self._run(quiet_console, fail_kinds={"Service"})
        content = markdown.build_report(self.graph, realized, outputs, report, ascii_mode=True)
        assert "[ROLLED BACK] RolledBack" in content
        assert "[FAIL] Failed" in content
        assert "🟡" not in content
        assert "Every resource created during the run was rolled back." in content

    def test_markdown_stopped_run(self, quiet_console):
        event = threading.Event()
        event.set()
        engine = RealizationEngine(InMemoryProvider(), cancel_event=event, console=quiet_console)
        with pytest.raises(ProvisioningCallError):
            engine.realize(resolve_order(self.graph), self.operations)
        content = markdown.build_report(self.graph, engine.realized, {}, engine.report, ascii_mode=True)
        assert "Realization was **stopped**" in content
        assert "failed** at" not in content

    @pytest.mark.parametrize("node_id, expected", [
        ("appvpc", "appvpc{{appvpc<br/>Network}}"),
        ("alb", "alb((alb<br/>LoadBalancer))"),
        ("alb-url", "alb_url[/alb-url<br/>Output/]"),
    ])
    def test_mermaid_shapes(self, node_id, expected):
        assert expected in markdown.build_mermaid(self.graph)
