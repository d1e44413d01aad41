import io

import pytest
from rich.console import Console

from clusterstack.models.resource import Ref, ResourceGraph, ResourceKind, SecretField
from clusterstack.models.secret import SecretSpec


def build_scenario_graph() -> ResourceGraph:
    """Network, cluster, secret, task, service, load balancer and listener."""
    graph = ResourceGraph(name="scenario")
    graph.define_resource(ResourceKind.NETWORK, "net", {"name": "net", "cidr": "10.0.0.0/16", "subnets": []})
    graph.define_resource(ResourceKind.COMPUTE_CLUSTER, "cluster", {"name": "cluster", "vpc": Ref("net", "vpc_id")})
    graph.define_resource(ResourceKind.SECRET_STORE, "secret", {
        "secret": SecretSpec(name="app-secret", template={"email": "hello@myorg.lab"}),
    })
    graph.define_resource(ResourceKind.CONTAINER_TASK, "task", {
        "image": "dpage/pgadmin4",
        "memory_mib": 256,
        "cpu": 256,
        "port_mappings": [{"container_port": 80, "host_port": 80}],
        "secrets": {
            "PGADMIN_DEFAULT_EMAIL": SecretField("secret", "email"),
            "PGADMIN_DEFAULT_PASSWORD": SecretField("secret", "password"),
        },
    })
    graph.define_resource(ResourceKind.SERVICE, "service", {
        "name": "service",
        "cluster": Ref("cluster"),
        "task_definition": Ref("task"),
        "desired_count": 1,
    })
    graph.define_resource(ResourceKind.LOAD_BALANCER, "lb", {"name": "lb", "vpc": Ref("net", "vpc_id")})
    graph.define_resource(ResourceKind.LISTENER, "listener", {
        "load_balancer": Ref("lb"),
        "port": 80,
        "protocol": "HTTP",
        "target": Ref("service"),
    })
    return graph


@pytest.fixture
def scenario_graph():
    return build_scenario_graph()


@pytest.fixture
def quiet_console():
    return Console(file=io.StringIO(), width=200)
