"""
The pgAdmin cluster topology: VPC, ECS cluster with EC2 capacity, generated
credentials, task definition, service and an internet-facing load balancer.
"""
from typing import Optional

from clusterstack.config import TopologyConfig
from clusterstack.models.resource import Ref, ResourceGraph, ResourceKind, SecretField
from clusterstack.models.secret import SecretSpec


def build_topology(config: Optional[TopologyConfig] = None) -> ResourceGraph:
    config = config or TopologyConfig()
    graph = ResourceGraph(name=config.stack_name)

    net = config.network
    vpc = graph.define_resource(ResourceKind.NETWORK, net.name, {
        "name": net.name,
        "cidr": net.cidr,
        "max_azs": net.max_azs,
        "subnets": [
            {"name": s.name, "subnet_type": s.subnet_type, "cidr_mask": s.cidr_mask}
            for s in net.subnets
        ],
    })

    cluster = graph.define_resource(ResourceKind.COMPUTE_CLUSTER, config.cluster.name, {
        "name": config.cluster.name,
        "vpc": Ref(vpc.node_id, "vpc_id"),
    })

    capacity = graph.define_resource(ResourceKind.CAPACITY_POOL, config.cluster.capacity_name, {
        "name": config.cluster.capacity_name,
        "cluster": Ref(cluster.node_id),
        "instance_type": config.cluster.instance_type,
        # instances are launched in the private tier
        "subnets": Ref(vpc.node_id, "private_with_egress_subnet_ids"),
    })

    sec = config.secret
    secret = graph.define_resource(ResourceKind.SECRET_STORE, sec.name, {
        "secret": SecretSpec(
            name=sec.name,
            description=sec.description,
            template=dict(sec.template),
            generate_key=sec.generate_key,
            exclude_punctuation=sec.exclude_punctuation,
            include_space=sec.include_space,
            exclude_characters=sec.exclude_characters,
            password_length=sec.password_length,
        ),
    })

    ctr = config.container
    task = graph.define_resource(ResourceKind.CONTAINER_TASK, ctr.task_name, {
        "family": ctr.task_name,
        "container_name": ctr.container_name,
        "image": ctr.image,
        "memory_mib": ctr.memory_mib,
        "cpu": ctr.cpu,
        "port_mappings": [{"container_port": ctr.container_port, "host_port": ctr.host_port}],
        "secrets": {env: SecretField(secret.node_id, key) for env, key in ctr.secrets.items()},
        "logging": {"driver": "awslogs", "stream_prefix": ctr.stream_prefix},
    })

    # the service needs registered container instances before tasks can be placed
    service = graph.define_resource(ResourceKind.SERVICE, config.service.name, {
        "name": config.service.name,
        "cluster": Ref(cluster.node_id),
        "task_definition": Ref(task.node_id),
        "desired_count": config.service.desired_count,
    }, depends_on=[capacity.node_id])

    lb_cfg = config.load_balancer
    alb = graph.define_resource(ResourceKind.LOAD_BALANCER, lb_cfg.name, {
        "name": lb_cfg.name,
        "vpc": Ref(vpc.node_id, "vpc_id"),
        "internet_facing": lb_cfg.internet_facing,
        "subnets": Ref(vpc.node_id, "public_subnet_ids" if lb_cfg.internet_facing
                       else "private_with_egress_subnet_ids"),
    })

    hc = config.health_check
    graph.define_resource(ResourceKind.LISTENER, lb_cfg.listener_name, {
        "name": lb_cfg.target_name,
        "load_balancer": Ref(alb.node_id),
        "port": lb_cfg.listener_port,
        "protocol": lb_cfg.protocol,
        "target": Ref(service.node_id),
        "target_port": lb_cfg.target_port,
        "health_check": {
            "healthy_threshold_count": hc.healthy_threshold_count,
            "unhealthy_threshold_count": hc.unhealthy_threshold_count,
            "timeout": hc.timeout,
            "interval": hc.interval,
        },
    })

    graph.define_resource(ResourceKind.OUTPUT, config.output.name, {
        "value": Ref(alb.node_id, "dns_name"),
        "export_name": config.output.export_name,
    })

    return graph
