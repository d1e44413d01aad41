"""
Topology parameters.

Every value has a default matching the reference deployment; a YAML file can
override any subset of them:

    network:
      cidr: 10.20.0.0/16
    health_check:
      interval: 60        # durations are given in seconds
"""
import dataclasses
import ipaddress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import yaml

from clusterstack.errors import InvalidConfigError

SUBNET_TYPES = ("public", "private_with_egress", "private_isolated")


@dataclass
class SubnetConfig:
    name: str
    subnet_type: str
    cidr_mask: int = 24


def _default_subnets() -> List[SubnetConfig]:
    return [
        SubnetConfig("public-subnet-1", "public"),
        SubnetConfig("private-app-subnet-1", "private_with_egress"),
        SubnetConfig("private-db-subnet-1", "private_isolated"),
    ]


@dataclass
class NetworkConfig:
    name: str = "appvpc"
    cidr: str = "10.10.0.0/16"
    max_azs: int = 2
    subnets: List[SubnetConfig] = field(default_factory=_default_subnets)


@dataclass
class ClusterConfig:
    name: str = "Cluster"
    capacity_name: str = "DefaultAutoScalingGroupCapacity"
    instance_type: str = "t2.small"


@dataclass
class SecretConfig:
    name: str = "pgadmin-secret"
    description: str = "Pgadmin Credentials"
    template: Dict[str, str] = field(default_factory=lambda: {"email": "hello@myorg.lab"})
    generate_key: str = "password"
    exclude_punctuation: bool = True
    include_space: bool = False
    exclude_characters: str = ""
    password_length: int = 32


@dataclass
class ContainerConfig:
    task_name: str = "TaskDef"
    container_name: str = "pgadminContainer"
    image: str = "dpage/pgadmin4"
    memory_mib: int = 256
    cpu: int = 256
    container_port: int = 80
    host_port: int = 80
    stream_prefix: str = "pgadmin-service"
    # container environment variable -> secret field
    secrets: Dict[str, str] = field(default_factory=lambda: {
        "PGADMIN_DEFAULT_EMAIL": "email",
        "PGADMIN_DEFAULT_PASSWORD": "password",
    })


@dataclass
class ServiceConfig:
    name: str = "Service"
    desired_count: int = 1


@dataclass
class LoadBalancerConfig:
    name: str = "alb"
    internet_facing: bool = True
    listener_name: str = "pgadmin-listener"
    listener_port: int = 80
    target_name: str = "pgadmin-target"
    target_port: int = 80
    protocol: str = "HTTP"


@dataclass
class HealthCheckConfig:
    healthy_threshold_count: int = 2
    unhealthy_threshold_count: int = 10
    timeout: timedelta = timedelta(seconds=20)
    interval: timedelta = timedelta(seconds=30)


@dataclass
class OutputConfig:
    name: str = "alb-url"
    export_name: str = "pgadmin-stack-loadBalancerDnsName"


@dataclass
class TopologyConfig:
    stack_name: str = "PgadminClusterStack"
    network: NetworkConfig = field(default_factory=NetworkConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    secret: SecretConfig = field(default_factory=SecretConfig)
    container: ContainerConfig = field(default_factory=ContainerConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    load_balancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def validate(self) -> "TopologyConfig":
        try:
            block = ipaddress.ip_network(self.network.cidr)
        except ValueError as exc:
            raise InvalidConfigError(f"network.cidr: {exc}")
        for subnet in self.network.subnets:
            if subnet.subnet_type not in SUBNET_TYPES:
                raise InvalidConfigError(
                    f"network.subnets: '{subnet.name}' has unknown type '{subnet.subnet_type}' "
                    f"(expected one of {', '.join(SUBNET_TYPES)})"
                )
            if not block.prefixlen <= subnet.cidr_mask <= 28:
                raise InvalidConfigError(
                    f"network.subnets: '{subnet.name}' mask /{subnet.cidr_mask} does not fit in {block}"
                )

        positive = {
            "network.max_azs": self.network.max_azs,
            "container.memory_mib": self.container.memory_mib,
            "container.cpu": self.container.cpu,
            "secret.password_length": self.secret.password_length,
            "health_check.healthy_threshold_count": self.health_check.healthy_threshold_count,
            "health_check.unhealthy_threshold_count": self.health_check.unhealthy_threshold_count,
        }
        for name, value in positive.items():
            if value < 1:
                raise InvalidConfigError(f"{name} must be positive, got {value}")
        if self.service.desired_count < 0:
            raise InvalidConfigError("service.desired_count must not be negative")
        for name, port in (
            ("container.container_port", self.container.container_port),
            ("container.host_port", self.container.host_port),
            ("load_balancer.listener_port", self.load_balancer.listener_port),
            ("load_balancer.target_port", self.load_balancer.target_port),
        ):
            if not 1 <= port <= 65535:
                raise InvalidConfigError(f"{name} must be a TCP port, got {port}")
        if self.health_check.timeout >= self.health_check.interval:
            raise InvalidConfigError("health_check.timeout must be shorter than health_check.interval")
        missing = set(self.container.secrets.values()) - set(self.secret.template) - {self.secret.generate_key}
        if missing:
            raise InvalidConfigError(
                f"container.secrets references unknown secret field(s): {', '.join(sorted(missing))}"
            )
        return self


def _coerce(path: str, current: Any, value: Any) -> Any:
    if isinstance(current, timedelta):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidConfigError(f"{path}: expected a number of seconds, got {value!r}")
        return timedelta(seconds=value)
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise InvalidConfigError(f"{path}: expected true/false, got {value!r}")
        return value
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfigError(f"{path}: expected an integer, got {value!r}")
        return value
    if isinstance(current, str):
        if not isinstance(value, (str, int, float)):
            raise InvalidConfigError(f"{path}: expected a string, got {value!r}")
        return str(value)
    if isinstance(current, dict):
        if not isinstance(value, dict):
            raise InvalidConfigError(f"{path}: expected a mapping")
        return {str(k): str(v) for k, v in value.items()}
    return value


def _overlay(obj: Any, data: Dict[str, Any], path: str = "") -> Any:
    if not isinstance(data, dict):
        raise InvalidConfigError(f"{path or 'config'}: expected a mapping")
    known = {f.name for f in dataclasses.fields(obj)}
    changes = {}
    for key, value in data.items():
        where = f"{path}.{key}" if path else key
        if key not in known:
            raise InvalidConfigError(f"Unknown configuration key '{where}'")
        current = getattr(obj, key)
        if dataclasses.is_dataclass(current):
            changes[key] = _overlay(current, value or {}, where)
        elif key == "subnets":
            if not isinstance(value, list) or not value:
                raise InvalidConfigError(f"{where}: expected a non-empty list")
            subnets = []
            for i, item in enumerate(value):
                template = SubnetConfig(name=f"subnet-{i + 1}", subnet_type="public")
                subnets.append(_overlay(template, item, f"{where}[{i}]"))
            changes[key] = subnets
        else:
            changes[key] = _coerce(where, current, value)
    return dataclasses.replace(obj, **changes)


def load_config(path: Optional[str] = None) -> TopologyConfig:
    """Defaults, overlaid with the YAML file at ``path`` when given."""
    config = TopologyConfig()
    if path is None:
        return config.validate()
    try:
        with open(path) as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidConfigError(f"Could not read configuration {path}: {exc}")
    return _overlay(config, data).validate()
