"""Shared fixtures for deployer tests."""

from __future__ import annotations

import base64
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from launchdeck.deploy.builder import ContainerBuilder
from launchdeck.deploy.deployers.aws_cluster import SERVICE_TAG_KEY
from launchdeck.deploy.logs import CancellationToken

ACCOUNT_ID = "123456789012"


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


class FakeAwsSession:
    """boto3 session stand-in whose clients are children of one recorder.

    ``recorder.method_calls`` lists calls across every client in order,
    named ``<service>.<operation>``.
    """

    def __init__(self) -> None:
        self.recorder = MagicMock()
        self.recorder.sts.get_caller_identity.return_value = {"Account": ACCOUNT_ID}
        token = base64.b64encode(b"AWS:ecr-password").decode()
        self.recorder.ecr.get_authorization_token.return_value = {
            "authorizationData": [{"authorizationToken": token}]
        }

    def client(self, service: str, region_name: str | None = None) -> Any:
        return getattr(self.recorder, service)

    def calls(self, *prefixes: str) -> list[str]:
        """Ordered ``service.operation`` names whose operation has a prefix."""
        return [
            name
            for name, _, _ in self.recorder.method_calls
            if "." in name and name.split(".", 1)[1].startswith(prefixes)
        ]


@pytest.fixture
def aws_session() -> FakeAwsSession:
    return FakeAwsSession()


@pytest.fixture
def builder() -> MagicMock:
    return MagicMock(spec=ContainerBuilder)


@pytest.fixture
def one_line_emit() -> tuple[CancellationToken, Callable[[str], None], list[str]]:
    """Emit function that cancels its token after the first line."""
    token = CancellationToken()
    lines: list[str] = []

    def emit(line: str) -> None:
        lines.append(line)
        token.cancel()

    return token, emit, lines


class _InMemoryService:
    """Base for one in-memory AWS service client."""

    def __init__(self, account: InMemoryAwsAccount) -> None:
        self.account = account

    def get_waiter(self, name: str) -> Any:
        waiter = MagicMock()
        waiter.wait.return_value = None
        return waiter


class _Sts(_InMemoryService):
    def get_caller_identity(self) -> dict[str, str]:
        return {"Account": ACCOUNT_ID}


class _Ecr(_InMemoryService):
    def _uri(self, name: str) -> str:
        return f"{ACCOUNT_ID}.dkr.ecr.us-east-1.amazonaws.com/{name}"

    def describe_repositories(self, repositoryNames: list[str]) -> dict[str, Any]:
        name = repositoryNames[0]
        self.account.get(f"ecr:repository:{name}", "RepositoryNotFoundException")
        return {"repositories": [{"repositoryUri": self._uri(name)}]}

    def create_repository(self, repositoryName: str, **_: Any) -> dict[str, Any]:
        self.account.create(f"ecr:repository:{repositoryName}", {})
        return {"repository": {"repositoryUri": self._uri(repositoryName)}}

    def delete_repository(self, repositoryName: str, force: bool) -> None:
        self.account.delete(
            f"ecr:repository:{repositoryName}", "RepositoryNotFoundException"
        )

    def get_authorization_token(self) -> dict[str, Any]:
        token = base64.b64encode(b"AWS:ecr-password").decode()
        return {"authorizationData": [{"authorizationToken": token}]}


class _Iam(_InMemoryService):
    def _role(self, name: str) -> dict[str, Any]:
        return self.account.get(f"iam:role:{name}", "NoSuchEntity")

    def get_role(self, RoleName: str) -> dict[str, Any]:
        return {"Role": {"Arn": self._role(RoleName)["Arn"]}}

    def create_role(self, RoleName: str, **_: Any) -> dict[str, Any]:
        arn = f"arn:aws:iam::{ACCOUNT_ID}:role/{RoleName}"
        self.account.create(f"iam:role:{RoleName}", {"Arn": arn, "policies": []})
        return {"Role": {"Arn": arn}}

    def create_service_linked_role(self, AWSServiceName: str) -> None:
        raise _client_error("InvalidInput")

    def list_attached_role_policies(self, RoleName: str) -> dict[str, Any]:
        policies = self._role(RoleName)["policies"]
        return {"AttachedPolicies": [{"PolicyArn": arn} for arn in policies]}

    def attach_role_policy(self, RoleName: str, PolicyArn: str) -> None:
        self._role(RoleName)["policies"].append(PolicyArn)

    def detach_role_policy(self, RoleName: str, PolicyArn: str) -> None:
        self._role(RoleName)["policies"].remove(PolicyArn)

    def list_role_policies(self, RoleName: str) -> dict[str, Any]:
        self._role(RoleName)
        return {"PolicyNames": []}

    def delete_role(self, RoleName: str) -> None:
        if self._role(RoleName)["policies"]:
            raise _client_error("DeleteConflict")
        self.account.delete(f"iam:role:{RoleName}", "NoSuchEntity")


class _Ec2(_InMemoryService):
    def describe_vpcs(self, Filters: list[dict[str, Any]]) -> dict[str, Any]:
        return {"Vpcs": [{"VpcId": "vpc-default"}]}

    def describe_subnets(self, Filters: list[dict[str, Any]]) -> dict[str, Any]:
        return {"Subnets": [{"SubnetId": "subnet-a"}, {"SubnetId": "subnet-b"}]}

    def describe_security_groups(
        self, Filters: list[dict[str, Any]]
    ) -> dict[str, Any]:
        wanted = {f["Name"]: f["Values"][0] for f in Filters}
        name = wanted.get("group-name")
        service = wanted.get(f"tag:{SERVICE_TAG_KEY}")
        groups = [
            {"GroupId": g["GroupId"], "GroupName": g["GroupName"]}
            for g in self.account.find("ec2:security-group:")
            if name in (None, g["GroupName"])
            and service in (None, g["Tags"].get(SERVICE_TAG_KEY))
        ]
        return {"SecurityGroups": groups}

    def create_security_group(
        self, GroupName: str, TagSpecifications: list[dict[str, Any]], **_: Any
    ) -> dict[str, Any]:
        group_id = f"sg-{GroupName}"
        tags = {t["Key"]: t["Value"] for t in TagSpecifications[0]["Tags"]}
        self.account.create(
            f"ec2:security-group:{GroupName}",
            {"GroupId": group_id, "GroupName": GroupName, "Tags": tags},
        )
        return {"GroupId": group_id}

    def authorize_security_group_ingress(self, **_: Any) -> None:
        return None

    def delete_security_group(self, GroupId: str) -> None:
        name = GroupId.removeprefix("sg-")
        self.account.delete(f"ec2:security-group:{name}", "InvalidGroup.NotFound")

    def describe_network_interfaces(
        self, Filters: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return {"NetworkInterfaces": []}


class _Ecs(_InMemoryService):
    def describe_clusters(self, clusters: list[str]) -> dict[str, Any]:
        found = self.account.find(f"ecs:cluster:{clusters[0]}")
        return {"clusters": [{"status": "ACTIVE"} for _ in found]}

    def create_cluster(self, clusterName: str, **_: Any) -> None:
        self.account.create(f"ecs:cluster:{clusterName}", {})

    def delete_cluster(self, cluster: str) -> None:
        self.account.delete(f"ecs:cluster:{cluster}", "ClusterNotFoundException")

    def register_task_definition(
        self, family: str, containerDefinitions: list[dict[str, Any]], **_: Any
    ) -> dict[str, Any]:
        revision = len(self.account.find(f"ecs:task-definition:{family}:")) + 1
        arn = f"arn:aws:ecs:us-east-1:{ACCOUNT_ID}:task-definition/{family}:{revision}"
        self.account.create(
            f"ecs:task-definition:{family}:{revision}",
            {"arn": arn, "image": containerDefinitions[0]["image"]},
        )
        return {"taskDefinition": {"taskDefinitionArn": arn}}

    def get_paginator(self, name: str) -> Any:
        definitions = self.account.find("ecs:task-definition:")
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"taskDefinitionArns": [d["arn"] for d in definitions]}
        ]
        return paginator

    def deregister_task_definition(self, taskDefinition: str) -> None:
        family_revision = taskDefinition.rsplit("/", 1)[1]
        self.account.delete(
            f"ecs:task-definition:{family_revision}", "ClientException"
        )

    def describe_services(self, cluster: str, services: list[str]) -> dict[str, Any]:
        self.account.get(f"ecs:cluster:{cluster}", "ClusterNotFoundException")
        return {"services": self.account.find(f"ecs:service:{services[0]}")}

    def create_service(self, serviceName: str, taskDefinition: str, **_: Any) -> None:
        self.account.create(
            f"ecs:service:{serviceName}",
            {"status": "ACTIVE", "taskDefinition": taskDefinition},
        )

    def update_service(self, service: str, **changes: Any) -> None:
        found = self.account.get(f"ecs:service:{service}", "ServiceNotFoundException")
        found.update(changes)

    def delete_service(self, service: str, **_: Any) -> None:
        self.account.delete(f"ecs:service:{service}", "ServiceNotFoundException")


class _Elbv2(_InMemoryService):
    def describe_load_balancers(self, Names: list[str]) -> dict[str, Any]:
        key = f"elbv2:load-balancer:{Names[0]}"
        balancer = self.account.get(key, "LoadBalancerNotFound")
        return {"LoadBalancers": [balancer]}

    def create_load_balancer(self, Name: str, **_: Any) -> dict[str, Any]:
        balancer = {
            "LoadBalancerArn": f"arn:elb:loadbalancer/{Name}",
            "DNSName": f"{Name}-123.us-east-1.elb.amazonaws.com",
        }
        self.account.create(f"elbv2:load-balancer:{Name}", balancer)
        return {"LoadBalancers": [balancer]}

    def delete_load_balancer(self, LoadBalancerArn: str) -> None:
        name = LoadBalancerArn.rsplit("/", 1)[1]
        self.account.delete(f"elbv2:load-balancer:{name}", "LoadBalancerNotFound")

    def describe_target_groups(self, Names: list[str]) -> dict[str, Any]:
        key = f"elbv2:target-group:{Names[0]}"
        group = self.account.get(key, "TargetGroupNotFound")
        return {"TargetGroups": [group]}

    def create_target_group(self, Name: str, **_: Any) -> dict[str, Any]:
        group = {"TargetGroupArn": f"arn:elb:targetgroup/{Name}"}
        self.account.create(f"elbv2:target-group:{Name}", group)
        return {"TargetGroups": [group]}

    def delete_target_group(self, TargetGroupArn: str) -> None:
        name = TargetGroupArn.rsplit("/", 1)[1]
        self.account.delete(f"elbv2:target-group:{name}", "TargetGroupNotFound")

    def describe_listeners(self, LoadBalancerArn: str) -> dict[str, Any]:
        return {"Listeners": self.account.find(f"elbv2:listener:{LoadBalancerArn}:")}

    def create_listener(self, LoadBalancerArn: str, Port: int, **_: Any) -> None:
        arn = f"{LoadBalancerArn}:{Port}"
        self.account.create(
            f"elbv2:listener:{arn}", {"ListenerArn": arn, "Port": Port}
        )

    def delete_listener(self, ListenerArn: str) -> None:
        self.account.delete(f"elbv2:listener:{ListenerArn}", "ListenerNotFound")


class _Logs(_InMemoryService):
    def describe_log_groups(self, logGroupNamePrefix: str) -> dict[str, Any]:
        return {"logGroups": self.account.find(f"logs:group:{logGroupNamePrefix}")}

    def create_log_group(self, logGroupName: str) -> None:
        self.account.create(
            f"logs:group:{logGroupName}", {"logGroupName": logGroupName}
        )

    def delete_log_group(self, logGroupName: str) -> None:
        self.account.delete(
            f"logs:group:{logGroupName}", "ResourceNotFoundException"
        )


class _Lambda(_InMemoryService):
    def _function(self, name: str) -> dict[str, Any]:
        return self.account.get(f"lambda:function:{name}", "ResourceNotFoundException")

    def get_function(self, FunctionName: str) -> dict[str, Any]:
        return {"Configuration": self._function(FunctionName)}

    def create_function(
        self, FunctionName: str, Code: dict[str, str], **_: Any
    ) -> None:
        self.account.create(
            f"lambda:function:{FunctionName}", {"ImageUri": Code["ImageUri"]}
        )

    def update_function_code(self, FunctionName: str, ImageUri: str) -> None:
        self._function(FunctionName)["ImageUri"] = ImageUri

    def update_function_configuration(self, FunctionName: str, **_: Any) -> None:
        self._function(FunctionName)

    def delete_function(self, FunctionName: str) -> None:
        self.account.delete(
            f"lambda:function:{FunctionName}", "ResourceNotFoundException"
        )

    def get_function_url_config(self, FunctionName: str) -> dict[str, Any]:
        key = f"lambda:url:{FunctionName}"
        return self.account.get(key, "ResourceNotFoundException")

    def create_function_url_config(
        self, FunctionName: str, **_: Any
    ) -> dict[str, Any]:
        config = {
            "FunctionUrl": f"https://{FunctionName}.lambda-url.us-east-1.on.aws/"
        }
        self.account.create(f"lambda:url:{FunctionName}", config)
        return config

    def delete_function_url_config(self, FunctionName: str) -> None:
        self.account.delete(f"lambda:url:{FunctionName}", "ResourceNotFoundException")

    def get_policy(self, FunctionName: str) -> dict[str, str]:
        statements = self.account.find(f"lambda:permission:{FunctionName}:")
        if not statements:
            raise _client_error("ResourceNotFoundException")
        return {"Policy": json.dumps({"Statement": statements})}

    def add_permission(self, FunctionName: str, StatementId: str, **_: Any) -> None:
        self.account.create(
            f"lambda:permission:{FunctionName}:{StatementId}", {"Sid": StatementId}
        )

    def remove_permission(self, FunctionName: str, StatementId: str) -> None:
        self.account.delete(
            f"lambda:permission:{FunctionName}:{StatementId}",
            "ResourceNotFoundException",
        )

    def get_paginator(self, name: str) -> Any:
        paginator = MagicMock()
        paginator.paginate.return_value = [{"Layers": []}]
        return paginator

    def list_event_source_mappings(self, FunctionName: str) -> dict[str, Any]:
        return {"EventSourceMappings": []}


class InMemoryAwsAccount:
    """boto3 session stand-in whose clients keep resources in memory.

    ``created`` and ``deleted`` record resource keys in the order the
    deployer created and deleted them; ``resources`` holds what is left.
    """

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self._clients: dict[str, _InMemoryService] = {
            "sts": _Sts(self),
            "ecr": _Ecr(self),
            "iam": _Iam(self),
            "ec2": _Ec2(self),
            "ecs": _Ecs(self),
            "elbv2": _Elbv2(self),
            "logs": _Logs(self),
            "lambda": _Lambda(self),
        }

    def client(self, service: str, region_name: str | None = None) -> Any:
        return self._clients[service]

    def get(self, key: str, missing_code: str) -> dict[str, Any]:
        if key not in self.resources:
            raise _client_error(missing_code)
        return self.resources[key]

    def find(self, prefix: str) -> list[dict[str, Any]]:
        return [v for k, v in self.resources.items() if k.startswith(prefix)]

    def create(self, key: str, data: dict[str, Any]) -> None:
        if key in self.resources:
            raise _client_error("ResourceAlreadyExistsException")
        self.resources[key] = data
        self.created.append(key)

    def delete(self, key: str, missing_code: str) -> None:
        self.get(key, missing_code)
        del self.resources[key]
        self.deleted.append(key)


@pytest.fixture
def aws_account() -> InMemoryAwsAccount:
    return InMemoryAwsAccount()
