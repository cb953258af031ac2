"""Unit tests for the AWS ECS Fargate deployer."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, WaiterError

from launchdeck.deploy.deployers.aws_cluster import AwsClusterDeployer
from launchdeck.lib.errors import BuildError, DeploymentError, ProvisionError
from launchdeck.models.deployment import AwsClusterConfig, StepOutcome

DNS_NAME = "todo-alb-123.us-east-1.elb.amazonaws.com"


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


@pytest.fixture
def config(project_dir: Path) -> AwsClusterConfig:
    return AwsClusterConfig(
        service_name="todo", desired_count=2, deployment_timeout_minutes=5
    ).with_resolved_paths(project_dir)


@pytest.fixture
def deployer(
    config: AwsClusterConfig, aws_session: Any, builder: MagicMock
) -> AwsClusterDeployer:
    return AwsClusterDeployer(config, session=aws_session, builder=builder)


def _network(aws_session: Any) -> None:
    ec2 = aws_session.recorder.ec2
    ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
    ec2.describe_subnets.return_value = {
        "Subnets": [{"SubnetId": "subnet-a"}, {"SubnetId": "subnet-b"}]
    }


def _fresh_account(aws_session: Any) -> None:
    r = aws_session.recorder
    _network(aws_session)
    r.ecr.describe_repositories.side_effect = _client_error(
        "RepositoryNotFoundException"
    )
    r.ecr.create_repository.return_value = {"repository": {"repositoryUri": "uri"}}
    r.ec2.describe_security_groups.return_value = {"SecurityGroups": []}
    r.ec2.create_security_group.return_value = {"GroupId": "sg-alb"}
    r.iam.get_role.side_effect = _client_error("NoSuchEntity")
    r.iam.create_role.return_value = {"Role": {"Arn": "arn:role"}}
    r.iam.list_attached_role_policies.return_value = {"AttachedPolicies": []}
    r.iam.create_service_linked_role.side_effect = _client_error("InvalidInput")
    r.ecs.describe_clusters.return_value = {"clusters": []}
    r.elbv2.describe_load_balancers.side_effect = _client_error("LoadBalancerNotFound")
    r.elbv2.create_load_balancer.return_value = {
        "LoadBalancers": [{"LoadBalancerArn": "arn:lb", "DNSName": DNS_NAME}]
    }
    r.elbv2.describe_target_groups.side_effect = _client_error("TargetGroupNotFound")
    r.elbv2.create_target_group.return_value = {
        "TargetGroups": [{"TargetGroupArn": "arn:tg"}]
    }
    r.elbv2.describe_listeners.return_value = {"Listeners": []}


def _provisioned_account(aws_session: Any) -> None:
    r = aws_session.recorder
    _network(aws_session)
    r.ecr.describe_repositories.return_value = {
        "repositories": [{"repositoryUri": "uri"}]
    }
    r.ec2.describe_security_groups.return_value = {
        "SecurityGroups": [{"GroupId": "sg-1", "GroupName": "todo-alb-sg"}]
    }
    r.iam.get_role.return_value = {"Role": {"Arn": "arn:role"}}
    r.iam.list_attached_role_policies.return_value = {
        "AttachedPolicies": [
            {
                "PolicyArn": "arn:aws:iam::aws:policy/service-role/"
                "AmazonECSTaskExecutionRolePolicy"
            }
        ]
    }
    r.iam.list_role_policies.return_value = {"PolicyNames": []}
    r.ecs.describe_clusters.return_value = {"clusters": [{"status": "ACTIVE"}]}
    r.logs.describe_log_groups.side_effect = lambda logGroupNamePrefix: {
        "logGroups": [{"logGroupName": logGroupNamePrefix}]
    }
    r.elbv2.describe_load_balancers.return_value = {
        "LoadBalancers": [{"LoadBalancerArn": "arn:lb", "DNSName": DNS_NAME}]
    }
    r.elbv2.describe_target_groups.return_value = {
        "TargetGroups": [{"TargetGroupArn": "arn:tg"}]
    }
    r.elbv2.describe_listeners.return_value = {
        "Listeners": [{"Port": 80, "ListenerArn": "arn:listener"}]
    }
    r.ecs.register_task_definition.return_value = {
        "taskDefinition": {"taskDefinitionArn": "arn:td:1"}
    }
    r.ecs.describe_services.return_value = {"services": []}


class TestSetup:
    """Tests for cluster setup."""

    def test_creates_resources_in_dependency_order(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        _fresh_account(aws_session)

        deployer.setup()

        assert aws_session.calls("create_") == [
            "ecr.create_repository",
            "ec2.create_security_group",
            "iam.create_role",
            "iam.create_role",
            "iam.create_service_linked_role",
            "ecs.create_cluster",
            "logs.create_log_group",
            "elbv2.create_load_balancer",
            "elbv2.create_target_group",
            "elbv2.create_listener",
        ]
        r = aws_session.recorder
        ingress = r.ec2.authorize_security_group_ingress.call_args.kwargs
        assert ingress["IpPermissions"][0]["FromPort"] == 80
        tg = r.elbv2.create_target_group.call_args.kwargs
        assert tg["Name"] == "todo-tg"
        assert tg["TargetType"] == "ip"
        assert tg["HealthCheckPath"] == "/api/health"
        assert tg["Port"] == 8080
        lb = r.elbv2.create_load_balancer.call_args.kwargs
        assert lb["Subnets"] == ["subnet-a", "subnet-b"]
        assert lb["SecurityGroups"] == ["sg-alb"]
        listener = r.elbv2.create_listener.call_args.kwargs
        assert listener["DefaultActions"][0]["TargetGroupArn"] == "arn:tg"

    def test_is_idempotent(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        _provisioned_account(aws_session)

        deployer.setup()
        deployer.setup()

        assert aws_session.calls("create_", "attach_") == []

    def test_creates_default_vpc_when_missing(
        self,
        deployer: AwsClusterDeployer,
        aws_session: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _provisioned_account(aws_session)
        monkeypatch.setattr(time, "sleep", lambda _: None)
        aws_session.recorder.ec2.describe_vpcs.side_effect = [
            {"Vpcs": []},
            {"Vpcs": [{"VpcId": "vpc-new"}]},
        ]

        deployer.setup()

        aws_session.recorder.ec2.create_default_vpc.assert_called_once()

    def test_provision_failure(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        _fresh_account(aws_session)
        aws_session.recorder.ecs.create_cluster.side_effect = _client_error(
            "AccessDeniedException"
        )

        with pytest.raises(ProvisionError) as exc_info:
            deployer.setup()

        assert exc_info.value.resource == "todo-cluster"
        aws_session.recorder.elbv2.create_load_balancer.assert_not_called()


class TestDeploy:
    """Tests for cluster deploy."""

    @pytest.fixture(autouse=True)
    def provisioned(self, aws_session: Any) -> None:
        _provisioned_account(aws_session)

    def test_first_deploy_creates_service(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        result = deployer.deploy()

        r = aws_session.recorder
        task = r.ecs.register_task_definition.call_args.kwargs
        container = task["containerDefinitions"][0]
        assert task["family"] == "todo-task"
        assert task["requiresCompatibilities"] == ["FARGATE"]
        assert task["cpu"] == "256"
        assert container["image"] == (
            "123456789012.dkr.ecr.us-east-1.amazonaws.com/todo:latest"
        )
        assert container["portMappings"][0]["containerPort"] == 8080
        assert {"name": "DEBUG", "value": "false"} in container["environment"]
        log_options = container["logConfiguration"]["options"]
        assert log_options["awslogs-group"] == "/ecs/todo"

        service = r.ecs.create_service.call_args.kwargs
        assert service["serviceName"] == "todo-service"
        assert service["taskDefinition"] == "arn:td:1"
        assert service["desiredCount"] == 2
        assert service["loadBalancers"][0]["targetGroupArn"] == "arn:tg"
        network = service["networkConfiguration"]["awsvpcConfiguration"]
        assert network["assignPublicIp"] == "ENABLED"
        assert network["subnets"] == ["subnet-a", "subnet-b"]

        waiter_config = r.ecs.get_waiter.return_value.wait.call_args.kwargs
        assert waiter_config["WaiterConfig"] == {"Delay": 15, "MaxAttempts": 20}

        assert result.url == f"http://{DNS_NAME}"
        assert result.health_url == f"http://{DNS_NAME}/api/health"
        assert result.compute_name == "todo-service"
        assert result.stable is True

    def test_redeploy_forces_new_deployment(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        aws_session.recorder.ecs.describe_services.return_value = {
            "services": [{"status": "ACTIVE"}]
        }

        deployer.deploy()

        ecs = aws_session.recorder.ecs
        ecs.create_service.assert_not_called()
        update = ecs.update_service.call_args.kwargs
        assert update["forceNewDeployment"] is True
        assert update["taskDefinition"] == "arn:td:1"

    def test_wait_timeout_is_a_warning(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        aws_session.recorder.ecs.get_waiter.return_value.wait.side_effect = (
            WaiterError(
                name="ServicesStable",
                reason="Max attempts exceeded",
                last_response={},
            )
        )

        result = deployer.deploy()

        assert result.stable is False
        assert result.url == f"http://{DNS_NAME}"

    def test_build_failure_leaves_service_untouched(
        self, deployer: AwsClusterDeployer, aws_session: Any, builder: MagicMock
    ) -> None:
        builder.build.side_effect = BuildError("build", "compile error")

        with pytest.raises(BuildError):
            deployer.deploy()

        assert aws_session.calls("register_", "create_service", "update_") == []

    def test_ecr_login_failure_is_a_build_error(
        self, deployer: AwsClusterDeployer, aws_session: Any, builder: MagicMock
    ) -> None:
        aws_session.recorder.ecr.get_authorization_token.side_effect = (
            _client_error("ExpiredTokenException")
        )

        with pytest.raises(BuildError) as exc_info:
            deployer.deploy()

        assert exc_info.value.stage == "login"
        builder.push.assert_not_called()

    def test_missing_load_balancer_asks_for_setup(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        aws_session.recorder.elbv2.describe_load_balancers.side_effect = (
            _client_error("LoadBalancerNotFound")
        )

        with pytest.raises(DeploymentError, match="Run setup first"):
            deployer.deploy()


class TestDestroy:
    """Tests for cluster destroy."""

    @pytest.fixture(autouse=True)
    def deployed(self, aws_session: Any) -> None:
        _provisioned_account(aws_session)
        r = aws_session.recorder
        r.ecs.describe_services.return_value = {"services": [{"status": "ACTIVE"}]}
        r.ecs.get_paginator.return_value.paginate.return_value = [
            {"taskDefinitionArns": ["arn:td:1", "arn:td:2"]}
        ]
        r.ec2.describe_network_interfaces.return_value = {"NetworkInterfaces": []}

    def test_deletes_in_exact_reverse_order(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        report = deployer.destroy()

        assert aws_session.calls("delete_", "deregister_") == [
            "ecs.delete_service",
            "ec2.delete_security_group",
            "ecs.deregister_task_definition",
            "ecs.deregister_task_definition",
            "elbv2.delete_listener",
            "elbv2.delete_target_group",
            "elbv2.delete_load_balancer",
            "logs.delete_log_group",
            "ecs.delete_cluster",
            "iam.delete_role",
            "iam.delete_role",
            "ec2.delete_security_group",
            "ecr.delete_repository",
            "ec2.delete_security_group",
        ]
        deleted_roles = [
            c.kwargs["RoleName"]
            for c in aws_session.recorder.iam.delete_role.call_args_list
        ]
        assert deleted_roles == ["todo-task-role", "todo-execution-role"]
        assert report.succeeded

    def test_scales_service_to_zero_before_delete(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        deployer.destroy()

        ecs = aws_session.recorder.ecs
        assert ecs.update_service.call_args.kwargs["desiredCount"] == 0
        assert ecs.delete_service.call_args.kwargs["force"] is True

    def test_failed_third_step_does_not_stop_destroy(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        aws_session.recorder.ecs.get_paginator.return_value.paginate.side_effect = (
            _client_error("AccessDeniedException")
        )

        report = deployer.destroy()

        assert report.steps[2].step == "task definitions todo-task"
        assert report.steps[2].outcome == StepOutcome.FAILED
        assert "AccessDeniedException" in (report.steps[2].error or "")
        assert [s.step for s in report.failed_steps] == ["task definitions todo-task"]
        assert len(report.steps) == 14
        assert "ecr.delete_repository" in aws_session.calls("delete_")

    def test_destroy_after_destroy_reports_not_found(
        self, deployer: AwsClusterDeployer, aws_session: Any
    ) -> None:
        r = aws_session.recorder
        r.ecs.describe_services.return_value = {"services": [{"status": "INACTIVE"}]}
        r.ecs.get_paginator.return_value.paginate.return_value = []
        r.ec2.describe_security_groups.return_value = {"SecurityGroups": []}
        r.elbv2.describe_load_balancers.side_effect = _client_error(
            "LoadBalancerNotFound"
        )
        r.elbv2.describe_target_groups.side_effect = _client_error(
            "TargetGroupNotFound"
        )
        r.logs.delete_log_group.side_effect = _client_error(
            "ResourceNotFoundException"
        )
        r.ecs.describe_clusters.return_value = {"clusters": [{"status": "INACTIVE"}]}
        r.iam.list_attached_role_policies.side_effect = _client_error("NoSuchEntity")
        r.ecr.delete_repository.side_effect = _client_error(
            "RepositoryNotFoundException"
        )

        report = deployer.destroy()

        assert report.succeeded
        assert {s.outcome for s in report.steps} == {StepOutcome.NOT_FOUND}


def test_show_logs_reads_cluster_log_group(
    deployer: AwsClusterDeployer, aws_session: Any, one_line_emit: Any
) -> None:
    token, emit, lines = one_line_emit
    now = int(time.time() * 1000)
    aws_session.recorder.logs.filter_log_events.return_value = {
        "events": [{"timestamp": now, "message": "Application startup complete."}]
    }

    deployer.show_logs(token, emit)

    kwargs = aws_session.recorder.logs.filter_log_events.call_args.kwargs
    assert kwargs["logGroupName"] == "/ecs/todo"
    assert "Application startup complete." in lines[0]
