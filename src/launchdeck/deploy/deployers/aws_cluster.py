"""AWS ECS Fargate deployer.

The workload runs as a Fargate service in the account's default VPC,
behind an internet-facing Application Load Balancer.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from launchdeck.config.env_loader import load_environment_file
from launchdeck.deploy.builder import ContainerBuilder, ImagePipeline, get_oci_labels
from launchdeck.deploy.deployers import aws_common
from launchdeck.deploy.deployers.aws_common import AwsSession, error_code
from launchdeck.deploy.deployers.base import BaseDeployer
from launchdeck.deploy.log_format import CONTAINER_RULES, make_formatter
from launchdeck.deploy.logs import CancellationToken, LogTailer
from launchdeck.deploy.runner import find_project_root
from launchdeck.deploy.teardown import run_teardown
from launchdeck.lib.errors import DeploymentError, ProvisionError
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    AwsClusterConfig,
    DeployResult,
    DestroyReport,
    ImageArtifact,
    Provider,
)

logger = get_logger(__name__)

TASK_EXECUTION_POLICY = (
    "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"
)
SERVICE_TAG_KEY = "launchdeck:service"
LISTENER_PORT = 80
WAITER_DELAY_SECONDS = 15
DEFAULT_VPC_SETTLE_SECONDS = 5


class AwsClusterDeployer(BaseDeployer):
    """Deploy a container image as an ECS Fargate service behind an ALB."""

    provider = Provider.AWS_CLUSTER

    def __init__(
        self,
        config: AwsClusterConfig,
        *,
        session: Any | None = None,
        builder: ContainerBuilder | None = None,
    ) -> None:
        """Initialize the deployer and verify AWS credentials.

        Args:
            config: Resolved cluster configuration
            session: Optional boto3 session (created from the environment if None)
            builder: Optional container builder (connects to Docker on deploy if None)

        Raises:
            CloudSDKNotInstalledError: If boto3 is not installed
            AuthError: If AWS credentials are missing or invalid
        """
        self._config = config
        self._aws = AwsSession(config.region, self.provider, session=session)
        self._ecr = self._aws.client("ecr")
        self._ec2 = self._aws.client("ec2")
        self._iam = self._aws.client("iam")
        self._ecs = self._aws.client("ecs")
        self._elbv2 = self._aws.client("elbv2")
        self._logs = self._aws.client("logs")
        self._builder = builder

    def _tags(self, name: str) -> list[dict[str, str]]:
        return [
            {"Key": "Name", "Value": name},
            {"Key": SERVICE_TAG_KEY, "Value": self._config.service_name},
        ]

    # setup

    def setup(self) -> None:
        """Provision repository, network, roles, cluster, log group and ALB."""
        config = self._config
        logger.info(f"Setting up AWS Fargate resources for '{config.service_name}'")

        aws_common.ensure_repository(self._aws, self._ecr, config.repository_name)
        vpc_id, subnet_ids = self._ensure_default_vpc()
        alb_sg_id = self._ensure_security_group(
            config.load_balancer_security_group_name,
            f"Load balancer for {config.service_name}",
            vpc_id,
            {
                "IpProtocol": "tcp",
                "FromPort": LISTENER_PORT,
                "ToPort": LISTENER_PORT,
                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
            },
        )
        aws_common.ensure_role(
            self._aws,
            self._iam,
            config.execution_role_name,
            "ecs-tasks.amazonaws.com",
            (TASK_EXECUTION_POLICY,),
        )
        aws_common.ensure_role(
            self._aws, self._iam, config.task_role_name, "ecs-tasks.amazonaws.com"
        )
        self._ensure_cluster()
        aws_common.ensure_log_group(self._aws, self._logs, config.log_group_name)
        lb_arn = self._ensure_load_balancer(subnet_ids, alb_sg_id)
        tg_arn = self._ensure_target_group(vpc_id)
        self._ensure_listener(lb_arn, tg_arn)
        logger.info("Setup complete")

    def _find_default_vpc(self) -> tuple[str, list[str]] | None:
        vpcs = self._ec2.describe_vpcs(
            Filters=[{"Name": "isDefault", "Values": ["true"]}]
        )["Vpcs"]
        if not vpcs:
            return None
        vpc_id = vpcs[0]["VpcId"]
        subnets = self._ec2.describe_subnets(
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )["Subnets"]
        return vpc_id, [s["SubnetId"] for s in subnets]

    def _ensure_default_vpc(self) -> tuple[str, list[str]]:
        try:
            found = self._find_default_vpc()
            if found is not None:
                logger.info(f"Using default VPC {found[0]}")
                return found
            logger.info("No default VPC found, creating one")
            self._ec2.create_default_vpc()
            time.sleep(DEFAULT_VPC_SETTLE_SECONDS)
            found = self._find_default_vpc()
        except self._aws.ClientError as e:
            raise ProvisionError("default VPC", str(e)) from e
        if found is None:
            raise ProvisionError("default VPC", "default VPC is not available")
        return found

    def _find_security_group(self, name: str, vpc_id: str) -> str | None:
        groups = self._ec2.describe_security_groups(
            Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ]
        )["SecurityGroups"]
        return str(groups[0]["GroupId"]) if groups else None

    def _ensure_security_group(
        self, name: str, description: str, vpc_id: str, ingress: dict[str, Any]
    ) -> str:
        try:
            group_id = self._find_security_group(name, vpc_id)
            if group_id:
                logger.info(f"Security group {name} already exists, skipping")
                return group_id
            group_id = self._ec2.create_security_group(
                GroupName=name,
                Description=description,
                VpcId=vpc_id,
                TagSpecifications=[
                    {"ResourceType": "security-group", "Tags": self._tags(name)}
                ],
            )["GroupId"]
            self._ec2.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=[ingress]
            )
        except self._aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created security group {name}")
        return str(group_id)

    def _ensure_cluster(self) -> None:
        name = self._config.cluster_name
        try:
            clusters = self._ecs.describe_clusters(clusters=[name])["clusters"]
            if any(c.get("status") == "ACTIVE" for c in clusters):
                logger.info(f"ECS cluster {name} already exists, skipping")
                return
            self._ensure_ecs_service_linked_role()
            self._ecs.create_cluster(
                clusterName=name,
                capacityProviders=["FARGATE"],
                defaultCapacityProviderStrategy=[
                    {"capacityProvider": "FARGATE", "weight": 1}
                ],
                tags=[{"key": SERVICE_TAG_KEY, "value": self._config.service_name}],
            )
        except self._aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created ECS cluster {name}")

    def _ensure_ecs_service_linked_role(self) -> None:
        try:
            self._iam.create_service_linked_role(AWSServiceName="ecs.amazonaws.com")
            logger.info("Created ECS service-linked role")
        except self._aws.ClientError as e:
            # Already present in most accounts
            if error_code(e) != "InvalidInput":
                raise

    def _find_load_balancer(self) -> dict[str, Any] | None:
        try:
            balancers = self._elbv2.describe_load_balancers(
                Names=[self._config.load_balancer_name]
            )["LoadBalancers"]
        except self._aws.ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                return None
            raise
        return balancers[0] if balancers else None

    def _ensure_load_balancer(
        self, subnet_ids: list[str], security_group_id: str
    ) -> str:
        name = self._config.load_balancer_name
        try:
            existing = self._find_load_balancer()
            if existing:
                logger.info(f"Load balancer {name} already exists, skipping")
                return str(existing["LoadBalancerArn"])
            balancer = self._elbv2.create_load_balancer(
                Name=name,
                Subnets=subnet_ids,
                SecurityGroups=[security_group_id],
                Scheme="internet-facing",
                Type="application",
                IpAddressType="ipv4",
                Tags=self._tags(name),
            )["LoadBalancers"][0]
        except self._aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created load balancer {name}")
        return str(balancer["LoadBalancerArn"])

    def _find_target_group(self) -> dict[str, Any] | None:
        try:
            groups = self._elbv2.describe_target_groups(
                Names=[self._config.target_group_name]
            )["TargetGroups"]
        except self._aws.ClientError as e:
            if error_code(e) == "TargetGroupNotFound":
                return None
            raise
        return groups[0] if groups else None

    def _ensure_target_group(self, vpc_id: str) -> str:
        config = self._config
        name = config.target_group_name
        try:
            existing = self._find_target_group()
            if existing:
                logger.info(f"Target group {name} already exists, skipping")
                return str(existing["TargetGroupArn"])
            group = self._elbv2.create_target_group(
                Name=name,
                Protocol="HTTP",
                Port=config.container_port,
                VpcId=vpc_id,
                TargetType="ip",
                HealthCheckProtocol="HTTP",
                HealthCheckPath=config.health_check_path,
                HealthCheckIntervalSeconds=config.health_check_interval_seconds,
                Matcher={"HttpCode": "200"},
                Tags=self._tags(name),
            )["TargetGroups"][0]
        except self._aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created target group {name}")
        return str(group["TargetGroupArn"])

    def _find_listener(self, lb_arn: str) -> dict[str, Any] | None:
        listeners = self._elbv2.describe_listeners(LoadBalancerArn=lb_arn)["Listeners"]
        for listener in listeners:
            if listener.get("Port") == LISTENER_PORT:
                return listener
        return None

    def _ensure_listener(self, lb_arn: str, tg_arn: str) -> None:
        name = f"{self._config.load_balancer_name}:{LISTENER_PORT}"
        try:
            if self._find_listener(lb_arn):
                logger.info(f"Listener {name} already exists, skipping")
                return
            self._elbv2.create_listener(
                LoadBalancerArn=lb_arn,
                Protocol="HTTP",
                Port=LISTENER_PORT,
                DefaultActions=[{"Type": "forward", "TargetGroupArn": tg_arn}],
            )
        except self._aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created listener {name}")

    # deploy

    def deploy(self) -> DeployResult:
        """Publish the image, register a task definition and roll the service."""
        config = self._config
        artifact = ImageArtifact(
            registry=self._aws.registry_host, repository=config.repository_name
        )

        credentials = aws_common.ecr_credentials(
            self._aws, self._ecr, artifact.registry
        )
        builder = self._builder or ContainerBuilder()
        pipeline = ImagePipeline(
            builder, find_project_root(Path(config.dockerfile_path).parent)
        )
        pipeline.publish(
            dockerfile=config.dockerfile_path,
            artifact=artifact,
            credentials=credentials,
            labels=get_oci_labels(config.service_name, self.provider.value),
        )

        try:
            task_definition_arn = self._register_task_definition(artifact.uri)
            network = self._find_default_vpc()
            balancer = self._find_load_balancer()
            target_group = self._find_target_group()
            if network is None or balancer is None or target_group is None:
                raise DeploymentError(
                    operation="deploy",
                    message="Network or load balancer missing. Run setup first.",
                )
            vpc_id, subnet_ids = network
            alb_sg_id = self._find_security_group(
                config.load_balancer_security_group_name, vpc_id
            )
            if alb_sg_id is None:
                raise DeploymentError(
                    operation="deploy",
                    message="Load balancer security group missing. Run setup first.",
                )
            service_sg_id = self._ensure_service_security_group(vpc_id, alb_sg_id)
            self._create_or_update_service(
                task_definition_arn,
                subnet_ids,
                service_sg_id,
                str(target_group["TargetGroupArn"]),
            )
        except self._aws.ClientError as e:
            raise DeploymentError(
                operation="deploy",
                message=f"ECS service {config.ecs_service_name}: {e}",
            ) from e
        except ProvisionError as e:
            raise DeploymentError(operation="deploy", message=str(e)) from e

        stable = self._wait_for_stable()
        return DeployResult(
            provider=self.provider,
            service_name=config.service_name,
            compute_name=config.ecs_service_name,
            image_uri=artifact.uri,
            url=f"http://{balancer['DNSName']}",
            health_check_path=config.health_check_path,
            stable=stable,
        )

    def _register_task_definition(self, image_uri: str) -> str:
        config = self._config
        execution_role = self._iam.get_role(RoleName=config.execution_role_name)
        task_role = self._iam.get_role(RoleName=config.task_role_name)
        environment = [
            {"name": key, "value": value}
            for key, value in load_environment_file(config.environment_file).items()
        ]

        response = self._ecs.register_task_definition(
            family=config.task_family,
            networkMode="awsvpc",
            requiresCompatibilities=["FARGATE"],
            cpu=str(config.cpu),
            memory=str(config.memory),
            executionRoleArn=execution_role["Role"]["Arn"],
            taskRoleArn=task_role["Role"]["Arn"],
            containerDefinitions=[
                {
                    "name": config.service_name,
                    "image": image_uri,
                    "essential": True,
                    "portMappings": [
                        {"containerPort": config.container_port, "protocol": "tcp"}
                    ],
                    "environment": environment,
                    "logConfiguration": {
                        "logDriver": "awslogs",
                        "options": {
                            "awslogs-group": config.log_group_name,
                            "awslogs-region": config.region,
                            "awslogs-stream-prefix": "ecs",
                        },
                    },
                }
            ],
        )
        arn = str(response["taskDefinition"]["taskDefinitionArn"])
        logger.info(f"Registered task definition {arn}")
        return arn

    def _ensure_service_security_group(self, vpc_id: str, alb_sg_id: str) -> str:
        config = self._config
        return self._ensure_security_group(
            config.service_security_group_name,
            f"Tasks of {config.service_name}",
            vpc_id,
            {
                "IpProtocol": "tcp",
                "FromPort": config.container_port,
                "ToPort": config.container_port,
                "UserIdGroupPairs": [{"GroupId": alb_sg_id}],
            },
        )

    def _active_service(self) -> dict[str, Any] | None:
        config = self._config
        try:
            services = self._ecs.describe_services(
                cluster=config.cluster_name, services=[config.ecs_service_name]
            )["services"]
        except self._aws.ClientError as e:
            if error_code(e) == "ClusterNotFoundException":
                return None
            raise
        for service in services:
            if service.get("status") != "INACTIVE":
                return service
        return None

    def _create_or_update_service(
        self,
        task_definition_arn: str,
        subnet_ids: list[str],
        security_group_id: str,
        target_group_arn: str,
    ) -> None:
        config = self._config
        if self._active_service():
            logger.info(f"Updating ECS service {config.ecs_service_name}")
            self._ecs.update_service(
                cluster=config.cluster_name,
                service=config.ecs_service_name,
                taskDefinition=task_definition_arn,
                desiredCount=config.desired_count,
                forceNewDeployment=True,
            )
            return

        logger.info(f"Creating ECS service {config.ecs_service_name}")
        self._ecs.create_service(
            cluster=config.cluster_name,
            serviceName=config.ecs_service_name,
            taskDefinition=task_definition_arn,
            desiredCount=config.desired_count,
            launchType="FARGATE",
            networkConfiguration={
                "awsvpcConfiguration": {
                    "subnets": subnet_ids,
                    "securityGroups": [security_group_id],
                    "assignPublicIp": "ENABLED",
                }
            },
            loadBalancers=[
                {
                    "targetGroupArn": target_group_arn,
                    "containerName": config.service_name,
                    "containerPort": config.container_port,
                }
            ],
            healthCheckGracePeriodSeconds=60,
        )

    def _wait_for_stable(self) -> bool:
        config = self._config
        max_attempts = max(
            1, config.deployment_timeout_minutes * 60 // WAITER_DELAY_SECONDS
        )
        logger.info(
            f"Waiting up to {config.deployment_timeout_minutes} minute(s) "
            f"for {config.ecs_service_name} to become stable"
        )
        try:
            self._ecs.get_waiter("services_stable").wait(
                cluster=config.cluster_name,
                services=[config.ecs_service_name],
                WaiterConfig={
                    "Delay": WAITER_DELAY_SECONDS,
                    "MaxAttempts": max_attempts,
                },
            )
        except self._aws.WaiterError as e:
            logger.warning(
                f"Service did not report stable in time ({e}); "
                "the deployment is likely still rolling out"
            )
            return False
        logger.info("Service is stable")
        return True

    # destroy

    def destroy(self) -> DestroyReport:
        """Delete every managed resource in reverse creation order."""
        config = self._config
        steps: list[tuple[str, Callable[[], bool]]] = [
            (f"ECS service {config.ecs_service_name}", self._delete_service),
            (
                f"security group {config.service_security_group_name}",
                lambda: self._delete_security_group(config.service_security_group_name),
            ),
            (
                f"task definitions {config.task_family}",
                self._deregister_task_definitions,
            ),
            (
                f"listener {config.load_balancer_name}:{LISTENER_PORT}",
                self._delete_listener,
            ),
            (f"target group {config.target_group_name}", self._delete_target_group),
            (f"load balancer {config.load_balancer_name}", self._delete_load_balancer),
            (
                f"log group {config.log_group_name}",
                lambda: aws_common.delete_log_group(self._logs, config.log_group_name),
            ),
            (f"ECS cluster {config.cluster_name}", self._delete_cluster),
            (
                f"IAM role {config.task_role_name}",
                lambda: aws_common.delete_role(self._iam, config.task_role_name),
            ),
            (
                f"IAM role {config.execution_role_name}",
                lambda: aws_common.delete_role(self._iam, config.execution_role_name),
            ),
            (
                f"security group {config.load_balancer_security_group_name}",
                lambda: self._delete_security_group(
                    config.load_balancer_security_group_name
                ),
            ),
            (
                f"ECR repository {config.repository_name}",
                lambda: aws_common.delete_repository(self._ecr, config.repository_name),
            ),
            ("orphaned network interfaces", self._sweep_network_interfaces),
            ("orphaned security groups", self._sweep_security_groups),
        ]
        return run_teardown(
            self.provider, config.service_name, steps, aws_common.is_not_found
        )

    def _delete_service(self) -> bool:
        config = self._config
        if not self._active_service():
            return False
        self._ecs.update_service(
            cluster=config.cluster_name, service=config.ecs_service_name, desiredCount=0
        )
        self._ecs.delete_service(
            cluster=config.cluster_name, service=config.ecs_service_name, force=True
        )
        try:
            self._ecs.get_waiter("services_inactive").wait(
                cluster=config.cluster_name,
                services=[config.ecs_service_name],
                WaiterConfig={"Delay": WAITER_DELAY_SECONDS, "MaxAttempts": 40},
            )
        except self._aws.WaiterError:
            logger.warning("Service is still draining; continuing teardown")
        return True

    def _delete_security_group(self, name: str) -> bool:
        network = self._find_default_vpc()
        if network is None:
            return False
        group_id = self._find_security_group(name, network[0])
        if group_id is None:
            return False
        self._ec2.delete_security_group(GroupId=group_id)
        return True

    def _deregister_task_definitions(self) -> bool:
        arns: list[str] = []
        paginator = self._ecs.get_paginator("list_task_definitions")
        for page in paginator.paginate(
            familyPrefix=self._config.task_family, status="ACTIVE"
        ):
            arns.extend(page.get("taskDefinitionArns", []))
        for arn in arns:
            self._ecs.deregister_task_definition(taskDefinition=arn)
            logger.debug(f"Deregistered {arn}")
        return bool(arns)

    def _delete_listener(self) -> bool:
        balancer = self._find_load_balancer()
        if balancer is None:
            return False
        listener = self._find_listener(balancer["LoadBalancerArn"])
        if listener is None:
            return False
        self._elbv2.delete_listener(ListenerArn=listener["ListenerArn"])
        return True

    def _delete_target_group(self) -> bool:
        group = self._find_target_group()
        if group is None:
            return False
        self._elbv2.delete_target_group(TargetGroupArn=group["TargetGroupArn"])
        return True

    def _delete_load_balancer(self) -> bool:
        balancer = self._find_load_balancer()
        if balancer is None:
            return False
        arn = balancer["LoadBalancerArn"]
        self._elbv2.delete_load_balancer(LoadBalancerArn=arn)
        try:
            self._elbv2.get_waiter("load_balancers_deleted").wait(
                LoadBalancerArns=[arn],
                WaiterConfig={"Delay": WAITER_DELAY_SECONDS, "MaxAttempts": 20},
            )
        except self._aws.WaiterError:
            logger.warning("Load balancer is still being deleted; continuing teardown")
        return True

    def _delete_cluster(self) -> bool:
        name = self._config.cluster_name
        clusters = self._ecs.describe_clusters(clusters=[name])["clusters"]
        if not any(c.get("status") == "ACTIVE" for c in clusters):
            return False
        self._ecs.delete_cluster(cluster=name)
        return True

    def _sweep_network_interfaces(self) -> bool:
        """Delete detached ENIs left behind by the service's tasks."""
        interfaces = self._ec2.describe_network_interfaces(
            Filters=[
                {"Name": "description", "Values": [f"*{self._config.cluster_name}*"]},
                {"Name": "status", "Values": ["available"]},
            ]
        )["NetworkInterfaces"]
        for interface in interfaces:
            self._ec2.delete_network_interface(
                NetworkInterfaceId=interface["NetworkInterfaceId"]
            )
            logger.info(f"Deleted network interface {interface['NetworkInterfaceId']}")
        return bool(interfaces)

    def _sweep_security_groups(self) -> bool:
        """Delete any remaining security groups tagged with the service name."""
        groups = self._ec2.describe_security_groups(
            Filters=[
                {
                    "Name": f"tag:{SERVICE_TAG_KEY}",
                    "Values": [self._config.service_name],
                }
            ]
        )["SecurityGroups"]
        deleted = False
        for group in groups:
            if group.get("GroupName") == "default":
                continue
            self._ec2.delete_security_group(GroupId=group["GroupId"])
            logger.info(f"Deleted security group {group['GroupName']}")
            deleted = True
        return deleted

    # logs

    def show_logs(
        self, token: CancellationToken, emit: Callable[[str], None]
    ) -> None:
        """Tail the service's CloudWatch log group."""
        tailer = LogTailer(
            aws_common.log_group_fetcher(
                self._aws, self._logs, self._config.log_group_name
            ),
            make_formatter(CONTAINER_RULES),
            emit,
        )
        tailer.run(token)
