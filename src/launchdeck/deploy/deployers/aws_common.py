"""Helpers shared by the AWS deployers.

boto3 is an optional extra, so it is imported when an :class:`AwsSession`
is created rather than at module import time.
"""

from __future__ import annotations

import base64
import json
from typing import TYPE_CHECKING, Any

from launchdeck.deploy.builder import RegistryCredentials
from launchdeck.deploy.logs import LogEvent, LogPage
from launchdeck.lib.errors import (
    AuthError,
    BuildError,
    CloudSDKNotInstalledError,
    LogSinkNotFoundError,
    ProvisionError,
)
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import Provider

if TYPE_CHECKING:
    from launchdeck.deploy.logs import FetchPage

logger = get_logger(__name__)

# Error codes meaning "the resource is already gone"
NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "RepositoryNotFoundException",
        "NoSuchEntity",
        "ClusterNotFoundException",
        "ServiceNotFoundException",
        "ServiceNotActiveException",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "InvalidGroup.NotFound",
        "InvalidNetworkInterfaceID.NotFound",
        "InvalidVpcID.NotFound",
    }
)

ALREADY_EXISTS_CODES = frozenset(
    {
        "ResourceAlreadyExistsException",
        "RepositoryAlreadyExistsException",
        "EntityAlreadyExists",
        "InvalidGroup.Duplicate",
        "DuplicateLoadBalancerName",
        "DuplicateTargetGroupName",
    }
)


def error_code(exc: BaseException) -> str:
    """Return the AWS error code of a botocore ClientError, or ''."""
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in NOT_FOUND_CODES


class AwsSession:
    """Authenticated boto3 clients for one region.

    Attributes:
        account_id: AWS account the credentials belong to
        ClientError: botocore ClientError class
        WaiterError: botocore WaiterError class
    """

    def __init__(
        self, region: str, provider: Provider, session: Any | None = None
    ) -> None:
        """Create the session and verify the credentials.

        Args:
            region: AWS region for every client
            provider: Deployer this session serves (used in error messages)
            session: Pre-built boto3 session, created from the environment if None

        Raises:
            CloudSDKNotInstalledError: If boto3 is not installed
            AuthError: If no valid credentials are available
        """
        try:
            import boto3
            from botocore.exceptions import BotoCoreError, ClientError, WaiterError
        except ImportError as exc:
            raise CloudSDKNotInstalledError(
                provider=provider.value, sdk_name="boto3"
            ) from exc

        self.region = region
        self.ClientError: type[Exception] = ClientError
        self.WaiterError: type[Exception] = WaiterError
        self._session = session or boto3.session.Session(region_name=region)

        try:
            identity = self._session.client("sts").get_caller_identity()
        except (BotoCoreError, ClientError) as exc:
            raise AuthError(
                provider.value,
                f"{exc}. Configure credentials with 'aws configure' or "
                "the AWS_PROFILE environment variable.",
            ) from exc
        self.account_id: str = identity["Account"]
        logger.debug(f"Authenticated to AWS account {self.account_id}")

    def client(self, service: str) -> Any:
        return self._session.client(service, region_name=self.region)

    @property
    def registry_host(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"


# ECR


def ensure_repository(aws: AwsSession, ecr: Any, name: str) -> str:
    """Create the ECR repository unless it exists; return its URI."""
    try:
        response = ecr.describe_repositories(repositoryNames=[name])
        logger.info(f"ECR repository {name} already exists, skipping")
        return str(response["repositories"][0]["repositoryUri"])
    except aws.ClientError as e:
        if error_code(e) != "RepositoryNotFoundException":
            raise ProvisionError(name, str(e)) from e

    try:
        response = ecr.create_repository(
            repositoryName=name,
            imageTagMutability="MUTABLE",
            imageScanningConfiguration={"scanOnPush": False},
        )
    except aws.ClientError as e:
        raise ProvisionError(name, str(e)) from e
    logger.info(f"Created ECR repository {name}")
    return str(response["repository"]["repositoryUri"])


def delete_repository(ecr: Any, name: str) -> bool:
    ecr.delete_repository(repositoryName=name, force=True)
    return True


def ecr_credentials(
    aws: AwsSession, ecr: Any, registry: str
) -> RegistryCredentials:
    """Exchange the session credentials for a Docker login to ECR."""
    try:
        response = ecr.get_authorization_token()
    except aws.ClientError as e:
        raise BuildError("login", f"ECR authorization failed: {e}") from e
    token = response["authorizationData"][0]["authorizationToken"]
    username, password = base64.b64decode(token).decode("utf-8").split(":", 1)
    return RegistryCredentials(registry=registry, username=username, password=password)


# IAM


def trust_policy(service_principal: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service_principal},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


def ensure_role(
    aws: AwsSession,
    iam: Any,
    name: str,
    service_principal: str,
    policy_arns: tuple[str, ...] = (),
) -> str:
    """Create an IAM role for a service principal unless it exists.

    Managed policies are attached when missing, also on an existing role.

    Returns:
        The role ARN
    """
    try:
        arn = str(iam.get_role(RoleName=name)["Role"]["Arn"])
        logger.info(f"IAM role {name} already exists, skipping")
    except aws.ClientError as e:
        if error_code(e) != "NoSuchEntity":
            raise ProvisionError(name, str(e)) from e
        try:
            response = iam.create_role(
                RoleName=name,
                AssumeRolePolicyDocument=trust_policy(service_principal),
                Description=f"Managed by launchdeck for {service_principal}",
            )
        except aws.ClientError as create_error:
            raise ProvisionError(name, str(create_error)) from create_error
        arn = str(response["Role"]["Arn"])
        logger.info(f"Created IAM role {name}")

    if policy_arns:
        try:
            attached = {
                p["PolicyArn"]
                for p in iam.list_attached_role_policies(RoleName=name)[
                    "AttachedPolicies"
                ]
            }
            for policy_arn in policy_arns:
                if policy_arn not in attached:
                    iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)
                    logger.info(f"Attached {policy_arn} to {name}")
        except aws.ClientError as e:
            raise ProvisionError(name, str(e)) from e

    return arn


def delete_role(iam: Any, name: str) -> bool:
    """Detach managed policies, drop inline policies and delete the role."""
    attached = iam.list_attached_role_policies(RoleName=name)["AttachedPolicies"]
    for policy in attached:
        iam.detach_role_policy(RoleName=name, PolicyArn=policy["PolicyArn"])
    for policy_name in iam.list_role_policies(RoleName=name).get("PolicyNames", []):
        iam.delete_role_policy(RoleName=name, PolicyName=policy_name)
    iam.delete_role(RoleName=name)
    return True


# CloudWatch Logs


def ensure_log_group(aws: AwsSession, logs: Any, name: str) -> None:
    try:
        response = logs.describe_log_groups(logGroupNamePrefix=name)
        if any(g["logGroupName"] == name for g in response.get("logGroups", [])):
            logger.info(f"Log group {name} already exists, skipping")
            return
        logs.create_log_group(logGroupName=name)
    except aws.ClientError as e:
        raise ProvisionError(name, str(e)) from e
    logger.info(f"Created log group {name}")


def delete_log_group(logs: Any, name: str) -> bool:
    logs.delete_log_group(logGroupName=name)
    return True


def log_group_fetcher(aws: AwsSession, logs: Any, log_group: str) -> FetchPage:
    """Build a LogTailer fetch function over ``filter_log_events``."""

    def fetch(since: int, page_token: str | None, page_size: int) -> LogPage:
        kwargs: dict[str, Any] = {
            "logGroupName": log_group,
            "startTime": since,
            "limit": page_size,
        }
        if page_token:
            kwargs["nextToken"] = page_token
        try:
            response = logs.filter_log_events(**kwargs)
        except aws.ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                raise LogSinkNotFoundError(log_group) from e
            raise

        events = [
            LogEvent(
                timestamp=int(item["timestamp"]),
                message=item.get("message", ""),
                stream=item.get("logStreamName"),
            )
            for item in response.get("events", [])
        ]
        return LogPage(events=events, next_token=response.get("nextToken"))

    return fetch
