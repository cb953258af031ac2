"""Lifecycle contract shared by all provider deployers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import ClassVar

from launchdeck.deploy.logs import CancellationToken
from launchdeck.models.deployment import DeployResult, DestroyReport, Provider


class BaseDeployer(ABC):
    """Abstract base class for provider deployers.

    Constructing a deployer is the ``init`` step: it takes a resolved
    configuration and establishes authenticated provider clients. Client
    handles belong to each concrete deployer; this class holds no state.
    """

    provider: ClassVar[Provider]

    @abstractmethod
    def setup(self) -> None:
        """Provision support resources in dependency order.

        Every resource is looked up by its derived name first and only
        created when missing, so setup can be re-run safely.

        Raises:
            ProvisionError: If a resource cannot be created
        """

    @abstractmethod
    def deploy(self) -> DeployResult:
        """Build and push the image, then create or update the compute unit.

        Returns:
            DeployResult with the reachable URL

        Raises:
            BuildError: If the image cannot be built or pushed
            DeploymentError: If the compute unit cannot be created or updated
        """

    @abstractmethod
    def destroy(self) -> DestroyReport:
        """Delete all managed resources in reverse setup order.

        Never raises for individual step failures; they are collected in
        the returned report.

        Returns:
            DestroyReport with one entry per step
        """

    @abstractmethod
    def show_logs(
        self, token: CancellationToken, emit: Callable[[str], None]
    ) -> None:
        """Tail workload logs until the token is cancelled.

        Args:
            token: Cancellation token checked before each poll
            emit: Receives each formatted log line
        """
