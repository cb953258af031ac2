"""Dockerfile patching for AWS Lambda container images.

Lambda invokes container images through its runtime API rather than over
HTTP. The AWS Lambda Web Adapter extension bridges the two, so the
serverless deployer builds from a copy of the configured Dockerfile with
the adapter copied into the final stage.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Template

from launchdeck.lib.errors import BuildError
from launchdeck.lib.logging_config import get_logger

logger = get_logger(__name__)

LAMBDA_ADAPTER_IMAGE = "public.ecr.aws/awsguru/aws-lambda-adapter"
LAMBDA_ADAPTER_VERSION = "0.9.1"
PATCHED_SUFFIX = ".lambda"

LAMBDA_ADAPTER_TEMPLATE = Template(
    "# AWS Lambda Web Adapter{{ nl }}"
    "COPY --from={{ image }}:{{ version }} /lambda-adapter "
    "/opt/extensions/lambda-adapter{{ nl }}"
)


def _newline_style(content: str) -> str:
    return "\r\n" if "\r\n" in content else "\n"


def patch_dockerfile_content(content: str) -> str:
    """Insert the Lambda Web Adapter after the last FROM instruction.

    Content that already references the adapter is returned unchanged.
    Line endings of the original file are preserved.

    Args:
        content: Original Dockerfile text

    Returns:
        Patched Dockerfile text

    Raises:
        BuildError: If the Dockerfile has no FROM instruction
    """
    if LAMBDA_ADAPTER_IMAGE in content or "aws-lambda-adapter" in content:
        return content

    nl = _newline_style(content)
    lines = content.splitlines(keepends=True)

    last_from = -1
    for index, line in enumerate(lines):
        if line.strip().upper().startswith("FROM "):
            last_from = index
    if last_from < 0:
        raise BuildError("patch", "Dockerfile has no FROM instruction")

    if not lines[last_from].endswith(("\n", "\r")):
        lines[last_from] += nl

    snippet = LAMBDA_ADAPTER_TEMPLATE.render(
        image=LAMBDA_ADAPTER_IMAGE, version=LAMBDA_ADAPTER_VERSION, nl=nl
    )
    lines.insert(last_from + 1, snippet)
    return "".join(lines)


def patched_dockerfile_path(dockerfile: str | Path) -> Path:
    """Location of the patched copy next to the original Dockerfile."""
    path = Path(dockerfile)
    return path.with_name(path.name + PATCHED_SUFFIX)


def write_lambda_dockerfile(dockerfile: str | Path) -> Path:
    """Write the Lambda-ready copy of a Dockerfile.

    Args:
        dockerfile: Path to the configured Dockerfile

    Returns:
        Path to the patched copy

    Raises:
        BuildError: If the Dockerfile is missing or has no FROM instruction
    """
    source = Path(dockerfile)
    if not source.is_file():
        raise BuildError("patch", f"Dockerfile not found: {source}")

    # newline="" keeps CRLF files intact on read and write
    with open(source, encoding="utf-8", newline="") as f:
        content = f.read()

    patched = patch_dockerfile_content(content)
    target = patched_dockerfile_path(source)
    with open(target, "w", encoding="utf-8", newline="") as f:
        f.write(patched)

    if patched is content:
        logger.info(f"{source.name} already includes the Lambda Web Adapter")
    else:
        logger.info(f"Wrote Lambda Web Adapter Dockerfile to {target}")
    return target
