"""Shared helpers for EC2-backed handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from botocore.exceptions import ClientError

from cloud_provisioner.engine.handlers import ResourceHandler
from cloud_provisioner.resources.base import Resource

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

# Error codes worth retrying: rate limiting and brief service trouble.
TRANSIENT_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalServiceError",
    ]
)

# The tag carrying the resource name, shown as "Name" in the console.
NAME_TAG = "Name"


def error_code(exc: BaseException) -> str:
    """The AWS error code of a ``ClientError``, or ``""``."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def aws_tags(tags: Mapping[str, str], name: str) -> list[dict[str, str]]:
    """Resource tags in AWS list form, with the ``Name`` tag added."""
    merged = {NAME_TAG: name, **tags}
    return [{"Key": k, "Value": v} for k, v in sorted(merged.items())]


def tags_from_aws(tag_list: list[dict[str, str]] | None, name: str) -> dict[str, str]:
    """AWS tag list → dict, dropping the ``Name`` tag we add ourselves."""
    tags = {t["Key"]: t["Value"] for t in tag_list or []}
    if tags.get(NAME_TAG) == name:
        del tags[NAME_TAG]
    return tags


class Ec2Handler(ResourceHandler[R]):
    """Base for handlers calling the EC2 API via ``ctx.provider.ec2``."""

    # Extra error codes that are transient for this kind only.
    transient_codes: frozenset[str] = frozenset()

    def is_transient(self, exc: BaseException) -> bool:
        code = error_code(exc)
        if code:
            return code in TRANSIENT_ERROR_CODES or code in self.transient_codes
        return super().is_transient(exc)

    @staticmethod
    def _sync_tags(
        ec2: Any,
        resource_id: str,
        old: Mapping[str, str] | None,
        new: Mapping[str, str],
    ) -> None:
        """Bring a resource's user tags from *old* to *new*."""
        old = old or {}
        removed = [{"Key": k} for k in sorted(old) if k not in new]
        changed = [{"Key": k, "Value": v} for k, v in sorted(new.items()) if old.get(k) != v]
        if removed:
            ec2.delete_tags(Resources=[resource_id], Tags=removed)
        if changed:
            ec2.create_tags(Resources=[resource_id], Tags=changed)
        logger.debug(
            "Synced tags on %s: %d removed, %d set", resource_id, len(removed), len(changed)
        )
