"""
HTTP gateway for tenant-configured external collaborators.

A collaborator is a base URL plus named operations (method + path). Tool
invocations send arguments as a JSON body; resource invocations send them
as query parameters. Path segments like ``{ticket_id}`` are filled from
the arguments and removed from the payload.
"""

import time
from typing import Any, Dict

import httpx
import structlog

from src.core.exceptions import ExternalCollaboratorError
from src.domain.models.tenant import CollaboratorConfig

log = structlog.get_logger(__name__)


class HttpCollaboratorGateway:
    def __init__(self, collaborators: Dict[str, CollaboratorConfig]):
        self.collaborators = collaborators

    async def invoke(
        self,
        collaborator: str,
        operation: str,
        arguments: Dict[str, Any],
        as_resource: bool = False,
    ) -> Any:
        config = self.collaborators.get(collaborator)
        if config is None:
            raise ExternalCollaboratorError(f"Unknown collaborator '{collaborator}'")
        op = config.operations.get(operation)
        if op is None:
            raise ExternalCollaboratorError(
                f"Collaborator '{collaborator}' has no operation '{operation}'"
            )

        remaining = dict(arguments)
        try:
            path = op.path.format_map(_PathArgs(remaining))
        except (KeyError, ValueError) as e:
            raise ExternalCollaboratorError(
                f"Cannot build path for {collaborator}.{operation}: {e}"
            ) from e

        method = "GET" if as_resource and op.method == "POST" else op.method
        url = f"{config.base_url.rstrip('/')}/{path.lstrip('/')}"
        request_kwargs: Dict[str, Any] = {"headers": config.headers}
        if method in ("GET", "DELETE"):
            request_kwargs["params"] = remaining
        else:
            request_kwargs["json"] = remaining

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                response = await client.request(method, url, **request_kwargs)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalCollaboratorError(
                f"{collaborator}.{operation} failed (HTTP {e.response.status_code})"
            ) from e
        except httpx.HTTPError as e:
            raise ExternalCollaboratorError(f"{collaborator}.{operation} failed: {e}") from e

        log.info(
            "collaborator_call_complete",
            collaborator=collaborator,
            operation=operation,
            method=method,
            status_code=response.status_code,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


class _PathArgs(dict):
    """format_map source that pops used path arguments from the payload."""

    def __init__(self, arguments: Dict[str, Any]):
        super().__init__()
        self._arguments = arguments

    def __missing__(self, key: str) -> Any:
        if key not in self._arguments:
            raise KeyError(key)
        return self._arguments.pop(key)
