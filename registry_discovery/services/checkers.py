from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from registry_discovery.services.models import RULE_KINDS, CandidateEntry

logger = logging.getLogger(__name__)


class CheckerError(Exception):
    """A checker could not produce a verdict."""


class TransientCheckerError(CheckerError):
    """Network, timeout or upstream failure that may succeed on a later attempt."""


@dataclass(slots=True)
class CheckOutcome:
    passed: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class Checker(Protocol):
    async def check(self, criteria: dict[str, Any], candidate: CandidateEntry) -> CheckOutcome: ...


class CheckerRegistry:
    """Strategy map from rule kind to checker."""

    def __init__(self, checkers: dict[str, Checker] | None = None) -> None:
        self._checkers: dict[str, Checker] = {}
        for kind, checker in (checkers or {}).items():
            self.register(kind, checker)

    def register(self, kind: str, checker: Checker) -> None:
        if not kind:
            raise ValueError("checker kind must be non-empty")
        self._checkers[kind] = checker

    def get(self, kind: str) -> Checker | None:
        return self._checkers.get(kind)

    def kinds(self) -> list[str]:
        return sorted(self._checkers)


def candidate_payload(candidate: CandidateEntry) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "repository_url": candidate.repository_url,
        "repository_full_name": candidate.repository_full_name,
        "source_type": candidate.source_type,
        "metadata": candidate.metadata,
    }


class HttpChecker:
    """Forwards a check to an external checker service.

    The service receives ``{"kind", "criteria", "candidate"}`` and answers with
    ``{"passed", "details", "error"}``.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        kind: str,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.kind = kind
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def check(self, criteria: dict[str, Any], candidate: CandidateEntry) -> CheckOutcome:
        payload = {"kind": self.kind, "criteria": criteria, "candidate": candidate_payload(candidate)}
        if self.client is not None:
            response = await self._post(self.client, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                response = await self._post(temp_client, payload)
        return self._parse_response(response)

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(
                self.endpoint,
                json=payload,
                headers={"User-Agent": "registry-discovery-checker/1.0"},
            )
        except httpx.TimeoutException as exc:
            raise TransientCheckerError(f"checker timed out: {self.endpoint}") from exc
        except httpx.TransportError as exc:
            raise TransientCheckerError(f"checker unreachable: {exc}") from exc

    def _parse_response(self, response: httpx.Response) -> CheckOutcome:
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientCheckerError(f"checker returned status {response.status_code}")
        if response.status_code >= 400:
            raise CheckerError(f"checker rejected request with status {response.status_code}")
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise CheckerError("checker returned invalid json") from exc
        if not isinstance(body, dict) or not isinstance(body.get("passed"), bool):
            raise CheckerError("checker response must contain a boolean 'passed'")

        details = body.get("details")
        error = body.get("error")
        return CheckOutcome(
            passed=body["passed"],
            details=details if isinstance(details, dict) else {},
            error=error if isinstance(error, str) and error.strip() else None,
        )


def parse_checker_endpoints(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed checker endpoint configuration")
        return {}
    if not isinstance(decoded, dict):
        return {}

    endpoints: dict[str, str] = {}
    for kind, endpoint in decoded.items():
        if kind not in RULE_KINDS:
            logger.warning("ignoring checker endpoint for unknown rule kind=%s", kind)
            continue
        if isinstance(endpoint, str) and endpoint.strip():
            endpoints[kind] = endpoint.strip()
    return endpoints


def build_checker_registry(
    raw_endpoints: str | None,
    *,
    timeout_seconds: float,
    client: httpx.AsyncClient | None = None,
) -> CheckerRegistry:
    registry = CheckerRegistry()
    for kind, endpoint in parse_checker_endpoints(raw_endpoints).items():
        registry.register(kind, HttpChecker(endpoint, kind=kind, timeout_seconds=timeout_seconds, client=client))
    return registry
