"""
External configuration analysis capability.

The analyzer receives a flat key -> plaintext map plus project and
environment names and returns advisory alerts and a summary. Its output is
untrusted: it is shape-checked and never consulted for access decisions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .classification import classify, is_secret_like
from .errors import AnalysisError
from .models import Actor, EnvironmentId, Operation, SecretStatus
from .store import EnvironmentLike, SecretStore

logger = logging.getLogger(__name__)

MAX_ALERTS = 50
MAX_TEXT_LENGTH = 2000


@dataclass(frozen=True)
class AnalysisRequest:
    project_name: str
    environment: EnvironmentId
    variables: Mapping[str, str] = field(repr=False)


@dataclass(frozen=True)
class AnalysisReport:
    alerts: List[str]
    summary: str


class Analyzer(ABC):
    """Injected analysis service (e.g. a generative model behind an API)."""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> Any:
        """Return {'alerts': [...], 'summary': '...'} or an AnalysisReport."""
        ...


class HeuristicAnalyzer(Analyzer):
    """Deterministic analyzer built on the local classification rules."""

    async def analyze(self, request: AnalysisRequest) -> AnalysisReport:
        alerts = []
        counts: Dict[SecretStatus, int] = {s: 0 for s in SecretStatus}
        for key in sorted(request.variables):
            status = classify(key, request.variables[key])
            counts[status] += 1
            if status is SecretStatus.INSECURE:
                alerts.append(f"{key}: value looks like a weak or exposed credential")
            elif status is SecretStatus.WARNING:
                alerts.append(f"{key}: value may not be suitable for {request.environment}")
            if request.environment is EnvironmentId.PRODUCTION and key.startswith("NEXT_PUBLIC_") and is_secret_like(key):
                alerts.append(f"{key}: secret-like variable is exposed to the client bundle")
        summary = (
            f"{request.project_name} ({request.environment.display_name}): "
            f"{len(request.variables)} variables, {counts[SecretStatus.SECURE]} secure, "
            f"{counts[SecretStatus.WARNING]} warning, {counts[SecretStatus.INSECURE]} insecure."
        )
        return AnalysisReport(alerts=alerts, summary=summary)


def _clip(text: str) -> str:
    return text if len(text) <= MAX_TEXT_LENGTH else text[: MAX_TEXT_LENGTH - 3] + "..."


def coerce_report(raw: Any) -> AnalysisReport:
    """Validate untrusted analyzer output into an AnalysisReport."""
    if isinstance(raw, AnalysisReport):
        alerts, summary = raw.alerts, raw.summary
    elif isinstance(raw, Mapping):
        alerts, summary = raw.get("alerts", []), raw.get("summary", "")
    else:
        raise AnalysisError(f"Analyzer returned {type(raw).__name__}, expected a mapping")
    if not isinstance(alerts, (list, tuple)) or not all(isinstance(a, str) for a in alerts):
        raise AnalysisError("Analyzer 'alerts' must be a list of strings")
    if not isinstance(summary, str):
        raise AnalysisError("Analyzer 'summary' must be a string")
    return AnalysisReport(alerts=[_clip(a) for a in alerts[:MAX_ALERTS]], summary=_clip(summary))


async def analyze_environment(
    store: SecretStore,
    analyzer: Analyzer,
    project_id: str,
    environment: EnvironmentLike,
    actor: Actor,
) -> AnalysisReport:
    """
    Run the analyzer over an environment's current values.

    Raises:
        AnalysisError: If the analyzer output is malformed
    """
    variables = await store.snapshot(project_id, environment, actor, Operation.ANALYZE)
    env_id = EnvironmentId.from_str(environment)
    project = await store.get_project(project_id, actor)
    raw = await analyzer.analyze(AnalysisRequest(project.name, env_id, variables))
    try:
        return coerce_report(raw)
    except AnalysisError:
        logger.warning("Analyzer returned malformed output for %s/%s", project_id, env_id)
        raise
