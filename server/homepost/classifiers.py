from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from homepost.analysis import AnalysisService
from homepost.errors import ClassifierError

SEVERITIES = ("high", "medium", "low")
HIGH_SEVERITY_PHRASES = frozenset({"emergency", "fire"})


@dataclass(frozen=True, slots=True)
class DetectedAlert:
    phrase: str
    severity: str


@dataclass(frozen=True, slots=True)
class Classification:
    alerts: tuple[DetectedAlert, ...]
    summary: str = ""
    action_required: bool = False
    source: str = "keyword"


class Classifier(Protocol):
    name: str

    async def classify(self, text: str, device_id: str) -> Classification: ...


class KeywordClassifier:
    """Whole-word, case-insensitive phrase matching."""

    name = "keyword"

    def __init__(self, phrases: Iterable[str]) -> None:
        self._phrases: list[tuple[str, re.Pattern[str]]] = []
        for phrase in phrases:
            p = " ".join(str(phrase).strip().split())
            if not p:
                continue
            self._phrases.append((p, re.compile(rf"(?<!\w){re.escape(p)}(?!\w)", re.IGNORECASE)))

    @property
    def phrases(self) -> list[str]:
        return [p for p, _ in self._phrases]

    def match(self, text: str) -> tuple[DetectedAlert, ...]:
        if not text:
            return ()
        found: list[DetectedAlert] = []
        for phrase, pattern in self._phrases:
            if pattern.search(text):
                severity = "high" if phrase.lower() in HIGH_SEVERITY_PHRASES else "medium"
                found.append(DetectedAlert(phrase=phrase, severity=severity))
        return tuple(found)

    async def classify(self, text: str, device_id: str) -> Classification:
        alerts = self.match(text)
        return Classification(alerts=alerts, action_required=any(a.severity == "high" for a in alerts), source=self.name)


def parse_analysis(result: Any) -> Classification:
    """Validate a model analysis object; raise ClassifierError when it is malformed."""
    if not isinstance(result, dict):
        raise ClassifierError("analysis result is not an object")
    raw_alerts = result.get("alerts", [])
    if not isinstance(raw_alerts, list):
        raise ClassifierError("analysis alerts is not a list")
    alerts: list[DetectedAlert] = []
    for item in raw_alerts:
        if not isinstance(item, dict):
            raise ClassifierError("analysis alert is not an object")
        phrase = item.get("phrase")
        severity = item.get("severity")
        if not isinstance(phrase, str) or not phrase.strip():
            raise ClassifierError("analysis alert phrase is missing")
        if not isinstance(severity, str) or severity.lower() not in SEVERITIES:
            raise ClassifierError(f"analysis alert severity is invalid: {severity!r}")
        alerts.append(DetectedAlert(phrase=phrase.strip(), severity=severity.lower()))
    summary = result.get("summary")
    return Classification(
        alerts=tuple(alerts),
        summary=summary if isinstance(summary, str) else "",
        action_required=bool(result.get("actionRequired", False)),
        source="openai",
    )


class OpenAIClassifier:
    name = "openai"

    def __init__(self, service: AnalysisService) -> None:
        self._service = service

    async def classify(self, text: str, device_id: str) -> Classification:
        try:
            result = await self._service.analyze_text(text, device_id)
        except Exception as e:
            raise ClassifierError(f"analysis request failed: {e}") from e
        return parse_analysis(result)


class FallbackClassifier:
    """Primary classifier with a deterministic fallback.

    The primary is optional; when it is absent or fails, the fallback decides.
    """

    def __init__(self, primary: Classifier | None, fallback: KeywordClassifier) -> None:
        self._primary = primary
        self._fallback = fallback
        self._logger = logging.getLogger("homepost.classifier")
        self.name = f"{primary.name}+{fallback.name}" if primary is not None else fallback.name

    @property
    def primary(self) -> Classifier | None:
        return self._primary

    @property
    def fallback(self) -> KeywordClassifier:
        return self._fallback

    async def classify(self, text: str, device_id: str) -> Classification:
        if self._primary is not None:
            try:
                return await self._primary.classify(text, device_id)
            except ClassifierError as e:
                self._logger.warning("Primary classifier failed for %s (%s); using keyword matching", device_id, e)
            except Exception:
                self._logger.exception("Primary classifier crashed for %s; using keyword matching", device_id)
        return await self._fallback.classify(text, device_id)


def build_classifier(phrases: Iterable[str], analysis: AnalysisService | None) -> FallbackClassifier:
    primary = OpenAIClassifier(analysis) if analysis is not None else None
    return FallbackClassifier(primary, KeywordClassifier(phrases))
